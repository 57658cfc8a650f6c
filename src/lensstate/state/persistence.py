"""Key/blob persistence for session state.

Three backends share one contract:
- ``memory``: process-local dict (tests, ephemeral servers)
- ``file``: one ``<location>/<key>.json`` file per key, atomic replace writes
- ``redis``: placeholder; every call raises BackendNotImplementedError

Values are JSON-serialized and optionally gzip-compressed before they reach
the backend. File I/O runs in a worker thread so the event loop never blocks.
"""

from __future__ import annotations

import asyncio
import gzip
import hashlib
import json
import logging
import os
import re
import tempfile
import zlib
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

from lensstate.config.models import PersistenceConfig
from lensstate.state.errors import BackendNotImplementedError, PersistenceError
from lensstate.state.types import canonical_json

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_GZIP_MAGIC = b"\x1f\x8b"
_FILE_SUFFIX = ".json"


class MemoryBackend:
    """Dict-backed storage; nothing survives the process."""

    blocking = False

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    def prepare(self) -> None:
        return None

    def read(self, key: str) -> bytes | None:
        return self._data.get(key)

    def write(self, key: str, payload: bytes) -> None:
        self._data[key] = payload

    def remove(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self) -> list[str]:
        return list(self._data)

    def contains(self, key: str) -> bool:
        return key in self._data


class FileBackend:
    """One file per key under a root directory, created lazily."""

    blocking = True

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    def prepare(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self._root / f"{key}{_FILE_SUFFIX}"

    def read(self, key: str) -> bytes | None:
        try:
            return self.path_for(key).read_bytes()
        except FileNotFoundError:
            return None

    def write(self, key: str, payload: bytes) -> None:
        _write_bytes_atomic(self.path_for(key), payload)

    def remove(self, key: str) -> bool:
        try:
            self.path_for(key).unlink()
        except FileNotFoundError:
            return False
        return True

    def keys(self) -> list[str]:
        if not self._root.exists():
            return []
        return [
            entry.name[: -len(_FILE_SUFFIX)]
            for entry in self._root.iterdir()
            if entry.is_file() and entry.name.endswith(_FILE_SUFFIX)
        ]

    def contains(self, key: str) -> bool:
        return self.path_for(key).is_file()


class RedisBackend:
    """Placeholder for a remote KV store."""

    blocking = False

    def _unsupported(self, *_args: Any) -> Any:
        raise BackendNotImplementedError("Redis storage not implemented yet")

    prepare = _unsupported
    read = _unsupported
    write = _unsupported
    remove = _unsupported
    keys = _unsupported
    contains = _unsupported


StorageBackend = MemoryBackend | FileBackend | RedisBackend


def create_backend(config: PersistenceConfig) -> StorageBackend:
    if config.type == "memory":
        return MemoryBackend()
    if config.type == "file":
        return FileBackend(config.location)
    if config.type == "redis":
        return RedisBackend()
    raise ValueError(f"Unknown persistence type: {config.type}")


class PersistenceHandler:
    """Sole reader/writer of the durable session store.

    ``load`` returns None only for a missing key. Any other failure (I/O,
    corrupt gzip, invalid JSON) raises PersistenceError so the caller can
    decide whether it is fatal.
    """

    def __init__(
        self,
        config: PersistenceConfig,
        *,
        backend: StorageBackend | None = None,
    ) -> None:
        self._config = config
        self._compression = config.compression
        self._backend = backend if backend is not None else create_backend(config)

    @property
    def storage_type(self) -> str:
        return self._config.type

    @property
    def compression(self) -> bool:
        return self._compression

    async def initialize(self) -> None:
        """Create the storage location if the backend needs one."""
        await self._call(self._backend.prepare)

    async def save(self, key: str, value: Any) -> None:
        _validate_key(key)
        payload = self._encode(key, value)
        await self._call(self._backend.write, key, payload, key=key)
        logger.debug("state_key_saved", extra={"state.key": key, "bytes": len(payload)})

    async def load(self, key: str) -> Any | None:
        _validate_key(key)
        payload = await self._call(self._backend.read, key, key=key)
        if payload is None:
            return None
        return self._decode(key, payload)

    async def delete(self, key: str) -> bool:
        _validate_key(key)
        return await self._call(self._backend.remove, key, key=key)

    async def list(self, prefix: str = "") -> list[str]:
        keys = await self._call(self._backend.keys)
        return sorted(k for k in keys if k.startswith(prefix))

    async def exists(self, key: str) -> bool:
        _validate_key(key)
        return await self._call(self._backend.contains, key, key=key)

    def checksum(self, value: Any) -> str:
        """SHA-256 of the canonical JSON encoding; detects corruption only."""
        content = value if isinstance(value, str) else canonical_json(value)
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def _encode(self, key: str, value: Any) -> bytes:
        try:
            data = json.dumps(value, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Cannot serialize value for {key}: {e}", key=key) from e
        if self._compression:
            return gzip.compress(data)
        return data

    def _decode(self, key: str, payload: bytes) -> Any:
        try:
            # Tolerate files written before compression was toggled
            if payload[:2] == _GZIP_MAGIC:
                payload = gzip.decompress(payload)
            return json.loads(payload.decode("utf-8"))
        except (OSError, EOFError, zlib.error, UnicodeDecodeError, ValueError) as e:
            raise PersistenceError(f"Corrupt data for {key}: {e}", key=key) from e

    async def _call(
        self,
        fn: Callable[..., _T],
        *args: Any,
        key: str | None = None,
    ) -> _T:
        try:
            if self._backend.blocking:
                return await asyncio.to_thread(fn, *args)
            return fn(*args)
        except PersistenceError:
            raise
        except OSError as e:
            raise PersistenceError(f"Storage I/O failed: {e}", key=key) from e


def _validate_key(key: str) -> None:
    if not _KEY_PATTERN.match(key):
        raise ValueError(f"Invalid storage key: {key!r}")


def _write_bytes_atomic(path: Path, payload: bytes) -> None:
    """Write bytes atomically via tempfile + fsync + os.replace()."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        Path(tmp).replace(path)
    except BaseException:
        try:
            Path(tmp).unlink()
        except OSError:
            pass
        raise
