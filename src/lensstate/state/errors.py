"""Typed failures raised by the session state subsystem."""


class StateError(Exception):
    """Base class for session state errors."""


class NotFoundError(StateError, LookupError):
    """An addressed entity does not exist."""


class SessionNotFoundError(NotFoundError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class SnapshotNotFoundError(NotFoundError):
    def __init__(self, snapshot_id: str) -> None:
        super().__init__(f"Snapshot {snapshot_id} not found")
        self.snapshot_id = snapshot_id


class PersistenceError(StateError):
    """Storage I/O or decode failure, distinct from a missing key."""

    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class BackendNotImplementedError(PersistenceError, NotImplementedError):
    """The configured backend is a placeholder."""


class ImportFormatError(StateError, ValueError):
    """An export blob is malformed, unversioned or of an unsupported version."""
