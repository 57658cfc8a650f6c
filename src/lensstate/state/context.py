"""Context governance: trimming, prioritizing, archiving and merging.

All operations are pure: inputs are never mutated.

Trimming is proportional and lossy. A single shared reduction factor is
applied to every sub-collection, so the trimmed context is only
approximately bounded: one oversized entry, or a huge ``current_problem``,
can leave the result above ``max_bytes``.
"""

from __future__ import annotations

import base64
import gzip
import json
import logging
import math
import uuid
import zlib
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any, TypeVar

from lensstate.config.models import ContextLimitsConfig
from lensstate.state.types import (
    ArchivedData,
    ArchiveSummary,
    EvolutionChain,
    HybridAttempt,
    LensRecord,
    PriorityCriteria,
    SessionContext,
    serialized_size,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ENTRY_TYPES: dict[str, type] = {
    "lens": LensRecord,
    "evolution": EvolutionChain,
    "hybrid": HybridAttempt,
}


class ContextManager:
    """Keeps session contexts within their byte and length budgets."""

    def __init__(
        self,
        limits: ContextLimitsConfig | None = None,
        *,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._limits = limits or ContextLimitsConfig()
        self._now = now or _utcnow

    @property
    def limits(self) -> ContextLimitsConfig:
        return self._limits

    def trim_context(self, context: SessionContext, max_bytes: int) -> SessionContext:
        """Proportionally drop the oldest entries until roughly ``max_bytes``.

        Returns ``context`` itself when it already fits.
        """
        total_size = context.serialized_size()
        if total_size <= max_bytes:
            return context

        section_sizes = [
            serialized_size([item.to_dict() for item in context.generated_lenses]),
            serialized_size([item.to_dict() for item in context.evolution_chains]),
            serialized_size([item.to_dict() for item in context.hybrid_attempts]),
        ]
        sections_total = sum(section_sizes)
        if sections_total == 0:
            return context

        factor = max_bytes / sections_total
        trimmed = SessionContext(
            current_problem=context.current_problem,
            generated_lenses=_keep_recent(
                context.generated_lenses,
                math.floor(len(context.generated_lenses) * factor),
            ),
            evolution_chains=_keep_recent(
                context.evolution_chains,
                math.floor(len(context.evolution_chains) * factor),
            ),
            hybrid_attempts=_keep_recent(
                context.hybrid_attempts,
                math.floor(len(context.hybrid_attempts) * factor),
            ),
        )
        logger.debug(
            "context_trimmed",
            extra={
                "context.bytes_before": total_size,
                "context.bytes_after": trimmed.serialized_size(),
                "context.max_bytes": max_bytes,
            },
        )
        return trimmed

    def prioritize_elements(self, elements: Sequence[T], criteria: PriorityCriteria) -> list[T]:
        """Order elements by importance, most important first.

        Score starts at 1.0, decays linearly with age over ``max_age`` and is
        doubled for the last ``preserve_recent`` elements. Elements scoring
        below ``min_importance`` are dropped. Ties keep input order.
        """
        now = self._now()
        scored: list[tuple[float, int, T]] = []
        recent_start = len(elements) - (criteria.preserve_recent or 0)
        for index, element in enumerate(elements):
            score = 1.0
            timestamp = _entry_timestamp(element)
            if criteria.max_age and timestamp is not None:
                age = now - timestamp
                score *= max(0.0, 1 - age / criteria.max_age)
            if criteria.preserve_recent and timestamp is not None and index >= recent_start:
                score *= 2
            scored.append((score, index, element))

        scored.sort(key=lambda item: (-item[0], item[1]))
        if criteria.min_importance:
            scored = [item for item in scored if item[0] >= criteria.min_importance]
        return [element for _, _, element in scored]

    def archive_old_entries(
        self,
        entries: Sequence[LensRecord | EvolutionChain | HybridAttempt],
        age_threshold: float,
    ) -> ArchivedData:
        """Summarize entries older than ``age_threshold`` seconds.

        The summary keeps statistics only; the entries themselves travel in
        ``compressed_data`` so ``reconstruct_context`` can bring them back.
        """
        now = self._now()
        old_entries = []
        for entry in entries:
            timestamp = _entry_timestamp(entry)
            if timestamp is not None and (now - timestamp).total_seconds() > age_threshold:
                old_entries.append(entry)

        archive_id = f"archive_{uuid.uuid4().hex[:12]}"
        if not old_entries:
            return ArchivedData(
                archive_id=archive_id,
                timestamp=now,
                compressed_data="",
                summary=ArchiveSummary(item_count=0, date_range=(now, now)),
            )

        timestamps = [_entry_timestamp(e) or now for e in old_entries]
        return ArchivedData(
            archive_id=archive_id,
            timestamp=now,
            compressed_data=_pack_entries(old_entries),
            summary=ArchiveSummary(
                item_count=len(old_entries),
                date_range=(min(timestamps), max(timestamps)),
                key_highlights=_extract_highlights(old_entries),
            ),
        )

    def reconstruct_context(
        self,
        archived: ArchivedData,
        recent: SessionContext,
    ) -> SessionContext:
        """Place archived entries in front of ``recent``, capped to the limits."""
        restored = SessionContext()
        if archived.compressed_data:
            try:
                for entry in _unpack_entries(archived.compressed_data):
                    if isinstance(entry, LensRecord):
                        restored.generated_lenses.append(entry)
                    elif isinstance(entry, EvolutionChain):
                        restored.evolution_chains.append(entry)
                    elif isinstance(entry, HybridAttempt):
                        restored.hybrid_attempts.append(entry)
            except ValueError:
                logger.warning(
                    "archive_unpack_failed",
                    extra={"archive.id": archived.archive_id},
                    exc_info=True,
                )

        return SessionContext(
            current_problem=recent.current_problem or restored.current_problem,
            generated_lenses=_keep_recent(
                restored.generated_lenses + recent.generated_lenses,
                self._limits.max_lenses,
            ),
            evolution_chains=_keep_recent(
                restored.evolution_chains + recent.evolution_chains,
                self._limits.max_evolution_chains,
            ),
            hybrid_attempts=_keep_recent(
                restored.hybrid_attempts + recent.hybrid_attempts,
                self._limits.max_hybrid_attempts,
            ),
        )

    def merge_contexts(self, contexts: Sequence[SessionContext]) -> SessionContext:
        """Concatenate contexts, time-sorting lenses and hybrids.

        Duplicates are not removed; callers needing uniqueness must
        pre-filter.
        """
        if not contexts:
            return SessionContext()

        lenses = sorted(
            (lens for c in contexts for lens in c.generated_lenses),
            key=lambda lens: lens.timestamp,
        )
        chains = [chain for c in contexts for chain in c.evolution_chains]
        hybrids = sorted(
            (h for c in contexts for h in c.hybrid_attempts),
            key=lambda h: h.timestamp,
        )
        return SessionContext(
            current_problem=contexts[-1].current_problem,
            generated_lenses=_keep_recent(lenses, self._limits.max_lenses),
            evolution_chains=_keep_recent(chains, self._limits.max_evolution_chains),
            hybrid_attempts=_keep_recent(hybrids, self._limits.max_hybrid_attempts),
        )


def _keep_recent(items: Sequence[T], max_length: int) -> list[T]:
    """Keep the last ``max_length`` items (front-truncation)."""
    if max_length <= 0:
        return []
    if len(items) <= max_length:
        return list(items)
    return list(items[-max_length:])


def _entry_timestamp(entry: Any) -> datetime | None:
    timestamp = getattr(entry, "timestamp", None)
    return timestamp if isinstance(timestamp, datetime) else None


def _entry_kind(entry: Any) -> str:
    for kind, entry_type in _ENTRY_TYPES.items():
        if isinstance(entry, entry_type):
            return kind
    raise ValueError(f"Cannot archive entry of type {type(entry).__name__}")


def _pack_entries(entries: Sequence[Any]) -> str:
    records = [{"kind": _entry_kind(e), "data": e.to_dict()} for e in entries]
    raw = json.dumps(records, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(gzip.compress(raw)).decode("ascii")


def _unpack_entries(blob: str) -> list[Any]:
    try:
        raw = gzip.decompress(base64.b64decode(blob, validate=True))
        records = json.loads(raw.decode("utf-8"))
    except (OSError, EOFError, zlib.error, UnicodeDecodeError, ValueError) as e:
        raise ValueError(f"Invalid archive blob: {e}") from e

    if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
        raise ValueError("Invalid archive blob: expected a list of entries")

    entries = []
    for record in records:
        entry_type = _ENTRY_TYPES.get(record.get("kind"))
        if entry_type is None:
            continue
        entries.append(entry_type.from_dict(record.get("data") or {}))
    return entries


def _extract_highlights(entries: Sequence[Any]) -> list[str]:
    highlights: list[str] = []

    domains = {d for e in entries if isinstance(e, LensRecord) for d in e.domains}
    if domains:
        highlights.append(f"Used {len(domains)} unique domains")

    chains = sum(1 for e in entries if isinstance(e, EvolutionChain))
    if chains:
        highlights.append(f"{chains} evolution chains")

    hybrids = sum(1 for e in entries if isinstance(e, HybridAttempt))
    if hybrids:
        highlights.append(f"{hybrids} hybrid attempts")

    return highlights


def _utcnow() -> datetime:
    return datetime.now(UTC)
