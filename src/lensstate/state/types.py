"""Session state entities and report value objects.

Entities (Session, its context/metrics/preferences, StateSnapshot) are
mutable dataclasses owned by the StateManager and round-trip through
``to_dict``/``from_dict``. Report types are read-only value objects and
only serialize outward.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

MADNESS_MIN = 0.0
MADNESS_MAX = 10.0


def clamp_madness(level: float) -> float:
    return min(MADNESS_MAX, max(MADNESS_MIN, level))


class ContextKind(StrEnum):
    """Artifact kinds recorded into a session context."""

    LENS = "lens"
    EVOLUTION = "evolution"
    HYBRID = "hybrid"


class MetricKind(StrEnum):
    """Metric counters accepted by ``StateManager.update_metrics``."""

    TOTAL_GENERATIONS = "total_generations"
    MADNESS_INDEX = "madness_index"
    DOMAIN = "domain"
    SUCCESSFUL_HYBRID = "successful_hybrid"
    TOOL_USAGE = "tool_usage"


class SessionStatus(StrEnum):
    """Lifecycle state of a session."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    DELETED = "deleted"


def canonical_json(data: Any) -> str:
    """Deterministic JSON used for checksums and size accounting."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def serialized_size(data: Any) -> int:
    """Byte length of the canonical JSON encoding of ``data``."""
    return len(canonical_json(data).encode("utf-8"))


@dataclass
class LensRecord:
    """A generated perception lens."""

    timestamp: datetime
    prompt: str
    domains: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "prompt": self.prompt,
            "domains": list(self.domains),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, now: datetime | None = None) -> LensRecord:
        _require_mapping(data, "lens")
        return cls(
            timestamp=_timestamp(data.get("timestamp"), now),
            prompt=str(data.get("prompt", "")),
            domains=[str(d) for d in data.get("domains") or []],
        )


@dataclass
class EvolutionStage:
    """One step of an idea's evolution."""

    stage: int
    content: str
    madness_level: float
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "content": self.content,
            "madness_level": self.madness_level,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], *, now: datetime | None = None
    ) -> EvolutionStage:
        _require_mapping(data, "evolution stage")
        return cls(
            stage=int(data.get("stage", 1)),
            content=str(data.get("content", "")),
            madness_level=float(data.get("madness_level", 0)),
            timestamp=_timestamp(data.get("timestamp"), now),
        )


@dataclass
class EvolutionChain:
    """All recorded stages for a single original idea."""

    original_idea: str
    stages: list[EvolutionStage] = field(default_factory=list)
    current_stage: int = 0

    @property
    def timestamp(self) -> datetime | None:
        """Time of the latest stage, used for ordering and archiving."""
        if not self.stages:
            return None
        return max(stage.timestamp for stage in self.stages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_idea": self.original_idea,
            "stages": [stage.to_dict() for stage in self.stages],
            "current_stage": self.current_stage,
        }

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], *, now: datetime | None = None
    ) -> EvolutionChain:
        _require_mapping(data, "evolution chain")
        return cls(
            original_idea=str(data.get("original_idea", "")),
            stages=[EvolutionStage.from_dict(s, now=now) for s in data.get("stages") or []],
            current_stage=int(data.get("current_stage", 0)),
        )


@dataclass
class HybridAttempt:
    """An attempt to hybridize two ideas."""

    idea_a: str
    idea_b: str
    method: str
    timestamp: datetime
    result: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "idea_a": self.idea_a,
            "idea_b": self.idea_b,
            "method": self.method,
            "result": self.result,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], *, now: datetime | None = None
    ) -> HybridAttempt:
        _require_mapping(data, "hybrid attempt")
        result = data.get("result")
        return cls(
            idea_a=str(data.get("idea_a", "")),
            idea_b=str(data.get("idea_b", "")),
            method=str(data.get("method") or "synthesis"),
            timestamp=_timestamp(data.get("timestamp"), now),
            result=str(result) if result is not None else None,
        )


@dataclass
class SessionContext:
    """Variable-size, size-governed portion of a session."""

    current_problem: str = ""
    generated_lenses: list[LensRecord] = field(default_factory=list)
    evolution_chains: list[EvolutionChain] = field(default_factory=list)
    hybrid_attempts: list[HybridAttempt] = field(default_factory=list)

    def serialized_size(self) -> int:
        return serialized_size(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_problem": self.current_problem,
            "generated_lenses": [lens.to_dict() for lens in self.generated_lenses],
            "evolution_chains": [chain.to_dict() for chain in self.evolution_chains],
            "hybrid_attempts": [h.to_dict() for h in self.hybrid_attempts],
        }

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], *, now: datetime | None = None
    ) -> SessionContext:
        _require_mapping(data, "context")
        return cls(
            current_problem=str(data.get("current_problem") or ""),
            generated_lenses=[
                LensRecord.from_dict(item, now=now)
                for item in data.get("generated_lenses") or []
            ],
            evolution_chains=[
                EvolutionChain.from_dict(item, now=now)
                for item in data.get("evolution_chains") or []
            ],
            hybrid_attempts=[
                HybridAttempt.from_dict(item, now=now)
                for item in data.get("hybrid_attempts") or []
            ],
        )


@dataclass
class SessionMetrics:
    """Usage counters for a session.

    ``unique_domains_used`` and ``tool_usage`` are replaced rather than
    mutated in place, so a reference handed out earlier never changes.
    """

    total_generations: int = 0
    average_madness_index: float = 0.0
    unique_domains_used: frozenset[str] = frozenset()
    successful_hybrids: int = 0
    tool_usage: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_generations": self.total_generations,
            "average_madness_index": self.average_madness_index,
            "unique_domains_used": sorted(self.unique_domains_used),
            "successful_hybrids": self.successful_hybrids,
            "tool_usage": [[tool, count] for tool, count in sorted(self.tool_usage.items())],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionMetrics:
        _require_mapping(data, "metrics")
        raw_usage = data.get("tool_usage") or []
        pairs = raw_usage.items() if isinstance(raw_usage, dict) else raw_usage
        return cls(
            total_generations=int(data.get("total_generations", 0)),
            average_madness_index=float(data.get("average_madness_index", 0.0)),
            unique_domains_used=frozenset(
                str(d) for d in data.get("unique_domains_used") or []
            ),
            successful_hybrids=int(data.get("successful_hybrids", 0)),
            tool_usage={str(tool): int(count) for tool, count in pairs},
        )


@dataclass
class SessionPreferences:
    """Optional user-set generation hints."""

    preferred_domains: list[str] | None = None
    avoid_domains: list[str] | None = None
    target_madness_level: float | None = None

    def merged_with(self, other: SessionPreferences) -> SessionPreferences:
        """Shallow merge: fields set on ``other`` win."""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        for f in fields(other):
            value = getattr(other, f.name)
            if value is not None:
                values[f.name] = value
        return SessionPreferences(**values)

    def to_dict(self) -> dict[str, Any]:
        return {
            "preferred_domains": self.preferred_domains,
            "avoid_domains": self.avoid_domains,
            "target_madness_level": self.target_madness_level,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionPreferences:
        _require_mapping(data, "preferences")
        unknown = set(data) - {f.name for f in fields(cls)}
        if unknown:
            raise ValueError(f"Unknown preference fields: {sorted(unknown)}")
        target = data.get("target_madness_level")
        return cls(
            preferred_domains=data.get("preferred_domains"),
            avoid_domains=data.get("avoid_domains"),
            target_madness_level=float(target) if target is not None else None,
        )


@dataclass
class Session:
    """One creative working session."""

    id: str
    user_id: str
    start_time: datetime
    last_activity: datetime
    context: SessionContext = field(default_factory=SessionContext)
    metrics: SessionMetrics = field(default_factory=SessionMetrics)
    preferences: SessionPreferences = field(default_factory=SessionPreferences)

    def status(self, now: datetime, inactive_threshold: timedelta) -> SessionStatus:
        if now - self.last_activity > inactive_threshold:
            return SessionStatus.INACTIVE
        return SessionStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "start_time": self.start_time.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "context": self.context.to_dict(),
            "metrics": self.metrics.to_dict(),
            "preferences": self.preferences.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, now: datetime | None = None) -> Session:
        """Rebuild a session; ``now`` stands in for missing timestamps."""
        _require_mapping(data, "session")
        start_time = _timestamp(data.get("start_time"), now)
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            start_time=start_time,
            last_activity=_parse_dt(data.get("last_activity")) or start_time,
            context=SessionContext.from_dict(data.get("context") or {}, now=now),
            metrics=SessionMetrics.from_dict(data.get("metrics") or {}),
            preferences=SessionPreferences.from_dict(data.get("preferences") or {}),
        )


@dataclass(frozen=True)
class StateSnapshot:
    """Immutable, checksummed copy of a session at a point in time."""

    id: str
    session_id: str
    timestamp: datetime
    state: Session
    checksum: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "timestamp": self.timestamp.isoformat(),
            "state": self.state.to_dict(),
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], *, now: datetime | None = None
    ) -> StateSnapshot:
        _require_mapping(data, "snapshot")
        return cls(
            id=str(data["id"]),
            session_id=str(data["session_id"]),
            timestamp=_timestamp(data.get("timestamp"), now),
            state=Session.from_dict(data["state"], now=now),
            checksum=str(data.get("checksum", "")),
        )


# ---------------------------------------------------------------------------
# Partial updates
# ---------------------------------------------------------------------------


@dataclass
class ContextUpdate:
    """Context additions; lists are appended, ``current_problem`` replaces."""

    current_problem: str | None = None
    generated_lenses: list[LensRecord] = field(default_factory=list)
    evolution_chains: list[EvolutionChain] = field(default_factory=list)
    hybrid_attempts: list[HybridAttempt] = field(default_factory=list)

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], *, now: datetime | None = None
    ) -> ContextUpdate:
        _require_mapping(data, "context update")
        _reject_unknown(cls, data, "context")
        problem = data.get("current_problem")
        return cls(
            current_problem=str(problem) if problem is not None else None,
            generated_lenses=[
                LensRecord.from_dict(item, now=now)
                for item in data.get("generated_lenses") or []
            ],
            evolution_chains=[
                EvolutionChain.from_dict(item, now=now)
                for item in data.get("evolution_chains") or []
            ],
            hybrid_attempts=[
                HybridAttempt.from_dict(item, now=now)
                for item in data.get("hybrid_attempts") or []
            ],
        )


@dataclass
class MetricsUpdate:
    """Metric overrides; each set field replaces the current value.

    Values are coerced on construction. Counters must be non-negative and
    the madness index is clamped to its 0..10 range.

    Raises:
        ValueError: A value has the wrong type or a counter is negative.
    """

    total_generations: int | None = None
    average_madness_index: float | None = None
    unique_domains_used: frozenset[str] | None = None
    successful_hybrids: int | None = None
    tool_usage: dict[str, int] | None = None

    def __post_init__(self) -> None:
        try:
            if self.total_generations is not None:
                self.total_generations = _counter(self.total_generations, "total_generations")
            if self.successful_hybrids is not None:
                self.successful_hybrids = _counter(
                    self.successful_hybrids, "successful_hybrids"
                )
            if self.average_madness_index is not None:
                self.average_madness_index = clamp_madness(float(self.average_madness_index))
            if self.unique_domains_used is not None:
                if isinstance(self.unique_domains_used, str):
                    raise ValueError("unique_domains_used must be a collection of names")
                self.unique_domains_used = frozenset(str(d) for d in self.unique_domains_used)
            if self.tool_usage is not None:
                usage = self.tool_usage
                pairs = usage.items() if isinstance(usage, dict) else usage
                self.tool_usage = {
                    str(tool): _counter(count, f"tool_usage[{tool}]") for tool, count in pairs
                }
        except TypeError as e:
            raise ValueError(f"Invalid metrics update: {e}") from e

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MetricsUpdate:
        _require_mapping(data, "metrics update")
        _reject_unknown(cls, data, "metrics")
        return cls(**data)


@dataclass
class SessionUpdate:
    """Typed partial update accepted by ``StateManager.update_session``."""

    context: ContextUpdate | None = None
    metrics: MetricsUpdate | None = None
    preferences: SessionPreferences | None = None

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], *, now: datetime | None = None
    ) -> SessionUpdate:
        _require_mapping(data, "session update")
        _reject_unknown(cls, data, "session")
        context = data.get("context")
        metrics = data.get("metrics")
        preferences = data.get("preferences")
        return cls(
            context=ContextUpdate.from_dict(context, now=now) if context is not None else None,
            metrics=MetricsUpdate.from_dict(metrics) if metrics is not None else None,
            preferences=SessionPreferences.from_dict(preferences)
            if preferences is not None
            else None,
        )


# ---------------------------------------------------------------------------
# Archive and analytics value objects
# ---------------------------------------------------------------------------


@dataclass
class PriorityCriteria:
    """Scoring knobs for ``ContextManager.prioritize_elements``."""

    max_age: timedelta | None = None
    min_importance: float | None = None
    preserve_recent: int | None = None


@dataclass
class ArchiveSummary:
    item_count: int
    date_range: tuple[datetime, datetime]
    key_highlights: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_count": self.item_count,
            "date_range": [self.date_range[0].isoformat(), self.date_range[1].isoformat()],
            "key_highlights": list(self.key_highlights),
        }


@dataclass
class ArchivedData:
    """Compact summary of compacted-away context entries or snapshots.

    ``compressed_data`` is a gzip+base64 blob of the archived entries, or
    empty when the detail was discarded.
    """

    archive_id: str
    timestamp: datetime
    compressed_data: str
    summary: ArchiveSummary

    def to_dict(self) -> dict[str, Any]:
        return {
            "archive_id": self.archive_id,
            "timestamp": self.timestamp.isoformat(),
            "compressed_data": self.compressed_data,
            "summary": self.summary.to_dict(),
        }


class TrendDirection(StrEnum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


@dataclass
class TrendData:
    direction: TrendDirection
    rate: float
    confidence: float
    recent_values: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "direction": self.direction.value,
            "rate": self.rate,
            "confidence": self.confidence,
            "recent_values": list(self.recent_values),
        }


@dataclass
class DomainStats:
    domain: str
    usage_count: int
    average_creativity_score: float
    success_rate: float
    last_used: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "usage_count": self.usage_count,
            "average_creativity_score": self.average_creativity_score,
            "success_rate": self.success_rate,
            "last_used": self.last_used.isoformat(),
        }


@dataclass
class CommonPattern:
    pattern: str
    frequency: int
    effectiveness: float


@dataclass
class UnusualCombination:
    combination: list[str]
    uniqueness: float
    outcome: str


@dataclass
class PatternAnalysis:
    common_patterns: list[CommonPattern] = field(default_factory=list)
    unusual_combinations: list[UnusualCombination] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "common_patterns": [
                {"pattern": p.pattern, "frequency": p.frequency, "effectiveness": p.effectiveness}
                for p in self.common_patterns
            ],
            "unusual_combinations": [
                {
                    "combination": list(c.combination),
                    "uniqueness": c.uniqueness,
                    "outcome": c.outcome,
                }
                for c in self.unusual_combinations
            ],
        }


@dataclass
class ReportSummary:
    total_ideas_generated: int
    average_creativity: float
    most_used_domains: list[str]
    peak_madness_level: float


@dataclass
class SessionReport:
    session_id: str
    duration: float  # seconds between start and last activity
    summary: ReportSummary
    highlights: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "duration": self.duration,
            "summary": {
                "total_ideas_generated": self.summary.total_ideas_generated,
                "average_creativity": self.summary.average_creativity,
                "most_used_domains": list(self.summary.most_used_domains),
                "peak_madness_level": self.summary.peak_madness_level,
            },
            "highlights": list(self.highlights),
            "recommendations": list(self.recommendations),
        }


@dataclass
class SessionHealth:
    score: int
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"score": self.score, "issues": list(self.issues)}


def _reject_unknown(cls: type, data: dict[str, Any], label: str) -> None:
    unknown = set(data) - {f.name for f in fields(cls)}
    if unknown:
        raise ValueError(f"Unknown {label} update fields: {sorted(unknown)}")


def _require_mapping(data: Any, label: str) -> None:
    if not isinstance(data, dict):
        raise ValueError(f"Expected {label} object, got {type(data).__name__}")


def _counter(value: Any, name: str) -> int:
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"{name} must be a whole number, got {value}")
    count = int(value)
    if count < 0:
        raise ValueError(f"{name} must be >= 0, got {count}")
    return count


def _timestamp(value: str | None, now: datetime | None) -> datetime:
    return _parse_dt(value) or now or datetime.now(UTC)


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
