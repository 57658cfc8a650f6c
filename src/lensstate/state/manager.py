"""Session state manager: registries, capacity limits and persistence.

The manager exclusively owns the in-memory session and snapshot registries.
In-memory operations are synchronous, so on a single event loop they never
interleave; only persistence awaits. ``save_state``/``load_state`` are
additionally serialized by an asyncio lock so the auto-save timer and a
foreground save never overlap.

Not-found contract: every operation that addresses a session or snapshot
by id raises SessionNotFoundError/SnapshotNotFoundError, including
``add_to_context`` and ``update_metrics``. Callers wanting fire-and-forget
semantics (the tool middleware) catch the error themselves.
"""

from __future__ import annotations

import asyncio
import copy
import dataclasses
import json
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from lensstate.config.models import StateConfig
from lensstate.state.analytics import SessionAnalytics
from lensstate.state.context import ContextManager
from lensstate.state.errors import (
    ImportFormatError,
    PersistenceError,
    SessionNotFoundError,
    SnapshotNotFoundError,
)
from lensstate.state.persistence import PersistenceHandler
from lensstate.state.types import (
    MADNESS_MAX,
    MADNESS_MIN,
    ArchivedData,
    ArchiveSummary,
    ContextKind,
    EvolutionChain,
    EvolutionStage,
    HybridAttempt,
    LensRecord,
    MetricKind,
    Session,
    SessionContext,
    SessionHealth,
    SessionMetrics,
    SessionReport,
    SessionStatus,
    SessionUpdate,
    StateSnapshot,
    clamp_madness,
)

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = "1.0.0"
STATE_KEY = "state"
SESSION_KEY_PREFIX = "session_"
ARCHIVE_KEY_PREFIX = "archive_"

_VALUED_METRICS = frozenset({MetricKind.MADNESS_INDEX, MetricKind.DOMAIN, MetricKind.TOOL_USAGE})


class StateManager:
    """Owns creative sessions and their snapshots.

    Example:
        manager = StateManager(config)
        await manager.initialize()
        session = manager.create_session("u1", "reinvent the umbrella")
        manager.add_to_context(session.id, "lens", {"prompt": "...", "domains": ["jazz"]})
        await manager.shutdown()
    """

    def __init__(
        self,
        config: StateConfig | None = None,
        *,
        persistence: PersistenceHandler | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config or StateConfig()
        self._now = now or _utcnow
        self._sessions: dict[str, Session] = {}
        self._snapshots: dict[str, list[StateSnapshot]] = {}
        self._persistence = persistence or PersistenceHandler(self._config.persistence)
        self._context_manager = ContextManager(self._config.context, now=self._now)
        self._analytics = SessionAnalytics(self._config.analytics, now=self._now)
        self._state_lock = asyncio.Lock()
        self._tasks: list[asyncio.Task] = []
        self._running = False

    @property
    def config(self) -> StateConfig:
        return self._config

    @property
    def persistence(self) -> PersistenceHandler:
        return self._persistence

    @property
    def context_manager(self) -> ContextManager:
        return self._context_manager

    @property
    def analytics(self) -> SessionAnalytics:
        return self._analytics

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, *, start_timers: bool = True) -> None:
        """Prepare storage, restore persisted state and start the timers."""
        if self._running:
            return
        await self._persistence.initialize()
        await self.load_state()
        self._running = True
        if start_timers:
            self._start_timers()
        logger.info(
            "state_manager_started",
            extra={
                "persistence.type": self._persistence.storage_type,
                "sessions.count": len(self._sessions),
                "timers": len(self._tasks),
            },
        )

    async def shutdown(self) -> None:
        """Stop the timers and write a final save."""
        if not self._running:
            return
        self._running = False
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.save_state()
        logger.info("state_manager_stopped")

    def _start_timers(self) -> None:
        auto_save_interval = self._config.persistence.auto_save_interval
        if auto_save_interval:
            self._tasks.append(
                asyncio.create_task(
                    self._run_periodic("auto_save", auto_save_interval, self.save_state)
                )
            )
        self._tasks.append(
            asyncio.create_task(
                self._run_periodic(
                    "cleanup", self._config.cleanup.run_interval, self._cleanup_tick
                )
            )
        )

    async def _run_periodic(
        self,
        name: str,
        interval: float,
        action: Callable[[], Awaitable[Any]],
    ) -> None:
        while self._running:
            await asyncio.sleep(interval)
            try:
                await action()
            except Exception:
                logger.error("state_timer_error", extra={"timer": name}, exc_info=True)

    async def _cleanup_tick(self) -> None:
        self.cleanup_inactive_sessions(self._config.cleanup.inactive_threshold)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, user_id: str, initial_problem: str | None = None) -> Session:
        """Create a session, evicting the least recently active one if full."""
        self._ensure_capacity()
        now = self._now()
        session = Session(
            id=str(uuid.uuid4()),
            user_id=user_id,
            start_time=now,
            last_activity=now,
            context=SessionContext(current_problem=initial_problem or ""),
        )
        self._sessions[session.id] = session
        logger.info(
            "session_created",
            extra={"session.id": session.id, "session.user_id": user_id},
        )
        return session

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_all_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def get_session_status(self, session_id: str) -> SessionStatus:
        session = self._sessions.get(session_id)
        if session is None:
            return SessionStatus.DELETED
        threshold = timedelta(seconds=self._config.cleanup.inactive_threshold)
        return session.status(self._now(), threshold)

    def update_session(
        self,
        session_id: str,
        update: SessionUpdate | Mapping[str, Any],
    ) -> Session:
        """Merge a partial update into a session.

        Context lists are appended, metrics and preferences shallow-merged.
        ``last_activity`` is always bumped and the context is trimmed when
        the merge pushes it past ``max_context_size``.

        Raises:
            SessionNotFoundError: Unknown session id.
            ValueError: Unknown fields or invalid metric values; the session
                is left unchanged.
        """
        session = self._require_session(session_id)
        if not isinstance(update, SessionUpdate):
            update = SessionUpdate.from_dict(dict(update), now=self._now())

        if update.context is not None:
            changes = update.context
            current = session.context
            session.context = SessionContext(
                current_problem=changes.current_problem
                if changes.current_problem is not None
                else current.current_problem,
                generated_lenses=current.generated_lenses + changes.generated_lenses,
                evolution_chains=current.evolution_chains + changes.evolution_chains,
                hybrid_attempts=current.hybrid_attempts + changes.hybrid_attempts,
            )

        if update.metrics is not None:
            overrides = {
                f.name: getattr(update.metrics, f.name)
                for f in dataclasses.fields(update.metrics)
                if getattr(update.metrics, f.name) is not None
            }
            session.metrics = dataclasses.replace(session.metrics, **overrides)

        if update.preferences is not None:
            session.preferences = session.preferences.merged_with(update.preferences)

        self._touch(session)
        self._enforce_context_limit(session)
        return session

    def delete_session(self, session_id: str) -> bool:
        """Remove a session and all of its snapshots."""
        self._snapshots.pop(session_id, None)
        removed = self._sessions.pop(session_id, None) is not None
        if removed:
            logger.debug("session_deleted", extra={"session.id": session_id})
        return removed

    def _ensure_capacity(self) -> None:
        max_sessions = self._config.limits.max_sessions
        while self._sessions and len(self._sessions) >= max_sessions:
            oldest = min(self._sessions.values(), key=lambda s: s.last_activity)
            self.delete_session(oldest.id)
            logger.info(
                "session_evicted",
                extra={
                    "session.id": oldest.id,
                    "session.last_activity": oldest.last_activity.isoformat(),
                },
            )

    # ------------------------------------------------------------------
    # Context and metrics
    # ------------------------------------------------------------------

    def add_to_context(
        self,
        session_id: str,
        kind: ContextKind | str,
        data: Mapping[str, Any],
    ) -> None:
        """Record a generated artifact.

        ``evolution`` data names an ``original_idea``; a stage for an idea
        that already has a chain is appended to that chain.
        """
        session = self._require_session(session_id)
        kind = ContextKind(kind)
        now = self._now()
        context = session.context

        if kind == ContextKind.LENS:
            context.generated_lenses.append(
                LensRecord(
                    timestamp=now,
                    prompt=str(data.get("prompt", "")),
                    domains=[str(d) for d in data.get("domains") or []],
                )
            )
        elif kind == ContextKind.EVOLUTION:
            original_idea = data.get("original_idea")
            if not original_idea:
                raise ValueError("evolution entries require original_idea")
            stage = _build_stage(data.get("stage"), now)
            chain = next(
                (c for c in context.evolution_chains if c.original_idea == original_idea),
                None,
            )
            if chain is not None:
                chain.stages.append(stage)
                chain.current_stage = len(chain.stages) - 1
            else:
                context.evolution_chains.append(
                    EvolutionChain(original_idea=str(original_idea), stages=[stage])
                )
        else:
            result = data.get("result")
            context.hybrid_attempts.append(
                HybridAttempt(
                    idea_a=str(data.get("idea_a", "")),
                    idea_b=str(data.get("idea_b", "")),
                    method=str(data.get("method") or "synthesis"),
                    result=str(result) if result is not None else None,
                    timestamp=now,
                )
            )

        self._touch(session)
        self._enforce_context_limit(session)

    def update_metrics(
        self,
        session_id: str,
        metric: MetricKind | str,
        value: Any = None,
    ) -> None:
        """Fold one observation into the session metrics.

        ``madness_index`` averages over the current ``total_generations``, so
        record the generation first within the same logical operation or
        the running mean is skewed.
        """
        session = self._require_session(session_id)
        metric = MetricKind(metric)
        if value is None and metric in _VALUED_METRICS:
            raise ValueError(f"Metric {metric} requires a value")
        metrics = session.metrics

        if metric == MetricKind.TOTAL_GENERATIONS:
            metrics.total_generations += 1
        elif metric == MetricKind.MADNESS_INDEX:
            level = clamp_madness(float(value))
            count = metrics.total_generations or 1
            metrics.average_madness_index = (
                metrics.average_madness_index * (count - 1) + level
            ) / count
        elif metric == MetricKind.DOMAIN:
            metrics.unique_domains_used = metrics.unique_domains_used | {str(value)}
        elif metric == MetricKind.SUCCESSFUL_HYBRID:
            metrics.successful_hybrids += 1
        elif metric == MetricKind.TOOL_USAGE:
            tool = str(value)
            metrics.tool_usage = {
                **metrics.tool_usage,
                tool: metrics.tool_usage.get(tool, 0) + 1,
            }

        self._touch(session)

    def get_session_metrics(self, session_id: str) -> SessionMetrics | None:
        session = self._sessions.get(session_id)
        return session.metrics if session else None

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def create_snapshot(self, session_id: str) -> StateSnapshot:
        """Capture an independent, checksummed copy of a session."""
        session = self._require_session(session_id)
        state = copy.deepcopy(session)
        snapshot = StateSnapshot(
            id=str(uuid.uuid4()),
            session_id=session_id,
            timestamp=self._now(),
            state=state,
            checksum=self._persistence.checksum(state.to_dict()),
        )

        snapshots = self._snapshots.setdefault(session_id, [])
        snapshots.append(snapshot)
        overflow = len(snapshots) - self._config.limits.max_snapshots
        if overflow > 0:
            del snapshots[:overflow]
        logger.debug(
            "snapshot_created",
            extra={"session.id": session_id, "snapshot.id": snapshot.id},
        )
        return snapshot

    def list_snapshots(self, session_id: str) -> list[StateSnapshot]:
        """Copies of a session's snapshots, oldest first."""
        return copy.deepcopy(self._snapshots.get(session_id, []))

    def rollback_to_snapshot(self, snapshot_id: str) -> Session:
        """Restore the owning session to a snapshot's state."""
        for session_id, snapshots in self._snapshots.items():
            for snapshot in snapshots:
                if snapshot.id != snapshot_id:
                    continue
                restored = copy.deepcopy(snapshot.state)
                restored.id = session_id
                self._touch(restored)
                self._sessions[session_id] = restored
                logger.info(
                    "session_rolled_back",
                    extra={"session.id": session_id, "snapshot.id": snapshot_id},
                )
                return restored
        raise SnapshotNotFoundError(snapshot_id)

    def verify_snapshot(self, snapshot: StateSnapshot) -> bool:
        """Recompute a snapshot's checksum and compare."""
        return self._persistence.checksum(snapshot.state.to_dict()) == snapshot.checksum

    async def compress_old_snapshots(
        self,
        session_id: str,
        keep_last: int,
    ) -> ArchivedData | None:
        """Keep the newest ``keep_last`` snapshots and archive a summary of the rest.

        Discarded snapshot detail is not recoverable; the archive record only
        holds counts, the date range and highlights. Returns None when there
        was nothing to discard.
        """
        self._require_session(session_id)
        if keep_last < 0:
            raise ValueError("keep_last must be >= 0")

        snapshots = self._snapshots.get(session_id, [])
        if len(snapshots) <= keep_last:
            return None

        discarded = snapshots[: len(snapshots) - keep_last]
        now = self._now()
        last_state = discarded[-1].state
        archive = ArchivedData(
            archive_id=f"{ARCHIVE_KEY_PREFIX}{session_id}_{int(now.timestamp() * 1000)}",
            timestamp=now,
            compressed_data="",
            summary=ArchiveSummary(
                item_count=len(discarded),
                date_range=(discarded[0].timestamp, discarded[-1].timestamp),
                key_highlights=[
                    f"Compressed {len(discarded)} snapshots",
                    f"{last_state.metrics.total_generations} generations at last archived snapshot",
                ],
            ),
        )
        # Persist before discarding so a storage failure loses nothing
        await self._persistence.save(
            archive.archive_id, {"session_id": session_id, **archive.to_dict()}
        )

        discarded_ids = {s.id for s in discarded}
        current = self._snapshots.get(session_id)
        if current is not None:
            self._snapshots[session_id] = [s for s in current if s.id not in discarded_ids]
        logger.info(
            "snapshots_compressed",
            extra={"session.id": session_id, "snapshots.archived": len(discarded)},
        )
        return archive

    # ------------------------------------------------------------------
    # Maintenance and reporting
    # ------------------------------------------------------------------

    def validate_session_integrity(self, session_id: str) -> bool:
        """Structural, range and timestamp checks; never raises."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        try:
            problem = _integrity_problem(session, self._now())
        except (AttributeError, TypeError):
            problem = "malformed session structure"
        if problem is not None:
            logger.warning(
                "session_integrity_violation",
                extra={"session.id": session_id, "problem": problem},
            )
            return False
        return True

    def cleanup_inactive_sessions(self, max_inactive: timedelta | float) -> int:
        """Delete sessions idle for longer than ``max_inactive``.

        Accepts a timedelta or seconds. Returns the number deleted.
        """
        if not isinstance(max_inactive, timedelta):
            max_inactive = timedelta(seconds=max_inactive)
        now = self._now()
        stale = [
            session_id
            for session_id, session in self._sessions.items()
            if now - session.last_activity > max_inactive
        ]
        for session_id in stale:
            self.delete_session(session_id)
        if stale:
            logger.info("inactive_sessions_cleaned", extra={"sessions.removed": len(stale)})
        return len(stale)

    def get_session_report(self, session_id: str) -> SessionReport:
        return self._analytics.generate_session_report(self._require_session(session_id))

    def get_session_health(self, session_id: str) -> SessionHealth:
        return self._analytics.calculate_session_health(self._require_session(session_id))

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_session(self, session_id: str) -> str:
        """Serialize a session, its snapshots and a report as versioned JSON."""
        session = self._require_session(session_id)
        data = {
            "version": EXPORT_FORMAT_VERSION,
            "session": session.to_dict(),
            "snapshots": [s.to_dict() for s in self._snapshots.get(session_id, [])],
            "report": self._analytics.generate_session_report(session).to_dict(),
            "export_timestamp": self._now().isoformat(),
        }
        return json.dumps(data, indent=2)

    def import_session(self, blob: str | bytes) -> Session:
        """Register an exported session under a fresh id.

        Imported snapshots get fresh ids too and are re-pointed at the new
        session, with checksums recomputed for the rewritten state.
        """
        try:
            data = json.loads(blob)
        except ValueError as e:
            raise ImportFormatError(f"Export is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ImportFormatError("Export must be a JSON object")

        version = data.get("version")
        if not version:
            raise ImportFormatError("Export is missing its version tag")
        if str(version).split(".")[0] != EXPORT_FORMAT_VERSION.split(".")[0]:
            raise ImportFormatError(f"Unsupported export version: {version}")

        raw_session = data.get("session")
        if not isinstance(raw_session, dict):
            raise ImportFormatError("Export is missing the session")

        new_id = str(uuid.uuid4())
        now = self._now()
        try:
            session = Session.from_dict({**raw_session, "id": new_id}, now=now)
            snapshots = [
                StateSnapshot.from_dict(raw, now=now) for raw in data.get("snapshots") or []
            ]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ImportFormatError(f"Malformed export: {e}") from e

        rebound: list[StateSnapshot] = []
        for snapshot in snapshots[-self._config.limits.max_snapshots :]:
            state = copy.deepcopy(snapshot.state)
            state.id = new_id
            rebound.append(
                StateSnapshot(
                    id=str(uuid.uuid4()),
                    session_id=new_id,
                    timestamp=snapshot.timestamp,
                    state=state,
                    checksum=self._persistence.checksum(state.to_dict()),
                )
            )

        self._ensure_capacity()
        self._touch(session)
        self._enforce_context_limit(session)
        self._sessions[new_id] = session
        if rebound:
            self._snapshots[new_id] = rebound
        logger.info(
            "session_imported",
            extra={"session.id": new_id, "snapshots.count": len(rebound)},
        )
        return session

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def save_state(self) -> bool:
        """Persist the whole registry plus one redundant key per session.

        Storage failures are logged, not raised. Returns False if any write
        failed.
        """
        async with self._state_lock:
            # Serialize up front so later mutations can't tear the payload
            state = self._serialize_state()
            session_payloads = {sid: s.to_dict() for sid, s in self._sessions.items()}
            ok = True

            try:
                await self._persistence.save(STATE_KEY, state)
            except PersistenceError:
                logger.error("state_save_failed", extra={"state.key": STATE_KEY}, exc_info=True)
                ok = False

            for session_id, payload in session_payloads.items():
                key = f"{SESSION_KEY_PREFIX}{session_id}"
                try:
                    await self._persistence.save(key, payload)
                except PersistenceError:
                    logger.error("state_save_failed", extra={"state.key": key}, exc_info=True)
                    ok = False

            try:
                for key in await self._persistence.list(SESSION_KEY_PREFIX):
                    if key[len(SESSION_KEY_PREFIX) :] not in session_payloads:
                        await self._persistence.delete(key)
            except PersistenceError:
                logger.error("state_prune_failed", exc_info=True)
                ok = False

            return ok

    async def load_state(self) -> int:
        """Restore the registry from storage.

        Falls back to the per-session keys when the bulk state is missing or
        unreadable. Failures are logged; the current registry is kept when
        nothing could be loaded. Returns the number of sessions restored.
        """
        async with self._state_lock:
            sessions: dict[str, Session] = {}
            snapshots: dict[str, list[StateSnapshot]] = {}

            try:
                state = await self._persistence.load(STATE_KEY)
            except PersistenceError:
                logger.error("state_load_failed", extra={"state.key": STATE_KEY}, exc_info=True)
                state = None

            if state is not None:
                try:
                    sessions, snapshots = _deserialize_state(state, now=self._now())
                except (KeyError, TypeError, ValueError, AttributeError):
                    logger.error("state_decode_failed", exc_info=True)
                    sessions, snapshots = {}, {}

            if not sessions:
                sessions = await self._load_session_keys()

            if not sessions:
                return 0

            for session in sessions.values():
                self._enforce_context_limit(session)
            self._sessions = sessions
            self._snapshots = {sid: snaps for sid, snaps in snapshots.items() if sid in sessions}
            logger.info("state_loaded", extra={"sessions.count": len(sessions)})
            return len(sessions)

    async def _load_session_keys(self) -> dict[str, Session]:
        sessions: dict[str, Session] = {}
        try:
            keys = await self._persistence.list(SESSION_KEY_PREFIX)
        except PersistenceError:
            logger.error("state_list_failed", exc_info=True)
            return sessions

        for key in keys:
            try:
                payload = await self._persistence.load(key)
                if payload is None:
                    continue
                session = Session.from_dict(payload, now=self._now())
            except PersistenceError:
                logger.warning("session_load_failed", extra={"state.key": key}, exc_info=True)
                continue
            except (KeyError, TypeError, ValueError, AttributeError):
                logger.warning("session_decode_failed", extra={"state.key": key}, exc_info=True)
                continue
            sessions[session.id] = session
        return sessions

    def _serialize_state(self) -> dict[str, Any]:
        return {
            "version": EXPORT_FORMAT_VERSION,
            "timestamp": self._now().isoformat(),
            "sessions": [s.to_dict() for s in self._sessions.values()],
            "snapshots": {
                sid: [snap.to_dict() for snap in snaps]
                for sid, snaps in self._snapshots.items()
            },
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _touch(self, session: Session) -> None:
        now = self._now()
        if now > session.last_activity:
            session.last_activity = now

    def _enforce_context_limit(self, session: Session) -> None:
        max_size = self._config.limits.max_context_size
        if session.context.serialized_size() > max_size:
            session.context = self._context_manager.trim_context(session.context, max_size)
            logger.info("session_context_trimmed", extra={"session.id": session.id})


def _build_stage(raw: Any, now: datetime) -> EvolutionStage:
    if isinstance(raw, EvolutionStage):
        return raw
    return EvolutionStage.from_dict(dict(raw or {}), now=now)


def _integrity_problem(session: Session, now: datetime) -> str | None:
    if not session.id or not session.user_id:
        return "missing id or user_id"
    if not isinstance(session.context, SessionContext):
        return "missing context"
    metrics = session.metrics
    if metrics.total_generations < 0:
        return "negative total_generations"
    if not MADNESS_MIN <= metrics.average_madness_index <= MADNESS_MAX:
        return "average_madness_index out of range"
    if metrics.successful_hybrids < 0:
        return "negative successful_hybrids"
    if any(count < 0 for count in metrics.tool_usage.values()):
        return "negative tool usage count"
    if session.start_time > session.last_activity:
        return "start_time after last_activity"
    if session.last_activity > now:
        return "last_activity in the future"
    return None


def _deserialize_state(
    state: dict[str, Any],
    *,
    now: datetime,
) -> tuple[dict[str, Session], dict[str, list[StateSnapshot]]]:
    sessions = {}
    for raw in state.get("sessions") or []:
        session = Session.from_dict(raw, now=now)
        sessions[session.id] = session
    snapshots = {
        str(sid): [StateSnapshot.from_dict(raw, now=now) for raw in raws]
        for sid, raws in (state.get("snapshots") or {}).items()
    }
    return sessions, snapshots


def _utcnow() -> datetime:
    return datetime.now(UTC)
