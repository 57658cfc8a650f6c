"""Session state subsystem public API.

Public API:
- StateManager: Main entry point
- PersistenceHandler: Durable key/blob store
- ContextManager: Context trimming, archiving and merging
- SessionAnalytics: Trend, domain, pattern and health reports
- MiddlewarePipeline: Hooks around tool calls

Types:
- Session, SessionContext, SessionMetrics, SessionPreferences, StateSnapshot
- SessionUpdate, ContextUpdate, MetricsUpdate
"""

from lensstate.state.analytics import SessionAnalytics
from lensstate.state.context import ContextManager
from lensstate.state.errors import (
    BackendNotImplementedError,
    ImportFormatError,
    NotFoundError,
    PersistenceError,
    SessionNotFoundError,
    SnapshotNotFoundError,
    StateError,
)
from lensstate.state.manager import EXPORT_FORMAT_VERSION, StateManager
from lensstate.state.middleware import (
    AutoSaveMiddleware,
    CleanupMiddleware,
    ContextLimitMiddleware,
    MiddlewarePipeline,
    SessionMiddleware,
    ToolCall,
    ToolMiddleware,
    create_default_pipeline,
)
from lensstate.state.persistence import PersistenceHandler
from lensstate.state.types import (
    ArchivedData,
    ArchiveSummary,
    ContextKind,
    ContextUpdate,
    EvolutionChain,
    EvolutionStage,
    HybridAttempt,
    LensRecord,
    MetricKind,
    MetricsUpdate,
    PriorityCriteria,
    Session,
    SessionContext,
    SessionHealth,
    SessionMetrics,
    SessionPreferences,
    SessionReport,
    SessionStatus,
    SessionUpdate,
    StateSnapshot,
)

__all__ = [
    "EXPORT_FORMAT_VERSION",
    "ArchiveSummary",
    "ArchivedData",
    "AutoSaveMiddleware",
    "BackendNotImplementedError",
    "CleanupMiddleware",
    "ContextKind",
    "ContextLimitMiddleware",
    "ContextManager",
    "ContextUpdate",
    "EvolutionChain",
    "EvolutionStage",
    "HybridAttempt",
    "ImportFormatError",
    "LensRecord",
    "MetricKind",
    "MetricsUpdate",
    "MiddlewarePipeline",
    "NotFoundError",
    "PersistenceError",
    "PersistenceHandler",
    "PriorityCriteria",
    "Session",
    "SessionAnalytics",
    "SessionContext",
    "SessionHealth",
    "SessionMetrics",
    "SessionMiddleware",
    "SessionNotFoundError",
    "SessionPreferences",
    "SessionReport",
    "SessionStatus",
    "SessionUpdate",
    "SnapshotNotFoundError",
    "StateError",
    "StateManager",
    "StateSnapshot",
    "ToolCall",
    "ToolMiddleware",
    "create_default_pipeline",
]
