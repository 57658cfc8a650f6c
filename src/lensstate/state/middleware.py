"""Tool-call middleware over the state manager.

Contributors are run in (priority, name) order. A failing hook is logged,
counted and skipped so one contributor can't break the tool call; only
the tool handler's own exceptions propagate to the caller.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from lensstate.state.errors import SessionNotFoundError
from lensstate.state.manager import StateManager
from lensstate.state.types import ContextKind, MetricKind

logger = logging.getLogger(__name__)

LENS_TOOL = "generate_creative_lens_prompt"
EVOLUTION_TOOL = "evolve_idea_with_structure"
HYBRID_TOOL = "create_hybrid_framework"

# Tools whose completion changes enough state to warrant a snapshot
SNAPSHOT_TOOLS = frozenset({EVOLUTION_TOOL, HYBRID_TOOL})

ANONYMOUS_USER = "anonymous"
DEFAULT_MADNESS_LEVEL = 5

ToolHandler = Callable[[dict[str, Any]], Awaitable[Mapping[str, Any]]]


@dataclass(slots=True)
class ToolCall:
    """One tool invocation as seen by the middleware."""

    tool: str
    args: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None


class ToolMiddleware:
    """Base class for tool middleware contributors."""

    name = "middleware"
    priority = 1000

    async def before_tool(self, call: ToolCall) -> None:
        """Run before the tool handler."""
        return None

    async def after_tool(self, call: ToolCall, result: Mapping[str, Any]) -> None:
        """Run after the tool handler returned."""
        return None

    async def on_error(self, call: ToolCall, error: BaseException) -> None:
        """Run when the tool handler raised."""
        return None


class SessionMiddleware(ToolMiddleware):
    """Resolves the session for a call and records the tool's output."""

    name = "session"
    priority = 100

    def __init__(self, manager: StateManager) -> None:
        self._manager = manager

    async def before_tool(self, call: ToolCall) -> None:
        session_id = call.session_id or call.args.get("session_id")
        if not session_id or self._manager.get_session(session_id) is None:
            if session_id:
                logger.info("tool_session_unknown", extra={"session.id": session_id})
            user_id = str(call.args.get("user_id") or ANONYMOUS_USER)
            session_id = self._manager.create_session(user_id).id

        call.session_id = session_id
        call.args["session_id"] = session_id
        self._manager.update_metrics(session_id, MetricKind.TOOL_USAGE, call.tool)

    async def after_tool(self, call: ToolCall, result: Mapping[str, Any]) -> None:
        if not call.session_id:
            return
        try:
            self._record(call, result)
            if call.tool in SNAPSHOT_TOOLS:
                self._manager.create_snapshot(call.session_id)
        except SessionNotFoundError:
            # Session evicted or cleaned up while the tool ran
            logger.warning(
                "tool_session_gone",
                extra={"session.id": call.session_id, "tool": call.tool},
            )

    async def on_error(self, call: ToolCall, error: BaseException) -> None:
        logger.error(
            "tool_failed",
            extra={
                "session.id": call.session_id,
                "tool": call.tool,
                "error.type": type(error).__name__,
            },
        )

    def _record(self, call: ToolCall, result: Mapping[str, Any]) -> None:
        manager = self._manager
        session_id = call.session_id
        args = call.args

        if call.tool == LENS_TOOL:
            prompt = result.get("prompt")
            if not prompt:
                return
            domains = list(result.get("domains") or [])
            manager.add_to_context(
                session_id, ContextKind.LENS, {"prompt": prompt, "domains": domains}
            )
            manager.update_metrics(session_id, MetricKind.TOTAL_GENERATIONS)
            for domain in domains:
                manager.update_metrics(session_id, MetricKind.DOMAIN, domain)

        elif call.tool == EVOLUTION_TOOL:
            evolution = result.get("evolution")
            if not evolution:
                return
            madness_level = args.get("madness_level") or DEFAULT_MADNESS_LEVEL
            manager.add_to_context(
                session_id,
                ContextKind.EVOLUTION,
                {
                    "original_idea": args.get("idea"),
                    "stage": {
                        "stage": args.get("target_stage") or 1,
                        "content": evolution,
                        "madness_level": madness_level,
                    },
                },
            )
            manager.update_metrics(session_id, MetricKind.MADNESS_INDEX, madness_level)

        elif call.tool == HYBRID_TOOL:
            hybrid = result.get("hybrid")
            if not hybrid:
                return
            manager.add_to_context(
                session_id,
                ContextKind.HYBRID,
                {
                    "idea_a": args.get("idea_a"),
                    "idea_b": args.get("idea_b"),
                    "method": args.get("method") or "synthesis",
                    "result": hybrid,
                },
            )
            if result.get("success"):
                manager.update_metrics(session_id, MetricKind.SUCCESSFUL_HYBRID)


class AutoSaveMiddleware(ToolMiddleware):
    """Saves state after a call once ``interval`` seconds have passed."""

    name = "auto_save"
    priority = 300

    def __init__(
        self,
        manager: StateManager,
        interval: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._manager = manager
        self._interval = interval
        self._clock = clock
        self._last_save = clock()

    async def after_tool(self, call: ToolCall, result: Mapping[str, Any]) -> None:
        now = self._clock()
        if now - self._last_save > self._interval:
            self._last_save = now
            await self._manager.save_state()


class CleanupMiddleware(ToolMiddleware):
    """Sweeps sessions older than ``max_session_age`` at most every ``check_interval``."""

    name = "cleanup"
    priority = 400

    def __init__(
        self,
        manager: StateManager,
        max_session_age: float | None = None,
        check_interval: float = 60 * 60,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._manager = manager
        self._max_session_age = max_session_age or manager.config.limits.max_session_age
        self._check_interval = check_interval
        self._clock = clock
        self._last_check = clock()

    async def after_tool(self, call: ToolCall, result: Mapping[str, Any]) -> None:
        now = self._clock()
        if now - self._last_check > self._check_interval:
            self._last_check = now
            self._manager.cleanup_inactive_sessions(self._max_session_age)


class ContextLimitMiddleware(ToolMiddleware):
    """Warns when a session's context nears the byte ceiling.

    Read-only; the hard trim happens inside the manager.
    """

    name = "context_limit"
    priority = 200

    def __init__(
        self,
        manager: StateManager,
        max_size: int | None = None,
        warning_ratio: float | None = None,
    ) -> None:
        self._manager = manager
        self._max_size = max_size or manager.config.limits.max_context_size
        self._warning_ratio = warning_ratio or manager.config.context.context_warning_ratio

    async def after_tool(self, call: ToolCall, result: Mapping[str, Any]) -> None:
        if not call.session_id:
            return
        session = self._manager.get_session(call.session_id)
        if session is None:
            return
        size = session.context.serialized_size()
        if size > self._max_size * self._warning_ratio:
            logger.warning(
                "session_context_near_limit",
                extra={
                    "session.id": call.session_id,
                    "context.bytes": size,
                    "context.max_bytes": self._max_size,
                },
            )


class MiddlewarePipeline:
    """Deterministic middleware pipeline around tool handlers."""

    def __init__(self, middlewares: list[ToolMiddleware] | None = None) -> None:
        self._middlewares = tuple(
            sorted(middlewares or [], key=lambda m: (m.priority, m.name))
        )
        self._hook_failure_counts: dict[str, int] = {}

    @property
    def middlewares(self) -> tuple[ToolMiddleware, ...]:
        return self._middlewares

    @property
    def hook_failures(self) -> dict[str, int]:
        return dict(sorted(self._hook_failure_counts.items()))

    def _log_hook_failure(self, *, hook_name: str, middleware: ToolMiddleware) -> None:
        key = f"{middleware.name}.{hook_name}"
        self._hook_failure_counts[key] = self._hook_failure_counts.get(key, 0) + 1
        logger.warning(
            "middleware_hook_failed",
            extra={
                "middleware.name": middleware.name,
                "middleware.priority": middleware.priority,
                "middleware.hook": hook_name,
            },
            exc_info=True,
        )

    async def before_tool(self, call: ToolCall) -> None:
        for middleware in self._middlewares:
            try:
                await middleware.before_tool(call)
            except Exception:
                self._log_hook_failure(hook_name="before_tool", middleware=middleware)

    async def after_tool(self, call: ToolCall, result: Mapping[str, Any]) -> None:
        for middleware in self._middlewares:
            try:
                await middleware.after_tool(call, result)
            except Exception:
                self._log_hook_failure(hook_name="after_tool", middleware=middleware)

    async def on_error(self, call: ToolCall, error: BaseException) -> None:
        for middleware in self._middlewares:
            try:
                await middleware.on_error(call, error)
            except Exception:
                self._log_hook_failure(hook_name="on_error", middleware=middleware)

    async def run(
        self,
        tool: str,
        args: Mapping[str, Any],
        handler: ToolHandler,
    ) -> Mapping[str, Any]:
        """Run ``handler`` for ``tool`` with every hook around it.

        The handler receives the args with ``session_id`` filled in.
        """
        call = ToolCall(tool=tool, args=dict(args), session_id=args.get("session_id"))
        await self.before_tool(call)
        try:
            result = await handler(call.args)
        except Exception as e:
            await self.on_error(call, e)
            raise
        await self.after_tool(call, result)
        return result


def create_default_pipeline(manager: StateManager) -> MiddlewarePipeline:
    """Build the standard session, context-limit, auto-save and cleanup pipeline."""
    config = manager.config
    auto_save_interval = config.persistence.auto_save_interval
    middlewares: list[ToolMiddleware] = [
        SessionMiddleware(manager),
        ContextLimitMiddleware(manager),
        CleanupMiddleware(manager, config.limits.max_session_age),
    ]
    if auto_save_interval:
        middlewares.append(AutoSaveMiddleware(manager, auto_save_interval))
    return MiddlewarePipeline(middlewares)
