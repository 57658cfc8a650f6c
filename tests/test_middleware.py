"""Tests for tool-call middleware."""

import logging

import pytest

from lensstate.state.middleware import (
    EVOLUTION_TOOL,
    HYBRID_TOOL,
    LENS_TOOL,
    AutoSaveMiddleware,
    CleanupMiddleware,
    ContextLimitMiddleware,
    MiddlewarePipeline,
    SessionMiddleware,
    ToolMiddleware,
    create_default_pipeline,
)
from tests.conftest import FakeMonotonic


def _returning(result):
    seen = []

    async def handler(args):
        seen.append(dict(args))
        return result

    handler.seen = seen
    return handler


class RecordingMiddleware(ToolMiddleware):
    def __init__(self, name, priority, log):
        self.name = name
        self.priority = priority
        self._log = log

    async def before_tool(self, call):
        self._log.append(f"{self.name}.before")

    async def after_tool(self, call, result):
        self._log.append(f"{self.name}.after")

    async def on_error(self, call, error):
        self._log.append(f"{self.name}.error:{type(error).__name__}")


class BrokenMiddleware(ToolMiddleware):
    name = "broken"
    priority = 50

    async def after_tool(self, call, result):
        raise RuntimeError("hook exploded")


class TestSessionMiddleware:
    @pytest.mark.asyncio
    async def test_lens_call_creates_anonymous_session(self, manager):
        pipeline = MiddlewarePipeline([SessionMiddleware(manager)])
        handler = _returning({"prompt": "see it as a coral reef", "domains": ["biology", "jazz"]})

        result = await pipeline.run(LENS_TOOL, {"problem": "traffic"}, handler)

        assert result["prompt"] == "see it as a coral reef"
        session_id = handler.seen[0]["session_id"]
        session = manager.get_session(session_id)
        assert session.user_id == "anonymous"
        assert session.context.generated_lenses[0].domains == ["biology", "jazz"]
        assert session.metrics.total_generations == 1
        assert session.metrics.unique_domains_used == frozenset({"biology", "jazz"})
        assert session.metrics.tool_usage == {LENS_TOOL: 1}
        assert manager.list_snapshots(session_id) == []

    @pytest.mark.asyncio
    async def test_existing_session_is_reused(self, manager):
        session = manager.create_session("u1")
        pipeline = MiddlewarePipeline([SessionMiddleware(manager)])

        await pipeline.run(LENS_TOOL, {"session_id": session.id}, _returning({}))

        assert len(manager.get_all_sessions()) == 1
        assert session.metrics.tool_usage == {LENS_TOOL: 1}
        assert session.context.generated_lenses == []

    @pytest.mark.asyncio
    async def test_unknown_session_id_gets_fresh_session(self, manager):
        pipeline = MiddlewarePipeline([SessionMiddleware(manager)])
        handler = _returning({})

        await pipeline.run(LENS_TOOL, {"session_id": "gone", "user_id": "u9"}, handler)

        session = manager.get_session(handler.seen[0]["session_id"])
        assert session.user_id == "u9"

    @pytest.mark.asyncio
    async def test_evolution_records_stage_and_snapshots(self, manager):
        session = manager.create_session("u1")
        pipeline = MiddlewarePipeline([SessionMiddleware(manager)])
        args = {"session_id": session.id, "idea": "umbrella", "madness_level": 8, "target_stage": 2}

        await pipeline.run(EVOLUTION_TOOL, args, _returning({"evolution": "umbrella drone"}))

        chain = session.context.evolution_chains[0]
        assert chain.original_idea == "umbrella"
        assert chain.stages[0].stage == 2
        assert chain.stages[0].content == "umbrella drone"
        assert session.metrics.average_madness_index == 8
        assert len(manager.list_snapshots(session.id)) == 1

    @pytest.mark.asyncio
    async def test_hybrid_success_counts(self, manager):
        session = manager.create_session("u1")
        pipeline = MiddlewarePipeline([SessionMiddleware(manager)])
        args = {"session_id": session.id, "idea_a": "bike", "idea_b": "library"}

        await pipeline.run(HYBRID_TOOL, args, _returning({"hybrid": "bike library", "success": True}))

        hybrid = session.context.hybrid_attempts[0]
        assert (hybrid.idea_a, hybrid.idea_b, hybrid.method) == ("bike", "library", "synthesis")
        assert session.metrics.successful_hybrids == 1
        assert len(manager.list_snapshots(session.id)) == 1

    @pytest.mark.asyncio
    async def test_session_removed_during_call(self, manager):
        session = manager.create_session("u1")
        pipeline = MiddlewarePipeline([SessionMiddleware(manager)])

        async def handler(args):
            manager.delete_session(args["session_id"])
            return {"prompt": "too late"}

        await pipeline.run(LENS_TOOL, {"session_id": session.id}, handler)

        assert pipeline.hook_failures == {}
        assert manager.get_all_sessions() == []


class TestPipeline:
    @pytest.mark.asyncio
    async def test_hooks_run_in_priority_order(self):
        log = []
        pipeline = MiddlewarePipeline(
            [RecordingMiddleware("late", 20, log), RecordingMiddleware("early", 10, log)]
        )

        await pipeline.run("any_tool", {}, _returning({}))

        assert [m.name for m in pipeline.middlewares] == ["early", "late"]
        assert log == ["early.before", "late.before", "early.after", "late.after"]

    @pytest.mark.asyncio
    async def test_handler_error_propagates_after_on_error(self):
        log = []
        pipeline = MiddlewarePipeline([RecordingMiddleware("rec", 10, log)])

        async def handler(args):
            raise KeyError("boom")

        with pytest.raises(KeyError):
            await pipeline.run("any_tool", {}, handler)
        assert log == ["rec.before", "rec.error:KeyError"]

    @pytest.mark.asyncio
    async def test_failing_hook_is_isolated(self):
        log = []
        pipeline = MiddlewarePipeline([BrokenMiddleware(), RecordingMiddleware("rec", 100, log)])

        result = await pipeline.run("any_tool", {}, _returning({"ok": True}))

        assert result == {"ok": True}
        assert log == ["rec.before", "rec.after"]
        assert pipeline.hook_failures == {"broken.after_tool": 1}


class TestAutoSaveMiddleware:
    @pytest.mark.asyncio
    async def test_saves_only_after_interval(self, manager):
        tick = FakeMonotonic()
        middleware = AutoSaveMiddleware(manager, interval=10, clock=tick)
        pipeline = MiddlewarePipeline([middleware])
        manager.create_session("u1")

        tick.value = 5
        await pipeline.run("any_tool", {}, _returning({}))
        assert await manager.persistence.exists("state") is False

        tick.value = 11
        await pipeline.run("any_tool", {}, _returning({}))
        assert await manager.persistence.exists("state") is True


class TestCleanupMiddleware:
    @pytest.mark.asyncio
    async def test_sweeps_after_check_interval(self, manager, clock):
        tick = FakeMonotonic()
        pipeline = MiddlewarePipeline(
            [CleanupMiddleware(manager, max_session_age=60, check_interval=100, clock=tick)]
        )
        manager.create_session("u1")
        clock.advance(120)

        tick.value = 50
        await pipeline.run("any_tool", {}, _returning({}))
        assert len(manager.get_all_sessions()) == 1

        tick.value = 101
        await pipeline.run("any_tool", {}, _returning({}))
        assert manager.get_all_sessions() == []


class TestContextLimitMiddleware:
    @pytest.mark.asyncio
    async def test_warns_near_limit(self, manager, caplog):
        session = manager.create_session("u1", "x" * 200)
        pipeline = MiddlewarePipeline([ContextLimitMiddleware(manager, max_size=200)])

        with caplog.at_level(logging.WARNING, logger="lensstate.state.middleware"):
            await pipeline.run("any_tool", {}, _returning({}))
            assert "session_context_near_limit" not in caplog.text

            await pipeline.run("any_tool", {"session_id": session.id}, _returning({}))

        assert "session_context_near_limit" in caplog.text
        assert session.context.current_problem == "x" * 200


def test_default_pipeline(manager):
    pipeline = create_default_pipeline(manager)
    assert [m.name for m in pipeline.middlewares] == ["session", "context_limit", "cleanup"]
