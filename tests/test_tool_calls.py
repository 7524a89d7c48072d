"""Tests for tool call recording and the tool registry."""

import pytest

from folio.agents import ToolRegistry, ToolSession, with_recording
from folio.db import ToolCallStatus
from folio.errors import InvalidTransitionError, ToolExecutionError, ToolNotFoundError


def _registry() -> ToolRegistry:
    registry = ToolRegistry()

    @registry.tool("navigate", description=lambda args: f"Visiting {args.get('url')}")
    async def navigate(session: ToolSession, url: str) -> dict:
        session.state["current_url"] = url
        return {"success": True, "current_url": url, "title": "Example"}

    @registry.tool()
    def word_count(session: ToolSession, text: str) -> int:
        return len(text.split())

    @registry.tool("explode")
    async def explode(session: ToolSession) -> None:
        raise ToolExecutionError("browser crashed")

    return registry


class TestRecordingWrapper:
    """Tests for the recording decorator around tool dispatch."""

    @pytest.mark.asyncio
    async def test_success_is_recorded(self, service) -> None:
        registry = _registry()
        session = ToolSession(context=service)

        result = await registry.dispatch(session, "navigate", {"url": "https://example.com"})

        assert result == {"success": True, "current_url": "https://example.com", "title": "Example"}
        assert session.state["current_url"] == "https://example.com"
        [tool_call] = await service.tool_calls()
        assert tool_call.status == ToolCallStatus.COMPLETED
        assert tool_call.arguments == {"url": "https://example.com"}
        assert tool_call.result == result
        assert tool_call.started_at is not None
        assert tool_call.duration_ms >= 0
        assert tool_call.position == 0

    @pytest.mark.asyncio
    async def test_sync_handler_and_scalar_result(self, service) -> None:
        registry = _registry()
        assert await registry.dispatch(ToolSession(context=service), "word_count", {"text": "a b c"}) == 3
        [tool_call] = await service.tool_calls_for("word_count")
        assert tool_call.result == {"value": 3}

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_reraised(self, service) -> None:
        registry = _registry()

        with pytest.raises(ToolExecutionError, match="browser crashed"):
            await registry.dispatch(ToolSession(context=service), "explode")

        [tool_call] = await service.tool_calls()
        assert tool_call.status == ToolCallStatus.FAILED
        assert tool_call.error_message == "browser crashed"
        assert tool_call.completed_at is not None
        assert tool_call.duration_ms >= 0
        assert tool_call.result is None

    @pytest.mark.asyncio
    async def test_original_exception_type_preserved(self, service) -> None:
        async def flaky(session: ToolSession, attempt: int) -> None:
            raise KeyError(f"attempt {attempt}")

        tool = with_recording("flaky", flaky)
        with pytest.raises(KeyError) as exc:
            await tool(ToolSession(context=service), attempt=2)
        assert exc.value.args == ("attempt 2",)

        [tool_call] = await service.tool_calls()
        assert tool_call.failed
        assert tool_call.arguments == {"attempt": 2}

    @pytest.mark.asyncio
    async def test_passthrough_without_context(self, session_factory) -> None:
        registry = _registry()
        result = await registry.dispatch(ToolSession(), "navigate", {"url": "https://example.com"})
        assert result["title"] == "Example"
        with pytest.raises(ToolExecutionError):
            await registry.dispatch(ToolSession(), "explode")

    def test_wraps_once(self) -> None:
        async def handler(session: ToolSession) -> None:
            return None

        wrapped = with_recording("noop", handler)
        assert with_recording("noop", wrapped) is wrapped

    def test_registration_is_idempotent(self) -> None:
        registry = ToolRegistry()

        def first(session: ToolSession) -> str:
            return "first"

        def second(session: ToolSession) -> str:
            return "second"

        tool = registry.register("lookup", first)
        assert registry.register("lookup", second) is tool
        assert len(registry) == 1
        assert registry.names == ["lookup"]

    @pytest.mark.asyncio
    async def test_unknown_tool(self) -> None:
        with pytest.raises(ToolNotFoundError):
            await _registry().dispatch(ToolSession(), "fly")

    def test_describe(self) -> None:
        registry = _registry()
        assert registry.describe("navigate", {"url": "https://example.com"}) == "Visiting https://example.com"
        assert registry.describe("word_count") == "Word count"


class TestToolCallService:
    """Tests for tool call reads and statistics on a context."""

    @pytest.mark.asyncio
    async def test_start_complete(self, service) -> None:
        tool_call = await service.record_tool_call_start(
            "navigate", '{"url": "https://example.com"}', tool_call_id="call_1"
        )
        assert tool_call.status == ToolCallStatus.EXECUTING
        assert tool_call.arguments == {"url": "https://example.com"}
        assert tool_call.tool_call_id == "call_1"

        completed = await service.record_tool_call_complete(tool_call, '{"success": true}')
        assert completed.result == {"success": True}
        assert completed.success

    @pytest.mark.asyncio
    async def test_completion_recorded_once(self, service) -> None:
        tool_call = await service.record_tool_call_start("navigate", {})
        await service.record_tool_call_complete(tool_call, {"success": True})
        with pytest.raises(InvalidTransitionError):
            await service.record_tool_call_failure(tool_call, "late failure")
        [stored] = await service.tool_calls()
        assert stored.status == ToolCallStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_statistics(self, service) -> None:
        registry = _registry()
        session = ToolSession(context=service)
        await registry.dispatch(session, "navigate", {"url": "https://a.example"})
        await registry.dispatch(session, "navigate", {"url": "https://b.example"})
        await registry.dispatch(session, "word_count", {"text": "one two"})
        with pytest.raises(ToolExecutionError):
            await registry.dispatch(session, "explode")
        await service.record_tool_call_start("word_count", {"text": "pending"})

        stats = await service.tool_call_statistics()
        assert stats["total"] == 5
        assert stats["completed"] == 3
        assert stats["failed"] == 1
        assert stats["executing"] == 1
        assert stats["pending"] == 0
        assert stats["total_duration_ms"] >= 0
        assert stats["by_tool"] == {"navigate": 2, "word_count": 2, "explode": 1}

        assert [tc.position for tc in await service.tool_calls()] == [0, 1, 2, 3, 4]
        assert len(await service.tool_calls(status="failed")) == 1

    @pytest.mark.asyncio
    async def test_results_for_prompts(self, service) -> None:
        registry = _registry()
        session = ToolSession(context=service)
        for url in ("https://a.example", "https://b.example", "https://c.example"):
            await registry.dispatch(session, "navigate", {"url": url})

        results = await service.tool_call_results(limit=2)
        assert [r["arguments"]["url"] for r in results] == ["https://b.example", "https://c.example"]
        assert await service.tool_call_results(limit=0) == []

        urls = [r["current_url"] for r in await service.tool_results_for("navigate")]
        assert urls == ["https://a.example", "https://b.example", "https://c.example"]

        text = await service.format_tool_results(limit=1)
        assert text.startswith("Tool: navigate\n")
        assert '"url": "https://c.example"' in text
        assert "---" not in text
