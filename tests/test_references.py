"""Tests for reference extraction from tool calls."""

import asyncio
from typing import Any

import pytest

from folio.agents import AgentContextService, ReferenceExtractor, ToolRegistry, ToolSession
from folio.db import ReferenceStatus


async def _record(service: AgentContextService, name: str, result: Any, **arguments: Any):
    tool_call = await service.record_tool_call_start(name, arguments)
    return await service.record_tool_call_complete(tool_call, result)


def _navigate(url: str, title: str | None = "Example") -> dict:
    result = {"success": True, "current_url": url}
    if title is not None:
        result["title"] = title
    return result


class TestBulkExtraction:
    """Tests for extract_references over a whole context."""

    @pytest.mark.asyncio
    async def test_navigate_creates_reference(self, service) -> None:
        tool_call = await _record(
            service, "navigate", _navigate("https://example.com"), url="https://example.com"
        )

        [ref] = await service.extract_references()

        assert ref.url == "https://example.com"
        assert ref.title == "Example"
        assert ref.domain == "example.com"
        assert ref.status == ReferenceStatus.COMPLETE
        assert ref.agent_tool_call_id == tool_call.id
        assert ref.position == 0

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, service) -> None:
        await _record(service, "navigate", _navigate("https://example.com"))
        await _record(service, "navigate", _navigate("https://example.org", "Org"))
        await _record(
            service,
            "extract_links",
            {"success": True, "links": [{"href": "https://example.net", "text": "Net"}]},
        )

        await service.extract_references()
        first = await service.references()
        await service.extract_references()
        second = await service.references()

        assert len(first) == len(second) == 3
        assert [r.url for r in second] == [
            "https://example.com",
            "https://example.org",
            "https://example.net",
        ]
        assert [r.position for r in second] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_same_url_navigated_twice(self, service) -> None:
        await _record(service, "navigate", _navigate("https://example.com", "Old"))
        await _record(service, "navigate", _navigate("https://example.com", "New"))

        await service.extract_references()

        [ref] = await service.references()
        assert ref.title == "New"

    @pytest.mark.asyncio
    async def test_long_title_stored_whole(self, service) -> None:
        title = "T" * 2000
        await _record(service, "navigate", _navigate("https://example.com", title))

        await service.extract_references()

        [ref] = await service.references()
        assert ref.title == title

    @pytest.mark.asyncio
    async def test_main_content_enriches_existing(self, service) -> None:
        await _record(service, "navigate", _navigate("https://example.com", title=None))
        await _record(
            service,
            "extract_main_content",
            {
                "success": True,
                "current_url": "https://example.com",
                "content": "x" * 1500,
                "title": "From content",
            },
        )
        await _record(
            service,
            "extract_main_content",
            {"success": True, "current_url": "https://unknown.example", "content": "ignored"},
        )

        await service.extract_references()

        [ref] = await service.references()
        assert ref.title == "From content"
        assert len(ref.extracted_content) == 1000
        assert ref.extracted_content.endswith("...")

    @pytest.mark.asyncio
    async def test_main_content_keeps_navigated_title(self, service) -> None:
        await _record(service, "navigate", _navigate("https://example.com", "Navigated"))
        await _record(
            service,
            "extract_main_content",
            {"success": True, "current_url": "https://example.com", "content": "Body", "title": "Other"},
        )
        await service.extract_references()

        [ref] = await service.references()
        assert ref.title == "Navigated"
        assert ref.extracted_content == "Body"

    @pytest.mark.asyncio
    async def test_links_never_overwrite(self, service) -> None:
        await _record(service, "navigate", _navigate("https://example.com", "Navigated"))
        await _record(
            service,
            "extract_links",
            {
                "success": True,
                "links": [
                    {"href": "https://example.com", "text": "Link text"},
                    {"href": "/relative", "text": "Relative"},
                    {"href": "mailto:someone@example.com"},
                    {"href": "https://example.org"},
                    {"href": "https://example.org", "text": "Again"},
                ],
            },
        )
        await service.extract_references()

        refs = await service.references()
        assert [(r.url, r.title, r.status) for r in refs] == [
            ("https://example.com", "Navigated", "complete"),
            ("https://example.org", None, "pending"),
        ]

    @pytest.mark.asyncio
    async def test_links_are_capped(self, service) -> None:
        links = [{"href": f"https://example.com/{i}", "text": f"Link {i}"} for i in range(25)]
        await _record(service, "extract_links", {"success": True, "links": links})

        await service.extract_references()

        refs = await service.references()
        assert len(refs) == 10
        assert refs[-1].url == "https://example.com/9"

    @pytest.mark.asyncio
    async def test_unsuccessful_and_malformed_results_skipped(self, service) -> None:
        await _record(service, "navigate", {"success": False, "current_url": "https://failed.example"})
        await _record(service, "navigate", {"success": True, "current_url": 42})
        await _record(service, "extract_links", {"success": True, "links": "not a list"})
        await _record(service, "navigate", "<html>not json</html>")
        await _record(service, "navigate", _navigate("https://example.com"))

        refs = await service.extract_references()

        assert [r.url for r in refs] == ["https://example.com"]

    @pytest.mark.asyncio
    async def test_failed_and_unrelated_calls_ignored(self, service) -> None:
        tool_call = await service.record_tool_call_start("navigate", {"url": "https://example.com"})
        await service.record_tool_call_failure(tool_call, "timeout")
        await _record(service, "search", {"success": True, "current_url": "https://search.example"})

        assert await service.extract_references() == []

    @pytest.mark.asyncio
    async def test_custom_tool_names(self, session_factory) -> None:
        service = await AgentContextService.create(
            session_factory,
            "ResearchAgent",
            extractor=ReferenceExtractor(tool_names=["navigate"], link_limit=2),
        )
        await _record(service, "extract_links", {"success": True, "links": [{"href": "https://a.example"}]})
        assert await service.extract_references() == []


class TestConcurrentExtraction:
    """Duplicate deliveries against one context still dedup by URL."""

    @pytest.mark.asyncio
    async def test_per_call_twice_at_once(self, service) -> None:
        tool_call = await _record(service, "navigate", _navigate("https://example.com"))

        await asyncio.gather(
            service.extract_reference_from_tool_call(tool_call),
            service.extract_reference_from_tool_call(tool_call),
        )

        [ref] = await service.references()
        assert (ref.url, ref.title, ref.position) == ("https://example.com", "Example", 0)

    @pytest.mark.asyncio
    async def test_bulk_passes_at_once(self, service) -> None:
        await _record(service, "navigate", _navigate("https://example.com"))
        await _record(
            service,
            "extract_links",
            {"success": True, "links": [{"href": "https://example.org"}, {"href": "https://example.com"}]},
        )

        await asyncio.gather(*(service.extract_references() for _ in range(3)))

        refs = await service.references()
        assert [r.url for r in refs] == ["https://example.com", "https://example.org"]


class TestPerCallExtraction:
    """Tests for extraction right after a tool completes."""

    @pytest.mark.asyncio
    async def test_registry_extracts_immediately(self, service) -> None:
        registry = ToolRegistry(extracts_references=True)

        @registry.tool("navigate")
        async def navigate(session: ToolSession, url: str) -> dict:
            return _navigate(url, "Example")

        await registry.dispatch(ToolSession(context=service), "navigate", {"url": "https://example.com"})

        [ref] = await service.references()
        assert (ref.url, ref.title, ref.status) == ("https://example.com", "Example", "complete")

        # The bulk pass reconciles to the same state
        await service.extract_references()
        assert len(await service.references()) == 1

    @pytest.mark.asyncio
    async def test_registry_without_extraction(self, service) -> None:
        registry = ToolRegistry()

        @registry.tool("navigate")
        async def navigate(session: ToolSession, url: str) -> dict:
            return _navigate(url)

        await registry.dispatch(ToolSession(context=service), "navigate", {"url": "https://example.com"})
        assert await service.references() == []

    @pytest.mark.asyncio
    async def test_per_call_skips_incomplete(self, service) -> None:
        tool_call = await service.record_tool_call_start("navigate", {})
        assert await service.extract_reference_from_tool_call(tool_call) == []


class TestReferenceCards:
    """Tests for UI projections of references."""

    @pytest.mark.asyncio
    async def test_cards_only_for_complete(self, service) -> None:
        await _record(service, "navigate", _navigate("https://example.com"))
        await _record(service, "extract_links", {"success": True, "links": [{"href": "https://example.org"}]})
        await service.extract_references()

        cards = await service.reference_cards()
        assert [c["url"] for c in cards] == ["https://example.com"]
        assert cards[0]["markdown_link"] == "[Example](https://example.com)"
        assert cards[0]["domain"] == "example.com"

        with_metadata = await service.references_with_metadata()
        assert [r.url for r in with_metadata] == ["https://example.com"]
