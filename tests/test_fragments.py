"""Tests for fragment lineage and transformation runs."""

import hashlib
from uuid import uuid4

import pytest

from folio.agents import FragmentLineage, TransformationRun
from folio.agents.contextable import fragments_for
from folio.agents.references import annotate_detected_references, create_reference
from folio.db import ContextStatus, FragmentStatus, transaction
from folio.errors import InvalidTransitionError, NotFoundError, ValidationError
from folio.llm import TokenUsage

REFERENCES = [
    {"text": "OpenAI", "url": "https://openai.com", "type": "markdown", "accepted": True},
    {"text": "Blog", "url": "https://blog.example", "type": "markdown", "accepted": False},
]


class TestLineage:
    """Tests for creation, transitions and version chains."""

    @pytest.mark.asyncio
    async def test_content_hash_on_create(self, service) -> None:
        fragment = await service.create_fragment("improve", "Test content")
        assert fragment.content_hash == hashlib.sha256(b"Test content").hexdigest()
        assert fragment.status == FragmentStatus.PENDING

        stored = await service.fragment_lineage().get(fragment.id)
        assert stored.content_hash == fragment.content_hash

    @pytest.mark.asyncio
    async def test_create_validation(self, service, session_factory) -> None:
        lineage = FragmentLineage(session_factory)
        with pytest.raises(ValidationError):
            await lineage.create(service.id, "improve", None)
        with pytest.raises(ValidationError):
            await lineage.create(service.id, "improve", "x", status="applied")
        with pytest.raises(ValidationError):
            await lineage.create(service.id, "improve", "x", start_offset=10, end_offset=2)
        with pytest.raises(NotFoundError):
            await lineage.create(uuid4(), "improve", "x")

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, service) -> None:
        lineage = service.fragment_lineage()
        fragment = await service.create_fragment("expand", "Short text", start_offset=4, end_offset=14)

        fragment = await lineage.mark_generating(fragment)
        fragment = await lineage.mark_generating(fragment)
        fragment = await lineage.mark_generated(fragment, "Much longer text")
        fragment = await lineage.mark_applied(fragment, "Much longer text, edited")

        stored = await lineage.get(fragment.id)
        assert stored.status == FragmentStatus.APPLIED
        assert stored.generated_content == "Much longer text"
        assert stored.applied_content == "Much longer text, edited"
        assert stored.was_modified_on_apply

        with pytest.raises(InvalidTransitionError):
            await lineage.mark_discarded(stored)

    @pytest.mark.asyncio
    async def test_discard(self, service) -> None:
        lineage = service.fragment_lineage()
        fragment = await service.create_fragment("improve", "Text")
        fragment = await lineage.mark_discarded(fragment)
        assert fragment.status == FragmentStatus.DISCARDED
        assert fragment.generated_content is None

    @pytest.mark.asyncio
    async def test_regenerate_with(self, service, page) -> None:
        lineage = service.fragment_lineage()
        root = await service.create_fragment(
            "improve",
            "Original",
            start_offset=0,
            end_offset=8,
            detected_references=REFERENCES,
            contextable=page,
        )
        root = await lineage.mark_generated(root, "First try")

        child = await lineage.regenerate_with(root, [REFERENCES[1] | {"accepted": True}])

        assert child.parent_fragment_id == root.id
        assert child.status == FragmentStatus.PENDING
        assert (child.original_content, child.start_offset, child.end_offset) == ("Original", 0, 8)
        assert child.content_hash == root.content_hash
        assert child.contextable == page
        assert [r["url"] for r in child.accepted_references] == ["https://blog.example"]
        assert child.generated_content is None

        assert [c.id for c in await lineage.children(root)] == [child.id]

    @pytest.mark.asyncio
    async def test_version_history(self, service) -> None:
        lineage = service.fragment_lineage()
        root = await service.create_fragment("improve", "Original")
        child = await lineage.regenerate_with(root, [])
        grandchild = await lineage.regenerate_with(child, [])

        history = await lineage.version_history(grandchild)

        assert [f.id for f in history] == [root.id, child.id, grandchild.id]
        assert [f.id for f in await lineage.version_history(root)] == [root.id]

    @pytest.mark.asyncio
    async def test_queries(self, service, page) -> None:
        lineage = service.fragment_lineage()
        kept = await service.create_fragment("improve", "One", contextable=page)
        dropped = await service.create_fragment("improve", "Two", contextable=page)
        await lineage.mark_discarded(dropped)
        await lineage.mark_generated(kept, "One, better")

        assert {f.id for f in await lineage.recent(contextable=page)} == {kept.id, dropped.id}
        assert [f.id for f in await lineage.active(contextable=page)] == [kept.id]
        assert [f.id for f in await lineage.with_generations(contextable=page)] == [kept.id]
        assert [f.id for f in await fragments_for(service.session_factory, page, active=True)] == [kept.id]
        assert len(await lineage.recent(limit=1)) == 1


class TestReferenceContext:
    """Tests for prompt context built from detected references."""

    @pytest.mark.asyncio
    async def test_build_reference_context(self, service) -> None:
        async with transaction(service.session_factory, "seed") as session:
            await create_reference(
                session,
                service.id,
                "https://openai.com",
                title="OpenAI",
                extracted_content="OpenAI builds models.",
            )

        fragment = await service.create_fragment("improve", "Text", detected_references=REFERENCES)
        block = await service.fragment_lineage().build_reference_context(fragment)

        assert "1. [OpenAI](https://openai.com)" in block
        assert "Summary: OpenAI builds models." in block
        assert "blog.example" not in block

    @pytest.mark.asyncio
    async def test_no_accepted_references(self, service) -> None:
        fragment = await service.create_fragment("improve", "Text", detected_references=REFERENCES[1:])
        assert await service.fragment_lineage().build_reference_context(fragment) == ""

    @pytest.mark.asyncio
    async def test_annotate_detected_references(self, service) -> None:
        async with transaction(service.session_factory, "seed") as session:
            existing = await create_reference(
                session, service.id, "https://openai.com", extracted_content="cached"
            )
            annotated = await annotate_detected_references(
                session,
                [
                    {"text": "OpenAI", "url": "https://openai.com"},
                    {"text": "Local", "url": "file:///etc/hosts"},
                ],
            )

        assert annotated[0]["existing_reference"] == str(existing.id)
        assert annotated[0]["has_cached_content"] is True
        assert annotated[0]["can_fetch"] is True
        assert annotated[1]["existing_reference"] is None
        assert annotated[1]["can_fetch"] is False


class TestTransformationRun:
    """Tests for the streamed writing flow."""

    @pytest.mark.asyncio
    async def test_streamed_run(self, session_factory, page) -> None:
        run = await TransformationRun.start(
            session_factory,
            "WritingAssistantAgent",
            "improve",
            "Check out [OpenAI](https://openai.com) for more.",
            contextable=page,
        )
        assert run.fragment.status == FragmentStatus.GENERATING
        assert run.fragment.detected_references == [
            {"text": "OpenAI", "url": "https://openai.com", "type": "markdown", "accepted": True}
        ]
        assert run.service.status == ContextStatus.PROCESSING

        run.on_chunk("Take a look at ")
        run.on_chunk(None)
        assert run.on_chunk("OpenAI.") == "Take a look at OpenAI."

        generation = await run.complete(
            model="gpt-4o", usage=TokenUsage(input_tokens=5, output_tokens=6, total_tokens=11)
        )

        assert generation.total_tokens == 11
        assert run.fragment.status == FragmentStatus.GENERATED
        assert run.fragment.generated_content == "Take a look at OpenAI."
        assert run.fragment.contextable == page
        assert run.service.status == ContextStatus.COMPLETED
        assert [m.role for m in await run.service.messages()] == ["user", "assistant"]

        with pytest.raises(ValidationError):
            await run.complete()

    @pytest.mark.asyncio
    async def test_failed_run(self, session_factory) -> None:
        run = await TransformationRun.start(
            session_factory, "WritingAssistantAgent", "expand", "Text", detected_references=[]
        )
        generation = await run.fail(TimeoutError("stream stalled"))

        assert generation.error_message == "stream stalled"
        assert run.fragment.status == FragmentStatus.DISCARDED
        assert run.service.status == ContextStatus.FAILED
