"""One streamed writing transformation, end to end.

Ties a context, its fragment and its generation together for the common
"improve this selection" flow: the fragment is created right before
streaming starts, chunks are accumulated as they arrive, and the final
text is persisted once the turn is done.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

import structlog

from folio.agents.context import AgentContextService
from folio.db.models import FragmentStatus
from folio.detector import detect_references
from folio.errors import ValidationError
from folio.llm import LLMResponse, ResponseMessage, TokenUsage

if TYPE_CHECKING:
    from folio.db.connection import SessionFactory
    from folio.db.models import AgentFragment, AgentGeneration, Contextable

log = structlog.get_logger()


class TransformationRun:
    """Streaming state for one transformation of a piece of text."""

    def __init__(self, service: AgentContextService, fragment: AgentFragment) -> None:
        self.service = service
        self.fragment = fragment
        self._chunks: list[str] = []

    @classmethod
    async def start(
        cls,
        session_factory: SessionFactory,
        agent_name: str,
        action_type: str,
        content: str,
        *,
        instructions: str | None = None,
        contextable: Contextable | None = None,
        detected_references: Iterable[Mapping[str, Any]] | None = None,
        start_offset: int | None = None,
        end_offset: int | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> TransformationRun:
        """Create the context and a ``generating`` fragment for ``content``.

        Links in ``content`` are detected unless ``detected_references`` is
        supplied.
        """
        service = await AgentContextService.create(
            session_factory,
            agent_name,
            action_name=action_type,
            instructions=instructions,
            contextable=contextable,
            options=options,
        )
        references = (
            list(detected_references)
            if detected_references is not None
            else detect_references(content)
        )
        fragment = await service.create_fragment(
            action_type,
            content,
            start_offset=start_offset,
            end_offset=end_offset,
            detected_references=references,
            status=FragmentStatus.GENERATING,
        )
        await service.add_user_message(content)
        await service.mark_processing()
        log.info(
            "Transformation started",
            context_id=str(service.id),
            fragment_id=str(fragment.id),
            action=action_type,
        )
        return cls(service, fragment)

    @property
    def content(self) -> str:
        return "".join(self._chunks)

    def on_chunk(self, chunk: str | None) -> str:
        """Accumulate one streamed chunk; returns the text so far."""
        if chunk:
            self._chunks.append(chunk)
        return self.content

    async def complete(
        self,
        *,
        model: str | None = None,
        usage: TokenUsage | None = None,
        finish_reason: str | None = "stop",
    ) -> AgentGeneration:
        """Persist the accumulated text as a generation and on the fragment."""
        if self.fragment.status != FragmentStatus.GENERATING:
            raise ValidationError(
                "Run already finished",
                details={"fragment_id": str(self.fragment.id), "status": self.fragment.status},
            )
        text = self.content
        generation = await self.service.record_generation(
            LLMResponse(
                model=model,
                finish_reason=finish_reason,
                message=ResponseMessage(content=text),
                usage=usage,
            )
        )
        self.fragment = await self.service.fragment_lineage().mark_generated(self.fragment, text)
        return generation

    async def fail(self, error: BaseException | str) -> AgentGeneration:
        """Record the failure; the fragment is discarded."""
        generation = await self.service.record_failure(error)
        if not self.fragment.is_terminal:
            self.fragment = await self.service.fragment_lineage().mark_discarded(self.fragment)
        return generation
