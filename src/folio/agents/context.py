"""Agent context orchestration.

``AgentContextService`` wraps one persisted ``AgentContext`` and exposes
the calls an agent invocation makes while it runs: append messages,
record LLM generations and failures, record tool calls, extract
references and create fragments.

Every write runs in its own short transaction. Multi-row writes
(``record_generation``, ``record_failure``) are all-or-nothing. Position
counters are bumped inside the same transaction as the insert they
number, so concurrent writers on one context cannot collide.

Usage:
    service = await AgentContextService.create(
        session_factory, "WritingAssistantAgent", action_name="improve"
    )
    await service.add_user_message("Please improve this paragraph...")
    await service.mark_processing()
    generation = await service.record_generation(response)
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog
from sqlalchemy import delete, func
from sqlmodel import select

from folio.agents.references import ReferenceExtractor
from folio.config import settings
from folio.db.connection import transaction
from folio.db.models import (
    AgentContext,
    AgentFragment,
    AgentGeneration,
    AgentMessage,
    AgentReference,
    AgentToolCall,
    ContextStatus,
    GenerationStatus,
    MessageRole,
    ReferenceStatus,
    ToolCallStatus,
    normalize_payload,
)
from folio.db.sequences import PositionCounter, allocate_position
from folio.errors import NotFoundError, ValidationError
from folio.llm import LLMResponse
from folio.utils import is_blank

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from folio.agents.fragments import FragmentLineage
    from folio.db.connection import SessionFactory
    from folio.db.models import Contextable

log = structlog.get_logger()

_MESSAGE_FIELDS = frozenset({"name", "tool_call_id", "function_name", "content_parts"})


def _coerce_role(role: MessageRole | str) -> MessageRole:
    try:
        return MessageRole(role)
    except ValueError:
        raise ValidationError(
            f"Invalid message role: {role!r}",
            details={"role": str(role), "allowed": [r.value for r in MessageRole]},
        ) from None


def _coerce_status(status: ContextStatus | str) -> ContextStatus:
    try:
        return ContextStatus(status)
    except ValueError:
        raise ValidationError(
            f"Invalid context status: {status!r}",
            details={"status": str(status), "allowed": [s.value for s in ContextStatus]},
        ) from None


class AgentContextService:
    """Read/write API over one agent context."""

    def __init__(
        self,
        context: AgentContext,
        session_factory: SessionFactory,
        *,
        extractor: ReferenceExtractor | None = None,
    ) -> None:
        self._context = context
        self._session_factory = session_factory
        self.extractor = extractor or ReferenceExtractor()

    # -- lifecycle ---------------------------------------------------------------

    @classmethod
    async def create(
        cls,
        session_factory: SessionFactory,
        agent_name: str,
        *,
        action_name: str | None = None,
        instructions: str | None = None,
        contextable: Contextable | None = None,
        options: Mapping[str, Any] | None = None,
        trace_id: str | None = None,
        extractor: ReferenceExtractor | None = None,
    ) -> AgentContextService:
        """Create a new context in ``pending``."""
        if is_blank(agent_name):
            raise ValidationError("agent_name is required", details={"field": "agent_name"})

        context = AgentContext(
            agent_name=agent_name,
            action_name=action_name,
            instructions=instructions,
            options=normalize_payload(dict(options or {})),
            trace_id=trace_id,
            status=ContextStatus.PENDING.value,
        )
        context.attach(contextable)

        async with transaction(session_factory, "create context", agent_name=agent_name) as session:
            session.add(context)

        log.info(
            "Agent context created",
            context_id=str(context.id),
            agent=agent_name,
            action=action_name,
        )
        return cls(context, session_factory, extractor=extractor)

    @classmethod
    async def load(
        cls,
        session_factory: SessionFactory,
        context_id: UUID,
        *,
        extractor: ReferenceExtractor | None = None,
    ) -> AgentContextService:
        async with session_factory() as session:
            context = await session.get(AgentContext, context_id)
        if context is None:
            raise NotFoundError("AgentContext", str(context_id))
        return cls(context, session_factory, extractor=extractor)

    @property
    def context(self) -> AgentContext:
        return self._context

    @property
    def id(self) -> UUID:
        return self._context.id

    @property
    def status(self) -> str:
        return self._context.status

    @property
    def session_factory(self) -> SessionFactory:
        return self._session_factory

    async def refresh(self) -> AgentContext:
        async with self._session_factory() as session:
            context = await session.get(AgentContext, self.id, populate_existing=True)
        if context is None:
            raise NotFoundError("AgentContext", str(self.id))
        self._context = context
        return context

    async def _transition(self, session: AsyncSession, target: ContextStatus) -> None:
        context = await session.get(AgentContext, self.id, with_for_update=True, populate_existing=True)
        if context is None:
            raise NotFoundError("AgentContext", str(self.id))
        previous = context.status
        context.transition_to(target)
        session.add(context)
        self._context = context
        log.debug(
            "Agent context transition",
            context_id=str(self.id),
            previous=previous,
            status=context.status,
        )

    async def transition_to(self, status: ContextStatus | str) -> AgentContext:
        """Move the context status forward (never backwards)."""
        target = _coerce_status(status)
        async with transaction(self._session_factory, "update context status", context_id=self.id) as session:
            await self._transition(session, target)
        return self._context

    async def mark_processing(self) -> AgentContext:
        return await self.transition_to(ContextStatus.PROCESSING)

    # -- messages ----------------------------------------------------------------

    async def _insert_message(
        self, session: AsyncSession, role: MessageRole, content: str | None, extra: Mapping[str, Any]
    ) -> AgentMessage:
        unknown = set(extra) - _MESSAGE_FIELDS
        if unknown:
            raise ValidationError(
                f"Unknown message fields: {sorted(unknown)}", details={"fields": sorted(unknown)}
            )
        position = await allocate_position(session, self.id, PositionCounter.MESSAGE)
        message = AgentMessage(
            agent_context_id=self.id,
            role=role.value,
            content=content,
            position=position,
            **extra,
        )
        session.add(message)
        await session.flush()
        return message

    async def add_message(
        self, role: MessageRole | str, content: str | None, **extra: Any
    ) -> AgentMessage:
        """Append a message at the next position."""
        message_role = _coerce_role(role)
        async with transaction(self._session_factory, "add message", context_id=self.id) as session:
            message = await self._insert_message(session, message_role, content, extra)
        return message

    async def add_user_message(self, content: str, **extra: Any) -> AgentMessage:
        return await self.add_message(MessageRole.USER, content, **extra)

    async def add_assistant_message(self, content: str, **extra: Any) -> AgentMessage:
        return await self.add_message(MessageRole.ASSISTANT, content, **extra)

    async def add_system_message(self, content: str, **extra: Any) -> AgentMessage:
        return await self.add_message(MessageRole.SYSTEM, content, **extra)

    async def add_message_from(self, payload: str | Mapping[str, Any]) -> AgentMessage:
        """Append a message given as a bare string (user) or a role/content mapping."""
        if isinstance(payload, str):
            return await self.add_user_message(payload)
        data = dict(payload)
        role = data.pop("role", MessageRole.USER)
        content = data.pop("content", None)
        return await self.add_message(role, content, **data)

    async def messages(self, *, role: MessageRole | str | None = None) -> list[AgentMessage]:
        stmt = select(AgentMessage).where(AgentMessage.agent_context_id == self.id)
        if role is not None:
            stmt = stmt.where(AgentMessage.role == _coerce_role(role).value)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(AgentMessage.position))
            return list(result.scalars().all())

    async def user_messages(self) -> list[AgentMessage]:
        return await self.messages(role=MessageRole.USER)

    async def assistant_messages(self) -> list[AgentMessage]:
        return await self.messages(role=MessageRole.ASSISTANT)

    async def delete_message(self, message_id: UUID) -> bool:
        """Delete one message; its position is not reused."""
        async with transaction(self._session_factory, "delete message", context_id=self.id) as session:
            result = await session.execute(
                delete(AgentMessage).where(
                    AgentMessage.id == message_id, AgentMessage.agent_context_id == self.id
                )
            )
        return bool(result.rowcount)

    async def to_prompt_options(self) -> dict[str, Any]:
        """Prompt options for the next LLM call: instructions, messages, options."""
        messages = await self.messages()
        prompt = {
            "instructions": self._context.instructions,
            "messages": [message.to_message_hash() for message in messages],
            **(self._context.options or {}),
        }
        return {key: value for key, value in prompt.items() if value is not None}

    # -- generations -------------------------------------------------------------

    async def record_generation(self, response: LLMResponse | Mapping[str, Any]) -> AgentGeneration:
        """Persist an LLM response and complete the context.

        The assistant message, the generation row and the status change are
        written in one transaction.
        """
        if not isinstance(response, LLMResponse):
            response = LLMResponse.model_validate(response)
        usage = response.usage

        async with transaction(self._session_factory, "record generation", context_id=self.id) as session:
            message = None
            if response.message is not None and response.message.content is not None:
                extra = {"name": response.message.name} if response.message.name else {}
                message = await self._insert_message(
                    session, MessageRole.ASSISTANT, response.message.content, extra
                )

            generation = AgentGeneration(
                agent_context_id=self.id,
                response_message_id=message.id if message else None,
                provider_id=response.id,
                model=response.model,
                finish_reason=response.finish_reason,
                input_tokens=usage.input_tokens if usage else 0,
                output_tokens=usage.output_tokens if usage else 0,
                total_tokens=usage.total_tokens if usage else 0,
                cached_tokens=usage.cached_tokens if usage else None,
                reasoning_tokens=usage.reasoning_tokens if usage else None,
                duration_ms=usage.duration_ms if usage else None,
                raw_request=response.raw_request,
                raw_response=response.raw_response,
                provider_details=dict(usage.provider_details) if usage else {},
                status=GenerationStatus.COMPLETED.value,
            )
            session.add(generation)
            await self._transition(session, ContextStatus.COMPLETED)

        log.info(
            "Generation recorded",
            context_id=str(self.id),
            model=generation.model,
            total_tokens=generation.total_tokens,
        )
        return generation

    async def record_failure(self, error: BaseException | str) -> AgentGeneration:
        """Persist a failed generation and fail the context, atomically."""
        message = str(error) or type(error).__name__
        async with transaction(self._session_factory, "record failure", context_id=self.id) as session:
            generation = AgentGeneration(
                agent_context_id=self.id,
                status=GenerationStatus.FAILED.value,
                error_message=message,
            )
            session.add(generation)
            await self._transition(session, ContextStatus.FAILED)

        log.warning("Generation failed", context_id=str(self.id), error=message)
        return generation

    async def generations(self) -> list[AgentGeneration]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AgentGeneration)
                .where(AgentGeneration.agent_context_id == self.id)
                .order_by(AgentGeneration.created_at)
            )
            return list(result.scalars().all())

    async def latest_generation(self) -> AgentGeneration | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AgentGeneration)
                .where(AgentGeneration.agent_context_id == self.id)
                .order_by(AgentGeneration.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    # -- tool calls ----------------------------------------------------------------

    async def record_tool_call_start(
        self,
        name: str,
        arguments: Any = None,
        *,
        tool_call_id: str | None = None,
    ) -> AgentToolCall:
        """Create an ``executing`` tool call stamped with ``started_at``."""
        if is_blank(name):
            raise ValidationError("Tool name is required", details={"field": "name"})

        async with transaction(
            self._session_factory, "record tool call start", context_id=self.id, tool=name
        ) as session:
            position = await allocate_position(session, self.id, PositionCounter.TOOL_CALL)
            tool_call = AgentToolCall(
                agent_context_id=self.id,
                name=str(name),
                tool_call_id=tool_call_id,
                arguments=normalize_payload(arguments),
                position=position,
            )
            tool_call.start()
            session.add(tool_call)

        log.debug("Tool call started", context_id=str(self.id), tool=name, position=position)
        return tool_call

    async def _finish_tool_call(
        self, tool_call: AgentToolCall, operation: str, apply: Callable[[AgentToolCall], None]
    ) -> AgentToolCall:
        async with transaction(
            self._session_factory, operation, context_id=self.id, tool=tool_call.name
        ) as session:
            current = await session.get(
                AgentToolCall, tool_call.id, with_for_update=True, populate_existing=True
            )
            if current is None or current.agent_context_id != self.id:
                raise NotFoundError("AgentToolCall", str(tool_call.id))
            apply(current)
            session.add(current)
        return current

    async def record_tool_call_complete(self, tool_call: AgentToolCall, result: Any) -> AgentToolCall:
        """Store a tool's result and its duration."""
        completed = await self._finish_tool_call(
            tool_call, "record tool call complete", lambda tc: tc.complete(result)
        )
        log.debug(
            "Tool call completed",
            context_id=str(self.id),
            tool=completed.name,
            duration_ms=completed.duration_ms,
        )
        return completed

    async def record_tool_call_failure(
        self, tool_call: AgentToolCall, error: BaseException | str
    ) -> AgentToolCall:
        """Store a tool's error message and its duration."""
        failed = await self._finish_tool_call(
            tool_call, "record tool call failure", lambda tc: tc.fail(error)
        )
        log.warning(
            "Tool call failed",
            context_id=str(self.id),
            tool=failed.name,
            error=failed.error_message,
            duration_ms=failed.duration_ms,
        )
        return failed

    async def tool_calls(
        self, *, name: str | None = None, status: ToolCallStatus | str | None = None
    ) -> list[AgentToolCall]:
        stmt = select(AgentToolCall).where(AgentToolCall.agent_context_id == self.id)
        if name is not None:
            stmt = stmt.where(AgentToolCall.name == str(name))
        if status is not None:
            stmt = stmt.where(AgentToolCall.status == ToolCallStatus(status).value)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(AgentToolCall.position))
            return list(result.scalars().all())

    async def tool_calls_for(self, name: str) -> list[AgentToolCall]:
        return await self.tool_calls(name=name)

    async def tool_call_results(self, *, limit: int | None = None) -> list[dict[str, Any]]:
        """Completed tool calls as prompt-ready dicts; ``limit`` keeps the last N."""
        completed = await self.tool_calls(status=ToolCallStatus.COMPLETED)
        if limit is not None:
            completed = completed[-limit:] if limit > 0 else []
        return [
            {
                "name": tc.name,
                "arguments": tc.arguments or {},
                "result": tc.result,
                "duration_ms": tc.duration_ms,
            }
            for tc in completed
        ]

    async def tool_results_for(self, name: str) -> list[dict[str, Any] | None]:
        completed = await self.tool_calls(name=name, status=ToolCallStatus.COMPLETED)
        return [tc.result for tc in completed]

    async def format_tool_results(self, limit: int = 5) -> str:
        """Text block summarizing the last ``limit`` completed tool results."""
        blocks = []
        for item in await self.tool_call_results(limit=limit):
            arguments = json.dumps(item["arguments"], sort_keys=True, default=str)
            result = json.dumps(item["result"], sort_keys=True, default=str)
            blocks.append(f"Tool: {item['name']}\nArguments: {arguments}\nResult: {result}")
        return "\n---\n".join(blocks)

    async def tool_call_statistics(self) -> dict[str, Any]:
        """Counts by status, total duration and per-tool counts."""
        async with self._session_factory() as session:
            by_status = dict(
                (
                    await session.execute(
                        select(AgentToolCall.status, func.count())
                        .where(AgentToolCall.agent_context_id == self.id)
                        .group_by(AgentToolCall.status)
                    )
                ).all()
            )
            by_tool = dict(
                (
                    await session.execute(
                        select(AgentToolCall.name, func.count())
                        .where(AgentToolCall.agent_context_id == self.id)
                        .group_by(AgentToolCall.name)
                    )
                ).all()
            )
            total_duration = (
                await session.execute(
                    select(func.coalesce(func.sum(AgentToolCall.duration_ms), 0)).where(
                        AgentToolCall.agent_context_id == self.id
                    )
                )
            ).scalar_one()

        return {
            "total": sum(by_status.values()),
            "completed": by_status.get(ToolCallStatus.COMPLETED.value, 0),
            "failed": by_status.get(ToolCallStatus.FAILED.value, 0),
            "pending": by_status.get(ToolCallStatus.PENDING.value, 0),
            "executing": by_status.get(ToolCallStatus.EXECUTING.value, 0),
            "total_duration_ms": int(total_duration or 0),
            "by_tool": by_tool,
        }

    # -- references ----------------------------------------------------------------

    async def extract_references(self) -> list[AgentReference]:
        """Bulk-extract references from this context's completed tool calls.

        Idempotent: URLs already known are updated, not duplicated.
        """
        async with transaction(self._session_factory, "extract references", context_id=self.id) as session:
            references = await self.extractor.extract_context(session, self.id)
        return references

    async def extract_reference_from_tool_call(self, tool_call: AgentToolCall) -> list[AgentReference]:
        """Per-call extraction, run right after a tool completes."""
        async with transaction(
            self._session_factory, "extract tool call references", context_id=self.id
        ) as session:
            references = await self.extractor.extract_tool_call(session, tool_call)
        return references

    async def references(self, *, status: ReferenceStatus | str | None = None) -> list[AgentReference]:
        stmt = select(AgentReference).where(AgentReference.agent_context_id == self.id)
        if status is not None:
            stmt = stmt.where(AgentReference.status == ReferenceStatus(status).value)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(AgentReference.position))
            return list(result.scalars().all())

    async def references_with_metadata(self) -> list[AgentReference]:
        return [ref for ref in await self.references() if ref.has_metadata]

    async def reference_cards(self) -> list[dict[str, Any]]:
        """Cards for every ``complete`` reference, in position order."""
        return [
            ref.as_card(content_limit=settings.card_content_limit)
            for ref in await self.references(status=ReferenceStatus.COMPLETE)
        ]

    # -- fragments -----------------------------------------------------------------

    def fragment_lineage(self) -> FragmentLineage:
        from folio.agents.fragments import FragmentLineage

        return FragmentLineage(self._session_factory)

    async def create_fragment(self, action_type: str, original_content: str, **kwargs: Any) -> AgentFragment:
        """Create a fragment owned by this context (see ``FragmentLineage.create``)."""
        kwargs.setdefault("contextable", self._context.contextable)
        return await self.fragment_lineage().create(self.id, action_type, original_content, **kwargs)

    async def fragments(self) -> list[AgentFragment]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AgentFragment)
                .where(AgentFragment.agent_context_id == self.id)
                .order_by(AgentFragment.created_at)
            )
            return list(result.scalars().all())


async def list_contexts(
    session_factory: SessionFactory,
    *,
    agent_name: str | None = None,
    status: ContextStatus | str | None = None,
    contextable: Contextable | None = None,
    limit: int | None = None,
) -> list[AgentContext]:
    """Contexts, newest first, optionally filtered."""
    stmt = select(AgentContext)
    if agent_name is not None:
        stmt = stmt.where(AgentContext.agent_name == agent_name)
    if status is not None:
        stmt = stmt.where(AgentContext.status == _coerce_status(status).value)
    if contextable is not None:
        stmt = stmt.where(
            AgentContext.contextable_type == contextable.kind,
            AgentContext.contextable_id == contextable.id,
        )
    stmt = stmt.order_by(AgentContext.created_at.desc())
    if limit is not None:
        stmt = stmt.limit(limit)
    async with session_factory() as session:
        result = await session.execute(stmt)
        return list(result.scalars().all())


async def delete_context(session_factory: SessionFactory, context_id: UUID) -> bool:
    """Delete a context and, through ON DELETE CASCADE, everything it owns."""
    async with transaction(session_factory, "delete context", context_id=context_id) as session:
        result = await session.execute(delete(AgentContext).where(AgentContext.id == context_id))
    deleted = bool(result.rowcount)
    if deleted:
        log.info("Agent context deleted", context_id=str(context_id))
    return deleted


__all__ = [
    "AgentContextService",
    "delete_context",
    "list_contexts",
]
