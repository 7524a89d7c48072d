"""Aggregates over everything attached to one contextable.

A contextable is an opaque ``(kind, id)`` pointer to a business object
such as a page. These helpers answer "what have agents done for this
page?" without Folio knowing anything about pages.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import func
from sqlmodel import select

from folio.config import settings
from folio.db.models import (
    AgentContext,
    AgentFragment,
    AgentGeneration,
    AgentReference,
    ContextStatus,
    FragmentStatus,
    ReferenceStatus,
)

if TYPE_CHECKING:
    from folio.db.connection import SessionFactory
    from folio.db.models import Contextable


def _for(contextable: Contextable) -> tuple[Any, Any]:
    return (
        AgentContext.contextable_type == contextable.kind,
        AgentContext.contextable_id == contextable.id,
    )


async def contexts_for(
    session_factory: SessionFactory, contextable: Contextable, *, agent_name: str | None = None
) -> list[AgentContext]:
    """Contexts attached to ``contextable``, newest first."""
    stmt = select(AgentContext).where(*_for(contextable))
    if agent_name is not None:
        stmt = stmt.where(AgentContext.agent_name == agent_name)
    async with session_factory() as session:
        result = await session.execute(stmt.order_by(AgentContext.created_at.desc()))
        return list(result.scalars().all())


async def latest_context(
    session_factory: SessionFactory, contextable: Contextable, *, agent_name: str | None = None
) -> AgentContext | None:
    contexts = await contexts_for(session_factory, contextable, agent_name=agent_name)
    return contexts[0] if contexts else None


async def total_tokens_used(session_factory: SessionFactory, contextable: Contextable) -> int:
    async with session_factory() as session:
        total = (
            await session.execute(
                select(func.coalesce(func.sum(AgentGeneration.total_tokens), 0))
                .join(AgentContext, AgentGeneration.agent_context_id == AgentContext.id)
                .where(*_for(contextable))
            )
        ).scalar_one()
    return int(total or 0)


async def usage_stats(session_factory: SessionFactory, contextable: Contextable) -> dict[str, int]:
    """Context counts by outcome and summed token usage."""
    async with session_factory() as session:
        by_status = dict(
            (
                await session.execute(
                    select(AgentContext.status, func.count())
                    .where(*_for(contextable))
                    .group_by(AgentContext.status)
                )
            ).all()
        )
        row = (
            await session.execute(
                select(
                    func.count(AgentGeneration.id),
                    func.coalesce(func.sum(AgentGeneration.input_tokens), 0),
                    func.coalesce(func.sum(AgentGeneration.output_tokens), 0),
                    func.coalesce(func.sum(AgentGeneration.total_tokens), 0),
                )
                .join(AgentContext, AgentGeneration.agent_context_id == AgentContext.id)
                .where(*_for(contextable))
            )
        ).one()

    generations, input_tokens, output_tokens, total_tokens = row
    return {
        "total_contexts": sum(by_status.values()),
        "completed_contexts": by_status.get(ContextStatus.COMPLETED.value, 0),
        "failed_contexts": by_status.get(ContextStatus.FAILED.value, 0),
        "total_generations": int(generations or 0),
        "total_input_tokens": int(input_tokens or 0),
        "total_output_tokens": int(output_tokens or 0),
        "total_tokens": int(total_tokens or 0),
    }


async def research_references(
    session_factory: SessionFactory,
    contextable: Contextable,
    *,
    agent_name: str | None = None,
    status: ReferenceStatus | str | None = None,
) -> list[AgentReference]:
    """References gathered by agents working on ``contextable``."""
    stmt = (
        select(AgentReference)
        .join(AgentContext, AgentReference.agent_context_id == AgentContext.id)
        .where(*_for(contextable))
    )
    if agent_name is not None:
        stmt = stmt.where(AgentContext.agent_name == agent_name)
    if status is not None:
        stmt = stmt.where(AgentReference.status == ReferenceStatus(status).value)
    stmt = stmt.order_by(AgentContext.created_at, AgentReference.position)
    async with session_factory() as session:
        result = await session.execute(stmt)
        return list(result.scalars().all())


async def research_reference_cards(
    session_factory: SessionFactory, contextable: Contextable, *, agent_name: str | None = None
) -> list[dict[str, Any]]:
    references = await research_references(
        session_factory, contextable, agent_name=agent_name, status=ReferenceStatus.COMPLETE
    )
    return [ref.as_card(content_limit=settings.card_content_limit) for ref in references]


async def fragments_for(
    session_factory: SessionFactory, contextable: Contextable, *, active: bool = False
) -> list[AgentFragment]:
    stmt = select(AgentFragment).where(
        AgentFragment.contextable_type == contextable.kind,
        AgentFragment.contextable_id == contextable.id,
    )
    if active:
        stmt = stmt.where(AgentFragment.status != FragmentStatus.DISCARDED.value)
    async with session_factory() as session:
        result = await session.execute(stmt.order_by(AgentFragment.created_at.desc()))
        return list(result.scalars().all())
