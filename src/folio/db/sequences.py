"""Per-context position counters.

Positions for messages, tool calls and references are handed out by
bumping a counter column on ``agent_contexts`` with one
``UPDATE ... RETURNING`` statement. The row lock taken by the UPDATE is
held until the surrounding transaction ends, so two writers on the same
context are serialized and a position is never issued twice, even after
the row that used it is deleted. ``lock_context`` takes the same lock
without allocating, for find-then-insert sequences.
"""

from enum import StrEnum
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from folio.db.models import AgentContext, utcnow_naive
from folio.errors import NotFoundError


class PositionCounter(StrEnum):
    """Counter columns on agent_contexts."""

    MESSAGE = "next_message_position"
    TOOL_CALL = "next_tool_call_position"
    REFERENCE = "next_reference_position"


async def allocate_position(session: AsyncSession, context_id: UUID, counter: PositionCounter) -> int:
    """Reserve the next position for ``counter`` inside the current transaction."""
    column = getattr(AgentContext, counter.value)
    stmt = (
        update(AgentContext)
        .where(AgentContext.id == context_id)
        .values({counter.value: column + 1})
        .returning(column)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    next_value = result.scalar_one_or_none()
    if next_value is None:
        raise NotFoundError("AgentContext", str(context_id))
    return next_value - 1


async def lock_context(session: AsyncSession, context_id: UUID) -> None:
    """Take the context's row lock for the rest of the current transaction.

    Find-then-insert sequences (upsert by URL) run after this, so two
    writers on one context see each other's rows instead of both inserting.
    The lock is a write so that SQLite, which has no ``FOR UPDATE``, takes
    its database write lock too.
    """
    stmt = (
        update(AgentContext)
        .where(AgentContext.id == context_id)
        .values(updated_at=utcnow_naive())
        .returning(AgentContext.id)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.scalar_one_or_none() is None:
        raise NotFoundError("AgentContext", str(context_id))
