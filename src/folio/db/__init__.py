"""Folio database module - SQLModel tables and async session management.

Usage:
    from folio.db import get_session, init_db, AgentContext

    await init_db()
    async with get_session() as session:
        session.add(AgentContext(agent_name="WritingAssistantAgent"))
        await session.commit()
"""

from folio.db.connection import (
    async_session_factory,
    check_db_health,
    close_db,
    create_engine,
    get_engine,
    get_session,
    init_db,
    make_session_factory,
    transaction,
)
from folio.db.models import (
    AgentContext,
    AgentFragment,
    AgentGeneration,
    AgentMessage,
    AgentReference,
    AgentToolCall,
    Contextable,
    ContextStatus,
    FragmentStatus,
    FragmentType,
    GenerationStatus,
    MessageRole,
    ReferenceStatus,
    ToolCallStatus,
    compute_content_hash,
    normalize_payload,
    utcnow_naive,
)
from folio.db.sequences import PositionCounter, allocate_position, lock_context

__all__ = [
    # Connection
    "async_session_factory",
    "check_db_health",
    "close_db",
    "create_engine",
    "get_engine",
    "get_session",
    "init_db",
    "make_session_factory",
    "transaction",
    # Sequences
    "PositionCounter",
    "allocate_position",
    "lock_context",
    # Models
    "AgentContext",
    "AgentFragment",
    "AgentGeneration",
    "AgentMessage",
    "AgentReference",
    "AgentToolCall",
    "Contextable",
    # Enums
    "ContextStatus",
    "FragmentStatus",
    "FragmentType",
    "GenerationStatus",
    "MessageRole",
    "ReferenceStatus",
    "ToolCallStatus",
    # Helpers
    "compute_content_hash",
    "normalize_payload",
    "utcnow_naive",
]
