"""SQLModel schemas for Folio agent context storage.

This module defines the tables that persist one agent conversation:
- AgentContext: the aggregate root (one per agent invocation)
- AgentMessage: ordered prompt/response messages
- AgentGeneration: one row per LLM response, with token usage
- AgentToolCall: one row per tool invocation, with timing and outcome
- AgentReference: deduplicated citations discovered by tools
- AgentFragment: versioned snapshots of a content transformation

Every child row belongs to exactly one context and is removed with it
(ON DELETE CASCADE). Status columns are plain strings; their legal values
live in the StrEnum classes below.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from html import escape
from typing import Any
from uuid import UUID, uuid4

from pydantic_core import to_jsonable_python
from sqlalchemy import JSON, Column, DateTime, Index, String, Text, event, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

from folio.errors import InvalidTransitionError
from folio.llm import TokenUsage
from folio.utils import extract_domain, present, truncate


def utcnow_naive() -> datetime:
    """Get current UTC time as naive datetime (for TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(UTC).replace(tzinfo=None)


# JSONB on PostgreSQL, plain JSON everywhere else (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _json_column(*, nullable: bool = True) -> Column:
    return Column(JSONType, nullable=nullable)


def _duration_ms(started_at: datetime | None, finished_at: datetime) -> int | None:
    if started_at is None:
        return None
    return max((finished_at - started_at) // timedelta(milliseconds=1), 0)


def normalize_payload(value: Any) -> dict[str, Any]:
    """Normalize a tool argument/result payload to its stored form.

    Mappings are stored as JSON-compatible dicts with string keys. JSON
    strings are parsed once here; strings that are not JSON are kept as
    ``{"raw": value}``. Any other value is wrapped as ``{"value": ...}``.
    """
    if value is None:
        return {}
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return {"raw": value}
    jsonable = to_jsonable_python(value, fallback=str)
    if isinstance(jsonable, dict):
        return {str(key): item for key, item in jsonable.items()}
    return {"value": jsonable}


def compute_content_hash(content: str) -> str:
    """SHA-256 hex digest used for fragment change detection."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


# =============================================================================
# Enums
# =============================================================================


class ContextStatus(StrEnum):
    """Lifecycle of an agent context."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class MessageRole(StrEnum):
    """Who authored a message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class GenerationStatus(StrEnum):
    """Outcome of one LLM call."""

    COMPLETED = "completed"
    FAILED = "failed"


class ToolCallStatus(StrEnum):
    """Lifecycle of a tool invocation."""

    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class ReferenceStatus(StrEnum):
    """Metadata state of a reference."""

    PENDING = "pending"
    FETCHING = "fetching"
    COMPLETE = "complete"
    FAILED = "failed"


class FragmentStatus(StrEnum):
    """Lifecycle of a content transformation."""

    PENDING = "pending"
    GENERATING = "generating"
    GENERATED = "generated"
    APPLIED = "applied"
    DISCARDED = "discarded"


class FragmentType(StrEnum):
    """What part of the document a fragment covers."""

    SELECTION = "selection"
    FULL_DOCUMENT = "full_document"
    GENERATED = "generated"
    APPLIED = "applied"


# Terminal states share a rank; FAILED is absorbing, COMPLETED may still
# be overridden by a later failed turn of the same session.
_CONTEXT_RANK = {
    ContextStatus.PENDING: 0,
    ContextStatus.PROCESSING: 1,
    ContextStatus.COMPLETED: 2,
    ContextStatus.FAILED: 2,
}

_FRAGMENT_RANK = {
    FragmentStatus.PENDING: 0,
    FragmentStatus.GENERATING: 1,
    FragmentStatus.GENERATED: 2,
    FragmentStatus.APPLIED: 3,
}

FRAGMENT_TERMINAL_STATES = frozenset({FragmentStatus.APPLIED, FragmentStatus.DISCARDED})


# =============================================================================
# Contextable - opaque pointer to an owning domain object
# =============================================================================


@dataclass(frozen=True)
class Contextable:
    """Opaque ``(kind, id)`` reference to a business object such as a page.

    Folio stores and returns it but never looks inside it.
    """

    kind: str
    id: str

    @classmethod
    def of(cls, kind: str, identifier: object) -> "Contextable":
        return cls(kind=kind, id=str(identifier))


class ContextableMixin(SQLModel):
    """Mixin for rows that may point at a contextable."""

    contextable_type: str | None = Field(default=None, max_length=128)
    contextable_id: str | None = Field(default=None, max_length=128)

    @property
    def contextable(self) -> Contextable | None:
        if self.contextable_type is None or self.contextable_id is None:
            return None
        return Contextable(kind=self.contextable_type, id=self.contextable_id)

    def attach(self, contextable: Contextable | None) -> None:
        """Point this row at a contextable (or clear it)."""
        self.contextable_type = contextable.kind if contextable else None
        self.contextable_id = contextable.id if contextable else None


class TimestampMixin(SQLModel):
    """Mixin for created/updated timestamps."""

    created_at: datetime = Field(
        default_factory=utcnow_naive,
        sa_type=DateTime,
        description="When this record was created",
    )
    updated_at: datetime = Field(
        default_factory=utcnow_naive,
        sa_type=DateTime,
        description="When this record was last updated",
        sa_column_kwargs={"onupdate": utcnow_naive},
    )


# =============================================================================
# AgentContext - aggregate root for one agent invocation
# =============================================================================


class AgentContext(ContextableMixin, TimestampMixin, table=True):
    """One agent conversation.

    Owns messages, generations, tool calls, references and fragments.
    Position counters for the ordered children live here so a position is
    allocated with a single atomic UPDATE and never handed out twice.
    """

    __tablename__ = "agent_contexts"
    __table_args__ = (Index("ix_agent_contexts_contextable", "contextable_type", "contextable_id"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    agent_name: str = Field(max_length=255, index=True, description="Owning agent class name")
    action_name: str | None = Field(default=None, max_length=255, description="Agent action")
    instructions: str | None = Field(default=None, sa_type=Text, description="System prompt")
    options: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=_json_column(nullable=False),
        description="Arbitrary prompt options and input params",
    )
    status: str = Field(
        default=ContextStatus.PENDING.value,
        sa_column=Column(String(32), nullable=False, server_default=text("'pending'"), index=True),
        description="Lifecycle status (pending, processing, completed, failed)",
    )
    trace_id: str | None = Field(default=None, max_length=128, index=True)

    next_message_position: int = Field(default=0, ge=0)
    next_tool_call_position: int = Field(default=0, ge=0)
    next_reference_position: int = Field(default=0, ge=0)

    def can_transition_to(self, target: ContextStatus | str) -> bool:
        current = ContextStatus(self.status)
        target = ContextStatus(target)
        if current == ContextStatus.FAILED:
            return target == ContextStatus.FAILED
        return _CONTEXT_RANK[target] >= _CONTEXT_RANK[current]

    def transition_to(self, target: ContextStatus | str) -> None:
        """Move the status forward; raise InvalidTransitionError otherwise."""
        if not self.can_transition_to(target):
            raise InvalidTransitionError("AgentContext", self.status, str(target))
        self.status = ContextStatus(target).value

    def __repr__(self) -> str:
        return f"<AgentContext {self.agent_name} action={self.action_name} status={self.status}>"


# =============================================================================
# AgentMessage
# =============================================================================


class AgentMessage(TimestampMixin, table=True):
    """A message in an agent conversation."""

    __tablename__ = "agent_messages"
    __table_args__ = (
        Index("ix_agent_messages_context_position", "agent_context_id", "position", unique=True),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    agent_context_id: UUID = Field(foreign_key="agent_contexts.id", ondelete="CASCADE", index=True)
    role: str = Field(max_length=32, description="system, user or assistant")
    content: str | None = Field(default=None, sa_type=Text)
    position: int = Field(ge=0, description="Order within the context, never reused")
    name: str | None = Field(default=None, max_length=255)
    tool_call_id: str | None = Field(default=None, max_length=128)
    function_name: str | None = Field(default=None, max_length=255)
    content_parts: list[Any] = Field(default_factory=list, sa_column=_json_column(nullable=False))

    def to_message_hash(self) -> dict[str, Any]:
        data = {"role": self.role, "content": self.content, "name": self.name}
        return {key: value for key, value in data.items() if value is not None}

    def parsed_json(self) -> dict[str, Any] | None:
        """Return the first JSON object embedded in the content, if any."""
        if not self.content:
            return None
        decoder = json.JSONDecoder()
        start = self.content.find("{")
        while start != -1:
            try:
                value, _ = decoder.raw_decode(self.content, start)
            except ValueError:
                start = self.content.find("{", start + 1)
                continue
            if isinstance(value, dict):
                return value
            start = self.content.find("{", start + 1)
        return None


# =============================================================================
# AgentGeneration
# =============================================================================


class AgentGeneration(TimestampMixin, table=True):
    """One LLM response (or failed attempt) within a context."""

    __tablename__ = "agent_generations"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    agent_context_id: UUID = Field(foreign_key="agent_contexts.id", ondelete="CASCADE", index=True)
    response_message_id: UUID | None = Field(
        default=None, foreign_key="agent_messages.id", ondelete="SET NULL", index=True
    )

    provider_id: str | None = Field(default=None, max_length=255)
    model: str | None = Field(default=None, max_length=255)
    finish_reason: str | None = Field(default=None, max_length=64)

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    cached_tokens: int | None = Field(default=None)
    reasoning_tokens: int | None = Field(default=None)
    duration_ms: int | None = Field(default=None)

    raw_request: dict[str, Any] | None = Field(default=None, sa_column=_json_column())
    raw_response: dict[str, Any] | None = Field(default=None, sa_column=_json_column())
    provider_details: dict[str, Any] = Field(
        default_factory=dict, sa_column=_json_column(nullable=False)
    )

    status: str = Field(
        default=GenerationStatus.COMPLETED.value,
        sa_column=Column(String(32), nullable=False, server_default=text("'completed'")),
    )
    error_message: str | None = Field(default=None, sa_type=Text)

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens or 0,
            output_tokens=self.output_tokens or 0,
            total_tokens=self.total_tokens or 0,
            cached_tokens=self.cached_tokens,
            reasoning_tokens=self.reasoning_tokens,
            duration_ms=self.duration_ms,
            provider_details=self.provider_details or {},
        )

    @property
    def success(self) -> bool:
        return self.status == GenerationStatus.COMPLETED

    @property
    def failed(self) -> bool:
        return self.status == GenerationStatus.FAILED


# =============================================================================
# AgentToolCall
# =============================================================================


class AgentToolCall(TimestampMixin, table=True):
    """A single recorded tool invocation.

    ``arguments`` and ``result`` are stored already normalized (see
    ``normalize_payload``), so readers never parse them.
    """

    __tablename__ = "agent_tool_calls"
    __table_args__ = (
        Index("ix_agent_tool_calls_context_position", "agent_context_id", "position", unique=True),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    agent_context_id: UUID = Field(foreign_key="agent_contexts.id", ondelete="CASCADE", index=True)
    tool_call_id: str | None = Field(
        default=None, max_length=128, index=True, description="LLM-side tool call id"
    )
    name: str = Field(max_length=255, index=True, description="Tool name, e.g. navigate")

    arguments: dict[str, Any] = Field(default_factory=dict, sa_column=_json_column(nullable=False))
    result: dict[str, Any] | None = Field(default=None, sa_column=_json_column())

    status: str = Field(
        default=ToolCallStatus.PENDING.value,
        sa_column=Column(String(32), nullable=False, server_default=text("'pending'"), index=True),
    )
    error_message: str | None = Field(default=None, sa_type=Text)

    started_at: datetime | None = Field(default=None, sa_type=DateTime)
    completed_at: datetime | None = Field(default=None, sa_type=DateTime)
    duration_ms: int | None = Field(default=None)

    position: int = Field(default=0, ge=0)

    def start(self, *, now: datetime | None = None) -> None:
        if self.status not in (ToolCallStatus.PENDING, ToolCallStatus.EXECUTING):
            raise InvalidTransitionError("AgentToolCall", self.status, ToolCallStatus.EXECUTING)
        self.status = ToolCallStatus.EXECUTING.value
        self.started_at = now or utcnow_naive()

    def complete(self, result: Any, *, now: datetime | None = None) -> None:
        """Store the result and freeze the duration."""
        if not self.in_progress:
            raise InvalidTransitionError("AgentToolCall", self.status, ToolCallStatus.COMPLETED)
        finished = now or utcnow_naive()
        self.status = ToolCallStatus.COMPLETED.value
        self.result = normalize_payload(result)
        self.completed_at = finished
        self.duration_ms = _duration_ms(self.started_at, finished)

    def fail(self, error: BaseException | str, *, now: datetime | None = None) -> None:
        """Store the error message and freeze the duration."""
        if not self.in_progress:
            raise InvalidTransitionError("AgentToolCall", self.status, ToolCallStatus.FAILED)
        finished = now or utcnow_naive()
        self.status = ToolCallStatus.FAILED.value
        self.error_message = str(error) or type(error).__name__
        self.completed_at = finished
        self.duration_ms = _duration_ms(self.started_at, finished)

    @property
    def success(self) -> bool:
        return self.status == ToolCallStatus.COMPLETED and self.error_message is None

    @property
    def failed(self) -> bool:
        return self.status == ToolCallStatus.FAILED

    @property
    def in_progress(self) -> bool:
        return self.status in (ToolCallStatus.PENDING, ToolCallStatus.EXECUTING)

    def __repr__(self) -> str:
        return f"<AgentToolCall {self.name} #{self.position} status={self.status}>"


# =============================================================================
# AgentReference
# =============================================================================


class AgentReference(TimestampMixin, table=True):
    """A citation discovered while an agent used its tools.

    ``domain`` is derived from ``url`` on every insert/update. ``extra``
    holds free-form metadata (``metadata`` is reserved by SQLAlchemy).
    """

    __tablename__ = "agent_references"
    __table_args__ = (
        Index("ix_agent_references_context_position", "agent_context_id", "position", unique=True),
        Index("ix_agent_references_context_url", "agent_context_id", "url", unique=True),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    agent_context_id: UUID = Field(foreign_key="agent_contexts.id", ondelete="CASCADE", index=True)
    agent_tool_call_id: UUID | None = Field(
        default=None, foreign_key="agent_tool_calls.id", ondelete="SET NULL", index=True
    )

    url: str = Field(sa_type=Text, description="Dedup key within a context")
    title: str | None = Field(default=None, sa_type=Text)
    description: str | None = Field(default=None, sa_type=Text)

    og_title: str | None = Field(default=None, sa_type=Text)
    og_description: str | None = Field(default=None, sa_type=Text)
    og_image: str | None = Field(default=None, sa_type=Text)
    og_site_name: str | None = Field(default=None, sa_type=Text)
    og_type: str | None = Field(default=None, sa_type=Text)
    favicon_url: str | None = Field(default=None, sa_type=Text)

    domain: str | None = Field(default=None, max_length=255, index=True)
    extra: dict[str, Any] = Field(default_factory=dict, sa_column=_json_column(nullable=False))
    extracted_content: str | None = Field(default=None, sa_type=Text)

    status: str = Field(
        default=ReferenceStatus.PENDING.value,
        sa_column=Column(String(32), nullable=False, server_default=text("'pending'")),
    )
    error_message: str | None = Field(default=None, sa_type=Text)
    position: int = Field(default=0, ge=0)

    @property
    def display_title(self) -> str | None:
        return present(self.og_title) or present(self.title) or self.domain

    @property
    def display_description(self) -> str | None:
        return present(self.og_description) or present(self.description)

    @property
    def has_metadata(self) -> bool:
        return self.og_title is not None or self.title is not None

    def to_markdown_link(self) -> str:
        return f"[{self.display_title or self.url}]({self.url})"

    def to_html_link(self) -> str:
        label = escape(self.display_title or self.url)
        href = escape(self.url, quote=True)
        return f'<a href="{href}" target="_blank" rel="noopener noreferrer">{label}</a>'

    def as_card(self, *, content_limit: int = 200) -> dict[str, Any]:
        """UI-ready projection; empty fields are dropped."""
        card = {
            "id": str(self.id),
            "url": self.url,
            "domain": self.domain,
            "title": self.display_title,
            "description": self.display_description,
            "image": self.og_image,
            "site_name": self.og_site_name,
            "favicon": self.favicon_url,
            "markdown_link": self.to_markdown_link(),
            "extracted_content": truncate(self.extracted_content, content_limit),
            "status": self.status,
            "created_at": self.created_at,
        }
        return {key: value for key, value in card.items() if value is not None}

    def __repr__(self) -> str:
        return f"<AgentReference {self.url} #{self.position} status={self.status}>"


@event.listens_for(AgentReference, "before_insert")
@event.listens_for(AgentReference, "before_update")
def _derive_reference_domain(_mapper: Any, _connection: Any, target: AgentReference) -> None:
    target.domain = extract_domain(target.url)


# =============================================================================
# AgentFragment
# =============================================================================


class AgentFragment(ContextableMixin, TimestampMixin, table=True):
    """A versioned snapshot of one content transformation.

    ``parent_fragment_id`` links a regeneration to the attempt it replaced.
    Fragments are only ever appended, so the chain cannot cycle.
    """

    __tablename__ = "agent_fragments"
    __table_args__ = (Index("ix_agent_fragments_contextable", "contextable_type", "contextable_id"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    agent_context_id: UUID = Field(foreign_key="agent_contexts.id", ondelete="CASCADE", index=True)
    parent_fragment_id: UUID | None = Field(
        default=None, foreign_key="agent_fragments.id", ondelete="SET NULL", index=True
    )

    fragment_type: str = Field(default=FragmentType.SELECTION.value, max_length=32)
    start_offset: int | None = Field(default=None, ge=0)
    end_offset: int | None = Field(default=None, ge=0)
    content_hash: str | None = Field(default=None, max_length=64, index=True)

    original_content: str | None = Field(default=None, sa_type=Text)
    generated_content: str | None = Field(default=None, sa_type=Text)
    applied_content: str | None = Field(default=None, sa_type=Text)

    action_type: str | None = Field(default=None, max_length=64)
    detected_references: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=_json_column(nullable=False)
    )
    extra: dict[str, Any] = Field(default_factory=dict, sa_column=_json_column(nullable=False))

    status: str = Field(
        default=FragmentStatus.PENDING.value,
        sa_column=Column(String(32), nullable=False, server_default=text("'pending'"), index=True),
    )

    # -- state machine -------------------------------------------------------

    def can_transition_to(self, target: FragmentStatus | str) -> bool:
        current = FragmentStatus(self.status)
        target = FragmentStatus(target)
        if current in FRAGMENT_TERMINAL_STATES:
            return False
        if target == FragmentStatus.DISCARDED:
            return True
        return _FRAGMENT_RANK[target] >= _FRAGMENT_RANK[current]

    def _transition(self, target: FragmentStatus) -> None:
        if not self.can_transition_to(target):
            raise InvalidTransitionError("AgentFragment", self.status, target)
        self.status = target.value

    def mark_generating(self) -> None:
        self._transition(FragmentStatus.GENERATING)

    def mark_generated(self, content: str) -> None:
        self._transition(FragmentStatus.GENERATED)
        self.generated_content = content

    def mark_applied(self, content: str | None = None) -> None:
        self._transition(FragmentStatus.APPLIED)
        self.applied_content = content if content is not None else self.generated_content

    def mark_discarded(self) -> None:
        self._transition(FragmentStatus.DISCARDED)

    # -- read helpers ----------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status in FRAGMENT_TERMINAL_STATES

    @property
    def has_references(self) -> bool:
        return bool(self.detected_references)

    @property
    def accepted_references(self) -> list[dict[str, Any]]:
        """Detected references not explicitly rejected (missing flag = accepted)."""
        return [ref for ref in self.detected_references or [] if ref.get("accepted") is not False]

    @property
    def rejected_references(self) -> list[dict[str, Any]]:
        return [ref for ref in self.detected_references or [] if ref.get("accepted") is False]

    def accepted_references_markdown(self) -> str:
        lines = []
        for ref in self.accepted_references:
            url = ref.get("url")
            if not url:
                continue
            lines.append(f"- [{present(ref.get('text')) or url}]({url})")
        return "\n".join(lines)

    @property
    def was_modified_on_apply(self) -> bool:
        return self.applied_content is not None and self.applied_content != self.generated_content

    @property
    def action_label(self) -> str:
        return (self.action_type or "").replace("_", " ").title()

    def original_preview(self, length: int = 100) -> str:
        return truncate(self.original_content or "", length) or ""

    def __repr__(self) -> str:
        return f"<AgentFragment {self.action_type} status={self.status}>"


@event.listens_for(AgentFragment, "before_insert")
def _hash_fragment_content(_mapper: Any, _connection: Any, target: AgentFragment) -> None:
    if target.original_content is not None:
        target.content_hash = compute_content_hash(target.original_content)
