"""Tool registry with call recording.

Tools are plain functions (sync or async) taking a ``ToolSession`` plus
keyword arguments. Registering a tool wraps it once with
``with_recording``, which stores the arguments, outcome and timing of every
call on the session's agent context. Sessions without a context run the
tool untouched.

Usage:
    registry = ToolRegistry(extracts_references=True)

    @registry.tool("navigate", description=lambda args: f"Visiting {args.get('url')}")
    async def navigate(session: ToolSession, url: str) -> dict:
        ...

    result = await registry.dispatch(session, "navigate", {"url": "https://example.com"})
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from functools import wraps
from typing import TYPE_CHECKING, Any

import structlog

from folio.errors import PersistenceError, ToolNotFoundError, ValidationError
from folio.utils import is_blank

if TYPE_CHECKING:
    from folio.agents.context import AgentContextService

log = structlog.get_logger()

ToolHandler = Callable[..., Any]
RecordedTool = Callable[..., Awaitable[Any]]
ToolDescription = str | Callable[[Mapping[str, Any]], str] | None

_RECORDED_MARKER = "__folio_recorded__"


@dataclass
class ToolSession:
    """Per-invocation state handed to every tool.

    ``context`` is the agent context calls are recorded against; ``state``
    carries whatever the tools share between calls (a browser page, a
    crawl cursor, ...).
    """

    context: AgentContextService | None = None
    state: dict[str, Any] = field(default_factory=dict)


async def _invoke(handler: ToolHandler, session: ToolSession, arguments: Mapping[str, Any]) -> Any:
    result = handler(session, **arguments)
    if inspect.isawaitable(result):
        result = await result
    return result


def with_recording(name: str, handler: ToolHandler, *, extracts_references: bool = False) -> RecordedTool:
    """Wrap ``handler`` so each call is recorded as an ``AgentToolCall``.

    The wrapped tool returns the handler's value unchanged. If the handler
    raises, the call is stored as failed and the same exception is
    re-raised. Wrapping an already wrapped handler returns it as is.
    """
    if getattr(handler, _RECORDED_MARKER, False):
        return handler

    @wraps(handler)
    async def recorded(session: ToolSession, **arguments: Any) -> Any:
        service = session.context
        if service is None:
            return await _invoke(handler, session, arguments)

        tool_call = await service.record_tool_call_start(name, arguments)
        try:
            result = await _invoke(handler, session, arguments)
        except Exception as e:
            try:
                await service.record_tool_call_failure(tool_call, e)
            except PersistenceError as record_error:
                log.error(
                    "Could not record tool failure",
                    tool=name,
                    error=str(e),
                    record_error=str(record_error),
                )
            raise

        tool_call = await service.record_tool_call_complete(tool_call, result)

        if extracts_references and service.extractor.handles(name):
            try:
                await service.extract_reference_from_tool_call(tool_call)
            except PersistenceError as e:
                # The bulk pass over the context picks this call up again.
                log.warning("Per-call reference extraction failed", tool=name, error=str(e))

        return result

    setattr(recorded, _RECORDED_MARKER, True)
    return recorded


@dataclass
class RegisteredTool:
    name: str
    handler: RecordedTool
    description: ToolDescription = None

    def describe(self, arguments: Mapping[str, Any] | None = None) -> str:
        if callable(self.description):
            return self.description(dict(arguments or {}))
        return self.description or self.name.replace("_", " ").capitalize()


class ToolRegistry:
    """Name -> recorded handler dispatch table."""

    def __init__(self, *, extracts_references: bool = False) -> None:
        self.extracts_references = extracts_references
        self._tools: dict[str, RegisteredTool] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def register(
        self, name: str, handler: ToolHandler, *, description: ToolDescription = None
    ) -> RegisteredTool:
        """Register a tool; a second registration under the same name is a no-op."""
        if is_blank(name):
            raise ValidationError("Tool name is required", details={"field": "name"})
        existing = self._tools.get(name)
        if existing is not None:
            log.debug("Tool already registered", tool=name)
            return existing

        tool = RegisteredTool(
            name=name,
            handler=with_recording(name, handler, extracts_references=self.extracts_references),
            description=description,
        )
        self._tools[name] = tool
        return tool

    def tool(
        self, name: str | None = None, *, description: ToolDescription = None
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of ``register``; returns the undecorated function."""

        def decorator(func: ToolHandler) -> ToolHandler:
            self.register(name or func.__name__, func, description=description)
            return func

        return decorator

    def get(self, name: str) -> RegisteredTool:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def describe(self, name: str, arguments: Mapping[str, Any] | None = None) -> str:
        """Human readable line for UI feedback while a tool runs."""
        return self.get(name).describe(arguments)

    async def dispatch(
        self, session: ToolSession, name: str, arguments: Mapping[str, Any] | None = None
    ) -> Any:
        tool = self.get(name)
        return await tool.handler(session, **dict(arguments or {}))
