"""Reference extraction from recorded tool calls.

Turns completed tool-call results into deduplicated ``AgentReference``
rows. Three tool kinds carry references:

- ``navigate``: ``{success, current_url, title?}`` - upsert by URL, the
  visit is authoritative for the title and marks the reference complete
- ``extract_main_content``: ``{success, current_url, content?, title?}`` -
  enriches an existing reference only; title is filled when blank
- ``extract_links``: ``{success, links: [{href, text?}]}`` - creates
  pending references for unseen http(s) links, never touching existing ones

No path writes a blank value over a non-blank one. The same per-kind logic
serves the per-call path (right after a tool completes) and the bulk pass
over a whole context, so both produce the same rows.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from folio.config import settings
from folio.db.models import AgentReference, AgentToolCall, ReferenceStatus, ToolCallStatus
from folio.db.sequences import PositionCounter, allocate_position, lock_context
from folio.detector import fetchable_url
from folio.errors import ExtractionError
from folio.utils import present, truncate

if TYPE_CHECKING:
    from collections.abc import Iterable
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession

log = structlog.get_logger()

NAVIGATE = "navigate"
EXTRACT_MAIN_CONTENT = "extract_main_content"
EXTRACT_LINKS = "extract_links"

# Bulk extraction walks the kinds in this order so that content
# enrichment sees the references created by navigation.
EXTRACTION_ORDER = (NAVIGATE, EXTRACT_MAIN_CONTENT, EXTRACT_LINKS)

_SKIPPABLE_ERRORS = (ExtractionError, LookupError, TypeError, ValueError)


def _successful_result(tool_call: AgentToolCall) -> Mapping[str, Any] | None:
    result = tool_call.result
    if result is None:
        return None
    if not isinstance(result, Mapping):
        raise ExtractionError(
            "Tool result is not a mapping",
            details={"tool_call_id": str(tool_call.id), "type": type(result).__name__},
        )
    if not result.get("success"):
        return None
    return result


def _required_url(result: Mapping[str, Any], tool_call: AgentToolCall) -> str | None:
    url = result.get("current_url")
    if url is None:
        return None
    if not isinstance(url, str):
        raise ExtractionError(
            "current_url is not a string",
            details={"tool_call_id": str(tool_call.id), "type": type(url).__name__},
        )
    return present(url)


class ReferenceExtractor:
    """Upserts references for one context from its tool calls."""

    def __init__(
        self,
        *,
        tool_names: Iterable[str] | None = None,
        link_limit: int | None = None,
        content_limit: int | None = None,
    ) -> None:
        self.tool_names = frozenset(tool_names or settings.reference_tool_names)
        self.link_limit = link_limit or settings.reference_link_limit
        self.content_limit = content_limit or settings.extracted_content_limit

    def handles(self, tool_name: str) -> bool:
        return tool_name in self.tool_names

    # -- public entry points -------------------------------------------------

    async def extract_context(self, session: AsyncSession, context_id: UUID) -> list[AgentReference]:
        """Bulk pass over every completed reference-bearing tool call.

        Safe to re-run: existing URLs are updated, never duplicated.
        """
        await lock_context(session, context_id)
        references: list[AgentReference] = []
        seen_urls: set[str] = set()

        for kind in EXTRACTION_ORDER:
            if not self.handles(kind):
                continue
            result = await session.execute(
                select(AgentToolCall)
                .where(
                    AgentToolCall.agent_context_id == context_id,
                    AgentToolCall.name == kind,
                    AgentToolCall.status == ToolCallStatus.COMPLETED.value,
                )
                .order_by(AgentToolCall.position)
            )
            for tool_call in result.scalars().all():
                references.extend(await self._extract_safely(session, tool_call, seen_urls))

        log.info(
            "References extracted",
            context_id=str(context_id),
            references=len(references),
        )
        return references

    async def extract_tool_call(
        self, session: AsyncSession, tool_call: AgentToolCall
    ) -> list[AgentReference]:
        """Per-call path, run right after a tool call completes."""
        if not self.handles(tool_call.name) or tool_call.status != ToolCallStatus.COMPLETED:
            return []
        await lock_context(session, tool_call.agent_context_id)
        return await self._extract_safely(session, tool_call, set())

    # -- per-kind logic --------------------------------------------------------

    async def _extract_safely(
        self, session: AsyncSession, tool_call: AgentToolCall, seen_urls: set[str]
    ) -> list[AgentReference]:
        try:
            return await self._extract(session, tool_call, seen_urls)
        except _SKIPPABLE_ERRORS as e:
            log.warning(
                "Skipping tool call during reference extraction",
                tool=tool_call.name,
                tool_call_id=str(tool_call.id),
                error=str(e),
            )
            return []

    async def _extract(
        self, session: AsyncSession, tool_call: AgentToolCall, seen_urls: set[str]
    ) -> list[AgentReference]:
        result = _successful_result(tool_call)
        if result is None:
            return []

        if tool_call.name == NAVIGATE:
            ref = await self._from_navigate(session, tool_call, result, seen_urls)
            return [ref] if ref else []
        if tool_call.name == EXTRACT_MAIN_CONTENT:
            await self._from_main_content(session, tool_call, result)
            return []
        if tool_call.name == EXTRACT_LINKS:
            return await self._from_links(session, tool_call, result, seen_urls)
        return []

    async def _find_or_create(
        self, session: AsyncSession, tool_call: AgentToolCall, url: str, **fields: Any
    ) -> tuple[AgentReference, bool]:
        """Upsert-by-URL lookup. Returns the reference and whether it is new.

        An insert that loses a race on the (context, url) unique index is
        rolled back to its savepoint and the winner's row is used instead.
        """
        context_id = tool_call.agent_context_id
        ref = await find_reference(session, context_id, url)
        if ref is not None:
            return ref, False
        try:
            async with session.begin_nested():
                ref = await create_reference(
                    session, context_id, url, agent_tool_call_id=tool_call.id, **fields
                )
        except IntegrityError:
            ref = await find_reference(session, context_id, url)
            if ref is None:
                raise
            log.debug("Reference inserted concurrently", url=url, context_id=str(context_id))
            return ref, False
        return ref, True

    async def _from_navigate(
        self,
        session: AsyncSession,
        tool_call: AgentToolCall,
        result: Mapping[str, Any],
        seen_urls: set[str],
    ) -> AgentReference | None:
        url = _required_url(result, tool_call)
        if url is None:
            return None
        # A repeat visit in the same run still updates the reference.
        seen_urls.add(url)

        ref, _ = await self._find_or_create(session, tool_call, url)
        ref.agent_tool_call_id = tool_call.id
        title = present(result.get("title"))
        if title:
            ref.title = title
        ref.status = ReferenceStatus.COMPLETE.value
        session.add(ref)
        await session.flush()
        return ref

    async def _from_main_content(
        self, session: AsyncSession, tool_call: AgentToolCall, result: Mapping[str, Any]
    ) -> None:
        url = _required_url(result, tool_call)
        if url is None:
            return

        ref = await find_reference(session, tool_call.agent_context_id, url)
        if ref is None:
            log.debug("No reference to enrich", url=url, tool_call_id=str(tool_call.id))
            return

        content = present(result.get("content"))
        if content:
            ref.extracted_content = truncate(content, self.content_limit)
        title = present(result.get("title"))
        if title and not present(ref.title):
            ref.title = title
        session.add(ref)
        await session.flush()

    async def _from_links(
        self,
        session: AsyncSession,
        tool_call: AgentToolCall,
        result: Mapping[str, Any],
        seen_urls: set[str],
    ) -> list[AgentReference]:
        links = result.get("links")
        if not isinstance(links, list):
            raise ExtractionError(
                "links is not a list",
                details={"tool_call_id": str(tool_call.id), "type": type(links).__name__},
            )

        created = []
        for link in links[: self.link_limit]:
            if not isinstance(link, Mapping):
                continue
            href = present(link.get("href"))
            if not href or not href.startswith("http") or href in seen_urls:
                continue
            seen_urls.add(href)

            ref, is_new = await self._find_or_create(
                session, tool_call, href, title=present(link.get("text")), status=ReferenceStatus.PENDING
            )
            if is_new:
                created.append(ref)
        return created


async def find_reference(session: AsyncSession, context_id: UUID, url: str) -> AgentReference | None:
    """Find a context's reference by exact URL."""
    result = await session.execute(
        select(AgentReference)
        .where(AgentReference.agent_context_id == context_id, AgentReference.url == url)
        .order_by(AgentReference.position)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_reference(
    session: AsyncSession,
    context_id: UUID,
    url: str,
    *,
    title: str | None = None,
    agent_tool_call_id: UUID | None = None,
    status: ReferenceStatus = ReferenceStatus.PENDING,
    **fields: Any,
) -> AgentReference:
    """Insert a reference at the next position of its context."""
    if not present(url):
        raise ExtractionError("Reference URL is blank", details={"context_id": str(context_id)})
    position = await allocate_position(session, context_id, PositionCounter.REFERENCE)
    ref = AgentReference(
        agent_context_id=context_id,
        url=url,
        title=title,
        agent_tool_call_id=agent_tool_call_id,
        status=status.value,
        position=position,
        **fields,
    )
    session.add(ref)
    await session.flush()
    return ref


async def annotate_detected_references(
    session: AsyncSession, detected: Iterable[Mapping[str, Any]]
) -> list[dict[str, Any]]:
    """Merge detected links with what we already know about their URLs.

    Adds ``existing_reference`` (id or None), ``has_cached_content`` and
    ``can_fetch`` to each entry.
    """
    annotated = []
    for ref in detected:
        url = ref.get("url")
        existing = None
        if url:
            result = await session.execute(
                select(AgentReference)
                .where(AgentReference.url == url)
                .order_by(AgentReference.created_at.desc())
                .limit(1)
            )
            existing = result.scalar_one_or_none()
        annotated.append(
            {
                **ref,
                "existing_reference": str(existing.id) if existing else None,
                "has_cached_content": bool(existing and present(existing.extracted_content)),
                "can_fetch": fetchable_url(url),
            }
        )
    return annotated
