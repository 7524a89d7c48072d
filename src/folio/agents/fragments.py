"""Fragment lineage: versioned snapshots of content transformations.

A fragment records what the user started from, what the model produced
and what was finally applied. Regenerating creates a child fragment
pointing at the attempt it replaces, so the full chain of suggestions for
one piece of text can be replayed.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog
from sqlmodel import select

from folio.config import settings
from folio.db.connection import transaction
from folio.db.models import (
    AgentContext,
    AgentFragment,
    AgentReference,
    FragmentStatus,
    FragmentType,
)
from folio.errors import NotFoundError, ValidationError
from folio.utils import present, truncate

if TYPE_CHECKING:
    from collections.abc import Callable

    from folio.db.connection import SessionFactory
    from folio.db.models import Contextable

log = structlog.get_logger()

_INITIAL_STATES = frozenset({FragmentStatus.PENDING, FragmentStatus.GENERATING})


def _reference_list(references: Iterable[Mapping[str, Any]] | None) -> list[dict[str, Any]]:
    return [dict(ref) for ref in references or []]


class FragmentLineage:
    """Creates fragments and moves them through their lifecycle."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def create(
        self,
        context_id: UUID,
        action_type: str,
        original_content: str,
        *,
        fragment_type: FragmentType | str = FragmentType.SELECTION,
        start_offset: int | None = None,
        end_offset: int | None = None,
        detected_references: Iterable[Mapping[str, Any]] | None = None,
        contextable: Contextable | None = None,
        status: FragmentStatus | str = FragmentStatus.PENDING,
        extra: Mapping[str, Any] | None = None,
        parent_fragment_id: UUID | None = None,
    ) -> AgentFragment:
        """Create a fragment in ``pending`` (or ``generating``).

        The content hash of ``original_content`` is computed on insert.
        """
        if original_content is None:
            raise ValidationError(
                "original_content is required", details={"field": "original_content"}
            )
        initial = FragmentStatus(status)
        if initial not in _INITIAL_STATES:
            raise ValidationError(
                f"Fragments cannot be created as {initial.value!r}",
                details={"status": initial.value},
            )
        if start_offset is not None and end_offset is not None and end_offset < start_offset:
            raise ValidationError(
                "end_offset must not precede start_offset",
                details={"start_offset": start_offset, "end_offset": end_offset},
            )

        fragment = AgentFragment(
            agent_context_id=context_id,
            parent_fragment_id=parent_fragment_id,
            fragment_type=FragmentType(fragment_type).value,
            start_offset=start_offset,
            end_offset=end_offset,
            original_content=original_content,
            action_type=action_type,
            detected_references=_reference_list(detected_references),
            extra=dict(extra or {}),
            status=initial.value,
        )
        fragment.attach(contextable)

        async with transaction(self._session_factory, "create fragment", context_id=context_id) as session:
            if await session.get(AgentContext, context_id) is None:
                raise NotFoundError("AgentContext", str(context_id))
            session.add(fragment)

        log.debug(
            "Fragment created",
            fragment_id=str(fragment.id),
            action=action_type,
            status=fragment.status,
            parent=str(parent_fragment_id) if parent_fragment_id else None,
        )
        return fragment

    async def get(self, fragment_id: UUID) -> AgentFragment:
        async with self._session_factory() as session:
            fragment = await session.get(AgentFragment, fragment_id)
        if fragment is None:
            raise NotFoundError("AgentFragment", str(fragment_id))
        return fragment

    async def _update(
        self, fragment: AgentFragment, operation: str, apply: Callable[[AgentFragment], None]
    ) -> AgentFragment:
        async with transaction(self._session_factory, operation, fragment_id=fragment.id) as session:
            current = await session.get(
                AgentFragment, fragment.id, with_for_update=True, populate_existing=True
            )
            if current is None:
                raise NotFoundError("AgentFragment", str(fragment.id))
            previous = current.status
            apply(current)
            session.add(current)

        log.debug(
            "Fragment transition",
            fragment_id=str(current.id),
            previous=previous,
            status=current.status,
        )
        return current

    async def mark_generating(self, fragment: AgentFragment) -> AgentFragment:
        return await self._update(fragment, "mark fragment generating", lambda f: f.mark_generating())

    async def mark_generated(self, fragment: AgentFragment, content: str) -> AgentFragment:
        return await self._update(
            fragment, "mark fragment generated", lambda f: f.mark_generated(content)
        )

    async def mark_applied(self, fragment: AgentFragment, content: str | None = None) -> AgentFragment:
        """Apply the fragment; ``content`` overrides the generated text when the user edited it."""
        return await self._update(fragment, "mark fragment applied", lambda f: f.mark_applied(content))

    async def mark_discarded(self, fragment: AgentFragment) -> AgentFragment:
        return await self._update(fragment, "mark fragment discarded", lambda f: f.mark_discarded())

    async def regenerate_with(
        self, fragment: AgentFragment, new_references: Iterable[Mapping[str, Any]] | None
    ) -> AgentFragment:
        """New ``pending`` child of ``fragment`` with a different reference selection."""
        child = await self.create(
            fragment.agent_context_id,
            fragment.action_type,
            fragment.original_content,
            fragment_type=fragment.fragment_type,
            start_offset=fragment.start_offset,
            end_offset=fragment.end_offset,
            detected_references=new_references,
            contextable=fragment.contextable,
            extra=fragment.extra,
            parent_fragment_id=fragment.id,
        )
        log.info("Fragment regenerated", parent=str(fragment.id), fragment_id=str(child.id))
        return child

    async def version_history(self, fragment: AgentFragment) -> list[AgentFragment]:
        """Every ancestor of ``fragment`` and itself, oldest first."""
        chain = [fragment]
        seen = {fragment.id}
        async with self._session_factory() as session:
            parent_id = fragment.parent_fragment_id
            while parent_id is not None and parent_id not in seen:
                parent = await session.get(AgentFragment, parent_id)
                if parent is None:
                    break
                chain.append(parent)
                seen.add(parent.id)
                parent_id = parent.parent_fragment_id
        chain.reverse()
        return chain

    async def children(self, fragment: AgentFragment) -> list[AgentFragment]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AgentFragment)
                .where(AgentFragment.parent_fragment_id == fragment.id)
                .order_by(AgentFragment.created_at)
            )
            return list(result.scalars().all())

    # -- queries -------------------------------------------------------------

    async def _query(
        self,
        *,
        contextable: Contextable | None = None,
        context_id: UUID | None = None,
        active: bool = False,
        with_generations: bool = False,
        limit: int | None = None,
    ) -> list[AgentFragment]:
        stmt = select(AgentFragment)
        if contextable is not None:
            stmt = stmt.where(
                AgentFragment.contextable_type == contextable.kind,
                AgentFragment.contextable_id == contextable.id,
            )
        if context_id is not None:
            stmt = stmt.where(AgentFragment.agent_context_id == context_id)
        if active:
            stmt = stmt.where(AgentFragment.status != FragmentStatus.DISCARDED.value)
        if with_generations:
            stmt = stmt.where(AgentFragment.generated_content.is_not(None))
        stmt = stmt.order_by(AgentFragment.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def recent(
        self, *, contextable: Contextable | None = None, limit: int | None = None
    ) -> list[AgentFragment]:
        return await self._query(contextable=contextable, limit=limit)

    async def active(self, *, contextable: Contextable | None = None) -> list[AgentFragment]:
        return await self._query(contextable=contextable, active=True)

    async def with_generations(self, *, contextable: Contextable | None = None) -> list[AgentFragment]:
        return await self._query(contextable=contextable, with_generations=True)

    async def build_reference_context(self, fragment: AgentFragment) -> str:
        """Prompt block describing the fragment's accepted references.

        Uses what earlier tool runs cached for each URL: extracted page
        content first, the Open Graph description otherwise.
        """
        accepted = [ref for ref in fragment.accepted_references if present(ref.get("url"))]
        if not accepted:
            return ""

        urls = [ref["url"] for ref in accepted]
        known: dict[str, AgentReference] = {}
        async with self._session_factory() as session:
            result = await session.execute(
                select(AgentReference)
                .where(AgentReference.url.in_(urls))
                .order_by(AgentReference.created_at.desc())
            )
            for reference in result.scalars().all():
                known.setdefault(reference.url, reference)

        lines = ["## Available References", ""]
        for index, ref in enumerate(accepted, start=1):
            url = ref["url"]
            lines.append(f"{index}. [{present(ref.get('text')) or url}]({url})")
            cached = known.get(url)
            summary = None
            if cached is not None:
                summary = present(cached.extracted_content) or present(cached.og_description)
            if summary:
                lines.append(f"   Summary: {truncate(summary, settings.extracted_content_limit)}")
        lines.append("")
        lines.append("Cite these sources with markdown links where they support the text.")
        return "\n".join(lines)
