"""Open Graph metadata fetching for references.

Optional, best-effort enrichment. A reference moves
``pending -> fetching -> complete | failed``; network and HTTP failures are
stored on the reference instead of being raised.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

import httpx
import structlog

from folio.config import settings
from folio.db.connection import transaction
from folio.db.models import AgentReference, ReferenceStatus
from folio.errors import NotFoundError
from folio.utils import present

if TYPE_CHECKING:
    from folio.db.connection import SessionFactory

log = structlog.get_logger()

OG_PROPERTIES = ("og:title", "og:description", "og:image", "og:site_name", "og:type")

_TITLE_RE = re.compile(r"<title[^>]*>([^<]+)</title>", re.I)
_FAVICON_RES = (
    re.compile(r"""<link[^>]*rel=["'](?:shortcut )?icon["'][^>]*href=["']([^"']+)["']""", re.I),
    re.compile(r"""<link[^>]*href=["']([^"']+)["'][^>]*rel=["'](?:shortcut )?icon["']""", re.I),
)


def _meta_content(html: str, prop: str) -> str | None:
    """Content of a ``<meta property|name=prop>`` tag, in either attribute order."""
    name = re.escape(prop)
    patterns = (
        rf"""<meta[^>]*(?:property|name)=["']{name}["'][^>]*content=["']([^"']+)["']""",
        rf"""<meta[^>]*content=["']([^"']+)["'][^>]*(?:property|name)=["']{name}["']""",
    )
    for pattern in patterns:
        match = re.search(pattern, html, re.I)
        if match:
            return match.group(1)
    return None


def _favicon(html: str, url: str) -> str | None:
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.hostname:
        return None
    origin = f"{parts.scheme}://{parts.netloc}"

    for pattern in _FAVICON_RES:
        match = pattern.search(html)
        if match:
            href = match.group(1)
            if href.startswith("//"):
                return f"{parts.scheme}:{href}"
            if href.startswith("/"):
                return f"{origin}{href}"
            return href
    return f"{origin}/favicon.ico"


def parse_html_metadata(html: str, url: str) -> dict[str, str | None]:
    """Extract Open Graph and fallback metadata from a page."""
    title = _TITLE_RE.search(html)
    return {
        "og_title": _meta_content(html, "og:title"),
        "og_description": _meta_content(html, "og:description"),
        "og_image": _meta_content(html, "og:image"),
        "og_site_name": _meta_content(html, "og:site_name"),
        "og_type": _meta_content(html, "og:type"),
        "title": title.group(1).strip() if title else None,
        "description": _meta_content(html, "description"),
        "favicon_url": _favicon(html, url),
    }


def apply_metadata(ref: AgentReference, metadata: dict[str, Any]) -> None:
    """Copy parsed metadata onto a reference.

    Open Graph fields take what the page says; title, description and
    favicon are only filled when currently blank.
    """
    for field in ("og_title", "og_description", "og_image", "og_site_name", "og_type"):
        value = present(metadata.get(field))
        if value:
            setattr(ref, field, value)
    for field in ("title", "description", "favicon_url"):
        value = present(metadata.get(field))
        if value and not present(getattr(ref, field)):
            setattr(ref, field, value)


async def _set_status(
    session_factory: SessionFactory,
    reference_id: Any,
    status: ReferenceStatus,
    *,
    error_message: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AgentReference:
    async with transaction(
        session_factory, "update reference status", reference_id=reference_id
    ) as session:
        ref = await session.get(AgentReference, reference_id, with_for_update=True)
        if ref is None:
            raise NotFoundError("AgentReference", str(reference_id))
        if metadata:
            apply_metadata(ref, metadata)
        ref.status = status.value
        ref.error_message = error_message
        session.add(ref)
    return ref


async def fetch_metadata(
    session_factory: SessionFactory,
    reference: AgentReference,
    *,
    client: httpx.AsyncClient | None = None,
) -> bool:
    """Fetch a reference's page and store its metadata.

    Returns True when the reference ended up ``complete``.
    """
    if not present(reference.url):
        return False

    await _set_status(session_factory, reference.id, ReferenceStatus.FETCHING)

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(
            timeout=settings.metadata_fetch_timeout,
            follow_redirects=True,
            headers={"User-Agent": settings.metadata_user_agent},
        )
    try:
        response = await client.get(reference.url)
    except httpx.HTTPError as e:
        log.warning("Reference metadata fetch failed", url=reference.url, error=str(e))
        await _set_status(
            session_factory, reference.id, ReferenceStatus.FAILED, error_message=str(e) or type(e).__name__
        )
        return False
    finally:
        if owns_client:
            await client.aclose()

    if not response.is_success:
        log.info("Reference metadata fetch rejected", url=reference.url, status=response.status_code)
        await _set_status(
            session_factory,
            reference.id,
            ReferenceStatus.FAILED,
            error_message=f"HTTP {response.status_code}",
        )
        return False

    metadata = parse_html_metadata(response.text, reference.url)
    await _set_status(session_factory, reference.id, ReferenceStatus.COMPLETE, metadata=metadata)
    log.debug("Reference metadata fetched", url=reference.url)
    return True
