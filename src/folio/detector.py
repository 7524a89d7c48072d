"""Markdown link detection for selected text.

Finds the links a user already has in a selection so they can be offered
as citations before any tool runs. Three forms are recognised:

- inline links ``[text](url)``
- autolinks ``<https://...>``
- reference-style links ``[text][id]`` (or ``[text][]``) paired with a
  ``[id]: url`` definition anywhere in the same text

Results are plain dicts ``{text, url, type, accepted}``, deduplicated by
normalized URL, in detection order.
"""

import re
from typing import Any
from urllib.parse import urlsplit

MARKDOWN_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
AUTOLINK_RE = re.compile(r"<(https?://[^>\s]+)>")
REFERENCE_LINK_RE = re.compile(r"\[([^\]]+)\]\[([^\]]*)\]")
REFERENCE_DEFINITION_RE = re.compile(r"^[ \t]{0,3}\[([^\]]+)\]:[ \t]*<?(\S+?)>?(?:[ \t]+.*)?$", re.M)
TRAILING_PUNCTUATION_RE = re.compile(r"[.,;:!?)\]]+$")

MARKDOWN = "markdown"
AUTOLINK = "autolink"
REFERENCE = "reference"


def normalize_url(url: str | None) -> str:
    """Strip whitespace and trailing punctuation swept up with the URL."""
    return TRAILING_PUNCTUATION_RE.sub("", (url or "").strip())


def fetchable_url(url: str | None) -> bool:
    """True for absolute http(s) URLs with a host."""
    if not url:
        return False
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname)


def _build(text: str | None, url: str, kind: str) -> dict[str, Any]:
    return {"text": text, "url": normalize_url(url), "type": kind, "accepted": True}


class MarkdownReferenceDetector:
    """Stateless link scanner over one block of text."""

    def __init__(self, content: str | None) -> None:
        self.content = content or ""

    def detect_references(self) -> list[dict[str, Any]]:
        found = [
            *self._markdown_links(),
            *self._autolinks(),
            *self._reference_links(),
        ]
        seen: set[str] = set()
        unique = []
        for ref in found:
            if not ref["url"] or ref["url"] in seen:
                continue
            seen.add(ref["url"])
            unique.append(ref)
        return unique

    def has_references(self) -> bool:
        return bool(self.detect_references())

    def reference_count(self) -> int:
        return len(self.detect_references())

    def _markdown_links(self) -> list[dict[str, Any]]:
        refs = []
        for match in MARKDOWN_LINK_RE.finditer(self.content):
            target = match.group(2).strip()
            # [text](url "title") - keep only the destination
            url = target.split()[0] if target else ""
            refs.append(_build(match.group(1), url, MARKDOWN))
        return refs

    def _autolinks(self) -> list[dict[str, Any]]:
        # <url> inside a "[id]: <url>" definition belongs to the reference link
        body = REFERENCE_DEFINITION_RE.sub("", self.content)
        return [_build(None, m.group(1), AUTOLINK) for m in AUTOLINK_RE.finditer(body)]

    def _reference_links(self) -> list[dict[str, Any]]:
        definitions = {
            m.group(1).strip().lower(): m.group(2)
            for m in REFERENCE_DEFINITION_RE.finditer(self.content)
        }
        if not definitions:
            return []

        refs = []
        for match in REFERENCE_LINK_RE.finditer(self.content):
            text, ref_id = match.group(1), match.group(2)
            # [text][] uses the text itself as the id
            url = definitions.get((ref_id or text).strip().lower())
            if url:
                refs.append(_build(text, url, REFERENCE))
        return refs


def detect_references(content: str | None) -> list[dict[str, Any]]:
    """Module-level shortcut for ``MarkdownReferenceDetector(content).detect_references()``."""
    return MarkdownReferenceDetector(content).detect_references()
