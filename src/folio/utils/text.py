"""Small string helpers shared by models and services."""

from typing import Any
from urllib.parse import urlsplit

OMISSION = "..."


def is_blank(value: Any) -> bool:
    """True for None, empty strings and whitespace-only strings."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def present(value: Any) -> str | None:
    """Return the value if it is a non-blank string, else None."""
    if isinstance(value, str) and value.strip():
        return value
    return None


def truncate(text: str | None, length: int, omission: str = OMISSION) -> str | None:
    """Truncate text to at most ``length`` characters, omission included.

    >>> truncate("This is a very long piece of content", 20)
    'This is a very lo...'
    """
    if text is None:
        return None
    if len(text) <= length:
        return text
    cut = max(length - len(omission), 0)
    return text[:cut] + omission


def extract_domain(url: str | None) -> str | None:
    """Best-effort host component of a URL; None when it cannot be parsed."""
    if not url:
        return None
    try:
        host = urlsplit(url.strip()).hostname
    except ValueError:
        return None
    return host or None
