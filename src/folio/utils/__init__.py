"""Utility modules for Folio."""

from folio.utils.text import extract_domain, is_blank, present, truncate

__all__ = [
    "extract_domain",
    "is_blank",
    "present",
    "truncate",
]
