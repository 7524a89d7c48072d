"""Folio - persistent context for LLM agents.

Records the conversation, tool calls, citations and content revisions of
every agent invocation so they can be audited, replayed and shown back to
the user.
"""

import logging

# Suppress httpx request logs (one line per metadata fetch)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("aiosqlite").setLevel(logging.WARNING)

from folio.config import Settings  # noqa: E402 - must come after logging config

__version__ = "0.1.0"
__all__ = ["Settings", "__version__"]
