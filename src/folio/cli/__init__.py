"""Folio CLI.

Subcommand groups:
- db: Database setup and health
- context: Inspect and delete agent contexts
- fragment: Fragment version history
"""

from folio.cli.main import app, main

__all__ = ["app", "main"]
