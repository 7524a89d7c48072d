"""Main CLI application - ties all subcommands together.

This is the entry point for the folio CLI.
"""

from pathlib import Path
from typing import Annotated

import typer

from folio import __version__
from folio.cli.common import cli_options, console, create_table, error, info
from folio.cli.context import app as context_app
from folio.cli.db import app as db_app
from folio.cli.fragment import app as fragment_app
from folio.detector import detect_references
from folio.main import configure_logging

app = typer.Typer(
    name="folio",
    help="Folio - persistent context for LLM agents",
    add_completion=False,
    no_args_is_help=True,
)

app.add_typer(db_app, name="db")
app.add_typer(context_app, name="context")
app.add_typer(fragment_app, name="fragment")


@app.callback()
def root(
    database_url: Annotated[
        str | None,
        typer.Option("--database-url", envvar="FOLIO_DATABASE_URL", help="Database URL"),
    ] = None,
    log_level: Annotated[
        str | None, typer.Option("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    ] = None,
) -> None:
    """Folio - persistent context for LLM agents."""
    cli_options["database_url"] = database_url
    configure_logging(log_level or "WARNING")


@app.command()
def version() -> None:
    """Show the Folio version."""
    console.print(f"folio {__version__}")


@app.command()
def detect(
    path: Annotated[Path, typer.Argument(help="Markdown file to scan", exists=True, dir_okay=False)],
) -> None:
    """List the links in a markdown file."""
    references = detect_references(path.read_text(encoding="utf-8"))
    if not references:
        info("No links found")
        return

    table = create_table(f"Links in {path.name}", "Text", "URL", "Type")
    for ref in references:
        table.add_row(ref["text"] or "-", ref["url"], ref["type"])
    console.print(table)


def main() -> None:
    """Run the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        error("Interrupted")
        raise SystemExit(130) from None


if __name__ == "__main__":
    main()
