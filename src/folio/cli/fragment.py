"""Fragment CLI commands."""

from typing import Annotated

import typer

from folio.agents import FragmentLineage
from folio.cli.common import (
    NEON_CYAN,
    console,
    create_tree,
    error,
    format_status,
    open_database,
    parse_id,
    run_async,
)
from folio.config import settings
from folio.errors import FolioError

app = typer.Typer(
    name="fragment",
    help="Inspect content fragments",
    no_args_is_help=True,
)


@app.command("history")
def history_cmd(
    fragment_id: Annotated[str, typer.Argument(help="Fragment ID")],
) -> None:
    """Show the version chain of a fragment, oldest first."""
    fid = parse_id(fragment_id, "fragment ID")

    @run_async
    async def _history() -> list:
        async with open_database() as session_factory:
            lineage = FragmentLineage(session_factory)
            fragment = await lineage.get(fid)
            return await lineage.version_history(fragment)

    try:
        chain = _history()
    except FolioError as e:
        error(e.message)
        raise typer.Exit(code=1) from None

    tree = create_tree(f"{chain[-1].action_label or 'Fragment'} history")
    for version, fragment in enumerate(chain, start=1):
        node = tree.add(
            f"v{version} [{NEON_CYAN}]{fragment.id}[/{NEON_CYAN}] {format_status(fragment.status)}"
        )
        node.add(f"original: {fragment.original_preview(settings.preview_length)}")
        if fragment.generated_content:
            node.add(f"generated: {fragment.generated_content[: settings.preview_length]}")
        if fragment.was_modified_on_apply:
            node.add("edited before apply")
        accepted = len(fragment.accepted_references)
        rejected = len(fragment.rejected_references)
        if accepted or rejected:
            node.add(f"references: {accepted} accepted, {rejected} rejected")
    console.print(tree)
