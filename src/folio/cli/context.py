"""Agent context CLI commands."""

from typing import Annotated

import typer

from folio.agents import AgentContextService, delete_context, list_contexts
from folio.cli.common import (
    CORAL,
    ELECTRIC_PURPLE,
    NEON_CYAN,
    console,
    create_panel,
    create_table,
    error,
    format_status,
    info,
    open_database,
    parse_id,
    run_async,
    success,
    warn,
)
from folio.errors import FolioError
from folio.utils import truncate

app = typer.Typer(
    name="context",
    help="Inspect agent contexts",
    no_args_is_help=True,
)


@app.command("list")
def list_cmd(
    agent: Annotated[str | None, typer.Option("--agent", "-a", help="Filter by agent name")] = None,
    status: Annotated[str | None, typer.Option("--status", "-s", help="Filter by status")] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Max contexts")] = 20,
) -> None:
    """List agent contexts, newest first."""

    @run_async
    async def _list() -> None:
        async with open_database() as session_factory:
            contexts = await list_contexts(
                session_factory, agent_name=agent, status=status, limit=limit
            )

        if not contexts:
            info("No contexts found")
            return

        table = create_table("Agent Contexts", "ID", "Agent", "Action", "Status", "Created")
        for context in contexts:
            table.add_row(
                str(context.id),
                context.agent_name,
                context.action_name or "-",
                format_status(context.status),
                context.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            )
        console.print(table)

    try:
        _list()
    except FolioError as e:
        error(e.message)
        raise typer.Exit(code=1) from None


@app.command("show")
def show_cmd(
    context_id: Annotated[str, typer.Argument(help="Context ID")],
) -> None:
    """Show messages, generations and tool-call statistics of a context."""
    cid = parse_id(context_id, "context ID")

    @run_async
    async def _show() -> None:
        async with open_database() as session_factory:
            service = await AgentContextService.load(session_factory, cid)
            messages = await service.messages()
            generations = await service.generations()
            stats = await service.tool_call_statistics()

        context = service.context
        header = (
            f"[{ELECTRIC_PURPLE}]{context.agent_name}[/{ELECTRIC_PURPLE}]"
            f" {context.action_name or ''}\n"
            f"Status: {format_status(context.status)}"
        )
        if context.contextable:
            header += f"\nFor: {context.contextable.kind} {context.contextable.id}"
        console.print(create_panel(header, title="Context", subtitle=str(context.id)))

        if messages:
            table = create_table("Messages", "#", "Role", "Content")
            for message in messages:
                table.add_row(str(message.position), message.role, truncate(message.content or "", 80))
            console.print(table)

        if generations:
            table = create_table("Generations", "Model", "Status", "Tokens", "Finish")
            for generation in generations:
                table.add_row(
                    generation.model or "-",
                    format_status(generation.status),
                    str(generation.total_tokens),
                    generation.finish_reason or generation.error_message or "-",
                )
            console.print(table)

        console.print(
            f"\n[{NEON_CYAN}]Tool calls:[/{NEON_CYAN}] {stats['total']} total, "
            f"{stats['completed']} completed, "
            f"[{CORAL}]{stats['failed']} failed[/{CORAL}], "
            f"{stats['total_duration_ms']}ms"
        )
        for name, count in sorted(stats["by_tool"].items()):
            console.print(f"  • {name}: {count}")

    try:
        _show()
    except FolioError as e:
        error(e.message)
        raise typer.Exit(code=1) from None


@app.command("references")
def references_cmd(
    context_id: Annotated[str, typer.Argument(help="Context ID")],
    extract: Annotated[
        bool, typer.Option("--extract", "-e", help="Run reference extraction first")
    ] = False,
) -> None:
    """Show the reference cards of a context."""
    cid = parse_id(context_id, "context ID")

    @run_async
    async def _references() -> list[dict]:
        async with open_database() as session_factory:
            service = await AgentContextService.load(session_factory, cid)
            if extract:
                await service.extract_references()
            return [ref.as_card() for ref in await service.references()]

    try:
        cards = _references()
    except FolioError as e:
        error(e.message)
        raise typer.Exit(code=1) from None

    if not cards:
        warn("No references")
        return

    table = create_table("References", "Title", "Domain", "Status", "URL")
    for card in cards:
        table.add_row(
            truncate(card.get("title") or "-", 50),
            card.get("domain") or "-",
            format_status(card["status"]),
            card["url"],
        )
    console.print(table)


@app.command("delete")
def delete_cmd(
    context_id: Annotated[str, typer.Argument(help="Context ID")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
) -> None:
    """Delete a context and everything recorded under it."""
    cid = parse_id(context_id, "context ID")
    if not yes:
        typer.confirm(f"Delete context {cid} and all its records?", abort=True)

    @run_async
    async def _delete() -> bool:
        async with open_database() as session_factory:
            return await delete_context(session_factory, cid)

    try:
        deleted = _delete()
    except FolioError as e:
        error(e.message)
        raise typer.Exit(code=1) from None

    if deleted:
        success(f"Deleted context {cid}")
    else:
        error(f"Context not found: {cid}")
        raise typer.Exit(code=1)
