"""Database CLI commands."""

import typer

from folio.cli.common import cli_options, error, info, run_async, success
from folio.db import check_db_health, create_engine, init_db

app = typer.Typer(
    name="db",
    help="Database setup and health",
    no_args_is_help=True,
)


@app.command("init")
def init() -> None:
    """Create all Folio tables."""

    @run_async
    async def _init() -> None:
        engine = create_engine(cli_options["database_url"])
        try:
            await init_db(engine)
        finally:
            await engine.dispose()
        success("Database initialized")
        info(f"URL: {engine.url.render_as_string(hide_password=True)}")

    _init()


@app.command("health")
def health() -> None:
    """Check that the database answers a trivial query."""

    @run_async
    async def _health() -> bool:
        engine = create_engine(cli_options["database_url"])
        try:
            return await check_db_health(engine)
        finally:
            await engine.dispose()

    if _health():
        success("Database reachable")
    else:
        error("Database unreachable")
        raise typer.Exit(code=1)
