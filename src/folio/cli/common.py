"""Shared CLI utilities - colors, console, database access, helpers."""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from functools import wraps
from typing import ParamSpec, TypeVar
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from folio.db import create_engine, make_session_factory

# Palette
ELECTRIC_PURPLE = "#e135ff"
NEON_CYAN = "#80ffea"
CORAL = "#ff6ac1"
ELECTRIC_YELLOW = "#f1fa8c"
SUCCESS_GREEN = "#50fa7b"
ERROR_RED = "#ff6363"

# Shared console instance
console = Console()

# Global options set by the root callback
cli_options: dict[str, str | None] = {"database_url": None}

P = ParamSpec("P")
R = TypeVar("R")


def success(message: str) -> None:
    """Print a success message."""
    console.print(f"[{SUCCESS_GREEN}]✓[/{SUCCESS_GREEN}] {message}")


def error(message: str) -> None:
    """Print an error message."""
    console.print(f"[{ERROR_RED}]✗[/{ERROR_RED}] {message}")


def warn(message: str) -> None:
    """Print a warning message."""
    console.print(f"[{ELECTRIC_YELLOW}]![/{ELECTRIC_YELLOW}] {message}")


def info(message: str) -> None:
    """Print an info message."""
    console.print(f"[{NEON_CYAN}]→[/{NEON_CYAN}] {message}")


def create_table(title: str | None = None, *columns: str) -> Table:
    """Create a styled table."""
    table = Table(title=title, border_style=NEON_CYAN)
    for i, col in enumerate(columns):
        style = ELECTRIC_PURPLE if i == 0 else NEON_CYAN
        justify = "right" if col.lower() in ("#", "count", "tokens", "ms") else "left"
        table.add_column(col, style=style, justify=justify)
    return table


def create_panel(content: str, title: str | None = None, subtitle: str | None = None) -> Panel:
    """Create a styled panel."""
    return Panel(
        content,
        title=f"[{ELECTRIC_PURPLE}]{title}[/{ELECTRIC_PURPLE}]" if title else None,
        subtitle=subtitle,
        border_style=NEON_CYAN,
    )


def create_tree(label: str) -> Tree:
    """Create a styled tree."""
    return Tree(f"[{ELECTRIC_PURPLE}]{label}[/{ELECTRIC_PURPLE}]")


def run_async(func: Callable[P, Awaitable[R]]) -> Callable[P, R]:
    """Decorator to run async functions in sync context (for Typer commands)."""

    @wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


@asynccontextmanager
async def open_database() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Session factory on a fresh engine, disposed when the command ends."""
    engine = create_engine(cli_options["database_url"])
    try:
        yield make_session_factory(engine)
    finally:
        await engine.dispose()


def parse_id(value: str, label: str = "ID") -> UUID:
    """Parse a UUID argument or exit with an error."""
    try:
        return UUID(value)
    except ValueError:
        error(f"Invalid {label}: {value}")
        raise typer.Exit(code=1) from None


def format_status(status: str) -> str:
    """Format a context, tool call, reference or fragment status with color."""
    status_colors = {
        "pending": "dim",
        "processing": ELECTRIC_PURPLE,
        "executing": ELECTRIC_PURPLE,
        "fetching": ELECTRIC_PURPLE,
        "generating": ELECTRIC_PURPLE,
        "generated": NEON_CYAN,
        "completed": SUCCESS_GREEN,
        "complete": SUCCESS_GREEN,
        "applied": SUCCESS_GREEN,
        "failed": ERROR_RED,
        "discarded": "dim",
    }
    color = status_colors.get(status.lower(), NEON_CYAN)
    return f"[{color}]{status}[/{color}]"
