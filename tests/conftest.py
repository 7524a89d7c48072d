"""Shared fixtures: a throwaway SQLite database per test."""

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from folio.agents import AgentContextService
from folio.db import Contextable, create_engine, init_db, make_session_factory


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'folio.db'}"


@pytest_asyncio.fixture
async def engine(database_url: str) -> AsyncIterator[AsyncEngine]:
    engine = create_engine(database_url, echo=False)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest.fixture
def page() -> Contextable:
    return Contextable.of("Page", 42)


@pytest_asyncio.fixture
async def service(session_factory: async_sessionmaker[AsyncSession]) -> AgentContextService:
    return await AgentContextService.create(
        session_factory, "WritingAssistantAgent", action_name="improve"
    )


@pytest.fixture
def sample_html() -> str:
    return """
    <html>
      <head>
        <title> Example Domain </title>
        <meta property="og:title" content="Example OG Title">
        <meta content="An example page" property="og:description">
        <meta property="og:image" content="https://example.com/cover.png">
        <meta property="og:site_name" content="Example">
        <meta name="description" content="Plain description">
        <link rel="shortcut icon" href="/static/icon.png">
      </head>
      <body>Hi</body>
    </html>
    """
