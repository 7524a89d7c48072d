"""Tests for the folio CLI."""

import asyncio
from pathlib import Path

import pytest
from typer.testing import CliRunner

from folio.agents import AgentContextService
from folio.cli import common
from folio.cli.main import app
from folio.db import create_engine, init_db, make_session_factory
from folio.llm import LLMResponse, ResponseMessage

runner = CliRunner()


@pytest.fixture(autouse=True)
def wide_console(monkeypatch) -> None:
    monkeypatch.setattr(common.console, "width", 200)


@pytest.fixture
def cli_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"


def _seed(url: str) -> dict[str, str]:
    async def seed() -> dict[str, str]:
        engine = create_engine(url)
        await init_db(engine)
        session_factory = make_session_factory(engine)
        try:
            service = await AgentContextService.create(
                session_factory, "ResearchAgent", action_name="research"
            )
            await service.add_user_message("Find sources on tides")
            tool_call = await service.record_tool_call_start("navigate", {"url": "https://example.com"})
            await service.record_tool_call_complete(
                tool_call, {"success": True, "current_url": "https://example.com", "title": "Tides"}
            )
            await service.record_generation(
                LLMResponse(model="gpt-4o", message=ResponseMessage(content="Here are sources"))
            )
            root = await service.create_fragment("improve", "Tides are caused by the moon.")
            lineage = service.fragment_lineage()
            child = await lineage.regenerate_with(root, [])
            return {"context": str(service.id), "root": str(root.id), "child": str(child.id)}
        finally:
            await engine.dispose()

    return asyncio.run(seed())


def _invoke(url: str, *args: str):
    return runner.invoke(app, ["--database-url", url, *args])


def test_db_init_and_health(cli_url: str) -> None:
    result = _invoke(cli_url, "db", "init")
    assert result.exit_code == 0, result.output
    assert "Database initialized" in result.output

    result = _invoke(cli_url, "db", "health")
    assert result.exit_code == 0
    assert "Database reachable" in result.output


def test_context_list_and_show(cli_url: str) -> None:
    ids = _seed(cli_url)

    result = _invoke(cli_url, "context", "list")
    assert result.exit_code == 0, result.output
    assert "ResearchAgent" in result.output
    assert "completed" in result.output

    result = _invoke(cli_url, "context", "list", "--agent", "WritingAssistantAgent")
    assert "No contexts found" in result.output

    result = _invoke(cli_url, "context", "show", ids["context"])
    assert result.exit_code == 0, result.output
    assert "Find sources on tides" in result.output
    assert "1 total" in result.output
    assert "navigate: 1" in result.output


def test_context_references_with_extraction(cli_url: str) -> None:
    ids = _seed(cli_url)

    result = _invoke(cli_url, "context", "references", ids["context"])
    assert "No references" in result.output

    result = _invoke(cli_url, "context", "references", ids["context"], "--extract")
    assert result.exit_code == 0, result.output
    assert "https://example.com" in result.output
    assert "Tides" in result.output


def test_context_errors(cli_url: str) -> None:
    _seed(cli_url)

    result = _invoke(cli_url, "context", "show", "not-a-uuid")
    assert result.exit_code == 1
    assert "Invalid context ID" in result.output

    result = _invoke(cli_url, "context", "show", "00000000-0000-0000-0000-000000000000")
    assert result.exit_code == 1
    assert "AgentContext not found" in result.output

    result = _invoke(cli_url, "context", "list", "--status", "paused")
    assert result.exit_code == 1


def test_context_delete(cli_url: str) -> None:
    ids = _seed(cli_url)

    result = _invoke(cli_url, "context", "delete", ids["context"], "--yes")
    assert result.exit_code == 0, result.output
    assert "Deleted context" in result.output

    result = _invoke(cli_url, "context", "delete", ids["context"], "--yes")
    assert result.exit_code == 1


def test_fragment_history(cli_url: str) -> None:
    ids = _seed(cli_url)

    result = _invoke(cli_url, "fragment", "history", ids["child"])
    assert result.exit_code == 0, result.output
    assert "v1" in result.output and "v2" in result.output
    assert ids["root"] in result.output
    assert ids["child"] in result.output
    assert "Tides are caused by the moon." in result.output


def test_detect(tmp_path: Path) -> None:
    doc = tmp_path / "draft.md"
    doc.write_text("Check out [OpenAI](https://openai.com) and <https://example.com>.\n")

    result = runner.invoke(app, ["detect", str(doc)])
    assert result.exit_code == 0, result.output
    assert "https://openai.com" in result.output
    assert "autolink" in result.output

    empty = tmp_path / "empty.md"
    empty.write_text("nothing here")
    result = runner.invoke(app, ["detect", str(empty)])
    assert "No links found" in result.output
