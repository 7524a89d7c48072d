"""Tests for settings loading."""

import pytest

from folio.config import Settings


def test_settings_defaults(monkeypatch) -> None:
    monkeypatch.delenv("FOLIO_DATABASE_URL", raising=False)
    s = Settings(_env_file=None)
    assert s.database_url.startswith("sqlite+aiosqlite://")
    assert s.is_sqlite
    assert s.reference_link_limit == 10
    assert s.extracted_content_limit == 1000
    assert s.card_content_limit == 200
    assert s.reference_tool_names == ["navigate", "extract_main_content", "extract_links"]


def test_settings_from_env(monkeypatch) -> None:
    monkeypatch.setenv("FOLIO_REFERENCE_LINK_LIMIT", "5")
    monkeypatch.setenv("FOLIO_REFERENCE_TOOL_NAMES", '["navigate", "open_page"]')
    monkeypatch.setenv("FOLIO_DATABASE_URL", "postgresql+asyncpg://folio@localhost/folio")

    s = Settings(_env_file=None)
    assert s.reference_link_limit == 5
    assert s.reference_tool_names == ["navigate", "open_page"]
    assert not s.is_sqlite


def test_production_rejects_sqlite(monkeypatch) -> None:
    monkeypatch.setenv("FOLIO_ENVIRONMENT", "production")
    monkeypatch.setenv("FOLIO_DATABASE_URL", "sqlite+aiosqlite:///./folio.db")
    with pytest.raises(ValueError, match="SQLite is not supported in production"):
        Settings(_env_file=None)
