"""Configuration management for Folio."""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FOLIO_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Runtime environment (development, staging, production)",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Database configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./folio.db",
        description="SQLAlchemy async database URL (asyncpg or aiosqlite driver)",
    )
    db_echo: bool = Field(default=False, description="Echo SQL statements to the log")
    db_pool_size: int = Field(default=5, ge=1, le=100, description="Connection pool size")

    # Reference extraction
    reference_tool_names: list[str] = Field(
        default_factory=lambda: ["navigate", "extract_main_content", "extract_links"],
        description="Tool names whose results are mined for references",
    )
    reference_link_limit: int = Field(
        default=10,
        ge=1,
        le=500,
        description="Max links taken from a single extract_links result",
    )
    extracted_content_limit: int = Field(
        default=1000,
        ge=50,
        description="Max characters of page content stored on a reference",
    )
    card_content_limit: int = Field(
        default=200,
        ge=20,
        description="Max characters of extracted content shown on a reference card",
    )
    preview_length: int = Field(
        default=100,
        ge=10,
        description="Default length of fragment content previews",
    )

    # Metadata fetching
    metadata_fetch_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Timeout in seconds for reference metadata requests",
    )
    metadata_user_agent: str = Field(
        default="FolioBot/0.1 (+reference-metadata)",
        description="User-Agent header sent when fetching reference metadata",
    )

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Refuse to run production against a local SQLite file."""
        if self.environment == "production" and self.database_url.startswith("sqlite"):
            raise ValueError(
                "CRITICAL: SQLite is not supported in production. "
                "Set FOLIO_DATABASE_URL to a postgresql+asyncpg:// URL."
            )
        return self

    @property
    def is_sqlite(self) -> bool:
        """Whether the configured database is SQLite."""
        return self.database_url.startswith("sqlite")


# Global settings instance
settings = Settings()
