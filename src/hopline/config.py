"""Configuration management for Hopline."""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="HOPLINE_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    home: Path = Field(default=Path.home() / ".hopline", description="Directory for database and job store")
    database_path: Optional[Path] = Field(None, description="SQLite database path (defaults to <home>/hopline.db)")
    agents_file: Optional[Path] = Field(None, description="Agent catalog YAML (defaults to <home>/agents.yaml)")
    jobstore_path: Optional[Path] = Field(None, description="JSON job store for durable hop scheduling")

    # Chat surface
    default_user_id: str = Field(default="local", description="User id for sessions created without one")
    history_page_size: int = Field(default=25, ge=1, description="Default page size for chat history")

    # Turn limits
    max_model_calls_per_turn: int = Field(default=10, ge=1, description="Model calls allowed in one turn")

    # Scheduling
    enqueue_max_attempts: int = Field(default=3, ge=1, description="Attempts to schedule one hop")
    enqueue_backoff_seconds: float = Field(default=0.2, ge=0, description="Base delay between scheduling attempts")

    # Model calls
    model_max_attempts: int = Field(default=3, ge=1, description="Attempts for one model call")
    model_backoff_seconds: float = Field(default=0.5, ge=0, description="Base delay between model call attempts")
    model_timeout_seconds: Optional[float] = Field(default=60.0, description="Timeout for one model call")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")

    def resolve_home(self) -> Path:
        home = self.home.expanduser()
        home.mkdir(parents=True, exist_ok=True)
        return home

    def resolve_database_path(self) -> Path:
        if self.database_path is not None:
            return self.database_path.expanduser()
        return self.resolve_home() / "hopline.db"

    def resolve_agents_file(self) -> Path:
        if self.agents_file is not None:
            return self.agents_file.expanduser()
        return self.resolve_home() / "agents.yaml"


def get_settings(**overrides: object) -> Settings:
    """Get application settings.

    Args:
        overrides: Explicit values that win over environment and .env

    Returns:
        Settings instance
    """
    return Settings(**overrides)  # type: ignore[arg-type]
