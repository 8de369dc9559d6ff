"""Application Configuration — environment-driven settings via pydantic-settings.

Invariants:
    - All secrets come from environment variables (never hardcoded)
    - get_settings() is cached (lru_cache) — single instance per process

Design Decisions:
    - pydantic-settings over raw os.environ: validation, type coercion, .env file support
    - Defaults provided for all non-secret settings: a local SQLite file works out-of-the-box
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Database (the database the agent explores and queries)
    database_url: str = "sqlite+aiosqlite:///./sqlagent.db"
    database_echo: bool = False

    @field_validator("database_url", mode="before")
    @classmethod
    def convert_async_url(cls, v: str) -> str:
        """Plain postgresql:// / sqlite:// URLs need an async driver suffix."""
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+asyncpg://", 1)
            if v.startswith("sqlite://"):
                return v.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return v

    # Anthropic
    anthropic_api_key: str = "sk-ant-placeholder"
    anthropic_timeout_seconds: int = 120

    # Agent
    agent_model: str = "claude-sonnet-4-5"
    agent_max_tokens: int = 4096
    agent_max_steps: int = Field(5, ge=1, le=50)

    # Capabilities
    result_preview_chars: int = 1000
    sample_rows_limit: int = Field(5, ge=1, le=100)

    # API
    cors_origins: list[str] = ["http://localhost:5173"]

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"


@lru_cache
def get_settings() -> Settings:
    return Settings()
