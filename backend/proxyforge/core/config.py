"""
Proxy Forge - Configuration
===========================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Proxy Forge"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./proxyforge.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # SSH Transport
    # ==========================================================================
    SSH_CONNECT_TIMEOUT: float = 30.0
    SSH_KEEPALIVE_INTERVAL: float = 10.0
    SSH_KEEPALIVE_COUNT_MAX: int = 3
    SSH_TERM_TYPE: str = "xterm"

    # ==========================================================================
    # Connection Pool
    # ==========================================================================
    POOL_MAX_PER_HOST: int = 3
    POOL_MAX_RETRIES: int = 3
    POOL_RETRY_DELAY: float = 2.0
    POOL_WAIT_TIMEOUT: float = 30.0
    POOL_POLL_INTERVAL: float = 1.0
    POOL_IDLE_TTL: float = 300.0
    POOL_REAP_INTERVAL: float = 60.0

    # ==========================================================================
    # Command Executor
    # ==========================================================================
    COMMAND_TIMEOUT: float = 300.0
    # "prompt" matches shell prompts in the output stream, "sentinel" echoes a
    # per-command marker with the exit status after every command.
    COMPLETION_MODE: Literal["prompt", "sentinel"] = "prompt"
    # Answer "y" to any [Y/n] / "continue?" prompt seen while a command runs.
    AUTO_CONFIRM_PROMPTS: bool = True
    BANNER_TIMEOUT: float = 3.0
    # Wait for the prompt to come back after interrupting a timed-out command
    INTERRUPT_DRAIN_TIMEOUT: float = 5.0

    # ==========================================================================
    # Step Pipeline
    # ==========================================================================
    STEP_MAX_ATTEMPTS: int = 3
    STEP_RETRY_BACKOFF: float = 2.0
    STEP_RETRY_JITTER: float = 0.0
    STEP_DELAY: float = 0.1
    RESTART_SETTLE_SECONDS: float = 2.0

    # ==========================================================================
    # Progress Streaming
    # ==========================================================================
    STREAM_QUEUE_SIZE: int = 1000

    # ==========================================================================
    # Job Retention
    # ==========================================================================
    JOB_RETENTION_SECONDS: float = 3600.0
    JOB_SWEEP_INTERVAL: float = 60.0

    # ==========================================================================
    # Notifications (Telegram)
    # ==========================================================================
    TELEGRAM_BOT_TOKEN: str | None = None
    TELEGRAM_API_URL: str = "https://api.telegram.org"
    TELEGRAM_TIMEOUT: float = 10.0

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
