"""
Agent Fleet - Configuration
===========================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

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
    APP_NAME: str = "Agent Fleet"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]
    EVENT_STREAM_QUEUE_SIZE: int = 1000  # per websocket client; oldest events are dropped when full

    # ==========================================================================
    # Data Directories
    # ==========================================================================
    FLEET_DATA_DIR: Path = Path.home() / ".agent-fleet"
    CLAUDE_HOME: Path = Path.home() / ".claude"
    CODEX_HOME: Path = Path.home() / ".codex"

    # ==========================================================================
    # Agent Executables (install-path probing when unset)
    # ==========================================================================
    CLAUDE_EXECUTABLE: Optional[str] = None
    CODEX_EXECUTABLE: Optional[str] = None

    # ==========================================================================
    # Process Runner
    # ==========================================================================
    MAX_RESTART_ATTEMPTS: int = 3
    RESTART_COOLDOWN_SECONDS: float = 60.0
    MIN_RUNTIME_FOR_RESTART_SECONDS: float = 5.0
    STOP_TIMEOUT_SECONDS: float = 5.0
    STDERR_TAIL_BYTES: int = 2048
    DEATH_HISTORY_LIMIT: int = 50
    AUTO_RESTART_ENABLED: bool = False

    # ==========================================================================
    # Reconciliation Timers
    # ==========================================================================
    STATUS_SYNC_INTERVAL_SECONDS: float = 30.0
    ORPHAN_POLL_INTERVAL_SECONDS: float = 10.0
    ACTIVITY_WINDOW_SECONDS: float = 60.0

    # ==========================================================================
    # Command Dispatch
    # ==========================================================================
    AUTO_RESUME_MAX_AGE_SECONDS: float = 300.0
    AUTO_RESUME_DELAY_SECONDS: float = 1.0
    STDIN_ACTIVITY_TIMEOUT_SECONDS: float = 10.0
    DEFAULT_CONTEXT_LIMIT: int = 200_000
    CODEX_ROLLING_TURNS: int = 40

    # ==========================================================================
    # Delegation
    # ==========================================================================
    DELEGATION_DEDUP_WINDOW_SECONDS: float = 60.0

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

    @property
    def logs_dir(self) -> Path:
        return self.FLEET_DATA_DIR / "logs"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
