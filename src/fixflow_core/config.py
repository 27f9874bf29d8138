"""Application settings loaded from environment variables."""
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """FixFlow Core settings.

    Values are read from the environment (or a local ``.env`` file).
    Notification channels are optional; an unset webhook URL simply
    disables that channel.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # --- Database ---
    database_url: str = Field(
        default="sqlite:///./fixflow.db",
        description="SQLAlchemy database URL (PostgreSQL in production)",
    )

    # --- HTTP ---
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:5173"])
    site_name: str = "FixFlow"
    app_url: str = Field(
        default="http://localhost:5173",
        description="Public UI URL used to build links in notifications",
    )
    log_level: str = "INFO"

    # --- Notifications ---
    notifications_enabled: bool = True
    notify_webhook_url: Optional[str] = Field(
        default=None, description="Outbound webhook receiving transition events"
    )
    notify_timeout_seconds: float = 10.0
    notify_max_attempts: int = Field(
        default=1, ge=1, description="Attempts per channel per event (1 = no retry)"
    )
    notify_backoff_seconds: float = Field(default=0.5, ge=0)
    notify_workers: int = Field(default=4, ge=1)
    in_app_notifications_enabled: bool = True

    # --- Request numbers ---
    request_number_max_attempts: int = Field(
        default=20, ge=1, description="Allocation attempts before giving up"
    )


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
