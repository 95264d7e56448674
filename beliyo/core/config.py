"""
Configuration management for the chat service.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(default="BeliYo Chat API")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO")

    # Database (MongoDB)
    mongodb_url: str = Field(default="mongodb://localhost:27017")
    mongodb_db: str = Field(default="beliyo")

    # Realtime bus; in-process fan-out when unset
    redis_url: Optional[str] = Field(default=None)

    # Bearer tokens are issued by the auth provider, only verified here
    jwt_secret: str = Field(default="change-me")
    jwt_algorithm: str = Field(default="HS256")

    # Presence / typing
    typing_timeout_seconds: float = Field(default=3.0, description="Idle time before typing reverts to false")
    presence_heartbeat_seconds: float = Field(default=30.0)
    presence_stale_seconds: float = Field(default=300.0, description="Presence rows older than this count as offline")

    # Realtime reconnection
    max_retry_attempts: int = Field(default=5)
    reconnect_delays: List[float] = Field(default_factory=lambda: [1.0, 2.0, 5.0, 10.0, 30.0])

    # Message sending
    send_max_attempts: int = Field(default=3)
    send_retry_delay_seconds: float = Field(default=0.5)

    history_page_size: int = Field(default=50)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
