"""
Application configuration using 12-factor environment variables.
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Unified Inbox Ingestion Service")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Security
    webhook_secret: Optional[str] = Field(default=None, description="HMAC-SHA256 secret for webhook validation")
    whatsapp_verify_token: Optional[str] = Field(default=None)
    instagram_verify_token: Optional[str] = Field(default=None)
    twitter_consumer_secret: Optional[str] = Field(default=None)

    # Storage
    storage_backend: str = Field(default="sql", description="sql or memory")
    database_url: str = Field(default="sqlite:///./data/inbox.db")

    # Ingestion
    ingestion_deadline_seconds: float = Field(default=10.0, gt=0)
    reservation_ttl_seconds: float = Field(default=30.0, gt=0)
    dedup_poll_interval_seconds: float = Field(default=0.05, gt=0)
    platform_queue_size: int = Field(default=1000, ge=1)
    platform_workers: int = Field(default=4, ge=1)

    # Delivery
    subscriber_queue_size: int = Field(default=100, ge=1)
    history_max_limit: int = Field(default=200, ge=1)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    @property
    def is_webhook_secret_configured(self) -> bool:
        """Check if webhook secret is properly configured."""
        return bool(self.webhook_secret and len(self.webhook_secret) > 0)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
