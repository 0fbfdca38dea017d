"""
Service configuration.

Values come from the environment (prefix ``HPOINTS_``) or a local ``.env``
file and are validated once at startup.
"""
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """HPoints service settings."""

    model_config = SettingsConfigDict(
        env_prefix="HPOINTS_",
        env_file=".env",
        extra="ignore",
    )

    app_name: str = Field(default="HPoints Ledger API")
    environment: str = Field(default="development")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="text", description="text or json")

    # Points policy
    expiration_days: int = Field(default=180, gt=0, description="Lifetime of earned points")
    expiring_window_days: int = Field(default=30, gt=0, description="Lookahead for the expiring amount")

    # Listing limits
    history_page_size: int = Field(default=20, gt=0)
    history_max_page_size: int = Field(default=100, gt=0)
    validation_queue_limit: int = Field(default=50, gt=0)

    # Concurrency
    redemption_max_retries: int = Field(default=3, ge=1)

    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


@lru_cache
def get_settings() -> Settings:
    return Settings()
