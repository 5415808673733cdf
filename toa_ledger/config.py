"""
Ledger configuration using pydantic-settings.
Values are read from TOA_* environment variables or a .env file.
"""

import logging
from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ledger settings."""

    model_config = SettingsConfigDict(
        env_prefix="TOA_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Points -> TOA conversion
    conversion_rate: int = 5
    minimum_conversion: int = 5
    daily_conversion_limit: int = 20

    # Point awards
    points_per_thank_you: int = 1
    points_per_toa_sent: int = 1
    points_per_toa_received: int = 2

    # Money
    customer_pays_per_toa: Decimal = Decimal("0.01")
    platform_fee_percent: Decimal = Decimal("0.15")
    platform_flat_fee_cents: int = 99

    # Sending limits
    min_tokens_per_send: int = 1
    max_tokens_per_send: int = 10000
    free_thank_you_daily_limit: int = 3

    # Storage
    database_url: str = "sqlite+aiosqlite:///./toa_ledger.db"
    store_backend: str = "memory"
    store_timeout_seconds: float = 5.0

    # Application
    log_level: str = "INFO"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for the API process."""
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
