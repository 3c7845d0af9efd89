"""Application configuration settings."""

import os
from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


def _get_default_database_url() -> str:
    """Get the default database URL, using Fly Volume path if available."""
    if os.path.isdir("/data"):
        return "sqlite:////data/utility_billing.db"
    return "sqlite:///./utility_billing.db"


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "Utility Billing"
    VERSION: str = "0.1.0"
    DEBUG: bool = True
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database - defaults to Fly Volume path if /data exists
    DATABASE_URL: str = _get_default_database_url()

    # Logging
    LOG_LEVEL: str = "INFO"
    SQL_LOG_LEVEL: str = "WARNING"

    # Tariffs
    DEFAULT_CURRENCY: str = "USD"

    # Billing runs
    ALLOCATION_RATIO_TOLERANCE: Decimal = Decimal("0.0001")
    BILLING_RUN_TIMEOUT_SECONDS: float = 120.0
    # Registers that wrap at a fixed maximum; None keeps "negative => warn and skip"
    METER_ROLLOVER_MODULUS: Decimal | None = None

    # Listing
    METERS_PAGE_SIZE: int = 50


settings = Settings()
