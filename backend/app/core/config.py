# backend/app/core/config.py
from decimal import Decimal
import logging
import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug(f"[CONFIG] Looking for .env at: {env_path}")
    load_dotenv(env_path)


AcceptChargePolicy = Literal["charge_immediately", "authorize_until_24h"]


class Settings(BaseSettings):
    environment: str = Field(default="development", description="Deployment environment name")
    log_level: str = Field(default="INFO", description="Root log level for API and workers")

    # Database
    database_url: str = Field(
        default="sqlite+pysqlite:///./booking_payments.db",
        description="SQLAlchemy database URL (PostgreSQL in deployed environments)",
    )

    # Redis / Celery
    redis_url: str = "redis://localhost:6379"

    # Stripe Configuration
    stripe_secret_key: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret key for backend API calls",
    )
    stripe_currency: str = Field(default="usd", description="Default currency for payments")
    stripe_max_network_retries: int = Field(
        default=2, description="Automatic SDK retries for network failures"
    )
    stripe_timeout_seconds: int = Field(default=30, description="Stripe HTTP client timeout")

    # Booking payment policy
    platform_fee_rate: Decimal = Field(
        default=Decimal("0.20"),
        description="Platform fee as a fraction of the service amount (0.20 = 20%)",
    )
    refund_cutoff_hours: int = Field(
        default=24,
        description="Bookings starting within this many hours are inside the late-cancel window",
    )
    accept_charge_policy: AcceptChargePolicy = Field(
        default="charge_immediately",
        description=(
            "charge_immediately captures everything on accept; authorize_until_24h defers the "
            "service amount capture to 24 hours before the booking"
        ),
    )

    # Notification outbox
    outbox_batch_size: int = Field(default=100, description="Rows drained per dispatcher run")
    outbox_max_attempts: int = Field(default=5, description="Delivery attempts before FAILED")

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("platform_fee_rate")
    @classmethod
    def _validate_fee_rate(cls, v: Decimal) -> Decimal:
        if v < 0 or v >= 1:
            raise ValueError("platform_fee_rate must be in [0, 1)")
        return v

    @field_validator("refund_cutoff_hours")
    @classmethod
    def _validate_cutoff(cls, v: int) -> int:
        if v < 0:
            raise ValueError("refund_cutoff_hours must be non-negative")
        return v

    def get_database_url(self) -> str:
        """Get the configured database URL."""
        return self.database_url


settings = Settings()
