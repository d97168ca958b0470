# guidepay/core/config.py
import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).resolve().parents[2] / ".env"
    logger.debug("[CONFIG] Looking for .env at: %s (exists=%s)", env_path, env_path.exists())
    load_dotenv(env_path)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore", case_sensitive=False)

    environment: str = Field(default="development", description="Deployment environment name")
    is_testing: bool = Field(default=False, description="Set by the test harness")

    # Storage
    database_url: str = Field(
        default="sqlite:///./guidepay.db",
        description="SQLAlchemy database URL (PostgreSQL in production)",
    )
    database_statement_timeout_ms: int = Field(default=15000, ge=1000)
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL for cache, job dedupe, alert counters and the Celery broker",
    )

    # Payment provider
    stripe_secret_key: Optional[SecretStr] = None
    stripe_webhook_secret: Optional[SecretStr] = None
    stripe_timeout_seconds: float = Field(default=5.0, gt=0, le=30)
    default_currency: str = Field(default="thb", min_length=3, max_length=3)

    # Revenue split
    default_commission_rate: float = Field(default=0.20, description="Platform share of gross")

    # Pricing rules
    peak_hour_start: int = Field(default=18, ge=0, le=23)
    peak_hour_end: int = Field(default=23, ge=0, le=23)
    peak_multiplier: float = Field(default=1.2, ge=1.0)
    weekend_multiplier: float = Field(default=1.15, ge=1.0)
    max_booking_hours: float = Field(default=12.0, gt=0)
    business_timezone: str = Field(
        default="Asia/Bangkok", description="Local timezone for peak-hour and weekend rules"
    )

    # Retry bounds
    booking_create_max_attempts: int = Field(default=2, ge=1)
    webhook_max_attempts: int = Field(default=3, ge=1)

    # Reconciliation
    recon_batch_size: int = Field(default=200)
    recon_lookback_hours: int = Field(default=48, ge=1)
    recon_verify_enabled: bool = True
    recon_verify_limit_per_run: int = Field(default=250, ge=0)
    recon_verify_pause_ms: int = Field(default=40, ge=0)
    recon_amount_epsilon: float = Field(default=0.01, ge=0)

    # Fraud scoring
    fraud_snapshot_ttl_seconds: int = Field(default=20, ge=1)
    fraud_baseline_amount: float = Field(default=2500.0, gt=0)

    # Alerts / jobs
    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN; alerts and errors are sent when set")
    alert_rate_limit_per_minute: int = Field(default=20, ge=1)
    job_dedupe_ttl_seconds: int = Field(default=86400, ge=60)

    @field_validator("default_commission_rate")
    @classmethod
    def _clamp_commission_rate(cls, value: float) -> float:
        return max(0.0, min(0.95, float(value)))

    @field_validator("recon_batch_size")
    @classmethod
    def _clamp_batch_size(cls, value: int) -> int:
        return max(20, min(1000, int(value)))

    @field_validator("default_currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key and self.stripe_secret_key.get_secret_value())


settings = Settings()

if is_running_tests():
    settings.is_testing = True
