# backend/consultflow/core/config.py
from decimal import Decimal
import logging
import os
from pathlib import Path
from typing import Optional, Set

from dotenv import load_dotenv
from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


_BACKEND_ROOT = Path(__file__).resolve().parents[2]

logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = _BACKEND_ROOT / ".env"
    logger.debug("[CONFIG] Looking for .env at: %s (exists=%s)", env_path, env_path.exists())
    load_dotenv(env_path)


PROD_SITE_MODES: Set[str] = {"prod", "production", "live"}


class Settings(BaseSettings):
    # Environment (derived from SITE_MODE)
    site_mode: str = Field(default="local", alias="SITE_MODE")
    environment: str = (
        "production"
        if (os.getenv("SITE_MODE", "local") or "").strip().lower() in PROD_SITE_MODES
        else "development"
    )
    is_testing: bool = False

    database_url: str = Field(
        default="sqlite+pysqlite:///./consultflow.db",
        alias="DATABASE_URL",
        description="SQLAlchemy URL for the primary database",
    )
    public_base_url: str = Field(
        default="http://localhost:8000",
        alias="PUBLIC_BASE_URL",
        description="Public origin used to build payment links and checkout return URLs",
    )

    # Billing
    default_currency: str = "EUR"
    supported_currencies: Set[str] = {"EUR", "USD", "GBP"}
    platform_fee_percent: Decimal = Field(
        default=Decimal("0"),
        description="Platform application fee taken on each checkout (percent, 0 disables it)",
    )
    bill_email_batch_size: int = Field(default=25, ge=1)
    bill_email_lock_ttl_minutes: int = Field(
        default=15,
        ge=1,
        description="Locks older than this are considered abandoned by a crashed sweeper",
    )

    # Stripe
    stripe_secret_key: Optional[SecretStr] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[SecretStr] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_connect_webhook_secret: Optional[SecretStr] = Field(
        default=None, alias="STRIPE_CONNECT_WEBHOOK_SECRET"
    )
    stripe_timeout_seconds: int = 8

    # Email
    resend_api_key: Optional[str] = Field(default=None, alias="RESEND_API_KEY")
    from_email: str = "Consultflow <hello@consultflow.app>"
    email_from_address: Optional[str] = Field(
        default=None,
        description="Optional email address for transactional sends (overrides from_email when provided)",
    )

    # Google Calendar
    google_client_id: Optional[str] = Field(default=None, alias="GOOGLE_CLIENT_ID")
    google_client_secret: Optional[SecretStr] = Field(default=None, alias="GOOGLE_CLIENT_SECRET")
    calendar_request_timeout_seconds: float = 10.0
    calendar_token_encryption_key: Optional[str] = Field(
        default=None,
        alias="CALENDAR_TOKEN_ENCRYPTION_KEY",
        description="Fernet key (urlsafe base64, 32 bytes) encrypting stored Google OAuth tokens",
    )

    # Invoices
    invoice_pdf_dir: str = Field(default=str(_BACKEND_ROOT / "var" / "invoices"))

    # Infrastructure
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    sentry_dsn: Optional[str] = Field(default=None, alias="SENTRY_DSN")
    cron_secret: Optional[SecretStr] = Field(default=None, alias="CRON_SECRET")

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("default_currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("calendar_token_encryption_key")
    @classmethod
    def _require_token_key_in_prod(cls, value: Optional[str], info: ValidationInfo) -> Optional[str]:
        if info.data.get("environment", "development") == "production" and not value:
            raise ValueError("CALENDAR_TOKEN_ENCRYPTION_KEY must be set in production environments.")
        return value

    @field_validator("public_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def webhook_secrets(self) -> list[str]:
        """Build list of webhook secrets to try in order."""
        secrets = []
        for secret in (self.stripe_webhook_secret, self.stripe_connect_webhook_secret):
            if secret is None:
                continue
            value = secret.get_secret_value()
            if value:
                secrets.append(value)
        return secrets

    def is_connect_secret(self, secret: str) -> bool:
        return bool(
            self.stripe_connect_webhook_secret
            and secret == self.stripe_connect_webhook_secret.get_secret_value()
        )


settings = Settings()
