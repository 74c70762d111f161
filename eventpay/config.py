"""Application configuration settings."""
from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "test" | "staging" | "prod"
ENV = os.getenv("APP_ENV", "dev").lower()


class Settings(BaseSettings):
    """Environment configuration for the eventpay backend."""

    app_env: str = Field(default=ENV, validation_alias=AliasChoices("APP_ENV", "app_env"))
    database_url: str = Field(
        default="sqlite:///eventpay.db",
        validation_alias=AliasChoices("DATABASE_URL", "database_url"),
    )
    SECRET_KEY: str = "change-me"
    LOG_LEVEL: str = "INFO"
    CORS_ALLOW_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:3001",
    ]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = False
    ALLOW_DB_CREATE_ALL: bool = False
    FRONTEND_URL: str = "http://localhost:3001"
    HOST: str = "127.0.0.1"
    PORT: int = 8000

    # --- Payment gateway (Midtrans Snap) ---------------------------------
    MIDTRANS_SERVER_KEY: str | None = None
    MIDTRANS_CLIENT_KEY: str | None = None
    MIDTRANS_IS_PRODUCTION: bool = False

    # --- Disbursement gateway (Xendit) -----------------------------------
    XENDIT_SECRET_KEY: str | None = None
    XENDIT_CALLBACK_TOKEN: str | None = None
    XENDIT_BASE_URL: str = "https://api.xendit.co"

    # --- Outbound HTTP behaviour -----------------------------------------
    GATEWAY_TIMEOUT_SECONDS: float = 5.0
    GATEWAY_MAX_ATTEMPTS: int = 3
    GATEWAY_BACKOFF_SECONDS: float = 0.5

    # --- Money -----------------------------------------------------------
    CURRENCY: str = "IDR"
    CURRENCY_EXPONENT: int = 0
    PLATFORM_FEE_PERCENT: Decimal = Decimal("15")
    DISBURSEMENT_FIXED_FEE: Decimal = Decimal("2500")
    DISBURSEMENT_FEE_PERCENT: Decimal = Decimal("0")
    DISBURSEMENT_FEE_TAX_RATE: Decimal = Decimal("0.11")
    PAYOUT_MIN_AMOUNT: Decimal = Decimal("10000")
    MAX_TICKETS_PER_ORDER: int = 10

    # --- Refund policy: (minimum hours before the event, refund percent) --
    REFUND_POLICY_TIERS: list[tuple[int, int]] = [(168, 100), (72, 50), (0, 0)]

    # --- Scheduler -------------------------------------------------------
    SCHEDULER_ENABLED: bool = False
    PAYMENT_EXPIRY_MINUTES: int = 1440

    # --- Notifications ---------------------------------------------------
    NOTIFICATION_EMAIL_URL: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("MIDTRANS_SERVER_KEY", "XENDIT_SECRET_KEY", "XENDIT_CALLBACK_TOKEN")
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty gateway secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("REFUND_POLICY_TIERS")
    @classmethod
    def _sort_tiers(cls, value: list[tuple[int, int]]) -> list[tuple[int, int]]:
        """Keep tiers ordered from the longest notice period to the shortest."""

        for hours, percent in value:
            if hours < 0 or not 0 <= percent <= 100:
                raise ValueError("refund tiers need hours >= 0 and 0 <= percent <= 100")
        return sorted(value, key=lambda tier: tier[0], reverse=True)

    @property
    def midtrans_snap_url(self) -> str:
        if self.MIDTRANS_IS_PRODUCTION:
            return "https://app.midtrans.com/snap/v1"
        return "https://app.sandbox.midtrans.com/snap/v1"

    @property
    def midtrans_api_url(self) -> str:
        if self.MIDTRANS_IS_PRODUCTION:
            return "https://api.midtrans.com/v2"
        return "https://api.sandbox.midtrans.com/v2"


class AppInfo(BaseModel):
    name: str = "eventpay-backend"
    version: str = "0.1.0"


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()


__all__ = [
    "ENV",
    "Settings",
    "AppInfo",
    "get_settings",
]
