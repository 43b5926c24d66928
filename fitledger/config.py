"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class PricingConfig(BaseModel):
    """
    Price table and bonus policy consumed by the ledger primitives.

    Passed explicitly into pricing functions so that tests can use
    arbitrary price tables.
    """

    model_config = {"frozen": True}

    # Base (non-discounted) monthly price per tier level, in whole currency units
    base_monthly_prices: dict[int, int] = Field(
        default_factory=lambda: {1: 3990, 2: 4990, 3: 9990}
    )
    days_per_month: int = 30
    min_payable_amount: int = 1
    max_bonus_redeem_percent: int = 30
    # Cashback percent per cashback level (Bronze, Silver, Gold, Platinum)
    cashback_percents: dict[int, int] = Field(
        default_factory=lambda: {1: 3, 2: 5, 3: 7, 4: 10}
    )
    currency: str = "RUB"

    def base_monthly_price(self, tier_level: int) -> int:
        """Base monthly price for a tier level."""
        try:
            return self.base_monthly_prices[tier_level]
        except KeyError:
            raise ValueError(f"No base monthly price configured for tier level {tier_level}")

    def cashback_percent(self, cashback_level: int) -> int:
        """Cashback percent for a level, falling back to the lowest level."""
        return self.cashback_percents.get(cashback_level, self.cashback_percents[1])


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 20
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    # Bounds waits on profile and bonus account row locks
    database_lock_timeout_ms: int = 5000
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "FitLedger API"
    api_version: str = "0.1.0"
    api_description: str = "Subscriptions, payments and bonus ledger for the fitness platform"
    cors_allow_origins: list[str] = ["*"]

    # User authentication - HS256 session tokens issued by the identity service
    session_jwt_secret: str = ""
    session_jwt_audience: str | None = None
    admin_role: str = "admin"

    # Scheduled jobs
    cron_secret: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "fitledger-api"

    # Payment gateway (YooKassa-compatible REST API)
    gateway_shop_id: str = ""
    gateway_secret_key: str = ""
    gateway_api_url: str = "https://api.yookassa.ru/v3"
    gateway_webhook_secret: str = ""
    gateway_return_url: str = "http://localhost:3000/payment/success"
    gateway_timeout_seconds: float = 30.0

    # Webhook processing
    webhook_timeout_seconds: float = 10.0

    # Transactional email (Resend-compatible REST API)
    email_api_key: str = ""
    email_api_url: str = "https://api.resend.com/emails"
    email_from: str = "FitLedger <noreply@example.com>"

    # Bonus programme
    referred_user_bonus: int = 250
    referral_first_purchase_bonus: int = 500

    # Renewal policy
    max_failed_payment_attempts: int = 3

    # Pricing
    pricing: PricingConfig = Field(default_factory=PricingConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.max_failed_payment_attempts < 1:
            errors.append("MAX_FAILED_PAYMENT_ATTEMPTS must be at least 1")

        pricing = self.pricing
        if not 0 <= pricing.max_bonus_redeem_percent <= 100:
            errors.append("PRICING__MAX_BONUS_REDEEM_PERCENT must be between 0 and 100")
        if 1 not in pricing.cashback_percents:
            errors.append("PRICING__CASHBACK_PERCENTS must define level 1")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
