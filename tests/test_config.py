"""
Tests for configuration loading and fail-fast validation.
"""

import pytest
from pydantic import ValidationError

from fitledger.config import ConfigurationError, PricingConfig, Settings

VALID_URL = "postgresql+asyncpg://u:p@db:5432/ledger"


class TestSettingsValidation:
    """The application refuses to start with broken critical config."""

    def test_valid(self) -> None:
        settings = Settings(database_url=VALID_URL)

        assert settings.read_database_url == VALID_URL
        assert settings.max_failed_payment_attempts == 3

    def test_read_replica(self) -> None:
        settings = Settings(database_url=VALID_URL, database_read_url="postgresql://replica/db")

        assert settings.read_database_url == "postgresql://replica/db"

    def test_missing_database_url(self) -> None:
        with pytest.raises(ConfigurationError, match="DATABASE_URL is required"):
            Settings(database_url="")

    def test_non_postgres_database(self) -> None:
        with pytest.raises(ConfigurationError, match="PostgreSQL"):
            Settings(database_url="sqlite:///ledger.db")

    def test_failed_attempt_limit(self) -> None:
        with pytest.raises(ConfigurationError, match="MAX_FAILED_PAYMENT_ATTEMPTS"):
            Settings(database_url=VALID_URL, max_failed_payment_attempts=0)

    def test_redeem_percent_range(self) -> None:
        with pytest.raises(ConfigurationError, match="MAX_BONUS_REDEEM_PERCENT"):
            Settings(
                database_url=VALID_URL, pricing=PricingConfig(max_bonus_redeem_percent=120)
            )

    def test_cashback_level_one_required(self) -> None:
        with pytest.raises(ConfigurationError, match="level 1"):
            Settings(database_url=VALID_URL, pricing=PricingConfig(cashback_percents={2: 5}))

    def test_nested_pricing_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PRICING__DAYS_PER_MONTH", "31")

        settings = Settings(database_url=VALID_URL)

        assert settings.pricing.days_per_month == 31


class TestPricingConfig:
    """Price table lookups."""

    def test_defaults(self) -> None:
        pricing = PricingConfig()

        assert pricing.base_monthly_price(1) == 3990
        assert pricing.base_monthly_price(3) == 9990
        assert pricing.currency == "RUB"

    def test_unknown_tier(self) -> None:
        with pytest.raises(ValueError, match="tier level 4"):
            PricingConfig().base_monthly_price(4)

    def test_cashback_falls_back_to_lowest_level(self) -> None:
        pricing = PricingConfig()

        assert pricing.cashback_percent(4) == 10
        assert pricing.cashback_percent(9) == 3

    def test_frozen(self) -> None:
        with pytest.raises(ValidationError):
            PricingConfig().days_per_month = 31  # type: ignore[misc]
