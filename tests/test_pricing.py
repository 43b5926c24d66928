"""
Tests for the ledger primitives.

Pure day and price arithmetic - no database, no configuration globals.
"""

from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from fitledger.config import PricingConfig
from fitledger.models.domain import UpgradeCurrent, UpgradeTarget
from fitledger.services.pricing import (
    add_months,
    base_price,
    cashback_amount,
    convert_upgrade,
    is_upgrade,
    max_redeemable,
    remaining_days,
)

NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=UTC)


class TestIsUpgrade:
    """Tier ordering."""

    def test_higher_tier_is_upgrade(self) -> None:
        assert is_upgrade(1, 2) is True
        assert is_upgrade(2, 3) is True

    def test_same_tier_is_not_upgrade(self) -> None:
        assert is_upgrade(2, 2) is False

    def test_lower_tier_is_not_upgrade(self) -> None:
        assert is_upgrade(3, 1) is False


class TestRemainingDays:
    """Whole days left, partial days rounded up."""

    def test_no_expiry(self) -> None:
        assert remaining_days(None, NOW) == 0

    def test_already_expired(self) -> None:
        assert remaining_days(NOW - timedelta(seconds=1), NOW) == 0

    def test_expires_exactly_now(self) -> None:
        assert remaining_days(NOW, NOW) == 0

    def test_whole_days(self) -> None:
        assert remaining_days(NOW + timedelta(days=3), NOW) == 3

    def test_partial_day_rounds_up(self) -> None:
        assert remaining_days(NOW + timedelta(days=1, seconds=1), NOW) == 2
        assert remaining_days(NOW + timedelta(minutes=5), NOW) == 1


class TestConvertUpgrade:
    """Unused value of the current plan turned into target-plan days."""

    def test_quarterly_basic_to_monthly_pro(self) -> None:
        """9000 paid for 3 months, 45 days left, target base 4990/month."""
        conversion = convert_upgrade(
            UpgradeCurrent(tier_level=1, duration_months=3, paid_price=9000, remaining_days=45),
            UpgradeTarget(tier_level=2, duration_months=1, price=4990, base_monthly_price=4990),
        )

        # unused = 9000 * 45 / 90 = 4500; daily = 4990 / 30; 4500 / 166.33 = 27.05
        assert conversion.bonus_days == 27
        assert conversion.total_days == 57

    def test_no_remaining_days_gives_no_bonus(self) -> None:
        conversion = convert_upgrade(
            UpgradeCurrent(tier_level=1, duration_months=1, paid_price=3990, remaining_days=0),
            UpgradeTarget(tier_level=3, duration_months=3, price=26973, base_monthly_price=9990),
        )

        assert conversion.bonus_days == 0
        assert conversion.total_days == 90

    def test_free_current_plan_gives_no_bonus(self) -> None:
        conversion = convert_upgrade(
            UpgradeCurrent(tier_level=1, duration_months=1, paid_price=0, remaining_days=20),
            UpgradeTarget(tier_level=2, duration_months=1, price=4990, base_monthly_price=4990),
        )

        assert conversion.bonus_days == 0

    def test_custom_days_per_month(self) -> None:
        conversion = convert_upgrade(
            UpgradeCurrent(tier_level=1, duration_months=1, paid_price=3100, remaining_days=31),
            UpgradeTarget(tier_level=2, duration_months=1, price=3100, base_monthly_price=3100),
            days_per_month=31,
        )

        assert conversion.bonus_days == 31
        assert conversion.total_days == 62

    def test_invalid_inputs_rejected(self) -> None:
        with pytest.raises(ValueError):
            UpgradeCurrent(tier_level=1, duration_months=1, paid_price=-1, remaining_days=1)
        with pytest.raises(ValueError):
            UpgradeTarget(tier_level=2, duration_months=1, price=10, base_monthly_price=0)

    @given(
        paid=st.integers(min_value=0, max_value=200_000),
        duration=st.sampled_from([1, 3, 6, 12]),
        days=st.integers(min_value=0, max_value=365),
        target_base=st.integers(min_value=1, max_value=50_000),
        target_duration=st.sampled_from([1, 3, 6, 12]),
    )
    def test_bonus_days_non_negative_and_bounded(
        self, paid: int, duration: int, days: int, target_base: int, target_duration: int
    ) -> None:
        conversion = convert_upgrade(
            UpgradeCurrent(
                tier_level=1, duration_months=duration, paid_price=paid, remaining_days=days
            ),
            UpgradeTarget(
                tier_level=2,
                duration_months=target_duration,
                price=target_base,
                base_monthly_price=target_base,
            ),
        )

        assert conversion.bonus_days >= 0
        assert conversion.total_days == target_duration * 30 + conversion.bonus_days
        # Converted value never exceeds the unused value
        assert conversion.bonus_days * target_base * duration <= paid * days

    @given(
        paid=st.integers(min_value=0, max_value=100_000),
        days=st.integers(min_value=0, max_value=359),
    )
    def test_more_remaining_days_never_lowers_bonus(self, paid: int, days: int) -> None:
        target = UpgradeTarget(tier_level=3, duration_months=1, price=9990, base_monthly_price=9990)
        fewer = convert_upgrade(
            UpgradeCurrent(tier_level=1, duration_months=12, paid_price=paid, remaining_days=days),
            target,
        )
        more = convert_upgrade(
            UpgradeCurrent(
                tier_level=1, duration_months=12, paid_price=paid, remaining_days=days + 1
            ),
            target,
        )

        assert more.bonus_days >= fewer.bonus_days


class TestAddMonths:
    """Calendar month arithmetic with end-of-month clamping."""

    def test_simple(self) -> None:
        assert add_months(NOW, 1) == datetime(2026, 4, 15, 12, 0, 0, tzinfo=UTC)

    def test_year_rollover(self) -> None:
        moment = datetime(2026, 11, 15, tzinfo=UTC)
        assert add_months(moment, 3) == datetime(2027, 2, 15, tzinfo=UTC)

    def test_twelve_months(self) -> None:
        assert add_months(NOW, 12) == datetime(2027, 3, 15, 12, 0, 0, tzinfo=UTC)

    def test_clamps_to_month_end(self) -> None:
        assert add_months(datetime(2026, 1, 31, tzinfo=UTC), 1) == datetime(2026, 2, 28, tzinfo=UTC)

    def test_clamps_to_leap_day(self) -> None:
        assert add_months(datetime(2028, 1, 31, tzinfo=UTC), 1) == datetime(2028, 2, 29, tzinfo=UTC)


class TestBasePrice:
    """Reconstruction of the pre-discount anchor price."""

    def test_no_discount(self) -> None:
        assert base_price(4990, 0) == 4990

    def test_exact_discount(self) -> None:
        assert base_price(8991, 10) == 9990

    def test_rounds_half_up(self) -> None:
        # 10000 / 67 = 149.25
        assert base_price(100, 33) == 149
        # 300 / 8 = 37.5
        assert base_price(3, 92) == 38


class TestBonusPolicy:
    """Redemption cap and cashback."""

    def test_cap_by_percent(self, pricing: PricingConfig) -> None:
        assert max_redeemable(1000, 5000, pricing) == 300

    def test_cap_by_balance(self, pricing: PricingConfig) -> None:
        assert max_redeemable(1000, 100, pricing) == 100

    def test_nothing_redeemable(self, pricing: PricingConfig) -> None:
        assert max_redeemable(0, 100, pricing) == 0
        assert max_redeemable(1000, 0, pricing) == 0

    def test_custom_redeem_percent(self) -> None:
        pricing = PricingConfig(max_bonus_redeem_percent=50)
        assert max_redeemable(1000, 5000, pricing) == 500

    def test_cashback_per_level(self, pricing: PricingConfig) -> None:
        assert cashback_amount(1000, 1, pricing) == 30
        assert cashback_amount(1000, 2, pricing) == 50
        assert cashback_amount(1000, 4, pricing) == 100

    def test_cashback_unknown_level_uses_lowest(self, pricing: PricingConfig) -> None:
        assert cashback_amount(1000, 9, pricing) == 30

    def test_cashback_rounds_down(self, pricing: PricingConfig) -> None:
        assert cashback_amount(99, 1, pricing) == 2

    def test_cashback_zero_price(self, pricing: PricingConfig) -> None:
        assert cashback_amount(0, 4, pricing) == 0

    @given(
        price=st.integers(min_value=0, max_value=1_000_000),
        balance=st.integers(min_value=0, max_value=1_000_000),
    )
    def test_redeemable_never_exceeds_balance_or_cap(self, price: int, balance: int) -> None:
        pricing = PricingConfig()
        redeemable = max_redeemable(price, balance, pricing)

        assert 0 <= redeemable <= balance
        assert redeemable <= price * pricing.max_bonus_redeem_percent // 100
