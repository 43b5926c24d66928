"""
Tests for price quotes.

Covers the pure build_quote pipeline and the PriceCalculator that feeds it.
"""

from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from factories import make_product

from fitledger.config import PricingConfig
from fitledger.exceptions import BelowMinimumPayableError, InvalidPromoCodeError
from fitledger.models.domain import BonusAccountData, ProductData
from fitledger.services.price_calculator import PriceCalculator, build_quote


class TestBuildQuote:
    """Quote arithmetic."""

    def test_plain_product(self, pricing: PricingConfig) -> None:
        product = make_product(price=4990)

        quote = build_quote(product, pricing)

        assert quote.base_price == 4990
        assert quote.promo_discount == 0
        assert quote.promo_code is None
        assert quote.bonus_to_use == 0
        assert quote.final_price == 4990
        assert quote.cashback_percent == 3
        assert quote.cashback_amount == 149
        assert quote.currency == "RUB"

    def test_duration_discount_is_reported(self, pricing: PricingConfig) -> None:
        product = make_product(duration_months=3, price=13473, discount_percent=10)

        quote = build_quote(product, pricing)

        assert quote.base_price == 14970
        assert quote.duration_discount == 1497
        assert quote.total_savings == 1497

    def test_promo_then_bonus(self, pricing: PricingConfig) -> None:
        product = make_product(price=1000)

        quote = build_quote(
            product,
            pricing,
            promo_code="SPRING",
            promo_rule_discount=100,
            bonus_requested=1000,
            bonus_balance=500,
        )

        assert quote.promo_code == "SPRING"
        assert quote.promo_discount == 100
        assert quote.price_after_discounts == 900
        assert quote.max_bonus_redeemable == 270
        assert quote.bonus_to_use == 270
        assert quote.final_price == 630
        assert quote.cashback_amount == 18
        assert quote.total_savings == 370

    def test_bonus_request_clamped_to_balance(self, pricing: PricingConfig) -> None:
        quote = build_quote(
            make_product(price=1000), pricing, bonus_requested=250, bonus_balance=50
        )

        assert quote.bonus_requested == 250
        assert quote.bonus_to_use == 50
        assert quote.final_price == 950

    def test_negative_bonus_request_ignored(self, pricing: PricingConfig) -> None:
        quote = build_quote(
            make_product(price=1000), pricing, bonus_requested=-5, bonus_balance=500
        )

        assert quote.bonus_to_use == 0

    def test_promo_discount_capped_at_price(self) -> None:
        pricing = PricingConfig(min_payable_amount=0)

        quote = build_quote(
            make_product(price=1000), pricing, promo_code="FREE", promo_rule_discount=5000
        )

        assert quote.promo_discount == 1000
        assert quote.final_price == 0

    def test_below_minimum_payable(self, pricing: PricingConfig) -> None:
        with pytest.raises(BelowMinimumPayableError) as exc_info:
            build_quote(
                make_product(price=1000), pricing, promo_code="FREE", promo_rule_discount=1000
            )

        assert exc_info.value.final_price == 0
        assert exc_info.value.minimum == 1

    def test_zero_promo_discount_drops_code(self, pricing: PricingConfig) -> None:
        quote = build_quote(make_product(), pricing, promo_code="EXPIRED", promo_rule_discount=0)

        assert quote.promo_code is None

    def test_higher_cashback_level(self, pricing: PricingConfig) -> None:
        quote = build_quote(make_product(price=1000), pricing, cashback_level=3)

        assert quote.cashback_percent == 7
        assert quote.cashback_amount == 70


class TestPriceCalculator:
    """Input gathering around build_quote."""

    async def test_quote_with_promo_and_account(
        self, db_session: AsyncMock, pricing: PricingConfig, pro_monthly: ProductData
    ) -> None:
        user_id = uuid4()
        calculator = PriceCalculator(db_session, pricing)
        calculator.promos.calculate_discount = AsyncMock(return_value=499)
        calculator.bonuses.get_account = AsyncMock(
            return_value=BonusAccountData(
                user_id=user_id, balance=10_000, cashback_level=2, total_spent_for_cashback=0
            )
        )

        quote = await calculator.quote_product(pro_monthly, user_id, " spring10 ", 200)

        calculator.promos.calculate_discount.assert_awaited_once_with(
            "SPRING10", 4990, pro_monthly.id
        )
        assert quote.promo_code == "SPRING10"
        assert quote.promo_discount == 499
        assert quote.bonus_to_use == 200
        assert quote.final_price == 4990 - 499 - 200
        assert quote.cashback_percent == 5

    async def test_anonymous_quote_has_no_bonus(
        self, db_session: AsyncMock, pricing: PricingConfig, pro_monthly: ProductData
    ) -> None:
        calculator = PriceCalculator(db_session, pricing)
        calculator.bonuses.get_account = AsyncMock()

        quote = await calculator.quote_product(pro_monthly, None, None, 500)

        calculator.bonuses.get_account.assert_not_awaited()
        assert quote.bonus_balance == 0
        assert quote.bonus_to_use == 0

    async def test_user_without_account(
        self, db_session: AsyncMock, pricing: PricingConfig, pro_monthly: ProductData
    ) -> None:
        calculator = PriceCalculator(db_session, pricing)
        calculator.bonuses.get_account = AsyncMock(return_value=None)

        quote = await calculator.quote_product(pro_monthly, uuid4(), None, 500)

        assert quote.bonus_to_use == 0
        assert quote.cashback_percent == 3

    async def test_invalid_promo_code_format(
        self, db_session: AsyncMock, pricing: PricingConfig, pro_monthly: ProductData
    ) -> None:
        calculator = PriceCalculator(db_session, pricing)

        with pytest.raises(InvalidPromoCodeError):
            await calculator.quote_product(pro_monthly, None, "no spaces!", 0)

    async def test_quote_loads_product(
        self, db_session: AsyncMock, pricing: PricingConfig, pro_monthly: ProductData
    ) -> None:
        calculator = PriceCalculator(db_session, pricing)
        calculator.catalog.get_product = AsyncMock(return_value=pro_monthly)

        quote = await calculator.quote(pro_monthly.id)

        calculator.catalog.get_product.assert_awaited_once_with(pro_monthly.id)
        assert quote.product_id == pro_monthly.id
        assert quote.product_name == "Pro Monthly"


def test_quote_is_deterministic() -> None:
    """Quotes are deterministic: same inputs, same output."""
    product = make_product(price=2990, tier_level=1)
    pricing = PricingConfig()

    assert build_quote(product, pricing) == build_quote(product, pricing)
