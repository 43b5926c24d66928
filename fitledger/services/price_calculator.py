"""
Price Calculator - Promo and bonus aware price quotes.

The arithmetic is the pure `build_quote` pipeline; PriceCalculator only
gathers its inputs (product, promo discount, bonus account).
"""

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fitledger.config import PricingConfig
from fitledger.exceptions import BelowMinimumPayableError
from fitledger.models.domain import PriceQuote, ProductData
from fitledger.services.bonus import BonusAccountService
from fitledger.services.catalog import ProductCatalog
from fitledger.services.pricing import base_price, cashback_amount, max_redeemable
from fitledger.services.promo import PromoCodeService, normalize_promo_code

logger = get_logger(__name__)


def build_quote(
    product: ProductData,
    pricing: PricingConfig,
    promo_code: str | None = None,
    promo_rule_discount: int = 0,
    bonus_requested: int = 0,
    bonus_balance: int = 0,
    cashback_level: int = 1,
) -> PriceQuote:
    """
    Compute a price quote.

    1. base_price = price / (1 - discount_percent / 100)
    2. promo_discount = min(promo_rule_discount, price)
    3. price_after_discounts = price - promo_discount
    4. bonus_to_use = min(requested, cap(price_after_discounts), balance)
    5. final_price = price_after_discounts - bonus_to_use, at least min_payable_amount

    Over-requested bonuses are clamped, never rejected.
    """
    anchor = base_price(product.price, product.discount_percent)
    promo_discount = min(max(promo_rule_discount, 0), product.price)
    price_after_discounts = product.price - promo_discount

    cap = max_redeemable(price_after_discounts, bonus_balance, pricing)
    bonus_to_use = min(max(bonus_requested, 0), cap)

    final_price = price_after_discounts - bonus_to_use
    if final_price < pricing.min_payable_amount:
        raise BelowMinimumPayableError(final_price=final_price, minimum=pricing.min_payable_amount)

    return PriceQuote(
        product_id=product.id,
        product_name=product.name,
        base_price=anchor,
        product_price=product.price,
        discount_percent=product.discount_percent,
        promo_code=promo_code if promo_discount > 0 else None,
        promo_discount=promo_discount,
        price_after_discounts=price_after_discounts,
        bonus_requested=bonus_requested,
        bonus_balance=bonus_balance,
        max_bonus_redeemable=cap,
        bonus_to_use=bonus_to_use,
        final_price=final_price,
        cashback_percent=pricing.cashback_percent(cashback_level),
        cashback_amount=cashback_amount(final_price, cashback_level, pricing),
        currency=pricing.currency,
    )


class PriceCalculator:
    """Builds quotes from stored products, promo codes and bonus accounts."""

    def __init__(self, session: AsyncSession, pricing: PricingConfig) -> None:
        self.session = session
        self.pricing = pricing
        self.catalog = ProductCatalog(session)
        self.promos = PromoCodeService(session)
        self.bonuses = BonusAccountService(session)

    async def quote(
        self,
        product_id: UUID,
        user_id: UUID | None = None,
        promo_code: str | None = None,
        bonus_to_use: int = 0,
    ) -> PriceQuote:
        """Quote a product for a (possibly anonymous) user."""
        product = await self.catalog.get_product(product_id)
        return await self.quote_product(product, user_id, promo_code, bonus_to_use)

    async def quote_product(
        self,
        product: ProductData,
        user_id: UUID | None = None,
        promo_code: str | None = None,
        bonus_to_use: int = 0,
    ) -> PriceQuote:
        """Quote an already loaded product."""
        anchor = base_price(product.price, product.discount_percent)

        normalized_code: str | None = None
        rule_discount = 0
        if promo_code:
            normalized_code = normalize_promo_code(promo_code)
            rule_discount = await self.promos.calculate_discount(
                normalized_code, anchor, product.id
            )

        balance = 0
        cashback_level = 1
        if user_id is not None:
            account = await self.bonuses.get_account(user_id)
            if account is not None:
                balance = account.balance
                cashback_level = account.cashback_level

        quote = build_quote(
            product,
            self.pricing,
            promo_code=normalized_code,
            promo_rule_discount=rule_discount,
            bonus_requested=bonus_to_use,
            bonus_balance=balance,
            cashback_level=cashback_level,
        )
        logger.info(
            "price_quoted",
            product_id=str(product.id),
            user_id=str(user_id) if user_id else None,
            promo_discount=quote.promo_discount,
            bonus_to_use=quote.bonus_to_use,
            final_price=quote.final_price,
        )
        return quote
