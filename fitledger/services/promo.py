"""
Promo Code Service - Promo validation and discount rules.

Unknown, inactive, expired, exhausted or non-applicable codes give a zero
discount. Only a syntactically invalid code is an error.
"""

import re
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fitledger.db.models import PromoCode
from fitledger.exceptions import InvalidPromoCodeError
from fitledger.models.api import DiscountType

logger = get_logger(__name__)

PROMO_CODE_PATTERN = re.compile(r"^[A-Z0-9_-]{3,32}$")


def normalize_promo_code(code: str) -> str:
    """Upper-case and validate a promo code."""
    normalized = code.strip().upper()
    if not PROMO_CODE_PATTERN.match(normalized):
        raise InvalidPromoCodeError(code)
    return normalized


def promo_rule_discount(
    promo: PromoCode, base_price: int, product_id: UUID, now: datetime
) -> int:
    """Discount a stored promo code grants on a base price (0 if it doesn't apply)."""
    if not promo.is_active:
        return 0
    if promo.expires_at is not None and promo.expires_at <= now:
        return 0
    if promo.usage_limit is not None and promo.usage_count >= promo.usage_limit:
        return 0
    if promo.applicable_products and product_id not in promo.applicable_products:
        return 0

    if promo.discount_type == DiscountType.PERCENT:
        return base_price * min(promo.discount_value, 100) // 100
    return min(promo.discount_value, base_price)


class PromoCodeService:
    """Promo code lookup and usage accounting."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def calculate_discount(self, code: str, base_price: int, product_id: UUID) -> int:
        """Discount for `code` on `base_price`; 0 for any code that doesn't apply."""
        normalized = normalize_promo_code(code)
        promo = await self._find_promo(normalized)
        if promo is None:
            logger.info("promo_code_unknown", code=normalized)
            return 0

        discount = promo_rule_discount(promo, base_price, product_id, datetime.now(UTC))
        logger.info(
            "promo_code_evaluated",
            code=normalized,
            product_id=str(product_id),
            discount=discount,
        )
        return discount

    async def increment_usage(self, code: str) -> bool:
        """Count one use of a code. False if the code is unknown or its limit is reached."""
        normalized = normalize_promo_code(code)
        stmt = (
            update(PromoCode)
            .where(PromoCode.code == normalized)
            .where(
                or_(
                    PromoCode.usage_limit.is_(None),
                    PromoCode.usage_count < PromoCode.usage_limit,
                )
            )
            .values(usage_count=PromoCode.usage_count + 1)
            .returning(PromoCode.id)
        )
        result = await self.session.execute(stmt)
        incremented = result.scalar_one_or_none() is not None
        if not incremented:
            logger.warning("promo_usage_not_incremented", code=normalized)
        return incremented

    async def _find_promo(self, code: str) -> PromoCode | None:
        result = await self.session.execute(select(PromoCode).where(PromoCode.code == code))
        return result.scalar_one_or_none()
