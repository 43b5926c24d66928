"""
Product Catalog - Read access to products.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fitledger.db.models import Product
from fitledger.exceptions import ProductNotFoundError
from fitledger.models.api import ProductType
from fitledger.models.domain import ProductData


def product_to_domain(product: Product) -> ProductData:
    """Convert ORM product to its immutable snapshot."""
    return ProductData(
        id=product.id,
        name=product.name,
        type=ProductType(product.type),
        tier_level=product.tier_level,
        duration_months=product.duration_months,
        price=product.price,
        discount_percent=product.discount_percent,
    )


class ProductCatalog:
    """Product lookups."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_product(self, product_id: UUID) -> ProductData:
        """Product by id. Raises ProductNotFoundError."""
        product = await self.session.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product_to_domain(product)

    async def find_subscription_product(
        self, tier_level: int, duration_months: int
    ) -> ProductData | None:
        """Active subscription product for a tier and duration, if any."""
        stmt = (
            select(Product)
            .where(Product.type == ProductType.SUBSCRIPTION_TIER)
            .where(Product.tier_level == tier_level)
            .where(Product.duration_months == duration_months)
            .where(Product.is_active.is_(True))
            .limit(1)
        )
        result = await self.session.execute(stmt)
        product = result.scalar_one_or_none()
        return product_to_domain(product) if product is not None else None
