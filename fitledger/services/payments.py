"""
Payment Service - Creates gateway payments for purchases and upgrades.

A pending transaction is recorded for every gateway payment; the webhook (or
the synchronous settlement of a saved-method charge) completes it. No row
lock is held while the gateway is called.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fitledger.config import PricingConfig
from fitledger.exceptions import InvalidStateError, PaymentProviderError
from fitledger.models.api import (
    PaymentKind,
    ProductType,
    SubscriptionStatus,
    TransactionStatus,
)
from fitledger.models.domain import (
    CreatedPayment,
    ProductData,
    TransactionMetadata,
    UpgradeOutcome,
)
from fitledger.observability.metrics import metrics
from fitledger.services.catalog import ProductCatalog
from fitledger.services.payment_gateway import (
    GatewayMetadata,
    GatewayPayment,
    PaymentGateway,
    PaymentRequest,
    RecurrentPaymentRequest,
)
from fitledger.services.price_calculator import PriceCalculator
from fitledger.services.settlement import PaymentSettlement, settle_payment
from fitledger.services.subscriptions import SubscriptionService, has_active_access
from fitledger.services.transactions import TransactionStore

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _created(payment: GatewayPayment, amount: int, currency: str) -> CreatedPayment:
    return CreatedPayment(
        payment_id=payment.id,
        status=payment.status,
        amount=amount,
        currency=currency,
        confirmation_token=payment.confirmation_token,
        confirmation_url=payment.confirmation_url,
    )


class PaymentService:
    """Purchase and upgrade payment creation."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        settlement: PaymentSettlement,
        pricing: PricingConfig,
        return_url: str | None = None,
    ) -> None:
        self.session = session
        self.gateway = gateway
        self.settlement = settlement
        self.pricing = pricing
        self.return_url = return_url
        self.catalog = ProductCatalog(session)
        self.calculator = PriceCalculator(session, pricing)
        self.subscriptions = SubscriptionService(session, pricing)
        self.transactions = TransactionStore(session)

    async def create_payment(
        self,
        user_id: UUID,
        product_id: UUID,
        promo_code: str | None = None,
        bonus_to_use: int = 0,
        save_payment_method: bool | None = None,
        confirmation_type: str = "embedded",
    ) -> CreatedPayment:
        """
        Quote the product and open a gateway payment for the final price.

        Raises:
            ProductNotFoundError / ProfileNotFoundError
            InvalidStateError: subscription bought while one is already active
            BelowMinimumPayableError: discounts leave less than the minimum to pay
            PaymentProviderError: gateway rejected or was unreachable
        """
        product = await self.catalog.get_product(product_id)
        if product.type == ProductType.SUBSCRIPTION_TIER:
            await self._reject_if_active(user_id, product)

        quote = await self.calculator.quote_product(product, user_id, promo_code, bonus_to_use)
        save = (
            save_payment_method
            if save_payment_method is not None
            else product.type == ProductType.SUBSCRIPTION_TIER
        )

        payment = await self.gateway.create_payment(
            PaymentRequest(
                amount=quote.final_price,
                currency=quote.currency,
                description=f"Payment: {product.name}",
                idempotency_key=str(uuid4()),
                metadata=self._gateway_metadata(user_id, product, PaymentKind.INITIAL),
                save_payment_method=save,
                confirmation_type=confirmation_type,
                return_url=self.return_url,
            )
        )

        await self._record_transaction(
            user_id,
            product,
            payment,
            quote.final_price,
            TransactionMetadata(
                product_type=product.type,
                payment_kind=PaymentKind.INITIAL,
                original_price=product.price,
                promo_code=quote.promo_code,
                promo_discount=quote.promo_discount,
                bonus_used=quote.bonus_to_use,
                save_payment_method=save,
            ),
        )
        metrics.record_payment_created(PaymentKind.INITIAL.value)
        return _created(payment, quote.final_price, quote.currency)

    async def create_upgrade(
        self,
        user_id: UUID,
        new_product_id: UUID,
        confirmation_type: str = "embedded",
    ) -> UpgradeOutcome:
        """
        Start an upgrade to a higher tier.

        With a saved payment method the target price is charged directly and,
        if the gateway confirms it at once, the upgrade is applied before
        returning. Otherwise (no saved method, or the charge failed) a payment
        for the user to confirm is created; the webhook applies the upgrade.
        """
        quote = await self.subscriptions.quote_upgrade(user_id, new_product_id)
        product = quote.product
        metadata = TransactionMetadata(
            product_type=product.type,
            payment_kind=PaymentKind.UPGRADE,
            original_price=product.price,
            save_payment_method=True,
            conversion_bonus_days=quote.conversion.bonus_days,
            conversion_total_days=quote.conversion.total_days,
        )
        description = f"Upgrade to {product.name}"

        method_id = quote.profile.payment_method_id
        if method_id:
            try:
                charged = await self.gateway.create_recurrent_payment(
                    RecurrentPaymentRequest(
                        amount=product.price,
                        currency=self.pricing.currency,
                        description=description,
                        idempotency_key=str(uuid4()),
                        payment_method_id=method_id,
                        metadata=self._gateway_metadata(user_id, product, PaymentKind.UPGRADE),
                    )
                )
            except PaymentProviderError as exc:
                logger.warning(
                    "upgrade_auto_charge_failed", user_id=str(user_id), error=exc.message
                )
            else:
                await self._record_transaction(
                    user_id, product, charged, product.price, metadata, method_id
                )
                metrics.record_payment_created(PaymentKind.UPGRADE.value)
                settled = await settle_payment(self.settlement, charged)
                if settled is None:
                    return UpgradeOutcome(
                        status="pending",
                        conversion=quote.conversion,
                        payment=_created(charged, product.price, self.pricing.currency),
                    )
                if settled.status == TransactionStatus.SUCCEEDED:
                    return UpgradeOutcome(
                        status="succeeded", conversion=quote.conversion, payment=None
                    )
                logger.info("upgrade_auto_charge_declined", user_id=str(user_id))

        payment = await self.gateway.create_payment(
            PaymentRequest(
                amount=product.price,
                currency=self.pricing.currency,
                description=description,
                idempotency_key=str(uuid4()),
                metadata=self._gateway_metadata(user_id, product, PaymentKind.UPGRADE),
                save_payment_method=True,
                confirmation_type=confirmation_type,
                return_url=self.return_url,
            )
        )
        await self._record_transaction(user_id, product, payment, product.price, metadata)
        metrics.record_payment_created(PaymentKind.UPGRADE.value)
        return UpgradeOutcome(
            status="pending",
            conversion=quote.conversion,
            payment=_created(payment, product.price, self.pricing.currency),
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _reject_if_active(self, user_id: UUID, product: ProductData) -> None:
        profile = await self.subscriptions.get_profile(user_id)
        if profile.status != SubscriptionStatus.ACTIVE or not has_active_access(
            profile, _utc_now()
        ):
            return
        if product.tier_level is not None and product.tier_level > profile.tier.level:
            raise InvalidStateError(
                "you already have an active subscription; use the upgrade flow "
                "to convert the remaining days",
                suggest_upgrade=True,
            )
        raise InvalidStateError(
            f"a {profile.tier.value} subscription is already active; "
            "buying the same or a lower tier is not allowed",
            suggest_upgrade=True,
        )

    @staticmethod
    def _gateway_metadata(
        user_id: UUID, product: ProductData, kind: PaymentKind
    ) -> GatewayMetadata:
        return GatewayMetadata(
            user_id=str(user_id),
            product_id=str(product.id),
            product_type=product.type,
            payment_kind=kind,
        )

    async def _record_transaction(
        self,
        user_id: UUID,
        product: ProductData,
        payment: GatewayPayment,
        amount: int,
        metadata: TransactionMetadata,
        payment_method_id: str | None = None,
    ) -> None:
        """
        Persist the pending transaction for a created gateway payment.

        A failure here is logged, not raised: the gateway payment already
        exists and reconciliation picks it up.
        """
        try:
            await self.transactions.record_pending(
                user_id=user_id,
                product_id=product.id,
                external_payment_id=payment.id,
                amount=amount,
                currency=self.pricing.currency,
                metadata=metadata,
                payment_method_id=payment_method_id,
            )
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            metrics.record_error("transaction_record_failed", "create_payment")
            logger.error(
                "transaction_record_failed",
                user_id=str(user_id),
                external_payment_id=payment.id,
                error=str(exc),
            )
