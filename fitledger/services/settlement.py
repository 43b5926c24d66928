"""
Payment Settlement - Applies a gateway payment outcome to the ledger exactly once.

Used by the webhook processor and by flows that charge a saved payment method
synchronously (upgrade, renewal), so every payment goes through the same
claim -> transition -> side effects -> commit path.

The claim is a compare-and-swap on the transaction status; only the caller
that moved it out of `pending` applies any effects. Notifications are sent
after commit and never fail the settlement.
"""

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fitledger.config import PricingConfig
from fitledger.db.models import PaymentTransaction, UserPurchase
from fitledger.exceptions import (
    InsufficientBalanceError,
    InvalidStateError,
    TransactionNotFoundError,
)
from fitledger.models.api import PaymentKind, ProductType, TransactionStatus
from fitledger.models.domain import (
    ProductData,
    ProfileData,
    SettlementResult,
    TransactionData,
)
from fitledger.observability.metrics import metrics
from fitledger.services.achievements import AchievementService
from fitledger.services.bonus import BonusAccountService
from fitledger.services.catalog import ProductCatalog
from fitledger.services.notifications import Notifier
from fitledger.services.payment_gateway import GatewayPayment
from fitledger.services.promo import PromoCodeService
from fitledger.services.referrals import ReferralService
from fitledger.services.subscriptions import SubscriptionService
from fitledger.services.transactions import TransactionStore, transaction_to_domain

logger = get_logger(__name__)


class PaymentSettlement:
    """Settles succeeded and canceled payments."""

    def __init__(
        self,
        session: AsyncSession,
        pricing: PricingConfig,
        notifier: Notifier | None = None,
        referred_user_bonus: int = 250,
        referral_first_purchase_bonus: int = 500,
        max_failed_payment_attempts: int = 3,
    ) -> None:
        self.session = session
        self.pricing = pricing
        self.notifier = notifier
        self.transactions = TransactionStore(session)
        self.catalog = ProductCatalog(session)
        self.subscriptions = SubscriptionService(session, pricing, max_failed_payment_attempts)
        self.bonuses = BonusAccountService(session)
        self.promos = PromoCodeService(session)
        self.referrals = ReferralService(
            session,
            AchievementService(session, referred_user_bonus, referral_first_purchase_bonus),
        )

    async def settle_succeeded(self, payment: GatewayPayment) -> SettlementResult:
        """
        Mark the transaction succeeded and apply its subscription or pack grant.

        Raises:
            TransactionNotFoundError: no local transaction for this payment
        """
        transaction = await self._get_transaction(payment.id)
        if payment.amount is not None and payment.amount != transaction.amount:
            logger.warning(
                "payment_amount_mismatch",
                external_payment_id=payment.id,
                gateway_amount=payment.amount,
                recorded_amount=transaction.amount,
            )

        claimed = await self.transactions.claim(
            payment.id, TransactionStatus.SUCCEEDED, payment_method_id=payment.payment_method_id
        )
        if claimed is None:
            return await self._already_settled(transaction)

        data = transaction_to_domain(transaction)
        product = await self.catalog.get_product(data.product_id)
        before = await self.subscriptions.get_profile(data.user_id)
        saved_method = self._method_to_save(payment, data)

        after: ProfileData | None = None
        if data.metadata.product_type == ProductType.SUBSCRIPTION_TIER:
            after = await self._apply_subscription(data, product, saved_method)
        else:
            await self._grant_pack(data)

        await self._apply_purchase_side_effects(data, product)
        await self.session.commit()

        metrics.record_transition(f"payment_{data.metadata.payment_kind.value}_succeeded")
        logger.info(
            "payment_settled",
            external_payment_id=payment.id,
            transaction_id=str(data.id),
            user_id=str(data.user_id),
            product_type=data.metadata.product_type.value,
            payment_kind=data.metadata.payment_kind.value,
            amount=data.amount,
        )

        await self._notify_succeeded(before, after, data, product)
        return SettlementResult(
            external_payment_id=payment.id,
            transaction_id=data.id,
            user_id=data.user_id,
            status=TransactionStatus.SUCCEEDED,
            applied=True,
        )

    async def settle_canceled(self, payment: GatewayPayment) -> SettlementResult:
        """
        Mark the transaction canceled with the gateway's reason.

        No subscription change, except that a canceled renewal charge counts
        as a failed renewal attempt.
        """
        transaction = await self._get_transaction(payment.id)
        reason = payment.cancellation_reason or "canceled"
        claimed = await self.transactions.claim(
            payment.id, TransactionStatus.CANCELED, error_message=reason
        )
        if claimed is None:
            return await self._already_settled(transaction)

        data = transaction_to_domain(transaction)
        profile: ProfileData | None = None
        if data.metadata.payment_kind == PaymentKind.RENEWAL:
            profile = await self.subscriptions.record_renewal_failure(data.user_id)

        await self.session.commit()
        logger.info(
            "payment_canceled",
            external_payment_id=payment.id,
            transaction_id=str(data.id),
            user_id=str(data.user_id),
            reason=reason,
        )

        if profile is not None:
            await self.notify_renewal_failed(profile)
        return SettlementResult(
            external_payment_id=payment.id,
            transaction_id=data.id,
            user_id=data.user_id,
            status=TransactionStatus.CANCELED,
            applied=True,
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _get_transaction(self, external_payment_id: str) -> PaymentTransaction:
        transaction = await self.transactions.find_by_external_id(external_payment_id)
        if transaction is None:
            raise TransactionNotFoundError(external_payment_id)
        return transaction

    async def _already_settled(self, transaction: PaymentTransaction) -> SettlementResult:
        # Refresh to report the status written by whoever settled it first
        current = await self._get_transaction(transaction.external_payment_id)
        logger.info(
            "payment_already_settled",
            external_payment_id=current.external_payment_id,
            status=current.status,
        )
        return SettlementResult(
            external_payment_id=current.external_payment_id,
            transaction_id=current.id,
            user_id=current.user_id,
            status=TransactionStatus(current.status),
            applied=False,
        )

    @staticmethod
    def _method_to_save(payment: GatewayPayment, data: TransactionData) -> str | None:
        if not payment.payment_method_id:
            return None
        if payment.payment_method_saved or data.metadata.save_payment_method:
            return payment.payment_method_id
        if data.metadata.payment_kind == PaymentKind.RENEWAL:
            return payment.payment_method_id
        return None

    async def _apply_subscription(
        self, data: TransactionData, product: ProductData, saved_method: str | None
    ) -> ProfileData:
        kind = data.metadata.payment_kind
        if kind == PaymentKind.UPGRADE:
            conversion = data.metadata.conversion
            if conversion is None:
                raise InvalidStateError(f"upgrade transaction {data.id} has no conversion")
            return await self.subscriptions.apply_upgrade(
                data.user_id, product, conversion, saved_method
            )
        if kind == PaymentKind.RENEWAL:
            return await self.subscriptions.extend_renewal(data.user_id, product, saved_method)
        return await self.subscriptions.activate(data.user_id, product, saved_method)

    async def _grant_pack(self, data: TransactionData) -> None:
        result = await self.session.execute(
            insert(UserPurchase)
            .values(user_id=data.user_id, product_id=data.product_id, transaction_id=data.id)
            .on_conflict_do_nothing(constraint="uq_user_purchase_transaction")
            .returning(UserPurchase.id)
        )
        if result.scalar_one_or_none() is not None:
            logger.info("pack_granted", user_id=str(data.user_id), product_id=str(data.product_id))

    async def _apply_purchase_side_effects(
        self, data: TransactionData, product: ProductData
    ) -> None:
        """Bonus spend, cashback, promo usage and the referral first-purchase transition."""
        metadata = data.metadata
        if metadata.bonus_used > 0:
            try:
                await self.bonuses.spend_on_payment(
                    data.user_id, metadata.bonus_used, data.id, product.name
                )
            except InsufficientBalanceError as exc:
                # The cash part was paid; access is granted regardless
                logger.warning(
                    "bonus_spend_skipped",
                    user_id=str(data.user_id),
                    transaction_id=str(data.id),
                    balance=exc.balance,
                    required=exc.required,
                )

        await self.bonuses.award_cashback(
            data.user_id, data.amount, data.id, metadata.payment_kind, self.pricing
        )

        if metadata.promo_code:
            await self.promos.increment_usage(metadata.promo_code)

        await self.referrals.mark_first_purchase(data.user_id)

    async def _notify_succeeded(
        self,
        before: ProfileData,
        after: ProfileData | None,
        data: TransactionData,
        product: ProductData,
    ) -> None:
        if self.notifier is None or not before.email:
            return
        try:
            if data.metadata.payment_kind == PaymentKind.UPGRADE and after is not None:
                conversion = data.metadata.conversion
                await self.notifier.subscription_upgraded(
                    before.email,
                    before.full_name,
                    before.tier,
                    after.tier,
                    conversion.bonus_days if conversion else 0,
                    conversion.total_days if conversion else 0,
                )
            else:
                await self.notifier.payment_succeeded(
                    before.email,
                    before.full_name,
                    product.name,
                    data.amount,
                    data.currency,
                    after.expires_at if after is not None else None,
                )
        except Exception as exc:
            logger.warning("notification_failed", user_id=str(data.user_id), error=str(exc))

    async def notify_renewal_failed(self, profile: ProfileData) -> None:
        """Tell the user a renewal charge failed. Never raises."""
        if self.notifier is None or not profile.email:
            return
        try:
            await self.notifier.renewal_failed(
                profile.email,
                profile.full_name,
                profile.failed_payment_attempts,
                not profile.auto_renew,
                profile.expires_at,
            )
        except Exception as exc:
            logger.warning("notification_failed", user_id=str(profile.user_id), error=str(exc))


async def settle_payment(
    settlement: PaymentSettlement, payment: GatewayPayment
) -> SettlementResult | None:
    """Settle a payment if the gateway reports a final status; None while still pending."""
    if payment.succeeded:
        return await settlement.settle_succeeded(payment)
    if payment.status == "canceled":
        return await settlement.settle_canceled(payment)
    return None

