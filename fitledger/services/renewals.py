"""
Renewal Service - Daily auto-renewal sweep and expiry lapse.

Each profile is renewed in its own unit of work; a failure for one profile
is recorded in the report and the sweep moves on. The gateway idempotence key
is derived from the billing date, so re-running a day never charges twice, and
a profile whose charge already failed today is skipped rather than counted
again.
"""

from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fitledger.config import PricingConfig
from fitledger.exceptions import InvalidStateError, PaymentProviderError
from fitledger.models.api import PaymentKind, ProductType, TransactionStatus
from fitledger.models.domain import ProfileData, RenewalFailure, RenewalReport, TransactionMetadata
from fitledger.observability import log_context, metrics, trace_operation
from fitledger.services.catalog import ProductCatalog
from fitledger.services.payment_gateway import (
    GatewayMetadata,
    PaymentGateway,
    RecurrentPaymentRequest,
)
from fitledger.services.settlement import PaymentSettlement, settle_payment
from fitledger.services.subscriptions import SubscriptionService
from fitledger.services.transactions import TransactionStore

logger = get_logger(__name__)

RENEWED = "renewed"
FAILED = "failed"
SKIPPED = "skipped"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def renewal_idempotency_key(profile: ProfileData) -> str:
    billing_day = profile.next_billing_date.date() if profile.next_billing_date else "none"
    return f"renewal:{profile.user_id}:{billing_day}"


class RenewalService:
    """Charges saved payment methods for subscriptions due today."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        settlement: PaymentSettlement,
        pricing: PricingConfig,
        max_failed_payment_attempts: int = 3,
    ) -> None:
        self.session = session
        self.gateway = gateway
        self.settlement = settlement
        self.pricing = pricing
        self.catalog = ProductCatalog(session)
        self.transactions = TransactionStore(session)
        self.subscriptions = SubscriptionService(session, pricing, max_failed_payment_attempts)

    async def run(self, now: datetime | None = None) -> RenewalReport:
        """Renew everything due today, then lapse everything past its expiry."""
        now = now or _utc_now()
        report = await self.renew_due_subscriptions(now)
        lapsed = await self.subscriptions.lapse_expired(now)
        return RenewalReport(
            total=report.total,
            successful=report.successful,
            failed=report.failed,
            lapsed=lapsed,
            errors=report.errors,
            skipped=report.skipped,
        )

    async def renew_due_subscriptions(self, now: datetime | None = None) -> RenewalReport:
        now = now or _utc_now()
        due = await self.subscriptions.find_due_for_renewal(now)
        logger.info("renewal_sweep_started", due=len(due))

        successful = 0
        skipped = 0
        errors: list[RenewalFailure] = []
        for profile in due:
            try:
                with (
                    log_context(user_id=str(profile.user_id)),
                    trace_operation("renewal_charge", tier=profile.tier.value),
                ):
                    outcome, error = await self._renew_one(profile, now)
            except Exception as exc:
                # One broken profile must not stop the sweep
                await self.session.rollback()
                metrics.record_error(type(exc).__name__, "renewal")
                logger.exception("renewal_crashed", user_id=str(profile.user_id))
                outcome, error = FAILED, str(exc)

            if outcome == RENEWED:
                successful += 1
            elif outcome == SKIPPED:
                skipped += 1
            else:
                errors.append(RenewalFailure(user_id=profile.user_id, error=error or "unknown"))
            if outcome != SKIPPED:
                metrics.record_renewal(outcome == RENEWED)

        logger.info(
            "renewal_sweep_finished",
            total=len(due),
            successful=successful,
            failed=len(errors),
            skipped=skipped,
        )
        return RenewalReport(
            total=len(due),
            successful=successful,
            failed=len(errors),
            lapsed=0,
            errors=tuple(errors),
            skipped=skipped,
        )

    async def _renew_one(self, profile: ProfileData, now: datetime) -> tuple[str, str | None]:
        today = now.astimezone(UTC).date()
        if profile.last_renewal_failure_on == today:
            # Already failed today; a retry would get the same cached answer
            logger.info("renewal_already_failed_today", user_id=str(profile.user_id))
            return SKIPPED, None

        product = await self.catalog.find_subscription_product(
            profile.tier.level, profile.duration_months
        )
        if product is None:
            raise InvalidStateError(
                f"no active product for {profile.tier.value}/{profile.duration_months} months"
            )
        if not profile.payment_method_id:
            raise InvalidStateError("no saved payment method")

        try:
            payment = await self.gateway.create_recurrent_payment(
                RecurrentPaymentRequest(
                    amount=product.price,
                    currency=self.pricing.currency,
                    description=f"Renewal: {product.name}",
                    idempotency_key=renewal_idempotency_key(profile),
                    payment_method_id=profile.payment_method_id,
                    metadata=GatewayMetadata(
                        user_id=str(profile.user_id),
                        product_id=str(product.id),
                        product_type=ProductType.SUBSCRIPTION_TIER,
                        payment_kind=PaymentKind.RENEWAL,
                    ),
                )
            )
        except PaymentProviderError as exc:
            failed = await self.subscriptions.record_renewal_failure(
                profile.user_id, failed_on=today
            )
            await self.session.commit()
            logger.warning("renewal_charge_failed", user_id=str(profile.user_id), error=exc.message)
            await self.settlement.notify_renewal_failed(failed)
            return FAILED, exc.message

        await self.transactions.record_pending(
            user_id=profile.user_id,
            product_id=product.id,
            external_payment_id=payment.id,
            amount=product.price,
            currency=self.pricing.currency,
            metadata=TransactionMetadata(
                product_type=ProductType.SUBSCRIPTION_TIER,
                payment_kind=PaymentKind.RENEWAL,
                original_price=product.price,
                save_payment_method=True,
            ),
            payment_method_id=profile.payment_method_id,
        )
        await self.session.commit()

        settled = await settle_payment(self.settlement, payment)
        if settled is None:
            logger.info("renewal_pending", user_id=str(profile.user_id), payment_id=payment.id)
            return SKIPPED, None
        if not settled.applied:
            logger.info("renewal_already_processed", user_id=str(profile.user_id))
            return SKIPPED, None
        if settled.status == TransactionStatus.SUCCEEDED:
            return RENEWED, None
        return FAILED, payment.cancellation_reason or "payment canceled"
