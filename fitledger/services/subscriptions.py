"""
Subscription Service - Subscription state machine.

States: inactive -> active -> {active (renewed/upgraded), canceled, inactive}.

Transitions triggered by payments (activate, upgrade, renewal) flush but do
not commit; they run inside the settlement unit of work. User-initiated
transitions (cancel, toggle) commit themselves.
"""

from datetime import UTC, date, datetime, timedelta
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fitledger.config import PricingConfig
from fitledger.db.models import PaymentTransaction, Product, Profile
from fitledger.exceptions import (
    AuthorizationError,
    InvalidStateError,
    NoActiveSubscriptionError,
    ProfileNotFoundError,
    WriteVerificationError,
)
from fitledger.models.api import (
    ProductType,
    SubscriptionStatus,
    SubscriptionTier,
    TransactionStatus,
)
from fitledger.models.domain import (
    Actor,
    ProductData,
    ProfileData,
    UpgradeConversion,
    UpgradeCurrent,
    UpgradeQuote,
    UpgradeTarget,
)
from fitledger.observability.metrics import metrics
from fitledger.services.catalog import ProductCatalog
from fitledger.services.pricing import add_months, convert_upgrade, is_upgrade, remaining_days

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def has_active_access(profile: ProfileData, now: datetime) -> bool:
    """
    Access check with implicit expiry.

    A subscription past its expiry counts as lapsed even before the sweep
    has moved it to inactive.
    """
    if profile.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED):
        return False
    return profile.expires_at is not None and profile.expires_at > now


def billing_window(now: datetime) -> tuple[datetime, datetime]:
    """[start of today, start of tomorrow) in UTC."""
    start = now.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


class SubscriptionService:
    """Subscription state transitions with write verification."""

    def __init__(
        self,
        session: AsyncSession,
        pricing: PricingConfig,
        max_failed_payment_attempts: int = 3,
    ) -> None:
        self.session = session
        self.pricing = pricing
        self.max_failed_payment_attempts = max_failed_payment_attempts
        self.catalog = ProductCatalog(session)

    async def get_profile(self, user_id: UUID) -> ProfileData:
        """Profile by user id. Raises ProfileNotFoundError."""
        profile = await self._find_profile(user_id)
        if profile is None:
            raise ProfileNotFoundError(user_id)
        return self._profile_to_domain(profile)

    # ========================================================================
    # Payment-driven transitions (no commit)
    # ========================================================================

    async def activate(
        self,
        user_id: UUID,
        product: ProductData,
        payment_method_id: str | None,
        now: datetime | None = None,
    ) -> ProfileData:
        """
        Start a subscription from a succeeded purchase.

        Buying the same tier while it still runs extends from the current
        expiry instead of discarding the remaining days.
        """
        if product.type != ProductType.SUBSCRIPTION_TIER or product.tier is None:
            raise InvalidStateError(f"Product {product.id} is not a subscription")
        now = now or _utc_now()
        profile = await self._lock_profile(user_id)

        start = now
        if (
            profile.subscription_status
            in (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED)
            and profile.subscription_tier == product.tier
            and profile.subscription_expires_at is not None
            and profile.subscription_expires_at > now
        ):
            start = profile.subscription_expires_at

        expires_at = add_months(start, product.duration_months)
        profile.subscription_tier = product.tier
        profile.subscription_status = SubscriptionStatus.ACTIVE
        profile.subscription_duration_months = product.duration_months
        profile.subscription_expires_at = expires_at
        profile.next_billing_date = expires_at
        profile.failed_payment_attempts = 0
        profile.last_renewal_failure_on = None
        profile.last_payment_date = now
        if payment_method_id:
            profile.payment_method_id = payment_method_id
        profile.auto_renew_enabled = profile.payment_method_id is not None

        result = await self._verify_profile(profile, SubscriptionStatus.ACTIVE, product.tier)
        metrics.record_transition("activate")
        logger.info(
            "subscription_activated",
            user_id=str(user_id),
            tier=product.tier.value,
            duration_months=product.duration_months,
            expires_at=expires_at.isoformat(),
            auto_renew=result.auto_renew,
        )
        return result

    async def quote_upgrade(
        self, user_id: UUID, new_product_id: UUID, now: datetime | None = None
    ) -> UpgradeQuote:
        """
        Validate an upgrade and convert the unused time into target-plan days.

        The current plan is valued at the amount actually paid for it, not its
        list price.
        """
        now = now or _utc_now()
        profile = await self.get_profile(user_id)
        product = await self.catalog.get_product(new_product_id)

        days_left = remaining_days(profile.expires_at, now)
        if profile.status != SubscriptionStatus.ACTIVE or days_left <= 0:
            raise NoActiveSubscriptionError(user_id)
        if product.type != ProductType.SUBSCRIPTION_TIER or product.tier_level is None:
            raise InvalidStateError("upgrade target must be a subscription tier")
        if not is_upgrade(profile.tier.level, product.tier_level):
            raise InvalidStateError(
                f"cannot move from {profile.tier.value} to tier level {product.tier_level}: "
                "only upgrades to a higher tier are allowed"
            )

        current_price = await self._actual_paid_price(profile)
        conversion = convert_upgrade(
            UpgradeCurrent(
                tier_level=profile.tier.level,
                duration_months=profile.duration_months,
                paid_price=current_price,
                remaining_days=days_left,
            ),
            UpgradeTarget(
                tier_level=product.tier_level,
                duration_months=product.duration_months,
                price=product.price,
                base_monthly_price=self.pricing.base_monthly_price(product.tier_level),
            ),
            days_per_month=self.pricing.days_per_month,
        )
        logger.info(
            "upgrade_quoted",
            user_id=str(user_id),
            current_tier=profile.tier.value,
            new_tier=product.tier.value if product.tier else None,
            current_price=current_price,
            remaining_days=days_left,
            bonus_days=conversion.bonus_days,
            total_days=conversion.total_days,
        )
        return UpgradeQuote(
            profile=profile, product=product, conversion=conversion, current_price=current_price
        )

    async def apply_upgrade(
        self,
        user_id: UUID,
        product: ProductData,
        conversion: UpgradeConversion,
        payment_method_id: str | None,
        now: datetime | None = None,
    ) -> ProfileData:
        """Switch to the higher tier; expiry becomes now + converted total days."""
        if product.tier is None:
            raise InvalidStateError(f"Product {product.id} is not a subscription")
        now = now or _utc_now()
        profile = await self._lock_profile(user_id)
        old_tier = profile.subscription_tier

        expires_at = now + timedelta(days=conversion.total_days)
        profile.subscription_tier = product.tier
        profile.subscription_status = SubscriptionStatus.ACTIVE
        profile.subscription_duration_months = product.duration_months
        profile.subscription_expires_at = expires_at
        profile.next_billing_date = expires_at
        profile.failed_payment_attempts = 0
        profile.last_renewal_failure_on = None
        profile.last_payment_date = now
        if payment_method_id:
            profile.payment_method_id = payment_method_id
        profile.auto_renew_enabled = profile.payment_method_id is not None

        result = await self._verify_profile(profile, SubscriptionStatus.ACTIVE, product.tier)
        metrics.record_transition("upgrade")
        logger.info(
            "subscription_upgraded",
            user_id=str(user_id),
            old_tier=SubscriptionTier(old_tier).value,
            new_tier=product.tier.value,
            bonus_days=conversion.bonus_days,
            total_days=conversion.total_days,
        )
        return result

    async def extend_renewal(
        self,
        user_id: UUID,
        product: ProductData,
        payment_method_id: str | None,
        now: datetime | None = None,
    ) -> ProfileData:
        """
        Extend expiry and next billing date by the renewed product's duration.

        The tier and duration come from the product that was charged, so a
        renewal that settles after the lapse sweep restores the paid plan.
        """
        if product.tier is None:
            raise InvalidStateError(f"Product {product.id} is not a subscription")
        now = now or _utc_now()
        profile = await self._lock_profile(user_id)

        start = profile.subscription_expires_at
        if start is None or start < now:
            start = now
        expires_at = add_months(start, product.duration_months)
        profile.subscription_tier = product.tier
        profile.subscription_status = SubscriptionStatus.ACTIVE
        profile.subscription_duration_months = product.duration_months
        profile.subscription_expires_at = expires_at
        profile.next_billing_date = expires_at
        profile.failed_payment_attempts = 0
        profile.last_renewal_failure_on = None
        profile.last_payment_date = now
        if payment_method_id:
            profile.payment_method_id = payment_method_id
        profile.auto_renew_enabled = profile.payment_method_id is not None

        result = await self._verify_profile(profile, SubscriptionStatus.ACTIVE, product.tier)
        metrics.record_transition("renew")
        logger.info(
            "subscription_renewed",
            user_id=str(user_id),
            tier=product.tier.value,
            expires_at=expires_at.isoformat(),
        )
        return result

    async def record_renewal_failure(
        self, user_id: UUID, failed_on: date | None = None
    ) -> ProfileData:
        """
        Count a failed renewal charge. Access is untouched until expiry.

        At most one failure is counted per day: the gateway answers a
        same-day retry with the cached result for the same idempotence key.
        Reaching the failure limit soft-cancels: auto-renew off, status canceled.
        """
        failed_on = failed_on or _utc_now().date()
        profile = await self._lock_profile(user_id)
        if profile.last_renewal_failure_on == failed_on:
            logger.info(
                "renewal_failure_already_counted",
                user_id=str(user_id),
                failed_on=failed_on.isoformat(),
            )
            return self._profile_to_domain(profile)

        profile.failed_payment_attempts += 1
        profile.last_renewal_failure_on = failed_on
        if profile.failed_payment_attempts >= self.max_failed_payment_attempts:
            profile.auto_renew_enabled = False
            if profile.subscription_status == SubscriptionStatus.ACTIVE:
                profile.subscription_status = SubscriptionStatus.CANCELED
            metrics.record_transition("renewal_give_up")
            logger.warning(
                "renewal_attempts_exhausted",
                user_id=str(user_id),
                failed_payment_attempts=profile.failed_payment_attempts,
            )
        await self.session.flush()
        logger.info(
            "renewal_failure_recorded",
            user_id=str(user_id),
            failed_payment_attempts=profile.failed_payment_attempts,
        )
        return self._profile_to_domain(profile)

    # ========================================================================
    # User-initiated transitions (commit)
    # ========================================================================

    async def cancel_soft(self, user_id: UUID) -> ProfileData:
        """Stop renewing. Access persists until expiry; nothing is reset."""
        profile = await self._lock_profile(user_id)
        if profile.subscription_status != SubscriptionStatus.ACTIVE:
            raise InvalidStateError("only an active subscription can be canceled")

        profile.subscription_status = SubscriptionStatus.CANCELED
        profile.auto_renew_enabled = False
        result = await self._verify_profile(
            profile, SubscriptionStatus.CANCELED, SubscriptionTier(profile.subscription_tier)
        )
        await self.session.commit()
        metrics.record_transition("cancel_soft")
        logger.info(
            "subscription_canceled", user_id=str(user_id), expires_at=str(result.expires_at)
        )
        return result

    async def cancel_hard(self, actor: Actor, target_user_id: UUID | None = None) -> ProfileData:
        """
        Reset a subscription to defaults immediately. Irreversible.

        Allowed on oneself, or by an admin on another user. Admin rights
        come from the session token or the profile flag. The target defaults
        to the actor.
        """
        target = target_user_id or actor.user_id
        if target != actor.user_id and not actor.is_admin:
            caller = await self._find_profile(actor.user_id)
            if caller is None or not caller.is_admin:
                raise AuthorizationError("only admins can reset another user's subscription")

        profile = await self._lock_profile(target)
        profile.subscription_tier = SubscriptionTier.FREE
        profile.subscription_status = SubscriptionStatus.INACTIVE
        profile.subscription_expires_at = None
        profile.subscription_duration_months = 1
        profile.payment_method_id = None
        profile.auto_renew_enabled = False
        profile.next_billing_date = None
        profile.failed_payment_attempts = 0
        profile.last_renewal_failure_on = None
        profile.last_payment_date = None

        result = await self._verify_profile(
            profile, SubscriptionStatus.INACTIVE, SubscriptionTier.FREE
        )
        await self.session.commit()
        metrics.record_transition("cancel_hard")
        logger.warning(
            "subscription_reset",
            actor_id=str(actor.user_id),
            target_user_id=str(target),
            by_admin=target != actor.user_id,
        )
        return result

    async def toggle_auto_renew(
        self, user_id: UUID, enabled: bool, now: datetime | None = None
    ) -> ProfileData:
        """
        Switch auto-renewal.

        Off on an active subscription is a soft cancel; on requires a saved
        payment method and resumes a soft-cancelled subscription.
        """
        now = now or _utc_now()
        profile = await self._lock_profile(user_id)
        status = SubscriptionStatus(profile.subscription_status)
        if status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED):
            raise InvalidStateError("no subscription to change auto-renewal for")
        if profile.subscription_expires_at is None or profile.subscription_expires_at <= now:
            raise InvalidStateError("subscription has expired")

        if enabled:
            if not profile.payment_method_id:
                raise InvalidStateError("no saved payment method; make a payment first")
            profile.auto_renew_enabled = True
            profile.subscription_status = SubscriptionStatus.ACTIVE
            if profile.next_billing_date is None:
                profile.next_billing_date = profile.subscription_expires_at
            transition = "resume"
        else:
            profile.auto_renew_enabled = False
            profile.subscription_status = SubscriptionStatus.CANCELED
            transition = "cancel_soft"

        result = await self._verify_profile(
            profile,
            SubscriptionStatus(profile.subscription_status),
            SubscriptionTier(profile.subscription_tier),
        )
        await self.session.commit()
        metrics.record_transition(transition)
        logger.info("auto_renew_toggled", user_id=str(user_id), enabled=enabled)
        return result

    # ========================================================================
    # Scheduled transitions
    # ========================================================================

    async def find_due_for_renewal(self, now: datetime | None = None) -> list[ProfileData]:
        """
        Active auto-renewing profiles with a saved method whose billing date is
        today, excluding those whose charge already failed today.
        """
        start, end = billing_window(now or _utc_now())
        stmt = (
            select(Profile)
            .where(Profile.subscription_status == SubscriptionStatus.ACTIVE)
            .where(Profile.auto_renew_enabled.is_(True))
            .where(Profile.payment_method_id.isnot(None))
            .where(
                or_(
                    Profile.last_renewal_failure_on.is_(None),
                    Profile.last_renewal_failure_on != start.date(),
                )
            )
            .where(Profile.next_billing_date >= start)
            .where(Profile.next_billing_date < end)
            .order_by(Profile.next_billing_date)
        )
        result = await self.session.execute(stmt)
        return [self._profile_to_domain(p) for p in result.scalars().all()]

    async def lapse_expired(self, now: datetime | None = None) -> int:
        """Move every subscription past its expiry to inactive/free. Returns the count."""
        now = now or _utc_now()
        stmt = (
            update(Profile)
            .where(
                Profile.subscription_status.in_(
                    [SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED]
                )
            )
            .where(Profile.subscription_expires_at < now)
            .values(
                subscription_status=SubscriptionStatus.INACTIVE,
                subscription_tier=SubscriptionTier.FREE,
                auto_renew_enabled=False,
                next_billing_date=None,
            )
            .returning(Profile.id)
        )
        result = await self.session.execute(stmt)
        lapsed = len(result.scalars().all())
        await self.session.commit()
        if lapsed:
            metrics.record_transition("lapse")
            logger.info("subscriptions_lapsed", count=lapsed)
        return lapsed

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_profile(self, user_id: UUID) -> Profile | None:
        result = await self.session.execute(select(Profile).where(Profile.id == user_id))
        return result.scalar_one_or_none()

    async def _lock_profile(self, user_id: UUID) -> Profile:
        """SELECT ... FOR UPDATE. Never held across a gateway call."""
        stmt = (
            select(Profile)
            .where(Profile.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        profile = result.scalar_one_or_none()
        if profile is None:
            raise ProfileNotFoundError(user_id)
        return profile

    async def _actual_paid_price(self, profile: ProfileData) -> int:
        """
        Amount of the latest succeeded transaction for the current plan.

        Falls back to the list price of the matching product when no
        transaction is on record, and to 0 when neither exists.
        """
        stmt = (
            select(PaymentTransaction.amount)
            .join(Product, Product.id == PaymentTransaction.product_id)
            .where(PaymentTransaction.user_id == profile.user_id)
            .where(PaymentTransaction.status == TransactionStatus.SUCCEEDED)
            .where(Product.type == ProductType.SUBSCRIPTION_TIER)
            .where(Product.tier_level == profile.tier.level)
            .where(Product.duration_months == profile.duration_months)
            .order_by(PaymentTransaction.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        paid = result.scalar_one_or_none()
        if paid is not None:
            return int(paid)

        logger.info("paid_price_fallback_to_list_price", user_id=str(profile.user_id))
        product = await self.catalog.find_subscription_product(
            profile.tier.level, profile.duration_months
        )
        return product.price if product is not None else 0

    async def _verify_profile(
        self, profile: Profile, expected_status: SubscriptionStatus, expected_tier: SubscriptionTier
    ) -> ProfileData:
        """Flush, re-read and check the transition landed."""
        await self.session.flush()
        await self.session.refresh(profile)
        if profile.subscription_status != expected_status:
            raise WriteVerificationError(
                f"Profile status mismatch: expected {expected_status.value}, "
                f"got {profile.subscription_status}"
            )
        if profile.subscription_tier != expected_tier:
            raise WriteVerificationError(
                f"Profile tier mismatch: expected {expected_tier.value}, "
                f"got {profile.subscription_tier}"
            )
        return self._profile_to_domain(profile)

    @staticmethod
    def _profile_to_domain(profile: Profile) -> ProfileData:
        return ProfileData(
            user_id=profile.id,
            email=profile.email,
            full_name=profile.full_name,
            tier=SubscriptionTier(profile.subscription_tier),
            status=SubscriptionStatus(profile.subscription_status),
            expires_at=profile.subscription_expires_at,
            duration_months=profile.subscription_duration_months,
            auto_renew=profile.auto_renew_enabled,
            payment_method_id=profile.payment_method_id,
            next_billing_date=profile.next_billing_date,
            failed_payment_attempts=profile.failed_payment_attempts,
            is_admin=profile.is_admin,
            last_renewal_failure_on=profile.last_renewal_failure_on,
        )
