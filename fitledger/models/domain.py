"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import date, datetime
from uuid import UUID

from fitledger.models.api import (
    BonusTransactionType,
    PaymentKind,
    ProductType,
    ReferralStatus,
    SubscriptionStatus,
    SubscriptionTier,
    TransactionStatus,
)

VALID_DURATIONS = (1, 3, 6, 12)


@dataclass(frozen=True)
class ProductData:
    """Immutable product snapshot. `price` already includes `discount_percent`."""

    id: UUID
    name: str
    type: ProductType
    tier_level: int | None
    duration_months: int
    price: int
    discount_percent: int

    def __post_init__(self) -> None:
        """Validate product constraints."""
        if self.price <= 0:
            raise ValueError(f"Product price must be positive: {self.price}")
        if not 0 <= self.discount_percent < 100:
            raise ValueError(f"Invalid discount percent: {self.discount_percent}")
        if self.type == ProductType.SUBSCRIPTION_TIER:
            if self.tier_level not in (1, 2, 3):
                raise ValueError(f"Invalid tier level: {self.tier_level}")
            if self.duration_months not in VALID_DURATIONS:
                raise ValueError(f"Invalid duration: {self.duration_months}")

    @property
    def tier(self) -> SubscriptionTier | None:
        if self.tier_level is None:
            return None
        return SubscriptionTier.from_level(self.tier_level)


@dataclass(frozen=True)
class ProfileData:
    """Subscription state of a profile at a point in time."""

    user_id: UUID
    email: str | None
    full_name: str | None
    tier: SubscriptionTier
    status: SubscriptionStatus
    expires_at: datetime | None
    duration_months: int
    auto_renew: bool
    payment_method_id: str | None
    next_billing_date: datetime | None
    failed_payment_attempts: int
    is_admin: bool
    last_renewal_failure_on: date | None = None


@dataclass(frozen=True)
class UpgradeCurrent:
    """The plan being upgraded from."""

    tier_level: int
    duration_months: int
    paid_price: int
    remaining_days: int

    def __post_init__(self) -> None:
        if self.duration_months <= 0:
            raise ValueError(f"Invalid duration: {self.duration_months}")
        if self.paid_price < 0:
            raise ValueError(f"Paid price cannot be negative: {self.paid_price}")
        if self.remaining_days < 0:
            raise ValueError(f"Remaining days cannot be negative: {self.remaining_days}")


@dataclass(frozen=True)
class UpgradeTarget:
    """The plan being upgraded to."""

    tier_level: int
    duration_months: int
    price: int
    base_monthly_price: int

    def __post_init__(self) -> None:
        if self.duration_months <= 0:
            raise ValueError(f"Invalid duration: {self.duration_months}")
        if self.base_monthly_price <= 0:
            raise ValueError(f"Base monthly price must be positive: {self.base_monthly_price}")


@dataclass(frozen=True)
class UpgradeConversion:
    """Unused time of the current plan expressed as days of the target plan."""

    bonus_days: int
    total_days: int


@dataclass(frozen=True)
class UpgradeQuote:
    """Everything needed to show or apply an upgrade."""

    profile: ProfileData
    product: ProductData
    conversion: UpgradeConversion
    current_price: int


@dataclass(frozen=True)
class PriceQuote:
    """Price breakdown with every intermediate value retained."""

    product_id: UUID
    product_name: str
    base_price: int
    product_price: int
    discount_percent: int
    promo_code: str | None
    promo_discount: int
    price_after_discounts: int
    bonus_requested: int
    bonus_balance: int
    max_bonus_redeemable: int
    bonus_to_use: int
    final_price: int
    cashback_percent: int
    cashback_amount: int
    currency: str

    @property
    def duration_discount(self) -> int:
        return self.base_price - self.product_price

    @property
    def total_savings(self) -> int:
        return self.base_price - self.final_price


@dataclass(frozen=True)
class TransactionMetadata:
    """
    Typed audit trail of how a transaction amount was produced.

    Every producer fills all fields; upgrade math later reads
    `original_price` and `amount` back out of it.
    """

    product_type: ProductType
    payment_kind: PaymentKind
    original_price: int
    promo_code: str | None = None
    promo_discount: int = 0
    bonus_used: int = 0
    save_payment_method: bool = False
    conversion_bonus_days: int | None = None
    conversion_total_days: int | None = None

    def __post_init__(self) -> None:
        """Validate metadata constraints."""
        if self.original_price < 0:
            raise ValueError(f"Original price cannot be negative: {self.original_price}")
        if self.promo_discount < 0 or self.bonus_used < 0:
            raise ValueError("Discounts cannot be negative")
        if self.payment_kind == PaymentKind.UPGRADE and self.conversion_total_days is None:
            raise ValueError("Upgrade metadata requires a conversion")

    @property
    def conversion(self) -> UpgradeConversion | None:
        if self.conversion_total_days is None:
            return None
        return UpgradeConversion(
            bonus_days=self.conversion_bonus_days or 0,
            total_days=self.conversion_total_days,
        )


@dataclass(frozen=True)
class TransactionData:
    """Immutable payment transaction snapshot."""

    id: UUID
    user_id: UUID
    product_id: UUID
    external_payment_id: str
    amount: int
    currency: str
    status: TransactionStatus
    metadata: TransactionMetadata
    payment_method_id: str | None
    error_message: str | None
    created_at: datetime


@dataclass(frozen=True)
class BonusAccountData:
    """Immutable bonus account snapshot."""

    user_id: UUID
    balance: int
    cashback_level: int
    total_spent_for_cashback: int

    def __post_init__(self) -> None:
        """Validate account invariants."""
        if self.balance < 0:
            raise ValueError(f"Bonus balance cannot be negative: {self.balance}")
        if self.cashback_level not in (1, 2, 3, 4):
            raise ValueError(f"Invalid cashback level: {self.cashback_level}")


@dataclass(frozen=True)
class BonusEntryData:
    """Immutable bonus ledger row."""

    id: UUID
    user_id: UUID
    amount: int
    type: BonusTransactionType
    description: str
    created_at: datetime
    related_payment_id: UUID | None = None
    related_user_id: UUID | None = None


@dataclass(frozen=True)
class BonusIntent:
    """A bonus ledger movement before persistence."""

    user_id: UUID
    amount: int
    type: BonusTransactionType
    description: str
    idempotency_key: str | None = None
    related_payment_id: UUID | None = None
    related_user_id: UUID | None = None

    def __post_init__(self) -> None:
        """Validate bonus movement constraints."""
        if self.amount <= 0:
            raise ValueError(f"Bonus amount must be positive: {self.amount}")
        if not self.description:
            raise ValueError("Description cannot be empty")


@dataclass(frozen=True)
class ReferralData:
    """Immutable referral relationship snapshot."""

    id: UUID
    referrer_id: UUID
    referred_id: UUID
    status: ReferralStatus
    first_purchase_at: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class ReferralRegistration:
    """Outcome of registering a referral code."""

    created: bool
    referral: ReferralData | None


@dataclass(frozen=True)
class RenewalFailure:
    """A profile whose renewal attempt failed."""

    user_id: UUID
    error: str


@dataclass(frozen=True)
class RenewalReport:
    """Aggregated outcome of a renewal sweep."""

    total: int
    successful: int
    failed: int
    lapsed: int
    errors: tuple[RenewalFailure, ...]
    skipped: int = 0


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of an operation."""

    user_id: UUID
    is_admin: bool = False


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of settling one gateway payment."""

    external_payment_id: str
    transaction_id: UUID
    user_id: UUID
    status: TransactionStatus
    applied: bool


@dataclass(frozen=True)
class CreatedPayment:
    """A gateway payment awaiting (or past) confirmation, with its local record."""

    payment_id: str
    status: str
    amount: int
    currency: str
    confirmation_token: str | None = None
    confirmation_url: str | None = None


@dataclass(frozen=True)
class UpgradeOutcome:
    """
    Result of an upgrade request.

    `status` is `succeeded` when a saved payment method was charged and the
    upgrade applied, otherwise `pending` with a payment to confirm.
    """

    status: str
    conversion: UpgradeConversion
    payment: CreatedPayment | None
