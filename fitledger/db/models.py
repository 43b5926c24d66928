"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, date, datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    ARRAY,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from fitledger.models.api import (
    BonusTransactionType,
    DiscountType,
    PaymentKind,
    ProductType,
    ReferralStatus,
    SubscriptionStatus,
    SubscriptionTier,
    TransactionStatus,
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _enum_type(enum_cls: type[Enum], length: int = 32) -> SQLEnum:
    """Store a str Enum by value in a VARCHAR column."""
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda x: [e.value for e in x],
    )


class Profile(Base):
    """
    ORM model for profiles table.

    Subscription state of a user. Mutated only by the subscription service.
    """

    __tablename__ = "profiles"

    # Primary Key - the identity provider's user id
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)

    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Subscription
    subscription_tier: Mapped[SubscriptionTier] = mapped_column(
        _enum_type(SubscriptionTier, 10), nullable=False, default=SubscriptionTier.FREE
    )
    subscription_status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_type(SubscriptionStatus, 10), nullable=False, default=SubscriptionStatus.INACTIVE
    )
    subscription_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    subscription_duration_months: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Recurring billing
    auto_renew_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failed_payment_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_payment_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # A failure is counted at most once per day
    last_renewal_failure_on: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("failed_payment_attempts >= 0", name="ck_failed_attempts_non_negative"),
        CheckConstraint(
            "subscription_duration_months IN (1, 3, 6, 12)", name="ck_profile_duration_valid"
        ),
        Index(
            "idx_profiles_renewal",
            "next_billing_date",
            postgresql_where=(auto_renew_enabled.is_(True)),
        ),
        Index("idx_profiles_status_expires", "subscription_status", "subscription_expires_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Profile(id={self.id}, tier={self.subscription_tier}, "
            f"status={self.subscription_status}, expires_at={self.subscription_expires_at})>"
        )


class Product(Base):
    """
    ORM model for products table.

    Immutable once referenced by a transaction.
    """

    __tablename__ = "products"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[ProductType] = mapped_column(_enum_type(ProductType, 20), nullable=False)
    tier_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_months: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # Price after the duration discount, in whole currency units
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("price > 0", name="ck_product_price_positive"),
        CheckConstraint(
            "discount_percent >= 0 AND discount_percent < 100", name="ck_product_discount_range"
        ),
        CheckConstraint(
            "tier_level IS NULL OR tier_level BETWEEN 1 AND 3", name="ck_product_tier_level"
        ),
        Index("idx_products_tier_duration", "tier_level", "duration_months"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Product(id={self.id}, name={self.name}, price={self.price})>"


class PaymentTransaction(Base):
    """
    ORM model for payment_transactions table.

    Created once at payment time; moves pending -> succeeded|canceled exactly once.
    """

    __tablename__ = "payment_transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    product_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("products.id"), nullable=False
    )

    external_payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="RUB")
    status: Mapped[TransactionStatus] = mapped_column(
        _enum_type(TransactionStatus, 20), nullable=False, default=TransactionStatus.PENDING
    )
    payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Metadata fields (no JSON - explicit columns)
    metadata_product_type: Mapped[ProductType] = mapped_column(
        _enum_type(ProductType, 20), nullable=False
    )
    metadata_payment_kind: Mapped[PaymentKind] = mapped_column(
        _enum_type(PaymentKind, 20), nullable=False, default=PaymentKind.INITIAL
    )
    metadata_original_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    metadata_promo_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    metadata_promo_discount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    metadata_bonus_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    metadata_save_payment_method: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    metadata_conversion_bonus_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    metadata_conversion_total_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transaction_amount_positive"),
        CheckConstraint("metadata_bonus_used >= 0", name="ck_transaction_bonus_non_negative"),
        UniqueConstraint("external_payment_id", name="uq_transaction_external_payment"),
        Index("idx_transactions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PaymentTransaction(id={self.id}, external_payment_id={self.external_payment_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class BonusAccount(Base):
    """
    ORM model for bonus_accounts table.

    Balance is changed only together with a bonus_transactions row.
    """

    __tablename__ = "bonus_accounts"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cashback_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    total_spent_for_cashback: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_referral_earnings: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_bonus_balance_non_negative"),
        CheckConstraint("cashback_level BETWEEN 1 AND 4", name="ck_cashback_level_range"),
        UniqueConstraint("user_id", name="uq_bonus_account_user"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<BonusAccount(user_id={self.user_id}, balance={self.balance})>"


class BonusTransaction(Base):
    """
    ORM model for bonus_transactions table.

    Append-only ledger. Sum of amounts per user equals the account balance.
    """

    __tablename__ = "bonus_transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    type: Mapped[BonusTransactionType] = mapped_column(
        _enum_type(BonusTransactionType, 20), nullable=False
    )
    description: Mapped[str] = mapped_column(String, nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    related_payment_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    related_user_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_bonus_amount_non_zero"),
        UniqueConstraint("user_id", "idempotency_key", name="uq_bonus_idempotency"),
        Index("idx_bonus_transactions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<BonusTransaction(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, type={self.type})>"
        )


class ReferralCode(Base):
    """ORM model for referral_codes table."""

    __tablename__ = "referral_codes"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    code: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_referral_code_user"),
        UniqueConstraint("code", name="uq_referral_code_code"),
    )


class Referral(Base):
    """
    ORM model for referrals table.

    A user can be referred at most once.
    """

    __tablename__ = "referrals"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    referred_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    status: Mapped[ReferralStatus] = mapped_column(
        _enum_type(ReferralStatus, 24), nullable=False, default=ReferralStatus.REGISTERED
    )
    first_purchase_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("referrer_id <> referred_id", name="ck_referral_not_self"),
        UniqueConstraint("referred_id", name="uq_referral_referred"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Referral(referrer_id={self.referrer_id}, referred_id={self.referred_id}, "
            f"status={self.status})>"
        )


class PromoCode(Base):
    """ORM model for promo_codes table."""

    __tablename__ = "promo_codes"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(32), nullable=False)
    discount_type: Mapped[DiscountType] = mapped_column(
        _enum_type(DiscountType, 20), nullable=False
    )
    discount_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # NULL means the code applies to every product
    applicable_products: Mapped[list[UUID] | None] = mapped_column(
        ARRAY(PG_UUID(as_uuid=True)), nullable=True
    )
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("discount_value > 0", name="ck_promo_value_positive"),
        CheckConstraint("usage_count >= 0", name="ck_promo_usage_non_negative"),
        UniqueConstraint("code", name="uq_promo_code"),
    )


class UserAchievement(Base):
    """ORM model for user_achievements table. One row per unlocked achievement."""

    __tablename__ = "user_achievements"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    achievement_code: Mapped[str] = mapped_column(String(128), nullable=False)
    unlocked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", "achievement_code", name="uq_user_achievement"),
    )


class UserPurchase(Base):
    """ORM model for user_purchases table - granted one-time packs."""

    __tablename__ = "user_purchases"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    product_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("products.id"), nullable=False
    )
    transaction_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("payment_transactions.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (UniqueConstraint("transaction_id", name="uq_user_purchase_transaction"),)
