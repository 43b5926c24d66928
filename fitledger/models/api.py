"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator
from pydantic.alias_generators import to_camel


class SubscriptionTier(str, Enum):
    """Subscription tier, ordered by level."""

    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    ELITE = "elite"

    @property
    def level(self) -> int:
        return _TIER_LEVELS[self]

    @classmethod
    def from_level(cls, level: int) -> "SubscriptionTier":
        for tier, tier_level in _TIER_LEVELS.items():
            if tier_level == level:
                return tier
        raise ValueError(f"Unknown tier level: {level}")


_TIER_LEVELS = {
    SubscriptionTier.FREE: 0,
    SubscriptionTier.BASIC: 1,
    SubscriptionTier.PRO: 2,
    SubscriptionTier.ELITE: 3,
}


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""

    INACTIVE = "inactive"
    ACTIVE = "active"
    CANCELED = "canceled"


class ProductType(str, Enum):
    """Product kinds sold through the gateway."""

    SUBSCRIPTION_TIER = "subscription_tier"
    ONE_TIME_PACK = "one_time_pack"


class TransactionStatus(str, Enum):
    """Payment transaction status."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"


class PaymentKind(str, Enum):
    """Why a payment was taken."""

    INITIAL = "initial"
    UPGRADE = "upgrade"
    RENEWAL = "renewal"


class BonusTransactionType(str, Enum):
    """Bonus ledger entry types."""

    WELCOME = "welcome"
    REFERRAL_BONUS = "referral_bonus"
    REFERRAL_FIRST = "referral_first"
    CASHBACK = "cashback"
    SPENT = "spent"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class ReferralStatus(str, Enum):
    """Referral relationship status."""

    REGISTERED = "registered"
    FIRST_PURCHASE_MADE = "first_purchase_made"


class DiscountType(str, Enum):
    """Promo code discount kinds."""

    PERCENT = "percent"
    FIXED_AMOUNT = "fixed_amount"


class CamelModel(BaseModel):
    """Base model exchanging camelCase JSON with the web client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Payment Requests / Responses
# ============================================================================


class CreatePaymentRequest(CamelModel):
    """POST /payments/create request body."""

    product_id: UUID
    promo_code: str | None = Field(None, max_length=64)
    bonus_to_use: int = Field(0, ge=0)
    save_payment_method: bool | None = None
    confirmation_type: Literal["embedded", "redirect"] = "embedded"

    @field_validator("promo_code")
    @classmethod
    def blank_promo_is_none(cls, v: str | None) -> str | None:
        """Treat blank promo codes as absent."""
        if v is not None and not v.strip():
            return None
        return v


class CreatePaymentResponse(CamelModel):
    """POST /payments/create response."""

    payment_id: str
    confirmation_token: str | None = None
    confirmation_url: str | None = None
    amount: int
    currency: str


class UpgradeRequest(CamelModel):
    """POST /payments/upgrade request body."""

    new_product_id: UUID
    confirmation_type: Literal["embedded", "redirect"] = "embedded"


class UpgradeConversionResponse(CamelModel):
    """Unused time converted into days of the target plan."""

    bonus_days: int
    total_days: int


class CalculateUpgradeResponse(CamelModel):
    """GET /payments/calculate-upgrade response."""

    conversion: UpgradeConversionResponse
    current_price: int
    new_price: int
    current_tier: SubscriptionTier
    new_tier: SubscriptionTier
    product_name: str


class UpgradeResponse(CamelModel):
    """POST /payments/upgrade response - either applied or awaiting payment."""

    status: str
    payment: CreatePaymentResponse | None = None
    conversion: UpgradeConversionResponse


class ToggleAutoRenewRequest(CamelModel):
    """POST /payments/toggle-auto-renew request body."""

    enabled: StrictBool


class CancelFullRequest(CamelModel):
    """POST /payments/cancel-full request body."""

    user_id: UUID | None = None


class SubscriptionResponse(CamelModel):
    """Subscription state of a profile."""

    user_id: UUID
    tier: SubscriptionTier
    status: SubscriptionStatus
    expires_at: datetime | None
    duration_months: int
    auto_renew: bool
    next_billing_date: datetime | None


class PriceQuoteResponse(CamelModel):
    """Full price breakdown - every intermediate value of the calculation."""

    product_id: UUID
    product_name: str
    base_price: int
    product_price: int
    discount_percent: int
    duration_discount: int
    promo_code: str | None
    promo_discount: int
    price_after_discounts: int
    bonus_requested: int
    bonus_balance: int
    max_bonus_redeemable: int
    bonus_to_use: int
    final_price: int
    total_savings: int
    cashback_percent: int
    cashback_amount: int
    currency: str


class TransactionResponse(CamelModel):
    """A payment transaction as shown to its owner."""

    id: UUID
    product_id: UUID
    external_payment_id: str
    amount: int
    currency: str
    status: TransactionStatus
    payment_kind: PaymentKind
    promo_code: str | None
    bonus_used: int
    original_price: int
    error_message: str | None
    created_at: datetime


class TransactionListResponse(CamelModel):
    """GET /payments/transactions response."""

    transactions: list[TransactionResponse]


# ============================================================================
# Bonus / Referral Responses
# ============================================================================


class BonusLedgerEntryResponse(CamelModel):
    """One bonus ledger row."""

    id: UUID
    amount: int
    type: BonusTransactionType
    description: str
    created_at: datetime


class BonusAccountResponse(CamelModel):
    """GET /bonuses response."""

    balance: int
    cashback_level: int
    cashback_percent: int
    total_spent_for_cashback: int
    recent_transactions: list[BonusLedgerEntryResponse]


class RegisterReferralRequest(CamelModel):
    """POST /referrals/register request body."""

    code: str = Field(..., min_length=1, max_length=32)


class ReferralResponse(CamelModel):
    """Result of a referral registration."""

    created: bool
    referrer_id: UUID | None
    status: ReferralStatus | None


class ReferralCodeResponse(CamelModel):
    """GET /referrals/code response."""

    code: str


# ============================================================================
# Cron / Webhook Responses
# ============================================================================


class RenewalErrorResponse(CamelModel):
    """A single failed renewal."""

    user_id: UUID
    error: str


class RenewalReportResponse(CamelModel):
    """GET /cron/renew-subscriptions response."""

    total: int
    successful: int
    failed: int
    skipped: int = 0
    lapsed: int
    errors: list[RenewalErrorResponse]


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the gateway."""

    status: str
    event: str
    payment_id: str | None = None


class ErrorResponse(BaseModel):
    """Structured user-facing error payload."""

    error: str
    details: str | None = None
    suggest_upgrade: bool | None = None
