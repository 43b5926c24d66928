"""
API Routes - FastAPI endpoints for payments, subscriptions, bonuses and referrals.
"""

import asyncio
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fitledger.api.dependencies import (
    UserIdentity,
    get_current_user,
    get_payment_service,
    get_webhook_processor,
)
from fitledger.config import settings
from fitledger.db.session import get_read_db, get_write_db
from fitledger.exceptions import (
    AuthorizationError,
    BelowMinimumPayableError,
    InsufficientBalanceError,
    InvalidPromoCodeError,
    InvalidStateError,
    LedgerError,
    MalformedPayloadError,
    NotFoundError,
    PaymentProviderError,
    SignatureInvalidError,
)
from fitledger.models.api import (
    BonusAccountResponse,
    BonusLedgerEntryResponse,
    CalculateUpgradeResponse,
    CancelFullRequest,
    CreatePaymentRequest,
    CreatePaymentResponse,
    ErrorResponse,
    PriceQuoteResponse,
    ReferralCodeResponse,
    ReferralResponse,
    RegisterReferralRequest,
    SubscriptionResponse,
    ToggleAutoRenewRequest,
    TransactionListResponse,
    TransactionResponse,
    UpgradeConversionResponse,
    UpgradeRequest,
    UpgradeResponse,
    WebhookAckResponse,
)
from fitledger.models.domain import CreatedPayment, PriceQuote, ProfileData, UpgradeConversion
from fitledger.observability.metrics import metrics
from fitledger.services.achievements import AchievementService
from fitledger.services.bonus import BonusAccountService
from fitledger.services.payments import PaymentService
from fitledger.services.price_calculator import PriceCalculator
from fitledger.services.referrals import ReferralService
from fitledger.services.subscriptions import SubscriptionService
from fitledger.services.transactions import TransactionStore
from fitledger.services.webhook import WebhookProcessor

logger = get_logger(__name__)

router = APIRouter()


# ============================================================================
# Error mapping
# ============================================================================


def _error(
    status_code: int, error: str, details: str | None = None, **extra: bool
) -> HTTPException:
    body = ErrorResponse(error=error, details=details, **extra)
    return HTTPException(status_code=status_code, detail=body.model_dump(exclude_none=True))


def _http_error(exc: LedgerError) -> HTTPException:
    """Translate a domain exception into the user-facing {error, details} response."""
    if isinstance(exc, AuthorizationError):
        return _error(status.HTTP_403_FORBIDDEN, "Forbidden", exc.message)
    if isinstance(exc, NotFoundError):
        return _error(status.HTTP_404_NOT_FOUND, "Not found", str(exc))
    if isinstance(exc, InvalidStateError):
        return _error(
            status.HTTP_400_BAD_REQUEST,
            "Invalid state",
            exc.message,
            **({"suggest_upgrade": True} if exc.suggest_upgrade else {}),
        )
    if isinstance(exc, InvalidPromoCodeError):
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid promo code", str(exc))
    if isinstance(exc, InsufficientBalanceError):
        return _error(status.HTTP_402_PAYMENT_REQUIRED, "Insufficient bonus balance", str(exc))
    if isinstance(exc, BelowMinimumPayableError):
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "Below minimum payable", str(exc))
    if isinstance(exc, PaymentProviderError):
        return _error(
            status.HTTP_503_SERVICE_UNAVAILABLE, "Payment provider unavailable", exc.message
        )

    metrics.record_error(type(exc).__name__, "api")
    logger.error("ledger_error", error_type=type(exc).__name__, error=str(exc))
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal error", "Ledger integrity error")


# ============================================================================
# Response builders
# ============================================================================


def _subscription_response(profile: ProfileData) -> SubscriptionResponse:
    return SubscriptionResponse(
        user_id=profile.user_id,
        tier=profile.tier,
        status=profile.status,
        expires_at=profile.expires_at,
        duration_months=profile.duration_months,
        auto_renew=profile.auto_renew,
        next_billing_date=profile.next_billing_date,
    )


def _conversion_response(conversion: UpgradeConversion) -> UpgradeConversionResponse:
    return UpgradeConversionResponse(
        bonus_days=conversion.bonus_days, total_days=conversion.total_days
    )


def _payment_response(payment: CreatedPayment) -> CreatePaymentResponse:
    return CreatePaymentResponse(
        payment_id=payment.payment_id,
        confirmation_token=payment.confirmation_token,
        confirmation_url=payment.confirmation_url,
        amount=payment.amount,
        currency=payment.currency,
    )


def _quote_response(quote: PriceQuote) -> PriceQuoteResponse:
    return PriceQuoteResponse(
        product_id=quote.product_id,
        product_name=quote.product_name,
        base_price=quote.base_price,
        product_price=quote.product_price,
        discount_percent=quote.discount_percent,
        duration_discount=quote.duration_discount,
        promo_code=quote.promo_code,
        promo_discount=quote.promo_discount,
        price_after_discounts=quote.price_after_discounts,
        bonus_requested=quote.bonus_requested,
        bonus_balance=quote.bonus_balance,
        max_bonus_redeemable=quote.max_bonus_redeemable,
        bonus_to_use=quote.bonus_to_use,
        final_price=quote.final_price,
        total_savings=quote.total_savings,
        cashback_percent=quote.cashback_percent,
        cashback_amount=quote.cashback_amount,
        currency=quote.currency,
    )


def _subscriptions(db: AsyncSession) -> SubscriptionService:
    return SubscriptionService(db, settings.pricing, settings.max_failed_payment_attempts)


# ============================================================================
# Health
# ============================================================================


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_read_db)) -> dict[str, str]:
    """Liveness plus a database round-trip."""
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("health_check_database_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from exc
    return {"status": "healthy", "database": "connected", "version": settings.api_version}


# ============================================================================
# Quotes and payments
# ============================================================================


@router.get("/payments/quote", response_model=PriceQuoteResponse)
async def get_price_quote(
    product_id: UUID = Query(..., alias="productId"),
    promo_code: str | None = Query(None, alias="promoCode", max_length=64),
    bonus_to_use: int = Query(0, alias="bonusToUse", ge=0),
    db: AsyncSession = Depends(get_read_db),
    user: UserIdentity = Depends(get_current_user),
) -> PriceQuoteResponse:
    """
    Price breakdown for a product with optional promo code and bonus redemption.

    Over-requested bonuses are clamped to what may be used.
    """
    calculator = PriceCalculator(db, settings.pricing)
    try:
        quote = await calculator.quote(
            product_id, user.user_id, promo_code.strip() if promo_code else None, bonus_to_use
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _quote_response(quote)


@router.post(
    "/payments/create",
    response_model=CreatePaymentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_payment(
    request: CreatePaymentRequest,
    user: UserIdentity = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
) -> CreatePaymentResponse:
    """
    Open a gateway payment for a product.

    The client confirms it with `confirmationToken` (embedded widget) or
    `confirmationUrl` (redirect); the webhook completes the purchase.
    """
    try:
        payment = await service.create_payment(
            user.user_id,
            request.product_id,
            promo_code=request.promo_code,
            bonus_to_use=request.bonus_to_use,
            save_payment_method=request.save_payment_method,
            confirmation_type=request.confirmation_type,
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc

    logger.info(
        "payment_created",
        user_id=str(user.user_id),
        product_id=str(request.product_id),
        payment_id=payment.payment_id,
        amount=payment.amount,
    )
    return _payment_response(payment)


@router.get("/payments/calculate-upgrade", response_model=CalculateUpgradeResponse)
async def calculate_upgrade(
    new_product_id: UUID = Query(..., alias="newProductId"),
    db: AsyncSession = Depends(get_read_db),
    user: UserIdentity = Depends(get_current_user),
) -> CalculateUpgradeResponse:
    """Preview how the remaining days convert when upgrading to `newProductId`."""
    try:
        quote = await _subscriptions(db).quote_upgrade(user.user_id, new_product_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc

    new_tier = quote.product.tier
    if new_tier is None:
        raise _error(status.HTTP_400_BAD_REQUEST, "Invalid state", "target is not a subscription")
    return CalculateUpgradeResponse(
        conversion=_conversion_response(quote.conversion),
        current_price=quote.current_price,
        new_price=quote.product.price,
        current_tier=quote.profile.tier,
        new_tier=new_tier,
        product_name=quote.product.name,
    )


@router.post("/payments/upgrade", response_model=UpgradeResponse)
async def upgrade_subscription(
    request: UpgradeRequest,
    user: UserIdentity = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
) -> UpgradeResponse:
    """
    Upgrade to a higher tier.

    `status=succeeded` means the saved payment method was charged and the new
    tier is active; `status=pending` returns a payment to confirm.
    """
    try:
        outcome = await service.create_upgrade(
            user.user_id, request.new_product_id, confirmation_type=request.confirmation_type
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc

    return UpgradeResponse(
        status=outcome.status,
        payment=_payment_response(outcome.payment) if outcome.payment else None,
        conversion=_conversion_response(outcome.conversion),
    )


@router.get("/payments/transactions", response_model=TransactionListResponse)
async def list_transactions(
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_read_db),
    user: UserIdentity = Depends(get_current_user),
) -> TransactionListResponse:
    """Caller's payment transactions, newest first."""
    transactions = await TransactionStore(db).list_for_user(user.user_id, limit=limit)
    return TransactionListResponse(
        transactions=[
            TransactionResponse(
                id=tx.id,
                product_id=tx.product_id,
                external_payment_id=tx.external_payment_id,
                amount=tx.amount,
                currency=tx.currency,
                status=tx.status,
                payment_kind=tx.metadata.payment_kind,
                promo_code=tx.metadata.promo_code,
                bonus_used=tx.metadata.bonus_used,
                original_price=tx.metadata.original_price,
                error_message=tx.error_message,
                created_at=tx.created_at,
            )
            for tx in transactions
        ]
    )


@router.post("/payments/webhook", response_model=WebhookAckResponse)
async def payment_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> WebhookAckResponse:
    """
    Gateway notification endpoint.

    200 for handled or ignored events; 403 bad signature, 400 malformed body,
    404 unknown payment, 500 anything else (the gateway retries non-2xx).
    """
    payload = await request.body()
    signature = request.headers.get("X-Signature")

    try:
        result = await asyncio.wait_for(
            processor.process(payload, signature), timeout=settings.webhook_timeout_seconds
        )
    except SignatureInvalidError as exc:
        raise _error(status.HTTP_403_FORBIDDEN, "Invalid signature", exc.message) from exc
    except MalformedPayloadError as exc:
        raise _error(status.HTTP_400_BAD_REQUEST, "Malformed payload", exc.message) from exc
    except NotFoundError as exc:
        logger.warning("webhook_transaction_not_found", error=str(exc))
        raise _error(status.HTTP_404_NOT_FOUND, "Not found", str(exc)) from exc
    except TimeoutError as exc:
        metrics.record_error("WebhookTimeout", "webhook")
        logger.error("webhook_timeout", timeout_seconds=settings.webhook_timeout_seconds)
        raise _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Timeout") from exc
    except (LedgerError, SQLAlchemyError) as exc:
        metrics.record_error(type(exc).__name__, "webhook")
        logger.error("webhook_processing_failed", error_type=type(exc).__name__, error=str(exc))
        raise _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Processing failed") from exc

    return WebhookAckResponse(
        status=result.outcome, event=result.event, payment_id=result.payment_id
    )


# ============================================================================
# Subscription management
# ============================================================================


@router.get("/payments/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    db: AsyncSession = Depends(get_read_db),
    user: UserIdentity = Depends(get_current_user),
) -> SubscriptionResponse:
    """Caller's current subscription state."""
    try:
        profile = await _subscriptions(db).get_profile(user.user_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _subscription_response(profile)


@router.post("/payments/cancel-subscription", response_model=SubscriptionResponse)
async def cancel_subscription(
    db: AsyncSession = Depends(get_write_db),
    user: UserIdentity = Depends(get_current_user),
) -> SubscriptionResponse:
    """Stop renewing; access continues until the current period ends."""
    try:
        profile = await _subscriptions(db).cancel_soft(user.user_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _subscription_response(profile)


@router.post("/payments/toggle-auto-renew", response_model=SubscriptionResponse)
async def toggle_auto_renew(
    request: ToggleAutoRenewRequest,
    db: AsyncSession = Depends(get_write_db),
    user: UserIdentity = Depends(get_current_user),
) -> SubscriptionResponse:
    """Turn auto-renewal on (needs a saved card) or off (soft cancel)."""
    try:
        profile = await _subscriptions(db).toggle_auto_renew(user.user_id, request.enabled)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _subscription_response(profile)


@router.post("/payments/cancel-full", response_model=SubscriptionResponse)
async def cancel_full(
    request: CancelFullRequest,
    db: AsyncSession = Depends(get_write_db),
    user: UserIdentity = Depends(get_current_user),
) -> SubscriptionResponse:
    """
    Reset a subscription to free immediately.

    Without `userId` the caller's own subscription is reset; resetting
    someone else's requires admin rights.
    """
    try:
        profile = await _subscriptions(db).cancel_hard(user.as_actor(), request.user_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _subscription_response(profile)


# ============================================================================
# Bonuses and referrals
# ============================================================================


@router.get("/bonuses", response_model=BonusAccountResponse)
async def get_bonuses(
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_read_db),
    user: UserIdentity = Depends(get_current_user),
) -> BonusAccountResponse:
    """Bonus balance, cashback level and recent ledger rows."""
    service = BonusAccountService(db)
    account = await service.get_account(user.user_id)
    entries = await service.list_entries(user.user_id, limit=limit) if account else []

    level = account.cashback_level if account else 1
    return BonusAccountResponse(
        balance=account.balance if account else 0,
        cashback_level=level,
        cashback_percent=settings.pricing.cashback_percent(level),
        total_spent_for_cashback=account.total_spent_for_cashback if account else 0,
        recent_transactions=[
            BonusLedgerEntryResponse(
                id=entry.id,
                amount=entry.amount,
                type=entry.type,
                description=entry.description,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
    )


def _referrals(db: AsyncSession) -> ReferralService:
    return ReferralService(
        db,
        AchievementService(
            db, settings.referred_user_bonus, settings.referral_first_purchase_bonus
        ),
    )


@router.post("/referrals/register", response_model=ReferralResponse)
async def register_referral(
    request: RegisterReferralRequest,
    db: AsyncSession = Depends(get_write_db),
    user: UserIdentity = Depends(get_current_user),
) -> ReferralResponse:
    """Register the caller as referred by `code`. Repeating it is a no-op."""
    try:
        registration = await _referrals(db).register_referral(request.code, user.user_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc

    referral = registration.referral
    return ReferralResponse(
        created=registration.created,
        referrer_id=referral.referrer_id if referral else None,
        status=referral.status if referral else None,
    )


@router.get("/referrals/code", response_model=ReferralCodeResponse)
async def get_referral_code(
    db: AsyncSession = Depends(get_write_db),
    user: UserIdentity = Depends(get_current_user),
) -> ReferralCodeResponse:
    """Caller's referral code, created on first request."""
    try:
        code = await _referrals(db).get_or_create_code(user.user_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return ReferralCodeResponse(code=code)
