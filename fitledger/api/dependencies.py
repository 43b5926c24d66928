"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.

Users authenticate with an HS256 session JWT issued by the identity provider
(`sub` = user id, optional `email` and `role`). Scheduled jobs authenticate
with a static bearer secret.
"""

import hmac
from dataclasses import dataclass
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fitledger.config import settings
from fitledger.db.session import get_write_db
from fitledger.models.domain import Actor
from fitledger.services.notifications import EmailNotifier, Notifier
from fitledger.services.payment_gateway import PaymentGateway
from fitledger.services.payments import PaymentService
from fitledger.services.renewals import RenewalService
from fitledger.services.settlement import PaymentSettlement
from fitledger.services.webhook import WebhookProcessor
from fitledger.services.yookassa_provider import YooKassaProvider

logger = get_logger(__name__)

# ============================================================================
# User JWT Authentication
# ============================================================================


@dataclass
class UserIdentity:
    """Authenticated user identity from the session token."""

    user_id: UUID
    email: str | None = None
    role: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == settings.admin_role

    def as_actor(self) -> Actor:
        return Actor(user_id=self.user_id, is_admin=self.is_admin)


bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "Unauthorized", "details": detail},
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_session_token(token: str, secret: str, audience: str | None = None) -> UserIdentity:
    """
    Verify a session JWT and extract the identity.

    Raises:
        jwt.InvalidTokenError: bad signature, expired, wrong audience or bad subject
    """
    payload = jwt.decode(
        token,
        secret,
        algorithms=["HS256"],
        audience=audience,
        options={"require": ["sub", "exp"], "verify_aud": audience is not None},
    )
    try:
        user_id = UUID(str(payload["sub"]))
    except ValueError as exc:
        raise jwt.InvalidTokenError("subject is not a user id") from exc

    email = payload.get("email")
    role = payload.get("role")
    return UserIdentity(
        user_id=user_id,
        email=email if isinstance(email, str) else None,
        role=role if isinstance(role, str) else None,
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserIdentity:
    """
    FastAPI dependency resolving the caller from `Authorization: Bearer {jwt}`.

    Raises:
        HTTPException 401 if the token is missing, expired or invalid
    """
    if credentials is None:
        raise _unauthorized("Authorization header required")
    if not settings.session_jwt_secret:
        logger.error("session_jwt_secret_not_configured")
        raise _unauthorized("Authentication is not configured")

    try:
        user = decode_session_token(
            credentials.credentials, settings.session_jwt_secret, settings.session_jwt_audience
        )
    except jwt.ExpiredSignatureError as exc:
        logger.info("session_token_expired")
        raise _unauthorized("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.warning("session_token_invalid", error=str(exc))
        raise _unauthorized("Invalid token") from exc

    return user


async def require_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    """Accept only `Authorization: Bearer {cron_secret}`."""
    if not settings.cron_secret:
        logger.error("cron_secret_not_configured")
        raise _unauthorized("Cron secret is not configured")
    if credentials is None or not hmac.compare_digest(
        credentials.credentials.encode(), settings.cron_secret.encode()
    ):
        logger.warning("cron_auth_failed")
        raise _unauthorized("Invalid cron secret")


# ============================================================================
# Service wiring
# ============================================================================

_gateway: PaymentGateway | None = None
_notifier: Notifier | None = None


def get_payment_gateway() -> PaymentGateway:
    """Shared gateway client (keeps its HTTP connection pool across requests)."""
    global _gateway
    if _gateway is None:
        _gateway = YooKassaProvider(
            shop_id=settings.gateway_shop_id,
            secret_key=settings.gateway_secret_key,
            webhook_secret=settings.gateway_webhook_secret,
            api_url=settings.gateway_api_url,
            timeout_seconds=settings.gateway_timeout_seconds,
        )
    return _gateway


def get_notifier() -> Notifier:
    """Shared email notifier."""
    global _notifier
    if _notifier is None:
        _notifier = EmailNotifier(
            api_key=settings.email_api_key,
            sender=settings.email_from,
            api_url=settings.email_api_url,
        )
    return _notifier


def get_settlement(
    db: AsyncSession = Depends(get_write_db),
    notifier: Notifier = Depends(get_notifier),
) -> PaymentSettlement:
    return PaymentSettlement(
        db,
        settings.pricing,
        notifier=notifier,
        referred_user_bonus=settings.referred_user_bonus,
        referral_first_purchase_bonus=settings.referral_first_purchase_bonus,
        max_failed_payment_attempts=settings.max_failed_payment_attempts,
    )


def get_webhook_processor(
    gateway: PaymentGateway = Depends(get_payment_gateway),
    settlement: PaymentSettlement = Depends(get_settlement),
) -> WebhookProcessor:
    return WebhookProcessor(gateway, settlement)


def get_payment_service(
    db: AsyncSession = Depends(get_write_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    settlement: PaymentSettlement = Depends(get_settlement),
) -> PaymentService:
    return PaymentService(
        db, gateway, settlement, settings.pricing, return_url=settings.gateway_return_url
    )


def get_renewal_service(
    db: AsyncSession = Depends(get_write_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    settlement: PaymentSettlement = Depends(get_settlement),
) -> RenewalService:
    return RenewalService(
        db,
        gateway,
        settlement,
        settings.pricing,
        max_failed_payment_attempts=settings.max_failed_payment_attempts,
    )
