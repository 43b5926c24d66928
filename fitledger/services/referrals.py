"""
Referral Service - Referral codes, registration and first-purchase transition.
"""

import secrets
import string
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fitledger.db.models import PaymentTransaction, Referral, ReferralCode
from fitledger.exceptions import (
    InvalidStateError,
    ReferralCodeNotFoundError,
    WriteVerificationError,
)
from fitledger.models.api import ReferralStatus, TransactionStatus
from fitledger.models.domain import ReferralData, ReferralRegistration
from fitledger.services.achievements import AchievementService

logger = get_logger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8
MAX_CODE_ATTEMPTS = 5


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def generate_referral_code() -> str:
    """Random upper-case alphanumeric code."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


class ReferralService:
    """
    Referral registrar.

    Reward crediting is delegated to AchievementService, which is invoked for
    both sides whenever a referral is created or changes status.
    """

    def __init__(self, session: AsyncSession, achievements: AchievementService) -> None:
        self.session = session
        self.achievements = achievements

    async def get_or_create_code(self, user_id: UUID) -> str:
        """The user's referral code, generated on first request."""
        existing = await self._find_code_by_user(user_id)
        if existing is not None:
            return existing.code

        for _ in range(MAX_CODE_ATTEMPTS):
            candidate = generate_referral_code()
            result = await self.session.execute(
                insert(ReferralCode)
                .values(user_id=user_id, code=candidate)
                .on_conflict_do_nothing()
                .returning(ReferralCode.code)
            )
            created = result.scalar_one_or_none()
            if created is not None:
                await self.session.commit()
                logger.info("referral_code_created", user_id=str(user_id))
                return created

            # Either a concurrent request created this user's code or the code collided
            existing = await self._find_code_by_user(user_id)
            if existing is not None:
                return existing.code

        raise WriteVerificationError(f"Could not allocate a unique referral code for {user_id}")

    async def register_referral(self, code: str, new_user_id: UUID) -> ReferralRegistration:
        """
        Record that `new_user_id` signed up with `code`.

        A repeated registration for the same user is a no-op returning the
        existing referral; self-referral is rejected.
        """
        referral_code = await self._find_code(code.strip().upper())
        if referral_code is None:
            raise ReferralCodeNotFoundError(code)

        referrer_id = referral_code.user_id
        if referrer_id == new_user_id:
            raise InvalidStateError("self-referral is not allowed")

        existing = await self._find_referral(new_user_id)
        if existing is not None:
            logger.info(
                "referral_already_registered",
                referred_id=str(new_user_id),
                referrer_id=str(existing.referrer_id),
            )
            await self._check_achievements(existing.referrer_id, existing.referred_id)
            await self.session.commit()
            return ReferralRegistration(created=False, referral=self._referral_to_domain(existing))

        already_purchased = await self._has_succeeded_transaction(new_user_id)
        status = (
            ReferralStatus.FIRST_PURCHASE_MADE if already_purchased else ReferralStatus.REGISTERED
        )
        result = await self.session.execute(
            insert(Referral)
            .values(
                referrer_id=referrer_id,
                referred_id=new_user_id,
                status=status,
                first_purchase_at=_utc_now() if already_purchased else None,
            )
            .on_conflict_do_nothing(constraint="uq_referral_referred")
            .returning(Referral.id)
        )
        created = result.scalar_one_or_none() is not None

        referral = await self._find_referral(new_user_id)
        if referral is None:
            raise WriteVerificationError(f"Referral for {new_user_id} not found after insert")

        await self._check_achievements(referral.referrer_id, referral.referred_id)
        await self.session.commit()

        logger.info(
            "referral_registered" if created else "referral_registration_raced",
            referrer_id=str(referral.referrer_id),
            referred_id=str(new_user_id),
            status=referral.status,
        )
        return ReferralRegistration(created=created, referral=self._referral_to_domain(referral))

    async def mark_first_purchase(self, referred_id: UUID) -> bool:
        """
        Move the user's referral registered -> first_purchase_made.

        Conditional UPDATE, so only one caller ever performs the transition.
        Does not commit.
        """
        result = await self.session.execute(
            update(Referral)
            .where(Referral.referred_id == referred_id)
            .where(Referral.status == ReferralStatus.REGISTERED)
            .values(status=ReferralStatus.FIRST_PURCHASE_MADE, first_purchase_at=_utc_now())
            .returning(Referral.referrer_id)
        )
        referrer_id = result.scalar_one_or_none()
        if referrer_id is None:
            return False

        logger.info(
            "referral_first_purchase", referrer_id=str(referrer_id), referred_id=str(referred_id)
        )
        await self._check_achievements(referrer_id, referred_id)
        return True

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _check_achievements(self, referrer_id: UUID, referred_id: UUID) -> None:
        await self.achievements.check_referral_achievements(referred_id)
        await self.achievements.check_referral_achievements(referrer_id)

    async def _find_code(self, code: str) -> ReferralCode | None:
        result = await self.session.execute(select(ReferralCode).where(ReferralCode.code == code))
        return result.scalar_one_or_none()

    async def _find_code_by_user(self, user_id: UUID) -> ReferralCode | None:
        result = await self.session.execute(
            select(ReferralCode).where(ReferralCode.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def _find_referral(self, referred_id: UUID) -> Referral | None:
        result = await self.session.execute(
            select(Referral)
            .where(Referral.referred_id == referred_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _has_succeeded_transaction(self, user_id: UUID) -> bool:
        result = await self.session.execute(
            select(PaymentTransaction.id)
            .where(PaymentTransaction.user_id == user_id)
            .where(PaymentTransaction.status == TransactionStatus.SUCCEEDED)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    @staticmethod
    def _referral_to_domain(referral: Referral) -> ReferralData:
        return ReferralData(
            id=referral.id,
            referrer_id=referral.referrer_id,
            referred_id=referral.referred_id,
            status=ReferralStatus(referral.status),
            first_purchase_at=referral.first_purchase_at,
            created_at=referral.created_at,
        )
