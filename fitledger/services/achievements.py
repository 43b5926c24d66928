"""
Achievement Service - Idempotent achievement unlocking with bonus rewards.

An achievement is unlocked by inserting its user_achievements row; the reward
is credited only by the call whose insert created the row, and the bonus
entry carries an idempotency key as a second guard. Repeated checks never
double-pay.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fitledger.db.models import Referral, UserAchievement
from fitledger.models.api import BonusTransactionType, ReferralStatus
from fitledger.models.domain import BonusIntent
from fitledger.services.bonus import BonusAccountService

logger = get_logger(__name__)

REFERRAL_JOINED = "referral_joined"
REFERRAL_FIRST_PURCHASE_PREFIX = "referral_first_purchase:"


class AchievementService:
    """Unlocks achievements and pays their bonus rewards."""

    def __init__(
        self,
        session: AsyncSession,
        referred_user_bonus: int,
        referral_first_purchase_bonus: int,
    ) -> None:
        self.session = session
        self.referred_user_bonus = referred_user_bonus
        self.referral_first_purchase_bonus = referral_first_purchase_bonus
        self.bonuses = BonusAccountService(session)

    async def unlock(
        self,
        user_id: UUID,
        achievement_code: str,
        reward: int,
        reward_type: BonusTransactionType,
        description: str,
        related_user_id: UUID | None = None,
    ) -> bool:
        """Unlock once. Returns True only for the call that unlocked it."""
        stmt = (
            insert(UserAchievement)
            .values(user_id=user_id, achievement_code=achievement_code)
            .on_conflict_do_nothing(constraint="uq_user_achievement")
            .returning(UserAchievement.id)
        )
        result = await self.session.execute(stmt)
        if result.scalar_one_or_none() is None:
            return False

        logger.info("achievement_unlocked", user_id=str(user_id), achievement=achievement_code)
        if reward > 0:
            await self.bonuses.credit(
                BonusIntent(
                    user_id=user_id,
                    amount=reward,
                    type=reward_type,
                    description=description,
                    idempotency_key=f"achievement:{achievement_code}",
                    related_user_id=related_user_id,
                )
            )
        return True

    async def check_referral_achievements(self, user_id: UUID) -> list[str]:
        """
        Unlock every referral achievement the user currently qualifies for.

        - referred side: having a referral row
        - referrer side: each referred user who made a first purchase

        Safe to call any number of times. Returns newly unlocked codes.
        """
        unlocked: list[str] = []

        own = await self.session.execute(select(Referral).where(Referral.referred_id == user_id))
        referral = own.scalar_one_or_none()
        if referral is not None:
            if await self.unlock(
                user_id,
                REFERRAL_JOINED,
                self.referred_user_bonus,
                BonusTransactionType.REFERRAL_BONUS,
                "Welcome bonus for joining with a referral code",
                related_user_id=referral.referrer_id,
            ):
                unlocked.append(REFERRAL_JOINED)

        converted = await self.session.execute(
            select(Referral)
            .where(Referral.referrer_id == user_id)
            .where(Referral.status == ReferralStatus.FIRST_PURCHASE_MADE)
        )
        for invited in converted.scalars().all():
            code = f"{REFERRAL_FIRST_PURCHASE_PREFIX}{invited.referred_id}"
            if await self.unlock(
                user_id,
                code,
                self.referral_first_purchase_bonus,
                BonusTransactionType.REFERRAL_FIRST,
                "Referral bonus: your friend made a first purchase",
                related_user_id=invited.referred_id,
            ):
                unlocked.append(code)

        return unlocked
