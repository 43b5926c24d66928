"""
Tests for ReferralService and AchievementService.

Reward payouts must happen once per achievement regardless of how many
times the checks run.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from factories import make_result

from fitledger.db.models import Referral, ReferralCode
from fitledger.exceptions import (
    InvalidStateError,
    ReferralCodeNotFoundError,
    WriteVerificationError,
)
from fitledger.models.api import BonusTransactionType, ReferralStatus
from fitledger.services.achievements import (
    REFERRAL_FIRST_PURCHASE_PREFIX,
    REFERRAL_JOINED,
    AchievementService,
)
from fitledger.services.referrals import (
    CODE_ALPHABET,
    CODE_LENGTH,
    MAX_CODE_ATTEMPTS,
    ReferralService,
    generate_referral_code,
)


def create_mock_referral(
    referrer_id=None,
    referred_id=None,
    status: ReferralStatus = ReferralStatus.REGISTERED,
) -> MagicMock:
    """Factory function to create mock Referral objects."""
    referral = MagicMock(spec=Referral)
    referral.id = uuid4()
    referral.referrer_id = referrer_id or uuid4()
    referral.referred_id = referred_id or uuid4()
    referral.status = status
    referral.first_purchase_at = None
    referral.created_at = datetime.now(UTC)
    return referral


def create_mock_code(user_id=None, code: str = "FRIEND42") -> MagicMock:
    referral_code = MagicMock(spec=ReferralCode)
    referral_code.user_id = user_id or uuid4()
    referral_code.code = code
    return referral_code


@pytest.fixture
def achievements(db_session: AsyncMock) -> AchievementService:
    return AchievementService(
        db_session, referred_user_bonus=250, referral_first_purchase_bonus=500
    )


@pytest.fixture
def referrals(db_session: AsyncMock) -> ReferralService:
    achievements = MagicMock()
    achievements.check_referral_achievements = AsyncMock(return_value=[])
    return ReferralService(db_session, achievements)


class TestReferralCodes:
    """Code generation and lookup."""

    def test_generated_code_shape(self) -> None:
        code = generate_referral_code()

        assert len(code) == CODE_LENGTH
        assert set(code) <= set(CODE_ALPHABET)

    async def test_existing_code_returned(self, referrals: ReferralService) -> None:
        user_id = uuid4()
        referrals.session.execute = AsyncMock(
            return_value=make_result(scalar=create_mock_code(user_id, "ABCD1234"))
        )

        assert await referrals.get_or_create_code(user_id) == "ABCD1234"
        referrals.session.commit.assert_not_awaited()

    async def test_new_code_committed(self, referrals: ReferralService) -> None:
        referrals.session.execute = AsyncMock(
            side_effect=[make_result(scalar=None), make_result(scalar="NEWCODE1")]
        )

        assert await referrals.get_or_create_code(uuid4()) == "NEWCODE1"
        referrals.session.commit.assert_awaited_once()

    async def test_gives_up_after_collisions(self, referrals: ReferralService) -> None:
        # Every insert collides and the user still has no code
        with pytest.raises(WriteVerificationError):
            await referrals.get_or_create_code(uuid4())

        assert referrals.session.execute.await_count == 1 + 2 * MAX_CODE_ATTEMPTS


class TestRegisterReferral:
    """Registration rules."""

    async def test_unknown_code(self, referrals: ReferralService) -> None:
        with patch.object(referrals, "_find_code", new_callable=AsyncMock) as mock_find:
            mock_find.return_value = None
            with pytest.raises(ReferralCodeNotFoundError):
                await referrals.register_referral("nope", uuid4())

    async def test_code_is_normalized(self, referrals: ReferralService) -> None:
        with patch.object(referrals, "_find_code", new_callable=AsyncMock) as mock_find:
            mock_find.return_value = None
            with pytest.raises(ReferralCodeNotFoundError):
                await referrals.register_referral("  friend42 ", uuid4())

        mock_find.assert_awaited_once_with("FRIEND42")

    async def test_self_referral_rejected(self, referrals: ReferralService) -> None:
        user_id = uuid4()

        with patch.object(referrals, "_find_code", new_callable=AsyncMock) as mock_find:
            mock_find.return_value = create_mock_code(user_id)
            with pytest.raises(InvalidStateError, match="self-referral"):
                await referrals.register_referral("FRIEND42", user_id)

    async def test_repeat_registration_is_noop(self, referrals: ReferralService) -> None:
        existing = create_mock_referral()

        with (
            patch.object(referrals, "_find_code", new_callable=AsyncMock) as mock_find,
            patch.object(referrals, "_find_referral", new_callable=AsyncMock) as mock_referral,
        ):
            mock_find.return_value = create_mock_code()
            mock_referral.return_value = existing
            registration = await referrals.register_referral("FRIEND42", existing.referred_id)

        assert registration.created is False
        assert registration.referral.referrer_id == existing.referrer_id
        referrals.session.execute.assert_not_awaited()

    async def test_new_registration(self, referrals: ReferralService) -> None:
        referrer = create_mock_code()
        new_user = uuid4()
        created = create_mock_referral(referrer_id=referrer.user_id, referred_id=new_user)
        referrals.session.execute = AsyncMock(return_value=make_result(scalar=uuid4()))

        with (
            patch.object(referrals, "_find_code", new_callable=AsyncMock) as mock_find,
            patch.object(referrals, "_find_referral", new_callable=AsyncMock) as mock_referral,
            patch.object(
                referrals, "_has_succeeded_transaction", new_callable=AsyncMock
            ) as mock_purchased,
        ):
            mock_find.return_value = referrer
            mock_referral.side_effect = [None, created]
            mock_purchased.return_value = False
            registration = await referrals.register_referral("FRIEND42", new_user)

        assert registration.created is True
        assert registration.referral.status == ReferralStatus.REGISTERED
        referrals.achievements.check_referral_achievements.assert_any_await(new_user)
        referrals.achievements.check_referral_achievements.assert_any_await(referrer.user_id)
        referrals.session.commit.assert_awaited_once()

    async def test_late_registration_counts_earlier_purchase(
        self, referrals: ReferralService
    ) -> None:
        referrer = create_mock_code()
        new_user = uuid4()
        created = create_mock_referral(
            referrer_id=referrer.user_id,
            referred_id=new_user,
            status=ReferralStatus.FIRST_PURCHASE_MADE,
        )
        referrals.session.execute = AsyncMock(return_value=make_result(scalar=uuid4()))

        with (
            patch.object(referrals, "_find_code", new_callable=AsyncMock) as mock_find,
            patch.object(referrals, "_find_referral", new_callable=AsyncMock) as mock_referral,
            patch.object(
                referrals, "_has_succeeded_transaction", new_callable=AsyncMock
            ) as mock_purchased,
        ):
            mock_find.return_value = referrer
            mock_referral.side_effect = [None, created]
            mock_purchased.return_value = True
            registration = await referrals.register_referral("FRIEND42", new_user)

        assert registration.referral.status == ReferralStatus.FIRST_PURCHASE_MADE


class TestMarkFirstPurchase:
    """registered -> first_purchase_made."""

    async def test_transition(self, referrals: ReferralService) -> None:
        referrer_id = uuid4()
        referred_id = uuid4()
        referrals.session.execute = AsyncMock(return_value=make_result(scalar=referrer_id))

        assert await referrals.mark_first_purchase(referred_id) is True
        referrals.achievements.check_referral_achievements.assert_any_await(referrer_id)
        referrals.session.commit.assert_not_awaited()

    async def test_already_transitioned(self, referrals: ReferralService) -> None:
        assert await referrals.mark_first_purchase(uuid4()) is False
        referrals.achievements.check_referral_achievements.assert_not_awaited()


class TestAchievements:
    """Unlocking and referral achievement checks."""

    async def test_unlock_credits_reward(self, achievements: AchievementService) -> None:
        user_id = uuid4()
        achievements.session.execute = AsyncMock(return_value=make_result(scalar=uuid4()))

        with patch.object(achievements.bonuses, "credit", new_callable=AsyncMock) as mock_credit:
            unlocked = await achievements.unlock(
                user_id, REFERRAL_JOINED, 250, BonusTransactionType.REFERRAL_BONUS, "Welcome"
            )

        assert unlocked is True
        intent = mock_credit.await_args.args[0]
        assert intent.amount == 250
        assert intent.idempotency_key == f"achievement:{REFERRAL_JOINED}"

    async def test_second_unlock_pays_nothing(self, achievements: AchievementService) -> None:
        with patch.object(achievements.bonuses, "credit", new_callable=AsyncMock) as mock_credit:
            unlocked = await achievements.unlock(
                uuid4(), REFERRAL_JOINED, 250, BonusTransactionType.REFERRAL_BONUS, "Welcome"
            )

        assert unlocked is False
        mock_credit.assert_not_awaited()

    async def test_zero_reward_unlocks_without_credit(
        self, achievements: AchievementService
    ) -> None:
        achievements.session.execute = AsyncMock(return_value=make_result(scalar=uuid4()))

        with patch.object(achievements.bonuses, "credit", new_callable=AsyncMock) as mock_credit:
            assert await achievements.unlock(
                uuid4(), "streak", 0, BonusTransactionType.WELCOME, "Streak"
            )

        mock_credit.assert_not_awaited()

    async def test_referral_checks_both_sides(self, achievements: AchievementService) -> None:
        user_id = uuid4()
        own = create_mock_referral(referred_id=user_id)
        invited = create_mock_referral(
            referrer_id=user_id, status=ReferralStatus.FIRST_PURCHASE_MADE
        )
        achievements.session.execute = AsyncMock(
            side_effect=[make_result(scalar=own), make_result(scalars=[invited])]
        )

        with patch.object(achievements, "unlock", new_callable=AsyncMock) as mock_unlock:
            mock_unlock.return_value = True
            unlocked = await achievements.check_referral_achievements(user_id)

        assert unlocked == [
            REFERRAL_JOINED,
            f"{REFERRAL_FIRST_PURCHASE_PREFIX}{invited.referred_id}",
        ]
        first_call, second_call = mock_unlock.await_args_list
        assert first_call.args[2] == 250
        assert second_call.args[2] == 500
        assert second_call.kwargs["related_user_id"] == invited.referred_id

    async def test_nothing_to_unlock(self, achievements: AchievementService) -> None:
        assert await achievements.check_referral_achievements(uuid4()) == []
