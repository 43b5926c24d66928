"""
Bonus Account Service - Balance and append-only bonus ledger.

Every balance change is a single atomic UPDATE ... RETURNING paired with a
bonus_transactions row inside one savepoint. Methods flush but never commit:
they take part in the caller's unit of work.
"""

from uuid import UUID

from sqlalchemy import Update, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fitledger.config import PricingConfig
from fitledger.db.models import BonusAccount, BonusTransaction
from fitledger.exceptions import InsufficientBalanceError, WriteVerificationError
from fitledger.models.api import BonusTransactionType, PaymentKind
from fitledger.models.domain import BonusAccountData, BonusEntryData, BonusIntent
from fitledger.observability.metrics import metrics
from fitledger.services.pricing import cashback_amount, max_redeemable

logger = get_logger(__name__)

REFERRAL_TYPES = (BonusTransactionType.REFERRAL_BONUS, BonusTransactionType.REFERRAL_FIRST)

_CASHBACK_ACTIONS = {
    PaymentKind.INITIAL: "purchase",
    PaymentKind.RENEWAL: "renewal",
    PaymentKind.UPGRADE: "upgrade",
}


class BonusAccountService:
    """Bonus account store. One account per user, created lazily."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize bonus service with database session."""
        self.session = session

    async def ensure_account(self, user_id: UUID) -> BonusAccountData:
        """
        Create the account if absent; return the existing one unchanged otherwise.

        INSERT ... ON CONFLICT DO NOTHING followed by a re-read, so concurrent
        callers converge on the same row.
        """
        stmt = (
            insert(BonusAccount)
            .values(user_id=user_id, balance=0, cashback_level=1)
            .on_conflict_do_nothing(constraint="uq_bonus_account_user")
            .returning(BonusAccount.id)
        )
        result = await self.session.execute(stmt)
        if result.scalar_one_or_none() is not None:
            logger.info("bonus_account_created", user_id=str(user_id))

        account = await self._find_account(user_id)
        if account is None:
            raise WriteVerificationError(f"Bonus account for {user_id} not found after upsert")
        return self._account_to_domain(account)

    async def get_account(self, user_id: UUID) -> BonusAccountData | None:
        """Current account state, or None if the user never had one."""
        account = await self._find_account(user_id)
        return self._account_to_domain(account) if account is not None else None

    async def credit(self, intent: BonusIntent) -> BonusEntryData | None:
        """
        Append a positive ledger row and raise the balance by the same amount.

        Returns None when the idempotency key was already used (no-op).
        """
        await self.ensure_account(intent.user_id)

        async with self.session.begin_nested():
            entry_id = await self._insert_entry(intent, intent.amount)
            if entry_id is None:
                logger.info(
                    "bonus_credit_duplicate",
                    user_id=str(intent.user_id),
                    idempotency_key=intent.idempotency_key,
                )
                return None

            stmt = (
                update(BonusAccount)
                .where(BonusAccount.user_id == intent.user_id)
                .values(balance=BonusAccount.balance + intent.amount)
            )
            if intent.type in REFERRAL_TYPES:
                stmt = stmt.values(
                    total_referral_earnings=BonusAccount.total_referral_earnings + intent.amount
                )
            new_balance = await self._apply_balance_change(stmt)
            if new_balance is None:
                raise WriteVerificationError(f"Bonus account for {intent.user_id} vanished")

        entry = await self._verify_entry(entry_id, intent.amount)
        metrics.record_bonus_movement(intent.type.value, intent.amount)
        logger.info(
            "bonus_credited",
            user_id=str(intent.user_id),
            amount=intent.amount,
            type=intent.type.value,
            balance_after=new_balance,
        )
        return entry

    async def debit(self, intent: BonusIntent) -> BonusEntryData | None:
        """
        Append a negative ledger row and lower the balance.

        Raises InsufficientBalanceError (leaving nothing written) if the balance
        would go negative. Returns None for a reused idempotency key.
        """
        await self.ensure_account(intent.user_id)

        async with self.session.begin_nested():
            entry_id = await self._insert_entry(intent, -intent.amount)
            if entry_id is None:
                logger.info(
                    "bonus_debit_duplicate",
                    user_id=str(intent.user_id),
                    idempotency_key=intent.idempotency_key,
                )
                return None

            new_balance = await self._apply_balance_change(
                update(BonusAccount)
                .where(BonusAccount.user_id == intent.user_id)
                .where(BonusAccount.balance >= intent.amount)
                .values(balance=BonusAccount.balance - intent.amount)
            )
            if new_balance is None:
                account = await self._find_account(intent.user_id)
                balance = account.balance if account is not None else 0
                # Raising inside the savepoint discards the ledger row too
                raise InsufficientBalanceError(balance=balance, required=intent.amount)

        entry = await self._verify_entry(entry_id, -intent.amount)
        metrics.record_bonus_movement(intent.type.value, -intent.amount)
        logger.info(
            "bonus_debited",
            user_id=str(intent.user_id),
            amount=intent.amount,
            type=intent.type.value,
            balance_after=new_balance,
        )
        return entry

    async def max_redeemable(
        self, user_id: UUID, price_after_discounts: int, pricing: PricingConfig
    ) -> int:
        """Policy cap on bonus usage for this user and price."""
        account = await self.get_account(user_id)
        balance = account.balance if account is not None else 0
        return max_redeemable(price_after_discounts, balance, pricing)

    async def spend_on_payment(
        self, user_id: UUID, amount: int, transaction_id: UUID, product_name: str
    ) -> BonusEntryData | None:
        """Debit bonus points redeemed on a paid transaction, once per transaction."""
        return await self.debit(
            BonusIntent(
                user_id=user_id,
                amount=amount,
                type=BonusTransactionType.SPENT,
                description=f"Paid with bonuses: {product_name}",
                idempotency_key=f"spent:{transaction_id}",
                related_payment_id=transaction_id,
            )
        )

    async def award_cashback(
        self,
        user_id: UUID,
        paid_amount: int,
        transaction_id: UUID,
        payment_kind: PaymentKind,
        pricing: PricingConfig,
    ) -> int:
        """
        Credit cashback at the user's level on the cash part of a purchase.

        Returns the credited amount (0 if nothing was credited).
        """
        account = await self.ensure_account(user_id)
        amount = cashback_amount(paid_amount, account.cashback_level, pricing)
        if amount <= 0:
            return 0

        percent = pricing.cashback_percent(account.cashback_level)
        entry = await self.credit(
            BonusIntent(
                user_id=user_id,
                amount=amount,
                type=BonusTransactionType.CASHBACK,
                description=f"Cashback {percent}% on {_CASHBACK_ACTIONS[payment_kind]}",
                idempotency_key=f"cashback:{transaction_id}",
                related_payment_id=transaction_id,
            )
        )
        if entry is None:
            return 0

        await self.session.execute(
            update(BonusAccount)
            .where(BonusAccount.user_id == user_id)
            .values(total_spent_for_cashback=BonusAccount.total_spent_for_cashback + paid_amount)
        )
        return amount

    async def list_entries(self, user_id: UUID, limit: int = 50) -> list[BonusEntryData]:
        """Most recent ledger rows first."""
        stmt = (
            select(BonusTransaction)
            .where(BonusTransaction.user_id == user_id)
            .order_by(BonusTransaction.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [self._entry_to_domain(row) for row in result.scalars().all()]

    async def ledger_sum(self, user_id: UUID) -> int:
        """Sum of every ledger row for a user."""
        stmt = select(func.coalesce(func.sum(BonusTransaction.amount), 0)).where(
            BonusTransaction.user_id == user_id
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def verify_ledger(self, user_id: UUID) -> bool:
        """True iff the ledger sum equals the stored balance."""
        account = await self._find_account(user_id)
        balance = account.balance if account is not None else 0
        return await self.ledger_sum(user_id) == balance

    async def find_ledger_mismatches(self) -> list[tuple[UUID, int, int]]:
        """Every (user_id, balance, ledger_sum) whose balance disagrees with its ledger."""
        ledger = (
            select(
                BonusTransaction.user_id.label("user_id"),
                func.sum(BonusTransaction.amount).label("total"),
            )
            .group_by(BonusTransaction.user_id)
            .subquery()
        )
        ledger_total = func.coalesce(ledger.c.total, 0)
        stmt = (
            select(BonusAccount.user_id, BonusAccount.balance, ledger_total)
            .outerjoin(ledger, ledger.c.user_id == BonusAccount.user_id)
            .where(BonusAccount.balance != ledger_total)
        )
        result = await self.session.execute(stmt)
        return [(row[0], int(row[1]), int(row[2])) for row in result.all()]

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_account(self, user_id: UUID) -> BonusAccount | None:
        # Balance is changed with Core UPDATEs, so refresh any cached instance
        stmt = (
            select(BonusAccount)
            .where(BonusAccount.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _insert_entry(self, intent: BonusIntent, signed_amount: int) -> UUID | None:
        """Insert a ledger row; None if the idempotency key already exists."""
        stmt = (
            insert(BonusTransaction)
            .values(
                user_id=intent.user_id,
                amount=signed_amount,
                type=intent.type,
                description=intent.description,
                idempotency_key=intent.idempotency_key,
                related_payment_id=intent.related_payment_id,
                related_user_id=intent.related_user_id,
            )
            .on_conflict_do_nothing(constraint="uq_bonus_idempotency")
            .returning(BonusTransaction.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _apply_balance_change(self, stmt: Update) -> int | None:
        result = await self.session.execute(stmt.returning(BonusAccount.balance))
        return result.scalar_one_or_none()

    async def _verify_entry(self, entry_id: UUID, expected_amount: int) -> BonusEntryData:
        """Read the ledger row back and check the stored amount."""
        await self.session.flush()
        entry = await self.session.get(BonusTransaction, entry_id)
        if entry is None:
            raise WriteVerificationError(f"Bonus transaction {entry_id} not found after write")
        if entry.amount != expected_amount:
            raise WriteVerificationError(
                f"Bonus amount mismatch: expected {expected_amount}, got {entry.amount}"
            )
        return self._entry_to_domain(entry)

    @staticmethod
    def _account_to_domain(account: BonusAccount) -> BonusAccountData:
        return BonusAccountData(
            user_id=account.user_id,
            balance=account.balance,
            cashback_level=account.cashback_level,
            total_spent_for_cashback=account.total_spent_for_cashback,
        )

    @staticmethod
    def _entry_to_domain(entry: BonusTransaction) -> BonusEntryData:
        return BonusEntryData(
            id=entry.id,
            user_id=entry.user_id,
            amount=entry.amount,
            type=BonusTransactionType(entry.type),
            description=entry.description,
            created_at=entry.created_at,
            related_payment_id=entry.related_payment_id,
            related_user_id=entry.related_user_id,
        )
