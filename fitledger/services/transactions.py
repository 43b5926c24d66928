"""
Transaction Store - Payment transaction records and their typed metadata.

NO DICTIONARIES - Metadata is flattened into explicit columns and always
read back through TransactionMetadata.
"""

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from fitledger.db.models import PaymentTransaction
from fitledger.models.api import PaymentKind, ProductType, TransactionStatus
from fitledger.models.domain import TransactionData, TransactionMetadata

logger = get_logger(__name__)


def metadata_to_domain(transaction: PaymentTransaction) -> TransactionMetadata:
    return TransactionMetadata(
        product_type=ProductType(transaction.metadata_product_type),
        payment_kind=PaymentKind(transaction.metadata_payment_kind),
        original_price=transaction.metadata_original_price,
        promo_code=transaction.metadata_promo_code,
        promo_discount=transaction.metadata_promo_discount,
        bonus_used=transaction.metadata_bonus_used,
        save_payment_method=transaction.metadata_save_payment_method,
        conversion_bonus_days=transaction.metadata_conversion_bonus_days,
        conversion_total_days=transaction.metadata_conversion_total_days,
    )


def transaction_to_domain(transaction: PaymentTransaction) -> TransactionData:
    return TransactionData(
        id=transaction.id,
        user_id=transaction.user_id,
        product_id=transaction.product_id,
        external_payment_id=transaction.external_payment_id,
        amount=transaction.amount,
        currency=transaction.currency,
        status=TransactionStatus(transaction.status),
        metadata=metadata_to_domain(transaction),
        payment_method_id=transaction.payment_method_id,
        error_message=transaction.error_message,
        created_at=transaction.created_at,
    )


class TransactionStore:
    """Creates pending transactions and performs their one-time status transition."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record_pending(
        self,
        user_id: UUID,
        product_id: UUID,
        external_payment_id: str,
        amount: int,
        currency: str,
        metadata: TransactionMetadata,
        payment_method_id: str | None = None,
    ) -> UUID | None:
        """
        Insert a pending transaction for a gateway payment.

        Returns None when a row for this gateway payment already exists.
        Does not commit.
        """
        stmt = (
            insert(PaymentTransaction)
            .values(
                user_id=user_id,
                product_id=product_id,
                external_payment_id=external_payment_id,
                amount=amount,
                currency=currency,
                status=TransactionStatus.PENDING,
                payment_method_id=payment_method_id,
                metadata_product_type=metadata.product_type,
                metadata_payment_kind=metadata.payment_kind,
                metadata_original_price=metadata.original_price,
                metadata_promo_code=metadata.promo_code,
                metadata_promo_discount=metadata.promo_discount,
                metadata_bonus_used=metadata.bonus_used,
                metadata_save_payment_method=metadata.save_payment_method,
                metadata_conversion_bonus_days=metadata.conversion_bonus_days,
                metadata_conversion_total_days=metadata.conversion_total_days,
            )
            .on_conflict_do_nothing(constraint="uq_transaction_external_payment")
            .returning(PaymentTransaction.id)
        )
        result = await self.session.execute(stmt)
        transaction_id = result.scalar_one_or_none()
        if transaction_id is None:
            logger.info("transaction_already_recorded", external_payment_id=external_payment_id)
        else:
            logger.info(
                "transaction_recorded",
                transaction_id=str(transaction_id),
                external_payment_id=external_payment_id,
                user_id=str(user_id),
                amount=amount,
                payment_kind=metadata.payment_kind.value,
            )
        return transaction_id

    async def find_by_external_id(self, external_payment_id: str) -> PaymentTransaction | None:
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.external_payment_id == external_payment_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def claim(
        self,
        external_payment_id: str,
        new_status: TransactionStatus,
        payment_method_id: str | None = None,
        error_message: str | None = None,
    ) -> UUID | None:
        """
        Compare-and-swap pending -> new_status.

        Returns the transaction id only for the caller whose UPDATE matched;
        every concurrent or repeated caller gets None.
        """
        stmt = (
            update(PaymentTransaction)
            .where(PaymentTransaction.external_payment_id == external_payment_id)
            .where(PaymentTransaction.status == TransactionStatus.PENDING)
            .values(status=new_status, error_message=error_message)
        )
        if payment_method_id:
            stmt = stmt.values(payment_method_id=payment_method_id)
        result = await self.session.execute(stmt.returning(PaymentTransaction.id))
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: UUID, limit: int = 50) -> list[TransactionData]:
        """Newest first."""
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.user_id == user_id)
            .order_by(PaymentTransaction.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [transaction_to_domain(row) for row in result.scalars().all()]
