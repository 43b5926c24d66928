"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    pass


class AuthorizationError(LedgerError):
    """Raised when the caller may not perform an operation."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Unauthorized: {message}")


class NotFoundError(LedgerError):
    """Base for missing entities."""

    pass


class ProductNotFoundError(NotFoundError):
    """Raised when a product doesn't exist."""

    def __init__(self, product_id: UUID) -> None:
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class ProfileNotFoundError(NotFoundError):
    """Raised when a profile doesn't exist."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__(f"Profile not found: {user_id}")


class TransactionNotFoundError(NotFoundError):
    """Raised when no local transaction matches a gateway payment."""

    def __init__(self, external_payment_id: str) -> None:
        self.external_payment_id = external_payment_id
        super().__init__(f"Transaction not found for payment {external_payment_id}")


class InvalidStateError(LedgerError):
    """Raised when an operation is not allowed in the current subscription state."""

    def __init__(self, message: str, suggest_upgrade: bool = False) -> None:
        self.message = message
        self.suggest_upgrade = suggest_upgrade
        super().__init__(f"Invalid state: {message}")


class NoActiveSubscriptionError(InvalidStateError):
    """Raised when an upgrade needs an active subscription with time left."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__(f"No active subscription with remaining days for {user_id}")


class BelowMinimumPayableError(LedgerError):
    """Raised when a quote's final price falls below the payable minimum."""

    def __init__(self, final_price: int, minimum: int) -> None:
        self.final_price = final_price
        self.minimum = minimum
        super().__init__(f"Final price {final_price} is below minimum payable {minimum}")


class InsufficientBalanceError(LedgerError):
    """Raised when a bonus debit would make the balance negative."""

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient bonus balance. Balance: {balance}, Required: {required}")


class SignatureInvalidError(LedgerError):
    """Raised when a webhook signature is missing or wrong."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook signature invalid: {message}")


class MalformedPayloadError(LedgerError):
    """Raised when a webhook body cannot be parsed."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Malformed payload: {message}")


class InvalidPromoCodeError(LedgerError):
    """Raised when a promo code is syntactically invalid."""

    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(f"Invalid promo code format: {code!r}")


class PaymentProviderError(LedgerError):
    """Raised when the payment gateway call fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WriteVerificationError(LedgerError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(LedgerError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class ReferralCodeNotFoundError(NotFoundError):
    """Raised when a referral code doesn't resolve to a referrer."""

    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(f"Referral code not found: {code}")
