"""
Payment Gateway Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from typing import Protocol

from fitledger.models.api import PaymentKind, ProductType

EVENT_PAYMENT_SUCCEEDED = "payment.succeeded"
EVENT_PAYMENT_CANCELED = "payment.canceled"


@dataclass(frozen=True)
class GatewayMetadata:
    """Metadata attached to a gateway payment so webhooks can be correlated."""

    user_id: str
    product_id: str
    product_type: ProductType
    payment_kind: PaymentKind


@dataclass(frozen=True)
class PaymentRequest:
    """A one-off payment the user confirms in the gateway widget."""

    amount: int
    currency: str
    description: str
    idempotency_key: str
    metadata: GatewayMetadata
    save_payment_method: bool = False
    confirmation_type: str = "embedded"
    return_url: str | None = None

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError(f"Payment amount must be positive: {self.amount}")
        if self.confirmation_type not in ("embedded", "redirect"):
            raise ValueError(f"Invalid confirmation type: {self.confirmation_type}")
        if self.confirmation_type == "redirect" and not self.return_url:
            raise ValueError("Redirect confirmation requires return_url")


@dataclass(frozen=True)
class RecurrentPaymentRequest:
    """A merchant-initiated charge against a saved payment method."""

    amount: int
    currency: str
    description: str
    idempotency_key: str
    payment_method_id: str
    metadata: GatewayMetadata

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError(f"Payment amount must be positive: {self.amount}")
        if not self.payment_method_id:
            raise ValueError("payment_method_id is required")


@dataclass(frozen=True)
class GatewayPayment:
    """Gateway-side view of a payment."""

    id: str
    status: str
    amount: int | None
    currency: str | None
    paid: bool = False
    confirmation_token: str | None = None
    confirmation_url: str | None = None
    payment_method_id: str | None = None
    payment_method_saved: bool = False
    cancellation_reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass(frozen=True)
class WebhookEvent:
    """A verified and parsed webhook notification."""

    event: str
    payment: GatewayPayment


class PaymentGateway(Protocol):
    """Operations the ledger needs from a payment gateway."""

    async def create_payment(self, request: PaymentRequest) -> GatewayPayment:
        """Create a payment. Raises PaymentProviderError."""
        ...

    async def create_recurrent_payment(self, request: RecurrentPaymentRequest) -> GatewayPayment:
        """Charge a saved payment method. Raises PaymentProviderError."""
        ...

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        """Fetch a payment. Raises PaymentProviderError."""
        ...

    def verify_webhook(self, payload: bytes, signature: str | None) -> WebhookEvent:
        """
        Verify the signature over the raw body, then parse it.

        Raises:
            SignatureInvalidError: missing or wrong signature
            MalformedPayloadError: body is not a valid notification
        """
        ...
