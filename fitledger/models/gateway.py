"""
Gateway payload models - Pydantic models for the payment gateway's JSON.

Only fields the ledger reads are declared; everything else is ignored.
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class GatewayModel(BaseModel):
    """Base for gateway payloads - tolerant of extra fields."""

    model_config = ConfigDict(extra="ignore")


class GatewayAmount(GatewayModel):
    value: Decimal
    currency: str = Field(..., min_length=3, max_length=3)


class GatewayPaymentMethod(GatewayModel):
    id: str
    type: str | None = None
    saved: bool = False


class GatewayCancellationDetails(GatewayModel):
    party: str | None = None
    reason: str | None = None


class GatewayConfirmation(GatewayModel):
    type: str
    confirmation_token: str | None = None
    confirmation_url: str | None = None


class GatewayPaymentObject(GatewayModel):
    """A payment as returned by the gateway API or embedded in a webhook."""

    id: str = Field(..., min_length=1)
    status: str
    paid: bool = False
    amount: GatewayAmount | None = None
    payment_method: GatewayPaymentMethod | None = None
    cancellation_details: GatewayCancellationDetails | None = None
    confirmation: GatewayConfirmation | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class GatewayNotification(GatewayModel):
    """Webhook body: {"type": "notification", "event": ..., "object": {...}}."""

    type: str | None = None
    event: str = Field(..., min_length=1)
    object: GatewayPaymentObject
