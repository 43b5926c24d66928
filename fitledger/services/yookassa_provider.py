"""
YooKassa Payment Gateway Implementation.

NO DICTIONARIES - Responses are parsed into typed models before use.
"""

import hashlib
import hmac
from decimal import ROUND_HALF_UP, Decimal

import httpx
from pydantic import ValidationError
from structlog import get_logger

from fitledger.exceptions import (
    MalformedPayloadError,
    PaymentProviderError,
    SignatureInvalidError,
)
from fitledger.models.gateway import GatewayNotification, GatewayPaymentObject
from fitledger.services.payment_gateway import (
    GatewayMetadata,
    GatewayPayment,
    PaymentRequest,
    RecurrentPaymentRequest,
    WebhookEvent,
)

logger = get_logger(__name__)


def _format_amount(amount: int) -> str:
    return f"{amount}.00"


def _metadata_payload(metadata: GatewayMetadata) -> dict[str, str]:
    return {
        "userId": metadata.user_id,
        "productId": metadata.product_id,
        "productType": metadata.product_type.value,
        "paymentKind": metadata.payment_kind.value,
    }


def _to_gateway_payment(obj: GatewayPaymentObject) -> GatewayPayment:
    amount: int | None = None
    currency: str | None = None
    if obj.amount is not None:
        amount = int(obj.amount.value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        currency = obj.amount.currency

    confirmation = obj.confirmation
    method = obj.payment_method
    return GatewayPayment(
        id=obj.id,
        status=obj.status,
        amount=amount,
        currency=currency,
        paid=obj.paid,
        confirmation_token=confirmation.confirmation_token if confirmation else None,
        confirmation_url=confirmation.confirmation_url if confirmation else None,
        payment_method_id=method.id if method else None,
        payment_method_saved=method.saved if method else False,
        cancellation_reason=(
            obj.cancellation_details.reason if obj.cancellation_details else None
        ),
    )


class YooKassaProvider:
    """
    YooKassa REST API client.

    Implements the PaymentGateway protocol.
    """

    def __init__(
        self,
        shop_id: str,
        secret_key: str,
        webhook_secret: str,
        api_url: str = "https://api.yookassa.ru/v3",
        timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the gateway client.

        Args:
            shop_id: Shop identifier (basic-auth user)
            secret_key: API secret key (basic-auth password)
            webhook_secret: Shared secret for webhook HMAC signatures
            api_url: API base URL
            timeout_seconds: Per-request timeout
            http_client: Preconfigured client (tests inject one with a mock transport)
        """
        self.shop_id = shop_id
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                auth=(self.shop_id, self.secret_key),
                timeout=self.timeout_seconds,
            )
        return self._http_client

    async def create_payment(self, request: PaymentRequest) -> GatewayPayment:
        """Create a captured payment awaiting user confirmation."""
        confirmation: dict[str, str] = {"type": request.confirmation_type}
        if request.confirmation_type == "redirect" and request.return_url:
            confirmation["return_url"] = request.return_url

        body = {
            "amount": {"value": _format_amount(request.amount), "currency": request.currency},
            "capture": True,
            "confirmation": confirmation,
            "description": request.description,
            "metadata": _metadata_payload(request.metadata),
            "save_payment_method": request.save_payment_method,
        }
        logger.info(
            "creating_gateway_payment",
            amount=request.amount,
            currency=request.currency,
            payment_kind=request.metadata.payment_kind.value,
            save_payment_method=request.save_payment_method,
        )
        payment = await self._request("POST", "/payments", request.idempotency_key, body)
        logger.info("gateway_payment_created", payment_id=payment.id, status=payment.status)
        return payment

    async def create_recurrent_payment(self, request: RecurrentPaymentRequest) -> GatewayPayment:
        """Charge a saved payment method without user interaction."""
        body = {
            "amount": {"value": _format_amount(request.amount), "currency": request.currency},
            "capture": True,
            "payment_method_id": request.payment_method_id,
            "description": request.description,
            "metadata": _metadata_payload(request.metadata),
        }
        logger.info(
            "creating_recurrent_payment",
            amount=request.amount,
            payment_kind=request.metadata.payment_kind.value,
        )
        payment = await self._request("POST", "/payments", request.idempotency_key, body)
        logger.info("recurrent_payment_created", payment_id=payment.id, status=payment.status)
        return payment

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        """Fetch a payment by gateway id."""
        return await self._request("GET", f"/payments/{payment_id}")

    def verify_webhook(self, payload: bytes, signature: str | None) -> WebhookEvent:
        """Check the HMAC-SHA256 signature over the raw body, then parse it."""
        if not self.webhook_secret:
            raise SignatureInvalidError("webhook secret is not configured")
        if not signature:
            raise SignatureInvalidError("missing signature header")

        provided = signature.strip()
        if provided.startswith("sha256="):
            provided = provided[len("sha256=") :]
        expected = hmac.new(self.webhook_secret.encode(), payload, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, provided.lower()):
            raise SignatureInvalidError("signature mismatch")

        try:
            notification = GatewayNotification.model_validate_json(payload)
        except ValidationError as exc:
            raise MalformedPayloadError(str(exc)) from exc

        return WebhookEvent(
            event=notification.event,
            payment=_to_gateway_payment(notification.object),
        )

    async def _request(
        self,
        method: str,
        path: str,
        idempotency_key: str | None = None,
        body: dict | None = None,
    ) -> GatewayPayment:
        headers = {"Idempotence-Key": idempotency_key} if idempotency_key else {}
        try:
            response = await self.http_client.request(
                method, f"{self.api_url}{path}", json=body, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "gateway_request_rejected",
                path=path,
                status_code=exc.response.status_code,
                body=exc.response.text[:500],
            )
            raise PaymentProviderError(
                f"gateway returned {exc.response.status_code} for {method} {path}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("gateway_request_failed", path=path, error=str(exc))
            raise PaymentProviderError(f"gateway request failed: {exc}") from exc

        try:
            return _to_gateway_payment(GatewayPaymentObject.model_validate_json(response.content))
        except ValidationError as exc:
            raise PaymentProviderError(f"unexpected gateway response: {exc}") from exc
