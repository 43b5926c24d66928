"""
Webhook Processor - Verifies gateway notifications and dispatches them.

Verification happens before anything touches the database. Unknown events
are acknowledged so the gateway stops redelivering them.
"""

import time
from dataclasses import dataclass

from structlog import get_logger

from fitledger.exceptions import MalformedPayloadError, SignatureInvalidError
from fitledger.observability import log_context, metrics, trace_operation
from fitledger.services.payment_gateway import (
    EVENT_PAYMENT_CANCELED,
    EVENT_PAYMENT_SUCCEEDED,
    PaymentGateway,
)
from fitledger.services.settlement import PaymentSettlement

logger = get_logger(__name__)


@dataclass(frozen=True)
class WebhookResult:
    """What the processor did with a notification."""

    event: str
    payment_id: str | None
    outcome: str  # processed | duplicate | ignored


class WebhookProcessor:
    """Payment webhook processor."""

    def __init__(self, gateway: PaymentGateway, settlement: PaymentSettlement) -> None:
        self.gateway = gateway
        self.settlement = settlement

    async def process(self, payload: bytes, signature: str | None) -> WebhookResult:
        """
        Handle one webhook delivery.

        Raises:
            SignatureInvalidError: signature missing or wrong (nothing written)
            MalformedPayloadError: body is not a notification (nothing written)
            TransactionNotFoundError: no local transaction for the payment
        """
        started = time.perf_counter()
        try:
            event = self.gateway.verify_webhook(payload, signature)
        except SignatureInvalidError:
            metrics.record_webhook("unknown", "signature_invalid", time.perf_counter() - started)
            logger.warning("webhook_signature_invalid", body_size=len(payload))
            raise
        except MalformedPayloadError as exc:
            metrics.record_webhook("unknown", "malformed", time.perf_counter() - started)
            logger.warning("webhook_malformed", error=exc.message)
            raise

        with (
            log_context(external_payment_id=event.payment.id, webhook_event=event.event),
            trace_operation("webhook_process", webhook_event=event.event) as span,
        ):
            logger.info("webhook_received")

            if event.event == EVENT_PAYMENT_SUCCEEDED:
                settled = await self.settlement.settle_succeeded(event.payment)
            elif event.event == EVENT_PAYMENT_CANCELED:
                settled = await self.settlement.settle_canceled(event.payment)
            else:
                metrics.record_webhook(event.event, "ignored", time.perf_counter() - started)
                logger.info("webhook_event_ignored")
                return WebhookResult(
                    event=event.event, payment_id=event.payment.id, outcome="ignored"
                )

            outcome = "processed" if settled.applied else "duplicate"
            span.set_attribute("outcome", outcome)
            metrics.record_webhook(event.event, outcome, time.perf_counter() - started)
            logger.info("webhook_processed", outcome=outcome)
            return WebhookResult(event=event.event, payment_id=event.payment.id, outcome=outcome)
