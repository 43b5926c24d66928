"""
Email Notifications - Transactional email over a Resend-compatible API.

Fire-and-forget: delivery failures are logged and never raised to the caller.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import httpx
from structlog import get_logger

from fitledger.models.api import SubscriptionTier

logger = get_logger(__name__)


@dataclass(frozen=True)
class EmailMessage:
    """A rendered email."""

    to: str
    subject: str
    html: str


class Notifier(Protocol):
    """Notification sink used by the payment flows."""

    async def payment_succeeded(
        self,
        email: str,
        name: str | None,
        product_name: str,
        amount: int,
        currency: str,
        expires_at: datetime | None,
    ) -> None: ...

    async def subscription_upgraded(
        self,
        email: str,
        name: str | None,
        old_tier: SubscriptionTier,
        new_tier: SubscriptionTier,
        bonus_days: int,
        total_days: int,
    ) -> None: ...

    async def renewal_failed(
        self,
        email: str,
        name: str | None,
        attempts: int,
        auto_renew_disabled: bool,
        expires_at: datetime | None,
    ) -> None: ...


class EmailNotifier:
    """Sends notification emails through the configured email API."""

    def __init__(
        self,
        api_key: str,
        sender: str,
        api_url: str = "https://api.resend.com/emails",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.sender = sender
        self.api_url = api_url
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=10.0)
        return self._http_client

    async def payment_succeeded(
        self,
        email: str,
        name: str | None,
        product_name: str,
        amount: int,
        currency: str,
        expires_at: datetime | None,
    ) -> None:
        until = f"<p>Active until {expires_at:%d.%m.%Y}.</p>" if expires_at else ""
        await self.send(
            EmailMessage(
                to=email,
                subject="Payment received",
                html=(
                    f"<p>Hi {name or 'there'},</p>"
                    f"<p>We received {amount} {currency} for <b>{product_name}</b>.</p>{until}"
                ),
            )
        )

    async def subscription_upgraded(
        self,
        email: str,
        name: str | None,
        old_tier: SubscriptionTier,
        new_tier: SubscriptionTier,
        bonus_days: int,
        total_days: int,
    ) -> None:
        await self.send(
            EmailMessage(
                to=email,
                subject=f"Your plan is now {new_tier.value.title()}",
                html=(
                    f"<p>Hi {name or 'there'},</p>"
                    f"<p>You moved from {old_tier.value.title()} to {new_tier.value.title()}. "
                    f"Unused time became {bonus_days} bonus days; "
                    f"your new plan runs for {total_days} days.</p>"
                ),
            )
        )

    async def renewal_failed(
        self,
        email: str,
        name: str | None,
        attempts: int,
        auto_renew_disabled: bool,
        expires_at: datetime | None,
    ) -> None:
        tail = (
            "<p>Auto-renewal is now off. Renew manually to keep access.</p>"
            if auto_renew_disabled
            else "<p>We will try again on the next billing day.</p>"
        )
        until = f" Your access continues until {expires_at:%d.%m.%Y}." if expires_at else ""
        await self.send(
            EmailMessage(
                to=email,
                subject="We couldn't renew your subscription",
                html=(
                    f"<p>Hi {name or 'there'},</p>"
                    f"<p>Renewal attempt {attempts} failed.{until}</p>{tail}"
                ),
            )
        )

    async def send(self, message: EmailMessage) -> bool:
        """Send one email. Returns False (after logging) if delivery failed."""
        if not self.api_key:
            logger.info("email_skipped_not_configured", subject=message.subject)
            return False

        try:
            response = await self.http_client.post(
                self.api_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "from": self.sender,
                    "to": [message.to],
                    "subject": message.subject,
                    "html": message.html,
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "email_send_failed", subject=message.subject, recipient=message.to, error=str(exc)
            )
            return False

        logger.info("email_sent", subject=message.subject, recipient=message.to)
        return True
