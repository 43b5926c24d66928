"""
Tests for the HTTP API.

Services are replaced through dependency overrides or patched methods; the
database session is the shared AsyncMock from conftest.
"""

from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from factories import make_gateway_payment, make_profile_data
from fastapi import FastAPI
from fastapi.testclient import TestClient
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError

from fitledger.api.dependencies import (
    UserIdentity,
    get_payment_service,
    get_renewal_service,
    get_webhook_processor,
)
from fitledger.exceptions import (
    AuthorizationError,
    BelowMinimumPayableError,
    InsufficientBalanceError,
    InvalidPromoCodeError,
    InvalidStateError,
    MalformedPayloadError,
    PaymentProviderError,
    ProductNotFoundError,
    SignatureInvalidError,
    TransactionNotFoundError,
)
from fitledger.models.api import SubscriptionStatus
from fitledger.models.domain import (
    CreatedPayment,
    RenewalFailure,
    RenewalReport,
    UpgradeConversion,
    UpgradeOutcome,
)
from fitledger.services.bonus import BonusAccountService
from fitledger.services.subscriptions import SubscriptionService
from fitledger.services.payment_gateway import WebhookEvent
from fitledger.services.webhook import WebhookProcessor, WebhookResult


@pytest.fixture
def processor(app: FastAPI) -> Iterator[MagicMock]:
    mock = MagicMock()
    mock.process = AsyncMock()
    app.dependency_overrides[get_webhook_processor] = lambda: mock
    yield mock


@pytest.fixture
def payment_service(app: FastAPI) -> Iterator[MagicMock]:
    mock = MagicMock()
    mock.create_payment = AsyncMock()
    mock.create_upgrade = AsyncMock()
    app.dependency_overrides[get_payment_service] = lambda: mock
    yield mock


@pytest.fixture
def renewal_service(app: FastAPI) -> Iterator[MagicMock]:
    mock = MagicMock()
    mock.run = AsyncMock()
    app.dependency_overrides[get_renewal_service] = lambda: mock
    yield mock


class TestHealth:
    """Health and service info."""

    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_health_database_down(self, client: TestClient, db_session: AsyncMock) -> None:
        db_session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("refused"))

        response = client.get("/health")

        assert response.status_code == 503

    def test_root(self, client: TestClient) -> None:
        assert client.get("/").json()["status"] == "running"

    def test_request_id_echoed(self, client: TestClient) -> None:
        response = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    def test_request_id_generated(self, client: TestClient) -> None:
        assert len(client.get("/health").headers["X-Request-ID"]) == 32


class TestWebhook:
    """Gateway notification status codes."""

    def test_processed(self, client: TestClient, processor: MagicMock) -> None:
        processor.process.return_value = WebhookResult(
            event="payment.succeeded", payment_id="pay_1", outcome="processed"
        )

        response = client.post(
            "/payments/webhook", content=b'{"event": "x"}', headers={"X-Signature": "abc"}
        )

        assert response.status_code == 200
        assert response.json() == {
            "status": "processed",
            "event": "payment.succeeded",
            "payment_id": "pay_1",
        }
        processor.process.assert_awaited_once_with(b'{"event": "x"}', "abc")

    def test_bad_signature_is_403(self, client: TestClient, processor: MagicMock) -> None:
        processor.process.side_effect = SignatureInvalidError("signature mismatch")

        response = client.post("/payments/webhook", content=b"{}")

        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "Invalid signature"

    def test_malformed_is_400(self, client: TestClient, processor: MagicMock) -> None:
        processor.process.side_effect = MalformedPayloadError("event: field required")

        response = client.post("/payments/webhook", content=b"{}")

        assert response.status_code == 400

    def test_unknown_payment_is_404(self, client: TestClient, processor: MagicMock) -> None:
        processor.process.side_effect = TransactionNotFoundError("pay_missing")

        response = client.post("/payments/webhook", content=b"{}")

        assert response.status_code == 404

    def test_processing_error_is_500(self, client: TestClient, processor: MagicMock) -> None:
        processor.process.side_effect = PaymentProviderError("gateway down")

        response = client.post("/payments/webhook", content=b"{}")

        assert response.status_code == 500
        assert response.json()["detail"]["error"] == "Processing failed"


class TestCreatePayment:
    """POST /payments/create."""

    def test_created(
        self, client: TestClient, payment_service: MagicMock, user: UserIdentity
    ) -> None:
        product_id = uuid4()
        payment_service.create_payment.return_value = CreatedPayment(
            payment_id="pay_1",
            status="pending",
            amount=4490,
            currency="RUB",
            confirmation_token="ct_1",
        )

        response = client.post(
            "/payments/create",
            json={"productId": str(product_id), "promoCode": "  ", "bonusToUse": 500},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["paymentId"] == "pay_1"
        assert body["confirmationToken"] == "ct_1"
        assert body["amount"] == 4490
        payment_service.create_payment.assert_awaited_once_with(
            user.user_id,
            product_id,
            promo_code=None,
            bonus_to_use=500,
            save_payment_method=None,
            confirmation_type="embedded",
        )

    def test_validation_error_shape(self, client: TestClient, payment_service: MagicMock) -> None:
        response = client.post("/payments/create", json={"bonusToUse": -1})

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "Validation failed"
        payment_service.create_payment.assert_not_awaited()

    @pytest.mark.parametrize(
        ("error", "status_code"),
        [
            (ProductNotFoundError(uuid4()), 404),
            (InvalidPromoCodeError("NOPE"), 400),
            (InsufficientBalanceError(10, 500), 402),
            (BelowMinimumPayableError(0, 1), 422),
            (PaymentProviderError("timeout"), 503),
            (AuthorizationError("nope"), 403),
        ],
    )
    def test_error_mapping(
        self,
        client: TestClient,
        payment_service: MagicMock,
        error: Exception,
        status_code: int,
    ) -> None:
        payment_service.create_payment.side_effect = error

        response = client.post("/payments/create", json={"productId": str(uuid4())})

        assert response.status_code == status_code
        assert "error" in response.json()["detail"]

    def test_active_subscription_suggests_upgrade(
        self, client: TestClient, payment_service: MagicMock
    ) -> None:
        payment_service.create_payment.side_effect = InvalidStateError(
            "you already have an active subscription", suggest_upgrade=True
        )

        response = client.post("/payments/create", json={"productId": str(uuid4())})

        assert response.status_code == 400
        assert response.json()["detail"]["suggest_upgrade"] is True


class TestUpgrade:
    """POST /payments/upgrade."""

    def test_charged_immediately(self, client: TestClient, payment_service: MagicMock) -> None:
        payment_service.create_upgrade.return_value = UpgradeOutcome(
            status="succeeded",
            conversion=UpgradeConversion(bonus_days=27, total_days=57),
            payment=None,
        )

        response = client.post("/payments/upgrade", json={"newProductId": str(uuid4())})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "succeeded"
        assert body["conversion"] == {"bonusDays": 27, "totalDays": 57}
        assert body["payment"] is None


class TestSubscriptionManagement:
    """Cancel, toggle and reset endpoints."""

    def test_cancel_soft(self, client: TestClient, user: UserIdentity) -> None:
        profile = make_profile_data(user_id=user.user_id, status=SubscriptionStatus.CANCELED)

        with patch.object(SubscriptionService, "cancel_soft", new_callable=AsyncMock) as mock:
            mock.return_value = profile
            response = client.post("/payments/cancel-subscription")

        assert response.status_code == 200
        assert response.json()["status"] == "canceled"
        mock.assert_awaited_once_with(user.user_id)

    def test_toggle_requires_boolean(self, client: TestClient) -> None:
        response = client.post("/payments/toggle-auto-renew", json={"enabled": "yes"})

        assert response.status_code == 422

    def test_toggle(self, client: TestClient, user: UserIdentity) -> None:
        profile = make_profile_data(user_id=user.user_id, auto_renew=False)

        with patch.object(
            SubscriptionService, "toggle_auto_renew", new_callable=AsyncMock
        ) as mock:
            mock.return_value = profile
            response = client.post("/payments/toggle-auto-renew", json={"enabled": False})

        assert response.status_code == 200
        assert response.json()["autoRenew"] is False
        mock.assert_awaited_once_with(user.user_id, False)

    def test_cancel_full_forbidden(self, client: TestClient) -> None:
        with patch.object(SubscriptionService, "cancel_hard", new_callable=AsyncMock) as mock:
            mock.side_effect = AuthorizationError("only admins can reset")
            response = client.post("/payments/cancel-full", json={"userId": str(uuid4())})

        assert response.status_code == 403

    def test_cancel_full_self(self, client: TestClient, user: UserIdentity) -> None:
        with patch.object(SubscriptionService, "cancel_hard", new_callable=AsyncMock) as mock:
            mock.return_value = make_profile_data(
                user_id=user.user_id, status=SubscriptionStatus.INACTIVE
            )
            response = client.post("/payments/cancel-full", json={})

        assert response.status_code == 200
        actor, target = mock.await_args.args
        assert actor.user_id == user.user_id
        assert target is None


class TestBonuses:
    """GET /bonuses."""

    def test_no_account_yet(self, client: TestClient) -> None:
        with patch.object(BonusAccountService, "get_account", new_callable=AsyncMock) as mock:
            mock.return_value = None
            response = client.get("/bonuses")

        assert response.status_code == 200
        body = response.json()
        assert body["balance"] == 0
        assert body["cashbackLevel"] == 1
        assert body["cashbackPercent"] == 3
        assert body["recentTransactions"] == []


class TestCron:
    """Scheduler endpoint."""

    def test_requires_secret(self, client: TestClient, renewal_service: MagicMock) -> None:
        response = client.get("/cron/renew-subscriptions")

        assert response.status_code == 401
        renewal_service.run.assert_not_awaited()

    def test_wrong_secret(self, client: TestClient, renewal_service: MagicMock) -> None:
        response = client.get(
            "/cron/renew-subscriptions", headers={"Authorization": "Bearer wrong"}
        )

        assert response.status_code == 401

    def test_runs_renewals(self, client: TestClient, renewal_service: MagicMock) -> None:
        failed_user = uuid4()
        renewal_service.run.return_value = RenewalReport(
            total=3,
            successful=1,
            failed=1,
            lapsed=4,
            errors=(RenewalFailure(user_id=failed_user, error="gateway returned 402"),),
            skipped=1,
        )

        response = client.get(
            "/cron/renew-subscriptions", headers={"Authorization": "Bearer test-cron-secret"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 3
        assert body["successful"] == 1
        assert body["failed"] == 1
        assert body["skipped"] == 1
        assert body["lapsed"] == 4
        assert body["errors"] == [{"userId": str(failed_user), "error": "gateway returned 402"}]


class TestWebhookEndToEnd:
    """Webhook through the real processor with a signed body."""

    async def test_invalid_signature_leaves_ledger_untouched(
        self, app: FastAPI, async_client: AsyncClient, gateway: MagicMock
    ) -> None:
        settlement = MagicMock()
        settlement.settle_succeeded = AsyncMock()
        gateway.verify_webhook.side_effect = SignatureInvalidError("signature mismatch")
        app.dependency_overrides[get_webhook_processor] = lambda: WebhookProcessor(
            gateway, settlement
        )

        response = await async_client.post(
            "/payments/webhook",
            content=b'{"event": "payment.succeeded", "object": {"id": "pay_1"}}',
            headers={"X-Signature": "forged"},
        )

        assert response.status_code == 403
        settlement.settle_succeeded.assert_not_awaited()

    async def test_signed_unknown_event_acknowledged(
        self, app: FastAPI, async_client: AsyncClient, gateway: MagicMock
    ) -> None:
        gateway.verify_webhook.return_value = WebhookEvent(
            event="refund.succeeded", payment=make_gateway_payment()
        )
        app.dependency_overrides[get_webhook_processor] = lambda: WebhookProcessor(
            gateway, MagicMock()
        )

        response = await async_client.post("/payments/webhook", content=b"{}")

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
