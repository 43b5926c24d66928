"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from fitledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    EVENT = "event"
    OUTCOME = "outcome"
    BONUS_TYPE = "bonus_type"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the ledger service.

    - HTTP requests (rate, duration, errors)
    - Webhook events by type and outcome
    - Bonus ledger movements
    - Subscription transitions and renewals
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("fitledger_service", "Service information")
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "fitledger_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "fitledger_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "fitledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.METHOD],
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "fitledger_webhook_events_total",
            "Gateway webhook events by type and outcome",
            [MetricLabels.EVENT, MetricLabels.OUTCOME],
        )

        self.webhook_duration_seconds = Histogram(
            "fitledger_webhook_duration_seconds",
            "Webhook processing duration in seconds",
            buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        # ====================================================================
        # Bonus Ledger Metrics
        # ====================================================================
        self.bonus_movements_total = Counter(
            "fitledger_bonus_movements_total",
            "Bonus ledger entries written",
            [MetricLabels.BONUS_TYPE],
        )

        self.bonus_amount = Histogram(
            "fitledger_bonus_amount",
            "Absolute bonus movement amounts",
            [MetricLabels.BONUS_TYPE],
            buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000),
        )

        # ====================================================================
        # Subscription Metrics
        # ====================================================================
        self.subscription_transitions_total = Counter(
            "fitledger_subscription_transitions_total",
            "Subscription state transitions",
            ["transition"],
        )

        self.renewals_total = Counter(
            "fitledger_renewals_total",
            "Auto-renewal attempts",
            [MetricLabels.OUTCOME],
        )

        self.payments_created_total = Counter(
            "fitledger_payments_created_total",
            "Gateway payments created",
            ["payment_kind"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "fitledger_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_webhook(self, event: str, outcome: str, duration: float) -> None:
        """Record a processed webhook delivery."""
        self.webhook_events_total.labels(event=event, outcome=outcome).inc()
        self.webhook_duration_seconds.observe(duration)

    def record_bonus_movement(self, bonus_type: str, amount: int) -> None:
        """Record a bonus ledger entry."""
        self.bonus_movements_total.labels(bonus_type=bonus_type).inc()
        self.bonus_amount.labels(bonus_type=bonus_type).observe(abs(amount))

    def record_transition(self, transition: str) -> None:
        """Record a subscription state transition."""
        self.subscription_transitions_total.labels(transition=transition).inc()

    def record_renewal(self, success: bool) -> None:
        """Record an auto-renewal attempt."""
        self.renewals_total.labels(outcome="success" if success else "failure").inc()

    def record_payment_created(self, payment_kind: str) -> None:
        """Record a gateway payment creation."""
        self.payments_created_total.labels(payment_kind=payment_kind).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
