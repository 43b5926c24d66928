"""
Observability module - Logging, Metrics, and Tracing.
"""

from fitledger.observability.logging import get_logger, log_context, setup_logging
from fitledger.observability.metrics import metrics
from fitledger.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
