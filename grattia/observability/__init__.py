"""
Observability module - Logging, Metrics, and Tracing.
"""

from grattia.observability.logging import get_logger, log_context, setup_logging
from grattia.observability.metrics import metrics
from grattia.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
