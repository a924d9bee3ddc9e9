"""
Observability module - Logging, Metrics, and Tracing.
"""

from gatekeeper.observability.logging import get_logger, setup_logging
from gatekeeper.observability.metrics import metrics
from gatekeeper.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
