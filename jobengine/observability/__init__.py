"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from jobengine.observability.logging import (
    bind_context,
    clear_context,
    sanitize_headers,
    setup_logging,
)
from jobengine.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from jobengine.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "bind_context",
    "clear_context",
    "sanitize_headers",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
