"""Observability module for mirrorcache.

Provides metrics and structured logging:
- Prometheus metrics for mirror hits, fetches, invalidations and reconnects
- JSON structured logging with namespace/operation context
"""

from mirrorcache.observability.logging import (
    LogContext,
    configure_logging,
    get_logger,
    namespace_var,
    operation_var,
)
from mirrorcache.observability.metrics import (
    get_metrics,
    metrics_registry,
)

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    "LogContext",
    "namespace_var",
    "operation_var",
    # Metrics
    "metrics_registry",
    "get_metrics",
]
