"""Prometheus metrics for the cache client.

Provides:
- Mirror metrics (local hits, misses, in-flight skips)
- Store fetch metrics (latency, failures)
- Coherence metrics (invalidations applied)
- Connection metrics (reconnects, current state)

Usage:
    from mirrorcache.observability.metrics import get_metrics

    metrics = get_metrics()
    metrics.local_hits_total.labels(namespace="cache:").inc()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger(__name__)

# Numeric encoding of ClientState for the state gauge
STATE_VALUES = {
    "disconnected": 0,
    "connecting": 1,
    "ready": 2,
    "reconnecting": 3,
}


@dataclass
class MetricsRegistry:
    """Registry for Prometheus metrics."""

    # Mirror metrics
    local_hits_total: Any = None
    local_misses_total: Any = None
    inflight_skips_total: Any = None

    # Store metrics
    store_fetch_duration_seconds: Any = None
    store_fetch_errors_total: Any = None

    # Coherence metrics
    invalidations_total: Any = None

    # Connection metrics
    reconnects_total: Any = None
    client_state: Any = None

    # Internal state
    _initialized: bool = field(default=False, repr=False)
    _registry: Any = field(default=None, repr=False)

    def initialize(self) -> None:
        """Initialize Prometheus metrics."""
        if self._initialized:
            return

        from mirrorcache.config import settings

        if not settings.enable_metrics:
            logger.info("Metrics are disabled")
            self._initialized = True
            return

        self._registry = REGISTRY

        self.local_hits_total = Counter(
            "mirrorcache_local_hits_total",
            "Reads served from the local mirror",
            ["namespace"],
        )

        self.local_misses_total = Counter(
            "mirrorcache_local_misses_total",
            "Reads that had to go to the store",
            ["namespace"],
        )

        self.inflight_skips_total = Counter(
            "mirrorcache_inflight_skips_total",
            "Reads answered as absent because a fetch was already in flight",
            ["namespace"],
        )

        self.store_fetch_duration_seconds = Histogram(
            "mirrorcache_store_fetch_duration_seconds",
            "Batched store fetch latency in seconds",
            ["namespace"],
            buckets=(0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 1.0),
        )

        self.store_fetch_errors_total = Counter(
            "mirrorcache_store_fetch_errors_total",
            "Batched store fetches that failed and degraded to misses",
            ["namespace"],
        )

        self.invalidations_total = Counter(
            "mirrorcache_invalidations_total",
            "Keys evicted from the mirror by store invalidations",
            ["namespace"],
        )

        self.reconnects_total = Counter(
            "mirrorcache_reconnects_total",
            "Times the client entered the reconnect loop",
            ["namespace"],
        )

        self.client_state = Gauge(
            "mirrorcache_client_state",
            "Client state (0=disconnected, 1=connecting, 2=ready, 3=reconnecting)",
            ["namespace"],
        )

        self._initialized = True
        logger.info("Prometheus metrics initialized")

    def generate_latest(self) -> bytes:
        """Generate Prometheus metrics in exposition format."""
        if self._registry is None:
            return b"# Metrics disabled\n"
        return generate_latest(self._registry)


# Global metrics registry
metrics_registry = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry.

    Initializes metrics on first access.
    """
    if not metrics_registry._initialized:
        metrics_registry.initialize()
    return metrics_registry


def record_local_hit(namespace: str) -> None:
    metrics = get_metrics()
    if metrics.local_hits_total:
        metrics.local_hits_total.labels(namespace=namespace).inc()


def record_local_miss(namespace: str, count: int = 1) -> None:
    metrics = get_metrics()
    if metrics.local_misses_total:
        metrics.local_misses_total.labels(namespace=namespace).inc(count)


def record_inflight_skip(namespace: str) -> None:
    metrics = get_metrics()
    if metrics.inflight_skips_total:
        metrics.inflight_skips_total.labels(namespace=namespace).inc()


def record_store_fetch(namespace: str, duration: float) -> None:
    """Record a batched store fetch.

    Args:
        namespace: Key prefix of the client
        duration: Fetch duration in seconds
    """
    metrics = get_metrics()
    if metrics.store_fetch_duration_seconds:
        metrics.store_fetch_duration_seconds.labels(namespace=namespace).observe(duration)


def record_store_fetch_error(namespace: str) -> None:
    metrics = get_metrics()
    if metrics.store_fetch_errors_total:
        metrics.store_fetch_errors_total.labels(namespace=namespace).inc()


def record_invalidations(namespace: str, count: int) -> None:
    metrics = get_metrics()
    if metrics.invalidations_total:
        metrics.invalidations_total.labels(namespace=namespace).inc(count)


def record_reconnect(namespace: str) -> None:
    metrics = get_metrics()
    if metrics.reconnects_total:
        metrics.reconnects_total.labels(namespace=namespace).inc()


def set_client_state(namespace: str, state: str) -> None:
    """Record the current client state.

    Args:
        namespace: Key prefix of the client
        state: ClientState value (disconnected, connecting, ready, reconnecting)
    """
    metrics = get_metrics()
    if metrics.client_state:
        metrics.client_state.labels(namespace=namespace).set(STATE_VALUES.get(state, 0))
