"""
Passport Gateway Metrics.

Provides Prometheus metrics for admissions, rejections, stream outcomes and
rate-limiter store failures, plus a small in-memory mirror for quick stats.
"""

import logging
import threading
from typing import Optional, Dict, Any

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

logger = logging.getLogger(__name__)


class GatewayMetrics:
    """
    Metrics collector for Passport Gateway operations.

    Example:
        >>> metrics = GatewayMetrics()
        >>> metrics.record_admission()
        >>> metrics.record_rejection("rate_limited")
        >>> metrics.record_stream("completed", 1.2)
        >>> print(metrics.get_stats())
    """

    def __init__(self, namespace: str = "passport_gateway", registry: Optional[CollectorRegistry] = None):
        """
        Initialize metrics collector.

        Args:
            namespace: Metric name prefix.
            registry: Prometheus registry (a private one is created if None).
        """
        self._namespace = namespace
        self._lock = threading.Lock()
        self._counters: Dict[str, float] = {}
        self.registry = registry or CollectorRegistry()

        self._admissions = Counter(
            f"{namespace}_admissions_total",
            "Requests admitted against a passport quota",
            registry=self.registry,
        )
        self._rejections = Counter(
            f"{namespace}_rejections_total",
            "Requests rejected before streaming",
            ["kind"],
            registry=self.registry,
        )
        self._streams = Counter(
            f"{namespace}_streams_total",
            "Streams by terminal state",
            ["state"],
            registry=self.registry,
        )
        self._stream_duration = Histogram(
            f"{namespace}_stream_duration_seconds",
            "Wall time from passport frame to terminal state",
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self.registry,
        )
        self._limiter_failures = Counter(
            f"{namespace}_rate_limiter_store_failures_total",
            "Rate limiter store failures by scope and applied policy",
            ["scope", "policy"],
            registry=self.registry,
        )

    def _bump(self, key: str) -> None:
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + 1

    def record_admission(self) -> None:
        """Record an admitted request."""
        self._bump("admissions")
        self._admissions.inc()

    def record_rejection(self, kind: str) -> None:
        """Record a rejection by error kind."""
        self._bump(f"rejections_{kind}")
        self._rejections.labels(kind=kind).inc()

    def record_stream(self, state: str, duration_seconds: float) -> None:
        """Record a stream reaching a terminal state."""
        self._bump(f"streams_{state}")
        self._streams.labels(state=state).inc()
        self._stream_duration.observe(duration_seconds)

    def record_limiter_failure(self, scope: str, policy: str) -> None:
        """Record a fail-open or fail-closed decision."""
        self._bump(f"limiter_failures_{scope}_{policy}")
        self._limiter_failures.labels(scope=scope, policy=policy).inc()

    def get_stats(self) -> Dict[str, Any]:
        """Get current counters as a dictionary."""
        with self._lock:
            return dict(self._counters)

    def get_prometheus_metrics(self) -> bytes:
        """Get metrics in Prometheus text format."""
        return generate_latest(self.registry)

