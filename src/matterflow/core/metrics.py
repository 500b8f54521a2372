"""Prometheus metrics for sync runs.

Metrics exported:
- matterflow_sync_items_total: Counter of per-item sync outcomes
- matterflow_provider_calls_total: Counter of outbound provider API calls
- matterflow_sync_errors_total: Counter of classified sync errors
- matterflow_batch_duration_seconds: Histogram of batch run duration
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import Counter, Histogram

sync_items_total = Counter(
    "matterflow_sync_items_total",
    "Total number of items processed by sync operations",
    labelnames=["operation", "status"],
)

provider_calls_total = Counter(
    "matterflow_provider_calls_total",
    "Total number of outbound provider API calls",
    labelnames=["provider", "method", "status"],
)

sync_errors_total = Counter(
    "matterflow_sync_errors_total",
    "Total number of classified sync errors",
    labelnames=["kind", "operation"],
)

batch_duration_seconds = Histogram(
    "matterflow_batch_duration_seconds",
    "Duration of batch synchronization runs in seconds",
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)


class SyncMetrics:
    """Records sync metrics with consistent labels."""

    def record_item(self, operation: str, status: str, count: int = 1) -> None:
        """Record processed items.

        Args:
            operation: Sync step ("pull", "apply", "push", "delete", "folders", "documents")
            status: Outcome ("synced", "skipped", "error", "deleted")
            count: Number of items
        """
        if count <= 0:
            return
        sync_items_total.labels(operation=operation, status=status).inc(count)

    def record_provider_call(self, provider: str, method: str, status: str) -> None:
        """Record an outbound provider call.

        Args:
            provider: "google_calendar", "google_drive" or "google_oauth"
            method: API method (e.g. "events.list", "files.create")
            status: HTTP status code as a string, or "error" for network failures
        """
        provider_calls_total.labels(provider=provider, method=method, status=status).inc()

    def record_error(self, kind: str, operation: str) -> None:
        sync_errors_total.labels(kind=kind, operation=operation).inc()

    @contextmanager
    def track_batch(self) -> Iterator[None]:
        """Time a batch run and observe its duration on exit."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            batch_duration_seconds.observe(time.perf_counter() - start_time)


metrics = SyncMetrics()
