"""Prometheus metrics for session lifecycle and status sampling."""
from __future__ import annotations

from prometheus_client import Counter

SESSION_CREATES_TOTAL = Counter(
    "fleet_session_creates_total",
    "Session creation attempts grouped by outcome",
    labelnames=("result",),
)
STATUS_SAMPLES_TOTAL = Counter(
    "fleet_status_samples_total",
    "Status classifications produced by the inference engine",
    labelnames=("status",),
)
SAMPLE_FAILURES_TOTAL = Counter(
    "fleet_sample_failures_total",
    "Pane captures that failed and degraded to Unknown",
)
RECONCILE_REMOVED_TOTAL = Counter(
    "fleet_reconcile_removed_total",
    "Stale workspace entries dropped by reconciliation",
)


def record_session_create(result: str) -> None:
    """Count a create outcome: ``created``, ``reused`` or ``failed``."""

    SESSION_CREATES_TOTAL.labels(result=result).inc()


def record_sample(status: str) -> None:
    STATUS_SAMPLES_TOTAL.labels(status=status).inc()


def record_sample_failure() -> None:
    SAMPLE_FAILURES_TOTAL.inc()


def record_reconcile_removed(count: int) -> None:
    if count > 0:
        RECONCILE_REMOVED_TOTAL.inc(count)
