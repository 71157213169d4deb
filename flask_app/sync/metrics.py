"""Prometheus metrics helpers for the sync engine."""

from __future__ import annotations

from typing import Literal

try:
    from prometheus_client import Counter, Gauge, Histogram

    _PROMETHEUS_AVAILABLE = True
except ImportError:  # pragma: no cover - metrics optional in some deployments
    Counter = Gauge = Histogram = None  # type: ignore
    _PROMETHEUS_AVAILABLE = False


if _PROMETHEUS_AVAILABLE:
    _adapter_enabled_gauge = Gauge(
        "sync_adapter_ready",
        "Whether a configured sync source adapter is ready (1) or not (0).",
        ["adapter"],
    )
    _poll_counter = Counter(
        "sync_polls_total",
        "Source polls by outcome.",
        ["source", "outcome"],
    )
    _poll_duration = Histogram(
        "sync_poll_duration_seconds",
        "Duration of a single source poll in seconds.",
        buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300),
    )
    _envelope_counter = Counter(
        "sync_envelopes_total",
        "Outbox envelopes by terminal status.",
        ["status"],
    )
    _destination_calls = Counter(
        "sync_destination_calls_total",
        "Destination update calls by outcome.",
        ["outcome"],
    )
    _rate_limit_wait = Histogram(
        "sync_rate_limit_wait_seconds",
        "Seconds spent waiting on the token bucket limiter.",
        ["namespace"],
        buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
    )
    _reconcile_counter = Counter(
        "sync_reconcile_changes_total",
        "Source registry changes made by discovery reconciliation.",
        ["source", "change"],
    )
else:  # pragma: no cover - fallbacks when prometheus_client missing
    _adapter_enabled_gauge = None
    _poll_counter = None
    _poll_duration = None
    _envelope_counter = None
    _destination_calls = None
    _rate_limit_wait = None
    _reconcile_counter = None


def record_adapter_status(adapter: str, ready: bool) -> None:
    """Set the adapter readiness gauge."""

    if _adapter_enabled_gauge is None:
        return
    _adapter_enabled_gauge.labels(adapter=adapter).set(1 if ready else 0)


def record_poll(source: str, outcome: Literal["success", "failure", "skipped"], duration_seconds: float = 0.0) -> None:
    if _poll_counter is not None:
        _poll_counter.labels(source=source, outcome=outcome).inc()
    if _poll_duration is not None and outcome != "skipped":
        _poll_duration.observe(duration_seconds)


def record_envelope_status(status: str, count: int = 1) -> None:
    if _envelope_counter is None or count <= 0:
        return
    _envelope_counter.labels(status=status).inc(count)


def record_destination_call(outcome: Literal["success", "failure"]) -> None:
    if _destination_calls is None:
        return
    _destination_calls.labels(outcome=outcome).inc()


def record_rate_limit_wait(namespace: str, seconds: float) -> None:
    if _rate_limit_wait is None:
        return
    _rate_limit_wait.labels(namespace=namespace).observe(seconds)


def record_reconcile_changes(source: str, **counts: int) -> None:
    """Increment reconciliation counters, e.g. ``created=3, retired=1``."""

    if _reconcile_counter is None:
        return
    for change, count in counts.items():
        if count:
            _reconcile_counter.labels(source=source, change=change).inc(count)


def register_metrics_endpoint(app, path: str = "/metrics") -> bool:
    """Expose the Prometheus registry at ``path``; returns False when the client is missing."""

    if not _PROMETHEUS_AVAILABLE:
        app.logger.warning("MONITORING_ENABLED is set but prometheus_client is not installed; %s not mounted.", path)
        return False

    from flask import Response
    from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

    def metrics_view():
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)

    app.add_url_rule(path, endpoint="sync_metrics", view_func=metrics_view)
    return True
