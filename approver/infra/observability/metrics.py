"""Prometheus metrics for observability.

Provides metrics collection for record store operations, lifecycle
transitions, timeout sweeps and notification delivery.
"""

import logging
from wsgiref.simple_server import WSGIServer

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

logger = logging.getLogger(__name__)

# Global registry for metrics
_registry = CollectorRegistry()


# Record Store Metrics
store_operations_total = Counter(
    "approver_store_operations_total",
    "Total number of approval record store operations",
    ["operation", "status"],
    registry=_registry,
)

store_operation_duration_seconds = Histogram(
    "approver_store_operation_duration_seconds",
    "Duration of approval record store operations in seconds",
    ["operation"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
    registry=_registry,
)

# Lifecycle Transition Metrics
transitions_total = Counter(
    "approver_transitions_total",
    "Total number of approval lifecycle operations",
    ["operation", "outcome"],
    registry=_registry,
)

transition_duration_seconds = Histogram(
    "approver_transition_duration_seconds",
    "Duration of approval lifecycle operations in seconds",
    ["operation"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
    registry=_registry,
)

code_collisions_total = Counter(
    "approver_code_collisions_total",
    "Total number of approval code collisions during generation",
    registry=_registry,
)

# Timeout Sweeper Metrics
sweep_runs_total = Counter(
    "approver_sweep_runs_total",
    "Total number of timeout sweep passes",
    ["status"],
    registry=_registry,
)

sweep_records_total = Counter(
    "approver_sweep_records_total",
    "Pending records processed by timeout sweeps",
    ["result"],
    registry=_registry,
)

sweep_last_eligible = Gauge(
    "approver_sweep_last_eligible",
    "Number of timed-out pending records found by the last sweep",
    registry=_registry,
)

# Notification Metrics
notifications_total = Counter(
    "approver_notifications_total",
    "Total number of best-effort notification attempts",
    ["event", "status"],
    registry=_registry,
)


def get_registry() -> CollectorRegistry:
    """Get the metrics registry.

    Returns:
        Prometheus collector registry
    """
    return _registry


def start_metrics_server(port: int, host: str = "127.0.0.1") -> WSGIServer:
    """Serve the metrics registry over HTTP from a daemon thread.

    Args:
        port: TCP port to listen on
        host: Address to bind

    Returns:
        The running server; call ``shutdown()`` to stop it
    """
    server, _thread = start_http_server(port, addr=host, registry=get_registry())
    logger.info(
        f"Metrics endpoint listening on {host}:{port}",
        extra={"host": host, "port": port},
    )
    return server


def record_store_operation(operation: str, status: str, duration: float | None = None) -> None:
    """Record metrics for a record store operation.

    Args:
        operation: Store operation (save/get/get_by_code/list_by_user/...)
        status: Outcome label (success/not_found/immutable/error)
        duration: Operation duration in seconds
    """
    store_operations_total.labels(operation=operation, status=status).inc()
    if duration is not None:
        store_operation_duration_seconds.labels(operation=operation).observe(duration)


def record_transition(operation: str, outcome: str, duration: float | None = None) -> None:
    """Record metrics for a lifecycle operation.

    Args:
        operation: create/cancel/decide/verify
        outcome: success or the error class label
        duration: Operation duration in seconds
    """
    transitions_total.labels(operation=operation, outcome=outcome).inc()
    if duration is not None:
        transition_duration_seconds.labels(operation=operation).observe(duration)


def record_code_collision() -> None:
    """Record a generated code that was already taken."""
    code_collisions_total.inc()


def record_sweep(eligible: int, canceled: int, failed: int, success: bool = True) -> None:
    """Record metrics for a timeout sweep pass.

    Args:
        eligible: Timed-out pending records found
        canceled: Records canceled
        failed: Records whose cancellation failed
        success: Whether the pass completed without an unexpected error
    """
    sweep_runs_total.labels(status="success" if success else "error").inc()
    sweep_last_eligible.set(eligible)
    if canceled:
        sweep_records_total.labels(result="canceled").inc(canceled)
    if failed:
        sweep_records_total.labels(result="failed").inc(failed)


def record_notification(event: str, success: bool) -> None:
    """Record a best-effort notification attempt.

    Args:
        event: Notification event name
        success: Whether delivery succeeded
    """
    status = "success" if success else "failed"
    notifications_total.labels(event=event, status=status).inc()


__all__ = [
    "get_registry",
    "start_metrics_server",
    "record_store_operation",
    "record_transition",
    "record_code_collision",
    "record_sweep",
    "record_notification",
]
