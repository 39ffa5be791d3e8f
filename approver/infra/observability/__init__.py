"""Observability infrastructure for the Approver service.

Provides structured logging and Prometheus metrics for monitoring the
approval lifecycle and the timeout sweeper.
"""

from approver.infra.observability.logging import (
    CorrelationIDFilter,
    JSONFormatter,
    correlation_id_var,
    get_correlation_id,
    set_correlation_id,
    setup_logging,
)
from approver.infra.observability.metrics import (
    get_registry,
    record_code_collision,
    record_notification,
    record_store_operation,
    record_sweep,
    record_transition,
    start_metrics_server,
)

__all__ = [
    # Logging
    "correlation_id_var",
    "get_correlation_id",
    "set_correlation_id",
    "CorrelationIDFilter",
    "JSONFormatter",
    "setup_logging",
    # Metrics
    "get_registry",
    "start_metrics_server",
    "record_store_operation",
    "record_transition",
    "record_code_collision",
    "record_sweep",
    "record_notification",
]
