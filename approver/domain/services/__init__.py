"""Approval lifecycle services."""

from approver.domain.services.approval import ApprovalService
from approver.domain.services.notification import (
    MockNotificationBackend,
    Notification,
    NotificationBackend,
    NotificationEvent,
    NullNotificationBackend,
    classify_delivery_error,
)
from approver.domain.services.timeout import SweepResult, TimeoutSweeper

__all__ = [
    "ApprovalService",
    "Notification",
    "NotificationBackend",
    "NotificationEvent",
    "NullNotificationBackend",
    "MockNotificationBackend",
    "classify_delivery_error",
    "SweepResult",
    "TimeoutSweeper",
]
