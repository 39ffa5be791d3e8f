"""Notification boundary for approval lifecycle events.

The lifecycle engine never renders messages. It hands a ``Notification``
(who, which event, which record) to a backend supplied by the host platform
and treats every delivery as best-effort: failures are logged by the service
and never turn into lifecycle errors.

Backends:
- NullNotificationBackend: drops everything (default)
- MockNotificationBackend: records calls in memory, for tests and development
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from approver.domain.models import ApprovalRecord

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    """Lifecycle events communicated to users."""

    APPROVAL_REQUESTED = "approval_requested"
    APPROVED = "approved"
    DENIED = "denied"
    CANCELED = "canceled"
    TIMED_OUT = "timed_out"
    VERIFIED = "verified"


@dataclass(frozen=True)
class Notification:
    """A lifecycle event addressed to one user.

    Attributes:
        user_id: Recipient
        event: What happened
        record_id: Approval record id
        code: Approval code, for display
        actor: Who caused the event ("System" for timeouts)
    """

    user_id: str
    event: NotificationEvent
    record_id: str
    code: str
    actor: str = ""


class NotificationBackend(ABC):
    """Abstract base class for notification backends."""

    @abstractmethod
    async def notify_user(self, notification: Notification) -> str | None:
        """Deliver a notification to a user.

        Args:
            notification: Notification to deliver

        Returns:
            External message reference for later edits, if the platform has one

        Raises:
            Exception: Any delivery failure; callers treat it as best-effort
        """

    @abstractmethod
    async def update_post(
        self,
        post_id: str,
        record: "ApprovalRecord",
        event: NotificationEvent,
        actor: str = "",
    ) -> None:
        """Edit a previously sent message so it no longer offers stale actions.

        Args:
            post_id: Message reference returned by ``notify_user``
            record: Record in its new state
            event: Event that made the original actions stale
            actor: Who caused the event
        """


class NullNotificationBackend(NotificationBackend):
    """Backend that discards all notifications."""

    async def notify_user(self, notification: Notification) -> str | None:
        return None

    async def update_post(
        self,
        post_id: str,
        record: "ApprovalRecord",
        event: NotificationEvent,
        actor: str = "",
    ) -> None:
        return None


class MockNotificationBackend(NotificationBackend):
    """Mock notification backend for testing and development.

    Stores sent notifications and post edits in memory. Set ``notify_error`` or
    ``update_error`` to make the next calls fail with that exception.
    """

    def __init__(self) -> None:
        self.sent_notifications: list[Notification] = []
        self.updated_posts: list[tuple[str, str, NotificationEvent, str]] = []
        self.notify_error: Exception | None = None
        self.update_error: Exception | None = None
        self._post_counter = 0

    async def notify_user(self, notification: Notification) -> str | None:
        if self.notify_error is not None:
            raise self.notify_error

        self.sent_notifications.append(notification)
        self._post_counter += 1
        logger.info(
            "Mock: notification queued",
            extra={
                "user_id": notification.user_id,
                "event": notification.event.value,
                "approval_code": notification.code,
            },
        )
        return f"post-{self._post_counter}"

    async def update_post(
        self,
        post_id: str,
        record: "ApprovalRecord",
        event: NotificationEvent,
        actor: str = "",
    ) -> None:
        if self.update_error is not None:
            raise self.update_error
        self.updated_posts.append((post_id, record.id, event, actor))

    def events_for(self, user_id: str) -> list[NotificationEvent]:
        """Events delivered to one user, in order."""
        return [n.event for n in self.sent_notifications if n.user_id == user_id]

    def clear(self) -> None:
        """Clear all stored notifications and edits."""
        self.sent_notifications.clear()
        self.updated_posts.clear()


def classify_delivery_error(err: Exception | None) -> tuple[str, str]:
    """Classify a failed delivery for operator logs.

    Matches known substrings in the error text. The result is for logging
    only; it never changes control flow.

    Args:
        err: Delivery error

    Returns:
        (error_type, suggestion) where error_type is one of
        ``user_dms_disabled``, ``bot_blocked``, ``user_not_found``, ``api_error``
    """
    if err is None:
        return "api_error", "Generic API error. Check the chat platform server logs for details."

    message = str(err)

    if "direct_messages_disabled" in message or "DMs disabled" in message:
        return (
            "user_dms_disabled",
            "User has DMs disabled. Ask the user to allow direct messages from bots.",
        )

    if "user_blocked_bot" in message or "bot is blocked" in message:
        return (
            "bot_blocked",
            "User has blocked the bot. The user must unblock it to receive notifications.",
        )

    # "404" alone also matches unrelated routes; require it to mention a user
    if "user_not_found" in message or ("404" in message and "user" in message.lower()):
        return "user_not_found", "User account not found. The user may have been deleted."

    return "api_error", "Generic API error. Check the chat platform server logs for details."


__all__ = [
    "NotificationEvent",
    "Notification",
    "NotificationBackend",
    "NullNotificationBackend",
    "MockNotificationBackend",
    "classify_delivery_error",
]
