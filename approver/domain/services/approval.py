"""Approval service managing the approval request lifecycle.

This service implements the state machine for approval records:

    pending → approved | denied | canceled

plus the independent ``verified`` flag on approved records. It provides
request creation, cancellation (by the requester or by the timeout sweeper),
decision recording and post-approval verification.

Every operation validates its inputs before touching the store, checks the
acting user and the current status, persists the whole record, and then sends
best-effort notifications. Notification failures are logged and never change
the result of the operation.
"""

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from approver.domain.codegen import generate_unique_code, is_valid_code_format
from approver.domain.exceptions import (
    AlreadyVerifiedError,
    DomainError,
    InvalidInputError,
    NotApprovedError,
    PermissionDeniedError,
    RecordImmutableError,
)
from approver.domain.models import (
    CURRENT_SCHEMA_VERSION,
    MAX_VERIFICATION_COMMENT_LENGTH,
    SYSTEM_ACTOR,
    ApprovalRecord,
    ApprovalStatus,
    Decision,
    UserSnapshot,
    new_record_id,
    now_millis,
    validate_description,
)
from approver.domain.services.notification import (
    Notification,
    NotificationBackend,
    NotificationEvent,
    NullNotificationBackend,
    classify_delivery_error,
)
from approver.infra.kv.records import RecordStore
from approver.infra.observability import metrics

logger = logging.getLogger(__name__)

CODE_FORMAT_EXAMPLE = "A-X7K9Q2"


@contextmanager
def _track(operation: str) -> Iterator[None]:
    """Record duration and outcome metrics for one service operation."""
    start = time.perf_counter()
    try:
        yield
    except DomainError as e:
        metrics.record_transition(operation, type(e).__name__, time.perf_counter() - start)
        raise
    metrics.record_transition(operation, "success", time.perf_counter() - start)


def _require(value: str | None, field: str) -> str:
    """Trim ``value`` and reject it if empty."""
    trimmed = (value or "").strip()
    if not trimmed:
        raise InvalidInputError(f"{field} is required", context={"field": field})
    return trimmed


def _require_code(code: str | None) -> str:
    code = _require(code, "approval code")
    if not is_valid_code_format(code):
        raise InvalidInputError(
            f"Invalid approval code format: expected format like '{CODE_FORMAT_EXAMPLE}'",
            context={"field": "approval code", "code": code},
        )
    return code


class ApprovalService:
    """Service for managing approval records.

    Provides:
    - Approval request creation with unique human-friendly codes
    - Cancellation by the requester or by the timeout sweeper
    - Approve/deny decisions by the designated approver
    - Verification of approved requests by the requester
    - Read access by id, code and user

    Example:
        service = ApprovalService(RecordStore(backend), notifier=backend_for_chat)
        record = await service.create_request(alice, bob, "Deploy hotfix", channel_id="town-square")
        await service.record_decision(record.id, bob.id, "approved", "Go ahead")
    """

    def __init__(
        self,
        store: RecordStore,
        notifier: NotificationBackend | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        """Initialize approval service.

        Args:
            store: Approval record store
            notifier: Notification backend (defaults to discarding notifications)
            clock: Returns the current time in epoch milliseconds
        """
        self.store = store
        self.notifier = notifier or NullNotificationBackend()
        self.clock = clock or now_millis

    def _event_time(self, record: ApprovalRecord) -> int:
        """Current time, never earlier than the record's creation."""
        return max(self.clock(), record.created_at)

    # ------------------------------------------------------------------
    # Best-effort notification helpers
    # ------------------------------------------------------------------

    async def _deliver(self, notification: Notification) -> tuple[bool, str | None]:
        """Send a notification, logging instead of raising on failure.

        Returns:
            (delivered, post_id)
        """
        try:
            post_id = await self.notifier.notify_user(notification)
        except Exception as e:
            error_type, suggestion = classify_delivery_error(e)
            metrics.record_notification(notification.event.value, success=False)
            logger.warning(
                "Failed to deliver approval notification",
                extra={
                    "approval_id": notification.record_id,
                    "approval_code": notification.code,
                    "user_id": notification.user_id,
                    "event": notification.event.value,
                    "error": str(e),
                    "error_type": error_type,
                    "suggestion": suggestion,
                },
            )
            return False, None

        metrics.record_notification(notification.event.value, success=True)
        return True, post_id

    async def _retire_post(
        self, record: ApprovalRecord, event: NotificationEvent, actor: str
    ) -> None:
        """Edit the approver's original message so it stops offering actions."""
        if not record.notification_post_id:
            return

        try:
            await self.notifier.update_post(record.notification_post_id, record, event, actor)
        except Exception as e:
            logger.warning(
                "Failed to update approver notification",
                extra={
                    "approval_id": record.id,
                    "approval_code": record.code,
                    "event": event.value,
                    "post_id": record.notification_post_id,
                    "error": str(e),
                },
            )

    async def _save_tracking(self, record: ApprovalRecord) -> None:
        """Persist delivery-tracking fields; failure is only logged."""
        try:
            await self.store.save(record)
        except DomainError as e:
            logger.warning(
                "Failed to update notification tracking fields",
                extra={"approval_id": record.id, "approval_code": record.code, "error": str(e)},
            )

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def create_request(
        self,
        requester: UserSnapshot,
        approver: UserSnapshot,
        description: str,
        channel_id: str = "",
        team_id: str = "",
    ) -> ApprovalRecord:
        """Create a new pending approval request.

        Args:
            requester: Requesting user, snapshotted onto the record
            approver: Approving user, snapshotted onto the record
            description: What needs approval
            channel_id: Originating conversation
            team_id: Originating team

        Returns:
            Created approval record

        Raises:
            InvalidInputError: If a party id or the description is missing/invalid
            CodeGenerationExhaustedError: If no unique code could be generated
            PersistenceError: If the record could not be stored
        """
        with _track("create"):
            requester_id = _require(requester.id, "requester ID")
            approver_id = _require(approver.id, "approver ID")
            description = validate_description(description)

            code = await generate_unique_code(self.store.code_exists)

            record = ApprovalRecord(
                id=new_record_id(),
                code=code,
                requester_id=requester_id,
                requester_username=requester.username,
                requester_display_name=requester.display_name,
                approver_id=approver_id,
                approver_username=approver.username,
                approver_display_name=approver.display_name,
                description=description,
                status=ApprovalStatus.PENDING,
                created_at=self.clock(),
                request_channel_id=(channel_id or "").strip(),
                team_id=(team_id or "").strip(),
                schema_version=CURRENT_SCHEMA_VERSION,
            )

            await self.store.save(record)

        logger.info(
            "Approval request created",
            extra={
                "approval_id": record.id,
                "approval_code": record.code,
                "requester_id": record.requester_id,
                "approver_id": record.approver_id,
            },
        )

        delivered, post_id = await self._deliver(
            Notification(
                user_id=record.approver_id,
                event=NotificationEvent.APPROVAL_REQUESTED,
                record_id=record.id,
                code=record.code,
                actor=record.requester_id,
            )
        )
        if delivered:
            record.notification_sent = True
            record.notification_post_id = post_id or ""
            await self._save_tracking(record)

        return record

    async def cancel_approval(
        self,
        code: str,
        requester_id: str,
        reason: str,
        details: str = "",
        *,
        timed_out: bool = False,
    ) -> ApprovalRecord:
        """Cancel a pending approval request.

        Args:
            code: Approval code
            requester_id: User asking to cancel; must be the requester
            reason: Cancellation reason
            details: Optional free-text details
            timed_out: Cancellation is driven by the timeout sweeper

        Returns:
            Updated approval record

        Raises:
            InvalidInputError: If the code is missing/malformed or an input is empty
            RecordNotFoundError: If no record has this code
            PermissionDeniedError: If the caller is not the requester
            RecordImmutableError: If the record is no longer pending
            PersistenceError: If the store fails
        """
        with _track("cancel"):
            code = _require_code(code)
            requester_id = _require(requester_id, "requester ID")
            reason = _require(reason, "cancellation reason")
            details = (details or "").strip()

            record = await self.store.get_by_code(code)

            if record.requester_id != requester_id:
                logger.warning(
                    "Unauthorized cancellation attempt",
                    extra={
                        "approval_code": code,
                        "user_id": requester_id,
                        "requester_id": record.requester_id,
                    },
                )
                raise PermissionDeniedError(
                    "Permission denied: only the requester can cancel this approval",
                    context={
                        "code": code,
                        "record_id": record.id,
                        "actor_id": requester_id,
                        "expected_actor_id": record.requester_id,
                    },
                )

            if record.status != ApprovalStatus.PENDING:
                raise RecordImmutableError(
                    f"Cannot cancel approval with status {record.status.value}",
                    context={
                        "code": code,
                        "record_id": record.id,
                        "current_status": record.status.value,
                    },
                )

            now = self._event_time(record)
            record.status = ApprovalStatus.CANCELED
            record.decided_at = now
            record.canceled_at = now
            record.canceled_reason = reason
            record.canceled_details = details

            await self.store.save(record)

        logger.info(
            "Approval request canceled",
            extra={
                "approval_id": record.id,
                "approval_code": record.code,
                "requester_id": record.requester_id,
                "status": "timed_out" if timed_out else "canceled",
            },
        )

        if timed_out:
            await self.announce_timeout(record)
        else:
            await self._retire_post(record, NotificationEvent.CANCELED, record.requester_username)
            for user_id in (record.approver_id, record.requester_id):
                await self._deliver(
                    Notification(
                        user_id=user_id,
                        event=NotificationEvent.CANCELED,
                        record_id=record.id,
                        code=record.code,
                        actor=record.requester_id,
                    )
                )

        return record

    async def announce_timeout(self, record: ApprovalRecord) -> None:
        """Tell the requester a request timed out and retire the approver's post.

        Best effort, like every other notification.
        """
        await self._retire_post(record, NotificationEvent.TIMED_OUT, SYSTEM_ACTOR)
        await self._deliver(
            Notification(
                user_id=record.requester_id,
                event=NotificationEvent.TIMED_OUT,
                record_id=record.id,
                code=record.code,
                actor=SYSTEM_ACTOR,
            )
        )

    async def record_decision(
        self,
        approval_id: str,
        approver_id: str,
        decision: str,
        comment: str = "",
    ) -> ApprovalRecord:
        """Record an approve or deny decision.

        Args:
            approval_id: Approval record id
            approver_id: Deciding user; must be the designated approver
            decision: "approved" or "denied"
            comment: Optional decision comment

        Returns:
            Updated approval record; the outcome has been sent to the requester
            on a best-effort basis

        Raises:
            InvalidInputError: If an id is empty or the decision value is invalid
            RecordNotFoundError: If the record does not exist
            PermissionDeniedError: If the caller is not the designated approver
            RecordImmutableError: If the record is no longer pending
            PersistenceError: If the store fails
        """
        with _track("decide"):
            approval_id = _require(approval_id, "approval ID")
            approver_id = _require(approver_id, "approver ID")
            try:
                new_status = ApprovalStatus(Decision((decision or "").strip()).value)
            except ValueError:
                raise InvalidInputError(
                    "Invalid decision: must be 'approved' or 'denied'",
                    context={"field": "decision", "decision": decision},
                ) from None
            comment = (comment or "").strip()

            record = await self.store.get_by_id(approval_id)

            if record.approver_id != approver_id:
                logger.warning(
                    "Unauthorized decision attempt",
                    extra={
                        "approval_id": approval_id,
                        "user_id": approver_id,
                        "approver_id": record.approver_id,
                    },
                )
                raise PermissionDeniedError(
                    "Permission denied: only the designated approver can make this decision",
                    context={
                        "record_id": approval_id,
                        "code": record.code,
                        "actor_id": approver_id,
                        "expected_actor_id": record.approver_id,
                    },
                )

            if record.status != ApprovalStatus.PENDING:
                logger.warning(
                    "Attempted to modify finalized approval",
                    extra={
                        "approval_id": approval_id,
                        "current_status": record.status.value,
                        "decision": new_status.value,
                    },
                )
                raise RecordImmutableError(
                    f"Cannot modify approval with status {record.status.value}",
                    context={
                        "record_id": approval_id,
                        "code": record.code,
                        "current_status": record.status.value,
                    },
                )

            record.status = new_status
            record.decision_comment = comment
            record.decided_at = self._event_time(record)

            await self.store.save(record)

        logger.info(
            "Approval decision recorded",
            extra={
                "approval_id": record.id,
                "approval_code": record.code,
                "decision": new_status.value,
                "approver_id": approver_id,
            },
        )

        event = (
            NotificationEvent.APPROVED
            if new_status == ApprovalStatus.APPROVED
            else NotificationEvent.DENIED
        )
        await self._retire_post(record, event, record.approver_username)
        delivered, _ = await self._deliver(
            Notification(
                user_id=record.requester_id,
                event=event,
                record_id=record.id,
                code=record.code,
                actor=approver_id,
            )
        )
        if delivered:
            record.outcome_notified = True
            await self._save_tracking(record)

        return record

    async def verify_request(
        self,
        code: str,
        requester_id: str,
        comment: str = "",
    ) -> ApprovalRecord:
        """Mark an approved request as carried out.

        Args:
            code: Approval code
            requester_id: Verifying user; must be the requester
            comment: Optional verification note

        Returns:
            Updated approval record

        Raises:
            InvalidInputError: If the code is missing/malformed or the comment is too long
            RecordNotFoundError: If no record has this code
            PermissionDeniedError: If the caller is not the requester
            NotApprovedError: If the record is not approved
            AlreadyVerifiedError: If the record was already verified
            PersistenceError: If the store fails
        """
        with _track("verify"):
            code = _require_code(code)
            requester_id = _require(requester_id, "requester ID")
            comment = (comment or "").strip()
            if len(comment) > MAX_VERIFICATION_COMMENT_LENGTH:
                raise InvalidInputError(
                    f"Verification comment is {len(comment)} characters "
                    f"(max {MAX_VERIFICATION_COMMENT_LENGTH})",
                    context={"field": "comment", "length": len(comment)},
                )

            record = await self.store.get_by_code(code)

            if record.requester_id != requester_id:
                logger.warning(
                    "Unauthorized verification attempt",
                    extra={
                        "approval_code": code,
                        "user_id": requester_id,
                        "requester_id": record.requester_id,
                    },
                )
                raise PermissionDeniedError(
                    "Permission denied: only the requester can verify this approval",
                    context={
                        "code": code,
                        "record_id": record.id,
                        "actor_id": requester_id,
                        "expected_actor_id": record.requester_id,
                    },
                )

            if record.status != ApprovalStatus.APPROVED:
                raise NotApprovedError(
                    f"Approval {code} is not approved (current status: {record.status.value})",
                    context={
                        "code": code,
                        "record_id": record.id,
                        "current_status": record.status.value,
                    },
                )

            if record.verified:
                raise AlreadyVerifiedError(
                    f"Approval {code} is already verified",
                    context={
                        "code": code,
                        "record_id": record.id,
                        "current_status": record.status.value,
                        "verified_at": record.verified_at,
                    },
                )

            record.verified = True
            record.verified_at = self._event_time(record)
            record.verification_comment = comment

            await self.store.save(record)

        logger.info(
            "Approval request verified",
            extra={
                "approval_id": record.id,
                "approval_code": record.code,
                "requester_id": requester_id,
            },
        )

        await self._deliver(
            Notification(
                user_id=record.approver_id,
                event=NotificationEvent.VERIFIED,
                record_id=record.id,
                code=record.code,
                actor=requester_id,
            )
        )

        return record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_by_id(self, approval_id: str) -> ApprovalRecord:
        """Get a single approval record by id."""
        return await self.store.get_by_id(_require(approval_id, "approval ID"))

    async def get_by_code(self, code: str) -> ApprovalRecord:
        """Get a single approval record by code."""
        return await self.store.get_by_code(_require_code(code))

    async def list_by_user(self, user_id: str) -> list[ApprovalRecord]:
        """List records where the user is requester or approver, newest first."""
        return await self.store.list_by_user(_require(user_id, "user ID"))


__all__ = ["ApprovalService", "CODE_FORMAT_EXAMPLE"]
