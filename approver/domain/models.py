"""Domain models for the approval lifecycle.

Pydantic models representing the persisted approval record and the small value
types around it. The JSON shape (camelCase keys, flat requester/approver
snapshots) is the persisted wire format and must stay compatible with records
written by earlier schema versions.
"""

import base64
import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from approver.domain.exceptions import InvalidInputError, RecordCorruptedError

# v1: initial shape. v2: adds canceledDetails.
CURRENT_SCHEMA_VERSION = 2

MAX_DESCRIPTION_LENGTH = 1000
MAX_VERIFICATION_COMMENT_LENGTH = 500

# Attributed as the canceler when the timeout sweeper cancels a request
SYSTEM_ACTOR = "System"

TIMEOUT_CANCEL_REASON = "Auto-canceled: no response within the timeout window"


class ApprovalStatus(str, Enum):
    """Approval status state machine.

    Valid transitions:
    - pending → approved
    - pending → denied
    - pending → canceled

    All non-pending states are terminal. Verification is tracked separately on
    approved records and is not a status value.
    """

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    CANCELED = "canceled"

    @property
    def is_final(self) -> bool:
        return self is not ApprovalStatus.PENDING


class Decision(str, Enum):
    """Decision values an approver may record."""

    APPROVED = "approved"
    DENIED = "denied"


class CancellationReason(str, Enum):
    """Reason codes offered to requesters when canceling."""

    NO_LONGER_NEEDED = "no_longer_needed"
    WRONG_APPROVER = "wrong_approver"
    SENSITIVE_INFO = "sensitive_info"
    OTHER = "other"


_CANCELLATION_REASON_LABELS = {
    CancellationReason.NO_LONGER_NEEDED: "No longer needed",
    CancellationReason.WRONG_APPROVER: "Wrong approver",
    CancellationReason.SENSITIVE_INFO: "Sensitive information",
    CancellationReason.OTHER: "Other",
}


def cancellation_reason_label(reason_code: str, details: str = "") -> str:
    """Map a cancellation reason code to the reason stored on the record.

    Details are stored separately in ``canceled_details``; the ``other`` code
    is only accepted together with non-empty details.

    Args:
        reason_code: One of the CancellationReason values
        details: Optional free-text details

    Returns:
        Reason label, "Unknown reason" for unrecognized codes

    Raises:
        InvalidInputError: If ``other`` is selected without details
    """
    try:
        reason = CancellationReason(reason_code.strip())
    except ValueError:
        return "Unknown reason"

    if reason is CancellationReason.OTHER and not details.strip():
        raise InvalidInputError(
            "Details are required when the cancellation reason is 'other'",
            context={"field": "canceled_details", "reason_code": reason_code},
        )
    return _CANCELLATION_REASON_LABELS[reason]


def now_millis() -> int:
    """Current UTC time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


def new_record_id() -> str:
    """Generate a new 26-character opaque record id."""
    return base64.b32encode(uuid.uuid4().bytes).decode("ascii").rstrip("=").lower()


class UserSnapshot(BaseModel):
    """Identity of a party, captured when the request is created.

    Later profile changes never alter historical records.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="External user id")
    username: str = Field(default="", description="Username at creation time")
    display_name: str = Field(default="", description="Display name at creation time")


class ApprovalRecord(BaseModel):
    """A persisted approval request and its full decision history.

    Timestamps are UTC epoch milliseconds; ``0`` means the event has not
    happened yet.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    # Identity
    id: str
    code: str

    # Requester (snapshot at creation time)
    requester_id: str
    requester_username: str = ""
    requester_display_name: str = ""

    # Approver (snapshot at creation time)
    approver_id: str
    approver_username: str = ""
    approver_display_name: str = ""

    description: str = ""

    # State
    status: ApprovalStatus = ApprovalStatus.PENDING
    decision_comment: str = ""

    created_at: int = 0
    decided_at: int = 0

    # Cancellation
    canceled_reason: str = ""
    canceled_details: str = ""
    canceled_at: int = 0

    # Verification (requester confirms the approved action was carried out)
    verified: bool = False
    verified_at: int = 0
    verification_comment: str = ""

    # Context
    request_channel_id: str = ""
    team_id: str = ""

    # Delivery tracking
    notification_sent: bool = False
    notification_post_id: str = ""
    outcome_notified: bool = False

    schema_version: int = CURRENT_SCHEMA_VERSION

    @property
    def requester(self) -> UserSnapshot:
        return UserSnapshot(
            id=self.requester_id,
            username=self.requester_username,
            display_name=self.requester_display_name,
        )

    @property
    def approver(self) -> UserSnapshot:
        return UserSnapshot(
            id=self.approver_id,
            username=self.approver_username,
            display_name=self.approver_display_name,
        )

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING

    def to_json(self) -> bytes:
        """Serialize to the persisted JSON shape."""
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes | str) -> "ApprovalRecord":
        """Deserialize a persisted record.

        Missing fields written by older schema versions take their defaults.

        Raises:
            RecordCorruptedError: If the payload is not a valid record
        """
        try:
            return cls.model_validate_json(data)
        except ValidationError as e:
            raise RecordCorruptedError(
                f"Stored approval record is not valid: {e.error_count()} validation error(s)",
                context={"errors": e.errors(include_url=False)},
            ) from e


# Fields that may still change after a record is finalized
VERIFICATION_FIELDS = frozenset({"verified", "verified_at", "verification_comment"})
DELIVERY_TRACKING_FIELDS = frozenset(
    {"notification_sent", "notification_post_id", "outcome_notified"}
)


def changed_fields(existing: ApprovalRecord, updated: ApprovalRecord) -> set[str]:
    """Return the names of fields whose values differ between two records."""
    before: dict[str, Any] = existing.model_dump()
    after: dict[str, Any] = updated.model_dump()
    return {name for name, value in after.items() if before.get(name) != value}


def validate_description(description: str) -> str:
    """Validate and normalize a request description.

    Args:
        description: Raw description text

    Returns:
        Trimmed description

    Raises:
        InvalidInputError: If empty after trimming or longer than the maximum
    """
    trimmed = (description or "").strip()
    if not trimmed:
        raise InvalidInputError(
            "Description is required",
            context={"field": "description"},
        )

    if len(trimmed) > MAX_DESCRIPTION_LENGTH:
        raise InvalidInputError(
            f"Description is {len(trimmed)} characters (max {MAX_DESCRIPTION_LENGTH})",
            context={
                "field": "description",
                "length": len(trimmed),
                "max_length": MAX_DESCRIPTION_LENGTH,
            },
        )
    return trimmed


def validate_record(record: ApprovalRecord) -> None:
    """Check that a record carries every required field.

    Raises:
        InvalidInputError: Naming the first missing or invalid field
    """
    required = {
        "id": record.id,
        "code": record.code,
        "requester_id": record.requester_id,
        "approver_id": record.approver_id,
        "description": record.description,
    }
    for field_name, value in required.items():
        if not value:
            raise InvalidInputError(
                f"Approval record {field_name} is required",
                context={"field": field_name, "record_id": record.id},
            )

    if record.created_at <= 0:
        raise InvalidInputError(
            "Approval record created_at must be positive",
            context={"field": "created_at", "record_id": record.id},
        )

    if record.schema_version <= 0:
        raise InvalidInputError(
            "Approval record schema_version must be positive",
            context={"field": "schema_version", "record_id": record.id},
        )


__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "MAX_DESCRIPTION_LENGTH",
    "MAX_VERIFICATION_COMMENT_LENGTH",
    "SYSTEM_ACTOR",
    "TIMEOUT_CANCEL_REASON",
    "ApprovalStatus",
    "Decision",
    "CancellationReason",
    "UserSnapshot",
    "ApprovalRecord",
    "VERIFICATION_FIELDS",
    "DELIVERY_TRACKING_FIELDS",
    "cancellation_reason_label",
    "changed_fields",
    "new_record_id",
    "now_millis",
    "validate_description",
    "validate_record",
]
