"""Tests for ApprovalService.

Tests cover:
- Approval request creation
- Cancellation by the requester and by the timeout path
- Approve/deny decisions
- Verification of approved requests
- Permission and status guards
- Best-effort notifications
"""

from unittest.mock import patch

import pytest

from approver.domain.codegen import is_valid_code_format
from approver.domain.exceptions import (
    AlreadyVerifiedError,
    CodeGenerationExhaustedError,
    InvalidInputError,
    NotApprovedError,
    PermissionDeniedError,
    PersistenceError,
    RecordImmutableError,
    RecordNotFoundError,
)
from approver.domain.models import (
    MAX_VERIFICATION_COMMENT_LENGTH,
    SYSTEM_ACTOR,
    TIMEOUT_CANCEL_REASON,
    ApprovalStatus,
    UserSnapshot,
)
from approver.domain.services.approval import ApprovalService
from approver.domain.services.notification import (
    MockNotificationBackend,
    NotificationEvent,
)
from approver.infra.kv.records import RecordStore


@pytest.fixture
async def pending(service: ApprovalService, alice: UserSnapshot, bob: UserSnapshot, clock):
    """A pending request from alice to bob, with the clock moved past creation."""
    record = await service.create_request(alice, bob, "Deploy hotfix", channel_id="town-square")
    clock.advance(seconds=60)
    return record


# ==================== Test: Create Approval Request ====================


@pytest.mark.asyncio
async def test_create_request_success(
    service: ApprovalService, store: RecordStore, alice: UserSnapshot, bob: UserSnapshot, clock
) -> None:
    """Creating a request yields a pending record with id and code."""
    record = await service.create_request(
        alice, bob, "  Deploy hotfix  ", channel_id="town-square", team_id="team-1"
    )

    assert record.status == ApprovalStatus.PENDING
    assert len(record.id) == 26
    assert is_valid_code_format(record.code)
    assert record.description == "Deploy hotfix"
    assert record.created_at == clock.now_ms
    assert record.decided_at == 0
    assert record.requester_username == "alice"
    assert record.approver_display_name == "Bob Approver"
    assert record.request_channel_id == "town-square"
    assert record.team_id == "team-1"

    assert await store.get_by_code(record.code) == record


@pytest.mark.asyncio
async def test_create_request_ids_and_codes_are_unique(
    service: ApprovalService, alice: UserSnapshot, bob: UserSnapshot
) -> None:
    records = [await service.create_request(alice, bob, f"change {i}") for i in range(20)]

    assert len({r.id for r in records}) == 20
    assert len({r.code for r in records}) == 20


@pytest.mark.asyncio
async def test_create_request_notifies_approver_and_tracks_post(
    service: ApprovalService,
    store: RecordStore,
    notifier: MockNotificationBackend,
    alice: UserSnapshot,
    bob: UserSnapshot,
) -> None:
    record = await service.create_request(alice, bob, "Deploy hotfix")

    assert notifier.events_for(bob.id) == [NotificationEvent.APPROVAL_REQUESTED]
    assert record.notification_sent is True
    assert record.notification_post_id == "post-1"

    stored = await store.get_by_id(record.id)
    assert stored.notification_sent is True
    assert stored.notification_post_id == "post-1"


@pytest.mark.asyncio
async def test_create_request_survives_notification_failure(
    service: ApprovalService,
    store: RecordStore,
    notifier: MockNotificationBackend,
    alice: UserSnapshot,
    bob: UserSnapshot,
) -> None:
    """A failed DM is logged, not raised; the record stays untracked."""
    notifier.notify_error = RuntimeError("direct_messages_disabled")

    record = await service.create_request(alice, bob, "Deploy hotfix")

    assert record.status == ApprovalStatus.PENDING
    assert record.notification_sent is False
    assert (await store.get_by_id(record.id)).notification_post_id == ""


@pytest.mark.asyncio
@pytest.mark.parametrize("description", ["", "   ", "x" * 1001])
async def test_create_request_invalid_description(
    service: ApprovalService,
    store: RecordStore,
    alice: UserSnapshot,
    bob: UserSnapshot,
    description: str,
) -> None:
    with pytest.raises(InvalidInputError):
        await service.create_request(alice, bob, description)

    assert await store.list_all() == []


@pytest.mark.asyncio
async def test_create_request_requires_party_ids(
    service: ApprovalService, alice: UserSnapshot
) -> None:
    with pytest.raises(InvalidInputError, match="approver ID"):
        await service.create_request(alice, UserSnapshot(id="  "), "Deploy hotfix")

    with pytest.raises(InvalidInputError, match="requester ID"):
        await service.create_request(UserSnapshot(id=""), alice, "Deploy hotfix")


@pytest.mark.asyncio
async def test_create_request_code_exhaustion(
    service: ApprovalService, alice: UserSnapshot, bob: UserSnapshot
) -> None:
    async def always_taken(code: str) -> bool:
        return True

    with patch.object(service.store, "code_exists", always_taken):
        with pytest.raises(CodeGenerationExhaustedError):
            await service.create_request(alice, bob, "Deploy hotfix")


# ==================== Test: Cancel ====================


@pytest.mark.asyncio
async def test_cancel_by_requester(
    service: ApprovalService, store: RecordStore, pending, alice: UserSnapshot
) -> None:
    record = await service.cancel_approval(pending.code, alice.id, "no longer needed")

    assert record.status == ApprovalStatus.CANCELED
    assert record.decided_at > record.created_at
    assert record.canceled_at == record.decided_at
    assert record.canceled_reason == "no longer needed"
    assert (await store.get_by_id(pending.id)).status == ApprovalStatus.CANCELED


@pytest.mark.asyncio
async def test_cancel_records_trimmed_details(
    service: ApprovalService, pending, alice: UserSnapshot
) -> None:
    record = await service.cancel_approval(
        f" {pending.code} ", alice.id, "Other", details="  moved to ticket 42 "
    )

    assert record.canceled_reason == "Other"
    assert record.canceled_details == "moved to ticket 42"


@pytest.mark.asyncio
async def test_cancel_twice_fails_second_time(
    service: ApprovalService, pending, alice: UserSnapshot
) -> None:
    await service.cancel_approval(pending.code, alice.id, "no longer needed")

    with pytest.raises(RecordImmutableError) as exc_info:
        await service.cancel_approval(pending.code, alice.id, "no longer needed")

    assert exc_info.value.context["current_status"] == "canceled"


@pytest.mark.asyncio
async def test_cancel_by_other_user_is_denied(
    service: ApprovalService, store: RecordStore, pending, carol: UserSnapshot, bob: UserSnapshot
) -> None:
    """Neither bystanders nor the approver may cancel."""
    for user in (carol, bob):
        with pytest.raises(PermissionDeniedError) as exc_info:
            await service.cancel_approval(pending.code, user.id, "no longer needed")
        assert exc_info.value.context["actor_id"] == user.id
        assert exc_info.value.context["expected_actor_id"] == pending.requester_id

    assert await store.get_by_id(pending.id) == pending


@pytest.mark.asyncio
@pytest.mark.parametrize("code", ["", "   ", "A-X7K9Q", "ax7k9q2", "A-00000O"])
async def test_cancel_rejects_malformed_code(
    service: ApprovalService, alice: UserSnapshot, code: str
) -> None:
    with pytest.raises(InvalidInputError):
        await service.cancel_approval(code, alice.id, "no longer needed")


@pytest.mark.asyncio
async def test_cancel_requires_reason(
    service: ApprovalService, pending, alice: UserSnapshot
) -> None:
    with pytest.raises(InvalidInputError, match="cancellation reason"):
        await service.cancel_approval(pending.code, alice.id, "  ")


@pytest.mark.asyncio
async def test_cancel_unknown_code(service: ApprovalService, alice: UserSnapshot) -> None:
    with pytest.raises(RecordNotFoundError):
        await service.cancel_approval("A-ZZZZZZ", alice.id, "no longer needed")


@pytest.mark.asyncio
async def test_cancel_notifies_both_parties_and_updates_post(
    service: ApprovalService,
    notifier: MockNotificationBackend,
    pending,
    alice: UserSnapshot,
    bob: UserSnapshot,
) -> None:
    notifier.clear()

    await service.cancel_approval(pending.code, alice.id, "no longer needed")

    assert notifier.events_for(bob.id) == [NotificationEvent.CANCELED]
    assert notifier.events_for(alice.id) == [NotificationEvent.CANCELED]
    assert notifier.updated_posts == [
        (pending.notification_post_id, pending.id, NotificationEvent.CANCELED, "alice")
    ]


@pytest.mark.asyncio
async def test_timeout_cancel_attributes_system(
    service: ApprovalService,
    notifier: MockNotificationBackend,
    pending,
    alice: UserSnapshot,
    bob: UserSnapshot,
) -> None:
    notifier.clear()

    record = await service.cancel_approval(
        pending.code, alice.id, TIMEOUT_CANCEL_REASON, timed_out=True
    )

    assert record.status == ApprovalStatus.CANCELED
    assert record.canceled_reason == TIMEOUT_CANCEL_REASON
    assert notifier.events_for(alice.id) == [NotificationEvent.TIMED_OUT]
    assert notifier.events_for(bob.id) == []
    assert notifier.sent_notifications[0].actor == SYSTEM_ACTOR
    assert notifier.updated_posts[0][2:] == (NotificationEvent.TIMED_OUT, SYSTEM_ACTOR)


@pytest.mark.asyncio
async def test_cancel_succeeds_when_post_update_fails(
    service: ApprovalService,
    notifier: MockNotificationBackend,
    pending,
    alice: UserSnapshot,
) -> None:
    notifier.update_error = RuntimeError("404 post not found")

    record = await service.cancel_approval(pending.code, alice.id, "no longer needed")

    assert record.status == ApprovalStatus.CANCELED


# ==================== Test: Decisions ====================


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("decision", "expected_status", "expected_event"),
    [
        ("approved", ApprovalStatus.APPROVED, NotificationEvent.APPROVED),
        ("denied", ApprovalStatus.DENIED, NotificationEvent.DENIED),
    ],
)
async def test_record_decision(
    service: ApprovalService,
    store: RecordStore,
    notifier: MockNotificationBackend,
    pending,
    alice: UserSnapshot,
    bob: UserSnapshot,
    decision: str,
    expected_status: ApprovalStatus,
    expected_event: NotificationEvent,
) -> None:
    notifier.clear()

    record = await service.record_decision(pending.id, bob.id, decision, "  ship it ")

    assert record.status == expected_status
    assert record.decision_comment == "ship it"
    assert record.decided_at > record.created_at
    assert record.outcome_notified is True
    assert notifier.events_for(alice.id) == [expected_event]
    assert notifier.updated_posts[0][2] == expected_event

    stored = await store.get_by_id(pending.id)
    assert stored.status == expected_status
    assert stored.outcome_notified is True


@pytest.mark.asyncio
async def test_record_decision_outcome_not_notified_on_failure(
    service: ApprovalService, notifier: MockNotificationBackend, pending, bob: UserSnapshot
) -> None:
    notifier.notify_error = RuntimeError("user_blocked_bot")

    record = await service.record_decision(pending.id, bob.id, "approved")

    assert record.status == ApprovalStatus.APPROVED
    assert record.outcome_notified is False


@pytest.mark.asyncio
async def test_record_decision_by_non_approver(
    service: ApprovalService, store: RecordStore, pending, alice: UserSnapshot
) -> None:
    """The requester cannot approve their own request."""
    with pytest.raises(PermissionDeniedError):
        await service.record_decision(pending.id, alice.id, "approved")

    assert (await store.get_by_id(pending.id)).status == ApprovalStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.parametrize("decision", ["", "approve", "APPROVED", "pending", "canceled"])
async def test_record_decision_invalid_value(
    service: ApprovalService, pending, bob: UserSnapshot, decision: str
) -> None:
    with pytest.raises(InvalidInputError, match="Invalid decision"):
        await service.record_decision(pending.id, bob.id, decision)


@pytest.mark.asyncio
async def test_record_decision_twice_is_immutable(
    service: ApprovalService, store: RecordStore, pending, bob: UserSnapshot
) -> None:
    await service.record_decision(pending.id, bob.id, "approved")

    with pytest.raises(RecordImmutableError) as exc_info:
        await service.record_decision(pending.id, bob.id, "denied")

    assert exc_info.value.context["current_status"] == "approved"
    assert (await store.get_by_id(pending.id)).status == ApprovalStatus.APPROVED


@pytest.mark.asyncio
async def test_record_decision_after_cancel_is_immutable(
    service: ApprovalService, pending, alice: UserSnapshot, bob: UserSnapshot
) -> None:
    await service.cancel_approval(pending.code, alice.id, "no longer needed")

    with pytest.raises(RecordImmutableError):
        await service.record_decision(pending.id, bob.id, "approved")


@pytest.mark.asyncio
async def test_record_decision_unknown_id(service: ApprovalService, bob: UserSnapshot) -> None:
    with pytest.raises(RecordNotFoundError):
        await service.record_decision("z" * 26, bob.id, "approved")


@pytest.mark.asyncio
async def test_timestamps_never_precede_creation(
    service: ApprovalService, alice: UserSnapshot, bob: UserSnapshot, clock
) -> None:
    """A clock that steps backwards still yields decided_at >= created_at."""
    record = await service.create_request(alice, bob, "Deploy hotfix")
    clock.advance(ms=-5000)

    decided = await service.record_decision(record.id, bob.id, "denied")

    assert decided.decided_at == record.created_at


# ==================== Test: Verification ====================


@pytest.mark.asyncio
async def test_verify_approved_request(
    service: ApprovalService,
    store: RecordStore,
    notifier: MockNotificationBackend,
    pending,
    alice: UserSnapshot,
    bob: UserSnapshot,
    clock,
) -> None:
    await service.record_decision(pending.id, bob.id, "approved")
    clock.advance(seconds=30)
    notifier.clear()

    record = await service.verify_request(pending.code, alice.id, " deployed at 14:00 ")

    assert record.verified is True
    assert record.verified_at == clock.now_ms
    assert record.verification_comment == "deployed at 14:00"
    assert record.status == ApprovalStatus.APPROVED
    assert notifier.events_for(bob.id) == [NotificationEvent.VERIFIED]
    assert (await store.get_by_id(pending.id)).verified is True


@pytest.mark.asyncio
async def test_verify_twice_fails(
    service: ApprovalService, pending, alice: UserSnapshot, bob: UserSnapshot
) -> None:
    await service.record_decision(pending.id, bob.id, "approved")
    await service.verify_request(pending.code, alice.id)

    with pytest.raises(AlreadyVerifiedError, match="already verified"):
        await service.verify_request(pending.code, alice.id)


@pytest.mark.asyncio
@pytest.mark.parametrize("decision", [None, "denied"])
async def test_verify_requires_approved_status(
    service: ApprovalService, pending, alice: UserSnapshot, bob: UserSnapshot, decision
) -> None:
    if decision:
        await service.record_decision(pending.id, bob.id, decision)

    with pytest.raises(NotApprovedError) as exc_info:
        await service.verify_request(pending.code, alice.id)

    assert isinstance(exc_info.value, RecordImmutableError)


@pytest.mark.asyncio
async def test_verify_by_approver_is_denied(
    service: ApprovalService, pending, bob: UserSnapshot
) -> None:
    await service.record_decision(pending.id, bob.id, "approved")

    with pytest.raises(PermissionDeniedError):
        await service.verify_request(pending.code, bob.id)


@pytest.mark.asyncio
async def test_verify_comment_too_long(
    service: ApprovalService, pending, alice: UserSnapshot
) -> None:
    with pytest.raises(InvalidInputError):
        await service.verify_request(
            pending.code, alice.id, "x" * (MAX_VERIFICATION_COMMENT_LENGTH + 1)
        )


# ==================== Test: Reads and failures ====================


@pytest.mark.asyncio
async def test_reads(
    service: ApprovalService, pending, alice: UserSnapshot, bob: UserSnapshot, carol: UserSnapshot
) -> None:
    assert (await service.get_by_id(pending.id)).code == pending.code
    assert (await service.get_by_code(pending.code)).id == pending.id
    assert [r.id for r in await service.list_by_user(alice.id)] == [pending.id]
    assert [r.id for r in await service.list_by_user(bob.id)] == [pending.id]
    assert await service.list_by_user(carol.id) == []


@pytest.mark.asyncio
async def test_store_failure_propagates_without_retry(
    service: ApprovalService, pending, alice: UserSnapshot
) -> None:
    calls = []

    async def failing_save(record):
        calls.append(record.id)
        raise PersistenceError("write failed", context={"operation": "set"})

    with patch.object(service.store, "save", failing_save):
        with pytest.raises(PersistenceError):
            await service.cancel_approval(pending.code, alice.id, "no longer needed")

    assert calls == [pending.id]
