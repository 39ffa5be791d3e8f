"""Shared pytest fixtures.

Key goals:
- Prevent the global settings singleton from leaking state across tests.
- Provide a ready in-memory store, a recording notifier and a controllable
  clock so lifecycle tests are deterministic.
"""

from __future__ import annotations

from collections.abc import Callable

import pytest

from approver import config as config_module
from approver.domain.codegen import CODE_ALPHABET
from approver.domain.models import ApprovalRecord, ApprovalStatus, UserSnapshot
from approver.domain.services.approval import ApprovalService
from approver.domain.services.notification import MockNotificationBackend
from approver.infra.kv.backend import InMemoryKVBackend
from approver.infra.kv.records import RecordStore

# 2023-11-14T22:13:20Z
BASE_TIME_MS = 1_700_000_000_000


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now_ms: int = BASE_TIME_MS) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, *, ms: int = 0, seconds: int = 0) -> int:
        self.now_ms += ms + seconds * 1000
        return self.now_ms


@pytest.fixture(autouse=True)
def _reset_global_settings() -> None:
    """Ensure the global settings singleton does not leak between tests."""
    config_module._settings = None
    yield
    config_module._settings = None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def backend() -> InMemoryKVBackend:
    """Initialized in-memory key/value backend."""
    kv = InMemoryKVBackend()
    await kv.init()
    yield kv
    await kv.close()


@pytest.fixture
def store(backend: InMemoryKVBackend) -> RecordStore:
    return RecordStore(backend)


@pytest.fixture
def notifier() -> MockNotificationBackend:
    return MockNotificationBackend()


@pytest.fixture
def service(
    store: RecordStore, notifier: MockNotificationBackend, clock: FakeClock
) -> ApprovalService:
    """ApprovalService wired to the in-memory store, mock notifier and fake clock."""
    return ApprovalService(store, notifier=notifier, clock=clock)


@pytest.fixture
def alice() -> UserSnapshot:
    return UserSnapshot(id="user-alice", username="alice", display_name="Alice Requester")


@pytest.fixture
def bob() -> UserSnapshot:
    return UserSnapshot(id="user-bob", username="bob", display_name="Bob Approver")


@pytest.fixture
def carol() -> UserSnapshot:
    return UserSnapshot(id="user-carol", username="carol", display_name="Carol Bystander")


@pytest.fixture
def make_record() -> Callable[..., ApprovalRecord]:
    """Factory for complete approval records with overridable fields."""
    counter = {"n": 0}

    def _make(**overrides) -> ApprovalRecord:
        counter["n"] += 1
        n = counter["n"]
        fields = {
            "id": f"{n:026d}",
            "code": f"A-{CODE_ALPHABET[n % 32]}{CODE_ALPHABET[(n // 32) % 32]}TEST",
            "requester_id": "user-alice",
            "requester_username": "alice",
            "requester_display_name": "Alice Requester",
            "approver_id": "user-bob",
            "approver_username": "bob",
            "approver_display_name": "Bob Approver",
            "description": f"Deploy change #{n}",
            "status": ApprovalStatus.PENDING,
            "created_at": BASE_TIME_MS + n,
        }
        fields.update(overrides)
        return ApprovalRecord(**fields)

    return _make
