"""Approval record store with secondary indexes on a plain key/value backend.

Key layout (shared with data written by earlier deployments):

    approval:record:<id>                                        -> record JSON
    approval:code:<code>                                        -> JSON string id
    approval:index:requester:<userID>:<invertedTs>:<id>         -> JSON string id
    approval:index:approver:<userID>:<invertedTs>:<id>          -> JSON string id

``invertedTs`` is ``9999999999999 - createdAt`` zero-padded to 13 digits, so a
lexicographic listing of one user's index yields newest records first.

The backend offers no transactions. ``save`` checks immutability with a read
followed by a write (two racing finalizers can both succeed; the later write
wins), and the four writes of one save are not atomic as a group. The primary
record is always written before its indexes, and readers treat an index entry
whose record is gone as not-found.
"""

import json
import logging
import time

from approver.domain.exceptions import (
    InvalidInputError,
    PersistenceError,
    RecordCorruptedError,
    RecordImmutableError,
    RecordNotFoundError,
)
from approver.domain.models import (
    DELIVERY_TRACKING_FIELDS,
    VERIFICATION_FIELDS,
    ApprovalRecord,
    ApprovalStatus,
    changed_fields,
    validate_record,
)
from approver.infra.kv.backend import KVBackend, KVBackendError
from approver.infra.observability import metrics

logger = logging.getLogger(__name__)

RECORD_KEY_PREFIX = "approval:record:"
CODE_KEY_PREFIX = "approval:code:"
REQUESTER_INDEX_PREFIX = "approval:index:requester:"
APPROVER_INDEX_PREFIX = "approval:index:approver:"

MAX_TIMESTAMP = 9999999999999

# Maximum number of keys a single scan examines
MAX_SCAN_KEYS = 10000

# Length of an opaque record id; used to tell ids from codes
RECORD_ID_LENGTH = 26


def make_record_key(record_id: str) -> str:
    return f"{RECORD_KEY_PREFIX}{record_id}"


def make_code_key(code: str) -> str:
    return f"{CODE_KEY_PREFIX}{code}"


def _inverted_timestamp(created_at: int) -> str:
    return f"{MAX_TIMESTAMP - created_at:013d}"


def make_requester_index_key(user_id: str, created_at: int, record_id: str) -> str:
    return f"{REQUESTER_INDEX_PREFIX}{user_id}:{_inverted_timestamp(created_at)}:{record_id}"


def make_approver_index_key(user_id: str, created_at: int, record_id: str) -> str:
    return f"{APPROVER_INDEX_PREFIX}{user_id}:{_inverted_timestamp(created_at)}:{record_id}"


def is_finalized_record_update(existing: ApprovalRecord, updated: ApprovalRecord) -> bool:
    """Check whether an overwrite of a decided record is allowed.

    Decided records only accept changes to delivery-tracking fields and a
    single first-time verification of an approved record. A write that
    changes nothing is rejected too.
    """
    diff = changed_fields(existing, updated)
    if not diff:
        return False

    if diff - VERIFICATION_FIELDS - DELIVERY_TRACKING_FIELDS:
        return False

    if diff & VERIFICATION_FIELDS:
        if existing.status != ApprovalStatus.APPROVED or existing.verified:
            return False
        if not updated.verified or updated.verified_at <= 0:
            return False

    return True


class RecordStore:
    """Persistence for approval records and their lookup indexes.

    Example:
        store = RecordStore(InMemoryKVBackend())
        await store.save(record)
        same = await store.get_by_code(record.code)
        mine = await store.list_by_user("user-1")
    """

    def __init__(
        self,
        backend: KVBackend,
        max_scan_keys: int = MAX_SCAN_KEYS,
        page_size: int = 1000,
    ) -> None:
        """Initialize record store.

        Args:
            backend: Key/value backend
            max_scan_keys: Upper bound on keys examined by one scan
            page_size: Keys requested per list call
        """
        self.backend = backend
        self.max_scan_keys = max_scan_keys
        self.page_size = page_size

    # ------------------------------------------------------------------
    # Backend access with error wrapping
    # ------------------------------------------------------------------

    async def _get(self, key: str) -> bytes | None:
        try:
            return await self.backend.get(key)
        except KVBackendError as e:
            raise PersistenceError(
                f"Failed to read {key}: {e}",
                context={"operation": "get", "key": key},
            ) from e

    async def _set(self, key: str, value: bytes) -> None:
        try:
            await self.backend.set(key, value)
        except KVBackendError as e:
            raise PersistenceError(
                f"Failed to write {key}: {e}",
                context={"operation": "set", "key": key},
            ) from e

    async def _list_page(self, offset: int, limit: int) -> list[str]:
        try:
            return await self.backend.list_keys(offset, limit)
        except KVBackendError as e:
            raise PersistenceError(
                f"Failed to list keys: {e}",
                context={"operation": "list", "offset": offset},
            ) from e

    async def _scan_keys(self, *prefixes: str) -> list[str]:
        """List every key starting with one of ``prefixes``.

        The backend cannot filter, so this pages through the full keyspace
        and filters client-side, stopping at ``max_scan_keys``.
        """
        matched: list[str] = []
        offset = 0

        while offset < self.max_scan_keys:
            limit = min(self.page_size, self.max_scan_keys - offset)
            keys = await self._list_page(offset, limit)

            matched.extend(key for key in keys if key.startswith(prefixes))
            offset += len(keys)

            if len(keys) < limit:
                return matched

        # A keyspace of exactly max_scan_keys was listed completely
        if not await self._list_page(offset, 1):
            return matched

        logger.warning(
            "Key scan hit maximum key limit - results may be incomplete",
            extra={"operation": "list", "limit": self.max_scan_keys},
        )
        return matched

    async def _read_index(self, key: str) -> str | None:
        """Resolve an index entry to a record id, or None if unreadable."""
        try:
            data = await self._get(key)
        except PersistenceError as e:
            logger.warning(
                "Failed to read index entry",
                extra={"key": key, "error": str(e)},
            )
            return None

        if data is None:
            return None

        try:
            record_id = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(
                "Failed to decode index entry",
                extra={"key": key, "error": str(e)},
            )
            return None

        if not isinstance(record_id, str) or not record_id:
            logger.warning("Index entry does not hold a record id", extra={"key": key})
            return None
        return record_id

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save(self, record: ApprovalRecord) -> None:
        """Persist a record and (re)write its indexes.

        Args:
            record: Record to store

        Raises:
            InvalidInputError: If the record is missing a required field
            RecordImmutableError: If the stored record is decided and this write
                changes more than verification/delivery-tracking fields
            PersistenceError: If a backend write fails
        """
        if not record.id:
            raise InvalidInputError("Approval record id is required", context={"field": "id"})
        validate_record(record)

        start = time.perf_counter()

        try:
            existing = await self.get_by_id(record.id)
        except RecordNotFoundError:
            existing = None
        except RecordCorruptedError as e:
            logger.warning(
                "Overwriting unreadable approval record",
                extra={"approval_id": record.id, "error": str(e)},
            )
            existing = None

        if existing is not None and existing.status != ApprovalStatus.PENDING:
            if not is_finalized_record_update(existing, record):
                metrics.record_store_operation("save", "immutable")
                raise RecordImmutableError(
                    f"Cannot modify approval record {record.id} with status {existing.status.value}",
                    context={
                        "record_id": record.id,
                        "code": existing.code,
                        "current_status": existing.status.value,
                    },
                )

        record_id_json = json.dumps(record.id).encode("utf-8")

        try:
            await self._set(make_record_key(record.id), record.to_json())

            if record.code:
                await self._set(make_code_key(record.code), record_id_json)

            if record.requester_id and record.created_at > 0:
                await self._set(
                    make_requester_index_key(record.requester_id, record.created_at, record.id),
                    record_id_json,
                )

            if record.approver_id and record.created_at > 0:
                await self._set(
                    make_approver_index_key(record.approver_id, record.created_at, record.id),
                    record_id_json,
                )
        except PersistenceError:
            metrics.record_store_operation("save", "error")
            raise

        metrics.record_store_operation("save", "success", time.perf_counter() - start)
        logger.debug(
            "Approval record saved",
            extra={
                "approval_id": record.id,
                "approval_code": record.code,
                "status": record.status.value,
            },
        )

    async def delete(self, record_id: str) -> bool:
        """Remove the primary record only.

        Index entries are left behind and will resolve to not-found.
        Administrative and test use only.

        Returns:
            True if a record was deleted
        """
        if not record_id:
            raise InvalidInputError("Approval record id is required", context={"field": "id"})

        key = make_record_key(record_id)
        try:
            deleted = await self.backend.delete(key)
        except KVBackendError as e:
            metrics.record_store_operation("delete", "error")
            raise PersistenceError(
                f"Failed to delete approval record {record_id}: {e}",
                context={"operation": "delete", "key": key, "record_id": record_id},
            ) from e

        metrics.record_store_operation("delete", "success" if deleted else "not_found")
        logger.warning(
            "Approval record deleted; index entries left in place",
            extra={"approval_id": record_id},
        )
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_by_id(self, record_id: str) -> ApprovalRecord:
        """Load a record by id.

        Raises:
            InvalidInputError: If the id is empty
            RecordNotFoundError: If no record exists
            RecordCorruptedError: If the stored bytes are not a valid record
            PersistenceError: If the backend read fails
        """
        if not record_id:
            raise InvalidInputError("Approval record id is required", context={"field": "id"})

        key = make_record_key(record_id)
        data = await self._get(key)

        if data is None:
            metrics.record_store_operation("get", "not_found")
            raise RecordNotFoundError(
                f"Approval record {record_id} not found",
                context={"record_id": record_id},
            )

        try:
            record = ApprovalRecord.from_json(data)
        except RecordCorruptedError as e:
            metrics.record_store_operation("get", "corrupted")
            raise RecordCorruptedError(
                f"Failed to decode approval record {record_id}: {e.message}",
                context={**e.context, "record_id": record_id, "key": key},
            ) from e

        metrics.record_store_operation("get", "success")
        return record

    async def get_by_code(self, code: str) -> ApprovalRecord:
        """Load a record by its human-friendly code.

        Raises:
            RecordNotFoundError: If the code is unknown, or the index points at
                a record that no longer exists (context carries the stale id)
        """
        if not code:
            raise InvalidInputError("Approval code is required", context={"field": "code"})

        key = make_code_key(code)
        data = await self._get(key)

        if data is None:
            metrics.record_store_operation("get_by_code", "not_found")
            raise RecordNotFoundError(
                f"Approval code {code} not found",
                context={"code": code},
            )

        try:
            record_id = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise RecordCorruptedError(
                f"Failed to decode code index entry for {code}",
                context={"code": code, "key": key},
            ) from e

        if not isinstance(record_id, str) or not record_id:
            raise RecordCorruptedError(
                f"Code index entry for {code} does not hold a record id",
                context={"code": code, "key": key},
            )

        try:
            return await self.get_by_id(record_id)
        except RecordNotFoundError as e:
            logger.warning(
                "Code index points at a missing approval record",
                extra={"approval_code": code, "approval_id": record_id},
            )
            raise RecordNotFoundError(
                f"Approval code {code} points at missing record {record_id}",
                context={"code": code, "record_id": record_id, "stale_index": True},
            ) from e

    async def get_by_code_or_id(self, code_or_id: str) -> ApprovalRecord:
        """Load a record by either its code or its full id.

        Values that are exactly 26 characters with no dash are treated as ids.
        """
        value = (code_or_id or "").strip()
        if not value:
            raise InvalidInputError(
                "Approval code or id is required", context={"field": "code_or_id"}
            )

        if len(value) == RECORD_ID_LENGTH and "-" not in value:
            return await self.get_by_id(value)
        return await self.get_by_code(value)

    async def code_exists(self, code: str) -> bool:
        """Return True if a code index entry exists for ``code``."""
        return await self._get(make_code_key(code)) is not None

    async def _load_indexed(
        self, keys: list[str], seen: set[str], user_id: str | None = None
    ) -> list[ApprovalRecord]:
        """Load the records behind index keys, skipping failures and duplicates."""
        records: list[ApprovalRecord] = []

        for key in keys:
            record_id = await self._read_index(key)
            if record_id is None or record_id in seen:
                continue

            try:
                record = await self.get_by_id(record_id)
            except (RecordNotFoundError, RecordCorruptedError, PersistenceError) as e:
                logger.warning(
                    "Failed to load approval record from index",
                    extra={
                        "approval_id": record_id,
                        "user_id": user_id,
                        "key": key,
                        "error": str(e),
                    },
                )
                continue

            seen.add(record_id)
            records.append(record)

        return records

    async def list_by_user(self, user_id: str) -> list[ApprovalRecord]:
        """List records where the user is requester or approver.

        Records that fail to load are skipped with a warning. The result is
        de-duplicated and sorted newest first.

        Raises:
            InvalidInputError: If the user id is empty
            PersistenceError: If the key listing itself fails
        """
        user_id = (user_id or "").strip()
        if not user_id:
            raise InvalidInputError("User id is required", context={"field": "user_id"})

        start = time.perf_counter()

        requester_prefix = f"{REQUESTER_INDEX_PREFIX}{user_id}:"
        approver_prefix = f"{APPROVER_INDEX_PREFIX}{user_id}:"
        keys = await self._scan_keys(requester_prefix, approver_prefix)

        seen: set[str] = set()
        records = await self._load_indexed(
            [k for k in keys if k.startswith(requester_prefix)], seen, user_id
        )
        records += await self._load_indexed(
            [k for k in keys if k.startswith(approver_prefix)], seen, user_id
        )

        # Each index is newest-first on its own; the merge needs a sort
        records.sort(key=lambda r: (r.created_at, r.id), reverse=True)

        metrics.record_store_operation("list_by_user", "success", time.perf_counter() - start)
        return records

    async def list_all(self) -> list[ApprovalRecord]:
        """List every primary record, skipping ones that fail to load."""
        keys = await self._scan_keys(RECORD_KEY_PREFIX)
        records: list[ApprovalRecord] = []

        for key in keys:
            record_id = key[len(RECORD_KEY_PREFIX) :]
            try:
                records.append(await self.get_by_id(record_id))
            except (RecordNotFoundError, RecordCorruptedError, PersistenceError) as e:
                logger.warning(
                    "Failed to retrieve approval record during full listing",
                    extra={"approval_id": record_id, "error": str(e)},
                )

        metrics.record_store_operation("list_all", "success")
        return records

    async def list_pending_older_than(self, threshold_ms: int, now_ms: int) -> list[ApprovalRecord]:
        """Find pending records at least ``threshold_ms`` old.

        Scans the approver index. Order of the result is unspecified.

        Args:
            threshold_ms: Minimum age in milliseconds
            now_ms: Current time in epoch milliseconds
        """
        keys = await self._scan_keys(APPROVER_INDEX_PREFIX)
        candidates = await self._load_indexed(keys, set())

        stale = [
            record
            for record in candidates
            if record.status == ApprovalStatus.PENDING and now_ms - record.created_at >= threshold_ms
        ]

        logger.debug(
            "Completed pending timeout scan",
            extra={
                "index_keys": len(keys),
                "threshold_ms": threshold_ms,
                "eligible_count": len(stale),
            },
        )
        metrics.record_store_operation("list_pending", "success")
        return stale


__all__ = [
    "RecordStore",
    "MAX_TIMESTAMP",
    "MAX_SCAN_KEYS",
    "is_finalized_record_update",
    "make_record_key",
    "make_code_key",
    "make_requester_index_key",
    "make_approver_index_key",
]
