"""Key/value persistence for approval records.

Provides:
- Pluggable key/value backends (in-memory, Redis)
- RecordStore with code, requester and approver indexes
"""

from approver.infra.kv.backend import (
    InMemoryKVBackend,
    KVBackend,
    KVBackendError,
    RedisKVBackend,
)
from approver.infra.kv.records import RecordStore

__all__ = [
    "KVBackend",
    "KVBackendError",
    "InMemoryKVBackend",
    "RedisKVBackend",
    "RecordStore",
]
