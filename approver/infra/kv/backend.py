"""Key/value backends for approval record persistence.

The record store only needs four primitives: get, set, delete and a paginated
listing of every key. Backends give no transactions and no prefix filtering;
``list_keys`` returns all keys in lexicographic order and callers filter
themselves.

Example:
    backend = RedisKVBackend(
        redis_url=settings.redis_url,
        pool_size=settings.redis_pool_size,
        timeout_seconds=settings.redis_timeout_seconds,
    )
    await backend.init()

    await backend.set("approval:record:abc", b"{...}")
    data = await backend.get("approval:record:abc")
    keys = await backend.list_keys(0, 1000)
"""

import logging
from abc import ABC, abstractmethod

from prometheus_client import Counter, Histogram
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from approver.infra.observability.metrics import _registry

logger = logging.getLogger(__name__)

kv_operations_total = Counter(
    "approver_kv_operations_total",
    "Total number of key/value backend operations",
    ["backend", "operation", "status"],
    registry=_registry,
)

kv_operation_duration_seconds = Histogram(
    "approver_kv_operation_duration_seconds",
    "Duration of key/value backend operations in seconds",
    ["backend", "operation"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
    registry=_registry,
)


class KVBackendError(Exception):
    """Base exception for key/value backend errors."""


class KVBackend(ABC):
    """Abstract base class for key/value storage backends.

    All implementations must support:
    - Async single-key get/set/delete
    - Listing every key with offset/limit pagination, sorted lexicographically
    - Connection lifecycle management
    """

    @abstractmethod
    async def init(self) -> None:
        """Initialize the backend connection.

        Must be called before using any other methods.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the backend connection and cleanup resources."""

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Retrieve the value stored under ``key``.

        Returns:
            Stored bytes, or None if the key does not exist

        Raises:
            KVBackendError: If retrieval fails
        """

    @abstractmethod
    async def set(self, key: str, value: bytes) -> None:
        """Store ``value`` under ``key``, overwriting any previous value.

        Raises:
            KVBackendError: If storage fails
        """

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete ``key``.

        Returns:
            True if the key was deleted, False if it did not exist

        Raises:
            KVBackendError: If deletion fails
        """

    @abstractmethod
    async def list_keys(self, offset: int, limit: int) -> list[str]:
        """List keys in lexicographic order.

        Args:
            offset: Number of keys to skip
            limit: Maximum number of keys to return

        Returns:
            Up to ``limit`` keys, unfiltered

        Raises:
            KVBackendError: If listing fails
        """


def _validate_key(key: str) -> None:
    if not key:
        raise KVBackendError("Key must be non-empty")


class InMemoryKVBackend(KVBackend):
    """Process-local dictionary backend for tests and lab runs.

    Values are copied on the way in and out so callers never share buffers
    with the store.
    """

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._initialized = False

    async def init(self) -> None:
        self._initialized = True
        logger.info("In-memory key/value backend initialized")

    async def close(self) -> None:
        self._initialized = False
        logger.info("In-memory key/value backend closed")

    async def get(self, key: str) -> bytes | None:
        _validate_key(key)
        value = self._data.get(key)
        kv_operations_total.labels(
            backend="memory", operation="get", status="hit" if value is not None else "miss"
        ).inc()
        return bytes(value) if value is not None else None

    async def set(self, key: str, value: bytes) -> None:
        _validate_key(key)
        if not isinstance(value, (bytes, bytearray)):
            raise KVBackendError(f"Value for {key} must be bytes, got {type(value).__name__}")
        self._data[key] = bytes(value)
        kv_operations_total.labels(backend="memory", operation="set", status="success").inc()

    async def delete(self, key: str) -> bool:
        _validate_key(key)
        deleted = self._data.pop(key, None) is not None
        kv_operations_total.labels(
            backend="memory", operation="delete", status="success" if deleted else "not_found"
        ).inc()
        return deleted

    async def list_keys(self, offset: int, limit: int) -> list[str]:
        if offset < 0 or limit < 0:
            raise KVBackendError("offset and limit must be non-negative")
        kv_operations_total.labels(backend="memory", operation="list", status="success").inc()
        return sorted(self._data)[offset : offset + limit]

    def __len__(self) -> int:
        return len(self._data)


class RedisKVBackend(KVBackend):
    """Redis-backed key/value storage for multi-instance deployments.

    Connection pooling with per-operation timeouts. An optional key prefix
    namespaces every key so several deployments can share one Redis database;
    the prefix is invisible to callers.
    """

    def __init__(
        self,
        redis_url: str,
        pool_size: int = 10,
        timeout_seconds: float = 5.0,
        key_prefix: str = "",
    ) -> None:
        """Initialize Redis backend.

        Args:
            redis_url: Redis connection URL (e.g., redis://localhost:6379/0 or
                      rediss://secure.redis.example.com:6380/0 for TLS)
            pool_size: Connection pool size
            timeout_seconds: Operation timeout
            key_prefix: Namespace prepended to every key
        """
        self.redis_url = redis_url
        self.pool_size = pool_size
        self.timeout_seconds = timeout_seconds
        self.key_prefix = key_prefix

        self._pool: ConnectionPool | None = None
        self._client: Redis | None = None

    async def init(self) -> None:
        """Initialize Redis connection pool and client."""
        try:
            self._pool = ConnectionPool.from_url(
                self.redis_url,
                max_connections=self.pool_size,
                socket_timeout=self.timeout_seconds,
                socket_connect_timeout=self.timeout_seconds,
                decode_responses=False,  # Values are raw bytes
            )
            self._client = Redis(connection_pool=self._pool)

            await self._client.ping()  # type: ignore[misc]
            logger.info(
                "Redis key/value backend initialized",
                extra={"pool_size": self.pool_size, "key_prefix": self.key_prefix},
            )
        except RedisError as e:
            raise KVBackendError(f"Failed to initialize Redis connection: {e}") from e

    async def close(self) -> None:
        """Close Redis connection and cleanup pool.

        Best-effort cleanup: errors during close are logged but do not propagate.
        """
        client = self._client
        pool = self._pool
        self._client = None
        self._pool = None

        if client is not None:
            try:
                await client.aclose()
            except Exception as exc:
                logger.error("Error while closing Redis client", exc_info=exc)

        if pool is not None:
            try:
                await pool.aclose()
            except Exception as exc:
                logger.error("Error while closing Redis connection pool", exc_info=exc)

        logger.info("Redis key/value backend closed")

    def _require_client(self) -> Redis:
        if not self._client:
            raise KVBackendError("Key/value backend not initialized. Call init() first.")
        return self._client

    def _redis_key(self, key: str) -> str:
        _validate_key(key)
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> bytes | None:
        client = self._require_client()
        operation = "get"
        try:
            with kv_operation_duration_seconds.labels(backend="redis", operation=operation).time():
                value = await client.get(self._redis_key(key))
        except RedisError as e:
            kv_operations_total.labels(backend="redis", operation=operation, status="error").inc()
            raise KVBackendError(f"Failed to get key {key}: {e}") from e

        kv_operations_total.labels(
            backend="redis", operation=operation, status="hit" if value is not None else "miss"
        ).inc()
        return value

    async def set(self, key: str, value: bytes) -> None:
        client = self._require_client()
        operation = "set"
        try:
            with kv_operation_duration_seconds.labels(backend="redis", operation=operation).time():
                await client.set(self._redis_key(key), value)
        except RedisError as e:
            kv_operations_total.labels(backend="redis", operation=operation, status="error").inc()
            raise KVBackendError(f"Failed to set key {key}: {e}") from e

        kv_operations_total.labels(backend="redis", operation=operation, status="success").inc()

    async def delete(self, key: str) -> bool:
        client = self._require_client()
        operation = "delete"
        try:
            with kv_operation_duration_seconds.labels(backend="redis", operation=operation).time():
                deleted = await client.delete(self._redis_key(key))
        except RedisError as e:
            kv_operations_total.labels(backend="redis", operation=operation, status="error").inc()
            raise KVBackendError(f"Failed to delete key {key}: {e}") from e

        kv_operations_total.labels(
            backend="redis", operation=operation, status="success" if deleted else "not_found"
        ).inc()
        return bool(deleted)

    async def list_keys(self, offset: int, limit: int) -> list[str]:
        """List keys under this backend's namespace.

        Redis has no ordered key listing, so this walks SCAN over the whole
        namespace and sorts before slicing. Cost grows with the keyspace.
        """
        if offset < 0 or limit < 0:
            raise KVBackendError("offset and limit must be non-negative")

        client = self._require_client()
        operation = "list"
        prefix_len = len(self.key_prefix)
        try:
            with kv_operation_duration_seconds.labels(backend="redis", operation=operation).time():
                keys = [
                    (raw.decode("utf-8") if isinstance(raw, bytes) else raw)[prefix_len:]
                    async for raw in client.scan_iter(match=f"{self.key_prefix}*", count=1000)
                ]
        except RedisError as e:
            kv_operations_total.labels(backend="redis", operation=operation, status="error").inc()
            raise KVBackendError(f"Failed to list keys: {e}") from e

        kv_operations_total.labels(backend="redis", operation=operation, status="success").inc()
        keys.sort()
        return keys[offset : offset + limit]


__all__ = [
    "KVBackend",
    "KVBackendError",
    "InMemoryKVBackend",
    "RedisKVBackend",
]
