"""
Hash cache backends.

A backend holds a fixed set of namespaces, each a hash of field -> text.
``InMemoryHashBackend`` keeps them in process; ``RedisHashBackend`` stores
every namespace as one Redis hash so several service instances share it.
"""

import time
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import CacheBackendError, CacheConfigurationError
from shared.logging import get_logger

# Fields per HSET command when writing large mappings
_HSET_CHUNK_SIZE = 1000


class CacheBackend(ABC):
    """Namespace-scoped field/value store holding text values."""

    def __init__(self, namespaces: Iterable[str], ttl: Optional[int] = None):
        self.namespaces = frozenset(namespaces)
        if not self.namespaces:
            raise CacheConfigurationError("A cache backend must track at least one namespace")
        if ttl is not None and ttl <= 0:
            raise CacheConfigurationError("TTL must be positive", {"ttl": ttl})
        self.ttl = ttl

    def _check_namespace(self, namespace: str):
        if namespace not in self.namespaces:
            raise CacheConfigurationError(
                f"Namespace {namespace!r} is not tracked by this backend",
                {"tracked": sorted(self.namespaces)}
            )

    @abstractmethod
    async def get(self, namespace: str, field: str) -> Optional[str]:
        """Stored text for ``field`` or None."""

    @abstractmethod
    async def get_all(self, namespace: str) -> Dict[str, str]:
        """Every field of the namespace."""

    @abstractmethod
    async def set(self, namespace: str, field: str, value: str) -> None:
        """Upsert one field."""

    @abstractmethod
    async def set_bulk(self, namespace: str, values: Dict[str, str]) -> None:
        """Upsert many fields."""

    @abstractmethod
    async def replace(self, namespace: str, values: Dict[str, str]) -> None:
        """Make ``values`` the entire content of the namespace."""

    @abstractmethod
    async def delete(self, namespace: str, field: str) -> bool:
        """Remove one field; True if it existed."""

    @abstractmethod
    async def keys(self, namespace: str) -> Set[str]:
        """Field names of the namespace."""

    @abstractmethod
    async def size(self, namespace: str) -> int:
        """Number of fields in the namespace."""

    @abstractmethod
    async def memory_usage(self, namespace: str) -> int:
        """Approximate bytes held by the namespace."""

    @abstractmethod
    async def reset(self, namespace: str) -> None:
        """Remove every field of the namespace."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryHashBackend(CacheBackend):
    """In-process backend.

    The TTL applies to a namespace as a whole and is re-armed by every write,
    matching the Redis backend, so entries that an incremental update leaves
    untouched live as long as the namespace keeps being written.
    """

    def __init__(
        self,
        namespaces: Iterable[str],
        ttl: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        super().__init__(namespaces, ttl)
        self._clock = clock
        self._data: Dict[str, Dict[str, str]] = {namespace: {} for namespace in self.namespaces}
        self._expires_at: Dict[str, Optional[float]] = {namespace: None for namespace in self.namespaces}

    def _live(self, namespace: str) -> Dict[str, str]:
        """The namespace, emptied first if it has expired."""
        self._check_namespace(namespace)
        expires_at = self._expires_at[namespace]
        if expires_at is not None and expires_at <= self._clock():
            self._data[namespace] = {}
            self._expires_at[namespace] = None
        return self._data[namespace]

    def _rearm(self, namespace: str):
        if self.ttl is not None:
            self._expires_at[namespace] = self._clock() + self.ttl

    async def get(self, namespace: str, field: str) -> Optional[str]:
        return self._live(namespace).get(field)

    async def get_all(self, namespace: str) -> Dict[str, str]:
        return dict(self._live(namespace))

    async def set(self, namespace: str, field: str, value: str) -> None:
        self._live(namespace)[field] = value
        self._rearm(namespace)

    async def set_bulk(self, namespace: str, values: Dict[str, str]) -> None:
        self._live(namespace).update(values)
        self._rearm(namespace)

    async def replace(self, namespace: str, values: Dict[str, str]) -> None:
        self._check_namespace(namespace)
        self._data[namespace] = dict(values)
        self._rearm(namespace)

    async def delete(self, namespace: str, field: str) -> bool:
        return self._live(namespace).pop(field, None) is not None

    async def keys(self, namespace: str) -> Set[str]:
        return set(self._live(namespace))

    async def size(self, namespace: str) -> int:
        return len(self._live(namespace))

    async def memory_usage(self, namespace: str) -> int:
        return sum(
            len(f.encode("utf-8")) + len(value.encode("utf-8"))
            for f, value in self._live(namespace).items()
        )

    async def reset(self, namespace: str) -> None:
        self._check_namespace(namespace)
        self._data[namespace] = {}
        self._expires_at[namespace] = None


class RedisHashBackend(CacheBackend):
    """Redis backend storing each namespace as one hash.

    Redis expires whole keys, so the TTL applies to the namespace hash and is
    re-armed after every write.
    """

    def __init__(
        self,
        namespaces: Iterable[str],
        ttl: Optional[int] = None,
        *,
        redis_url: str = "redis://localhost:6379/0",
        client: Optional[redis.Redis] = None
    ):
        super().__init__(namespaces, ttl)
        self.redis_url = redis_url
        self.logger = get_logger("metadata_cache.backend.redis")
        self._redis: Optional[redis.Redis] = client
        self._owns_client = client is None

    def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
        return self._redis

    def _key(self, namespace: str) -> str:
        self._check_namespace(namespace)
        return namespace

    def _backend_error(self, operation: str, namespace: str, error: Exception) -> CacheBackendError:
        self.logger.error(
            "Redis operation failed",
            operation=operation,
            namespace=namespace,
            error=str(error)
        )
        return CacheBackendError(
            f"Redis {operation} failed for {namespace}",
            {"namespace": namespace, "error": str(error)}
        )

    def _queue_hset(self, pipe, key: str, values: Dict[str, str]):
        items = list(values.items())
        for start in range(0, len(items), _HSET_CHUNK_SIZE):
            pipe.hset(key, mapping=dict(items[start:start + _HSET_CHUNK_SIZE]))

    def _queue_expire(self, pipe, key: str):
        if self.ttl is not None:
            pipe.expire(key, self.ttl)

    async def get(self, namespace: str, field: str) -> Optional[str]:
        key = self._key(namespace)
        try:
            return await self._get_redis().hget(key, field)
        except RedisError as e:
            raise self._backend_error("get", namespace, e)

    async def get_all(self, namespace: str) -> Dict[str, str]:
        key = self._key(namespace)
        try:
            return await self._get_redis().hgetall(key)
        except RedisError as e:
            raise self._backend_error("get_all", namespace, e)

    async def set(self, namespace: str, field: str, value: str) -> None:
        await self.set_bulk(namespace, {field: value})

    async def set_bulk(self, namespace: str, values: Dict[str, str]) -> None:
        key = self._key(namespace)
        if not values:
            return
        try:
            async with self._get_redis().pipeline(transaction=True) as pipe:
                self._queue_hset(pipe, key, values)
                self._queue_expire(pipe, key)
                await pipe.execute()
        except RedisError as e:
            raise self._backend_error("set", namespace, e)

    async def replace(self, namespace: str, values: Dict[str, str]) -> None:
        """Write into a staging hash then RENAME it over the namespace."""
        key = self._key(namespace)
        staging_key = f"{key}:staging:{uuid.uuid4().hex}"
        try:
            async with self._get_redis().pipeline(transaction=True) as pipe:
                if values:
                    self._queue_hset(pipe, staging_key, values)
                    pipe.rename(staging_key, key)
                    self._queue_expire(pipe, key)
                else:
                    pipe.delete(key)
                await pipe.execute()
        except RedisError as e:
            raise self._backend_error("replace", namespace, e)

    async def delete(self, namespace: str, field: str) -> bool:
        key = self._key(namespace)
        try:
            return bool(await self._get_redis().hdel(key, field))
        except RedisError as e:
            raise self._backend_error("delete", namespace, e)

    async def keys(self, namespace: str) -> Set[str]:
        key = self._key(namespace)
        try:
            return set(await self._get_redis().hkeys(key))
        except RedisError as e:
            raise self._backend_error("keys", namespace, e)

    async def size(self, namespace: str) -> int:
        key = self._key(namespace)
        try:
            return int(await self._get_redis().hlen(key))
        except RedisError as e:
            raise self._backend_error("size", namespace, e)

    async def memory_usage(self, namespace: str) -> int:
        key = self._key(namespace)
        try:
            usage = await self._get_redis().memory_usage(key)
        except RedisError as e:
            raise self._backend_error("memory_usage", namespace, e)
        return int(usage or 0)

    async def reset(self, namespace: str) -> None:
        key = self._key(namespace)
        try:
            await self._get_redis().delete(key)
        except RedisError as e:
            raise self._backend_error("reset", namespace, e)

    async def ping(self) -> bool:
        try:
            return bool(await self._get_redis().ping())
        except RedisError:
            return False

    async def close(self) -> None:
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis connection closed")


def create_backend(
    kind: str,
    namespaces: Iterable[str],
    ttl: Optional[int] = None,
    *,
    redis_url: str = "redis://localhost:6379/0",
    client: Optional[redis.Redis] = None
) -> CacheBackend:
    """Create the backend named by configuration (``memory`` or ``redis``)."""
    if kind == "memory":
        return InMemoryHashBackend(namespaces, ttl)
    if kind == "redis":
        return RedisHashBackend(namespaces, ttl, redis_url=redis_url, client=client)
    raise CacheConfigurationError(f"Unknown cache backend {kind!r}", {"backend": kind})
