"""
Namespace-scoped cache store.

A ``CacheStore`` binds one namespace of a ``CacheBackend`` and handles value
encoding: values are run through an optional ``pre_store`` transform, encoded
as JSON text and written; reads decode the JSON and apply ``post_load``.
"""

import inspect
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from shared.errors import CacheConfigurationError, SerializationError
from shared.logging import get_logger
from .backends import CacheBackend

Transform = Callable[[Any], Any]
Fallback = Callable[[], Union[Any, Awaitable[Any]]]


class CacheStore:
    """Cache-aside store over one backend namespace."""

    def __init__(
        self,
        backend: CacheBackend,
        namespace: str,
        *,
        pre_store: Optional[Transform] = None,
        post_load: Optional[Transform] = None,
        refresh_interval: Optional[int] = None,
        metrics=None
    ):
        backend._check_namespace(namespace)
        if refresh_interval is not None and backend.ttl is not None and backend.ttl <= refresh_interval:
            raise CacheConfigurationError(
                "Cache TTL must exceed the refresh interval",
                {"namespace": namespace, "ttl": backend.ttl, "refresh_interval": refresh_interval}
            )

        self.backend = backend
        self.namespace = namespace
        self.pre_store = pre_store
        self.post_load = post_load
        self.refresh_interval = refresh_interval
        self.metrics = metrics
        self.logger = get_logger("metadata_cache.store")

    @property
    def ttl(self) -> Optional[int]:
        return self.backend.ttl

    def encode(self, value: Any) -> str:
        """Storable text for ``value``; raises SerializationError if there is none."""
        if self.pre_store is not None:
            value = self.pre_store(value)
        try:
            return json.dumps(value, separators=(",", ":"), allow_nan=False)
        except (TypeError, ValueError) as e:
            raise SerializationError(
                f"Value cannot be stored in {self.namespace}",
                {"namespace": self.namespace, "error": str(e)}
            )

    def decode(self, text: str) -> Any:
        try:
            value = json.loads(text)
        except json.JSONDecodeError as e:
            raise SerializationError(
                f"Stored value in {self.namespace} is not valid JSON",
                {"namespace": self.namespace, "error": str(e)}
            )
        if self.post_load is not None:
            value = self.post_load(value)
        return value

    def _record_access(self, hit: bool):
        if self.metrics:
            self.metrics.increment_counter(
                "cache_hits_total" if hit else "cache_misses_total",
                namespace=self.namespace
            )

    async def get(self, field: str, fallback: Optional[Fallback] = None) -> Any:
        """Return the stored value, or compute, store and return it.

        ``fallback`` may be a plain or async callable. A fallback result of
        None is returned without being stored. Concurrent misses on the same
        field may each invoke the fallback.
        """
        text = await self.backend.get(self.namespace, field)
        if text is not None:
            self._record_access(hit=True)
            return self.decode(text)

        self._record_access(hit=False)
        if fallback is None:
            return None

        value = fallback()
        if inspect.isawaitable(value):
            value = await value

        if value is not None:
            await self.set(field, value)
        return value

    async def get_all(self) -> Dict[str, Any]:
        """Decoded content of the whole namespace."""
        raw = await self.backend.get_all(self.namespace)
        return {field: self.decode(text) for field, text in raw.items()}

    async def get_raw(self, field: str) -> Optional[str]:
        return await self.backend.get(self.namespace, field)

    async def set(self, field: str, value: Any) -> None:
        await self.backend.set(self.namespace, field, self.encode(value))

    async def set_bulk(self, values: Dict[str, Any]) -> None:
        """Upsert many fields. Nothing is written if any value is not storable."""
        encoded = {field: self.encode(value) for field, value in values.items()}
        await self.backend.set_bulk(self.namespace, encoded)

    async def replace(self, values: Dict[str, Any]) -> None:
        """Replace the namespace with ``values``. Nothing is written if any value is not storable."""
        encoded = {field: self.encode(value) for field, value in values.items()}
        await self.backend.replace(self.namespace, encoded)

    async def delete(self, field: str) -> bool:
        return await self.backend.delete(self.namespace, field)

    async def keys(self) -> Set[str]:
        return await self.backend.keys(self.namespace)

    async def size(self) -> int:
        return await self.backend.size(self.namespace)

    async def memory_usage(self) -> int:
        return await self.backend.memory_usage(self.namespace)

    async def reset(self) -> None:
        await self.backend.reset(self.namespace)
        self.logger.info("Cache namespace reset", namespace=self.namespace)
