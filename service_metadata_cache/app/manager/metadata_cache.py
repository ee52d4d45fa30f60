"""
Collection metadata cache manager.

The metadata cache maps concept id -> revision format map (see
``revision_format.models``). It is kept in sync with the catalog by two
cycles:

- ``full_refresh`` rebuilds every entry and replaces the namespace. It is the
  only cycle that drops deleted collections or applies a change to the set of
  cached formats.
- ``incremental_update`` rebuilds entries changed since the stored watermark
  and merges them into the namespace.

The watermark is the time a cycle *started*, stored only when the cycle's
writes succeed, so anything changed while a cycle was fetching is picked up
again by the next one. An entity that fails to transform aborts the cycle.
With ``strict_entity_failures=False`` the cycle commits the entities it built,
keeps the previous entry of each failed one and leaves the watermark where it
was, so the failed entities are retried by the next incremental update.
"""

import time
from concurrent.futures import Executor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Union

from shared.errors import BatchTransformError, CacheLayerException, SourceFetchError
from shared.logging import get_logger, set_cycle_id
from ..cache.serialization import datetime_to_str, try_parse_datetime
from ..cache.store import CacheStore
from ..revision_format.builder import Transformer, build_batch, native_only_transformer
from ..revision_format.formats import FormatId, cached_formats
from ..revision_format.models import RevisionFormatMap
from ..sources.base import MetadataSource

METADATA_CACHE_NAMESPACE = "collection-metadata-cache"
WATERMARK_FIELD = "incremental-since-refresh-date"
RESERVED_FIELDS = frozenset({WATERMARK_FIELD})

DEFAULT_BATCH_SIZE = 1000

ExcludedFormats = Union[Iterable[Union[str, FormatId]], Callable[[], Iterable[Union[str, FormatId]]]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def partition(items: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    """Consecutive slices of at most ``size`` items."""
    for start in range(0, len(items), size):
        yield items[start:start + size]


class SingleFlightGuard:
    """Tracks which namespaces have a cycle in flight in this process.

    An overlapping trigger is skipped rather than queued.
    """

    def __init__(self):
        self._running: Set[str] = set()

    def try_acquire(self, namespace: str) -> bool:
        if namespace in self._running:
            return False
        self._running.add(namespace)
        return True

    def release(self, namespace: str):
        self._running.discard(namespace)

    def is_running(self, namespace: str) -> bool:
        return namespace in self._running


# Shared by every manager in the process unless one is injected.
NAMESPACE_GUARD = SingleFlightGuard()


@dataclass
class RefreshResult:
    """Summary of one refresh cycle."""
    operation: str
    namespace: str
    entity_count: int = 0
    batch_sizes: List[int] = field(default_factory=list)
    failed_entities: Dict[str, str] = field(default_factory=dict)
    watermark: Optional[datetime] = None
    previous_watermark: Optional[datetime] = None
    cache_size: int = 0
    duration_seconds: float = 0.0
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in ("watermark", "previous_watermark"):
            if data[name] is not None:
                data[name] = datetime_to_str(data[name])
        return data


class MetadataCacheManager:
    """Runs full and incremental refresh cycles for the metadata cache."""

    def __init__(
        self,
        store: CacheStore,
        source: MetadataSource,
        transformer: Transformer = native_only_transformer,
        *,
        entity_type: str = "collection",
        excluded_formats: ExcludedFormats = (),
        batch_size: int = DEFAULT_BATCH_SIZE,
        executor: Optional[Executor] = None,
        strict_entity_failures: bool = True,
        guard: Optional[SingleFlightGuard] = None,
        metrics=None,
        clock: Callable[[], datetime] = utc_now
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.store = store
        self.source = source
        self.transformer = transformer
        self.entity_type = entity_type
        self.excluded_formats = excluded_formats
        self.batch_size = batch_size
        self.executor = executor
        self.strict_entity_failures = strict_entity_failures
        self.guard = guard or NAMESPACE_GUARD
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("metadata_cache.manager")

    @property
    def namespace(self) -> str:
        return self.store.namespace

    def cached_formats(self) -> FrozenSet[FormatId]:
        """Formats to cache, evaluated from the current configuration."""
        excluded = self.excluded_formats() if callable(self.excluded_formats) else self.excluded_formats
        return cached_formats(excluded)

    async def get_watermark(self) -> Optional[datetime]:
        """Start time of the last successful cycle, if any."""
        value = await self.store.get(WATERMARK_FIELD)
        if value is None or isinstance(value, datetime):
            return value
        return try_parse_datetime(value)

    async def get_revision_format_map(self, entity_id: str) -> Optional[RevisionFormatMap]:
        if entity_id in RESERVED_FIELDS:
            return None
        value = await self.store.get(entity_id)
        return None if value is None else RevisionFormatMap.from_storable(value)

    async def entity_count(self) -> int:
        keys = await self.store.keys()
        return len(keys - RESERVED_FIELDS)

    async def pretty_cache(self) -> Dict[str, Any]:
        """Decompressed view of the namespace for debugging."""
        contents = await self.store.get_all()
        pretty: Dict[str, Any] = {}
        for key, value in contents.items():
            if key in RESERVED_FIELDS:
                pretty[key] = value
                continue
            rfm = RevisionFormatMap.from_storable(value)
            pretty[key] = {
                "entity_id": rfm.entity_id,
                "revision_id": rfm.revision_id,
                "native_format": rfm.native_format.key,
                "formats": rfm.decompressed(),
            }
        return pretty

    async def full_refresh(self) -> RefreshResult:
        """Rebuild every entry and replace the namespace."""
        return await self._run_cycle("full_refresh", self._full_refresh)

    async def incremental_update(self) -> RefreshResult:
        """Rebuild entries changed since the watermark and merge them in."""
        return await self._run_cycle("incremental_update", self._incremental_update)

    async def _run_cycle(self, operation: str, cycle) -> RefreshResult:
        if not self.guard.try_acquire(self.namespace):
            self.logger.warning(
                "Cache cycle already running; skipping trigger",
                operation=operation,
                namespace=self.namespace
            )
            if self.metrics:
                self.metrics.record_refresh(self.namespace, operation, "skipped", 0.0)
            return RefreshResult(operation=operation, namespace=self.namespace, skipped=True)

        set_cycle_id()
        start = time.perf_counter()
        try:
            result = await cycle()
        except Exception as e:
            duration = time.perf_counter() - start
            self.logger.error(
                "Cache cycle failed",
                operation=operation,
                namespace=self.namespace,
                error=str(e),
                duration_seconds=round(duration, 3)
            )
            if self.metrics:
                self.metrics.record_refresh(self.namespace, operation, "error", duration)
            raise
        finally:
            self.guard.release(self.namespace)

        result.duration_seconds = time.perf_counter() - start
        if self.metrics:
            self.metrics.record_refresh(self.namespace, result.operation, "success", result.duration_seconds)
            self.metrics.set_gauge("cache_entries", result.cache_size, namespace=self.namespace)
        return result

    async def fetch_from_source(self, awaitable, what: str):
        """Await a source call, reporting any failure as SourceFetchError."""
        try:
            return await awaitable
        except CacheLayerException:
            raise
        except Exception as e:
            raise SourceFetchError(
                f"Failed to fetch {what}: {e}",
                {"entity_type": self.entity_type, "error": str(e)}
            ) from e

    async def _build_entries(self, entity_ids: Sequence[str], formats: FrozenSet[FormatId]):
        """Fetch and build revision format maps batch by batch."""
        entries: Dict[str, Dict[str, Any]] = {}
        failures: Dict[str, str] = {}
        batch_sizes: List[int] = []

        for batch in partition(list(entity_ids), self.batch_size):
            records = await self.fetch_from_source(self.source.fetch_records(batch), "records")
            result = await build_batch(records, formats, self.transformer, self.executor)
            for entity_id, rfm in result.maps.items():
                entries[entity_id] = rfm.to_storable()
            failures.update(result.failures)
            batch_sizes.append(len(batch))
            self.logger.debug(
                "Cache batch built",
                namespace=self.namespace,
                batch_number=len(batch_sizes),
                batch_size=len(batch),
                built=len(result.maps),
                failed=len(result.failures)
            )

        if failures:
            if self.metrics:
                self.metrics.increment_counter("transform_failures_total", amount=len(failures), scope="entity")
            if self.strict_entity_failures:
                raise BatchTransformError(failures)
            self.logger.warning(
                "Entities failed to transform; keeping previous entries and watermark",
                namespace=self.namespace,
                failed_entities=sorted(failures)
            )

        return entries, batch_sizes, failures

    async def _full_refresh(self) -> RefreshResult:
        self.logger.info("Refreshing collection metadata cache", namespace=self.namespace)
        watermark = self.clock()
        previous = await self.get_watermark()
        formats = self.cached_formats()

        entity_ids = await self.fetch_from_source(self.source.fetch_all(self.entity_type), "identifiers")
        entries, batch_sizes, failures = await self._build_entries(entity_ids, formats)

        replacement: Dict[str, Any] = dict(entries)
        if failures:
            for entity_id in failures:
                existing = await self.store.get(entity_id)
                if existing is not None:
                    replacement[entity_id] = existing
            watermark = previous
        if watermark is not None:
            replacement[WATERMARK_FIELD] = datetime_to_str(watermark)
        await self.store.replace(replacement)

        cache_size = await self.store.size()
        self.logger.info(
            "Metadata cache refresh complete",
            namespace=self.namespace,
            cache_size=cache_size,
            entity_count=len(entries),
            failed=len(failures)
        )
        return RefreshResult(
            operation="full_refresh",
            namespace=self.namespace,
            entity_count=len(entries),
            batch_sizes=batch_sizes,
            failed_entities=failures,
            watermark=watermark,
            previous_watermark=previous,
            cache_size=cache_size,
        )

    async def _incremental_update(self) -> RefreshResult:
        self.logger.info("Updating collection metadata cache", namespace=self.namespace)
        watermark = self.clock()
        since = await self.get_watermark()
        if since is None:
            self.logger.info(
                "No refresh watermark stored; running full refresh instead",
                namespace=self.namespace
            )
            return await self._full_refresh()

        formats = self.cached_formats()
        entity_ids = await self.fetch_from_source(
            self.source.fetch_changed_since(self.entity_type, since),
            "changed identifiers"
        )
        entries, batch_sizes, failures = await self._build_entries(entity_ids, formats)

        updates: Dict[str, Any] = dict(entries)
        if failures:
            watermark = since
        else:
            updates[WATERMARK_FIELD] = datetime_to_str(watermark)
        if updates:
            await self.store.set_bulk(updates)

        cache_size = await self.store.size()
        self.logger.info(
            "Metadata cache update complete",
            namespace=self.namespace,
            cache_size=cache_size,
            entity_count=len(entries),
            failed=len(failures),
            since=datetime_to_str(since)
        )
        return RefreshResult(
            operation="incremental_update",
            namespace=self.namespace,
            entity_count=len(entries),
            batch_sizes=batch_sizes,
            failed_entities=failures,
            watermark=watermark,
            previous_watermark=since,
            cache_size=cache_size,
        )
