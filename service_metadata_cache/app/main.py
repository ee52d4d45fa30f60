"""
Metadata cache admin service for the Catalog Metadata Cache.
"""

import importlib
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from typing import Any, Dict, Optional

from fastapi import Header, HTTPException, Query, Response

from shared.base_service import BaseService
from shared.errors import CacheConfigurationError, CacheNotFoundError

from .acl_cache.collections_for_acls import (
    CACHE_TTL,
    COLL_BY_CONCEPT_ID_NAMESPACE,
    CollectionsForAclsCache,
    create_acl_store,
)
from .cache.backends import create_backend
from .cache.serialization import strings_to_times, times_to_strings
from .cache.store import CacheStore
from .jobs.definitions import (
    refresh_collections_cache_for_granule_acls_job,
    refresh_collections_metadata_cache_job,
    update_collections_metadata_cache_job,
)
from .jobs.scheduler import JobScheduler
from .manager.metadata_cache import METADATA_CACHE_NAMESPACE, MetadataCacheManager
from .retrieval import MetadataRetrieval
from .revision_format.builder import Transformer, native_only_transformer
from .revision_format.formats import (
    ALL_FORMATS,
    format_for_mime_type,
    mime_type_for_format,
    parse_format_key,
)
from .sources.http_source import HttpCatalogSource


def load_transformer(path: Optional[str]) -> Transformer:
    """Resolve a ``module:function`` path to a transformer callable."""
    if not path:
        return native_only_transformer

    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise CacheConfigurationError(
            "Transformer must be given as module:function",
            {"metadata_transformer": path}
        )
    try:
        transformer = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise CacheConfigurationError(
            f"Cannot load transformer {path}: {e}",
            {"metadata_transformer": path}
        ) from e
    if not callable(transformer):
        raise CacheConfigurationError(
            f"Transformer {path} is not callable",
            {"metadata_transformer": path}
        )
    return transformer


def create_transform_executor(kind: str, workers: Optional[int] = None) -> Optional[Executor]:
    """Executor for metadata transforms.

    ``thread`` with no worker count returns None, meaning the event loop's
    default pool. ``process`` spreads transforms across cores.
    """
    if kind == "thread":
        if not workers:
            return None
        return ThreadPoolExecutor(max_workers=workers, thread_name_prefix="transform")
    if kind == "process":
        return ProcessPoolExecutor(max_workers=workers or None)
    raise CacheConfigurationError(
        f"Unknown transform executor: {kind}",
        {"transform_executor": kind}
    )


class MetadataCacheService(BaseService):
    """Metadata cache service implementation."""

    def __init__(self, source=None, **config_overrides):
        super().__init__("metadata_cache", 8020, **config_overrides)

        self.metadata_backend = create_backend(
            self.config.cache_backend,
            [METADATA_CACHE_NAMESPACE],
            self.config.metadata_cache_ttl,
            redis_url=self.config.redis_url
        )
        self.acl_backend = create_backend(
            self.config.cache_backend,
            [COLL_BY_CONCEPT_ID_NAMESPACE],
            self.config.acl_cache_ttl or CACHE_TTL,
            redis_url=self.config.redis_url
        )

        self.source = source or HttpCatalogSource(
            self.config.catalog_search_url,
            timeout=self.config.catalog_request_timeout
        )
        self.executor = create_transform_executor(
            self.config.transform_executor,
            self.config.transform_workers
        )

        metadata_store = CacheStore(
            self.metadata_backend,
            METADATA_CACHE_NAMESPACE,
            pre_store=times_to_strings,
            post_load=strings_to_times,
            refresh_interval=self.config.metadata_cache_update_interval,
            metrics=self.metrics
        )
        self.manager = MetadataCacheManager(
            metadata_store,
            self.source,
            load_transformer(self.config.metadata_transformer),
            excluded_formats=self.config.excluded_format_keys,
            batch_size=self.config.metadata_cache_batch_size,
            executor=self.executor,
            strict_entity_failures=self.config.strict_entity_failures,
            metrics=self.metrics
        )
        self.retrieval = MetadataRetrieval(self.manager)
        self.acl_cache = CollectionsForAclsCache(
            create_acl_store(self.acl_backend, self.config.acl_cache_refresh_interval, self.metrics),
            self.source,
            self.metrics
        )

        self.scheduler = JobScheduler(
            [
                refresh_collections_metadata_cache_job(
                    self.manager,
                    daily_at=self.config.metadata_cache_refresh_time
                ),
                update_collections_metadata_cache_job(
                    self.manager,
                    interval=self.config.metadata_cache_update_interval
                ),
                refresh_collections_cache_for_granule_acls_job(
                    self.acl_cache,
                    interval=self.config.acl_cache_refresh_interval,
                    run_on_start=True
                ),
            ],
            metrics=self.metrics
        )

        @self.app.on_event("startup")
        async def _startup():
            await self.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.stop()

        self._setup_cache_routes()

    def _cache(self, name: str):
        if name == METADATA_CACHE_NAMESPACE:
            return self.manager
        if name == COLL_BY_CONCEPT_ID_NAMESPACE:
            return self.acl_cache
        raise CacheNotFoundError(f"Cache {name} not found", {"cache": name})

    async def _describe_cache(self, name: str) -> Dict[str, Any]:
        store = self._cache(name).store
        info = {
            "name": name,
            "size": await store.size(),
            "memory_usage_bytes": await store.memory_usage(),
            "ttl_seconds": store.ttl,
            "refresh_interval_seconds": store.refresh_interval,
        }
        if name == METADATA_CACHE_NAMESPACE:
            watermark = await self.manager.get_watermark()
            info["entity_count"] = await self.manager.entity_count()
            info["watermark"] = times_to_strings(watermark)
            info["cached_formats"] = sorted(f.key for f in self.manager.cached_formats())
            info["refresh_running"] = self.manager.guard.is_running(name)
        return info

    def _setup_cache_routes(self):
        """Set up cache admin and retrieval routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "metadata_cache",
                "message": "Catalog Metadata Cache - Metadata Cache Service",
                "version": "1.0.0",
                "jobs": self.scheduler.jobs()
            }

        @self.app.get("/caches")
        async def list_caches():
            """Describe every cache namespace."""
            return {
                "caches": [
                    await self._describe_cache(METADATA_CACHE_NAMESPACE),
                    await self._describe_cache(COLL_BY_CONCEPT_ID_NAMESPACE),
                ]
            }

        @self.app.get("/caches/{name}")
        async def get_cache(name: str, pretty: bool = Query(False)):
            """Describe one cache; ``pretty`` adds its decompressed contents."""
            info = await self._describe_cache(name)
            if pretty:
                if name == METADATA_CACHE_NAMESPACE:
                    info["contents"] = times_to_strings(await self.manager.pretty_cache())
                else:
                    info["contents"] = times_to_strings(await self.acl_cache.store.get_all())
            return info

        @self.app.post("/caches/{name}/refresh")
        async def refresh_cache(name: str):
            """Run a full refresh of one cache now."""
            cache = self._cache(name)
            if cache is self.manager:
                result = await self.manager.full_refresh()
                return result.to_dict()
            size = await self.acl_cache.refresh_entire_cache()
            return {"operation": "full_refresh", "namespace": name, "cache_size": size}

        @self.app.post("/caches/{name}/update")
        async def update_cache(name: str):
            """Run an incremental update of the metadata cache now."""
            if self._cache(name) is not self.manager:
                raise CacheConfigurationError(
                    f"Cache {name} does not support incremental updates",
                    {"cache": name}
                )
            result = await self.manager.incremental_update()
            return result.to_dict()

        @self.app.get("/collections/{concept_id}/metadata")
        async def get_collection_metadata(
            concept_id: str,
            format: Optional[str] = Query(None),
            accept: Optional[str] = Header(None)
        ):
            """Collection metadata in the requested format."""
            try:
                format_id = parse_format_key(format) if format else format_for_mime_type(accept)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            if format_id not in ALL_FORMATS:
                raise HTTPException(status_code=400, detail=f"Unsupported format {format_id.key}")

            metadata = await self.retrieval.get_metadata(concept_id, format_id)
            return Response(content=metadata, media_type=mime_type_for_format(format_id))

        @self.app.post("/collections-for-acls/{concept_id}")
        async def cache_collection_for_acls(concept_id: str):
            """Fetch one collection's ACL projection and cache it."""
            collection = await self.acl_cache.set_cache(concept_id)
            if collection is None:
                raise CacheNotFoundError(
                    f"Collection {concept_id} not found",
                    {"concept_id": concept_id}
                )
            return times_to_strings(collection)

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check cache backend connectivity."""
        dependencies = {}
        for name, backend in (("metadata_cache", self.metadata_backend), ("acl_cache", self.acl_backend)):
            dependencies[name] = "ok" if await backend.ping() else "error"
        return dependencies

    async def start(self):
        """Start metadata cache service components."""
        if self.config.enable_scheduler:
            await self.scheduler.start()
        self.logger.info("Metadata cache service started", scheduler=self.config.enable_scheduler)

    async def stop(self):
        """Stop metadata cache service components."""
        await self.scheduler.stop()
        await self.metadata_backend.close()
        await self.acl_backend.close()
        if self.executor:
            self.executor.shutdown(wait=False)
        self.logger.info("Metadata cache service stopped")


def create_app():
    """Create metadata cache service application."""
    service = MetadataCacheService()
    return service.app


if __name__ == "__main__":
    service = MetadataCacheService()
    service.run()
