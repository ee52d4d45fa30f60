"""
Collections-for-ACLs cache.

Holds the collection fields granule ACL evaluation needs, keyed by concept
id:

    concept-id -> {collection ACL fields}

Collections carry temporal fields, so every value goes through the
timestamp storage adapter. The scheduled refresh runs every 15 minutes and
the namespace expires after 30; the expiry only comes into play when the
refresh job stops running.
"""

from typing import Any, Dict, Optional

from shared.errors import CacheLayerException, SourceFetchError
from shared.logging import get_logger
from ..cache.backends import CacheBackend
from ..cache.serialization import strings_to_times, times_to_strings
from ..cache.store import CacheStore
from ..sources.base import AclCollectionSource

COLL_BY_CONCEPT_ID_NAMESPACE = "collections-for-gran-acls-by-concept-id"

# Refresh job frequency; must stay below the TTL
JOB_REFRESH_RATE = 60 * 15

CACHE_TTL = 60 * 30


def create_acl_store(backend: CacheBackend, refresh_interval: int = JOB_REFRESH_RATE, metrics=None) -> CacheStore:
    """Store for the ACL namespace with the timestamp adapter attached."""
    return CacheStore(
        backend,
        COLL_BY_CONCEPT_ID_NAMESPACE,
        pre_store=times_to_strings,
        post_load=strings_to_times,
        refresh_interval=refresh_interval,
        metrics=metrics
    )


class CollectionsForAclsCache:
    """Cache of collection ACL projections by concept id."""

    def __init__(self, store: CacheStore, source: AclCollectionSource, metrics=None):
        self.store = store
        self.source = source
        self.metrics = metrics
        self.logger = get_logger("metadata_cache.acl_cache")

    @property
    def namespace(self) -> str:
        return self.store.namespace

    async def _fetch(self, awaitable):
        try:
            return await awaitable
        except CacheLayerException:
            raise
        except Exception as e:
            raise SourceFetchError(f"Failed to fetch ACL collections: {e}", {"error": str(e)}) from e

    async def refresh_entire_cache(self) -> int:
        """Replace the cache with every collection from the source.

        Raises if collections cannot be fetched; the caller is responsible for
        logging and retrying. Returns the resulting number of entries.
        """
        self.logger.info("Refreshing entire collections-for-gran-acls cache", namespace=self.namespace)
        collections = await self._fetch(self.source.fetch_acl_collections())

        await self.store.replace({coll["concept_id"]: coll for coll in collections})

        size = await self.store.size()
        usage = await self.store.memory_usage()
        self.logger.info(
            "Collections-for-gran-acls cache refresh complete",
            namespace=self.namespace,
            cache_size=size,
            cache_bytes=usage
        )
        if self.metrics:
            self.metrics.set_gauge("cache_entries", size, namespace=self.namespace)
        return size

    async def set_cache(self, concept_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one collection, cache it and return it; None if not found."""
        collection = await self._fetch(self.source.fetch_acl_collection(concept_id))
        if collection is None:
            self.logger.info("Collection for ACLs not found", concept_id=concept_id)
            return None

        await self.store.set(collection.get("concept_id", concept_id), collection)
        return collection

    async def get_collection(self, concept_id: str) -> Optional[Dict[str, Any]]:
        """Cached collection, loading it from the source on a miss."""
        return await self.store.get(
            concept_id,
            lambda: self._fetch(self.source.fetch_acl_collection(concept_id))
        )
