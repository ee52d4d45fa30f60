"""
Read path for cached collection metadata.
"""

import asyncio
from typing import Optional

from shared.errors import CacheNotFoundError
from shared.logging import get_logger
from .manager.metadata_cache import MetadataCacheManager, RESERVED_FIELDS
from .revision_format.builder import build_revision_format_map
from .revision_format.formats import FormatId
from .revision_format.models import RevisionFormatMap


class MetadataRetrieval:
    """Serves one collection's metadata in one format from the cache.

    Collections missing from the cache are built from the source and cached.
    Formats missing from a cached map are rendered on demand; they are added
    to the cached map only when they belong to the cached format set.
    """

    def __init__(self, manager: MetadataCacheManager):
        self.manager = manager
        self.logger = get_logger("metadata_cache.retrieval")

    async def _build(self, entity_id: str, formats) -> Optional[RevisionFormatMap]:
        records = await self.manager.fetch_from_source(self.manager.source.fetch_records([entity_id]), "record")
        record = next((r for r in records if r.entity_id == entity_id), None)
        if record is None:
            return None
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self.manager.executor,
            build_revision_format_map,
            record,
            formats,
            self.manager.transformer
        )

    async def _load_and_cache(self, entity_id: str):
        rfm = await self._build(entity_id, self.manager.cached_formats())
        return None if rfm is None else rfm.to_storable()

    async def get_revision_format_map(self, entity_id: str) -> RevisionFormatMap:
        if entity_id in RESERVED_FIELDS:
            raise CacheNotFoundError(f"Collection {entity_id} not found", {"concept_id": entity_id})

        stored = await self.manager.store.get(entity_id, lambda: self._load_and_cache(entity_id))
        if stored is None:
            raise CacheNotFoundError(f"Collection {entity_id} not found", {"concept_id": entity_id})
        return RevisionFormatMap.from_storable(stored)

    async def get_metadata(self, entity_id: str, format_id: FormatId) -> str:
        """Metadata of ``entity_id`` rendered as ``format_id``."""
        rfm = await self.get_revision_format_map(entity_id)
        metadata = rfm.get_metadata(format_id)
        if metadata is not None:
            return metadata

        self.logger.info(
            "Format not cached; transforming on demand",
            concept_id=entity_id,
            format=format_id.key
        )
        rendered = await self._build(entity_id, frozenset({format_id}))
        if rendered is None or not rendered.has_format(format_id):
            raise CacheNotFoundError(
                f"Collection {entity_id} is not available as {format_id.key}",
                {"concept_id": entity_id, "format": format_id.key}
            )

        if format_id in self.manager.cached_formats() and rendered.revision_id == rfm.revision_id:
            rfm.formats[format_id] = rendered.formats[format_id]
            await self.manager.store.set(entity_id, rfm.to_storable())

        return rendered.get_metadata(format_id)
