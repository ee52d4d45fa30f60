"""
Shared fixtures for metadata cache tests.
"""

import pytest
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_metadata_cache.app.revision_format.formats import ECHO10, FormatId
from service_metadata_cache.app.revision_format.models import EntityRecord
from service_metadata_cache.app.sources.base import AclCollectionSource, MetadataSource


def make_record(
    entity_id: str,
    revision_id: int = 1,
    native_format: FormatId = ECHO10,
    metadata: Optional[str] = None
) -> EntityRecord:
    """Create an entity record with predictable metadata."""
    return EntityRecord(
        entity_id=entity_id,
        revision_id=revision_id,
        native_format=native_format,
        metadata=metadata if metadata is not None else f"<Collection><Id>{entity_id}</Id><Rev>{revision_id}</Rev></Collection>",
        provider_id="PROV1"
    )


class FakeCatalogSource(MetadataSource, AclCollectionSource):
    """In-memory catalog that records every call made to it."""

    def __init__(self):
        self.records: Dict[str, EntityRecord] = {}
        self.changed: List[str] = []
        self.acl_collections: Dict[str, Dict[str, Any]] = {}
        self.fetch_records_calls: List[List[str]] = []
        self.changed_since_calls: List[datetime] = []
        self.fetch_all_calls = 0
        self.error: Optional[Exception] = None

    def add(self, *records: EntityRecord):
        for record in records:
            self.records[record.entity_id] = record

    def remove(self, entity_id: str):
        self.records.pop(entity_id, None)

    def _maybe_fail(self):
        if self.error is not None:
            raise self.error

    async def fetch_all(self, entity_type: str) -> List[str]:
        self.fetch_all_calls += 1
        self._maybe_fail()
        return sorted(self.records)

    async def fetch_changed_since(self, entity_type: str, since: datetime) -> List[str]:
        self.changed_since_calls.append(since)
        self._maybe_fail()
        return list(self.changed)

    async def fetch_records(self, entity_ids: Sequence[str]) -> List[EntityRecord]:
        self.fetch_records_calls.append(list(entity_ids))
        self._maybe_fail()
        return [self.records[i] for i in entity_ids if i in self.records]

    async def fetch_acl_collections(self) -> List[Dict[str, Any]]:
        self._maybe_fail()
        return [dict(c) for c in self.acl_collections.values()]

    async def fetch_acl_collection(self, concept_id: str) -> Optional[Dict[str, Any]]:
        self._maybe_fail()
        collection = self.acl_collections.get(concept_id)
        return dict(collection) if collection is not None else None


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []
        self.gauges = []
        self.refreshes = []
        self.errors = []

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        self.counters.append((metric_name, amount, labels))

    def set_gauge(self, metric_name: str, value: float, **labels):
        self.gauges.append((metric_name, value, labels))

    def record_refresh(self, namespace: str, operation: str, outcome: str, duration: float):
        self.refreshes.append((namespace, operation, outcome))

    def record_error(self, error_type: str, service: Optional[str] = None):
        self.errors.append(error_type)


@pytest.fixture
def record_factory():
    """Factory for entity records."""
    return make_record


@pytest.fixture
def catalog_source():
    """Empty fake catalog."""
    return FakeCatalogSource()


@pytest.fixture
def metrics():
    """Metrics stub that records calls."""
    return DummyMetrics()
