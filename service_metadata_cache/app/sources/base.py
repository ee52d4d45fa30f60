"""
Source interfaces consumed by the caches.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..revision_format.models import EntityRecord


class MetadataSource(ABC):
    """Authoritative source of catalog entity metadata."""

    @abstractmethod
    async def fetch_all(self, entity_type: str) -> List[str]:
        """Identifiers of every entity of ``entity_type``."""

    @abstractmethod
    async def fetch_changed_since(self, entity_type: str, since: datetime) -> List[str]:
        """Identifiers of entities changed at or after ``since``."""

    @abstractmethod
    async def fetch_records(self, entity_ids: Sequence[str]) -> List[EntityRecord]:
        """Latest revisions of the given entities. Unknown ids are skipped."""


class AclCollectionSource(ABC):
    """Source of the collection fields needed for ACL evaluation."""

    @abstractmethod
    async def fetch_acl_collections(self) -> List[Dict[str, Any]]:
        """Every collection's ACL projection; each carries ``concept_id``."""

    @abstractmethod
    async def fetch_acl_collection(self, concept_id: str) -> Optional[Dict[str, Any]]:
        """One collection's ACL projection, or None when it does not exist."""
