"""
Data models for the revision format cache.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from shared.errors import SerializationError
from . import codec
from .formats import FormatId, parse_format_key


@dataclass
class EntityRecord:
    """One revision of a catalog entity as returned by the metadata source."""
    entity_id: str
    revision_id: int
    native_format: FormatId
    metadata: str
    revision_date: Optional[datetime] = None
    provider_id: Optional[str] = None


@dataclass
class RevisionFormatMap:
    """Compressed metadata of one entity revision in several formats.

    ``formats`` always holds the native format. Any other format is present
    only if it was cached and its transform succeeded.
    """
    entity_id: str
    revision_id: int
    native_format: FormatId
    formats: Dict[FormatId, bytes] = field(default_factory=dict)

    def has_format(self, format_id: FormatId) -> bool:
        return format_id in self.formats

    def get_metadata(self, format_id: FormatId) -> Optional[str]:
        """Decompressed metadata for ``format_id``, or None if not cached."""
        data = self.formats.get(format_id)
        if data is None:
            return None
        return codec.decompress(data)

    def decompressed(self) -> Dict[str, str]:
        return {fmt.key: codec.decompress(data) for fmt, data in self.formats.items()}

    def to_storable(self) -> Dict[str, Any]:
        """JSON-safe form for cache backends."""
        return {
            "entity_id": self.entity_id,
            "revision_id": self.revision_id,
            "native_format": self.native_format.key,
            "formats": {fmt.key: codec.to_text(data) for fmt, data in self.formats.items()},
        }

    @classmethod
    def from_storable(cls, data: Dict[str, Any]) -> "RevisionFormatMap":
        try:
            return cls(
                entity_id=data["entity_id"],
                revision_id=int(data["revision_id"]),
                native_format=parse_format_key(data["native_format"]),
                formats={
                    parse_format_key(key): codec.from_text(text)
                    for key, text in data["formats"].items()
                },
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise SerializationError(
                "Stored value is not a revision format map",
                {"error": str(e)}
            )
