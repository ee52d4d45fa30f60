"""
Metadata format identifiers for cached collection metadata.
"""

from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional, Union


UMM_COLLECTION_VERSION = "1.18.1"

_VERSION_SEPARATOR = ";version="


@dataclass(frozen=True)
class SimpleFormat:
    """A format identified by its tag alone, e.g. ``echo10``."""
    tag: str

    @property
    def key(self) -> str:
        return self.tag

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class VersionedFormat:
    """A format pinned to a schema version, e.g. UMM JSON 1.18.1."""
    tag: str
    version: str

    @property
    def key(self) -> str:
        return f"{self.tag}{_VERSION_SEPARATOR}{self.version}"

    def __str__(self) -> str:
        return self.key


FormatId = Union[SimpleFormat, VersionedFormat]


ECHO10 = SimpleFormat("echo10")
ISO19115 = SimpleFormat("iso19115")
DIF = SimpleFormat("dif")
DIF10 = SimpleFormat("dif10")
ISO_SMAP = SimpleFormat("iso-smap")
UMM_JSON = VersionedFormat("umm-json", UMM_COLLECTION_VERSION)

# When the UMM version is upgraded the previous version should stay cached too.
ALL_FORMATS: FrozenSet[FormatId] = frozenset({ECHO10, ISO19115, DIF, DIF10, UMM_JSON})

XML_FORMAT_TAGS = frozenset({"echo10", "iso19115", "dif", "dif10", "iso-smap"})

FORMAT_MIME_TYPES = {
    "echo10": "application/echo10+xml",
    "iso19115": "application/iso19115+xml",
    "iso-smap": "application/iso:smap+xml",
    "dif": "application/dif+xml",
    "dif10": "application/dif10+xml",
    "umm-json": "application/vnd.nasa.cmr.umm+json",
}


def parse_format_key(key: str) -> FormatId:
    """Parse a storage key produced by ``FormatId.key``."""
    if not key:
        raise ValueError("Format key must not be empty")

    if _VERSION_SEPARATOR in key:
        tag, version = key.split(_VERSION_SEPARATOR, 1)
        if not tag or not version:
            raise ValueError(f"Malformed versioned format key: {key!r}")
        return VersionedFormat(tag, version)

    return SimpleFormat(key)


def cached_formats(excluded: Iterable[Union[str, FormatId]] = ()) -> FrozenSet[FormatId]:
    """The formats that are cached: every known format minus ``excluded``."""
    excluded_ids = {
        parse_format_key(item) if isinstance(item, str) else item
        for item in excluded
    }
    return frozenset(ALL_FORMATS - excluded_ids)


def is_xml_format(format_id: FormatId) -> bool:
    return format_id.tag in XML_FORMAT_TAGS


def mime_type_for_format(format_id: FormatId) -> str:
    """The MIME type a format is served as."""
    mime_type = FORMAT_MIME_TYPES[format_id.tag]
    if isinstance(format_id, VersionedFormat):
        return f"{mime_type};version={format_id.version}"
    return mime_type


def format_for_mime_type(mime_type: Optional[str], default: FormatId = UMM_JSON) -> FormatId:
    """Resolve a requested MIME type (as sent in an Accept header) to a format.

    Only the first media range is used and parameters other than ``version``
    are ignored. Unknown or missing MIME types resolve to ``default``.
    """
    if not mime_type:
        return default

    first = mime_type.split(",")[0]
    base, *params = [part.strip() for part in first.split(";")]
    version = None
    for param in params:
        name, _, value = param.partition("=")
        if name.strip() == "version" and value.strip():
            version = value.strip()

    for tag, known in FORMAT_MIME_TYPES.items():
        if known == base.lower():
            if tag == "umm-json":
                return VersionedFormat(tag, version or UMM_COLLECTION_VERSION)
            return SimpleFormat(tag)

    return default
