"""
Builds revision format maps from raw entity records.
"""

import asyncio
import re
from concurrent.futures import Executor
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Union

from shared.errors import TransformError
from shared.logging import get_logger
from . import codec
from .formats import FormatId, is_xml_format
from .models import EntityRecord, RevisionFormatMap

# A transformer renders one record into the requested formats. A value of None
# or an Exception instance marks that single format as failed.
TransformResult = Mapping[FormatId, Union[str, None, Exception]]
Transformer = Callable[[EntityRecord, FrozenSet[FormatId]], TransformResult]

_XML_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>\s*")

logger = get_logger("metadata_cache.builder")


@dataclass
class BatchResult:
    """Revision format maps built for one batch, plus entity-level failures."""
    maps: Dict[str, RevisionFormatMap] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)


def native_only_transformer(record: EntityRecord, formats: FrozenSet[FormatId]) -> TransformResult:
    """Transformer that renders nothing but the native metadata."""
    return {record.native_format: record.metadata}


def strip_xml_declaration(record: EntityRecord) -> EntityRecord:
    """Remove a leading ``<?xml ...?>`` processing instruction from XML metadata."""
    if not is_xml_format(record.native_format):
        return record
    stripped = _XML_DECLARATION.sub("", record.metadata, count=1)
    if stripped == record.metadata:
        return record
    return replace(record, metadata=stripped)


def build_revision_format_map(
    record: EntityRecord,
    formats: FrozenSet[FormatId],
    transformer: Transformer
) -> RevisionFormatMap:
    """Render ``record`` into ``formats`` and compress every result.

    Raises TransformError when the transformer fails for the entity as a
    whole. Individual failed formats are left out of the map.
    """
    record = strip_xml_declaration(record)

    try:
        rendered = transformer(record, formats)
    except TransformError:
        raise
    except Exception as e:
        raise TransformError(str(e) or type(e).__name__, entity_id=record.entity_id) from e

    compressed: Dict[FormatId, bytes] = {}
    for format_id, text in rendered.items():
        if format_id != record.native_format and format_id not in formats:
            continue
        if text is None or isinstance(text, Exception):
            logger.warning(
                "Format transform failed",
                entity_id=record.entity_id,
                format=format_id.key,
                error=str(text) if text is not None else "no output"
            )
            continue
        compressed[format_id] = codec.compress(text)

    if record.native_format not in compressed:
        compressed[record.native_format] = codec.compress(record.metadata)

    return RevisionFormatMap(
        entity_id=record.entity_id,
        revision_id=record.revision_id,
        native_format=record.native_format,
        formats=compressed,
    )


async def build_batch(
    records: Iterable[EntityRecord],
    formats: FrozenSet[FormatId],
    transformer: Transformer,
    executor: Optional[Executor] = None
) -> BatchResult:
    """Build maps for every record in parallel on ``executor``.

    With ``executor=None`` the event loop's default thread pool is used. A
    process pool requires ``transformer`` to be picklable.
    """
    records = list(records)
    loop = asyncio.get_running_loop()
    tasks: List[asyncio.Future] = [
        loop.run_in_executor(executor, build_revision_format_map, record, formats, transformer)
        for record in records
    ]
    outcomes = await asyncio.gather(*tasks, return_exceptions=True)

    result = BatchResult()
    for record, outcome in zip(records, outcomes):
        if isinstance(outcome, RevisionFormatMap):
            current = result.maps.get(outcome.entity_id)
            if current is None or outcome.revision_id > current.revision_id:
                result.maps[outcome.entity_id] = outcome
        elif isinstance(outcome, Exception):
            logger.error(
                "Entity transform failed",
                entity_id=record.entity_id,
                revision_id=record.revision_id,
                error=str(outcome)
            )
            result.failures[record.entity_id] = str(outcome)
        else:
            raise outcome

    return result
