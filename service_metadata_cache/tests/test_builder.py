"""
Unit tests for revision format map building.
"""

import pytest
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import TransformError
from service_metadata_cache.app.revision_format.builder import (
    build_batch, build_revision_format_map, native_only_transformer, strip_xml_declaration
)
from service_metadata_cache.app.revision_format.formats import (
    ALL_FORMATS, DIF, DIF10, ECHO10, ISO19115, ISO_SMAP, UMM_JSON, cached_formats
)


def render_all(record, formats):
    """Transformer that renders every requested format."""
    return {fmt: f"{fmt.key}:{record.entity_id}:{record.revision_id}" for fmt in formats}


def render_all_but_dif_for_c(record, formats):
    """Transformer that fails DIF for entity C only."""
    rendered = render_all(record, formats)
    if record.entity_id == "C":
        rendered[DIF] = ValueError("dif conversion failed")
    return rendered


def render_extra_formats(record, formats):
    """Transformer that renders more than it was asked for."""
    rendered = render_all(record, formats)
    rendered[ISO_SMAP] = "<smap/>"
    return rendered


def fail_for_bad(record, formats):
    """Transformer that fails whole entities whose id starts with BAD."""
    if record.entity_id.startswith("BAD"):
        raise RuntimeError("unparseable metadata")
    return render_all(record, formats)


class TestBuildRevisionFormatMap:
    """Test cases for build_revision_format_map."""

    def test_builds_every_requested_format(self, record_factory):
        """Test every requested format is compressed into the map."""
        record = record_factory("C1", revision_id=4)

        rfm = build_revision_format_map(record, ALL_FORMATS, render_all)

        assert rfm.entity_id == "C1"
        assert rfm.revision_id == 4
        assert rfm.native_format == ECHO10
        assert set(rfm.formats) == ALL_FORMATS
        assert rfm.get_metadata(UMM_JSON) == "umm-json;version=1.18.1:C1:4"

    def test_failed_format_is_omitted(self, record_factory):
        """Test a single failed format is left out of the map."""
        record = record_factory("C")

        rfm = build_revision_format_map(record, ALL_FORMATS, render_all_but_dif_for_c)

        assert DIF not in rfm.formats
        assert ECHO10 in rfm.formats
        assert set(rfm.formats) == ALL_FORMATS - {DIF}

    def test_none_output_is_omitted(self, record_factory):
        """Test a format rendered as None is left out."""
        record = record_factory("C1")

        rfm = build_revision_format_map(record, ALL_FORMATS, lambda r, f: {UMM_JSON: None, DIF10: "<dif10/>"})

        assert not rfm.has_format(UMM_JSON)
        assert rfm.get_metadata(DIF10) == "<dif10/>"

    def test_native_format_always_present(self, record_factory):
        """Test the native metadata is kept even if excluded and not rendered."""
        record = record_factory("C1", metadata="<native/>")
        formats = cached_formats(["echo10"])

        rfm = build_revision_format_map(record, formats, lambda r, f: {UMM_JSON: "{}"})

        assert rfm.get_metadata(ECHO10) == "<native/>"
        assert rfm.has_format(UMM_JSON)

    def test_unrequested_formats_are_dropped(self, record_factory):
        """Test non-native formats outside the requested set never enter the map."""
        record = record_factory("C1")
        formats = cached_formats(["iso19115"])

        rfm = build_revision_format_map(record, formats, render_extra_formats)

        assert set(rfm.formats) - {record.native_format} <= formats
        assert ISO_SMAP not in rfm.formats
        assert ISO19115 not in rfm.formats

    def test_native_only_transformer(self, record_factory):
        """Test the default transformer caches the native format alone."""
        record = record_factory("C1", native_format=UMM_JSON, metadata='{"ShortName": "A"}')

        rfm = build_revision_format_map(record, ALL_FORMATS, native_only_transformer)

        assert rfm.decompressed() == {UMM_JSON.key: '{"ShortName": "A"}'}

    def test_whole_entity_failure_raises_transform_error(self, record_factory):
        """Test a transformer exception is reported as TransformError."""
        record = record_factory("BAD1")

        with pytest.raises(TransformError) as exc_info:
            build_revision_format_map(record, ALL_FORMATS, fail_for_bad)

        assert exc_info.value.entity_id == "BAD1"
        assert "unparseable metadata" in exc_info.value.message

    def test_xml_declaration_is_stripped(self, record_factory):
        """Test XML processing instructions are removed before transforming."""
        record = record_factory("C1", metadata='<?xml version="1.0" encoding="UTF-8"?>\n<Collection/>')
        seen = []

        def capture(r, formats):
            seen.append(r.metadata)
            return {}

        rfm = build_revision_format_map(record, ALL_FORMATS, capture)

        assert seen == ["<Collection/>"]
        assert rfm.get_metadata(ECHO10) == "<Collection/>"

    def test_json_metadata_is_not_stripped(self, record_factory):
        """Test non-XML metadata passes through unchanged."""
        record = record_factory("C1", native_format=UMM_JSON, metadata='<?xml version="1.0"?>')

        assert strip_xml_declaration(record) is record


class TestBuildBatch:
    """Test cases for build_batch."""

    @pytest.mark.asyncio
    async def test_entity_failure_is_contained(self, record_factory):
        """Test one failing entity does not abort the batch."""
        records = [record_factory("A"), record_factory("BAD1"), record_factory("B")]

        result = await build_batch(records, ALL_FORMATS, fail_for_bad)

        assert set(result.maps) == {"A", "B"}
        assert list(result.failures) == ["BAD1"]
        assert "unparseable metadata" in result.failures["BAD1"]

    @pytest.mark.asyncio
    async def test_format_failure_is_contained(self, record_factory):
        """Test a format failure for C leaves every other map complete."""
        records = [record_factory("A"), record_factory("C")]

        result = await build_batch(records, ALL_FORMATS, render_all_but_dif_for_c)

        assert result.failures == {}
        assert set(result.maps["A"].formats) == ALL_FORMATS
        assert set(result.maps["C"].formats) == ALL_FORMATS - {DIF}

    @pytest.mark.asyncio
    async def test_highest_revision_wins(self, record_factory):
        """Test duplicate records keep the newest revision."""
        records = [record_factory("A", revision_id=5), record_factory("A", revision_id=2)]

        result = await build_batch(records, ALL_FORMATS, render_all)

        assert result.maps["A"].revision_id == 5

    @pytest.mark.asyncio
    async def test_runs_on_given_executor(self, record_factory):
        """Test transforms run on the supplied executor."""
        records = [record_factory(f"C{i}") for i in range(20)]

        with ThreadPoolExecutor(max_workers=4) as executor:
            result = await build_batch(records, ALL_FORMATS, render_all, executor)

        assert len(result.maps) == 20

    @pytest.mark.asyncio
    async def test_runs_on_process_pool(self, record_factory):
        """Test a picklable transformer runs on worker processes."""
        records = [record_factory(f"C{i}", metadata='<?xml version="1.0"?><echo/>') for i in range(4)]

        with ProcessPoolExecutor(max_workers=2) as executor:
            result = await build_batch(records, ALL_FORMATS, native_only_transformer, executor)

        assert result.failures == {}
        assert sorted(result.maps) == ["C0", "C1", "C2", "C3"]
        assert result.maps["C0"].get_metadata(ECHO10) == "<echo/>"

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        """Test an empty batch."""
        result = await build_batch([], ALL_FORMATS, render_all)

        assert result.maps == {}
        assert result.failures == {}
