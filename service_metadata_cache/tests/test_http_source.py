"""
Unit tests for the HTTP catalog source.
"""

import json
import pytest
import httpx
from datetime import datetime, timezone

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import SourceFetchError
from shared.retry import RetryConfig
from service_metadata_cache.app.revision_format.formats import ECHO10, VersionedFormat
from service_metadata_cache.app.sources.http_source import HttpCatalogSource, parse_timestamp

BASE_URL = "http://catalog.test"
NO_WAIT = RetryConfig(max_attempts=3, base_delay=0, jitter=False)


def make_source(handler, page_size: int = 2) -> HttpCatalogSource:
    """Create a source whose requests are answered by ``handler``."""
    return HttpCatalogSource(
        BASE_URL,
        page_size=page_size,
        retry_config=NO_WAIT,
        transport=httpx.MockTransport(handler)
    )


class TestHttpCatalogSource:
    """Test cases for HttpCatalogSource."""

    @pytest.mark.asyncio
    async def test_fetch_all_pages_through_search(self):
        """Test identifiers are collected across pages."""
        pages = {
            "1": {"hits": 3, "items": [{"concept_id": "C1"}, {"concept_id": "C2"}]},
            "2": {"hits": 3, "items": [{"concept_id": "C3"}]},
        }
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=pages[request.url.params["page_num"]])

        ids = await make_source(handler).fetch_all("collection")

        assert ids == ["C1", "C2", "C3"]
        assert [r.url.path for r in requests] == ["/search/collections", "/search/collections"]
        assert requests[0].url.params["page_size"] == "2"

    @pytest.mark.asyncio
    async def test_fetch_changed_since_sends_canonical_timestamp(self):
        """Test the watermark is sent as updated_since."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.url.params)
            return httpx.Response(200, json={"hits": 0, "items": []})

        since = datetime(2024, 1, 1, 6, tzinfo=timezone.utc)
        ids = await make_source(handler).fetch_changed_since("collection", since)

        assert ids == []
        assert seen["updated_since"] == "2024-01-01T06:00:00.000000Z"

    @pytest.mark.asyncio
    async def test_fetch_records(self):
        """Test latest revisions are parsed into entity records."""
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/concepts/latest"
            assert json.loads(request.content) == {"concept_ids": ["C1", "C2"]}
            return httpx.Response(200, json=[
                {
                    "concept_id": "C1",
                    "revision_id": "3",
                    "format": "echo10",
                    "metadata": "<Collection/>",
                    "revision_date": "2024-02-01T00:00:00Z",
                    "provider_id": "PROV1",
                },
                {
                    "concept_id": "C2",
                    "revision_id": 1,
                    "format": "umm-json",
                    "format_version": "1.17.0",
                    "metadata": "{}",
                },
            ])

        records = await make_source(handler).fetch_records(["C1", "C2"])

        assert records[0].revision_id == 3
        assert records[0].native_format == ECHO10
        assert records[0].revision_date == datetime(2024, 2, 1, tzinfo=timezone.utc)
        assert records[1].native_format == VersionedFormat("umm-json", "1.17.0")
        assert records[1].revision_date is None

    @pytest.mark.asyncio
    async def test_fetch_records_empty_skips_request(self):
        """Test an empty id list issues no request."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        assert await make_source(handler).fetch_records([]) == []

    @pytest.mark.asyncio
    async def test_malformed_record(self):
        """Test malformed concepts are a source error."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[{"concept_id": "C1"}])

        with pytest.raises(SourceFetchError):
            await make_source(handler).fetch_records(["C1"])

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self):
        """Test 5xx responses are retried until success."""
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"hits": 1, "items": [{"concept_id": "C1"}]})

        assert await make_source(handler).fetch_all("collection") == ["C1"]
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_source_fetch_error(self):
        """Test persistent failures surface as SourceFetchError."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(SourceFetchError) as exc_info:
            await make_source(handler).fetch_all("collection")

        assert exc_info.value.details["attempts"] == 3

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        """Test 4xx responses fail immediately."""
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(400, text="bad request")

        with pytest.raises(SourceFetchError) as exc_info:
            await make_source(handler).fetch_all("collection")

        assert len(attempts) == 1
        assert exc_info.value.details["status_code"] == 400

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        """Test unparseable bodies are a source error."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>")

        with pytest.raises(SourceFetchError):
            await make_source(handler).fetch_acl_collections()

    @pytest.mark.asyncio
    async def test_acl_collections(self):
        """Test ACL projections have their timestamps parsed."""
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/C404"):
                return httpx.Response(404)
            if request.url.path.endswith("/C1"):
                return httpx.Response(200, json={"concept_id": "C1", "start_date": "2020-01-01T00:00:00"})
            return httpx.Response(200, json={"items": [
                {"concept_id": "C1", "start_date": "2020-01-01T00:00:00Z", "end_date": None},
            ]})

        source = make_source(handler)

        collections = await source.fetch_acl_collections()
        assert collections == [{
            "concept_id": "C1",
            "start_date": datetime(2020, 1, 1, tzinfo=timezone.utc),
            "end_date": None,
        }]
        single = await source.fetch_acl_collection("C1")
        assert single["start_date"] == datetime(2020, 1, 1, tzinfo=timezone.utc)
        assert await source.fetch_acl_collection("C404") is None

    def test_parse_timestamp(self):
        """Test catalog timestamp parsing."""
        assert parse_timestamp(None) is None
        assert parse_timestamp("2024-01-01T00:00:00+02:00") == datetime(2023, 12, 31, 22, tzinfo=timezone.utc)
