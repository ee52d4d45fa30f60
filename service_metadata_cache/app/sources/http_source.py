"""
HTTP client for the catalog search and metadata endpoints.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx

from shared.errors import SourceFetchError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, call_with_retry
from ..cache.serialization import datetime_to_str
from ..revision_format.formats import SimpleFormat, VersionedFormat
from ..revision_format.models import EntityRecord
from .base import AclCollectionSource, MetadataSource

ACL_TIME_FIELDS = ("start_date", "end_date", "revision_date")


class RetryableStatusError(Exception):
    """A 5xx response worth retrying."""


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse ISO timestamps returned by the catalog; naive values are UTC."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class HttpCatalogSource(MetadataSource, AclCollectionSource):
    """Catalog client implementing both source interfaces over HTTP."""

    def __init__(
        self,
        search_url: str,
        *,
        page_size: int = 2000,
        timeout: float = 30.0,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = search_url.rstrip('/')
        self.page_size = page_size
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5)
        self._transport = transport
        self.logger = get_logger("metadata_cache.catalog_source")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def _request(self, method: str, path: str, **kwargs) -> Optional[Any]:
        """Issue one request with retries; 404 yields None."""

        async def _send():
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
            if response.status_code >= 500:
                raise RetryableStatusError(f"{method} {path} returned {response.status_code}")
            return response

        try:
            response = await call_with_retry(
                _send,
                exceptions=(httpx.TransportError, RetryableStatusError),
                config=self.retry_config
            )
        except RetryError as e:
            raise SourceFetchError(
                f"Catalog request failed: {e.last_exception}",
                {"method": method, "path": path, "attempts": e.attempts}
            )

        if response.status_code == 404:
            self.logger.info("Catalog item not found", path=path)
            return None

        if response.status_code != 200:
            self.logger.error(
                "Catalog request failed",
                method=method,
                path=path,
                status_code=response.status_code,
                response=response.text
            )
            raise SourceFetchError(
                f"Unexpected status {response.status_code} from catalog",
                {"path": path, "status_code": response.status_code, "body": response.text}
            )

        try:
            return response.json()
        except ValueError as e:
            raise SourceFetchError("Catalog returned invalid JSON", {"path": path, "error": str(e)})

    async def _search_ids(self, entity_type: str, params: Dict[str, Any]) -> List[str]:
        """Page through a search and collect concept ids."""
        path = f"/search/{entity_type}s"
        ids: List[str] = []
        page_num = 1
        while True:
            page = await self._request(
                "GET",
                path,
                params={**params, "page_size": self.page_size, "page_num": page_num}
            )
            items = (page or {}).get("items", [])
            ids.extend(item["concept_id"] for item in items)
            hits = (page or {}).get("hits", len(ids))
            if not items or len(ids) >= hits:
                break
            page_num += 1

        self.logger.debug("Catalog search complete", entity_type=entity_type, count=len(ids))
        return ids

    async def fetch_all(self, entity_type: str) -> List[str]:
        return await self._search_ids(entity_type, {})

    async def fetch_changed_since(self, entity_type: str, since: datetime) -> List[str]:
        return await self._search_ids(entity_type, {"updated_since": datetime_to_str(since)})

    async def fetch_records(self, entity_ids: Sequence[str]) -> List[EntityRecord]:
        if not entity_ids:
            return []
        payload = await self._request("POST", "/concepts/latest", json={"concept_ids": list(entity_ids)})
        return [self._to_record(item) for item in (payload or [])]

    def _to_record(self, item: Dict[str, Any]) -> EntityRecord:
        try:
            version = item.get("format_version")
            native_format = VersionedFormat(item["format"], version) if version else SimpleFormat(item["format"])
            return EntityRecord(
                entity_id=item["concept_id"],
                revision_id=int(item["revision_id"]),
                native_format=native_format,
                metadata=item["metadata"],
                revision_date=parse_timestamp(item.get("revision_date")),
                provider_id=item.get("provider_id"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SourceFetchError("Malformed concept in catalog response", {"error": str(e)})

    async def fetch_acl_collections(self) -> List[Dict[str, Any]]:
        payload = await self._request("GET", "/acl/collections")
        return [self._to_acl_collection(item) for item in (payload or {}).get("items", [])]

    async def fetch_acl_collection(self, concept_id: str) -> Optional[Dict[str, Any]]:
        payload = await self._request("GET", f"/acl/collections/{concept_id}")
        if payload is None:
            return None
        return self._to_acl_collection(payload)

    def _to_acl_collection(self, item: Dict[str, Any]) -> Dict[str, Any]:
        collection = dict(item)
        try:
            for name in ACL_TIME_FIELDS:
                if collection.get(name):
                    collection[name] = parse_timestamp(collection[name])
        except ValueError as e:
            raise SourceFetchError("Malformed timestamp in ACL collection", {"error": str(e)})
        return collection
