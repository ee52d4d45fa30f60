"""
Shared error handling for the Catalog Metadata Cache.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    cycle_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class CacheLayerException(Exception):
    """Base exception for metadata cache components."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        from shared.logging import cycle_id_var

        return ErrorResponse(
            cycle_id=cycle_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class SourceFetchError(CacheLayerException):
    """The authoritative source could not be queried."""

    status_code = 502

    def __init__(self, message: str = "Source fetch failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("SOURCE_FETCH_ERROR", message, details)


class TransformError(CacheLayerException):
    """One entity or one format could not be converted."""

    def __init__(
        self,
        message: str = "Transform failed",
        entity_id: Optional[str] = None,
        format_key: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = dict(details or {})
        if entity_id is not None:
            details["entity_id"] = entity_id
        if format_key is not None:
            details["format"] = format_key
        self.entity_id = entity_id
        self.format_key = format_key
        super().__init__("TRANSFORM_ERROR", message, details)


class BatchTransformError(CacheLayerException):
    """Entity transforms failed and the cycle was configured to abort."""

    def __init__(self, failures: Dict[str, str]):
        self.failures = failures
        super().__init__(
            "BATCH_TRANSFORM_ERROR",
            f"{len(failures)} entities failed to transform",
            {"failures": failures}
        )


class CacheBackendError(CacheLayerException):
    """The cache backend is unavailable for a read or write."""

    status_code = 503

    def __init__(self, message: str = "Cache backend error", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_BACKEND_ERROR", message, details)


class SerializationError(CacheLayerException):
    """A value cannot round-trip through the storage adapter."""

    def __init__(self, message: str = "Value is not storable", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERIALIZATION_ERROR", message, details)


class CacheConfigurationError(CacheLayerException):
    """A cache was configured inconsistently."""

    def __init__(self, message: str = "Invalid cache configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_CONFIGURATION_ERROR", message, details)


class CacheNotFoundError(CacheLayerException):
    """A named cache or cached item does not exist."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_NOT_FOUND", message, details)
