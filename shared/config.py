"""
Shared configuration management for the Catalog Metadata Cache.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ACCESS_",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Cache backend: "memory" keeps namespaces in-process, "redis" shares them
    cache_backend: str = Field(default="memory")
    redis_url: str = Field(default="redis://localhost:6379/0")

    # Catalog collaborators
    catalog_search_url: str = Field(default="http://localhost:3003")
    catalog_request_timeout: float = Field(default=30.0)

    # Collection metadata cache
    metadata_cache_ttl: Optional[int] = Field(default=None)
    metadata_cache_batch_size: int = Field(default=1000, ge=1)
    metadata_cache_update_interval: int = Field(default=3600, ge=1)
    metadata_cache_refresh_time: str = Field(default="06:00")
    non_cached_metadata_formats: str = Field(default="")
    metadata_transformer: Optional[str] = Field(default=None)
    transform_workers: Optional[int] = Field(default=None)
    # "thread" or "process"; a process pool needs a picklable, importable transformer
    transform_executor: str = Field(default="thread")
    strict_entity_failures: bool = Field(default=True)

    # Collections-for-ACLs cache
    acl_cache_ttl: int = Field(default=1800)
    acl_cache_refresh_interval: int = Field(default=900)

    # Scheduler
    enable_scheduler: bool = Field(default=True)

    def excluded_format_keys(self) -> set:
        """Format keys configured as non-cached."""
        return {
            key.strip()
            for key in self.non_cached_metadata_formats.split(",")
            if key.strip()
        }


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
