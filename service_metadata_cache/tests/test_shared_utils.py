"""
Unit tests for shared configuration, errors, retry and metrics helpers.
"""

import pytest
from unittest.mock import AsyncMock
from prometheus_client import CollectorRegistry, generate_latest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.config import get_config
from shared.errors import BatchTransformError, CacheBackendError, TransformError
from shared.logging import clear_context, cycle_id_var, set_cycle_id
from shared.metrics import get_metrics_collector
from shared.retry import RetryConfig, RetryError, calculate_delay, call_with_retry, retry_on_exception


class TestConfig:
    """Test cases for service configuration."""

    def test_defaults(self, monkeypatch):
        """Test default cache settings."""
        monkeypatch.delenv("ACCESS_NON_CACHED_METADATA_FORMATS", raising=False)
        config = get_config("metadata_cache", 8020)

        assert config.cache_backend == "memory"
        assert config.metadata_cache_batch_size == 1000
        assert config.acl_cache_ttl == 1800
        assert config.acl_cache_refresh_interval == 900
        assert config.strict_entity_failures is True
        assert config.transform_executor == "thread"
        assert config.excluded_format_keys() == set()

    def test_environment_overrides(self, monkeypatch):
        """Test ACCESS_ prefixed variables."""
        monkeypatch.setenv("ACCESS_CACHE_BACKEND", "redis")
        monkeypatch.setenv("ACCESS_NON_CACHED_METADATA_FORMATS", "dif, iso19115 ,")

        config = get_config("metadata_cache", 8020)

        assert config.cache_backend == "redis"
        assert config.excluded_format_keys() == {"dif", "iso19115"}


class TestErrors:
    """Test cases for error types."""

    def test_error_response(self):
        """Test errors carry the cycle id into their response."""
        set_cycle_id("cycle-1")
        try:
            response = CacheBackendError("Redis down", {"namespace": "ns"}).to_response()
        finally:
            clear_context()

        assert response.cycle_id == "cycle-1"
        assert response.code == "CACHE_BACKEND_ERROR"
        assert response.details == {"namespace": "ns"}
        assert CacheBackendError.status_code == 503
        assert cycle_id_var.get() is None

    def test_transform_errors(self):
        """Test transform error details."""
        error = TransformError("bad xml", entity_id="C1", format_key="dif")
        batch = BatchTransformError({"C1": "bad xml"})

        assert error.details == {"entity_id": "C1", "format": "dif"}
        assert batch.message == "1 entities failed to transform"


class TestRetry:
    """Test cases for retry helpers."""

    def test_calculate_delay(self):
        """Test exponential backoff capped at max_delay."""
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)

        assert [calculate_delay(n, config) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    @pytest.mark.asyncio
    async def test_call_with_retry_succeeds_after_failures(self):
        """Test transient failures are retried."""
        func = AsyncMock(side_effect=[ConnectionError("1"), ConnectionError("2"), "ok"])
        sleep = AsyncMock()

        result = await call_with_retry(func, exceptions=(ConnectionError,), config=RetryConfig(jitter=False), sleep=sleep)

        assert result == "ok"
        assert func.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_call_with_retry_exhausted(self):
        """Test RetryError after the last attempt."""
        func = AsyncMock(side_effect=ConnectionError("down"))

        with pytest.raises(RetryError) as exc_info:
            await call_with_retry(func, exceptions=(ConnectionError,), config=RetryConfig(max_attempts=2), sleep=AsyncMock())

        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_exception, ConnectionError)

    @pytest.mark.asyncio
    async def test_unlisted_exceptions_are_not_retried(self):
        """Test only the listed exceptions are retried."""
        func = AsyncMock(side_effect=ValueError("bad"))

        with pytest.raises(ValueError):
            await call_with_retry(func, exceptions=(ConnectionError,), sleep=AsyncMock())

        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_decorator(self):
        """Test the retry decorator."""
        attempts = []

        @retry_on_exception(exceptions=(ConnectionError,), config=RetryConfig(base_delay=0, jitter=False))
        async def flaky():
            attempts.append(1)
            if len(attempts) < 2:
                raise ConnectionError("flaky")
            return "done"

        assert await flaky() == "done"
        assert len(attempts) == 2


class TestMetrics:
    """Test cases for MetricsCollector."""

    def test_refresh_and_cache_metrics(self):
        """Test cache metrics are exported on the service registry."""
        registry = CollectorRegistry()
        metrics = get_metrics_collector("metadata_cache", registry)

        metrics.record_refresh("ns", "full_refresh", "success", 1.5)
        metrics.set_gauge("cache_entries", 42, namespace="ns")
        metrics.increment_counter("cache_hits_total", namespace="ns")
        metrics.increment_counter("unknown_metric", namespace="ns")

        output = generate_latest(registry).decode()
        assert 'cache_refresh_total{namespace="ns",operation="full_refresh",outcome="success"} 1.0' in output
        assert 'cache_entries{namespace="ns"} 42.0' in output
        assert 'cache_hits_total{namespace="ns"} 1.0' in output
