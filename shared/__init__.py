"""
Shared utilities for the Catalog Metadata Cache.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with refresh cycle correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorators for calls to the catalog
- base_service: FastAPI service base with health and metrics endpoints

Do not import from service packages into shared/.
"""
