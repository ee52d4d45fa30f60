"""
Cache package for the metadata cache service.

Provides namespace-scoped hash caches with an in-memory or Redis backend,
cache-aside reads and a storage adapter for timestamp-bearing values.
"""
