"""
Metadata Cache Service package for the Catalog Metadata Cache.

The service keeps two Redis-hash namespaces in sync with the catalog:
- collection-metadata-cache: concept id -> revision format map, rebuilt daily
  and updated incrementally from a refresh watermark
- collections-for-gran-acls-by-concept-id: collection ACL projections,
  replaced on a fixed interval

Structure:
- app.main: FastAPI admin app, routes and scheduler wiring.
- app.cache: Backends, the cache-aside store and timestamp serialization.
- app.revision_format: Format identifiers, compression and map building.
- app.manager: Full refresh and incremental update cycles.
- app.acl_cache: Collections-for-ACLs cache.
- app.sources: Catalog clients.
- app.jobs: Job registrations and the asyncio scheduler.
"""
