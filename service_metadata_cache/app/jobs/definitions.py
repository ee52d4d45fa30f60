"""
Refresh job registrations for the caches.
"""

from .scheduler import JobRegistration, TriggerKind
from ..acl_cache.collections_for_acls import CollectionsForAclsCache, JOB_REFRESH_RATE
from ..manager.metadata_cache import MetadataCacheManager

REFRESH_METADATA_CACHE_JOB = "refresh-collections-metadata-cache"
UPDATE_METADATA_CACHE_JOB = "update-collections-metadata-cache"
REFRESH_ACL_CACHE_JOB = "refresh-collections-cache-for-granule-acls"

# UTC
DEFAULT_FULL_REFRESH_TIME = "06:00"

DEFAULT_UPDATE_INTERVAL = 3600


def refresh_collections_metadata_cache_job(
    manager: MetadataCacheManager,
    daily_at: str = DEFAULT_FULL_REFRESH_TIME,
    run_on_start: bool = False
) -> JobRegistration:
    return JobRegistration(
        job_key=REFRESH_METADATA_CACHE_JOB,
        trigger_kind=TriggerKind.FIXED_TIME,
        trigger_value=daily_at,
        target=manager.full_refresh,
        run_on_start=run_on_start,
    )


def update_collections_metadata_cache_job(
    manager: MetadataCacheManager,
    interval: int = DEFAULT_UPDATE_INTERVAL
) -> JobRegistration:
    return JobRegistration(
        job_key=UPDATE_METADATA_CACHE_JOB,
        trigger_kind=TriggerKind.FIXED_INTERVAL,
        trigger_value=interval,
        target=manager.incremental_update,
    )


def refresh_collections_cache_for_granule_acls_job(
    acl_cache: CollectionsForAclsCache,
    interval: int = JOB_REFRESH_RATE,
    run_on_start: bool = False
) -> JobRegistration:
    return JobRegistration(
        job_key=REFRESH_ACL_CACHE_JOB,
        trigger_kind=TriggerKind.FIXED_INTERVAL,
        trigger_value=interval,
        target=acl_cache.refresh_entire_cache,
        run_on_start=run_on_start,
    )
