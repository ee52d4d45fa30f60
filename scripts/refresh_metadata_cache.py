#!/usr/bin/env python3
"""
Run one metadata cache cycle from the command line.

This helper mirrors the admin service's refresh endpoints but can be executed
manually from a developer workstation or a CI job. It builds the same
components as the service from ``ACCESS_*`` settings, runs a single full
refresh, incremental update or collections-for-ACLs refresh, and prints the
JSON summary.
"""

import argparse
import asyncio
import json
from pathlib import Path
from typing import Optional
import sys
import os

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from service_metadata_cache.app.main import MetadataCacheService  # noqa: E402

OPERATIONS = ("full", "incremental", "acl")


async def run(
    *,
    operation: str,
    catalog_url: Optional[str],
    redis_url: Optional[str],
    dry_run: bool,
) -> dict:
    """Execute one cache cycle and return its summary."""
    overrides = {"enable_scheduler": False}
    if catalog_url:
        overrides["catalog_search_url"] = catalog_url
    if redis_url:
        overrides["redis_url"] = redis_url
    if dry_run:
        overrides["cache_backend"] = "memory"

    service = MetadataCacheService(**overrides)
    try:
        if operation == "full":
            result = await service.manager.full_refresh()
            return result.to_dict()
        if operation == "incremental":
            result = await service.manager.incremental_update()
            return result.to_dict()
        size = await service.acl_cache.refresh_entire_cache()
        return {
            "operation": "full_refresh",
            "namespace": service.acl_cache.namespace,
            "cache_size": size,
        }
    finally:
        await service.stop()


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one metadata cache refresh cycle.")
    parser.add_argument("--operation", choices=OPERATIONS, default="incremental", help="Cycle to run")
    parser.add_argument("--catalog-url", default=None, help="Catalog search URL (defaults to ACCESS_CATALOG_SEARCH_URL)")
    parser.add_argument("--redis-url", default=None, help="Redis connection URL (defaults to ACCESS_REDIS_URL)")
    parser.add_argument("--dry-run", action="store_true", help="Use the in-memory backend; nothing is written to Redis")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = _parse_args(argv)
    try:
        summary = asyncio.run(
            run(
                operation=args.operation,
                catalog_url=args.catalog_url,
                redis_url=args.redis_url,
                dry_run=args.dry_run,
            )
        )
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[metadata-cache] {args.operation} failed: {exc}", file=sys.stderr)
        return 1

    if args.dry_run:
        print("[metadata-cache] DRY RUN - in-memory backend, no Redis writes executed")

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
