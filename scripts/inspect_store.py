#!/usr/bin/env python3
"""Inspect a fleetsync JSON store.

Prints, per owner, the cached collections with their record counts and
last sync time, followed by every queued write and its retry state.

Usage
-----
::

    python scripts/inspect_store.py ~/.fleetsync/store.json
    python scripts/inspect_store.py store.json --json
    python scripts/inspect_store.py store.json --flush --base-url https://fleet.example.com/api

Options::

    --json               Output as machine-readable JSON
    --flush              Run one forced flush against the remote first
    --base-url URL       Remote store base URL (default: FLEETSYNC_BASE_URL)
    --verbose, -v        Enable debug logging
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

import aiohttp  # noqa: E402

from fleetsync import (  # noqa: E402
    FleetSyncError,
    JsonFileStore,
    OfflineQueue,
    PersistentCache,
    SyncConfig,
    SyncReconciler,
)


def _summary(cache: PersistentCache, queue: OfflineQueue) -> dict[str, Any]:
    owners: dict[str, Any] = {}
    for owner_id in sorted(cache.owners()):
        collections: dict[str, Any] = {}
        for collection in sorted(cache.collections(owner_id)):
            entry = cache.entry(owner_id, collection)
            collections[collection] = {
                "records": len(entry.records),
                "localRecords": sum(1 for record in entry.records if queue.is_local_id(record.id)),
                "lastSynced": entry.last_synced.isoformat() if entry.last_synced else None,
            }
        owners[owner_id] = collections

    queued: dict[str, Any] = {}
    for collection in sorted(queue.collections()):
        queued[collection] = [
            {
                "entryId": entry.entry_id,
                "operation": str(entry.operation),
                "recordId": entry.record_id,
                "ownerId": entry.owner_id,
                "attempts": entry.attempt_count,
                "nextAttemptAt": entry.next_attempt_at.isoformat() if entry.next_attempt_at else None,
                "lastError": entry.last_error,
            }
            for entry in queue.pending(collection)
        ]
    return {"owners": owners, "queue": queued}


def _print_text(summary: dict[str, Any]) -> None:
    print("=" * 60)
    print("  CACHE")
    print("=" * 60)
    if not summary["owners"]:
        print("  (empty)")
    for owner_id, collections in summary["owners"].items():
        print(f"  owner {owner_id}")
        for name, info in collections.items():
            local = f", {info['localRecords']} local" if info["localRecords"] else ""
            print(f"    {name:<22} {info['records']:>5} records{local}  synced={info['lastSynced'] or '-'}")

    print()
    print("=" * 60)
    print("  OFFLINE QUEUE")
    print("=" * 60)
    if not summary["queue"]:
        print("  (empty)")
    for collection, entries in summary["queue"].items():
        print(f"  {collection} ({len(entries)} pending)")
        for item in entries:
            error = f"  last_error={item['lastError']}" if item["lastError"] else ""
            print(
                f"    {item['operation']:<7} {item['recordId']:<28} attempts={item['attempts']}"
                f"  next={item['nextAttemptAt'] or 'now'}{error}"
            )


async def _flush(store: JsonFileStore, base_url: str | None) -> None:
    overrides: dict[str, Any] = {"periodic_flush_enabled": False}
    if base_url:
        overrides["base_url"] = base_url
    config = SyncConfig.from_env(**overrides)
    async with aiohttp.ClientSession() as session:
        sync = SyncReconciler.from_config(config, session, store=store)
        report = await sync.flush(force=True)
    print(
        f"flush: attempted={report.attempted} committed={report.committed} "
        f"failed={report.failed} deferred={report.deferred}",
        file=sys.stderr,
    )
    for local_id, canonical_id in report.id_map.items():
        print(f"  {local_id} -> {canonical_id}", file=sys.stderr)


async def main() -> int:
    parser = argparse.ArgumentParser(
        description="Inspect the cache and offline queue of a fleetsync JSON store",
    )
    parser.add_argument("path", help="Path of the JSON store file")
    parser.add_argument("--json", action="store_true", dest="json_mode", help="Output machine-readable JSON")
    parser.add_argument("--flush", action="store_true", help="Run one forced flush against the remote first")
    parser.add_argument("--base-url", help="Remote store base URL (default: FLEETSYNC_BASE_URL)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        store = JsonFileStore(args.path)
        if args.flush:
            await _flush(store, args.base_url)
    except FleetSyncError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    summary = _summary(PersistentCache(store), OfflineQueue(store))
    if args.json_mode:
        print(json.dumps(summary, indent=2, ensure_ascii=False))
    else:
        _print_text(summary)
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
