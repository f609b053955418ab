"""Persistent per-owner record cache.

Layout: one JSON object per owner under ``user_data:{ownerId}`` holding an
array of records per collection, a ``lastUpdated`` ISO timestamp and a
``lastSynced`` map (collection → time of the last successful remote fetch).
Every mutation is written through to the backing store before returning.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from fleetsync._constants import (
    LAST_SYNCED_FIELD,
    LAST_UPDATED_FIELD,
    USER_DATA_KEY_PREFIX,
    user_data_key,
)
from fleetsync.models._base import parse_timestamp
from fleetsync.models.record import Record
from fleetsync.models.sync import CacheEntry
from fleetsync.state.policy import rewrite_record_references
from fleetsync.storage import KeyValueStore

_logger = logging.getLogger(__name__)

_RESERVED_FIELDS = frozenset({LAST_UPDATED_FIELD, LAST_SYNCED_FIELD})

CacheListener = Callable[[str, str], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PersistentCache:
    """Owner/collection scoped record snapshots that survive restarts.

    The cache is the only thing the read path touches synchronously, so
    every method here is non-blocking apart from the store write itself.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._clock = clock
        self._listeners: list[CacheListener] = []
        self._revisions: dict[tuple[str, str], int] = {}

    # ------------------------------------------------------------------
    # Listeners (derivative caches)
    # ------------------------------------------------------------------

    def add_listener(self, listener: CacheListener) -> Callable[[], None]:
        """Call *listener(owner, collection)* after every mutation; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def revision(self, owner_id: str, collection: str) -> int:
        """Counter bumped by every mutation of *collection* for *owner_id* in this process."""
        return self._revisions.get((owner_id, collection), 0)

    def _notify(self, owner_id: str, collection: str) -> None:
        key = (owner_id, collection)
        self._revisions[key] = self._revisions.get(key, 0) + 1
        for listener in list(self._listeners):
            try:
                listener(owner_id, collection)
            except Exception:
                _logger.debug("Cache listener failed for %s/%s", owner_id, collection, exc_info=True)

    # ------------------------------------------------------------------
    # Raw blob access
    # ------------------------------------------------------------------

    def _load(self, owner_id: str) -> dict[str, Any]:
        blob = self._store.get(user_data_key(owner_id))
        return blob if isinstance(blob, dict) else {}

    def _save(self, owner_id: str, blob: dict[str, Any]) -> None:
        blob[LAST_UPDATED_FIELD] = self._clock().isoformat()
        self._store.set(user_data_key(owner_id), blob)

    @staticmethod
    def _parse(owner_id: str, collection: str, raw: Any) -> list[Record]:
        if not isinstance(raw, list):
            return []
        records: list[Record] = []
        for item in raw:
            try:
                records.append(Record.model_validate(item))
            except ValidationError:
                _logger.warning("Dropping unreadable cached %s record for owner %s", collection, owner_id)
        return records

    @staticmethod
    def _dump(records: Iterable[Record]) -> list[dict[str, Any]]:
        return [record.to_document() for record in records]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, owner_id: str, collection: str) -> list[Record]:
        """Cached snapshot, or an empty list when nothing is cached."""
        return self._parse(owner_id, collection, self._load(owner_id).get(collection))

    def find(self, owner_id: str, collection: str, record_id: str) -> Record | None:
        for record in self.get(owner_id, collection):
            if record.id == record_id:
                return record
        return None

    def has(self, owner_id: str, collection: str) -> bool:
        """Whether a snapshot exists (an empty fetched snapshot counts)."""
        return isinstance(self._load(owner_id).get(collection), list)

    def entry(self, owner_id: str, collection: str) -> CacheEntry:
        blob = self._load(owner_id)
        synced = blob.get(LAST_SYNCED_FIELD)
        last_synced = synced.get(collection) if isinstance(synced, dict) else None
        return CacheEntry(
            owner_id=owner_id,
            collection=collection,
            records=self._parse(owner_id, collection, blob.get(collection)),
            last_synced=parse_timestamp(last_synced),
        )

    def collections(self, owner_id: str) -> list[str]:
        blob = self._load(owner_id)
        return [key for key, value in blob.items() if key not in _RESERVED_FIELDS and isinstance(value, list)]

    def owners(self) -> list[str]:
        return [key[len(USER_DATA_KEY_PREFIX) :] for key in self._store.keys(USER_DATA_KEY_PREFIX)]

    def batch(self) -> contextlib.AbstractContextManager[None]:
        """Group several cache and queue mutations into one durable store write."""
        return self._store.batch()

    def set(self, owner_id: str, collection: str, records: Iterable[Record], *, synced: bool = False) -> None:
        """Replace the snapshot atomically; ``synced`` stamps ``lastSynced``."""
        blob = self._load(owner_id)
        blob[collection] = self._dump(records)
        if synced:
            stamps = blob.get(LAST_SYNCED_FIELD)
            if not isinstance(stamps, dict):
                stamps = {}
            stamps[collection] = self._clock().isoformat()
            blob[LAST_SYNCED_FIELD] = stamps
        self._save(owner_id, blob)
        _logger.debug("Cached %d %s records for owner %s", len(blob[collection]), collection, owner_id)
        self._notify(owner_id, collection)

    def upsert(self, owner_id: str, collection: str, record: Record) -> None:
        """Insert *record* or overwrite the cached copy with the same id."""
        records = self.get(owner_id, collection)
        for index, existing in enumerate(records):
            if existing.id == record.id:
                records[index] = record
                break
        else:
            records.append(record)
        self.set(owner_id, collection, records)

    def remove(self, owner_id: str, collection: str, record_id: str) -> bool:
        records = self.get(owner_id, collection)
        remaining = [record for record in records if record.id != record_id]
        if len(remaining) == len(records):
            return False
        self.set(owner_id, collection, remaining)
        return True

    def rewrite_id(self, owner_id: str, collection: str, old_id: str, record: Record) -> None:
        """Replace the record cached under *old_id* by *record* and retire *old_id*.

        References to *old_id* held by any other cached record of the owner
        (e.g. a maintenance entry's ``truckId``) are rewritten too. The
        caller groups this with the queue rewrite in one store batch.
        """
        # A refresh may already have cached the canonical copy.
        records = [existing for existing in self.get(owner_id, collection) if existing.id != record.id]
        replaced = False
        for index, existing in enumerate(records):
            if existing.id == old_id:
                records[index] = record
                replaced = True
                break
        if not replaced:
            records.append(record)
        self.set(owner_id, collection, records)
        self.rewrite_references(owner_id, old_id, record.id)

    def rewrite_references(self, owner_id: str, old_id: str, new_id: str) -> int:
        """Rewrite cross-record references to *old_id*; returns the number of records touched."""
        touched = 0
        for collection in self.collections(owner_id):
            records = self.get(owner_id, collection)
            changed = False
            for index, record in enumerate(records):
                rewritten = rewrite_record_references(record, old_id, new_id)
                if rewritten is not None:
                    records[index] = rewritten
                    changed = True
                    touched += 1
            if changed:
                self.set(owner_id, collection, records)
        return touched

    def clear(self, owner_id: str) -> None:
        collections = self.collections(owner_id)
        self._store.delete(user_data_key(owner_id))
        for collection in collections:
            self._notify(owner_id, collection)
