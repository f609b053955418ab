"""Persistent FIFO of writes the remote store has not confirmed.

Layout: ``offline_queue:{collection}`` holds the ordered entry array of a
collection. Entries leave the queue only through :meth:`OfflineQueue.ack`,
after the remote confirmed the write.
"""

from __future__ import annotations

import contextlib
import logging
import uuid
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from fleetsync._constants import (
    LOCAL_ID_PREFIX,
    LOCAL_ID_SEQUENCE_KEY,
    OFFLINE_QUEUE_KEY_PREFIX,
    offline_queue_key,
)
from fleetsync.models.record import Record
from fleetsync.models.sync import OperationKind, QueueEntry
from fleetsync.state.policy import is_local_id, rewrite_record_references
from fleetsync.storage import KeyValueStore

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def new_entry_id() -> str:
    return uuid.uuid4().hex


class OfflineQueue:
    """Per-collection queue of pending create/update/delete operations.

    Local ids are allocated from a persisted counter so they stay unique
    across restarts: ``local_1``, ``local_2``, ...
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        local_id_prefix: str = LOCAL_ID_PREFIX,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._prefix = local_id_prefix
        self._clock = clock
        self._in_flight: set[str] = set()

    @property
    def local_id_prefix(self) -> str:
        return self._prefix

    def is_local_id(self, record_id: str) -> bool:
        return is_local_id(record_id, self._prefix)

    def next_local_id(self) -> str:
        raw = self._store.get(LOCAL_ID_SEQUENCE_KEY, 0)
        sequence = (raw if isinstance(raw, int) else 0) + 1
        self._store.set(LOCAL_ID_SEQUENCE_KEY, sequence)
        return f"{self._prefix}{sequence}"

    @contextlib.contextmanager
    def in_flight(self, entry: QueueEntry) -> Iterator[None]:
        """Mark *entry* as being committed; writes arriving meanwhile are not folded into it."""
        self._in_flight.add(entry.entry_id)
        try:
            yield
        finally:
            self._in_flight.discard(entry.entry_id)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _load(self, collection: str) -> list[QueueEntry]:
        raw = self._store.get(offline_queue_key(collection))
        if not isinstance(raw, list):
            return []
        entries: list[QueueEntry] = []
        for item in raw:
            try:
                entries.append(QueueEntry.model_validate(item))
            except ValidationError:
                # Left in storage for inspection; _save keeps it.
                _logger.warning("Unreadable queued %s entry left in storage: %r", collection, item)
        return entries

    def _save(self, collection: str, entries: list[QueueEntry]) -> None:
        key = offline_queue_key(collection)
        raw = self._store.get(key)
        unreadable: list[Any] = []
        if isinstance(raw, list):
            for item in raw:
                try:
                    QueueEntry.model_validate(item)
                except ValidationError:
                    unreadable.append(item)
        payload = unreadable + [entry.to_document() for entry in entries]
        if payload:
            self._store.set(key, payload)
        else:
            self._store.delete(key)

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def enqueue(self, collection: str, entry: QueueEntry) -> QueueEntry | None:
        """Append *entry*, folding it into earlier entries of the same record where possible.

        * an update to a record whose create is still queued replaces the
          create's record (the remote never saw the local id);
        * an update following a queued update of the same record replaces it;
        * a delete of a never-synced record discards its queued entries and
          returns ``None``;
        * a delete of a synced record drops its queued updates first.

        Entries currently being committed by a flush are never folded into.
        """
        entries = self._load(collection)
        related = [index for index, queued in enumerate(entries) if queued.record_id == entry.record_id]
        last = entries[related[-1]] if related else None

        if (
            entry.operation == OperationKind.UPDATE
            and last is not None
            and last.operation != OperationKind.DELETE
            and last.entry_id not in self._in_flight
        ):
            index = related[-1]
            entries[index] = last.model_copy(update={"record": entry.record})
            self._save(collection, entries)
            _logger.debug("Coalesced %s update for %s into queued %s", collection, entry.record_id, last.operation)
            return entries[index]

        if entry.operation == OperationKind.DELETE:
            if self.is_local_id(entry.record_id):
                kept = [
                    queued
                    for queued in entries
                    if queued.record_id != entry.record_id or queued.entry_id in self._in_flight
                ]
                if len(kept) != len(entries):
                    _logger.debug("Discarded %d queued %s entries for unsynced %s", len(entries) - len(kept), collection, entry.record_id)
                if not any(queued.record_id == entry.record_id for queued in kept):
                    self._save(collection, kept)
                    return None
                # The create is being committed right now; delete it once it has a canonical id.
                entries = kept
            entries = [
                queued
                for queued in entries
                if not (queued.record_id == entry.record_id and queued.operation == OperationKind.UPDATE)
            ]

        entries.append(entry)
        self._save(collection, entries)
        _logger.debug("Queued %s %s for %s (%d pending)", collection, entry.operation, entry.record_id, len(entries))
        return entry

    def pending(self, collection: str) -> list[QueueEntry]:
        """All queued entries of *collection*, oldest first."""
        return self._load(collection)

    def drain(self, collection: str, *, now: datetime | None = None, force: bool = False) -> list[QueueEntry]:
        """Snapshot of the entries due for a commit attempt, oldest first.

        Nothing is removed: the caller acknowledges each committed entry
        with :meth:`ack`, and unacknowledged entries stay queued. An entry
        still in backoff holds back later entries of the same record so
        per-record order is preserved.
        """
        now = now or self._clock()
        due: list[QueueEntry] = []
        held: set[str] = set()
        for entry in self._load(collection):
            if entry.record_id in held:
                continue
            if force or entry.is_due(now):
                due.append(entry)
            else:
                held.add(entry.record_id)
        return due

    def ack(self, collection: str, entry_id: str) -> bool:
        """Remove a confirmed entry; returns ``False`` if it was not queued."""
        entries = self._load(collection)
        remaining = [entry for entry in entries if entry.entry_id != entry_id]
        if len(remaining) == len(entries):
            return False
        self._save(collection, remaining)
        return True

    def update(self, collection: str, entry: QueueEntry) -> None:
        """Persist bookkeeping (attempt count, backoff) for a queued entry."""
        entries = self._load(collection)
        for index, queued in enumerate(entries):
            if queued.entry_id == entry.entry_id:
                entries[index] = entry
                self._save(collection, entries)
                return

    def find(self, collection: str, record_id: str) -> list[QueueEntry]:
        return [entry for entry in self._load(collection) if entry.record_id == record_id]

    def collections(self) -> list[str]:
        prefix_len = len(OFFLINE_QUEUE_KEY_PREFIX)
        return [key[prefix_len:] for key in self._store.keys(OFFLINE_QUEUE_KEY_PREFIX) if key != LOCAL_ID_SEQUENCE_KEY]

    def size(self, collection: str | None = None) -> int:
        if collection is not None:
            return len(self._load(collection))
        return sum(len(self._load(name)) for name in self.collections())

    def pending_records(self, owner_id: str, collection: str) -> list[Record]:
        """Latest queued copy of each record of *owner_id* with an unconfirmed create/update."""
        latest: dict[str, Record] = {}
        for entry in self._load(collection):
            if entry.owner_id != owner_id:
                continue
            if entry.operation == OperationKind.DELETE:
                latest.pop(entry.record_id, None)
            elif entry.record is not None:
                latest[entry.record_id] = entry.record
        return list(latest.values())

    def pending_deletes(self, owner_id: str, collection: str) -> set[str]:
        return {
            entry.record_id
            for entry in self._load(collection)
            if entry.owner_id == owner_id and entry.operation == OperationKind.DELETE
        }

    def discard_record(self, collection: str, record_id: str) -> int:
        """Drop every queued entry of *record_id*; returns how many were dropped."""
        entries = self._load(collection)
        remaining = [entry for entry in entries if entry.record_id != record_id]
        dropped = len(entries) - len(remaining)
        if dropped:
            self._save(collection, remaining)
        return dropped

    def rewrite_id(self, old_id: str, new_id: str) -> int:
        """Point queued entries and queued payload references at *new_id*.

        Returns the number of entries touched.
        """
        touched = 0
        for collection in self.collections():
            entries = self._load(collection)
            changed = False
            for index, entry in enumerate(entries):
                update: dict[str, Any] = {}
                if entry.record_id == old_id:
                    update["record_id"] = new_id
                if entry.record is not None:
                    record = entry.record
                    if record.id == old_id:
                        record = record.with_changes({}, id=new_id)
                    rewritten = rewrite_record_references(record, old_id, new_id)
                    if rewritten is not None:
                        record = rewritten
                    if record is not entry.record:
                        update["record"] = record
                if update:
                    entries[index] = entry.model_copy(update=update)
                    changed = True
                    touched += 1
            if changed:
                self._save(collection, entries)
        return touched
