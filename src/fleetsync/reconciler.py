"""Read/write paths, queue flushing and sync triggers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any, TypeVar

import aiohttp

from fleetsync._constants import write_endpoint
from fleetsync.config import SyncConfig
from fleetsync.exceptions import (
    FleetSyncError,
    FleetSyncNotFoundError,
    FleetSyncRateLimitError,
    FleetSyncRemoteError,
    FleetSyncTimeoutError,
)
from fleetsync.models.record import Record
from fleetsync.models.sync import (
    FlushReport,
    OperationKind,
    QueueEntry,
    SyncState,
    WriteOperation,
    WriteResult,
)
from fleetsync.rate_limit import RateLimiter
from fleetsync.remote import HttpRemoteStore, RemoteStore
from fleetsync.state.cache import PersistentCache
from fleetsync.state.policy import has_newer_data, merge, references_any, retry_delay
from fleetsync.state.queue import OfflineQueue, new_entry_id
from fleetsync.storage import KeyValueStore, open_store

_logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failed commits of an entry are logged at WARNING from this attempt on.
_WARN_AFTER_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _log_task_failure(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        _logger.warning("Background task %s failed", task.get_name(), exc_info=exc)


class SyncReconciler:
    """Offline-first facade over cache, queue, rate limiter and remote store.

    Usage::

        async with SyncReconciler.from_config(config, session) as sync:
            await sync.initialize(owner_id)
            trucks = await sync.read(owner_id, "trucks")
            result = await sync.create(owner_id, "trucks", {"make": "Volvo"})

    Reads are served from the cache whenever it holds the collection and
    refreshed in the background. Writes race the remote against the
    foreground timeout and fall back to the offline queue, so they only
    fail on rate limiting or on an update of an unknown record.
    """

    def __init__(
        self,
        config: SyncConfig,
        cache: PersistentCache,
        queue: OfflineQueue,
        remote: RemoteStore,
        rate_limiter: RateLimiter,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._cache = cache
        self._queue = queue
        self._remote = remote
        self._rate_limiter = rate_limiter
        self._clock = clock
        self._online = True
        self._flush_in_progress = False
        self._tasks: set[asyncio.Task[Any]] = set()
        self._refreshing: dict[tuple[str, str], asyncio.Task[bool]] = {}
        self._periodic_task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        http_session: aiohttp.ClientSession,
        *,
        store: KeyValueStore | None = None,
    ) -> SyncReconciler:
        """Wire the production components from *config*.

        Cache and queue share one store so id rewrites can be grouped in a
        single durable write.
        """
        store = store if store is not None else open_store(config.storage_path)
        return cls(
            config,
            PersistentCache(store),
            OfflineQueue(store, local_id_prefix=config.local_id_prefix),
            HttpRemoteStore(config, http_session),
            RateLimiter(cleanup_probability=config.rate_limit_cleanup_probability),
        )

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> SyncReconciler:
        if self._config.periodic_flush_enabled and self._periodic_task is None:
            self._periodic_task = asyncio.create_task(self._periodic_flush(), name="fleetsync-periodic-flush")
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.teardown()
        if self._periodic_task is not None:
            self._periodic_task.cancel()
        pending = [task for task in self._tasks if not task.done()]
        if self._periodic_task is not None:
            pending.append(self._periodic_task)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._periodic_task = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def online(self) -> bool:
        return self._online

    @property
    def flush_in_progress(self) -> bool:
        return self._flush_in_progress

    @property
    def cache(self) -> PersistentCache:
        return self._cache

    @property
    def queue(self) -> OfflineQueue:
        return self._queue

    def pending_count(self, collection: str | None = None) -> int:
        """Number of writes the remote store has not confirmed yet."""
        return self._queue.size(collection)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, T], *, name: str) -> asyncio.Task[T]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(_log_task_failure)
        return task

    async def _call(self, awaitable: Awaitable[T], *, timeout: float, what: str) -> T:
        """Await a remote call, cancelling it once *timeout* seconds have passed."""
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except TimeoutError as exc:
            raise FleetSyncTimeoutError(f"{what} exceeded {timeout:.1f}s") from exc

    def _reconcile(
        self,
        owner_id: str,
        collection: str,
        cached: Sequence[Record],
        fresh: Sequence[Record],
    ) -> list[Record]:
        """Combine a cached snapshot with a freshly fetched one.

        Cached records survive when the remote still returns them or when
        they have unconfirmed local changes; records with a queued delete
        are not brought back by the remote copy.
        """
        pending = self._queue.pending_records(owner_id, collection)
        pending_ids = {record.id for record in pending}
        deleted = self._queue.pending_deletes(owner_id, collection)
        remote_ids = {record.id for record in fresh}
        kept = [
            record
            for record in cached
            if record.id in remote_ids or record.id in pending_ids or self._queue.is_local_id(record.id)
        ]
        merged = merge(kept, [record for record in fresh if record.id not in deleted])
        return merge(merged, pending)

    def _queue_write(self, entry: QueueEntry) -> QueueEntry | None:
        queued = self._queue.enqueue(entry.collection, entry)
        _logger.info(
            "Queued %s %s/%s for later delivery (%d pending)",
            entry.operation,
            entry.collection,
            entry.record_id,
            self._queue.size(entry.collection),
        )
        return queued

    def _must_queue(self, collection: str, record_id: str) -> bool:
        """Whether a write to *record_id* has to go through the queue to keep per-record order."""
        return not self._online or self._queue.is_local_id(record_id) or bool(self._queue.find(collection, record_id))

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def read(self, owner_id: str, collection: str) -> list[Record]:
        """Records of *collection* for *owner_id*, cache first.

        With a cached snapshot this returns immediately and schedules a
        background refresh. Without one it queries the remote bounded by
        the foreground timeout. If that fails it returns whatever local
        writes cached meanwhile, normally ``[]``.
        """
        if self._cache.has(owner_id, collection):
            records = self._cache.get(owner_id, collection)
            self._schedule_refresh(owner_id, collection)
            return records

        timeout = self._config.foreground_timeout
        revision = self._cache.revision(owner_id, collection)
        try:
            fresh = await self._call(
                self._remote.query(collection, owner_id, timeout=timeout),
                timeout=timeout,
                what=f"query {collection}",
            )
        except FleetSyncRemoteError as exc:
            _logger.info("Foreground read of %s for owner %s failed: %s", collection, owner_id, exc)
            return self._cache.get(owner_id, collection)

        if self._cache.revision(owner_id, collection) != revision:
            # A local write landed while the query was out; its answer may predate it.
            self._schedule_refresh(owner_id, collection)
            return self._cache.get(owner_id, collection)
        records = self._reconcile(owner_id, collection, [], fresh)
        self._cache.set(owner_id, collection, records, synced=True)
        return records

    def _schedule_refresh(self, owner_id: str, collection: str) -> asyncio.Task[bool]:
        key = (owner_id, collection)
        running = self._refreshing.get(key)
        if running is not None and not running.done():
            return running
        task = self._spawn(
            self.background_refresh(owner_id, collection),
            name=f"fleetsync-refresh-{collection}",
        )
        self._refreshing[key] = task
        task.add_done_callback(lambda _task: self._refreshing.pop(key, None))
        return task

    async def background_refresh(self, owner_id: str, collection: str) -> bool:
        """Fetch *collection* and merge it into the cache.

        Returns ``True`` when the cache was rewritten. Failures are logged
        and leave the cache untouched, and so does an answer to a query
        issued before the latest local change of the collection.
        """
        timeout = self._config.background_timeout
        revision = self._cache.revision(owner_id, collection)
        try:
            fresh = await self._call(
                self._remote.query(collection, owner_id, timeout=timeout),
                timeout=timeout,
                what=f"query {collection}",
            )
        except FleetSyncRemoteError as exc:
            _logger.debug("Background refresh of %s for owner %s failed: %s", collection, owner_id, exc)
            return False

        if self._cache.revision(owner_id, collection) != revision:
            _logger.debug(
                "Background refresh of %s for owner %s: cache changed during the query, discarding",
                collection,
                owner_id,
            )
            return False
        cached = self._cache.get(owner_id, collection)
        reconciled = self._reconcile(owner_id, collection, cached, fresh)
        if not has_newer_data(reconciled, cached):
            _logger.debug("Background refresh of %s for owner %s: cache is current", collection, owner_id)
            return False
        self._cache.set(owner_id, collection, reconciled, synced=True)
        _logger.debug("Background refresh of %s for owner %s: %d records", collection, owner_id, len(reconciled))
        return True

    async def wait_for_refreshes(self) -> None:
        """Wait until every scheduled background refresh has finished."""
        running = list(self._refreshing.values())
        if running:
            await asyncio.gather(*running, return_exceptions=True)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def write(self, owner_id: str, collection: str, operation: WriteOperation) -> WriteResult:
        """Apply one create/update/delete.

        Raises
        ------
        FleetSyncRateLimitError
            Admission was denied; nothing was sent or queued.
        FleetSyncNotFoundError
            An update targets a record that is neither cached nor known
            to the remote store.
        """
        endpoint = write_endpoint(collection)
        admission = self._rate_limiter.admit(endpoint, owner_id)
        if not admission.allowed:
            retry_after = admission.retry_after or 1
            raise FleetSyncRateLimitError(
                f"Too many requests to {endpoint}; retry in {retry_after}s",
                retry_after=retry_after,
                endpoint=endpoint,
                reset_at=admission.reset_at,
            )
        self._rate_limiter.classify(endpoint, owner_id)

        if operation.kind == OperationKind.CREATE:
            return await self._write_create(owner_id, collection, operation.data)
        if operation.record_id is None:
            raise FleetSyncError(f"{operation.kind} of {collection} requires a record id")
        if operation.kind == OperationKind.UPDATE:
            return await self._write_update(owner_id, collection, operation.record_id, operation.data)
        return await self._write_delete(owner_id, collection, operation.record_id)

    async def create(self, owner_id: str, collection: str, data: Mapping[str, Any]) -> WriteResult:
        return await self.write(owner_id, collection, WriteOperation.create(dict(data)))

    async def update(self, owner_id: str, collection: str, record_id: str, changes: Mapping[str, Any]) -> WriteResult:
        return await self.write(owner_id, collection, WriteOperation.update(record_id, dict(changes)))

    async def delete(self, owner_id: str, collection: str, record_id: str) -> WriteResult:
        return await self.write(owner_id, collection, WriteOperation.delete(record_id))

    async def _write_create(self, owner_id: str, collection: str, data: dict[str, Any]) -> WriteResult:
        now = self._clock()
        local_id = self._queue.next_local_id()
        record = Record(
            id=local_id,
            owner_id=owner_id,
            collection=collection,
            created_at=now,
            updated_at=now,
        ).with_changes(data, updated_at=now)
        # Generated once so a retried create carries the same idempotency key.
        entry_id = new_entry_id()

        if self._online and not self._references_unsynced(record):
            timeout = self._config.foreground_timeout
            try:
                committed = await self._call(
                    self._remote.create(collection, record, timeout=timeout, idempotency_key=entry_id),
                    timeout=timeout,
                    what=f"create {collection}",
                )
            except FleetSyncRemoteError as exc:
                _logger.info("Create in %s for owner %s fell back to the offline queue: %s", collection, owner_id, exc)
            else:
                self._cache.upsert(owner_id, collection, committed)
                return WriteResult(record_id=committed.id, state=SyncState.SYNCED, record=committed)

        entry = QueueEntry(
            entry_id=entry_id,
            operation=OperationKind.CREATE,
            collection=collection,
            owner_id=owner_id,
            record_id=local_id,
            record=record,
        )
        with self._cache.batch():
            self._queue_write(entry)
            self._cache.upsert(owner_id, collection, record)
        return WriteResult(record_id=local_id, state=SyncState.LOCAL, record=record)

    async def _write_update(
        self,
        owner_id: str,
        collection: str,
        record_id: str,
        changes: dict[str, Any],
    ) -> WriteResult:
        current = self._cache.find(owner_id, collection, record_id)
        if current is None:
            current = next(
                (record for record in self._queue.pending_records(owner_id, collection) if record.id == record_id),
                None,
            )
        if current is None:
            raise FleetSyncNotFoundError(
                f"{collection}/{record_id} is not known locally",
                endpoint=write_endpoint(collection),
            )
        now = max(self._clock(), current.updated_at)
        updated = current.with_changes(changes, updated_at=now)

        if not self._must_queue(collection, record_id) and not self._references_unsynced(updated):
            timeout = self._config.foreground_timeout
            try:
                committed = await self._call(
                    self._remote.update(collection, updated, timeout=timeout),
                    timeout=timeout,
                    what=f"update {collection}/{record_id}",
                )
            except FleetSyncNotFoundError:
                raise
            except FleetSyncRemoteError as exc:
                _logger.info("Update of %s/%s fell back to the offline queue: %s", collection, record_id, exc)
            else:
                self._cache.upsert(owner_id, collection, committed)
                return WriteResult(record_id=committed.id, state=SyncState.SYNCED, record=committed)

        entry = QueueEntry(
            entry_id=new_entry_id(),
            operation=OperationKind.UPDATE,
            collection=collection,
            owner_id=owner_id,
            record_id=record_id,
            record=updated,
        )
        with self._cache.batch():
            self._queue_write(entry)
            self._cache.upsert(owner_id, collection, updated)
        state = SyncState.LOCAL if self._queue.is_local_id(record_id) else SyncState.PENDING
        return WriteResult(record_id=record_id, state=state, record=updated)

    async def _write_delete(self, owner_id: str, collection: str, record_id: str) -> WriteResult:
        if not self._must_queue(collection, record_id):
            timeout = self._config.foreground_timeout
            try:
                await self._call(
                    self._remote.delete(collection, record_id, timeout=timeout),
                    timeout=timeout,
                    what=f"delete {collection}/{record_id}",
                )
            except FleetSyncNotFoundError:
                _logger.debug("%s/%s was already gone remotely", collection, record_id)
            except FleetSyncRemoteError as exc:
                _logger.info("Delete of %s/%s fell back to the offline queue: %s", collection, record_id, exc)
                return self._queue_delete(owner_id, collection, record_id)
            self._cache.remove(owner_id, collection, record_id)
            return WriteResult(record_id=record_id, state=SyncState.SYNCED)
        return self._queue_delete(owner_id, collection, record_id)

    def _queue_delete(self, owner_id: str, collection: str, record_id: str) -> WriteResult:
        entry = QueueEntry(
            entry_id=new_entry_id(),
            operation=OperationKind.DELETE,
            collection=collection,
            owner_id=owner_id,
            record_id=record_id,
        )
        with self._cache.batch():
            queued = self._queue_write(entry)
            self._cache.remove(owner_id, collection, record_id)
        # A never-synced record vanishes without contacting the remote.
        state = SyncState.SYNCED if queued is None else SyncState.PENDING
        return WriteResult(record_id=record_id, state=state)

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    def _flush_order(self) -> list[str]:
        order = list(self._config.collections)
        order.extend(name for name in sorted(self._queue.collections()) if name not in order)
        return order

    def _unsynced_creates(self) -> set[str]:
        return {
            entry.record_id
            for collection in self._queue.collections()
            for entry in self._queue.pending(collection)
            if entry.operation == OperationKind.CREATE
        }

    def _references_unsynced(self, record: Record) -> bool:
        """Whether *record* points at a record whose create is still queued."""
        unsynced = self._unsynced_creates() - {record.id}
        return bool(unsynced) and references_any(record.payload, unsynced)

    async def flush(self, *, force: bool = False) -> FlushReport:
        """Commit queued writes to the remote store.

        ``force`` ignores per-entry backoff (used on reconnect). A flush
        started while another one is running returns a report with
        ``skipped=True`` without touching the remote.
        """
        if self._flush_in_progress:
            _logger.debug("Flush already in progress; skipping")
            return FlushReport(skipped=True)
        self._flush_in_progress = True
        try:
            report = await self._flush(force=force)
        finally:
            self._flush_in_progress = False
        if report.attempted:
            _logger.info(
                "Flush finished: %d attempted, %d committed, %d failed, %d deferred",
                report.attempted,
                report.committed,
                report.failed,
                report.deferred,
            )
        return report

    async def _flush(self, *, force: bool) -> FlushReport:
        attempted = committed = failed = deferred = 0
        id_map: dict[str, str] = {}
        for collection in self._flush_order():
            held: set[str] = set()
            for snapshot in self._queue.drain(collection, now=self._clock(), force=force):
                # Re-read: earlier commits may have rewritten ids inside this entry.
                entry = next(
                    (queued for queued in self._queue.pending(collection) if queued.entry_id == snapshot.entry_id),
                    None,
                )
                if entry is None:
                    continue
                if entry.record_id in held or (entry.record is not None and self._references_unsynced(entry.record)):
                    held.add(entry.record_id)
                    deferred += 1
                    continue

                attempted += 1
                with self._queue.in_flight(entry):
                    try:
                        result = await self._commit(entry)
                    except FleetSyncRemoteError as exc:
                        self._record_failure(entry, exc)
                        held.add(entry.record_id)
                        failed += 1
                        continue
                self._apply_commit(entry, result, id_map)
                committed += 1
        return FlushReport(
            attempted=attempted,
            committed=committed,
            failed=failed,
            deferred=deferred,
            id_map=id_map,
        )

    async def _commit(self, entry: QueueEntry) -> Record | None:
        timeout = self._config.background_timeout
        what = f"{entry.operation} {entry.collection}/{entry.record_id}"
        if entry.operation == OperationKind.DELETE:
            try:
                await self._call(
                    self._remote.delete(entry.collection, entry.record_id, timeout=timeout),
                    timeout=timeout,
                    what=what,
                )
            except FleetSyncNotFoundError:
                _logger.debug("%s/%s was already gone remotely", entry.collection, entry.record_id)
            return None

        record = entry.record
        if record is None:
            raise FleetSyncError(f"Queued {what} carries no record")
        if entry.operation == OperationKind.CREATE:
            return await self._call(
                self._remote.create(entry.collection, record, timeout=timeout, idempotency_key=entry.entry_id),
                timeout=timeout,
                what=what,
            )
        return await self._call(
            self._remote.update(entry.collection, record, timeout=timeout),
            timeout=timeout,
            what=what,
        )

    def _apply_commit(self, entry: QueueEntry, result: Record | None, id_map: dict[str, str]) -> None:
        owner_id, collection = entry.owner_id, entry.collection
        with self._cache.batch():
            self._queue.ack(collection, entry.entry_id)
            if entry.operation == OperationKind.DELETE:
                self._cache.remove(owner_id, collection, entry.record_id)
                return
            if result is None:
                raise FleetSyncError(f"Remote returned no record for {entry.operation} {collection}/{entry.record_id}")
            cached = self._cache.find(owner_id, collection, entry.record_id)

            if entry.operation == OperationKind.UPDATE:
                # Local edits made while the commit was in flight stay visible.
                if cached is not None and result.updated_at >= cached.updated_at:
                    self._cache.upsert(owner_id, collection, result)
                return

            canonical = result
            if cached is not None and cached.updated_at > result.updated_at:
                canonical = cached.with_changes({}, id=result.id)
            if cached is None and entry.record_id in self._queue.pending_deletes(owner_id, collection):
                self._cache.rewrite_references(owner_id, entry.record_id, result.id)
            else:
                self._cache.rewrite_id(owner_id, collection, entry.record_id, canonical)
            self._queue.rewrite_id(entry.record_id, result.id)
            id_map[entry.record_id] = result.id
            _logger.debug("Committed %s/%s as %s", collection, entry.record_id, result.id)

    def _record_failure(self, entry: QueueEntry, exc: FleetSyncRemoteError) -> None:
        attempts = entry.attempt_count + 1
        now = self._clock()
        delay = retry_delay(
            attempts,
            base=self._config.retry_backoff_base,
            maximum=self._config.retry_backoff_max,
        )
        self._queue.update(
            entry.collection,
            entry.model_copy(
                update={
                    "attempt_count": attempts,
                    "last_attempt_at": now,
                    "next_attempt_at": now + delay,
                    "last_error": str(exc),
                }
            ),
        )
        log = _logger.warning if attempts >= _WARN_AFTER_ATTEMPTS else _logger.info
        log(
            "Commit of %s %s/%s failed (attempt %d, retry in %.0fs): %s",
            entry.operation,
            entry.collection,
            entry.record_id,
            attempts,
            delay.total_seconds(),
            exc,
        )

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def set_online(self, online: bool) -> asyncio.Task[FlushReport] | None:
        """Record a connectivity change.

        Going online schedules a forced flush and returns its task; going
        offline makes writes queue directly and pauses periodic flushes.
        """
        was_online = self._online
        self._online = online
        if not online:
            if was_online:
                _logger.info("Connectivity lost; writes will be queued")
            return None
        _logger.info("Connectivity restored; flushing %d queued writes", self._queue.size())
        return self._spawn(self.flush(force=True), name="fleetsync-reconnect-flush")

    async def _periodic_flush(self) -> None:
        while True:
            await asyncio.sleep(self._config.flush_interval)
            if not self._online:
                continue
            try:
                await self.flush()
            except Exception:
                _logger.warning("Periodic flush failed", exc_info=True)

    async def teardown(self) -> FlushReport | None:
        """Best-effort flush before shutdown, bounded by the foreground timeout.

        Never raises; whatever is not committed stays queued for the next
        session.
        """
        if not self._online or self._queue.size() == 0:
            return None
        try:
            return await asyncio.wait_for(self.flush(force=True), self._config.foreground_timeout)
        except TimeoutError:
            _logger.info("Teardown flush timed out; %d writes stay queued", self._queue.size())
        except Exception:
            _logger.warning("Teardown flush failed", exc_info=True)
        return None

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def initialize(self, owner_id: str) -> dict[str, list[Record]]:
        """Warm the cache for *owner_id* across the configured collections.

        Each collection is fetched in the foreground, merged with cached
        and queued local records, and persisted. A collection whose fetch
        fails keeps what is cached.
        """
        loaded: dict[str, list[Record]] = {}
        timeout = self._config.foreground_timeout
        for collection in self._config.collections:
            cached = self._cache.get(owner_id, collection)
            revision = self._cache.revision(owner_id, collection)
            try:
                fresh = await self._call(
                    self._remote.query(collection, owner_id, timeout=timeout),
                    timeout=timeout,
                    what=f"query {collection}",
                )
            except FleetSyncRemoteError as exc:
                _logger.info("Initial load of %s for owner %s failed, using cache: %s", collection, owner_id, exc)
                loaded[collection] = cached
                continue
            if self._cache.revision(owner_id, collection) != revision:
                _logger.debug("Initial load of %s for owner %s raced a local write, keeping cache", collection, owner_id)
                loaded[collection] = self._cache.get(owner_id, collection)
                continue
            records = self._reconcile(owner_id, collection, cached, fresh)
            self._cache.set(owner_id, collection, records, synced=True)
            loaded[collection] = records
        _logger.debug("Initialized %d collections for owner %s", len(loaded), owner_id)
        return loaded
