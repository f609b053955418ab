from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import pytest

from fleetsync.config import SyncConfig
from fleetsync.exceptions import (
    FleetSyncError,
    FleetSyncNotFoundError,
    FleetSyncOfflineError,
    FleetSyncRateLimitError,
    FleetSyncServerError,
)
from fleetsync.models.rate_limit import RateLimitRule
from fleetsync.models.record import Record
from fleetsync.models.sync import OperationKind, SyncState, WriteOperation
from fleetsync.rate_limit import RateLimiter
from fleetsync.reconciler import SyncReconciler
from fleetsync.state.cache import PersistentCache
from fleetsync.state.queue import OfflineQueue
from fleetsync.storage import MemoryStore

OWNER = "user-1"


@dataclass
class FakeClock:
    now: datetime = field(default_factory=lambda: datetime(2026, 1, 1, 12, 0, tzinfo=UTC))

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@dataclass
class FakeRemoteStore:
    documents: dict[str, dict[str, Record]] = field(default_factory=dict)
    calls: dict[str, int] = field(default_factory=dict)
    offline: bool = False
    delay: float = 0.0
    commit_delay: float = 0.0
    query_delay: float = 0.0
    fail_collections: set[str] = field(default_factory=set)
    by_idempotency_key: dict[str, Record] = field(default_factory=dict)
    _sequence: int = 0

    def _record_call(self, operation: str) -> None:
        self.calls[operation] = self.calls.get(operation, 0) + 1

    async def _enter(self, operation: str, collection: str) -> None:
        self._record_call(operation)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.offline:
            raise FleetSyncOfflineError("network unreachable", endpoint=collection)
        if collection in self.fail_collections:
            raise FleetSyncServerError("boom", status_code=500, endpoint=collection)

    def seed(self, record: Record) -> None:
        self.documents.setdefault(record.collection, {})[record.id] = record

    async def create(
        self,
        collection: str,
        record: Record,
        *,
        timeout: float,
        idempotency_key: str | None = None,
    ) -> Record:
        await self._enter("create", collection)
        if idempotency_key is not None and idempotency_key in self.by_idempotency_key:
            return self.by_idempotency_key[idempotency_key]
        self._sequence += 1
        committed = record.with_changes({}, id=f"doc-{self._sequence}")
        self.seed(committed)
        if idempotency_key is not None:
            self.by_idempotency_key[idempotency_key] = committed
        if self.commit_delay:
            await asyncio.sleep(self.commit_delay)
        return committed

    async def update(self, collection: str, record: Record, *, timeout: float) -> Record:
        await self._enter("update", collection)
        if record.id not in self.documents.get(collection, {}):
            raise FleetSyncNotFoundError("missing", status_code=404, endpoint=collection)
        self.seed(record)
        return record

    async def delete(self, collection: str, record_id: str, *, timeout: float) -> None:
        await self._enter("delete", collection)
        if self.documents.get(collection, {}).pop(record_id, None) is None:
            raise FleetSyncNotFoundError("missing", status_code=404, endpoint=collection)

    async def query(self, collection: str, owner_id: str, *, timeout: float) -> list[Record]:
        await self._enter("query", collection)
        answer = [record for record in self.documents.get(collection, {}).values() if record.owner_id == owner_id]
        if self.query_delay:
            await asyncio.sleep(self.query_delay)
        return answer


def _config(**overrides: object) -> SyncConfig:
    values: dict[str, object] = {
        "foreground_timeout": 0.1,
        "background_timeout": 0.5,
        "periodic_flush_enabled": False,
    }
    values.update(overrides)
    return SyncConfig(**values).validate()  # type: ignore[arg-type]


def _make(
    remote: FakeRemoteStore,
    *,
    store: MemoryStore | None = None,
    clock: FakeClock | None = None,
    limiter: RateLimiter | None = None,
    config: SyncConfig | None = None,
) -> SyncReconciler:
    store = store if store is not None else MemoryStore()
    clock = clock or FakeClock()
    return SyncReconciler(
        config or _config(),
        PersistentCache(store, clock=clock),
        OfflineQueue(store, clock=clock),
        remote,
        limiter or RateLimiter(cleanup_probability=0.0),
        clock=clock,
    )


def _record(record_id: str, collection: str, updated_at: datetime, **fields: object) -> Record:
    return Record.model_validate(
        {
            "id": record_id,
            "ownerId": OWNER,
            "collection": collection,
            "createdAt": datetime(2025, 1, 1, tzinfo=UTC),
            "updatedAt": updated_at,
            **fields,
        }
    )


@pytest.mark.asyncio
async def test_offline_creates_get_local_ids_then_canonical_ids_after_reconnect() -> None:
    remote = FakeRemoteStore()
    sync = _make(remote)
    sync.set_online(False)

    results = [await sync.create(OWNER, "trucks", {"make": "Volvo", "unit": n}) for n in range(3)]

    assert [r.record_id for r in results] == ["local_1", "local_2", "local_3"]
    assert all(r.state == SyncState.LOCAL for r in results)
    assert [r.id for r in sync.cache.get(OWNER, "trucks")] == ["local_1", "local_2", "local_3"]
    assert remote.calls == {}

    remote_task = sync.set_online(True)
    assert remote_task is not None
    report = await remote_task

    assert report.committed == 3
    assert report.id_map == {"local_1": "doc-1", "local_2": "doc-2", "local_3": "doc-3"}
    cached = sync.cache.get(OWNER, "trucks")
    assert [r.id for r in cached] == ["doc-1", "doc-2", "doc-3"]
    assert [r.payload["unit"] for r in cached] == [0, 1, 2]
    assert sync.pending_count() == 0
    assert len(remote.documents["trucks"]) == 3


@pytest.mark.asyncio
async def test_online_create_commits_directly() -> None:
    remote = FakeRemoteStore()
    sync = _make(remote)

    result = await sync.create(OWNER, "parts", {"name": "Brake pad"})

    assert result.state == SyncState.SYNCED
    assert not result.pending
    assert result.record_id == "doc-1"
    assert [r.id for r in sync.cache.get(OWNER, "parts")] == ["doc-1"]
    assert sync.pending_count() == 0


@pytest.mark.asyncio
async def test_unreachable_remote_queues_write_and_caches_it_optimistically() -> None:
    remote = FakeRemoteStore(offline=True)
    sync = _make(remote)

    result = await sync.create(OWNER, "trucks", {"make": "MAN"})

    assert remote.calls == {"create": 1}
    assert result.pending
    assert result.record_id == "local_1"
    assert sync.cache.find(OWNER, "trucks", "local_1") is not None
    assert sync.pending_count("trucks") == 1


@pytest.mark.asyncio
async def test_write_timing_out_after_remote_commit_is_not_duplicated() -> None:
    remote = FakeRemoteStore(commit_delay=0.3)
    sync = _make(remote)

    result = await sync.create(OWNER, "trucks", {"make": "Scania"})

    assert result.state == SyncState.LOCAL
    assert len(remote.documents["trucks"]) == 1

    remote.commit_delay = 0.0
    report = await sync.flush()

    assert report.committed == 1
    assert report.id_map == {"local_1": "doc-1"}
    assert len(remote.documents["trucks"]) == 1
    assert [r.id for r in sync.cache.get(OWNER, "trucks")] == ["doc-1"]


@pytest.mark.asyncio
async def test_queued_writes_are_eventually_delivered_exactly_once() -> None:
    remote = FakeRemoteStore(offline=True)
    sync = _make(remote)
    await sync.create(OWNER, "trucks", {"make": "DAF"})

    for _ in range(3):
        report = await sync.flush(force=True)
        assert report.failed == 1
    assert sync.queue.pending("trucks")[0].attempt_count == 3

    remote.offline = False
    report = await sync.flush(force=True)

    assert report.committed == 1
    assert sync.pending_count() == 0
    assert list(remote.documents["trucks"]) == ["doc-1"]


@pytest.mark.asyncio
async def test_second_flush_makes_no_remote_calls() -> None:
    remote = FakeRemoteStore(offline=True)
    sync = _make(remote)
    await sync.create(OWNER, "trucks", {"make": "Iveco"})
    remote.offline = False

    await sync.flush()
    calls_after_first = dict(remote.calls)
    report = await sync.flush()

    assert remote.calls == calls_after_first
    assert report.attempted == 0


@pytest.mark.asyncio
async def test_concurrent_flush_is_skipped() -> None:
    remote = FakeRemoteStore(offline=True)
    sync = _make(remote)
    await sync.create(OWNER, "trucks", {"make": "Volvo"})
    remote.offline = False
    remote.delay = 0.05

    first = asyncio.create_task(sync.flush())
    await asyncio.sleep(0)
    second = await sync.flush()
    first_report = await first

    assert second.skipped
    assert first_report.committed == 1
    assert remote.calls == {"create": 2}


@pytest.mark.asyncio
async def test_failed_entry_backs_off_until_due() -> None:
    clock = FakeClock()
    remote = FakeRemoteStore(offline=True)
    sync = _make(remote, clock=clock)
    await sync.create(OWNER, "trucks", {"make": "Volvo"})

    first = await sync.flush()
    assert first.failed == 1
    entry = sync.queue.pending("trucks")[0]
    assert entry.next_attempt_at == clock.now + timedelta(seconds=5)
    assert entry.last_error

    report = await sync.flush()
    assert report.attempted == 0
    assert remote.calls["create"] == 2

    clock.advance(6)
    report = await sync.flush()
    assert report.attempted == 1
    assert remote.calls["create"] == 3


@pytest.mark.asyncio
async def test_offline_references_are_rewritten_before_commit() -> None:
    remote = FakeRemoteStore()
    sync = _make(remote)
    sync.set_online(False)
    truck = await sync.create(OWNER, "trucks", {"make": "Volvo"})
    entry = await sync.create(OWNER, "maintenance", {"truckId": truck.record_id, "type": "oil"})
    assert entry.record_id == "local_2"

    task = sync.set_online(True)
    assert task is not None
    report = await task

    assert report.id_map == {"local_1": "doc-1", "local_2": "doc-2"}
    committed = remote.documents["maintenance"]["doc-2"]
    assert committed.payload["truckId"] == "doc-1"
    cached = sync.cache.find(OWNER, "maintenance", "doc-2")
    assert cached is not None
    assert cached.payload["truckId"] == "doc-1"


@pytest.mark.asyncio
async def test_record_referencing_uncommitted_create_is_deferred() -> None:
    remote = FakeRemoteStore(offline=True)
    sync = _make(remote)
    await sync.create(OWNER, "trucks", {"make": "Volvo"})
    await sync.create(OWNER, "maintenance", {"truckId": "local_1"})
    remote.offline = False
    remote.fail_collections = {"trucks"}

    report = await sync.flush()

    assert report.failed == 1
    assert report.deferred == 1
    assert "maintenance" not in remote.documents


@pytest.mark.asyncio
async def test_update_of_unsynced_record_is_folded_into_its_create() -> None:
    remote = FakeRemoteStore()
    sync = _make(remote)
    sync.set_online(False)
    await sync.create(OWNER, "parts", {"name": "Filter", "quantity": 1})

    result = await sync.update(OWNER, "parts", "local_1", {"quantity": 4})

    assert result.state == SyncState.LOCAL
    queued = sync.queue.pending("parts")
    assert len(queued) == 1
    assert queued[0].record is not None
    assert queued[0].record.payload["quantity"] == 4
    cached = sync.cache.find(OWNER, "parts", "local_1")
    assert cached is not None
    assert cached.payload["quantity"] == 4


@pytest.mark.asyncio
async def test_deleting_unsynced_record_never_contacts_remote() -> None:
    remote = FakeRemoteStore()
    sync = _make(remote)
    sync.set_online(False)
    await sync.create(OWNER, "trucks", {"make": "Volvo"})

    result = await sync.delete(OWNER, "trucks", "local_1")

    assert not result.pending
    assert sync.cache.get(OWNER, "trucks") == []
    assert sync.pending_count() == 0

    task = sync.set_online(True)
    assert task is not None
    report = await task
    assert report.attempted == 0
    assert remote.calls == {}


@pytest.mark.asyncio
async def test_online_update_commits_and_updates_cache() -> None:
    clock = FakeClock()
    remote = FakeRemoteStore()
    sync = _make(remote, clock=clock)
    original = _record("doc-7", "trucks", clock.now - timedelta(days=1), mileage=100)
    remote.seed(original)
    sync.cache.set(OWNER, "trucks", [original], synced=True)

    result = await sync.update(OWNER, "trucks", "doc-7", {"mileage": 250})

    assert result.state == SyncState.SYNCED
    assert remote.documents["trucks"]["doc-7"].payload["mileage"] == 250
    cached = sync.cache.find(OWNER, "trucks", "doc-7")
    assert cached is not None
    assert cached.payload["mileage"] == 250
    assert cached.updated_at == clock.now


@pytest.mark.asyncio
async def test_update_missing_remotely_raises_not_found() -> None:
    clock = FakeClock()
    remote = FakeRemoteStore()
    sync = _make(remote, clock=clock)
    cached = _record("doc-77", "trucks", clock.now, mileage=5)
    sync.cache.set(OWNER, "trucks", [cached])

    with pytest.raises(FleetSyncNotFoundError):
        await sync.update(OWNER, "trucks", "doc-77", {"mileage": 6})

    assert sync.cache.get(OWNER, "trucks") == [cached]
    assert sync.pending_count() == 0


@pytest.mark.asyncio
async def test_update_of_unknown_record_raises_without_remote_call() -> None:
    remote = FakeRemoteStore()
    sync = _make(remote)

    with pytest.raises(FleetSyncNotFoundError):
        await sync.update(OWNER, "trucks", "doc-404", {"mileage": 6})

    assert remote.calls == {}


@pytest.mark.asyncio
async def test_delete_missing_remotely_counts_as_success() -> None:
    clock = FakeClock()
    remote = FakeRemoteStore()
    sync = _make(remote, clock=clock)
    sync.cache.set(OWNER, "parts", [_record("doc-3", "parts", clock.now)])

    result = await sync.delete(OWNER, "parts", "doc-3")

    assert result.state == SyncState.SYNCED
    assert sync.cache.get(OWNER, "parts") == []
    assert sync.pending_count() == 0


@pytest.mark.asyncio
async def test_rate_limited_write_raises_without_network_call() -> None:
    remote = FakeRemoteStore()
    limiter = RateLimiter(
        {"/api/trucks": RateLimitRule(window_ms=60_000, max_requests=1)},
        clock=lambda: 1_000_000,
        cleanup_probability=0.0,
    )
    sync = _make(remote, limiter=limiter)
    await sync.create(OWNER, "trucks", {"make": "Volvo"})

    with pytest.raises(FleetSyncRateLimitError) as exc_info:
        await sync.create(OWNER, "trucks", {"make": "MAN"})

    assert exc_info.value.retry_after == 60
    assert exc_info.value.endpoint == "/api/trucks"
    assert remote.calls == {"create": 1}
    assert sync.pending_count() == 0


@pytest.mark.asyncio
async def test_read_serves_cache_and_refresh_keeps_newer_local_copy() -> None:
    clock = FakeClock()
    store = MemoryStore()
    remote = FakeRemoteStore()
    sync = _make(remote, store=store, clock=clock)
    t0 = clock.now - timedelta(hours=2)
    t1 = clock.now - timedelta(hours=1)
    sync.cache.set(OWNER, "parts", [_record("doc-1", "parts", t1, quantity=3)], synced=True)
    remote.seed(_record("doc-1", "parts", t0, quantity=9))
    before = store.snapshot()

    records = await sync.read(OWNER, "parts")
    await sync.wait_for_refreshes()

    assert [r.payload["quantity"] for r in records] == [3]
    assert remote.calls == {"query": 1}
    assert store.snapshot() == before


@pytest.mark.asyncio
async def test_failed_refresh_leaves_store_untouched() -> None:
    clock = FakeClock()
    store = MemoryStore()
    remote = FakeRemoteStore(offline=True)
    sync = _make(remote, store=store, clock=clock)
    sync.cache.set(OWNER, "trucks", [_record("doc-1", "trucks", clock.now)], synced=True)
    before = store.snapshot()

    records = await sync.read(OWNER, "trucks")
    await sync.wait_for_refreshes()

    assert [r.id for r in records] == ["doc-1"]
    assert store.snapshot() == before


@pytest.mark.asyncio
async def test_refresh_applies_newer_remote_data_and_keeps_local_records() -> None:
    clock = FakeClock()
    remote = FakeRemoteStore()
    sync = _make(remote, clock=clock)
    old = clock.now - timedelta(hours=3)
    sync.cache.set(
        OWNER,
        "trucks",
        [
            _record("doc-1", "trucks", old, mileage=10),
            _record("doc-2", "trucks", old, mileage=20),
            _record("local_9", "trucks", old, mileage=0),
        ],
        synced=True,
    )
    remote.seed(_record("doc-1", "trucks", clock.now, mileage=15))

    await sync.background_refresh(OWNER, "trucks")

    records = {r.id: r for r in sync.cache.get(OWNER, "trucks")}
    assert set(records) == {"doc-1", "local_9"}
    assert records["doc-1"].payload["mileage"] == 15


@pytest.mark.asyncio
async def test_refreshes_are_deduplicated_per_collection() -> None:
    clock = FakeClock()
    remote = FakeRemoteStore(delay=0.05)
    sync = _make(remote, clock=clock)
    sync.cache.set(OWNER, "trucks", [], synced=True)

    await sync.read(OWNER, "trucks")
    await sync.read(OWNER, "trucks")
    await sync.wait_for_refreshes()

    assert remote.calls == {"query": 1}


@pytest.mark.asyncio
async def test_create_committed_during_refresh_is_kept() -> None:
    remote = FakeRemoteStore(query_delay=0.05)
    sync = _make(remote)
    first = await sync.create(OWNER, "trucks", {"make": "Volvo"})

    await sync.read(OWNER, "trucks")
    await asyncio.sleep(0.01)
    second = await sync.create(OWNER, "trucks", {"make": "MAN"})
    await sync.wait_for_refreshes()

    assert {r.id for r in sync.cache.get(OWNER, "trucks")} == {first.record_id, second.record_id}


@pytest.mark.asyncio
async def test_delete_committed_during_refresh_stays_deleted() -> None:
    remote = FakeRemoteStore(query_delay=0.05)
    sync = _make(remote)
    created = await sync.create(OWNER, "trucks", {"make": "Volvo"})

    await sync.read(OWNER, "trucks")
    await asyncio.sleep(0.01)
    deleted = await sync.delete(OWNER, "trucks", created.record_id)
    await sync.wait_for_refreshes()

    assert deleted.state == SyncState.SYNCED
    assert remote.documents["trucks"] == {}
    assert sync.cache.get(OWNER, "trucks") == []


@pytest.mark.asyncio
async def test_foreground_read_racing_a_write_keeps_the_write() -> None:
    clock = FakeClock()
    remote = FakeRemoteStore(query_delay=0.05)
    sync = _make(remote, clock=clock)
    remote.seed(_record("doc-0", "trucks", clock.now, make="DAF"))

    reading = asyncio.create_task(sync.read(OWNER, "trucks"))
    await asyncio.sleep(0.01)
    created = await sync.create(OWNER, "trucks", {"make": "Volvo"})
    records = await reading
    await sync.wait_for_refreshes()

    assert [r.id for r in records] == [created.record_id]
    assert {r.id for r in sync.cache.get(OWNER, "trucks")} == {"doc-0", created.record_id}

@pytest.mark.asyncio
async def test_foreground_read_without_cache() -> None:
    clock = FakeClock()
    remote = FakeRemoteStore()
    sync = _make(remote, clock=clock)
    remote.seed(_record("doc-1", "suppliers", clock.now, name="Acme"))

    records = await sync.read(OWNER, "suppliers")

    assert [r.id for r in records] == ["doc-1"]
    entry = sync.cache.entry(OWNER, "suppliers")
    assert [r.id for r in entry.records] == ["doc-1"]
    assert entry.last_synced == clock.now


@pytest.mark.asyncio
async def test_foreground_read_failure_returns_empty_and_caches_nothing() -> None:
    remote = FakeRemoteStore(offline=True)
    sync = _make(remote)

    assert await sync.read(OWNER, "suppliers") == []
    assert not sync.cache.has(OWNER, "suppliers")


@pytest.mark.asyncio
async def test_initialize_merges_remote_with_local_records() -> None:
    clock = FakeClock()
    remote = FakeRemoteStore()
    sync = _make(remote, clock=clock, config=_config(collections=("trucks", "parts")))
    remote.offline = True
    await sync.create(OWNER, "trucks", {"make": "Volvo"})
    remote.offline = False
    remote.seed(_record("doc-1", "trucks", clock.now, make="MAN"))
    cached_part = _record("doc-5", "parts", clock.now)
    sync.cache.set(OWNER, "parts", [cached_part])
    remote.fail_collections = {"parts"}

    loaded = await sync.initialize(OWNER)

    assert {r.id for r in loaded["trucks"]} == {"local_1", "doc-1"}
    assert loaded["parts"] == [cached_part]
    assert {r.id for r in sync.cache.get(OWNER, "trucks")} == {"local_1", "doc-1"}


@pytest.mark.asyncio
async def test_teardown_never_raises_and_keeps_queue() -> None:
    remote = FakeRemoteStore(offline=True)
    sync = _make(remote)
    await sync.create(OWNER, "trucks", {"make": "Volvo"})
    remote.offline = False
    remote.delay = 1.0

    assert await sync.teardown() is None
    assert sync.pending_count() == 1
    assert not sync.flush_in_progress


@pytest.mark.asyncio
async def test_periodic_flush_delivers_queued_writes() -> None:
    remote = FakeRemoteStore(offline=True)
    sync = _make(remote, config=_config(periodic_flush_enabled=True, flush_interval=0.02))

    async with sync:
        await sync.create(OWNER, "trucks", {"make": "Volvo"})
        remote.offline = False
        await asyncio.sleep(0.2)
        assert sync.pending_count() == 0

    assert [r.id for r in sync.cache.get(OWNER, "trucks")] == ["doc-1"]


@dataclass
class _BrokenCreateRemote(FakeRemoteStore):
    failures: int = 0

    async def create(
        self,
        collection: str,
        record: Record,
        *,
        timeout: float,
        idempotency_key: str | None = None,
    ) -> Record:
        if self.failures:
            self.failures -= 1
            raise RuntimeError("driver bug")
        return await super().create(collection, record, timeout=timeout, idempotency_key=idempotency_key)


@pytest.mark.asyncio
async def test_periodic_flush_survives_unexpected_errors(caplog: pytest.LogCaptureFixture) -> None:
    remote = _BrokenCreateRemote(offline=True)
    sync = _make(remote, config=_config(periodic_flush_enabled=True, flush_interval=0.02))

    async with sync:
        await sync.create(OWNER, "trucks", {"make": "Volvo"})
        remote.offline = False
        remote.failures = 1
        await asyncio.sleep(0.2)
        assert sync.pending_count() == 0

    assert "Periodic flush failed" in caplog.text


@pytest.mark.asyncio
async def test_reconnect_flush_failure_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    remote = _BrokenCreateRemote(offline=True)
    sync = _make(remote)
    await sync.create(OWNER, "trucks", {"make": "Volvo"})
    remote.offline = False
    remote.failures = 1

    task = sync.set_online(True)
    assert task is not None
    with pytest.raises(RuntimeError):
        await task
    await asyncio.sleep(0)

    assert "Background task fleetsync-reconnect-flush failed" in caplog.text
    assert sync.pending_count() == 1
    assert not sync.flush_in_progress


@pytest.mark.asyncio
async def test_write_without_record_id_raises_library_error() -> None:
    remote = FakeRemoteStore()
    sync = _make(remote)
    operation = WriteOperation.model_construct(kind=OperationKind.UPDATE, data={}, record_id=None)

    with pytest.raises(FleetSyncError):
        await sync.write(OWNER, "trucks", operation)
    assert remote.calls == {}
