"""Models for queued writes, write outcomes and flush reports."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import Field, model_validator

from fleetsync.models._base import FleetBaseModel, OptionalUtcTimestamp, UtcTimestamp, utcnow
from fleetsync.models.record import Record


class OperationKind(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncState(StrEnum):
    """Per-record sync lifecycle.

    ``LOCAL`` records exist only in cache/queue under a local id;
    ``PENDING`` records have a queued write the remote has not confirmed;
    ``SYNCED`` records carry a canonical id confirmed by the remote.
    """

    LOCAL = "local"
    PENDING = "pending"
    SYNCED = "synced"


class QueueEntry(FleetBaseModel):
    """A write that the remote store has not confirmed yet."""

    entry_id: str
    operation: OperationKind
    collection: str
    owner_id: str
    record_id: str
    record: Record | None = None
    attempt_count: int = 0
    enqueued_at: UtcTimestamp = Field(default_factory=utcnow)
    last_attempt_at: OptionalUtcTimestamp = None
    next_attempt_at: OptionalUtcTimestamp = None
    last_error: str | None = None

    @model_validator(mode="after")
    def _record_required_for_upserts(self) -> QueueEntry:
        if self.operation != OperationKind.DELETE and self.record is None:
            raise ValueError(f"{self.operation} entry requires a record")
        return self

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt_at is None or now >= self.next_attempt_at


class WriteOperation(FleetBaseModel):
    """A caller's write request against one collection.

    Build with :meth:`create`, :meth:`update` or :meth:`delete`.
    """

    kind: OperationKind
    data: dict[str, Any] = Field(default_factory=dict)
    record_id: str | None = None

    @model_validator(mode="after")
    def _record_id_required(self) -> WriteOperation:
        if self.kind != OperationKind.CREATE and not self.record_id:
            raise ValueError(f"{self.kind} requires record_id")
        return self

    @classmethod
    def create(cls, data: dict[str, Any]) -> WriteOperation:
        return cls(kind=OperationKind.CREATE, data=data)

    @classmethod
    def update(cls, record_id: str, changes: dict[str, Any]) -> WriteOperation:
        return cls(kind=OperationKind.UPDATE, record_id=record_id, data=changes)

    @classmethod
    def delete(cls, record_id: str) -> WriteOperation:
        return cls(kind=OperationKind.DELETE, record_id=record_id)


class WriteResult(FleetBaseModel):
    """Outcome of a write as seen by the caller.

    A write that could not reach the remote still succeeds: ``pending`` is
    ``True`` and ``record_id`` may be a local id until the next flush.
    """

    record_id: str
    state: SyncState
    record: Record | None = None

    @property
    def pending(self) -> bool:
        return self.state != SyncState.SYNCED


class FlushReport(FleetBaseModel):
    """Summary of one flush pass over the offline queue."""

    attempted: int = 0
    committed: int = 0
    failed: int = 0
    deferred: int = 0
    skipped: bool = False
    id_map: dict[str, str] = Field(default_factory=dict)

    @property
    def remaining(self) -> int:
        return self.failed + self.deferred


class CacheEntry(FleetBaseModel):
    """Snapshot of one (owner, collection) as held by the persistent cache."""

    owner_id: str
    collection: str
    records: list[Record] = Field(default_factory=list)
    last_synced: OptionalUtcTimestamp = None
