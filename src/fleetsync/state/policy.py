"""Deterministic reconciliation policy.

This module intentionally contains *no* storage or network access. It
holds the single recency rule used everywhere in the engine: when two
copies of the same record id are compared, the greater ``updated_at``
wins. There is no field-level merging and no vector clock, so the outcome
depends on client clocks when two offline clients edit the same record.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import timedelta
from typing import Any

from fleetsync.models.record import Record


def merge(local: Iterable[Record], remote: Iterable[Record]) -> list[Record]:
    """Merge two snapshots of a collection by recency.

    Seeded from *local*; a *remote* record replaces the local copy iff its
    id is unknown locally or its ``updated_at`` is strictly greater. Local
    order is kept and new remote ids are appended in remote order.
    """
    merged: dict[str, Record] = {}
    for record in local:
        merged[record.id] = record
    for record in remote:
        existing = merged.get(record.id)
        if existing is None or record.updated_at > existing.updated_at:
            merged[record.id] = record
    return list(merged.values())


def has_newer_data(fresh: Sequence[Record], cached: Sequence[Record]) -> bool:
    """True if *fresh* differs in size from *cached* or carries a newer copy of any record."""
    if len(fresh) != len(cached):
        return True
    by_id = {record.id: record for record in cached}
    for record in fresh:
        existing = by_id.get(record.id)
        if existing is None or record.updated_at > existing.updated_at:
            return True
    return False


def is_local_id(record_id: str, prefix: str) -> bool:
    return record_id.startswith(prefix)


def retry_delay(attempt_count: int, *, base: float, maximum: float) -> timedelta:
    """Exponential backoff before retrying a queued entry after *attempt_count* failures."""
    if attempt_count <= 0:
        return timedelta(0)
    exponent = min(attempt_count - 1, 32)
    return timedelta(seconds=min(maximum, base * (2**exponent)))


def replace_reference(value: Any, old_id: str, new_id: str) -> tuple[Any, bool]:
    """Replace every string equal to *old_id* inside a JSON value.

    Returns the new value and whether anything changed.
    """
    if isinstance(value, str):
        return (new_id, True) if value == old_id else (value, False)
    if isinstance(value, list):
        changed = False
        items = []
        for item in value:
            new_item, item_changed = replace_reference(item, old_id, new_id)
            items.append(new_item)
            changed = changed or item_changed
        return items, changed
    if isinstance(value, dict):
        changed = False
        mapping = {}
        for key, item in value.items():
            new_item, item_changed = replace_reference(item, old_id, new_id)
            mapping[key] = new_item
            changed = changed or item_changed
        return mapping, changed
    return value, False


def rewrite_record_references(record: Record, old_id: str, new_id: str) -> Record | None:
    """Return *record* with payload references to *old_id* rewritten, or ``None`` if untouched."""
    payload, changed = replace_reference(record.to_document(), old_id, new_id)
    if not changed:
        return None
    # The envelope id is rewritten by the caller, never as a reference.
    payload["id"] = record.id
    return type(record).model_validate(payload)


def references_any(value: Any, ids: set[str]) -> bool:
    """Whether any string inside a JSON value is one of *ids*."""
    if isinstance(value, str):
        return value in ids
    if isinstance(value, list):
        return any(references_any(item, ids) for item in value)
    if isinstance(value, dict):
        return any(references_any(item, ids) for item in value.values())
    return False
