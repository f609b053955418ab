"""Derivative aggregates over the persistent cache.

Results are memoized per owner and dropped synchronously whenever that
owner's cache changes, so a delete is never reflected late.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Hashable
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from pydantic import ValidationError

from fleetsync._constants import Collection
from fleetsync.models._base import parse_timestamp
from fleetsync.models.analytics import CostAnalysis, MaintenanceAlert, PartUsage, TruckUtilization
from fleetsync.models.fleet import DowntimeEvent, MaintenanceEntry, MaintenanceStatus, Part, Truck
from fleetsync.models.record import Record
from fleetsync.state.cache import PersistentCache

_logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)
T = TypeVar("T")

_SECONDS_PER_HOUR = 3600
_SECONDS_PER_DAY = 24 * 3600


class FleetAnalytics:
    """Maintenance cost, stock and utilization views over cached records."""

    def __init__(self, cache: PersistentCache) -> None:
        self._cache = cache
        self._memo: dict[str, dict[Hashable, Any]] = {}
        self._unsubscribe = cache.add_listener(self._invalidate)

    def close(self) -> None:
        """Stop following cache mutations and forget memoized results."""
        self._unsubscribe()
        self._memo.clear()

    def _invalidate(self, owner_id: str, collection: str) -> None:
        if self._memo.pop(owner_id, None) is not None:
            _logger.debug("Dropped analytics for owner %s after %s changed", owner_id, collection)

    def _memoized(self, owner_id: str, key: Hashable, compute: Callable[[], T]) -> T:
        memo = self._memo.setdefault(owner_id, {})
        if key not in memo:
            memo[key] = compute()
        return memo[key]

    def _typed(self, owner_id: str, collection: str, model: type[R]) -> list[R]:
        typed: list[R] = []
        for record in self._cache.get(owner_id, collection):
            try:
                typed.append(record.as_type(model))
            except ValidationError:
                _logger.debug("Skipping %s record %s in analytics", collection, record.id, exc_info=True)
        return typed

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def maintenance_cost_analysis(self, owner_id: str, start: datetime, end: datetime) -> CostAnalysis:
        """Cost of completed maintenance with a completion date in ``[start, end]``."""
        start_utc = parse_timestamp(start)
        end_utc = parse_timestamp(end)

        def compute() -> CostAnalysis:
            by_month: dict[str, float] = {}
            by_type: dict[str, float] = {}
            by_truck: dict[str, float] = {}
            for entry in self._typed(owner_id, Collection.MAINTENANCE, MaintenanceEntry):
                if entry.status != MaintenanceStatus.COMPLETED or entry.completed_date is None:
                    continue
                if not start_utc <= entry.completed_date <= end_utc or not entry.cost:
                    continue
                month = entry.completed_date.strftime("%Y-%m")
                by_month[month] = by_month.get(month, 0.0) + entry.cost
                by_type[entry.type] = by_type.get(entry.type, 0.0) + entry.cost
                by_truck[entry.truck_id] = by_truck.get(entry.truck_id, 0.0) + entry.cost
            return CostAnalysis(
                cost_by_month=by_month,
                cost_by_type=by_type,
                cost_by_truck=by_truck,
                total_cost=sum(by_month.values()),
            )

        return self._memoized(owner_id, ("cost", start_utc, end_utc), compute)

    def low_stock_parts(self, owner_id: str) -> list[Part]:
        """Parts at or below their reorder threshold."""

        def compute() -> list[Part]:
            return [part for part in self._typed(owner_id, Collection.PARTS, Part) if part.quantity <= part.min_quantity]

        return list(self._memoized(owner_id, ("low_stock",), compute))

    def fleet_utilization(self, owner_id: str) -> list[TruckUtilization]:
        """Downtime hours and event count per truck; open events add no hours."""

        def compute() -> list[TruckUtilization]:
            events = self._typed(owner_id, Collection.DOWNTIME_EVENTS, DowntimeEvent)
            result: list[TruckUtilization] = []
            for truck in self._typed(owner_id, Collection.TRUCKS, Truck):
                truck_events = [event for event in events if event.truck_id == truck.id]
                hours = sum(
                    (event.end_time - event.start_time).total_seconds() / _SECONDS_PER_HOUR
                    for event in truck_events
                    if event.start_time is not None and event.end_time is not None
                )
                result.append(
                    TruckUtilization(
                        truck_id=truck.id,
                        license_plate=truck.license_plate,
                        status=truck.status,
                        total_downtime_hours=hours,
                        downtime_events=len(truck_events),
                    )
                )
            return result

        return list(self._memoized(owner_id, ("utilization",), compute))

    def part_usage(self, owner_id: str) -> list[PartUsage]:
        """How often each known part was used by costed maintenance, most used first."""

        def compute() -> list[PartUsage]:
            parts = {part.id: part for part in self._typed(owner_id, Collection.PARTS, Part)}
            usage: dict[str, PartUsage] = {}
            for entry in self._typed(owner_id, Collection.MAINTENANCE, MaintenanceEntry):
                if not entry.cost:
                    continue
                for part_id in entry.parts:
                    part = parts.get(part_id)
                    if part is None:
                        continue
                    current = usage.get(part_id) or PartUsage(part_id=part_id, part_name=part.name)
                    usage[part_id] = current.model_copy(
                        update={"count": current.count + 1, "total_cost": current.total_cost + part.cost}
                    )
            return sorted(usage.values(), key=lambda item: item.count, reverse=True)

        return list(self._memoized(owner_id, ("part_usage",), compute))

    def upcoming_maintenance(
        self,
        owner_id: str,
        days_ahead: int = 30,
        now: datetime | None = None,
    ) -> list[MaintenanceAlert]:
        """Scheduled maintenance due within *days_ahead* days, soonest first.

        Entries whose truck is not cached are left out.
        """
        now = parse_timestamp(now) if now is not None else datetime.now(UTC)
        horizon = now + timedelta(days=days_ahead)

        def compute() -> list[MaintenanceAlert]:
            trucks = {truck.id: truck for truck in self._typed(owner_id, Collection.TRUCKS, Truck)}
            alerts: list[MaintenanceAlert] = []
            for entry in self._typed(owner_id, Collection.MAINTENANCE, MaintenanceEntry):
                due = entry.scheduled_date
                if entry.status != MaintenanceStatus.SCHEDULED or due is None or not now <= due <= horizon:
                    continue
                truck = trucks.get(entry.truck_id)
                if truck is None:
                    continue
                days = math.ceil((due - now).total_seconds() / _SECONDS_PER_DAY)
                alerts.append(MaintenanceAlert(maintenance=entry, truck=truck, days_until_due=days))
            alerts.sort(key=lambda alert: alert.days_until_due)
            return alerts

        return list(self._memoized(owner_id, ("upcoming", days_ahead, now), compute))
