"""Aggregates derived from cached fleet records."""

from __future__ import annotations

from pydantic import Field

from fleetsync.models._base import FleetBaseModel
from fleetsync.models.fleet import MaintenanceEntry, Truck


class CostAnalysis(FleetBaseModel):
    """Cost of completed maintenance within a date range."""

    cost_by_month: dict[str, float] = Field(default_factory=dict)
    cost_by_type: dict[str, float] = Field(default_factory=dict)
    cost_by_truck: dict[str, float] = Field(default_factory=dict)
    total_cost: float = 0.0


class TruckUtilization(FleetBaseModel):
    truck_id: str
    license_plate: str = ""
    status: str = ""
    total_downtime_hours: float = 0.0
    downtime_events: int = 0


class PartUsage(FleetBaseModel):
    part_id: str
    part_name: str = ""
    count: int = 0
    total_cost: float = 0.0


class MaintenanceAlert(FleetBaseModel):
    """A scheduled maintenance entry coming due, with the truck it applies to."""

    maintenance: MaintenanceEntry
    truck: Truck
    days_until_due: int
