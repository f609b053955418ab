"""Typed views over the records of each collection.

The engine itself treats records as opaque payloads; these views give
analytics and callers typed access to the business fields. Every field
has a default so partially filled records created offline still validate.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import Field

from fleetsync._constants import Collection
from fleetsync.models._base import FleetBaseModel, OptionalUtcTimestamp
from fleetsync.models.record import Record


class TruckStatus(StrEnum):
    IN_SERVICE = "In Service"
    OUT_FOR_REPAIR = "Out for Repair"
    NEEDS_ATTENTION = "Needs Attention"
    RETIRED = "Retired"


class MaintenanceStatus(StrEnum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Truck(Record):
    collection: str = Collection.TRUCKS
    make: str = ""
    model: str = ""
    year: int | None = None
    license_plate: str = ""
    vin: str = ""
    nickname: str | None = None
    mileage: float = 0
    status: str = TruckStatus.IN_SERVICE
    location: str | None = None
    fuel_level: float | None = None
    last_maintenance: OptionalUtcTimestamp = None
    next_maintenance: OptionalUtcTimestamp = None


class MaintenanceEntry(Record):
    collection: str = Collection.MAINTENANCE
    truck_id: str = ""
    type: str = "scheduled"
    description: str = ""
    scheduled_date: OptionalUtcTimestamp = None
    completed_date: OptionalUtcTimestamp = None
    status: str = MaintenanceStatus.SCHEDULED
    cost: float | None = None
    parts: list[str] = Field(default_factory=list)
    technician: str | None = None
    notes: str | None = None


class Part(Record):
    collection: str = Collection.PARTS
    name: str = ""
    part_number: str = ""
    category: str = ""
    quantity: int = 0
    min_quantity: int = 0
    cost: float = 0
    supplier: str | None = None
    location: str | None = None


class Supplier(Record):
    collection: str = Collection.SUPPLIERS
    name: str = ""
    contact_name: str | None = None
    email: str | None = None
    phone: str | None = None
    category: str | None = None
    status: str | None = None
    default_lead_time_days: int = 0


class PurchaseOrderItem(FleetBaseModel):
    part_id: str
    quantity: int = 0
    unit_cost: float = 0
    total_cost: float = 0


class PurchaseOrder(Record):
    collection: str = Collection.PURCHASE_ORDERS
    supplier_id: str = ""
    order_number: str = ""
    status: str = "draft"
    order_date: OptionalUtcTimestamp = None
    expected_delivery_date: OptionalUtcTimestamp = None
    items: list[PurchaseOrderItem] = Field(default_factory=list)
    total_cost: float = 0


class DowntimeEvent(Record):
    collection: str = Collection.DOWNTIME_EVENTS
    truck_id: str = ""
    start_time: OptionalUtcTimestamp = None
    end_time: OptionalUtcTimestamp = None
    reason: str = ""
    category: str = "other"
    maintenance_id: str | None = None
    cost: float | None = None
    is_resolved: bool = False


class Notification(Record):
    collection: str = Collection.NOTIFICATIONS
    type: str = "general"
    title: str = ""
    message: str = ""
    priority: str = "medium"
    is_read: bool = False
    action_url: str | None = None
