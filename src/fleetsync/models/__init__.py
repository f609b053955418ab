"""Data models for fleetsync records, queue entries and rate limiting."""

from fleetsync.models._base import FleetBaseModel, UtcTimestamp, parse_timestamp
from fleetsync.models.analytics import CostAnalysis, MaintenanceAlert, PartUsage, TruckUtilization
from fleetsync.models.fleet import (
    DowntimeEvent,
    MaintenanceEntry,
    MaintenanceStatus,
    Notification,
    Part,
    PurchaseOrder,
    PurchaseOrderItem,
    Supplier,
    Truck,
    TruckStatus,
)
from fleetsync.models.rate_limit import (
    Admission,
    Classification,
    RateLimitBucket,
    RateLimitRule,
    ThrottleAction,
)
from fleetsync.models.record import Record
from fleetsync.models.sync import (
    CacheEntry,
    FlushReport,
    OperationKind,
    QueueEntry,
    SyncState,
    WriteOperation,
    WriteResult,
)

__all__ = [
    "Admission",
    "CacheEntry",
    "Classification",
    "CostAnalysis",
    "DowntimeEvent",
    "FleetBaseModel",
    "FlushReport",
    "MaintenanceAlert",
    "MaintenanceEntry",
    "MaintenanceStatus",
    "Notification",
    "OperationKind",
    "Part",
    "PartUsage",
    "PurchaseOrder",
    "PurchaseOrderItem",
    "QueueEntry",
    "RateLimitBucket",
    "RateLimitRule",
    "Record",
    "Supplier",
    "SyncState",
    "ThrottleAction",
    "Truck",
    "TruckStatus",
    "TruckUtilization",
    "UtcTimestamp",
    "WriteOperation",
    "WriteResult",
    "parse_timestamp",
]
