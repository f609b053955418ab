"""Internal constants shared across the library."""

from __future__ import annotations

from enum import StrEnum


class Collection(StrEnum):
    """Known record collections of the fleet-maintenance tool."""

    TRUCKS = "trucks"
    MAINTENANCE = "maintenance"
    PARTS = "parts"
    SUPPLIERS = "suppliers"
    PURCHASE_ORDERS = "purchaseOrders"
    DOWNTIME_EVENTS = "downtimeEvents"
    MAINTENANCE_TEMPLATES = "maintenanceTemplates"
    NOTIFICATIONS = "notifications"


#: Order in which queued collections are flushed. Trucks go first so that
#: maintenance/downtime entries referencing an offline truck see its
#: canonical id by the time they are committed.
SYNC_COLLECTIONS: tuple[str, ...] = (
    Collection.TRUCKS,
    Collection.PARTS,
    Collection.SUPPLIERS,
    Collection.MAINTENANCE,
    Collection.MAINTENANCE_TEMPLATES,
    Collection.DOWNTIME_EVENTS,
    Collection.PURCHASE_ORDERS,
    Collection.NOTIFICATIONS,
)

LOCAL_ID_PREFIX = "local_"

# Persisted key layout
USER_DATA_KEY_PREFIX = "user_data:"
OFFLINE_QUEUE_KEY_PREFIX = "offline_queue:"
LOCAL_ID_SEQUENCE_KEY = "offline_queue:__sequence__"
LAST_UPDATED_FIELD = "lastUpdated"
LAST_SYNCED_FIELD = "lastSynced"

API_PREFIX = "/api/"
USER_AGENT = "fleetsync/1"

DEFAULT_FOREGROUND_TIMEOUT = 3.0
DEFAULT_BACKGROUND_TIMEOUT = 8.0
DEFAULT_FLUSH_INTERVAL = 5 * 60.0


def user_data_key(owner_id: str) -> str:
    return f"{USER_DATA_KEY_PREFIX}{owner_id}"


def offline_queue_key(collection: str) -> str:
    return f"{OFFLINE_QUEUE_KEY_PREFIX}{collection}"


def write_endpoint(collection: str) -> str:
    """Rate-limit endpoint used for writes to *collection*."""
    return f"{API_PREFIX}{collection}"
