"""fleetsync - Offline-first cache and sync engine for fleet-maintenance data."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("fleetsync")
except PackageNotFoundError:
    __version__ = "0+local"
from fleetsync._constants import SYNC_COLLECTIONS, Collection
from fleetsync.analytics import FleetAnalytics
from fleetsync.config import SyncConfig
from fleetsync.exceptions import (
    FleetSyncConfigError,
    FleetSyncConflictError,
    FleetSyncError,
    FleetSyncNotFoundError,
    FleetSyncOfflineError,
    FleetSyncRateLimitError,
    FleetSyncRemoteError,
    FleetSyncServerError,
    FleetSyncStorageError,
    FleetSyncTimeoutError,
)
from fleetsync.models import (
    Admission,
    CacheEntry,
    Classification,
    FlushReport,
    OperationKind,
    QueueEntry,
    RateLimitRule,
    Record,
    SyncState,
    WriteOperation,
    WriteResult,
)
from fleetsync.rate_limit import RateLimiter
from fleetsync.reconciler import SyncReconciler
from fleetsync.remote import HttpRemoteStore, RemoteStore
from fleetsync.state import OfflineQueue, PersistentCache
from fleetsync.storage import JsonFileStore, KeyValueStore, MemoryStore, open_store

__all__ = [
    "__version__",
    "Admission",
    "CacheEntry",
    "Classification",
    "Collection",
    "FleetAnalytics",
    "FleetSyncConfigError",
    "FleetSyncConflictError",
    "FleetSyncError",
    "FleetSyncNotFoundError",
    "FleetSyncOfflineError",
    "FleetSyncRateLimitError",
    "FleetSyncRemoteError",
    "FleetSyncServerError",
    "FleetSyncStorageError",
    "FleetSyncTimeoutError",
    "FlushReport",
    "HttpRemoteStore",
    "JsonFileStore",
    "KeyValueStore",
    "MemoryStore",
    "OfflineQueue",
    "OperationKind",
    "PersistentCache",
    "QueueEntry",
    "RateLimitRule",
    "RateLimiter",
    "Record",
    "RemoteStore",
    "SYNC_COLLECTIONS",
    "SyncConfig",
    "SyncReconciler",
    "SyncState",
    "WriteOperation",
    "WriteResult",
    "open_store",
]
