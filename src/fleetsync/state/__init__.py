"""State layer.

This package is the single source of truth for locally held fleet data:
the persistent record cache, the offline write queue and the recency
policy used to reconcile them with the remote store.
"""

from fleetsync.state.cache import PersistentCache
from fleetsync.state.policy import has_newer_data, merge
from fleetsync.state.queue import OfflineQueue

__all__ = ["OfflineQueue", "PersistentCache", "has_newer_data", "merge"]
