"""Custom exception hierarchy for fleetsync."""

from __future__ import annotations

import math


class FleetSyncError(Exception):
    """Base exception for all fleetsync errors."""


class FleetSyncConfigError(FleetSyncError):
    """Invalid or missing configuration."""


class FleetSyncStorageError(FleetSyncError):
    """Local persistent storage could not be read or written."""


class FleetSyncRemoteError(FleetSyncError):
    """Remote document store call failed (network, deadline, non-2xx)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class FleetSyncOfflineError(FleetSyncRemoteError):
    """No network path to the remote store."""


class FleetSyncTimeoutError(FleetSyncRemoteError):
    """Deadline exceeded on a specific remote call."""


class FleetSyncServerError(FleetSyncRemoteError):
    """Remote store answered with an error status or an unreadable body."""


class FleetSyncNotFoundError(FleetSyncRemoteError):
    """Remote store has no document with the requested id."""


class FleetSyncConflictError(FleetSyncRemoteError):
    """Remote store rejected a write as conflicting.

    Reserved for server-side optimistic locking. Conflicts are currently
    resolved client-side by the recency rule and are never surfaced to
    callers of the reconciler; the write stays queued.
    """


class FleetSyncRateLimitError(FleetSyncError):
    """Admission denied by the local rate limiter.

    ``retry_after`` is in whole seconds, computed from the bucket's
    reset time at the moment of denial.
    """

    def __init__(
        self,
        message: str,
        *,
        retry_after: int,
        endpoint: str = "",
        reset_at: int | None = None,
    ) -> None:
        self.retry_after = retry_after
        self.endpoint = endpoint
        self.reset_at = reset_at
        super().__init__(message)

    @property
    def retry_after_minutes(self) -> int:
        """Retry delay rounded up to whole minutes (for user-facing messages)."""
        return math.ceil(self.retry_after / 60)
