"""Rate-limit rules, buckets and admission decisions."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from fleetsync.models._base import FleetBaseModel


class RateLimitRule(FleetBaseModel):
    window_ms: int
    max_requests: int


class RateLimitBucket(BaseModel):
    """Fixed-window counter for one (endpoint, identity) pair."""

    model_config = ConfigDict(extra="forbid")

    endpoint: str
    identity: str
    count: int = 0
    window_start: int
    window_ms: int
    max_requests: int

    @property
    def reset_at(self) -> int:
        return self.window_start + self.window_ms

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.reset_at


class Admission(FleetBaseModel):
    """Decision for a single request attempt.

    ``reset_at`` is epoch milliseconds; ``retry_after`` is whole seconds
    and only set on denial.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: int | None = None

    def headers(self) -> dict[str, str]:
        """Render the decision as ``X-RateLimit-*`` response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": datetime.fromtimestamp(self.reset_at / 1000, tz=UTC).isoformat(),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class ThrottleAction(StrEnum):
    WARN = "warn"
    THROTTLE = "throttle"
    BLOCK = "block"


class Classification(FleetBaseModel):
    """Advisory abuse signal for an outer policy layer."""

    suspicious: bool
    reason: str | None = None
    action: ThrottleAction | None = None

    @property
    def severity(self) -> str:
        if self.action == ThrottleAction.BLOCK:
            return "high"
        if self.action == ThrottleAction.THROTTLE:
            return "medium"
        return "low"
