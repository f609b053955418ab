"""Fixed-window request admission keyed by (endpoint, identity)."""

from __future__ import annotations

import logging
import math
import random
import time
from collections.abc import Callable, Mapping

from fleetsync.models.rate_limit import (
    Admission,
    Classification,
    RateLimitBucket,
    RateLimitRule,
    ThrottleAction,
)

_logger = logging.getLogger(__name__)

DEFAULT_RULE = RateLimitRule(window_ms=15 * 60 * 1000, max_requests=100)

#: Endpoint pattern → rule. Matching is exact first, then longest prefix.
DEFAULT_RULES: dict[str, RateLimitRule] = {
    "/api/auth/login": RateLimitRule(window_ms=15 * 60 * 1000, max_requests=5),
    "/api/auth/signup": RateLimitRule(window_ms=60 * 60 * 1000, max_requests=3),
    "/api/auth/reset-password": RateLimitRule(window_ms=60 * 60 * 1000, max_requests=3),
    "/api/trucks": RateLimitRule(window_ms=60 * 1000, max_requests=20),
    "/api/maintenance": RateLimitRule(window_ms=60 * 1000, max_requests=30),
    "/api/parts": RateLimitRule(window_ms=60 * 1000, max_requests=25),
    "/api/dashboard": RateLimitRule(window_ms=60 * 1000, max_requests=100),
    "/api/analytics": RateLimitRule(window_ms=60 * 1000, max_requests=50),
    "/api/upload": RateLimitRule(window_ms=60 * 1000, max_requests=5),
    "/api/export": RateLimitRule(window_ms=5 * 60 * 1000, max_requests=3),
}

# Classifier thresholds
_SUSPICIOUS_RATE_PER_SECOND = 10.0
_AUTH_ATTEMPT_THRESHOLD = 3
_READ_HEAVY_MARKER = "/dashboard"
_AUTH_MARKER = "/auth/"


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    """In-memory fixed-window rate limiter.

    A bucket resets the instant ``now >= window_start + window_ms``. Expired
    buckets are swept opportunistically on a fraction of admissions; until
    then they are treated as reset wherever they are read.
    """

    def __init__(
        self,
        rules: Mapping[str, RateLimitRule] | None = None,
        *,
        default_rule: RateLimitRule = DEFAULT_RULE,
        clock: Callable[[], int] = _now_ms,
        cleanup_probability: float = 0.01,
        rng: random.Random | None = None,
    ) -> None:
        self._rules: dict[str, RateLimitRule] = dict(DEFAULT_RULES if rules is None else rules)
        self._default_rule = default_rule
        self._clock = clock
        self._cleanup_probability = cleanup_probability
        self._rng = rng or random.Random()
        self._buckets: dict[tuple[str, str], RateLimitBucket] = {}

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def add_rule(self, pattern: str, rule: RateLimitRule) -> None:
        self._rules[pattern] = rule

    def rule_for(self, endpoint: str) -> RateLimitRule:
        rule = self._rules.get(endpoint)
        if rule is not None:
            return rule
        matches = [pattern for pattern in self._rules if endpoint.startswith(pattern)]
        if matches:
            return self._rules[max(matches, key=len)]
        return self._default_rule

    # ------------------------------------------------------------------
    # Buckets
    # ------------------------------------------------------------------

    def _live_bucket(self, endpoint: str, identity: str, now: int) -> RateLimitBucket | None:
        """Existing unexpired bucket, or ``None`` when absent or already reset."""
        bucket = self._buckets.get((endpoint, identity))
        if bucket is None or bucket.is_expired(now):
            return None
        return bucket

    def _fresh_bucket(self, endpoint: str, identity: str, now: int) -> RateLimitBucket:
        rule = self.rule_for(endpoint)
        return RateLimitBucket(
            endpoint=endpoint,
            identity=identity,
            count=0,
            window_start=now,
            window_ms=rule.window_ms,
            max_requests=rule.max_requests,
        )

    def evict_expired(self) -> int:
        """Physically drop expired buckets; returns how many were removed."""
        now = self._clock()
        expired = [key for key, bucket in self._buckets.items() if bucket.is_expired(now)]
        for key in expired:
            del self._buckets[key]
        if expired:
            _logger.debug("Evicted %d expired rate-limit buckets", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def admit(self, endpoint: str, identity: str) -> Admission:
        """Decide one request attempt and count it when allowed."""
        if self._cleanup_probability > 0 and self._rng.random() < self._cleanup_probability:
            self.evict_expired()

        now = self._clock()
        bucket = self._live_bucket(endpoint, identity, now)
        if bucket is None:
            bucket = self._fresh_bucket(endpoint, identity, now)
            self._buckets[(endpoint, identity)] = bucket

        if bucket.count >= bucket.max_requests:
            retry_after = max(1, math.ceil((bucket.reset_at - now) / 1000))
            _logger.info(
                "Rate limit exceeded endpoint=%s identity=%s retry_after=%ds",
                endpoint,
                identity,
                retry_after,
            )
            return Admission(
                allowed=False,
                limit=bucket.max_requests,
                remaining=0,
                reset_at=bucket.reset_at,
                retry_after=retry_after,
            )

        bucket.count += 1
        return Admission(
            allowed=True,
            limit=bucket.max_requests,
            remaining=bucket.max_requests - bucket.count,
            reset_at=bucket.reset_at,
        )

    def status(self, endpoint: str, identity: str) -> Admission:
        """Current standing of a bucket without counting a request."""
        now = self._clock()
        bucket = self._live_bucket(endpoint, identity, now)
        if bucket is None:
            rule = self.rule_for(endpoint)
            return Admission(
                allowed=True,
                limit=rule.max_requests,
                remaining=rule.max_requests,
                reset_at=now + rule.window_ms,
            )
        remaining = max(0, bucket.max_requests - bucket.count)
        return Admission(
            allowed=remaining > 0,
            limit=bucket.max_requests,
            remaining=remaining,
            reset_at=bucket.reset_at,
            retry_after=None if remaining > 0 else max(1, math.ceil((bucket.reset_at - now) / 1000)),
        )

    def reset(self, endpoint: str, identity: str) -> None:
        self._buckets.pop((endpoint, identity), None)

    def active_limits(self) -> list[RateLimitBucket]:
        now = self._clock()
        return [bucket.model_copy() for bucket in self._buckets.values() if not bucket.is_expired(now)]

    # ------------------------------------------------------------------
    # Abuse heuristics
    # ------------------------------------------------------------------

    def classify(self, endpoint: str, identity: str) -> Classification:
        """Advisory abuse signal for the current window; never denies by itself."""
        now = self._clock()
        bucket = self._live_bucket(endpoint, identity, now)
        if bucket is None:
            return Classification(suspicious=False)

        elapsed_s = max((now - bucket.window_start) / 1000, 1.0)
        rate = bucket.count / elapsed_s

        result = Classification(suspicious=False)
        if rate > _SUSPICIOUS_RATE_PER_SECOND and _READ_HEAVY_MARKER not in endpoint:
            result = Classification(
                suspicious=True,
                reason="Unusually high request rate detected",
                action=ThrottleAction.THROTTLE,
            )
        elif _AUTH_MARKER in endpoint and bucket.count > _AUTH_ATTEMPT_THRESHOLD:
            result = Classification(
                suspicious=True,
                reason="Potential brute force attack on authentication endpoint",
                action=ThrottleAction.BLOCK,
            )

        if result.suspicious:
            _logger.warning(
                "Rate limit violation endpoint=%s identity=%s count=%d rate=%.1f/s action=%s severity=%s reason=%s",
                endpoint,
                identity,
                bucket.count,
                rate,
                result.action,
                result.severity,
                result.reason,
            )
        return result
