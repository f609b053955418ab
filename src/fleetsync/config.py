"""Engine configuration for fleetsync."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from fleetsync._constants import (
    DEFAULT_BACKGROUND_TIMEOUT,
    DEFAULT_FLUSH_INTERVAL,
    DEFAULT_FOREGROUND_TIMEOUT,
    LOCAL_ID_PREFIX,
    SYNC_COLLECTIONS,
)
from fleetsync.exceptions import FleetSyncConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_collections(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclasses.dataclass(frozen=True)
class SyncConfig:
    """Engine configuration.

    Parameters
    ----------
    base_url : str
        Base URL of the hosted document store REST API.
    api_token : str or None
        Bearer token sent with every remote call, if set.
    storage_path : str or None
        Path of the durable JSON store. ``None`` keeps state in memory
        only (useful for tests and throwaway sessions).
    foreground_timeout : float
        Seconds a caller-facing read or write waits on the remote store
        before falling back to cache/queue.
    background_timeout : float
        Seconds a background refresh or flush commit may take. Must be
        longer than ``foreground_timeout``; callers never wait on it.
    flush_interval : float
        Seconds between periodic flushes of the offline queue.
    retry_backoff_base : float
        Initial delay before a queued entry whose commit failed is
        retried by a periodic flush.
    retry_backoff_max : float
        Upper bound of the exponential retry delay.
    local_id_prefix : str
        Reserved prefix marking ids that the remote has not confirmed.
    collections : tuple of str
        Collections handled by ``initialize`` and flushed first, in order.
    rate_limit_cleanup_probability : float
        Fraction of admissions that also sweep expired rate-limit buckets.
    periodic_flush_enabled : bool
        Start the periodic flush loop when the reconciler is entered.
    """

    base_url: str = "http://localhost:8080"
    api_token: str | None = None
    storage_path: str | None = None
    foreground_timeout: float = DEFAULT_FOREGROUND_TIMEOUT
    background_timeout: float = DEFAULT_BACKGROUND_TIMEOUT
    flush_interval: float = DEFAULT_FLUSH_INTERVAL
    retry_backoff_base: float = 5.0
    retry_backoff_max: float = 300.0
    local_id_prefix: str = LOCAL_ID_PREFIX
    collections: tuple[str, ...] = SYNC_COLLECTIONS
    rate_limit_cleanup_probability: float = 0.01
    periodic_flush_enabled: bool = True

    def validate(self) -> SyncConfig:
        """Check cross-field constraints and return ``self``.

        Raises
        ------
        FleetSyncConfigError
            If a timeout is non-positive, the background tier is not
            longer than the foreground tier, or the local id prefix is empty.
        """
        if self.foreground_timeout <= 0 or self.background_timeout <= 0:
            raise FleetSyncConfigError("timeouts must be positive")
        if self.background_timeout <= self.foreground_timeout:
            raise FleetSyncConfigError(
                f"background_timeout ({self.background_timeout}) must exceed "
                f"foreground_timeout ({self.foreground_timeout})"
            )
        if self.flush_interval <= 0:
            raise FleetSyncConfigError("flush_interval must be positive")
        if not self.local_id_prefix:
            raise FleetSyncConfigError("local_id_prefix must be non-empty")
        if not 0.0 <= self.rate_limit_cleanup_probability <= 1.0:
            raise FleetSyncConfigError("rate_limit_cleanup_probability must be within [0, 1]")
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> SyncConfig:
        """Create configuration from environment variables.

        Reads optional ``FLEETSYNC_*`` variables. Explicit keyword
        arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        SyncConfig
            Populated and validated configuration.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "FLEETSYNC_BASE_URL": "base_url",
            "FLEETSYNC_API_TOKEN": "api_token",
            "FLEETSYNC_STORAGE_PATH": "storage_path",
            "FLEETSYNC_LOCAL_ID_PREFIX": "local_id_prefix",
        }
        _ENV_FLOAT_MAP = {
            "FLEETSYNC_FOREGROUND_TIMEOUT": "foreground_timeout",
            "FLEETSYNC_BACKGROUND_TIMEOUT": "background_timeout",
            "FLEETSYNC_FLUSH_INTERVAL": "flush_interval",
            "FLEETSYNC_RETRY_BACKOFF_BASE": "retry_backoff_base",
            "FLEETSYNC_RETRY_BACKOFF_MAX": "retry_backoff_max",
            "FLEETSYNC_RATE_LIMIT_CLEANUP_PROBABILITY": "rate_limit_cleanup_probability",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = val

        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is None or field_name in overrides:
                continue
            try:
                config_kwargs[field_name] = float(val)
            except ValueError as exc:
                raise FleetSyncConfigError(f"{env_key} must be a number, got {val!r}") from exc

        collections_env = env.get("FLEETSYNC_COLLECTIONS")
        if collections_env is not None and "collections" not in overrides:
            config_kwargs["collections"] = _env_collections(collections_env)

        if "periodic_flush_enabled" not in overrides:
            config_kwargs["periodic_flush_enabled"] = _env_bool(
                env.get("FLEETSYNC_PERIODIC_FLUSH"),
                True,
            )

        config_kwargs.update(overrides)

        return cls(**config_kwargs).validate()
