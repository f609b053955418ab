from __future__ import annotations

import pytest

from fleetsync._constants import SYNC_COLLECTIONS
from fleetsync.config import SyncConfig
from fleetsync.exceptions import FleetSyncConfigError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in (
        "FLEETSYNC_BASE_URL",
        "FLEETSYNC_API_TOKEN",
        "FLEETSYNC_STORAGE_PATH",
        "FLEETSYNC_LOCAL_ID_PREFIX",
        "FLEETSYNC_FOREGROUND_TIMEOUT",
        "FLEETSYNC_BACKGROUND_TIMEOUT",
        "FLEETSYNC_FLUSH_INTERVAL",
        "FLEETSYNC_RETRY_BACKOFF_BASE",
        "FLEETSYNC_RETRY_BACKOFF_MAX",
        "FLEETSYNC_RATE_LIMIT_CLEANUP_PROBABILITY",
        "FLEETSYNC_COLLECTIONS",
        "FLEETSYNC_PERIODIC_FLUSH",
    ):
        monkeypatch.delenv(key, raising=False)


def test_defaults() -> None:
    config = SyncConfig.from_env()

    assert config.foreground_timeout == 3.0
    assert config.background_timeout == 8.0
    assert config.flush_interval == 300.0
    assert config.local_id_prefix == "local_"
    assert config.collections == SYNC_COLLECTIONS
    assert config.periodic_flush_enabled


def test_from_env_reads_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLEETSYNC_BASE_URL", "https://fleet.example/api")
    monkeypatch.setenv("FLEETSYNC_API_TOKEN", "tok")
    monkeypatch.setenv("FLEETSYNC_FOREGROUND_TIMEOUT", "2.5")
    monkeypatch.setenv("FLEETSYNC_COLLECTIONS", "trucks, parts,,maintenance")
    monkeypatch.setenv("FLEETSYNC_PERIODIC_FLUSH", "off")

    config = SyncConfig.from_env()

    assert config.base_url == "https://fleet.example/api"
    assert config.api_token == "tok"
    assert config.foreground_timeout == 2.5
    assert config.collections == ("trucks", "parts", "maintenance")
    assert not config.periodic_flush_enabled


def test_overrides_win_over_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLEETSYNC_BACKGROUND_TIMEOUT", "20")

    config = SyncConfig.from_env(background_timeout=12.0, periodic_flush_enabled=False)

    assert config.background_timeout == 12.0
    assert not config.periodic_flush_enabled


def test_non_numeric_env_value_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLEETSYNC_FLUSH_INTERVAL", "soon")

    with pytest.raises(FleetSyncConfigError):
        SyncConfig.from_env()


@pytest.mark.parametrize(
    "overrides",
    [
        {"foreground_timeout": 0},
        {"background_timeout": -1},
        {"foreground_timeout": 8.0, "background_timeout": 8.0},
        {"flush_interval": 0},
        {"local_id_prefix": ""},
        {"rate_limit_cleanup_probability": 1.5},
    ],
)
def test_validate_rejects_inconsistent_values(overrides: dict[str, object]) -> None:
    with pytest.raises(FleetSyncConfigError):
        SyncConfig(**overrides).validate()  # type: ignore[arg-type]
