"""Key/value persistence backends for the cache and the offline queue.

Both the persistent cache and the offline queue store JSON-compatible
values under string keys. Having a protocol here makes it easy to pass an
in-memory store in tests while keeping a durable file-backed store for
production.
"""

from __future__ import annotations

import contextlib
import copy
import json
import logging
import os
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Protocol

from fleetsync.exceptions import FleetSyncStorageError

_logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Structural interface for JSON-valued key/value storage.

    Values handed out by ``get`` are copies: mutating them does not touch
    stored state until they are written back with ``set``.
    """

    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self, prefix: str = "") -> list[str]:
        ...

    def batch(self) -> contextlib.AbstractContextManager[None]:
        ...


class MemoryStore:
    """Process-local store; state is lost when the process exits."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._batch_depth = 0

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return [key for key in self._data if key.startswith(prefix)]

    @contextlib.contextmanager
    def batch(self) -> Iterator[None]:
        """Group writes; the outermost batch restores the prior state if its block raises."""
        saved = copy.deepcopy(self._data) if self._batch_depth == 0 else None
        self._batch_depth += 1
        try:
            yield
        except BaseException:
            if saved is not None:
                self._data = saved
            raise
        finally:
            self._batch_depth -= 1

    def snapshot(self) -> dict[str, Any]:
        """Deep copy of the whole store (used by tests and diagnostics)."""
        return copy.deepcopy(self._data)


class JsonFileStore:
    """Durable store kept as a single JSON document on disk.

    Every mutation outside a :meth:`batch` rewrites the file atomically
    (temp file in the same directory, fsync, ``os.replace``), so a crash
    leaves either the previous or the new state, never a torn file.
    Inside a batch, writes are held in memory and persisted together when
    the outermost batch exits without error.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._batch_depth = 0
        self._dirty = False
        self._data: dict[str, Any] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as exc:
            raise FleetSyncStorageError(f"Invalid JSON in store file {self._path}: {exc}") from exc
        except OSError as exc:
            raise FleetSyncStorageError(f"Cannot read store file {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise FleetSyncStorageError(f"Store file {self._path} does not hold a JSON object")
        return data

    def _persist(self) -> None:
        if self._batch_depth > 0:
            self._dirty = True
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, ensure_ascii=False, separators=(",", ":"))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise FleetSyncStorageError(f"Cannot write store file {self._path}: {exc}") from exc
        self._dirty = False
        _logger.debug("Persisted %d keys to %s", len(self._data), self._path)

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)
        self._persist()

    def delete(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._persist()

    def keys(self, prefix: str = "") -> list[str]:
        return [key for key in self._data if key.startswith(prefix)]

    @contextlib.contextmanager
    def batch(self) -> Iterator[None]:
        """Group writes so they become durable together."""
        self._batch_depth += 1
        try:
            yield
        except BaseException:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._dirty:
                # Memory already holds the partial batch; reload the last durable state.
                self._data = self._load()
                self._dirty = False
            raise
        self._batch_depth -= 1
        if self._batch_depth == 0 and self._dirty:
            self._persist()


def open_store(path: str | os.PathLike[str] | None) -> KeyValueStore:
    """Return a durable store at *path*, or a memory store when ``None``."""
    if path is None:
        return MemoryStore()
    return JsonFileStore(path)
