#!/usr/bin/env python3
"""
Durable storage for tracked listeners.

The backend is an opaque key/value map. Only listener data
(`tab_listeners`, `tab_listener_keys`) is written; navigation flags stay in
memory so a restarted service never resumes from stale flags.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional

from .errors import StorageError
from .logger import get_logger

if TYPE_CHECKING:
    from .store import TrackingStore

logger = get_logger("persistence")

LISTENERS_KEY = "tab_listeners"
LISTENER_KEYS_KEY = "tab_listener_keys"


class KeyValueBackend(ABC):
    """An opaque durable map. Implementations raise StorageError on I/O failure."""

    @abstractmethod
    def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return the stored values for the keys that exist."""

    @abstractmethod
    def set(self, items: Mapping[str, Any]) -> None:
        """Store every item, replacing existing values."""

    @abstractmethod
    def remove(self, keys: Iterable[str]) -> None:
        """Delete the keys if present."""


class MemoryBackend(KeyValueBackend):
    """Process-local backend, used for tests and throwaway sessions."""

    def __init__(self, initial: Optional[Mapping[str, Any]] = None):
        # Values are stored as JSON text so callers never share mutable state with the backend
        self._data: Dict[str, str] = {}
        if initial:
            self.set(initial)

    def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        return {key: json.loads(self._data[key]) for key in keys if key in self._data}

    def set(self, items: Mapping[str, Any]) -> None:
        try:
            encoded = {key: json.dumps(value) for key, value in items.items()}
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value is not JSON serializable: {e}") from e
        self._data.update(encoded)

    def remove(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._data.pop(key, None)


class JsonFileBackend(KeyValueBackend):
    """All keys in one JSON document, replaced atomically on every write."""

    def __init__(self, path: str):
        self.path = os.path.expanduser(path)

    def _read(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"Storage file {self.path} does not contain a JSON object")
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        directory = os.path.dirname(self.path) or "."
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".pmt-", suffix=".json", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2, sort_keys=True)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Cannot write {self.path}: {e}") from e

    def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        data = self._read()
        return {key: data[key] for key in keys if key in data}

    def set(self, items: Mapping[str, Any]) -> None:
        data = self._read()
        data.update(items)
        self._write(data)

    def remove(self, keys: Iterable[str]) -> None:
        data = self._read()
        for key in keys:
            data.pop(key, None)
        self._write(data)


class PersistenceManager:
    """
    Loads the tracking store at start and writes it back after mutations.

    Saves are debounced: `schedule_save` marks the store dirty and (re)arms a
    timer on the running event loop; bursts of mutations produce a single
    write once the store has been quiet for `delay` seconds. Without a
    running loop the dirty flag is kept until `flush` is called. A failed
    timed write leaves the flag set and re-arms the timer, so the retry
    writes the latest snapshot.
    """

    def __init__(self, backend: KeyValueBackend, store: "TrackingStore", delay: float = 0.1):
        self.backend = backend
        self.store = store
        self.delay = delay
        self.loaded = False
        self.dirty = False
        self._timer: Optional[asyncio.TimerHandle] = None

    def load(self) -> bool:
        """Restore the store from the backend. A failed load starts empty and returns False."""
        if self.loaded:
            return True
        try:
            data = self.backend.get([LISTENERS_KEY, LISTENER_KEYS_KEY])
            self.store.restore(data.get(LISTENERS_KEY) or {}, data.get(LISTENER_KEYS_KEY) or {})
        except Exception as e:
            logger.error("Failed to load state from storage: %s", e)
            self.store.restore({}, {})
            self.loaded = True
            return False
        self.loaded = True
        logger.info(
            "State loaded from storage: %d tabs, %d listeners",
            len(self.store.tab_ids()),
            self.store.total_records(),
        )
        return True

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def schedule_save(self) -> None:
        self.dirty = True
        if not self.loaded:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if not self.flush():
            self.schedule_save()

    def flush(self) -> bool:
        """Write the current snapshot if anything changed. Returns False if the write failed."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self.dirty or not self.loaded:
            return True
        listeners, keys = self.store.snapshot()
        try:
            self.backend.set({LISTENERS_KEY: listeners, LISTENER_KEYS_KEY: keys})
        except Exception as e:
            logger.error("Failed to save state to storage: %s", e)
            return False
        self.dirty = False
        return True

    def close(self, flush: bool = True) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if flush:
            self.flush()


def decode_tab_id(raw: Any) -> Any:
    """JSON object keys are strings; tab ids are ints wherever they look like one."""
    if isinstance(raw, str):
        try:
            return int(raw)
        except ValueError:
            return raw
    return raw


def encode_tab_map(values: Mapping[Any, List[Any]]) -> Dict[str, List[Any]]:
    return {str(tab_id): list(items) for tab_id, items in values.items()}
