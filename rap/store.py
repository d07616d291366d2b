# rap/store.py
"""
Storage collaborator.

A small keyed document store. Keys are namespaced by prefix:

    actor:<actor id>        resolver cache entries
    outbox:<message id>     delivery queue state
    dedup:<dedup key>       processed inbound messages
    inbox:<dedup key>       applied inbound activities

MemoryStore keeps everything in process memory. JsonFileStore persists
to a JSON file so pending deliveries and dedup keys survive a restart.
"""

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class Store(ABC):
    """Keyed access to JSON-serializable values."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Get a value, or None if absent."""

    @abstractmethod
    def put(self, key: str, value: Any) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""

    @abstractmethod
    def scan(self, prefix: str) -> Dict[str, Any]:
        """All entries whose key starts with prefix."""

    def apply(self, message) -> None:
        """
        Apply an accepted inbound message to local state.

        The default records the activity under inbox:<dedup key>.
        Raise to reject the write; the sender will retry.
        """
        self.put(f"inbox:{message.dedup_key}", message.to_dict())


class MemoryStore(Store):
    """In-memory store. Nothing survives the process."""

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def scan(self, prefix: str) -> Dict[str, Any]:
        with self._lock:
            return {k: v for k, v in self._data.items() if k.startswith(prefix)}

    def __len__(self) -> int:
        return len(self._data)


class JsonFileStore(Store):
    """
    Store persisted as a single JSON file.

    Structure:
        store_dir/
            state.json    # {"version": "1.0", "entries": {...}}
    """

    def __init__(self, store_dir: Path | str):
        self.store_dir = Path(store_dir)
        self.store_dir.mkdir(parents=True, exist_ok=True)
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._load()

    def _state_path(self) -> Path:
        return self.store_dir / "state.json"

    def _load(self):
        """Load state from disk."""
        state_path = self._state_path()
        if state_path.exists():
            try:
                with open(state_path) as f:
                    data = json.load(f)
                self._data = dict(data.get("entries", {}))
            except (json.JSONDecodeError, AttributeError) as e:
                logger.warning(f"Failed to load state from {state_path}: {e}")
                self._data = {}

    def _save(self):
        """Save state to disk. Caller holds the lock."""
        data = {
            "version": "1.0",
            "entries": self._data,
        }
        tmp_path = self._state_path().with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self._state_path())

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._save()

    def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._data:
                return False
            del self._data[key]
            self._save()
            return True

    def scan(self, prefix: str) -> Dict[str, Any]:
        with self._lock:
            return {k: v for k, v in self._data.items() if k.startswith(prefix)}

    def __len__(self) -> int:
        return len(self._data)


class RecentSet:
    """
    Bounded set of recently processed dedup keys.

    A key stays a member for `retention` seconds after it was added.
    When more than `capacity` keys are held, the oldest go first.
    With a store, membership is persisted under the dedup: prefix.
    """

    PREFIX = "dedup:"

    def __init__(
        self,
        retention: float,
        capacity: int = 100_000,
        store: Optional[Store] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.retention = retention
        self.capacity = capacity
        self.store = store
        self.clock = clock
        self._entries: "OrderedDict[str, float]" = OrderedDict()
        self._lock = threading.Lock()
        if store is not None:
            self._load()

    def _load(self):
        entries = self.store.scan(self.PREFIX)
        for key, recorded_at in sorted(entries.items(), key=lambda x: x[1]):
            self._entries[key[len(self.PREFIX):]] = recorded_at
        with self._lock:
            self._prune(self.clock())

    def _forget(self, key: str):
        del self._entries[key]
        if self.store is not None:
            self.store.delete(self.PREFIX + key)

    def _prune(self, now: float):
        """Drop expired keys and enforce capacity. Caller holds the lock."""
        while self._entries:
            key, recorded_at = next(iter(self._entries.items()))
            if now - recorded_at < self.retention and len(self._entries) <= self.capacity:
                break
            self._forget(key)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            self._prune(self.clock())
            return key in self._entries

    def add(self, key: str) -> None:
        """Record key as processed now."""
        with self._lock:
            now = self.clock()
            self._entries.pop(key, None)
            self._entries[key] = now
            if self.store is not None:
                self.store.put(self.PREFIX + key, now)
            self._prune(now)

    def __len__(self) -> int:
        with self._lock:
            self._prune(self.clock())
            return len(self._entries)
