"""Bounded, file-backed FIFO of forwarding payloads that could not be delivered."""
from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Deque, Dict, List, Mapping, Optional

BUFFER_FILE = "telemetry-buffer.json"
DEFAULT_CAPACITY = 100

_LOGGER = logging.getLogger("Enigma.Relay.Buffer")


@dataclass(frozen=True)
class PendingDeliveryItem:
    payload: Dict[str, Any]
    buffered_at: float

    def to_json(self) -> Dict[str, Any]:
        return {"payload": self.payload, "bufferedAt": self.buffered_at}

    @classmethod
    def from_json(cls, data: Any) -> Optional["PendingDeliveryItem"]:
        if not isinstance(data, Mapping):
            return None
        payload = data.get("payload")
        if not isinstance(payload, Mapping):
            return None
        try:
            buffered_at = float(data.get("bufferedAt", 0.0))
        except (TypeError, ValueError):
            buffered_at = 0.0
        return cls(payload=dict(payload), buffered_at=buffered_at)


class OfflineBuffer:
    """Oldest-first queue persisted by write-then-rename.

    Every mutation rewrites the whole queue into a sibling ``.tmp`` file and then
    atomically replaces the target, so a crash mid-write leaves the previous,
    well-formed copy in place. The producer (forwarder send path) and consumer
    (drain loop) share one lock.
    """

    def __init__(
        self,
        path: Path,
        capacity: int = DEFAULT_CAPACITY,
        *,
        time_source=time.time,
    ) -> None:
        self._path = Path(path)
        self._capacity = max(1, int(capacity))
        self._time = time_source
        self._lock = threading.Lock()
        self._items: Deque[PendingDeliveryItem] = deque()
        self._dropped = 0
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def dropped(self) -> int:
        """Number of entries evicted for capacity since construction."""
        with self._lock:
            return self._dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def enqueue(self, payload: Mapping[str, Any]) -> PendingDeliveryItem:
        item = PendingDeliveryItem(payload=dict(payload), buffered_at=float(self._time()))
        with self._lock:
            self._items.append(item)
            evicted = 0
            while len(self._items) > self._capacity:
                self._items.popleft()
                evicted += 1
            self._dropped += evicted
            self._persist_locked()
            size = len(self._items)
        if evicted:
            _LOGGER.debug("Offline buffer full; discarded %d oldest entr%s", evicted, "y" if evicted == 1 else "ies")
        _LOGGER.debug("Event buffered (total: %d)", size)
        return item

    def peek_oldest(self) -> Optional[PendingDeliveryItem]:
        with self._lock:
            return self._items[0] if self._items else None

    def remove_oldest(self, expected: Optional[PendingDeliveryItem] = None) -> Optional[PendingDeliveryItem]:
        """Pop the head entry.

        When ``expected`` is given the head is only removed if it is still that
        item; capacity eviction may have pushed it out while it was in flight.
        """
        with self._lock:
            if not self._items:
                return None
            if expected is not None and self._items[0] is not expected:
                return None
            item = self._items.popleft()
            self._persist_locked()
            return item

    def items(self) -> List[PendingDeliveryItem]:
        with self._lock:
            return list(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
            self._persist_locked()

    # Persistence ---------------------------------------------------------

    def _load(self) -> None:
        try:
            raw_text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        except OSError as exc:
            _LOGGER.warning("Failed to read offline buffer %s: %s", self._path, exc)
            return
        try:
            data = json.loads(raw_text)
        except json.JSONDecodeError as exc:
            _LOGGER.warning("Offline buffer %s is unreadable; starting empty: %s", self._path, exc)
            return
        if not isinstance(data, list):
            _LOGGER.warning("Offline buffer %s has unexpected layout; starting empty", self._path)
            return
        loaded = [item for item in (PendingDeliveryItem.from_json(entry) for entry in data) if item is not None]
        skipped = len(data) - len(loaded)
        if len(loaded) > self._capacity:
            loaded = loaded[-self._capacity:]
        self._items.extend(loaded)
        if skipped:
            _LOGGER.warning("Skipped %d malformed offline buffer entries", skipped)
        if self._items:
            _LOGGER.info("Loaded %d buffered events", len(self._items))

    def _persist_locked(self) -> None:
        serialised = json.dumps([item.to_json() for item in self._items], indent=2)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(serialised, encoding="utf-8")
            tmp_path.replace(self._path)
        except OSError as exc:
            _LOGGER.error("Failed to save offline buffer %s: %s", self._path, exc)
