"""Last-known telemetry and job state shared between the ingestor and the overlay."""
from __future__ import annotations

import threading
from typing import Any, Dict, Mapping, Tuple

DEFAULT_TELEMETRY: Dict[str, Any] = {
    "speed": 0.0,
    "gear": 0,
    "rpm": 0.0,
    "fuel": 0.0,
    "fuelCapacity": 100.0,
    "damage": 0.0,
    "gameTime": "00:00",
    "connected": False,
}

DEFAULT_JOB: Dict[str, Any] = {
    "active": False,
    "cargo": None,
    "pickup": None,
    "delivery": None,
    "distance": 0.0,
    "remainingDistance": 0.0,
    "income": 0.0,
}


class OverlayState:
    """Field-by-field merged view of the most recent frames.

    One instance is created per process and handed to the ingestor (writer) and
    the surface manager (reader). Updates never replace the state wholesale, so a
    partial frame only touches the fields it carries.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._telemetry: Dict[str, Any] = dict(DEFAULT_TELEMETRY)
        self._job: Dict[str, Any] = dict(DEFAULT_JOB)

    def merge_telemetry(self, update: Mapping[str, Any], *, connected: bool = True) -> Dict[str, Any]:
        """Merge a partial telemetry update and return a copy of the merged state."""
        with self._lock:
            for key, value in update.items():
                if key in self._telemetry:
                    self._telemetry[key] = value
            self._telemetry["connected"] = connected
            return dict(self._telemetry)

    def merge_job(self, update: Mapping[str, Any]) -> Dict[str, Any]:
        with self._lock:
            for key, value in update.items():
                if key in self._job:
                    self._job[key] = value
            return dict(self._job)

    def mark_connected(self) -> Dict[str, Any]:
        with self._lock:
            self._telemetry["connected"] = True
            return dict(self._telemetry)

    def mark_disconnected(self) -> Dict[str, Any]:
        """Flag the plugin as gone; last-known values stay as they were."""
        with self._lock:
            self._telemetry["connected"] = False
            return dict(self._telemetry)

    @property
    def connected(self) -> bool:
        with self._lock:
            return bool(self._telemetry["connected"])

    def telemetry(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._telemetry)

    def job(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._job)

    def snapshot(self) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Return consistent copies of (telemetry, job) taken under one lock."""
        with self._lock:
            return dict(self._telemetry), dict(self._job)
