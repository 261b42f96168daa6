from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional, Set, Tuple


class LifecycleTracker:
    """Keeps the relay's worker threads and started services in one place.

    Services register under a short name once they are up and are removed again
    after their ``stop``. Anything still registered, or any worker thread still
    alive, after shutdown shows up in :meth:`leftovers`.
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger
        self._lock = threading.Lock()
        self._threads: Set[threading.Thread] = set()
        self._services: Dict[int, Tuple[str, Any]] = {}

    @property
    def threads(self) -> Set[threading.Thread]:
        with self._lock:
            return set(self._threads)

    @property
    def services(self) -> List[str]:
        with self._lock:
            return [name for name, _service in self._services.values()]

    def track_thread(self, thread: Optional[threading.Thread]) -> None:
        if thread is None:
            return
        with self._lock:
            self._threads.add(thread)

    def track_service(self, name: str, service: Any) -> None:
        if service is None:
            return
        with self._lock:
            self._services[id(service)] = (name, service)
        self._logger.debug("Service %s started", name)

    def untrack_service(self, service: Any) -> None:
        if service is None:
            return
        with self._lock:
            entry = self._services.pop(id(service), None)
        if entry is not None:
            self._logger.debug("Service %s stopped", entry[0])

    def join_thread(self, thread: Optional[threading.Thread], *, timeout: float = 2.0) -> bool:
        """Join ``thread`` and stop tracking it; returns False if it is still running."""
        if thread is None:
            return True
        if thread is not threading.current_thread():
            thread.join(timeout=timeout)
        with self._lock:
            self._threads.discard(thread)
        if thread.is_alive():
            self._logger.warning("Thread %s did not exit within %.1fs", thread.name, timeout)
            with self._lock:
                self._threads.add(thread)
            return False
        return True

    def leftovers(self) -> List[str]:
        """Describe live threads and services that were never stopped."""
        with self._lock:
            threads = [thread for thread in self._threads if thread.is_alive()]
            services = list(self._services.values())
        described = [f"thread {thread.name}" for thread in threads]
        for name, service in services:
            running = getattr(service, "running", None)
            state = "running" if running else "idle" if running is not None else "unknown"
            described.append(f"service {name} ({state})")
        return sorted(described)

    def log_state(self, label: str) -> List[str]:
        remaining = self.leftovers()
        if remaining:
            self._logger.warning("Still active %s: %s", label, ", ".join(remaining))
        else:
            self._logger.debug("Nothing left running %s", label)
        return remaining
