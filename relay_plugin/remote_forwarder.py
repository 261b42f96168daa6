"""Deliver normalized telemetry records to the company API with offline buffering."""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

import requests
from requests import exceptions as requests_exceptions

from relay_plugin.offline_buffer import OfflineBuffer, PendingDeliveryItem
from relay_plugin.session_binding import ActiveUserBinding, SessionBinding
from version import __version__ as RELAY_VERSION

DEFAULT_API_URL = "https://enigmalogistics.org/api"
DEFAULT_TIMEOUT = 10.0
DEFAULT_DRAIN_INTERVAL = 30.0
_USER_AGENT = f"EnigmaRelay/{RELAY_VERSION}"
_RETRYABLE_CLIENT_STATUSES = {401, 408, 429}

STATUS_OK = "ok"
STATUS_BUFFERED = "buffered"
STATUS_DROPPED = "dropped"

ResultCallback = Callable[[str], None]

_LOGGER = logging.getLogger("Enigma.Relay.Forwarder")


class DeliveryError(RuntimeError):
    """A send attempt failed; ``retryable`` says whether buffering makes sense."""

    def __init__(self, message: str, *, status: Optional[int] = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable

    @property
    def unauthorized(self) -> bool:
        return self.status == 401


@dataclass(frozen=True)
class ForwardRecord:
    """One POST to the remote API: a path below the base URL and its JSON body."""

    endpoint: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self, binding: ActiveUserBinding) -> Dict[str, Any]:
        return {"endpoint": self.endpoint, "data": dict(self.data), "user_id": binding.user_id}


def create_http_session() -> requests.Session:
    session = requests.Session()
    session.headers["User-Agent"] = _USER_AGENT
    session.headers["Content-Type"] = "application/json"
    session.headers["Accept"] = "application/json"
    return session


class RemoteForwarder:
    """Non-blocking ``submit`` plus an interval-driven drain of the offline buffer.

    ``submit`` hands records to a single send worker so the ingestor never waits
    on the network. The worker queue holds at most ``buffer.capacity`` records;
    when it is full the oldest queued record is moved into the
    :class:`OfflineBuffer`, and whatever is still queued at ``stop`` goes there
    too. Failed sends land in the buffer as well; the drain thread retries them
    oldest-first and stops a pass at the first failure. When the worker threads
    are not running, ``submit`` delivers inline.
    """

    def __init__(
        self,
        buffer: OfflineBuffer,
        session_binding: SessionBinding,
        *,
        base_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        drain_interval: float = DEFAULT_DRAIN_INTERVAL,
        session_factory: Callable[[], Any] = create_http_session,
        lifecycle=None,
    ) -> None:
        self._buffer = buffer
        self._binding = session_binding
        self._base_url = base_url.rstrip("/")
        self._timeout = max(0.1, float(timeout))
        self._drain_interval = max(0.05, float(drain_interval))
        self._session_factory = session_factory
        self._session: Optional[Any] = None
        self._session_lock = threading.Lock()
        self._lifecycle = lifecycle

        self._queue: "queue.Queue[Tuple[ForwardRecord, ActiveUserBinding, Optional[ResultCallback]]]" = queue.Queue(
            maxsize=buffer.capacity
        )
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._drain_lock = threading.Lock()
        self._send_thread: Optional[threading.Thread] = None
        self._drain_thread: Optional[threading.Thread] = None

    @property
    def buffer(self) -> OfflineBuffer:
        return self._buffer

    @property
    def running(self) -> bool:
        thread = self._send_thread
        return thread is not None and thread.is_alive()

    # Lifecycle ------------------------------------------------------------

    def start(self) -> None:
        if self._send_thread and self._send_thread.is_alive():
            return
        self._stop_event.clear()
        self._wake_event.clear()
        self._send_thread = threading.Thread(target=self._send_loop, name="EnigmaRelay-Forwarder", daemon=True)
        self._drain_thread = threading.Thread(target=self._drain_loop, name="EnigmaRelay-Drain", daemon=True)
        for thread in (self._send_thread, self._drain_thread):
            if self._lifecycle is not None:
                self._lifecycle.track_thread(thread)
            thread.start()
        _LOGGER.debug(
            "Forwarder started (base_url=%s timeout=%.1fs drain_interval=%.1fs buffered=%d)",
            self._base_url,
            self._timeout,
            self._drain_interval,
            len(self._buffer),
        )

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        for thread in (self._send_thread, self._drain_thread):
            if thread is None:
                continue
            if self._lifecycle is not None:
                self._lifecycle.join_thread(thread, timeout=self._timeout + 1.0)
            else:
                thread.join(timeout=self._timeout + 1.0)
        self._send_thread = None
        self._drain_thread = None
        spilled = self._spill_queued()
        if spilled:
            _LOGGER.info("Buffered %d unsent records on shutdown", spilled)
        with self._session_lock:
            session = self._session
            self._session = None
        if session is not None:
            session.close()

    # Producer side --------------------------------------------------------

    def submit(self, record: ForwardRecord, on_result: Optional[ResultCallback] = None) -> bool:
        """Queue ``record`` for delivery; returns False when it was dropped unattributed."""
        binding = self._binding.current()
        if binding is None:
            _LOGGER.debug("No user logged in; dropping %s record", record.endpoint)
            self._report(on_result, STATUS_DROPPED)
            return False
        worker = self._send_thread
        if worker is not None and worker.is_alive() and not self._stop_event.is_set():
            self._enqueue_task((record, binding, on_result))
            return True
        self._report(on_result, self.deliver(record, binding))
        return True

    def deliver(self, record: ForwardRecord, binding: ActiveUserBinding) -> str:
        """Attempt one send; buffer on retryable failure. Returns the outcome status."""
        try:
            self._post(record.endpoint, record.data, binding)
        except DeliveryError as exc:
            if exc.unauthorized:
                self._binding.invalidate(binding.credential)
            if not exc.retryable:
                _LOGGER.warning("API rejected %s (%s); record dropped", record.endpoint, exc)
                return STATUS_DROPPED
            _LOGGER.debug("API error (%s): %s; buffering", record.endpoint, exc)
            self._buffer.enqueue(record.to_payload(binding))
            return STATUS_BUFFERED
        _LOGGER.debug("Forwarded to %s", record.endpoint)
        if len(self._buffer):
            self._wake_event.set()
        return STATUS_OK

    # Consumer side --------------------------------------------------------

    def drain_once(self) -> int:
        """Deliver buffered items oldest-first until the first failure; returns delivered count."""
        if not self._drain_lock.acquire(blocking=False):
            return 0
        delivered = 0
        try:
            pending = len(self._buffer)
            if pending:
                _LOGGER.info("Flushing %d buffered events...", pending)
            while not self._stop_event.is_set():
                item = self._buffer.peek_oldest()
                if item is None:
                    break
                binding = self._binding.current()
                if binding is None:
                    _LOGGER.debug("Drain paused: no user logged in")
                    break
                if not self._attempt_buffered(item, binding):
                    break
                self._buffer.remove_oldest(expected=item)
                delivered += 1
        finally:
            self._drain_lock.release()
        if delivered:
            _LOGGER.info("Delivered %d buffered events (%d remaining)", delivered, len(self._buffer))
        return delivered

    def _attempt_buffered(self, item: PendingDeliveryItem, binding: ActiveUserBinding) -> bool:
        payload = item.payload
        owner = payload.get("user_id")
        if owner is not None and str(owner) != binding.user_id:
            _LOGGER.warning("Discarding buffered %s record owned by another user", payload.get("endpoint"))
            return True
        endpoint = str(payload.get("endpoint") or "")
        data = payload.get("data")
        if not endpoint or not isinstance(data, dict):
            _LOGGER.warning("Discarding malformed buffered entry")
            return True
        try:
            self._post(endpoint, data, binding)
        except DeliveryError as exc:
            if exc.unauthorized:
                self._binding.invalidate(binding.credential)
                return False
            if not exc.retryable:
                _LOGGER.warning("API rejected buffered %s (%s); discarding", endpoint, exc)
                return True
            _LOGGER.debug("Failed to flush event: %s", exc)
            return False
        return True

    # Internals ------------------------------------------------------------

    def _send_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                task = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            record, binding, on_result = task
            self._report(on_result, self.deliver(record, binding))

    def _enqueue_task(self, task) -> None:
        while True:
            try:
                self._queue.put_nowait(task)
                return
            except queue.Full:
                pass
            try:
                oldest = self._queue.get_nowait()
            except queue.Empty:
                continue
            _LOGGER.debug("Send queue full; buffering oldest %s record", oldest[0].endpoint)
            self._spill(oldest)

    def _spill_queued(self) -> int:
        spilled = 0
        while True:
            try:
                task = self._queue.get_nowait()
            except queue.Empty:
                return spilled
            self._spill(task)
            spilled += 1

    def _spill(self, task) -> None:
        record, binding, on_result = task
        self._buffer.enqueue(record.to_payload(binding))
        self._report(on_result, STATUS_BUFFERED)

    def _drain_loop(self) -> None:
        while not self._stop_event.is_set():
            self._wake_event.wait(self._drain_interval)
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            try:
                self.drain_once()
            except Exception as exc:  # pragma: no cover - keep the loop alive
                _LOGGER.warning("Drain pass failed: %s", exc, exc_info=exc)

    def _http_session(self):
        with self._session_lock:
            if self._session is None:
                self._session = self._session_factory()
            return self._session

    def _post(self, endpoint: str, data: Dict[str, Any], binding: ActiveUserBinding) -> None:
        url = f"{self._base_url}/{endpoint.lstrip('/')}"
        headers = {"Authorization": f"Bearer {binding.credential}"}
        session = self._http_session()
        try:
            response = session.post(url, json=data, headers=headers, timeout=self._timeout)
        except requests_exceptions.Timeout as exc:
            raise DeliveryError(f"timed out after {self._timeout:.1f}s") from exc
        except requests_exceptions.RequestException as exc:
            raise DeliveryError(f"request failed: {exc}") from exc
        try:
            status = int(response.status_code)
        finally:
            response.close()
        if 200 <= status < 300:
            return
        retryable = not (400 <= status < 500) or status in _RETRYABLE_CLIENT_STATUSES
        raise DeliveryError(f"HTTP {status}", status=status, retryable=retryable)

    @staticmethod
    def _report(on_result: Optional[ResultCallback], status: str) -> None:
        if on_result is None:
            return
        try:
            on_result(status)
        except Exception as exc:
            _LOGGER.debug("Result callback raised error: %s", exc)
