"""Loopback TCP listener that ingests telemetry frames from the in-game plugin."""
from __future__ import annotations

import ipaddress
import json
import logging
import socket
import socketserver
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from relay_plugin.frame_parser import (
    ControlFrame,
    FrameParseError,
    JobFrame,
    ParsedFrame,
    TelemetryFrame,
    coerce_float,
    detect_mod_source,
    normalize_cargo,
    normalize_city,
    parse_frame,
)
from relay_plugin.overlay_state import OverlayState
from relay_plugin.remote_forwarder import ForwardRecord, RemoteForwarder
from relay_plugin.session_binding import SessionBinding

from version import __version__ as RELAY_VERSION

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 25555
MAX_FRAME_BYTES = 64 * 1024

TELEMETRY_CHANNEL = "telemetry:update"
JOB_CHANNEL = "job:update"

PushFunc = Callable[[str, Dict[str, Any]], None]

_LOGGER = logging.getLogger("Enigma.Relay.Ingestor")


def _is_loopback(address: Any) -> bool:
    host = address[0] if isinstance(address, tuple) and address else address
    try:
        return ipaddress.ip_address(str(host).split("%", 1)[0]).is_loopback
    except ValueError:
        return False


@dataclass
class ConnectionSession:
    """Per-connection state; replies are serialised through ``write_lock``."""

    peer: Any
    writer: Any = None
    frames_received: int = 0
    frames_rejected: int = 0
    write_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    closed: bool = False

    def send(self, message: Dict[str, Any]) -> bool:
        if self.writer is None or self.closed:
            return False
        data = (json.dumps(message) + "\n").encode("utf-8")
        with self.write_lock:
            try:
                self.writer.write(data)
                self.writer.flush()
            except (OSError, ValueError) as exc:
                _LOGGER.debug("Reply to %s failed: %s", self.peer, exc)
                return False
        return True


class _RelayTCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    # Rebinding over TIME_WAIT is fine; a second live listener must still fail.
    allow_reuse_address = not sys.platform.startswith("win")
    daemon_threads = True

    def __init__(self, server_address, RequestHandlerClass, ingestor: "TelemetryIngestor") -> None:  # type: ignore[override]
        self.ingestor = ingestor
        super().__init__(server_address, RequestHandlerClass)

    def server_bind(self) -> None:
        exclusive = getattr(socket, "SO_EXCLUSIVEADDRUSE", None)
        if exclusive is not None:
            self.socket.setsockopt(socket.SOL_SOCKET, exclusive, 1)
        super().server_bind()

    def verify_request(self, request, client_address) -> bool:  # type: ignore[override]
        if _is_loopback(client_address):
            return True
        _LOGGER.warning("Rejected non-local telemetry connection from %s", client_address)
        return False


class _RelayTCPHandler(socketserver.StreamRequestHandler):
    def handle(self) -> None:  # type: ignore[override]
        ingestor: TelemetryIngestor = self.server.ingestor  # type: ignore[attr-defined]
        session = ingestor.open_session(self.client_address, self.wfile)
        try:
            oversized = False
            while True:
                try:
                    line = self.rfile.readline(MAX_FRAME_BYTES)
                except OSError as exc:
                    _LOGGER.info("Plugin connection error (%s): %s", self.client_address, exc)
                    break
                if not line:
                    break
                if not line.endswith(b"\n") and len(line) >= MAX_FRAME_BYTES:
                    if not oversized:
                        _LOGGER.warning("Dropping oversized frame from %s", self.client_address)
                    oversized = True
                    continue
                if oversized:
                    # Tail of the oversized frame.
                    oversized = False
                    continue
                ingestor.handle_line(session, line)
        finally:
            ingestor.close_session(session)


class TelemetryIngestor:
    """Owns the plugin listener and routes each frame to state, overlay and forwarder.

    Frames from one connection are handled in arrival order on that connection's
    thread. A malformed frame is logged and skipped; socket failures only end the
    affected connection.
    """

    def __init__(
        self,
        state: OverlayState,
        forwarder: RemoteForwarder,
        session_binding: SessionBinding,
        *,
        push: Optional[PushFunc] = None,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        live_forward_interval: float = 0.0,
        lifecycle=None,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        self._state = state
        self._forwarder = forwarder
        self._binding = session_binding
        self._push = push or (lambda _channel, _payload: None)
        self._host = host
        self._port = port
        self._live_interval = max(0.0, float(live_forward_interval))
        self._lifecycle = lifecycle
        self._time = time_source

        self._server: Optional[_RelayTCPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._sessions_lock = threading.Lock()
        self._active_sessions = 0
        self._last_live_forward: Optional[float] = None

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def running(self) -> bool:
        return self._server is not None

    def set_push_target(self, push: Optional[PushFunc]) -> None:
        self._push = push or (lambda _channel, _payload: None)

    # Lifecycle ------------------------------------------------------------

    def start(self) -> bool:
        if self._server is not None:
            return True
        try:
            server = _RelayTCPServer((self._host, self._port), _RelayTCPHandler, self)
        except OSError as exc:
            _LOGGER.error(
                "Telemetry listener unavailable on %s:%s (%s); another instance is probably running. "
                "Live telemetry disabled.",
                self._host,
                self._port,
                exc,
            )
            return False
        self._port = server.server_address[1]
        thread = threading.Thread(target=server.serve_forever, name="EnigmaRelay-Ingestor", daemon=True)
        if self._lifecycle is not None:
            self._lifecycle.track_thread(thread)
        thread.start()
        self._server = server
        self._thread = thread
        _LOGGER.info("Server listening on %s:%s", self._host, self._port)
        return True

    def stop(self) -> None:
        server = self._server
        if not server:
            return
        server.shutdown()
        server.server_close()
        thread = self._thread
        if thread:
            if self._lifecycle is not None:
                self._lifecycle.join_thread(thread)
            else:
                thread.join(timeout=2.0)
        self._server = None
        self._thread = None
        _LOGGER.info("Server stopped")

    # Connection handling --------------------------------------------------

    def open_session(self, peer: Any, writer: Any = None) -> ConnectionSession:
        with self._sessions_lock:
            self._active_sessions += 1
            active = self._active_sessions
        _LOGGER.info("Plugin connected (%d active) %s", active, peer)
        return ConnectionSession(peer=peer, writer=writer)

    def close_session(self, session: ConnectionSession) -> None:
        if session.closed:
            return
        session.closed = True
        with self._sessions_lock:
            self._active_sessions = max(0, self._active_sessions - 1)
            remaining = self._active_sessions
        _LOGGER.info(
            "Plugin disconnected (%d active) %s; frames=%d rejected=%d",
            remaining,
            session.peer,
            session.frames_received,
            session.frames_rejected,
        )
        if remaining == 0:
            self._push_safe(TELEMETRY_CHANNEL, self._state.mark_disconnected())

    def handle_line(self, session: ConnectionSession, line: bytes) -> Optional[ParsedFrame]:
        """Parse and dispatch one frame; malformed frames are dropped."""
        if not line.strip():
            return None
        try:
            frame = parse_frame(line)
        except FrameParseError as exc:
            session.frames_rejected += 1
            _LOGGER.warning("Dropped frame from %s: %s", session.peer, exc)
            return None
        session.frames_received += 1
        try:
            if isinstance(frame, TelemetryFrame):
                self._handle_telemetry(frame)
            elif isinstance(frame, JobFrame):
                self._handle_job(session, frame)
            else:
                self._handle_control(session, frame)
        except Exception as exc:
            _LOGGER.error("Frame handler raised error: %s", exc, exc_info=exc)
        return frame

    # Frame handlers -------------------------------------------------------

    def _handle_telemetry(self, frame: TelemetryFrame) -> None:
        update = frame.present_fields()
        merged = self._state.merge_telemetry(update, connected=True)
        self._push_safe(TELEMETRY_CHANNEL, merged)
        if not update or not self._live_forward_due():
            return
        binding = self._binding.current()
        data = dict(update)
        if binding is not None:
            data["user_id"] = binding.user_id
        self._forwarder.submit(ForwardRecord("/telemetry/live", data))

    def _handle_job(self, session: ConnectionSession, frame: JobFrame) -> None:
        if not self._state.connected:
            self._push_safe(TELEMETRY_CHANNEL, self._state.mark_connected())
        merged = self._state.merge_job(frame.present_fields())
        self._push_safe(JOB_CHANNEL, merged)
        if frame.kind == "job_started":
            _LOGGER.info("Job started: %s", frame.job_id)
        elif frame.kind == "job_delivered":
            _LOGGER.info("Job delivered: %s", frame.job_id)
        elif frame.kind == "job_cancelled":
            _LOGGER.info("Job cancelled: %s", frame.job_id)

        record = self._build_job_record(frame)
        if frame.kind == "job_update":
            self._forwarder.submit(record)
            return

        def _acknowledge(status: str) -> None:
            session.send({"type": "job_saved", "job_id": frame.job_id, "status": status})

        self._forwarder.submit(record, on_result=_acknowledge)

    def _handle_control(self, session: ConnectionSession, frame: ControlFrame) -> None:
        if frame.kind != "shutdown" and not self._state.connected:
            self._push_safe(TELEMETRY_CHANNEL, self._state.mark_connected())
        if frame.kind == "init_request":
            session.send(self._init_response())
        elif frame.kind == "heartbeat":
            session.send(
                {
                    "type": "heartbeat_ack",
                    "timestamp": int(time.time() * 1000),
                    "online": self._binding.is_bound,
                    "buffered": len(self._forwarder.buffer),
                }
            )
        elif frame.kind == "shutdown":
            _LOGGER.info("Plugin shutdown announced by %s", session.peer)

    # Helpers --------------------------------------------------------------

    def _init_response(self) -> Dict[str, Any]:
        binding = self._binding.current()
        if binding is None:
            return {"type": "init_response", "verified": False, "error": "Not logged in"}
        return {
            "type": "init_response",
            "verified": True,
            "steam_id": binding.steam_id,
            "username": binding.display_name,
            "user_id": binding.user_id,
            "discord_id": binding.discord_id,
            "relay_version": RELAY_VERSION,
        }

    def _build_job_record(self, frame: JobFrame) -> ForwardRecord:
        raw = frame.raw
        binding = self._binding.current()
        if frame.kind == "job_started":
            data: Dict[str, Any] = {
                "job_id": frame.job_id,
                "user_id": binding.user_id if binding is not None else None,
                "game": raw.get("game") or "Unknown",
                "cargo": raw.get("cargo") or "unknown",
                "cargo_display": normalize_cargo(raw.get("cargo")),
                "pickup_city": raw.get("pickup_city") or "unknown",
                "pickup_city_display": normalize_city(raw.get("pickup_city")),
                "delivery_city": raw.get("delivery_city") or "unknown",
                "delivery_city_display": normalize_city(raw.get("delivery_city")),
                "cargo_mass": _number(raw, "cargo_mass"),
                "planned_distance": _number(raw, "planned_distance"),
                "mod_source": detect_mod_source(raw),
                "is_quick_job": bool(raw.get("is_quick_job")),
            }
            return ForwardRecord("/telemetry/start", data)
        if frame.kind == "job_delivered":
            flag_reasons = raw.get("flag_reasons")
            data = {
                "job_id": frame.job_id,
                "actual_distance": _number(raw, "actual_distance"),
                "normal_miles": _number(raw, "normal_miles"),
                "race_miles": _number(raw, "race_miles"),
                "race_percentage": _number(raw, "race_percentage"),
                "delivery_time_seconds": _number(raw, "delivery_time_seconds"),
                "income": _number(raw, "income"),
                "damage_percent": _number(raw, "damage_percent"),
                "flagged": bool(raw.get("flagged")),
                "flag_reasons": list(flag_reasons) if isinstance(flag_reasons, list) else [],
            }
            return ForwardRecord("/telemetry/deliver", data)
        if frame.kind == "job_cancelled":
            data = {"job_id": frame.job_id, "reason": raw.get("reason") or "Cancelled by driver"}
            return ForwardRecord("/telemetry/cancel", data)
        data = frame.present_fields()
        data["job_id"] = frame.job_id
        return ForwardRecord("/telemetry/job", data)

    def _live_forward_due(self) -> bool:
        if self._live_interval <= 0.0:
            return True
        now = self._time()
        last = self._last_live_forward
        if last is not None and now - last < self._live_interval:
            return False
        self._last_live_forward = now
        return True

    def _push_safe(self, channel: str, payload: Dict[str, Any]) -> None:
        try:
            self._push(channel, payload)
        except Exception as exc:
            _LOGGER.warning("Overlay push (%s) failed: %s", channel, exc)


def _number(payload, key: str) -> float:
    value = coerce_float(payload.get(key))
    return value if value is not None else 0.0
