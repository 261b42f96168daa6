"""Primary entry point for the Enigma telemetry relay."""
from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from typing import Any, Mapping, Optional

from overlay_surface.geometry_store import GeometryStore
from overlay_surface.surface_manager import OverlaySurfaceManager, SurfaceFactory, SurfaceState
from relay_plugin.lifecycle import LifecycleTracker
from relay_plugin.logging_utils import LOGGER_NAME, configure_logging
from relay_plugin.offline_buffer import OfflineBuffer
from relay_plugin.overlay_state import OverlayState
from relay_plugin.preferences import RelayConfig, resolve_config_dir
from relay_plugin.remote_forwarder import RemoteForwarder
from relay_plugin.runtime_services import start_runtime_services, stop_runtime_services
from relay_plugin.session_binding import ActiveUserBinding, SessionBinding
from relay_plugin.telemetry_server import TelemetryIngestor
from version import __version__ as RELAY_VERSION, is_dev_build

LOGGER = logging.getLogger(LOGGER_NAME)


class RelayRuntime:
    """Owns every relay component for one process and wires them together."""

    def __init__(self, config: RelayConfig, surface_factory: SurfaceFactory, *, http_session_factory=None) -> None:
        self.config = config
        self.lifecycle = LifecycleTracker(LOGGER)
        self.state = OverlayState()
        self.session = SessionBinding()
        self.buffer = OfflineBuffer(config.buffer_path, capacity=config.buffer_capacity)
        forwarder_kwargs: dict[str, Any] = {}
        if http_session_factory is not None:
            forwarder_kwargs["session_factory"] = http_session_factory
        self.forwarder = RemoteForwarder(
            self.buffer,
            self.session,
            base_url=config.api_base_url,
            timeout=config.request_timeout,
            drain_interval=config.drain_interval,
            lifecycle=self.lifecycle,
            **forwarder_kwargs,
        )
        self.surface_manager = OverlaySurfaceManager(
            self.state,
            GeometryStore(config.geometry_path),
            surface_factory,
            ready_fallback=config.surface_ready_fallback,
        )
        self.ingestor = TelemetryIngestor(
            self.state,
            self.forwarder,
            self.session,
            push=self.surface_manager.push,
            host=config.tcp_host,
            port=config.tcp_port,
            live_forward_interval=config.live_forward_interval,
            lifecycle=self.lifecycle,
        )
        self._lock = threading.Lock()
        self._running = False
        self.live_telemetry = False

    # Lifecycle ------------------------------------------------------------

    def start(self) -> bool:
        with self._lock:
            if self._running:
                return self.live_telemetry
            self._running = True
        LOGGER.info("Enigma relay %s starting", RELAY_VERSION)
        self.live_telemetry = start_runtime_services(self, LOGGER, self.lifecycle.track_service)
        self.surface_manager.restore()
        return self.live_telemetry

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
        LOGGER.info("Enigma relay stopping")
        stop_runtime_services(self, LOGGER, self.lifecycle.untrack_service)
        self.lifecycle.log_state("after stop")

    # Auth collaborator signals --------------------------------------------

    def on_login(self, identity: Mapping[str, Any], credential: Optional[str] = None) -> ActiveUserBinding:
        return self.session.on_login(identity, credential)

    def on_logout(self) -> None:
        self.session.on_logout()

    # Overlay surface queries ----------------------------------------------

    def toggle_overlay(self) -> bool:
        return self.surface_manager.toggle() is not SurfaceState.HIDDEN

    def overlay_visible(self) -> bool:
        return self.surface_manager.get_visible()


def _parse_args(argv: Optional[list[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Enigma telemetry relay and overlay")
    parser.add_argument("--config-dir", help="Directory holding settings, overlay geometry and the offline buffer")
    parser.add_argument("--port", type=int, help="Override the plugin listener port")
    parser.add_argument("--show-overlay", action="store_true", help="Open the overlay on startup")
    parser.add_argument("--user-id", help="Bind forwarded telemetry to this driver id")
    parser.add_argument("--username", help="Display name for --user-id")
    parser.add_argument("--token", default=os.getenv("ENIGMA_RELAY_TOKEN"), help="Session credential for --user-id")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    config = RelayConfig(resolve_config_dir(args.config_dir))
    if args.port is not None:
        config.tcp_port = args.port
    configure_logging(debug_enabled=is_dev_build(), retention=config.log_retention)
    LOGGER.debug("Loaded settings from %s", config.path)

    from PyQt6.QtCore import QTimer
    from PyQt6.QtWidgets import QApplication

    from overlay_surface.overlay_window import QtSurfaceFactory

    app = QApplication(sys.argv if argv is None else [sys.argv[0], *argv])
    app.setQuitOnLastWindowClosed(False)
    runtime = RelayRuntime(config, QtSurfaceFactory())
    if args.user_id and args.token:
        try:
            runtime.on_login({"id": args.user_id, "username": args.username or args.user_id}, args.token)
        except ValueError as exc:
            LOGGER.error("Ignoring bootstrap login: %s", exc)

    runtime.start()
    if args.show_overlay and not runtime.overlay_visible():
        runtime.toggle_overlay()

    signal.signal(signal.SIGINT, lambda *_args: app.quit())
    # Give the interpreter a chance to run the SIGINT handler while Qt owns the loop.
    heartbeat = QTimer()
    heartbeat.timeout.connect(lambda: None)
    heartbeat.start(500)
    exit_code = app.exec()
    runtime.stop()
    LOGGER.info("Relay exiting with code %s", exit_code)
    return int(exit_code)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
