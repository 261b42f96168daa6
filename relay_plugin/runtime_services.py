from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol


class _RuntimeLike(Protocol):
    forwarder: object
    ingestor: object
    surface_manager: object


TrackFunc = Callable[[str, Any], None]
UntrackFunc = Callable[[Any], None]


def start_runtime_services(runtime: _RuntimeLike, logger: logging.Logger, track: Optional[TrackFunc] = None) -> bool:
    """Start forwarder, then the plugin listener. Returns whether live telemetry is available.

    A listener that cannot bind leaves the forwarder running so buffered records
    still drain; the rest of the application keeps working without live data.
    Only services that actually started are handed to ``track``.
    """
    track = track or (lambda _name, _service: None)
    runtime.forwarder.start()
    track("forwarder", runtime.forwarder)
    if not runtime.ingestor.start():
        logger.error("Telemetry listener failed to start; running without live telemetry.")
        return False
    track("ingestor", runtime.ingestor)
    return True


def stop_runtime_services(runtime: _RuntimeLike, logger: logging.Logger, untrack: Optional[UntrackFunc] = None) -> None:
    """Tear down in reverse order: overlay surface, listener, forwarder."""
    untrack = untrack or (lambda _service: None)
    manager = getattr(runtime, "surface_manager", None)
    if manager is not None:
        try:
            manager.close()
        except Exception as exc:
            logger.warning("Overlay surface close failed during shutdown: %s", exc)

    for attr in ("ingestor", "forwarder"):
        service = getattr(runtime, attr, None)
        if not service:
            continue
        try:
            service.stop()
        except Exception as exc:
            logger.warning("Stopping %s failed: %s", attr, exc, exc_info=exc)
            continue
        untrack(service)
    logger.debug("Relay services stopped")
