"""Lifecycle state machine for the always-on-top overlay surface.

This module stays free of Qt types; the concrete surface is produced by an
injected factory and talks back through a :class:`SurfaceHandle`.
"""
from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

from overlay_surface.geometry_store import GeometryStore, OverlayGeometry
from relay_plugin.overlay_state import OverlayState

TELEMETRY_CHANNEL = "telemetry:update"
JOB_CHANNEL = "job:update"
DEFAULT_READY_FALLBACK = 0.5

AfterFn = Callable[[float, Callable[[], None]], object]
AfterCancelFn = Callable[[object], None]

_LOGGER = logging.getLogger("Enigma.Relay.Overlay")


class SurfaceState(str, Enum):
    ABSENT = "absent"
    CREATING = "creating"
    HIDDEN = "hidden"
    VISIBLE = "visible"


class OverlaySurface(Protocol):
    def show(self) -> None: ...
    def hide(self) -> None: ...
    def close(self) -> None: ...
    def push(self, channel: str, payload: Dict[str, Any]) -> None: ...


SurfaceFactory = Callable[[OverlayGeometry, "SurfaceHandle"], OverlaySurface]


def _thread_after(delay: float, callback: Callable[[], None]) -> object:
    timer = threading.Timer(max(0.0, delay), callback)
    timer.daemon = True
    timer.start()
    return timer


def _thread_after_cancel(handle: object) -> None:
    cancel = getattr(handle, "cancel", None)
    if callable(cancel):
        cancel()


class SurfaceHandle:
    """Callback channel from one surface instance back to its manager.

    Each created surface gets its own handle; signals from a surface that has
    since been closed or replaced are ignored.
    """

    def __init__(self, manager: "OverlaySurfaceManager", generation: int) -> None:
        self._manager = manager
        self.generation = generation

    def ready(self) -> None:
        self._manager._on_ready(self)

    def load_failed(self, reason: str) -> None:
        self._manager._on_load_failed(self, reason)

    def geometry_changed(self, x: int, y: int, width: int, height: int) -> None:
        self._manager._on_geometry_changed(self, x, y, width, height)

    def closed(self) -> None:
        self._manager._on_closed(self)

    def toggle(self) -> SurfaceState:
        return self._manager.toggle()

    def get_visible(self) -> bool:
        return self._manager.get_visible()


class OverlaySurfaceManager:
    """Owns create/show/hide/close of the overlay and hydrates it from :class:`OverlayState`.

    All transitions run under one re-entrant lock, so at most one surface exists
    and concurrent ``toggle`` calls cannot race. A fresh surface is shown and
    hydrated once it signals readiness, or after ``ready_fallback`` seconds if it
    never does.
    """

    def __init__(
        self,
        state: OverlayState,
        store: GeometryStore,
        factory: SurfaceFactory,
        *,
        ready_fallback: float = DEFAULT_READY_FALLBACK,
        after: AfterFn = _thread_after,
        after_cancel: AfterCancelFn = _thread_after_cancel,
    ) -> None:
        self._overlay_state = state
        self._store = store
        self._factory = factory
        self._ready_fallback = max(0.0, float(ready_fallback))
        self._after = after
        self._after_cancel = after_cancel

        self._lock = threading.RLock()
        self._state = SurfaceState.ABSENT
        self._surface: Optional[OverlaySurface] = None
        self._handle: Optional[SurfaceHandle] = None
        self._geometry: Optional[OverlayGeometry] = None
        self._fallback_timer: Optional[object] = None
        self._generation = 0

    # Queries --------------------------------------------------------------

    @property
    def state(self) -> SurfaceState:
        with self._lock:
            return self._state

    @property
    def geometry(self) -> Optional[OverlayGeometry]:
        with self._lock:
            return self._geometry

    def get_visible(self) -> bool:
        return self.state is SurfaceState.VISIBLE

    # Transitions ----------------------------------------------------------

    def toggle(self) -> SurfaceState:
        with self._lock:
            if self._state is SurfaceState.ABSENT:
                self._create_locked()
            elif self._state is SurfaceState.CREATING:
                _LOGGER.debug("Toggle ignored; overlay surface is still being created")
            elif self._state is SurfaceState.HIDDEN:
                self._show_locked()
            else:
                self._hide_locked()
            _LOGGER.debug("Overlay toggled to %s", self._state.value)
            return self._state

    def restore(self) -> SurfaceState:
        """Recreate the surface on startup if it was visible when last persisted."""
        with self._lock:
            if self._state is SurfaceState.ABSENT and self._store.load().visible:
                _LOGGER.info("Restoring overlay surface visible from saved config")
                self._create_locked()
            return self._state

    def push(self, channel: str, payload: Dict[str, Any]) -> bool:
        """Forward a live update to the surface; a no-op unless one is attached."""
        with self._lock:
            if self._state not in (SurfaceState.HIDDEN, SurfaceState.VISIBLE) or self._surface is None:
                return False
            surface = self._surface
            try:
                surface.push(channel, payload)
            except Exception as exc:
                _LOGGER.warning("Overlay push (%s) failed: %s", channel, exc)
                return False
            return True

    def close(self) -> None:
        with self._lock:
            surface = self._surface
            self._reset_locked()
        if surface is not None:
            try:
                surface.close()
            except Exception as exc:
                _LOGGER.warning("Overlay surface close raised error: %s", exc)

    # Internal transitions -------------------------------------------------

    def _create_locked(self) -> None:
        self._generation += 1
        handle = SurfaceHandle(self, self._generation)
        geometry = self._store.load()
        self._geometry = geometry
        self._handle = handle
        self._state = SurfaceState.CREATING
        _LOGGER.info("Creating overlay surface at %s", geometry.rect)
        try:
            surface = self._factory(geometry, handle)
        except Exception as exc:
            _LOGGER.error("Overlay surface creation failed: %s", exc, exc_info=exc)
            self._reset_locked()
            return
        if self._handle is not handle:
            # The factory reported failure or closure synchronously.
            try:
                surface.close()
            except Exception as exc:
                _LOGGER.debug("Closing abandoned overlay surface raised error: %s", exc)
            return
        self._surface = surface
        if self._state is SurfaceState.CREATING:
            self._fallback_timer = self._after(self._ready_fallback, lambda: self._on_ready_timeout(handle))
        else:
            # Ready arrived during construction; it was deferred until the surface was known.
            self._finish_creation_locked()

    def _on_ready(self, handle: SurfaceHandle) -> None:
        with self._lock:
            if handle is not self._handle or self._state is not SurfaceState.CREATING:
                return
            if self._surface is None:
                # Still inside the factory call; _create_locked finishes the job.
                self._state = SurfaceState.HIDDEN
                return
            _LOGGER.debug("Overlay surface reported ready")
            self._finish_creation_locked()

    def _on_ready_timeout(self, handle: SurfaceHandle) -> None:
        with self._lock:
            if handle is not self._handle or self._state is not SurfaceState.CREATING:
                return
            self._fallback_timer = None
            _LOGGER.debug("Overlay readiness not signalled within %.2fs; showing anyway", self._ready_fallback)
            self._finish_creation_locked()

    def _finish_creation_locked(self) -> None:
        self._cancel_fallback_locked()
        self._state = SurfaceState.HIDDEN
        self._show_locked()
        _LOGGER.info("Overlay shown")

    def _show_locked(self) -> None:
        surface = self._surface
        if surface is None:
            return
        surface.show()
        self._state = SurfaceState.VISIBLE
        self._set_visible_locked(True)
        self._hydrate_locked()

    def _hide_locked(self) -> None:
        surface = self._surface
        if surface is None:
            return
        surface.hide()
        self._state = SurfaceState.HIDDEN
        self._set_visible_locked(False)

    def _hydrate_locked(self) -> None:
        telemetry, job = self._overlay_state.snapshot()
        surface = self._surface
        if surface is None:
            return
        _LOGGER.debug("Sending stored telemetry data to overlay")
        try:
            surface.push(TELEMETRY_CHANNEL, telemetry)
            surface.push(JOB_CHANNEL, job)
        except Exception as exc:
            _LOGGER.warning("Overlay hydration failed: %s", exc)

    def _set_visible_locked(self, visible: bool) -> None:
        if self._geometry is None:
            return
        self._geometry = self._geometry.with_visible(visible)
        self._store.save(self._geometry)

    def _on_geometry_changed(self, handle: SurfaceHandle, x: int, y: int, width: int, height: int) -> None:
        with self._lock:
            if handle is not self._handle or self._geometry is None:
                return
            if self._state not in (SurfaceState.HIDDEN, SurfaceState.VISIBLE):
                return
            updated = self._geometry.moved(x, y, width, height)
            if updated == self._geometry:
                return
            self._geometry = updated
            self._store.save(updated)

    def _on_load_failed(self, handle: SurfaceHandle, reason: str) -> None:
        with self._lock:
            if handle is not self._handle:
                return
            surface = self._surface
            _LOGGER.error("Overlay surface failed to load: %s", reason)
            self._reset_locked()
        if surface is not None:
            try:
                surface.close()
            except Exception as exc:
                _LOGGER.debug("Closing failed overlay surface raised error: %s", exc)

    def _on_closed(self, handle: SurfaceHandle) -> None:
        with self._lock:
            if handle is not self._handle:
                return
            _LOGGER.info("Overlay window closed")
            self._reset_locked()

    def _reset_locked(self) -> None:
        self._cancel_fallback_locked()
        self._surface = None
        self._handle = None
        self._geometry = None
        self._state = SurfaceState.ABSENT

    def _cancel_fallback_locked(self) -> None:
        timer = self._fallback_timer
        self._fallback_timer = None
        if timer is not None:
            try:
                self._after_cancel(timer)
            except Exception as exc:
                _LOGGER.debug("Cancelling overlay readiness timer raised error: %s", exc)
