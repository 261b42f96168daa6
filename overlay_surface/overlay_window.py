"""PyQt6 implementation of the telemetry overlay surface."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from PyQt6.QtCore import QObject, QPoint, Qt, QTimer, pyqtSignal, pyqtSlot
from PyQt6.QtWidgets import (
    QFrame,
    QGridLayout,
    QLabel,
    QProgressBar,
    QSizeGrip,
    QVBoxLayout,
    QWidget,
)

from overlay_surface import formatting
from overlay_surface.geometry_store import OverlayGeometry
from overlay_surface.surface_manager import JOB_CHANNEL, TELEMETRY_CHANNEL, SurfaceHandle

_LOGGER = logging.getLogger("Enigma.Relay.Overlay")

_STYLE_SHEET = """
QFrame#OverlayPanel {
    background-color: rgba(15, 18, 24, 200);
    border: 1px solid rgba(255, 255, 255, 40);
    border-radius: 8px;
}
QLabel { color: #e8e8e8; }
QLabel#SpeedValue { font-size: 36px; font-weight: bold; }
QLabel#GearValue { font-size: 28px; font-weight: bold; color: #f5b942; }
QLabel#Status { font-size: 11px; color: #9aa4b2; }
QProgressBar { max-height: 10px; border: none; background: rgba(255, 255, 255, 30); }
QProgressBar::chunk { background-color: #3fb950; }
"""


class OverlayWindow(QWidget):
    """Frameless, translucent, always-on-top panel mirroring truck and job state."""

    ready = pyqtSignal()
    geometry_changed = pyqtSignal(int, int, int, int)
    closed = pyqtSignal()
    toggle_requested = pyqtSignal()

    def __init__(self, geometry: OverlayGeometry, parent: Optional[QWidget] = None) -> None:
        super().__init__(parent)
        self._drag_origin: Optional[QPoint] = None
        self._ready_emitted = False
        self._telemetry: Dict[str, Any] = {}
        self._job: Dict[str, Any] = {}

        self.setWindowTitle("Enigma Overlay")
        self.setWindowFlags(
            Qt.WindowType.FramelessWindowHint
            | Qt.WindowType.WindowStaysOnTopHint
            | Qt.WindowType.Tool
        )
        self.setAttribute(Qt.WidgetAttribute.WA_TranslucentBackground)
        self.setAttribute(Qt.WidgetAttribute.WA_ShowWithoutActivating, True)
        self.setStyleSheet(_STYLE_SHEET)
        self._build_ui()
        self.setGeometry(geometry.x, geometry.y, geometry.width, geometry.height)
        # Content is built synchronously; report readiness once the event loop has polished it.
        QTimer.singleShot(0, self._emit_ready)

    def _build_ui(self) -> None:
        panel = QFrame(self)
        panel.setObjectName("OverlayPanel")
        outer = QVBoxLayout(self)
        outer.setContentsMargins(0, 0, 0, 0)
        outer.addWidget(panel)

        layout = QVBoxLayout(panel)
        layout.setContentsMargins(12, 10, 12, 6)

        self.status_label = QLabel()
        self.status_label.setObjectName("Status")
        layout.addWidget(self.status_label)

        gauges = QGridLayout()
        self.speed_label = QLabel()
        self.speed_label.setObjectName("SpeedValue")
        self.gear_label = QLabel()
        self.gear_label.setObjectName("GearValue")
        self.rpm_label = QLabel()
        self.time_label = QLabel()
        gauges.addWidget(self.speed_label, 0, 0)
        gauges.addWidget(QLabel("km/h"), 1, 0)
        gauges.addWidget(self.gear_label, 0, 1, alignment=Qt.AlignmentFlag.AlignRight)
        gauges.addWidget(self.rpm_label, 1, 1, alignment=Qt.AlignmentFlag.AlignRight)
        layout.addLayout(gauges)

        self.fuel_label = QLabel()
        self.fuel_bar = QProgressBar()
        self.fuel_bar.setRange(0, 1000)
        self.fuel_bar.setTextVisible(False)
        self.damage_label = QLabel()
        layout.addWidget(self.fuel_label)
        layout.addWidget(self.fuel_bar)
        layout.addWidget(self.damage_label)
        layout.addWidget(self.time_label)

        self.job_label = QLabel()
        self.job_label.setWordWrap(True)
        self.job_progress = QProgressBar()
        self.job_progress.setRange(0, 1000)
        self.job_progress.setTextVisible(False)
        self.job_detail_label = QLabel()
        layout.addWidget(self.job_label)
        layout.addWidget(self.job_progress)
        layout.addWidget(self.job_detail_label)
        layout.addStretch(1)

        grip = QSizeGrip(self)
        layout.addWidget(grip, 0, Qt.AlignmentFlag.AlignBottom | Qt.AlignmentFlag.AlignRight)

        self.apply_telemetry({})
        self.apply_job({})

    # Content --------------------------------------------------------------

    def apply_telemetry(self, payload: Dict[str, Any]) -> None:
        self._telemetry.update(payload)
        data = self._telemetry
        self.status_label.setText(formatting.connection_label(data))
        self.speed_label.setText(formatting.format_speed(data.get("speed")))
        self.gear_label.setText(formatting.format_gear(data.get("gear")))
        self.rpm_label.setText(formatting.format_rpm(data.get("rpm")))
        self.fuel_label.setText(f"Fuel {formatting.format_fuel(data.get('fuel'), data.get('fuelCapacity'))}")
        self.fuel_bar.setValue(int(formatting.fuel_ratio(data.get("fuel"), data.get("fuelCapacity")) * 1000))
        self.damage_label.setText(f"Damage {formatting.format_damage(data.get('damage'))}")
        self.time_label.setText(str(data.get("gameTime") or "00:00"))

    def apply_job(self, payload: Dict[str, Any]) -> None:
        self._job.update(payload)
        data = self._job
        summary = formatting.job_summary(data)
        active = summary is not None
        self.job_label.setText(summary or "No active job")
        self.job_progress.setVisible(active)
        self.job_detail_label.setVisible(active)
        if active:
            self.job_progress.setValue(
                int(formatting.job_progress(data.get("distance"), data.get("remainingDistance")) * 1000)
            )
            self.job_detail_label.setText(
                f"{formatting.format_distance(data.get('remainingDistance'))} left"
                f" | Income {formatting.format_income(data.get('income'))}"
            )

    @pyqtSlot(str, dict)
    def handle_push(self, channel: str, payload: Dict[str, Any]) -> None:
        if channel == TELEMETRY_CHANNEL:
            self.apply_telemetry(payload)
        elif channel == JOB_CHANNEL:
            self.apply_job(payload)
        else:
            _LOGGER.debug("Ignoring overlay push on unknown channel %s", channel)

    # Qt events ------------------------------------------------------------

    def _emit_ready(self) -> None:
        if self._ready_emitted:
            return
        self._ready_emitted = True
        self.ready.emit()

    def keyPressEvent(self, event) -> None:  # type: ignore[override]
        if event.key() == Qt.Key.Key_Escape:
            self.toggle_requested.emit()
            event.accept()
            return
        super().keyPressEvent(event)

    def mousePressEvent(self, event) -> None:  # type: ignore[override]
        if event.button() == Qt.MouseButton.LeftButton:
            self._drag_origin = event.globalPosition().toPoint() - self.frameGeometry().topLeft()
            event.accept()
            return
        super().mousePressEvent(event)

    def mouseMoveEvent(self, event) -> None:  # type: ignore[override]
        if self._drag_origin is not None and event.buttons() & Qt.MouseButton.LeftButton:
            self.move(event.globalPosition().toPoint() - self._drag_origin)
            event.accept()
            return
        super().mouseMoveEvent(event)

    def mouseReleaseEvent(self, event) -> None:  # type: ignore[override]
        self._drag_origin = None
        super().mouseReleaseEvent(event)

    def moveEvent(self, event) -> None:  # type: ignore[override]
        super().moveEvent(event)
        self._emit_geometry()

    def resizeEvent(self, event) -> None:  # type: ignore[override]
        super().resizeEvent(event)
        self._emit_geometry()

    def closeEvent(self, event) -> None:  # type: ignore[override]
        super().closeEvent(event)
        self.closed.emit()

    def _emit_geometry(self) -> None:
        pos = self.pos()
        self.geometry_changed.emit(pos.x(), pos.y(), self.width(), self.height())


class GuiDispatcher(QObject):
    """Runs callables on the thread that owns this object (the Qt GUI thread)."""

    _invoke = pyqtSignal(object)

    def __init__(self, parent: Optional[QObject] = None) -> None:
        super().__init__(parent)
        self._invoke.connect(self._run)

    def call(self, func: Callable[[], None]) -> None:
        self._invoke.emit(func)

    @pyqtSlot(object)
    def _run(self, func: Callable[[], None]) -> None:
        try:
            func()
        except Exception as exc:
            _LOGGER.warning("Overlay GUI task failed: %s", exc, exc_info=exc)


class QtOverlaySurface:
    """Thread-safe proxy handed to the surface manager.

    Every call is marshalled onto the GUI thread through a :class:`GuiDispatcher`,
    so the ingestor threads can push updates directly.
    """

    def __init__(self, dispatcher: GuiDispatcher, geometry: OverlayGeometry, handle: SurfaceHandle) -> None:
        self._dispatcher = dispatcher
        self._handle = handle
        self._window: Optional[OverlayWindow] = None
        dispatcher.call(lambda: self._build(geometry))

    @property
    def window(self) -> Optional[OverlayWindow]:
        return self._window

    def _build(self, geometry: OverlayGeometry) -> None:
        try:
            window = OverlayWindow(geometry)
        except Exception as exc:
            _LOGGER.error("Overlay window construction failed: %s", exc, exc_info=exc)
            self._handle.load_failed(str(exc))
            return
        window.setAttribute(Qt.WidgetAttribute.WA_DeleteOnClose, True)
        window.ready.connect(self._handle.ready)
        window.geometry_changed.connect(self._handle.geometry_changed)
        window.closed.connect(self._handle.closed)
        window.toggle_requested.connect(self._handle.toggle)
        self._window = window

    def show(self) -> None:
        self._dispatcher.call(self._show_now)

    def hide(self) -> None:
        self._dispatcher.call(lambda: self._window.hide() if self._window is not None else None)

    def close(self) -> None:
        self._dispatcher.call(self._close_now)

    def push(self, channel: str, payload: Dict[str, Any]) -> None:
        data = dict(payload)
        self._dispatcher.call(lambda: self._window.handle_push(channel, data) if self._window is not None else None)

    def _show_now(self) -> None:
        window = self._window
        if window is None:
            return
        window.show()
        window.raise_()

    def _close_now(self) -> None:
        window = self._window
        self._window = None
        if window is not None:
            window.close()


class QtSurfaceFactory:
    """Surface factory for :class:`OverlaySurfaceManager`; construct on the GUI thread."""

    def __init__(self) -> None:
        self._dispatcher = GuiDispatcher()

    def __call__(self, geometry: OverlayGeometry, handle: SurfaceHandle) -> QtOverlaySurface:
        return QtOverlaySurface(self._dispatcher, geometry, handle)

