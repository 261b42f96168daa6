"""Persisted position/size/visibility of the overlay surface."""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Mapping, Tuple

from relay_plugin.frame_parser import coerce_bool

GEOMETRY_FILE = "overlay-config.json"
MIN_WIDTH = 120
MIN_HEIGHT = 80

_LOGGER = logging.getLogger("Enigma.Relay.Overlay")


@dataclass(frozen=True)
class OverlayGeometry:
    x: int = 100
    y: int = 100
    width: int = 400
    height: int = 600
    visible: bool = False

    @property
    def rect(self) -> Tuple[int, int, int, int]:
        return (self.x, self.y, self.width, self.height)

    def moved(self, x: int, y: int, width: int, height: int) -> "OverlayGeometry":
        return replace(self, x=int(x), y=int(y), width=max(MIN_WIDTH, int(width)), height=max(MIN_HEIGHT, int(height)))

    def with_visible(self, visible: bool) -> "OverlayGeometry":
        return replace(self, visible=bool(visible))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "OverlayGeometry":
        defaults = cls()

        def _int(key: str, default: int) -> int:
            try:
                return int(data.get(key, default))
            except (TypeError, ValueError):
                return default

        def _flag(key: str, default: bool) -> bool:
            value = coerce_bool(data.get(key))
            return default if value is None else value

        return cls(
            x=_int("x", defaults.x),
            y=_int("y", defaults.y),
            width=max(MIN_WIDTH, _int("width", defaults.width)),
            height=max(MIN_HEIGHT, _int("height", defaults.height)),
            visible=_flag("visible", defaults.visible),
        )


class GeometryStore:
    """Reads and writes :class:`OverlayGeometry` as a small JSON document."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> OverlayGeometry:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return OverlayGeometry()
        except (OSError, json.JSONDecodeError) as exc:
            _LOGGER.warning("Failed to load overlay geometry from %s: %s", self._path, exc)
            return OverlayGeometry()
        if not isinstance(data, dict):
            return OverlayGeometry()
        return OverlayGeometry.from_mapping(data)

    def save(self, geometry: OverlayGeometry) -> None:
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(asdict(geometry), indent=2), encoding="utf-8")
            tmp_path.replace(self._path)
        except OSError as exc:
            _LOGGER.error("Failed to save overlay geometry to %s: %s", self._path, exc)
