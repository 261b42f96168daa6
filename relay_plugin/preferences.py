"""JSON-backed settings for the telemetry relay."""
from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

SETTINGS_FILE = "relay_settings.json"
CONFIG_DIR_ENV_VAR = "ENIGMA_RELAY_CONFIG_DIR"
APP_DIR_NAME = "EnigmaRelay"

DEFAULT_API_URL = "https://enigmalogistics.org/api"


def resolve_config_dir(override: Optional[str] = None) -> Path:
    """Return the per-user directory for settings, geometry and the offline buffer."""
    candidate = override or os.environ.get(CONFIG_DIR_ENV_VAR)
    if candidate:
        return Path(candidate).expanduser()
    if sys.platform.startswith("win"):
        base = os.environ.get("APPDATA")
        if base:
            return Path(base) / APP_DIR_NAME
    elif sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_DIR_NAME
    config_home = os.environ.get("XDG_CONFIG_HOME")
    base_path = Path(config_home) if config_home else Path.home() / ".config"
    return base_path / APP_DIR_NAME


def _coerce_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass
class RelayConfig:
    """Simple JSON-backed settings store; unknown or invalid values fall back to defaults."""

    config_dir: Path
    tcp_host: str = "127.0.0.1"
    tcp_port: int = 25555
    api_base_url: str = DEFAULT_API_URL
    request_timeout: float = 10.0
    drain_interval: float = 30.0
    buffer_capacity: int = 100
    live_forward_interval: float = 0.0
    surface_ready_fallback: float = 0.5
    log_retention: int = 5

    def __post_init__(self) -> None:
        self.config_dir = Path(self.config_dir)
        self._path = self.config_dir / SETTINGS_FILE
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def buffer_path(self) -> Path:
        return self.config_dir / "telemetry-buffer.json"

    @property
    def geometry_path(self) -> Path:
        return self.config_dir / "overlay-config.json"

    # Persistence ---------------------------------------------------------

    def _load(self) -> None:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, json.JSONDecodeError):
            return
        if not isinstance(data, dict):
            return
        host = str(data.get("tcp_host") or "127.0.0.1").strip()
        self.tcp_host = host or "127.0.0.1"
        port = _coerce_int(data.get("tcp_port", 25555), 25555)
        self.tcp_port = port if 0 <= port <= 65535 else 25555
        url = str(data.get("api_base_url") or DEFAULT_API_URL).strip()
        self.api_base_url = url.rstrip("/") or DEFAULT_API_URL
        timeout = _coerce_float(data.get("request_timeout", 10.0), 10.0)
        self.request_timeout = max(1.0, min(timeout, 60.0))
        interval = _coerce_float(data.get("drain_interval", 30.0), 30.0)
        self.drain_interval = max(5.0, min(interval, 600.0))
        capacity = _coerce_int(data.get("buffer_capacity", 100), 100)
        self.buffer_capacity = max(1, capacity)
        live = _coerce_float(data.get("live_forward_interval", 0.0), 0.0)
        self.live_forward_interval = max(0.0, live)
        fallback = _coerce_float(data.get("surface_ready_fallback", 0.5), 0.5)
        self.surface_ready_fallback = max(0.0, min(fallback, 10.0))
        retention = _coerce_int(data.get("log_retention", 5), 5)
        self.log_retention = max(1, retention)

    def save(self) -> None:
        payload: Dict[str, Any] = {
            "tcp_host": str(self.tcp_host),
            "tcp_port": int(self.tcp_port),
            "api_base_url": str(self.api_base_url),
            "request_timeout": float(self.request_timeout),
            "drain_interval": float(self.drain_interval),
            "buffer_capacity": int(self.buffer_capacity),
            "live_forward_interval": float(self.live_forward_interval),
            "surface_ready_fallback": float(self.surface_ready_fallback),
            "log_retention": int(self.log_retention),
        }
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
