from __future__ import annotations

import logging
import os
import tempfile
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOGGER_NAME = "Enigma.Relay"
LOG_DIR_ENV_VAR = "ENIGMA_RELAY_LOG_DIR"
LOG_FILENAME = "enigma-relay.log"


class ReleaseLogLevelFilter(logging.Filter):
    """Drop debug chatter (per-frame telemetry) in release builds."""

    def __init__(self, release_mode: bool) -> None:
        super().__init__()
        self._release_mode = release_mode

    def filter(self, record: logging.LogRecord) -> bool:
        if self._release_mode and record.levelno < logging.INFO:
            return False
        return True


def resolve_logs_dir(log_dir_name: str = "EnigmaRelay") -> Path:
    """
    Resolve the directory to store relay logs.

    Strategy:
    - Use ENIGMA_RELAY_LOG_DIR if set.
    - Fall back to XDG state/cache locations, then `cwd/logs/<log_dir_name>`.
    - Final fallback: tempdir/<log_dir_name>.
    """
    candidates = []

    env_override = os.environ.get(LOG_DIR_ENV_VAR)
    if env_override:
        candidates.append(Path(env_override).expanduser())

    state_home = Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state"))
    cache_home = Path(os.environ.get("XDG_CACHE_HOME", Path.home() / ".cache"))
    candidates.append(state_home / log_dir_name / "logs")
    candidates.append(cache_home / log_dir_name / "logs")
    candidates.append(Path.cwd() / "logs" / log_dir_name)

    for target in candidates:
        try:
            target.mkdir(parents=True, exist_ok=True)
            return target
        except OSError:
            continue

    temp_fallback = Path(tempfile.gettempdir()) / log_dir_name
    temp_fallback.mkdir(parents=True, exist_ok=True)
    return temp_fallback


def build_rotating_file_handler(
    log_dir: Path,
    filename: str,
    *,
    retention: int = 5,
    max_bytes: int = 512 * 1024,
    formatter: Optional[logging.Formatter] = None,
) -> logging.Handler:
    """Construct a rotating file handler with sane defaults."""
    retention = max(1, retention)
    backup_count = max(0, retention - 1)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / filename,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    if formatter is not None:
        handler.setFormatter(formatter)
    return handler


def configure_logging(
    *,
    debug_enabled: bool,
    retention: int = 5,
    log_dir: Optional[Path] = None,
    console: bool = True,
) -> logging.Logger:
    """Attach file (and optionally console) handlers to the relay logger once."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if debug_enabled else logging.INFO)
    if any(getattr(handler, "_relay_handler", False) for handler in logger.handlers):
        return logger
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    handlers = []
    try:
        target_dir = log_dir or resolve_logs_dir()
        handlers.append(build_rotating_file_handler(target_dir, LOG_FILENAME, retention=retention, formatter=formatter))
    except OSError as exc:
        logger.warning("File logging unavailable: %s", exc)
    if console:
        stream = logging.StreamHandler()
        stream.setFormatter(logging.Formatter(f"[%(asctime)s] [{LOGGER_NAME}] %(message)s", "%H:%M:%S"))
        handlers.append(stream)
    release_filter = ReleaseLogLevelFilter(release_mode=not debug_enabled)
    for handler in handlers:
        handler._relay_handler = True  # type: ignore[attr-defined]
        handler.addFilter(release_filter)
        logger.addHandler(handler)
    logger.propagate = False
    return logger
