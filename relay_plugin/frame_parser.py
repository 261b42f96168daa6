"""Decode newline-delimited plugin frames into canonical telemetry/job records."""
from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional, Union


TELEMETRY_TYPES = {"telemetry"}
JOB_TYPES = {"job_update", "job_started", "job_delivered", "job_cancelled"}
CONTROL_TYPES = {"init_request", "heartbeat", "shutdown"}

_TELEMETRY_ALIASES = {
    "speed": ("speed",),
    "gear": ("gear",),
    "rpm": ("rpm",),
    "fuel": ("fuel",),
    "fuelCapacity": ("fuelCapacity", "fuel_capacity"),
    "damage": ("damage",),
    "gameTime": ("gameTime", "game_time"),
}

_JOB_ALIASES = {
    "active": ("active",),
    "cargo": ("cargo",),
    "pickup": ("pickup", "pickup_city"),
    "delivery": ("delivery", "delivery_city"),
    "distance": ("distance", "planned_distance"),
    "remainingDistance": ("remainingDistance", "remaining_distance"),
    "income": ("income",),
}

_CARGO_PREFIXES = re.compile(r"^(promods_|tmp_|wot_|rusmap_)", re.IGNORECASE)
_CARGO_MULTIPLAYER = re.compile(r"multiplayer_", re.IGNORECASE)
_CARGO_VERSION_SUFFIX = re.compile(r"_v\d+$", re.IGNORECASE)
_CITY_PREFIXES = re.compile(r"^(promods_city_|rusmap_)", re.IGNORECASE)
_CYRILLIC = re.compile("[А-Яа-яЁё]")


class FrameParseError(ValueError):
    """Raised when a frame cannot be turned into a telemetry, job or control record."""


@dataclass(frozen=True)
class TelemetryFrame:
    """Partial truck telemetry update; ``None`` means the field was absent."""

    speed: Optional[float] = None
    gear: Optional[int] = None
    rpm: Optional[float] = None
    fuel: Optional[float] = None
    fuelCapacity: Optional[float] = None
    damage: Optional[float] = None
    gameTime: Optional[str] = None

    def present_fields(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


@dataclass(frozen=True)
class JobFrame:
    """Partial job-state update plus the raw payload used for remote forwarding."""

    kind: str
    active: Optional[bool] = None
    cargo: Optional[str] = None
    pickup: Optional[str] = None
    delivery: Optional[str] = None
    distance: Optional[float] = None
    remainingDistance: Optional[float] = None
    income: Optional[float] = None
    job_id: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    _STATE_FIELDS = ("active", "cargo", "pickup", "delivery", "distance", "remainingDistance", "income")

    def present_fields(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self._STATE_FIELDS if getattr(self, name) is not None}


@dataclass(frozen=True)
class ControlFrame:
    kind: str
    payload: Mapping[str, Any] = field(default_factory=dict)


ParsedFrame = Union[TelemetryFrame, JobFrame, ControlFrame]


def parse_frame(raw: Union[bytes, str]) -> ParsedFrame:
    """Parse one frame (a single line, delimiter already stripped)."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FrameParseError(f"frame is not valid UTF-8: {exc}") from exc
    text = raw.strip()
    if not text:
        raise FrameParseError("empty frame")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise FrameParseError(f"invalid JSON: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise FrameParseError("frame is not a JSON object")

    frame_type = payload.get("type")
    if not isinstance(frame_type, str) or not frame_type.strip():
        raise FrameParseError("frame has no type discriminator")
    frame_type = frame_type.strip().lower()

    if frame_type in TELEMETRY_TYPES:
        return _parse_telemetry(payload)
    if frame_type in JOB_TYPES:
        return _parse_job(frame_type, payload)
    if frame_type in CONTROL_TYPES:
        return ControlFrame(kind=frame_type, payload=dict(payload))
    raise FrameParseError(f"unknown frame type {frame_type!r}")


def _parse_telemetry(payload: Mapping[str, Any]) -> TelemetryFrame:
    values: Dict[str, Any] = {}
    for name, aliases in _TELEMETRY_ALIASES.items():
        raw_value = _first_present(payload, aliases)
        if raw_value is None:
            continue
        if name == "gear":
            coerced = coerce_int(raw_value)
        elif name == "gameTime":
            coerced = coerce_text(raw_value)
        else:
            coerced = coerce_float(raw_value)
        if coerced is not None:
            values[name] = coerced
    return TelemetryFrame(**values)


def _parse_job(kind: str, payload: Mapping[str, Any]) -> JobFrame:
    values: Dict[str, Any] = {}
    for name, aliases in _JOB_ALIASES.items():
        raw_value = _first_present(payload, aliases)
        if raw_value is None:
            continue
        if name == "active":
            coerced = coerce_bool(raw_value)
        elif name in {"cargo", "pickup", "delivery"}:
            coerced = coerce_text(raw_value)
        else:
            coerced = coerce_float(raw_value)
        if coerced is not None:
            values[name] = coerced

    # Lifecycle frames imply the job's activity even when the plugin omits it.
    if kind == "job_started":
        values.setdefault("active", True)
        if "distance" in values:
            values.setdefault("remainingDistance", values["distance"])
    elif kind == "job_delivered":
        values["active"] = False
        values["remainingDistance"] = 0.0
    elif kind == "job_cancelled":
        values["active"] = False

    job_id = payload.get("job_id")
    return JobFrame(
        kind=kind,
        job_id=None if job_id is None else str(job_id),
        raw=dict(payload),
        **values,
    )


def _first_present(payload: Mapping[str, Any], aliases) -> Any:
    for key in aliases:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def coerce_float(value: Any) -> Optional[float]:
    """Numbers and numeric strings become floats; anything else is absent."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def coerce_int(value: Any) -> Optional[int]:
    numeric = coerce_float(value)
    if numeric is None:
        return None
    return int(numeric)


def coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        token = value.strip().lower()
        if token in {"1", "true", "yes", "on"}:
            return True
        if token in {"0", "false", "no", "off"}:
            return False
    return None


def coerce_text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or isinstance(value, (dict, list)):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    return None


# Display normalization ------------------------------------------------------


def _title_words(text: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in text.split(" "))


def normalize_cargo(raw_name: Optional[str]) -> str:
    """Turn internal cargo ids like ``promods_steel_coils_v2`` into display names."""
    if not raw_name:
        return "Unknown Cargo"
    normalized = raw_name.lower()
    normalized = _CARGO_PREFIXES.sub("", normalized)
    normalized = _CARGO_MULTIPLAYER.sub("", normalized)
    normalized = _CARGO_VERSION_SUFFIX.sub("", normalized)
    return _title_words(normalized.replace("_", " "))


def normalize_city(raw_name: Optional[str]) -> str:
    if not raw_name:
        return "Unknown"
    normalized = _CITY_PREFIXES.sub("", raw_name.lower())
    return _title_words(normalized.replace("_", " "))


def detect_mod_source(payload: Mapping[str, Any]) -> Optional[str]:
    cargo = str(payload.get("cargo") or "").lower()
    pickup = str(payload.get("pickup_city") or "").lower()
    delivery = str(payload.get("delivery_city") or "").lower()

    if "promods" in cargo or "promods" in pickup or "promods" in delivery:
        return "ProMods"
    if "tmp" in cargo or "multiplayer" in cargo:
        return "TruckersMP"
    if "wot" in cargo or "event" in cargo:
        return "World of Trucks"
    if _CYRILLIC.search(pickup) or _CYRILLIC.search(delivery):
        return "RusMap"
    return None
