"""Qt-free display helpers for the overlay widgets."""
from __future__ import annotations

from typing import Any, Mapping, Optional

from relay_plugin.frame_parser import coerce_float, coerce_int, normalize_cargo, normalize_city


def format_speed(value: Any) -> str:
    speed = coerce_float(value) or 0.0
    return f"{abs(speed):.0f}"


def format_gear(value: Any) -> str:
    gear = coerce_int(value) or 0
    if gear == 0:
        return "N"
    if gear < 0:
        return f"R{abs(gear)}" if gear < -1 else "R"
    return str(gear)


def format_rpm(value: Any) -> str:
    rpm = coerce_float(value) or 0.0
    return f"{max(0.0, rpm):,.0f} rpm"


def fuel_ratio(fuel: Any, capacity: Any) -> float:
    """Fuel level as 0..1; values outside the tank size are clamped for display."""
    level = coerce_float(fuel) or 0.0
    tank = coerce_float(capacity) or 0.0
    if tank <= 0.0:
        return 0.0
    return max(0.0, min(level / tank, 1.0))


def format_fuel(fuel: Any, capacity: Any) -> str:
    level = max(0.0, coerce_float(fuel) or 0.0)
    tank = max(0.0, coerce_float(capacity) or 0.0)
    return f"{level:.0f} / {tank:.0f} L"


def format_damage(value: Any) -> str:
    damage = coerce_float(value) or 0.0
    return f"{max(0.0, min(damage, 1.0)) * 100:.0f}%"


def format_distance(value: Any) -> str:
    distance = coerce_float(value) or 0.0
    return f"{max(0.0, distance):,.0f} km"


def format_income(value: Any) -> str:
    income = coerce_float(value) or 0.0
    return f"{income:,.0f}"


def job_progress(distance: Any, remaining: Any) -> float:
    total = coerce_float(distance) or 0.0
    left = coerce_float(remaining) or 0.0
    if total <= 0.0:
        return 0.0
    return max(0.0, min(1.0 - left / total, 1.0))


def connection_label(telemetry: Mapping[str, Any]) -> str:
    return "Connected" if telemetry.get("connected") else "Waiting for game..."


def job_summary(job: Mapping[str, Any]) -> Optional[str]:
    """One-line route description, or None when no job is active."""
    if not job.get("active"):
        return None
    cargo = normalize_cargo(job.get("cargo"))
    pickup = normalize_city(job.get("pickup"))
    delivery = normalize_city(job.get("delivery"))
    return f"{cargo}: {pickup} -> {delivery}"
