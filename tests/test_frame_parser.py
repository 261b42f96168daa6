from __future__ import annotations

import json

import pytest

from relay_plugin.frame_parser import (
    ControlFrame,
    FrameParseError,
    JobFrame,
    TelemetryFrame,
    detect_mod_source,
    normalize_cargo,
    normalize_city,
    parse_frame,
)


def _line(payload) -> bytes:
    return (json.dumps(payload) + "\n").encode("utf-8")


def test_partial_telemetry_keeps_only_present_fields():
    frame = parse_frame(_line({"type": "telemetry", "speed": 52.5, "gear": 3}))

    assert isinstance(frame, TelemetryFrame)
    assert frame.present_fields() == {"speed": 52.5, "gear": 3}


def test_numeric_strings_are_coerced_and_garbage_is_absent():
    frame = parse_frame(_line({"type": "telemetry", "speed": "88.0", "rpm": "fast", "gear": "-1", "fuel": None}))

    assert frame.speed == 88.0
    assert frame.gear == -1
    assert frame.rpm is None
    assert frame.fuel is None
    assert "rpm" not in frame.present_fields()


def test_snake_case_aliases_are_accepted():
    frame = parse_frame(_line({"type": "telemetry", "fuel_capacity": 400, "game_time": "Mon 08:15"}))

    assert frame.fuelCapacity == 400.0
    assert frame.gameTime == "Mon 08:15"


def test_unknown_fields_are_ignored():
    frame = parse_frame(_line({"type": "telemetry", "speed": 10, "turbo": True}))

    assert frame.present_fields() == {"speed": 10.0}


def test_out_of_range_values_pass_through():
    frame = parse_frame(_line({"type": "telemetry", "fuel": 900, "fuelCapacity": 400, "damage": 1.7}))

    assert frame.fuel == 900.0
    assert frame.damage == 1.7


@pytest.mark.parametrize(
    "raw",
    [
        b"not json\n",
        b"[1, 2, 3]\n",
        _line({"speed": 10}),
        _line({"type": ""}),
        _line({"type": "mystery"}),
        b"\xff\xfe\n",
        b"   \n",
    ],
)
def test_malformed_frames_raise_parse_error(raw):
    with pytest.raises(FrameParseError):
        parse_frame(raw)


def test_job_started_implies_active_and_remaining_distance():
    frame = parse_frame(
        _line(
            {
                "type": "job_started",
                "job_id": 42,
                "cargo": "promods_steel_coils_v2",
                "pickup_city": "berlin",
                "delivery_city": "promods_city_oslo",
                "planned_distance": "1200",
                "income": 5400,
            }
        )
    )

    assert isinstance(frame, JobFrame)
    assert frame.kind == "job_started"
    assert frame.job_id == "42"
    assert frame.present_fields() == {
        "active": True,
        "cargo": "promods_steel_coils_v2",
        "pickup": "berlin",
        "delivery": "promods_city_oslo",
        "distance": 1200.0,
        "remainingDistance": 1200.0,
        "income": 5400.0,
    }


def test_job_delivered_and_cancelled_deactivate_job():
    delivered = parse_frame(_line({"type": "job_delivered", "job_id": "a", "active": True}))
    cancelled = parse_frame(_line({"type": "job_cancelled", "job_id": "b"}))

    assert delivered.active is False
    assert delivered.remainingDistance == 0.0
    assert cancelled.active is False


def test_job_update_accepts_string_booleans():
    frame = parse_frame(_line({"type": "job_update", "active": "false", "remaining_distance": "250"}))

    assert frame.present_fields() == {"active": False, "remainingDistance": 250.0}


def test_control_frames_keep_payload():
    frame = parse_frame(_line({"type": "HEARTBEAT", "seq": 1}))

    assert isinstance(frame, ControlFrame)
    assert frame.kind == "heartbeat"
    assert frame.payload["seq"] == 1


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("promods_steel_coils_v2", "Steel Coils"),
        ("tmp_multiplayer_wood_planks", "Wood Planks"),
        ("", "Unknown Cargo"),
        (None, "Unknown Cargo"),
    ],
)
def test_normalize_cargo(raw, expected):
    assert normalize_cargo(raw) == expected


def test_normalize_city():
    assert normalize_city("promods_city_bergen") == "Bergen"
    assert normalize_city("la_rochelle") == "La Rochelle"
    assert normalize_city(None) == "Unknown"


@pytest.mark.parametrize(
    "payload, expected",
    [
        ({"cargo": "promods_fish"}, "ProMods"),
        ({"cargo": "multiplayer_sand"}, "TruckersMP"),
        ({"cargo": "wot_event_cargo"}, "World of Trucks"),
        ({"cargo": "logs", "pickup_city": "Москва"}, "RusMap"),
        ({"cargo": "logs", "pickup_city": "berlin"}, None),
    ],
)
def test_detect_mod_source(payload, expected):
    assert detect_mod_source(payload) == expected
