from __future__ import annotations

import io
import json
import logging
import socket
import time

from relay_plugin.overlay_state import OverlayState
from relay_plugin.remote_forwarder import STATUS_OK
from relay_plugin.session_binding import SessionBinding
from relay_plugin import telemetry_server
from relay_plugin.telemetry_server import (
    JOB_CHANNEL,
    TELEMETRY_CHANNEL,
    ConnectionSession,
    TelemetryIngestor,
    _is_loopback,
)


class _DummyForwarder:
    def __init__(self, status: str = STATUS_OK) -> None:
        self.status = status
        self.records = []
        self.buffer = []

    def submit(self, record, on_result=None) -> bool:
        self.records.append(record)
        if on_result is not None:
            on_result(self.status)
        return True


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _line(payload) -> bytes:
    return (json.dumps(payload) + "\n").encode("utf-8")


def _replies(writer: io.BytesIO):
    return [json.loads(line) for line in writer.getvalue().decode("utf-8").splitlines() if line]


def _build(*, logged_in=True, port=0, **kwargs):
    state = OverlayState()
    forwarder = _DummyForwarder()
    binding = SessionBinding()
    if logged_in:
        binding.on_login({"id": "u1", "username": "Driver", "steam_id": "765"}, "tok")
    pushes = []
    ingestor = TelemetryIngestor(
        state,
        forwarder,
        binding,
        push=lambda channel, payload: pushes.append((channel, payload)),
        port=port,
        **kwargs,
    )
    return ingestor, state, forwarder, binding, pushes


def test_telemetry_frame_updates_state_pushes_and_forwards():
    ingestor, state, forwarder, _binding, pushes = _build()
    session = ingestor.open_session(("127.0.0.1", 5000))

    ingestor.handle_line(session, _line({"type": "telemetry", "speed": 61.0, "gear": 4}))

    telemetry = state.telemetry()
    assert telemetry["speed"] == 61.0
    assert telemetry["connected"] is True
    assert pushes[-1][0] == TELEMETRY_CHANNEL
    assert pushes[-1][1]["gear"] == 4
    (record,) = forwarder.records
    assert record.endpoint == "/telemetry/live"
    assert record.data == {"speed": 61.0, "gear": 4, "user_id": "u1"}


def test_malformed_frame_is_inert():
    ingestor, state, forwarder, _binding, pushes = _build()
    session = ingestor.open_session(("127.0.0.1", 5000))
    before = state.snapshot()

    assert ingestor.handle_line(session, b"{broken\n") is None
    assert ingestor.handle_line(session, _line({"type": "unknown"})) is None

    assert state.snapshot() == before
    assert pushes == []
    assert forwarder.records == []
    assert session.frames_rejected == 2


def test_frames_after_malformed_one_still_apply():
    ingestor, state, _forwarder, _binding, _pushes = _build()
    session = ingestor.open_session(("127.0.0.1", 5000))

    ingestor.handle_line(session, b"garbage\n")
    ingestor.handle_line(session, _line({"type": "telemetry", "rpm": 1500}))

    assert state.telemetry()["rpm"] == 1500.0


def test_init_request_reports_identity():
    ingestor, _state, _forwarder, _binding, _pushes = _build()
    writer = io.BytesIO()
    session = ingestor.open_session(("127.0.0.1", 5000), writer)

    ingestor.handle_line(session, _line({"type": "init_request"}))

    (reply,) = _replies(writer)
    assert reply["type"] == "init_response"
    assert reply["verified"] is True
    assert reply["user_id"] == "u1"
    assert reply["steam_id"] == "765"
    assert "tok" not in json.dumps(reply)


def test_init_request_without_login():
    ingestor, _state, _forwarder, _binding, _pushes = _build(logged_in=False)
    writer = io.BytesIO()
    session = ingestor.open_session(("127.0.0.1", 5000), writer)

    ingestor.handle_line(session, _line({"type": "init_request"}))

    assert _replies(writer) == [{"type": "init_response", "verified": False, "error": "Not logged in"}]


def test_heartbeat_ack_reports_buffer_depth():
    ingestor, _state, forwarder, _binding, _pushes = _build()
    forwarder.buffer.extend([object(), object()])
    writer = io.BytesIO()
    session = ingestor.open_session(("127.0.0.1", 5000), writer)

    ingestor.handle_line(session, _line({"type": "heartbeat"}))

    (reply,) = _replies(writer)
    assert reply["type"] == "heartbeat_ack"
    assert reply["online"] is True
    assert reply["buffered"] == 2


def test_job_started_merges_state_and_acknowledges():
    ingestor, state, forwarder, _binding, pushes = _build()
    writer = io.BytesIO()
    session = ingestor.open_session(("127.0.0.1", 5000), writer)

    ingestor.handle_line(
        session,
        _line(
            {
                "type": "job_started",
                "job_id": "J-1",
                "cargo": "promods_steel_coils_v2",
                "pickup_city": "berlin",
                "delivery_city": "promods_city_oslo",
                "planned_distance": 900,
            }
        ),
    )

    job = state.job()
    assert job["active"] is True
    assert job["remainingDistance"] == 900.0
    assert (JOB_CHANNEL, job) in pushes
    (record,) = forwarder.records
    assert record.endpoint == "/telemetry/start"
    assert record.data["cargo_display"] == "Steel Coils"
    assert record.data["delivery_city_display"] == "Oslo"
    assert record.data["mod_source"] == "ProMods"
    assert record.data["user_id"] == "u1"
    assert _replies(writer) == [{"type": "job_saved", "job_id": "J-1", "status": STATUS_OK}]


def test_job_delivered_forwards_delivery_record():
    ingestor, state, forwarder, _binding, _pushes = _build()
    session = ingestor.open_session(("127.0.0.1", 5000), io.BytesIO())
    state.merge_job({"active": True, "remainingDistance": 40.0})

    ingestor.handle_line(session, _line({"type": "job_delivered", "job_id": "J-1", "income": "4200", "flag_reasons": ["x"]}))

    assert state.job()["active"] is False
    assert state.job()["remainingDistance"] == 0.0
    (record,) = forwarder.records
    assert record.endpoint == "/telemetry/deliver"
    assert record.data["income"] == 4200.0
    assert record.data["flag_reasons"] == ["x"]


def test_job_update_is_forwarded_without_ack():
    ingestor, state, forwarder, _binding, _pushes = _build()
    writer = io.BytesIO()
    session = ingestor.open_session(("127.0.0.1", 5000), writer)

    ingestor.handle_line(session, _line({"type": "job_update", "job_id": 3, "remainingDistance": 12}))

    assert state.job()["remainingDistance"] == 12.0
    (record,) = forwarder.records
    assert record.endpoint == "/telemetry/job"
    assert record.data == {"remainingDistance": 12.0, "job_id": "3"}
    assert _replies(writer) == []


def test_live_forwarding_is_throttled():
    clock = _Clock()
    ingestor, state, forwarder, _binding, _pushes = _build(live_forward_interval=1.0, time_source=clock)
    session = ingestor.open_session(("127.0.0.1", 5000))

    for speed in (1, 2, 3):
        ingestor.handle_line(session, _line({"type": "telemetry", "speed": speed}))
    clock.now = 1.5
    ingestor.handle_line(session, _line({"type": "telemetry", "speed": 4}))

    assert [record.data["speed"] for record in forwarder.records] == [1.0, 4.0]
    assert state.telemetry()["speed"] == 4.0


def test_disconnect_marks_state_only_after_last_session():
    ingestor, state, _forwarder, _binding, pushes = _build()
    first = ingestor.open_session(("127.0.0.1", 5000))
    second = ingestor.open_session(("127.0.0.1", 5001))
    ingestor.handle_line(first, _line({"type": "telemetry", "speed": 30}))

    ingestor.close_session(first)
    assert state.connected is True

    ingestor.close_session(second)
    ingestor.close_session(second)
    assert state.connected is False
    assert state.telemetry()["speed"] == 30.0
    assert pushes[-1] == (TELEMETRY_CHANNEL, state.telemetry())


def test_push_failure_does_not_break_ingestion():
    state = OverlayState()

    def _explode(_channel, _payload):
        raise RuntimeError("surface gone")

    ingestor = TelemetryIngestor(state, _DummyForwarder(), SessionBinding(), push=_explode, port=0)
    session = ConnectionSession(peer="test")

    ingestor.handle_line(session, _line({"type": "telemetry", "fuel": 120}))

    assert state.telemetry()["fuel"] == 120.0


def _read_reply(stream, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        line = stream.readline()
        if line:
            return json.loads(line)
    raise AssertionError("no reply received")


def test_socket_round_trip_and_disconnect():
    ingestor, state, _forwarder, _binding, _pushes = _build()
    assert ingestor.start() is True
    try:
        with socket.create_connection(("127.0.0.1", ingestor.port), timeout=2.0) as client:
            stream = client.makefile("rb")
            client.sendall(_line({"type": "telemetry", "speed": 72.0}) + b"not json\n" + _line({"type": "init_request"}))
            reply = _read_reply(stream)
            assert reply["type"] == "init_response"
            assert state.telemetry()["speed"] == 72.0
            stream.close()

        for _ in range(100):
            if not state.connected:
                break
            time.sleep(0.02)
        assert state.connected is False
    finally:
        ingestor.stop()

    assert ingestor.running is False


def test_second_listener_on_same_port_reports_unavailable():
    first, *_rest = _build()
    assert first.start() is True
    try:
        second, *_others = _build(logged_in=False, port=first.port)
        assert second.start() is False
        assert second.running is False
    finally:
        first.stop()


def test_control_frame_first_marks_plugin_connected():
    ingestor, state, _forwarder, _binding, pushes = _build()
    writer = io.BytesIO()
    session = ingestor.open_session(("127.0.0.1", 5000), writer)

    ingestor.handle_line(session, _line({"type": "heartbeat"}))

    assert state.connected is True
    assert pushes[0][0] == TELEMETRY_CHANNEL
    assert pushes[0][1]["connected"] is True
    assert _replies(writer)[0]["type"] == "heartbeat_ack"

    ingestor.handle_line(session, _line({"type": "init_request"}))
    assert len(pushes) == 1


def test_telemetry_frame_without_usable_fields_is_not_forwarded():
    clock = _Clock()
    ingestor, state, forwarder, _binding, pushes = _build(live_forward_interval=1.0, time_source=clock)
    session = ingestor.open_session(("127.0.0.1", 5000))

    ingestor.handle_line(session, _line({"type": "telemetry", "speed": "fast", "gear": None}))

    assert forwarder.records == []
    assert state.connected is True
    assert pushes[-1][0] == TELEMETRY_CHANNEL

    # The throttle window was not used up by the empty frame.
    ingestor.handle_line(session, _line({"type": "telemetry", "speed": 12.0}))
    (record,) = forwarder.records
    assert record.data["speed"] == 12.0


def test_loopback_addresses():
    assert _is_loopback(("127.0.0.1", 5000)) is True
    assert _is_loopback(("::1", 5000, 0, 0)) is True
    assert _is_loopback(("10.0.0.5", 5000)) is False
    assert _is_loopback(("not-an-address", 1)) is False


def test_listener_rejects_non_local_peers(caplog):
    ingestor, *_rest = _build()
    assert ingestor.start() is True
    try:
        server = ingestor._server
        with caplog.at_level(logging.WARNING, logger="Enigma.Relay.Ingestor"):
            assert server.verify_request(None, ("127.0.0.1", 40000)) is True
            assert server.verify_request(None, ("192.168.1.20", 40000)) is False
    finally:
        ingestor.stop()

    assert "192.168.1.20" in caplog.text


def test_oversized_frame_is_skipped_and_stream_recovers(monkeypatch):
    monkeypatch.setattr(telemetry_server, "MAX_FRAME_BYTES", 1024)
    ingestor, state, _forwarder, _binding, _pushes = _build()
    assert ingestor.start() is True
    try:
        with socket.create_connection(("127.0.0.1", ingestor.port), timeout=2.0) as client:
            stream = client.makefile("rb")
            oversized = _line({"type": "telemetry", "speed": 5.0, "padding": "x" * 3000})
            client.sendall(oversized + _line({"type": "telemetry", "speed": 33.0}) + _line({"type": "init_request"}))
            assert _read_reply(stream)["type"] == "init_response"
            stream.close()
    finally:
        ingestor.stop()

    assert state.telemetry()["speed"] == 33.0


def test_listener_restarts_on_same_port_with_connection_open():
    first, *_rest = _build()
    assert first.start() is True
    port = first.port
    client = socket.create_connection(("127.0.0.1", port), timeout=2.0)
    stream = client.makefile("rb")
    try:
        client.sendall(_line({"type": "init_request"}))
        assert _read_reply(stream)["type"] == "init_response"
        first.stop()

        second, *_others = _build(port=port)
        assert second.start() is True
        try:
            assert second.port == port
        finally:
            second.stop()
    finally:
        stream.close()
        client.close()
