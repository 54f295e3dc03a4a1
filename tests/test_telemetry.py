"""Tests for the services.telemetry helpers."""

from __future__ import annotations

from kalai.services import telemetry as telemetry_service


def test_register_event_listener_receives_payload() -> None:
    received: list[dict[str, object]] = []

    def _listener(payload: dict[str, object]) -> None:
        received.append(payload)

    telemetry_service.register_event_listener("validation.pass", _listener)
    telemetry_service.register_event_listener("validation.pass", _listener)
    telemetry_service.emit("validation.pass", {"file": "a.py", "issues": 2})

    assert received == [{"event": "validation.pass", "file": "a.py", "issues": 2}]


def test_unregistered_listener_stops_receiving() -> None:
    received: list[dict[str, object]] = []
    telemetry_service.register_event_listener("request.state", received.append)
    telemetry_service.unregister_event_listener("request.state", received.append)

    telemetry_service.emit("request.state", {"state": "queued"})

    assert received == []


def test_emit_handles_missing_listeners() -> None:
    # Should not raise even when no listeners are registered.
    telemetry_service.emit("nonexistent-event", {"value": 1})
    telemetry_service.emit("", {"value": 1})


def test_listener_receives_a_copy() -> None:
    seen: list[dict[str, object]] = []

    def _mutating(payload: dict[str, object]) -> None:
        payload["mutated"] = True

    telemetry_service.register_event_listener("evt", _mutating)
    telemetry_service.register_event_listener("evt", seen.append)
    telemetry_service.emit("evt")

    assert seen == [{"event": "evt"}]


def test_in_memory_sink_records_events(telemetry_sink: telemetry_service.InMemoryTelemetrySink) -> None:
    telemetry_service.emit("a", {"n": 1})
    telemetry_service.emit("b", {"n": 2})
    telemetry_service.emit("a", {"n": 3})

    assert len(telemetry_sink) == 3
    assert [event.payload["n"] for event in telemetry_sink.named("a")] == [1, 3]
    assert [event.name for event in telemetry_sink.tail(1)] == ["a"]


def test_sink_capacity_is_bounded() -> None:
    sink = telemetry_service.InMemoryTelemetrySink(capacity=3)
    assert sink.capacity == 10

    for index in range(15):
        sink.record(telemetry_service.TelemetryEvent(name="e", payload={"i": index}))

    assert len(sink) == 10
    assert sink.tail()[0].payload["i"] == 5


def test_removed_sink_stops_recording() -> None:
    sink = telemetry_service.InMemoryTelemetrySink()
    telemetry_service.add_sink(sink)
    telemetry_service.remove_sink(sink)

    telemetry_service.emit("evt")

    assert len(sink) == 0
