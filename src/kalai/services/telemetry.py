"""In-process telemetry: named events fanned out to listeners and sinks."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Mapping, Protocol

LOGGER = logging.getLogger(__name__)

_EVENT_LISTENERS: dict[str, list[Callable[[dict[str, Any]], None]]] = {}
_SINKS: list["TelemetrySink"] = []


@dataclass(slots=True)
class TelemetryEvent:
    """A single emitted telemetry event."""

    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class TelemetrySink(Protocol):
    """Sink interface used to collect telemetry events."""

    def record(self, event: TelemetryEvent) -> None:  # pragma: no cover - protocol stub
        ...


class InMemoryTelemetrySink:
    """Simple ring-buffer telemetry sink for local inspection and tests."""

    def __init__(self, capacity: int = 200) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[TelemetryEvent] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, event: TelemetryEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def tail(self, limit: int | None = None) -> list[TelemetryEvent]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def named(self, name: str) -> list[TelemetryEvent]:
        return [event for event in self.tail() if event.name == name]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


def register_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    """Register a callback invoked whenever :func:`emit` fires *event_name*."""

    if not event_name or callback is None:
        return
    listeners = _EVENT_LISTENERS.setdefault(event_name, [])
    if callback not in listeners:
        listeners.append(callback)


def unregister_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    listeners = _EVENT_LISTENERS.get(event_name)
    if listeners and callback in listeners:
        listeners.remove(callback)


def add_sink(sink: TelemetrySink) -> None:
    if sink not in _SINKS:
        _SINKS.append(sink)


def remove_sink(sink: TelemetrySink) -> None:
    if sink in _SINKS:
        _SINKS.remove(sink)


def reset() -> None:
    """Drop every listener and sink (used by tests)."""

    _EVENT_LISTENERS.clear()
    _SINKS.clear()


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Broadcast a structured telemetry event to in-process listeners."""

    if not event_name:
        return
    event_payload: dict[str, Any] = {"event": event_name}
    if payload:
        event_payload.update(payload)
    listeners = list(_EVENT_LISTENERS.get(event_name, ()))
    for callback in listeners:
        try:
            callback(dict(event_payload))
        except Exception:  # pragma: no cover - listeners must not break emitters
            LOGGER.debug("Telemetry listener %s failed", callback, exc_info=True)
    if _SINKS:
        event = TelemetryEvent(name=event_name, payload=dict(event_payload))
        for sink in list(_SINKS):
            try:
                sink.record(event)
            except Exception:  # pragma: no cover - sinks must not break emitters
                LOGGER.debug("Telemetry sink %s failed", sink, exc_info=True)
    LOGGER.debug("Telemetry emit %s: %s", event_name, event_payload)


__all__ = [
    "TelemetryEvent",
    "TelemetrySink",
    "InMemoryTelemetrySink",
    "register_event_listener",
    "unregister_event_listener",
    "add_sink",
    "remove_sink",
    "reset",
    "emit",
]
