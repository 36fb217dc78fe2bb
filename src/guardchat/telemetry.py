"""Telemetry for guardchat components.

Components emit dotted event names (``rules.reload``, ``policy.blocked``,
``llm.chat.retry``, ``stream.terminal``, ``chat.turn`` ...) through a
``TelemetrySink``.  The first segment names the emitting component.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

# Events that signal a refused or failed turn rather than routine progress.
WARNING_EVENTS = frozenset({"policy.blocked", "llm.chat.error", "llm.stream.error"})


@dataclass
class TelemetryEvent:
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    timestamp_ms: float = field(default_factory=lambda: time.time() * 1000)

    @property
    def component(self) -> str:
        return self.name.split(".", 1)[0]


@runtime_checkable
class TelemetrySink(Protocol):
    def emit(self, event: TelemetryEvent) -> None: ...


class NoOpTelemetrySink:
    def emit(self, event: TelemetryEvent) -> None:
        return None


class InMemoryTelemetrySink:
    """Keeps every event; used by tests to assert on emitted telemetry."""

    def __init__(self) -> None:
        self.events: list[TelemetryEvent] = []

    def emit(self, event: TelemetryEvent) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [event.name for event in self.events]

    def of(self, name: str) -> list[TelemetryEvent]:
        return [event for event in self.events if event.name == name]


class LoggerTelemetrySink:
    """Writes events to ``logging`` as one line each, with structured extras.

    Events in ``WARNING_EVENTS`` are logged at WARNING, the rest at INFO.
    """

    def __init__(self, logger_name: str = "guardchat.telemetry") -> None:
        self.logger = logging.getLogger(logger_name)

    def emit(self, event: TelemetryEvent) -> None:
        level = logging.WARNING if event.name in WARNING_EVENTS else logging.INFO
        if not self.logger.isEnabledFor(level):
            return
        details = " ".join(f"{key}={value}" for key, value in sorted(event.attributes.items()))
        self.logger.log(
            level,
            "%s %s",
            event.name,
            details,
            extra={
                "event_name": event.name,
                "event_component": event.component,
                "event_timestamp_ms": event.timestamp_ms,
                "event_attributes": event.attributes,
            },
        )
