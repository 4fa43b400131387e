"""
Router Telemetry - Structured Events and Tracing
================================================

One RouterEvent is emitted per orchestrator state transition and per circuit
breaker transition. Events fan out to pluggable sinks; transport to an
external collector is a sink's concern.

Sinks:
- LoggingSink: structured log line per event
- JsonlFileSink: append-only JSONL file (collector tails it)
- InMemorySink: bounded buffer, used by tests and the CLI

Sink failures are logged and never propagate into request handling.

Spans are created through the OpenTelemetry API. Without an SDK configured
by the host process they are no-ops.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Optional

from opentelemetry import trace

from prime_router.core.router_config import TelemetryConfig

logger = logging.getLogger(__name__)

tracer = trace.get_tracer("prime_router")


class EventType(Enum):
    """Kinds of telemetry events."""
    REQUEST_STATE = "request_state"
    CIRCUIT_STATE = "circuit_state"
    PROVIDERS_PUBLISHED = "providers_published"


@dataclass
class RouterEvent:
    """A single structured telemetry event."""
    event_type: EventType
    request_id: Optional[str] = None
    state: Optional[str] = None
    from_state: Optional[str] = None
    provider_id: Optional[str] = None
    reason: Optional[str] = None
    latency_ms: Optional[float] = None
    verdict: Optional[str] = None
    score: Optional[float] = None
    error_type: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
        }
        for key in (
            "request_id", "state", "from_state", "provider_id", "reason",
            "verdict", "error_type",
        ):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.latency_ms is not None:
            data["latency_ms"] = round(self.latency_ms, 1)
        if self.score is not None:
            data["score"] = round(self.score, 4)
        if self.attributes:
            data["attributes"] = self.attributes
        return data


# =============================================================================
# SINKS
# =============================================================================

class TelemetrySink(ABC):
    """Destination for router events."""

    @abstractmethod
    def emit(self, event: RouterEvent) -> None:
        ...

    def close(self) -> None:
        pass


class LoggingSink(TelemetrySink):
    """Writes each event as one structured log line."""

    def __init__(self, level: int = logging.DEBUG, name: str = "prime_router.events"):
        self._logger = logging.getLogger(name)
        self._level = level

    def emit(self, event: RouterEvent) -> None:
        if self._logger.isEnabledFor(self._level):
            self._logger.log(self._level, json.dumps(event.to_dict(), default=str, sort_keys=True))


class JsonlFileSink(TelemetrySink):
    """Appends events to a JSONL file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._handle = open(self.path, "a", encoding="utf-8")

    def emit(self, event: RouterEvent) -> None:
        line = json.dumps(event.to_dict(), default=str) + "\n"
        with self._lock:
            self._handle.write(line)
            self._handle.flush()

    def close(self) -> None:
        with self._lock:
            if not self._handle.closed:
                self._handle.close()


class InMemorySink(TelemetrySink):
    """Keeps the most recent events in memory."""

    def __init__(self, max_events: int = 10000):
        self._events: Deque[RouterEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def emit(self, event: RouterEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[RouterEvent]:
        with self._lock:
            return list(self._events)

    def for_request(self, request_id: str) -> List[RouterEvent]:
        return [e for e in self.events if e.request_id == request_id]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


# =============================================================================
# EMITTER
# =============================================================================

class TelemetryEmitter:
    """Fans events out to every registered sink."""

    def __init__(self, sinks: Optional[Iterable[TelemetrySink]] = None, enabled: bool = True):
        self._sinks: List[TelemetrySink] = list(sinks or [])
        self.enabled = enabled
        self._emitted = 0
        self._sink_errors = 0

    @classmethod
    def from_config(cls, config: TelemetryConfig) -> "TelemetryEmitter":
        sinks: List[TelemetrySink] = []
        if config.log_events:
            sinks.append(LoggingSink())
        if config.jsonl_path:
            sinks.append(JsonlFileSink(config.jsonl_path))
        return cls(sinks, enabled=config.enabled)

    def add_sink(self, sink: TelemetrySink) -> None:
        self._sinks.append(sink)

    def emit(self, event: RouterEvent) -> None:
        if not self.enabled:
            return

        self._emitted += 1
        for sink in self._sinks:
            try:
                sink.emit(event)
            except Exception as e:
                self._sink_errors += 1
                logger.warning(f"Telemetry sink {type(sink).__name__} failed: {e}")

    def close(self) -> None:
        for sink in self._sinks:
            try:
                sink.close()
            except Exception as e:
                logger.warning(f"Failed to close telemetry sink {type(sink).__name__}: {e}")

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "sinks": [type(s).__name__ for s in self._sinks],
            "events_emitted": self._emitted,
            "sink_errors": self._sink_errors,
        }
