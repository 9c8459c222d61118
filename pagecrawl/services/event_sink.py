"""Observability collaborator for crawl runs.

Run progress is reported through ``EventSink.emit(level, message, **fields)``.
``LogfireEventSink`` forwards to logfire, ``RecordingEventSink`` keeps a
bounded in-memory copy that is returned with the run result.
"""

from collections import deque
from datetime import datetime, timezone
from typing import Any, Protocol

import logfire

from pagecrawl.constants import MAX_RUN_LOG_EVENTS
from pagecrawl.models.result_models import RunEvent

LEVELS = ("debug", "info", "warning", "error")

# logfire method names per level
_LOGFIRE_METHODS = {
    "debug": "debug",
    "info": "info",
    "warning": "warn",
    "error": "error",
}


class EventSink(Protocol):
    """Receives progress and log events emitted during a run."""

    def emit(self, level: str, message: str, **fields: Any) -> None:
        ...


class LogfireEventSink:
    """Send run events to logfire as structured logs."""

    def __init__(self, run_id: str | None = None):
        self._run_id = run_id

    def emit(self, level: str, message: str, **fields: Any) -> None:
        method = getattr(logfire, _LOGFIRE_METHODS.get(level, "info"))
        if self._run_id is not None:
            fields.setdefault("run_id", self._run_id)
        # Messages are fixed strings; user-provided text travels as attributes.
        method(message.replace("{", "{{").replace("}", "}}"), **fields)


class RecordingEventSink:
    """Keep the most recent events in memory."""

    def __init__(self, max_events: int = MAX_RUN_LOG_EVENTS):
        self._events: deque[RunEvent] = deque(maxlen=max_events)
        self._dropped = 0

    def emit(self, level: str, message: str, **fields: Any) -> None:
        if len(self._events) == self._events.maxlen:
            self._dropped += 1
        self._events.append(
            RunEvent(
                timestamp=datetime.now(timezone.utc),
                level=level if level in LEVELS else "info",
                message=message,
                fields=fields,
            )
        )

    @property
    def events(self) -> list[RunEvent]:
        return list(self._events)

    @property
    def dropped(self) -> int:
        """Events evicted because the log was full."""
        return self._dropped


class CompositeEventSink:
    """Fan out every event to several sinks."""

    def __init__(self, *sinks: EventSink):
        self._sinks = sinks

    def emit(self, level: str, message: str, **fields: Any) -> None:
        for sink in self._sinks:
            sink.emit(level, message, **fields)
