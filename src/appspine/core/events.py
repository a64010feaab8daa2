"""Event sink for human-readable state-transition notifications.

Why This Module Exists
----------------------
Operators follow an Application through its events ("Revised", "Applied",
"RenderFailed").  Emission is fire-and-forget: a slow or broken sink must
never hold up a reconcile, so every recorder call goes through
:func:`emit_event`, which logs and swallows sink failures, and production
wiring wraps the real sink in :class:`AsyncEventRecorder`, which hands events
to a background thread through a bounded queue and drops them when full.

Recorders
---------
MemoryEventRecorder   keeps events in memory, queryable by object name
LoggingEventRecorder  writes events to the structured log
AsyncEventRecorder    non-blocking wrapper around any recorder
"""

from __future__ import annotations

import queue
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol, runtime_checkable

from appspine.core.logging import get_logger

logger = get_logger(__name__)

__all__ = [
    "EventType",
    "ObjectReference",
    "Event",
    "EventRecorder",
    "MemoryEventRecorder",
    "LoggingEventRecorder",
    "AsyncEventRecorder",
    "emit_event",
]


class EventType(str, Enum):
    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass(frozen=True)
class ObjectReference:
    name: str
    namespace: str
    kind: str = "Application"


@dataclass(frozen=True)
class Event:
    """One emitted event."""

    name: str
    namespace: str
    event_type: EventType
    reason: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@runtime_checkable
class EventRecorder(Protocol):
    def event(
        self,
        ref: ObjectReference,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> None: ...


class MemoryEventRecorder:
    """Thread-safe in-memory recorder.

    Example::

        recorder = MemoryEventRecorder()
        recorder.event(ObjectReference("web", "default"), EventType.NORMAL, "Revised", "web-v1")
        recorder.reasons_for("web")  # ["Revised"]
    """

    def __init__(self) -> None:
        self._events: dict[str, list[Event]] = defaultdict(list)
        self._lock = threading.Lock()

    def event(
        self,
        ref: ObjectReference,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> None:
        ev = Event(
            name=ref.name,
            namespace=ref.namespace,
            event_type=event_type,
            reason=reason,
            message=message,
        )
        with self._lock:
            self._events[ref.name].append(ev)

    def get_events_with_name(self, name: str) -> list[Event]:
        """Events recorded for *name*, oldest first.

        Raises:
            KeyError: If nothing was recorded for that name.
        """
        with self._lock:
            if name not in self._events:
                raise KeyError(f"no events recorded for {name!r}")
            return list(self._events[name])

    def reasons_for(self, name: str) -> list[str]:
        with self._lock:
            return [e.reason for e in self._events.get(name, [])]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class LoggingEventRecorder:
    """Writes each event as a structured log line."""

    def event(
        self,
        ref: ObjectReference,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> None:
        log = logger.warning if event_type == EventType.WARNING else logger.info
        log(
            "event.recorded",
            object=f"{ref.namespace}/{ref.name}",
            kind=ref.kind,
            event_type=event_type.value,
            reason=reason,
            message=message,
        )


class AsyncEventRecorder:
    """Non-blocking wrapper: events are delivered by a daemon thread.

    ``event()`` never blocks.  When the buffer is full the event is dropped
    and counted in :attr:`dropped`.
    """

    def __init__(self, sink: EventRecorder, maxsize: int = 1000):
        self._sink = sink
        self._queue: queue.Queue[tuple[ObjectReference, EventType, str, str] | None] = (
            queue.Queue(maxsize=maxsize)
        )
        self.dropped = 0
        self._lock = threading.Lock()
        self._closed = False
        self._thread = threading.Thread(
            target=self._drain, name="event-recorder", daemon=True
        )
        self._thread.start()

    def event(
        self,
        ref: ObjectReference,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> None:
        if self._closed:
            logger.debug("event.recorder_closed", object=ref.name, reason=reason)
            return
        try:
            self._queue.put_nowait((ref, event_type, reason, message))
        except queue.Full:
            with self._lock:
                self.dropped += 1
            logger.debug("event.dropped", object=ref.name, reason=reason)

    def flush(self) -> None:
        """Block until every buffered event has been delivered."""
        self._queue.join()

    def close(self) -> None:
        """Deliver what is buffered, then stop the drain thread."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._queue.put(None)
        self._thread.join(timeout=5)

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                emit_event(self._sink, *item)
            finally:
                self._queue.task_done()


def emit_event(
    recorder: EventRecorder | None,
    ref: ObjectReference,
    event_type: EventType,
    reason: str,
    message: str,
) -> None:
    """Deliver one event; sink failures are logged, never raised."""
    if recorder is None:
        return
    try:
        recorder.event(ref, event_type, reason, message)
    except Exception as e:
        logger.warning(
            "event.sink_error",
            object=f"{ref.namespace}/{ref.name}",
            reason=reason,
            error=str(e),
        )
