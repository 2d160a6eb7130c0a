"""
Structured events emitted by sshlink.

Every Session operation produces exactly one event describing its outcome,
plus an ERROR event when it fails. Events go to any number of sinks: an
in-memory EventCollector for tests and inspection, and an append-only JSONL
file for later analysis.

Event types:
- CONNECT: socket/handshake initiated, established or failed
- AUTH: authentication attempt result (method, timing)
- EXEC: command executed (exit status, output sizes)
- SHELL: shell capability check
- SCP_SEND / SCP_RECV: file transfer (bytes, final transfer state)
- KEEPALIVE: keepalive configured and sent
- AGENT: agent identities enumerated
- DISCONNECT: transport closed
- ERROR: any failure, with the error's structured context

Passwords and key material are never part of event data.
"""
from __future__ import annotations

import json
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, Iterator, Protocol


class EventType(str, Enum):
    """Kinds of event."""
    CONNECT = "CONNECT"
    AUTH = "AUTH"
    EXEC = "EXEC"
    SHELL = "SHELL"
    SCP_SEND = "SCP_SEND"
    SCP_RECV = "SCP_RECV"
    KEEPALIVE = "KEEPALIVE"
    AGENT = "AGENT"
    DISCONNECT = "DISCONNECT"
    ERROR = "ERROR"


_EVENT_TYPES = frozenset(e.value for e in EventType)


def _now_ms() -> float:
    return time.time() * 1000


@dataclass(frozen=True)
class Event:
    """
    One record of something the library did.

    - event_type: an EventType value
    - timestamp: wall-clock Unix time in milliseconds
    - data: event-specific fields, JSON-serialisable (others are stringified)
    """
    event_type: str
    timestamp: float = field(default_factory=_now_ms)
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.event_type, EventType):
            object.__setattr__(self, "event_type", self.event_type.value)
        assert self.event_type in _EVENT_TYPES, \
            f"Invalid event_type '{self.event_type}'. Must be one of: {sorted(_EVENT_TYPES)}"
        assert self.timestamp > 0, \
            f"Timestamp must be positive, got {self.timestamp}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "data": self.data,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_json(cls, line: str) -> "Event":
        record = json.loads(line)
        return cls(
            event_type=record["event_type"],
            timestamp=record["timestamp"],
            data=record.get("data", {}),
        )


class EventSink(Protocol):
    def emit(self, event: Event) -> None: ...


class EventCollector:
    """
    Keeps events in memory, in emission order.

    A Session emits from both the caller's thread and its loop thread, so
    access is locked.
    """

    def __init__(self) -> None:
        self._events: list[Event] = []
        self._lock = threading.Lock()

    def emit(self, event: Event) -> None:
        assert isinstance(event, Event), f"Expected Event, got {type(event)}"
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[Event]:
        """Snapshot of everything collected so far."""
        with self._lock:
            return list(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def get_by_type(self, event_type: str | EventType) -> list[Event]:
        wanted = EventType(event_type).value
        return [e for e in self.events if e.event_type == wanted]


class JSONLEventWriter:
    """
    Appends events to a file, one JSON object per line.

    Append mode lets several Sessions share one log; each line is flushed as
    it is written.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._file: IO[str] | None = None
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def open(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, "a", encoding="utf-8")

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def emit(self, event: Event) -> None:
        line = event.to_json() + "\n"
        with self._lock:
            assert self._file is not None, "Writer not opened. Call open() first."
            self._file.write(line)
            self._file.flush()

    def __enter__(self) -> "JSONLEventWriter":
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class EventEmitter:
    """
    Builds events and fans them out to the configured sinks.

    Args:
        collector: Optional in-memory sink
        jsonl_path: Optional JSONL file, opened immediately
        **context: Fields added to every event's data (event fields win)

    close() releases the JSONL file; the collector keeps receiving events.
    """

    def __init__(
        self,
        collector: EventCollector | None = None,
        jsonl_path: Path | str | None = None,
        **context: Any,
    ) -> None:
        self._context = context
        self._sinks: list[EventSink] = []
        self._writer: JSONLEventWriter | None = None

        if collector is not None:
            self._sinks.append(collector)
        if jsonl_path:
            self._writer = JSONLEventWriter(jsonl_path)
            self._writer.open()
            self._sinks.append(self._writer)

    def emit(self, event_type: str | EventType, **data: Any) -> Event:
        """Create an event from event_type and data, and send it to every sink."""
        event = Event(event_type=event_type, data={**self._context, **data})
        for sink in self._sinks:
            sink.emit(event)
        return event

    def close(self) -> None:
        if self._writer is not None:
            self._sinks.remove(self._writer)
            self._writer.close()
            self._writer = None

    @contextmanager
    def timed_event(
        self,
        event_type: str | EventType,
        **initial_data: Any,
    ) -> Iterator[dict[str, Any]]:
        """
        Time a block and emit one event when it exits, even by exception.

        The block fills in the yielded dict; duration_ms is added last.

        Usage:
            with emitter.timed_event(EventType.EXEC, command="uname") as data:
                output = await run()
                data["stdout_len"] = len(output)
        """
        started = time.monotonic()
        data = dict(initial_data)
        try:
            yield data
        finally:
            data["duration_ms"] = (time.monotonic() - started) * 1000
            self.emit(event_type, **data)


def read_jsonl_events(path: Path | str) -> list[Event]:
    """Load every event from a JSONL log, skipping blank lines."""
    path = Path(path)
    assert path.exists(), f"JSONL file not found: {path}"

    with open(path, "r", encoding="utf-8") as f:
        return [Event.from_json(line) for line in f if line.strip()]
