"""Append-only release event log with pluggable sinks."""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiohttp

from .models import ReleaseEvent, utcnow

logger = logging.getLogger(__name__)


class EventBackend(Enum):
    """Supported event sinks."""
    MEMORY = "memory"
    JSONL = "jsonl"
    HTTP = "http"


@dataclass
class SinkError:
    """A sink failure, kept instead of failing the transition."""
    event: ReleaseEvent
    error: str
    timestamp: datetime = field(default_factory=utcnow)


class EventSink(ABC):
    """Destination for release events."""

    @abstractmethod
    def write(self, record: Dict[str, Any]) -> None:
        """Persist or buffer one event record."""

    async def flush(self) -> None:
        """Deliver buffered records, if the sink buffers."""


class MemorySink(EventSink):
    """Keeps records in a list."""

    def __init__(self) -> None:
        self.records: List[Dict[str, Any]] = []

    def write(self, record: Dict[str, Any]) -> None:
        self.records.append(record)


class JsonLinesSink(EventSink):
    """Appends one JSON document per line to a file."""

    def __init__(self, path: Union[Path, str]):
        self.path = Path(path).expanduser()

    def write(self, record: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(json.dumps(record) + "\n")

    def read(self) -> List[Dict[str, Any]]:
        """Read every record. Raises ValueError on a corrupt line."""
        if not self.path.exists():
            return []
        with open(self.path) as f:
            return [json.loads(line) for line in f if line.strip()]


class HttpSink(EventSink):
    """
    Buffers records and pushes them to a Loki-compatible endpoint.

    The buffer keeps at most ``max_buffer`` records; the oldest are dropped
    while the endpoint is unreachable.
    """

    def __init__(
        self,
        endpoint: str,
        labels: Optional[Dict[str, str]] = None,
        timeout_seconds: float = 2.0,
        max_buffer: int = 1000,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.labels = labels or {}
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.max_buffer = max_buffer
        self._buffer: List[Dict[str, Any]] = []
        self.dropped = 0

    def write(self, record: Dict[str, Any]) -> None:
        self._buffer.append(record)
        overflow = len(self._buffer) - self.max_buffer
        if overflow > 0:
            del self._buffer[:overflow]
            self.dropped += overflow
            logger.warning(f"Event buffer full, dropped {overflow} oldest record(s)")

    @property
    def pending(self) -> int:
        return len(self._buffer)

    async def flush(self) -> None:
        if not self._buffer:
            return
        records = self._buffer.copy()
        streams = [{
            "stream": {"app": "canary-controller", **self.labels},
            "values": [
                [str(int(datetime.fromisoformat(r["timestamp"]).timestamp() * 1e9)), json.dumps(r)]
                for r in records
            ],
        }]
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(
                f"{self.endpoint}/loki/api/v1/push",
                json={"streams": streams},
                headers={"Content-Type": "application/json"},
            ) as response:
                response.raise_for_status()
        # records appended during the push stay buffered
        sent = {id(r) for r in records}
        self._buffer = [r for r in self._buffer if id(r) not in sent]


class EventLog:
    """
    Append-only audit trail of transition attempts.

    ``append`` never raises: sink failures go to ``errors``.
    """

    def __init__(self, sink: Optional[EventSink] = None):
        self.sink = sink or MemorySink()
        self._events: List[ReleaseEvent] = []
        self.errors: List[SinkError] = []

    def append(self, event: ReleaseEvent) -> None:
        self._events.append(event)
        try:
            self.sink.write(event.to_dict())
        except Exception as e:
            self._record_failure(event, e)

    async def flush(self) -> None:
        try:
            await self.sink.flush()
        except Exception as e:
            if self._events:
                self._record_failure(self._events[-1], e)

    def _record_failure(self, event: ReleaseEvent, error: Exception) -> None:
        logger.error(f"Event sink {type(self.sink).__name__} failed: {error!r}")
        self.errors.append(SinkError(event=event, error=f"{type(error).__name__}: {error}"))

    def history(self, limit: Optional[int] = None) -> List[ReleaseEvent]:
        events = list(self._events)
        if limit is not None:
            return events[-limit:] if limit > 0 else []
        return events

    def __len__(self) -> int:
        return len(self._events)


def create_sink(
    backend: str,
    path: Optional[str] = None,
    endpoint: str = "",
    labels: Optional[Dict[str, str]] = None,
    timeout_seconds: float = 2.0,
    max_buffer: int = 1000,
) -> EventSink:
    """Build a sink from configuration values."""
    kind = EventBackend(backend)
    if kind == EventBackend.JSONL:
        if not path:
            raise ValueError("jsonl event backend requires a path")
        return JsonLinesSink(path)
    if kind == EventBackend.HTTP:
        return HttpSink(endpoint, labels, timeout_seconds=timeout_seconds, max_buffer=max_buffer)
    return MemorySink()
