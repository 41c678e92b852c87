"""
Bounded audit log for deployment operations.

Entries are kept in memory (newest ``capacity`` retained), persisted with the
state snapshot and mirrored to the process logger.
"""

import builtins
import logging
import threading
from collections import deque
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from .logging import current_trace_context
from .models import LogEntry, LogLevel, new_id, utcnow

logger = logging.getLogger(__name__)

_PROCESS_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

DEFAULT_LOG_CAPACITY = 100


class LogSink:
    """Append-only, capacity-bounded audit log."""

    def __init__(
        self,
        capacity: int = DEFAULT_LOG_CAPACITY,
        clock: Callable[[], datetime] = utcnow,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._clock = clock
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def log(self, level: LogLevel | str, message: str, **metadata: Any) -> LogEntry:
        """
        Append an entry.

        ``trace_id``/``span_id`` may be passed as metadata; otherwise the current
        OpenTelemetry span is used, falling back to fresh identifiers.
        """
        level = LogLevel(level)
        trace_id = metadata.pop("trace_id", None)
        span_id = metadata.pop("span_id", None)
        if trace_id is None:
            context = current_trace_context()
            if context:
                trace_id, span_id = context[0], span_id or context[1]

        entry = LogEntry(
            timestamp=self._clock(),
            level=level,
            message=message,
            trace_id=trace_id or new_id(),
            span_id=span_id or new_id(),
            metadata=metadata,
        )
        with self._lock:
            self._entries.append(entry)

        logger.log(_PROCESS_LEVELS[level], message, extra={"audit": metadata} if metadata else None)
        return entry

    def info(self, message: str, **metadata: Any) -> LogEntry:
        return self.log(LogLevel.INFO, message, **metadata)

    def warn(self, message: str, **metadata: Any) -> LogEntry:
        return self.log(LogLevel.WARN, message, **metadata)

    def error(self, message: str, **metadata: Any) -> LogEntry:
        return self.log(LogLevel.ERROR, message, **metadata)

    def debug(self, message: str, **metadata: Any) -> LogEntry:
        return self.log(LogLevel.DEBUG, message, **metadata)

    def entries(self) -> builtins.list[LogEntry]:
        """All retained entries, oldest first."""
        with self._lock:
            return list(self._entries)

    def recent(self, limit: int | None = None) -> builtins.list[LogEntry]:
        """Retained entries, newest first."""
        entries = self.entries()
        entries.reverse()
        return entries if limit is None else entries[:limit]

    def query(
        self,
        level: LogLevel | str | None = None,
        trace_id: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        deployment_id: str | None = None,
    ) -> builtins.list[LogEntry]:
        """Entries matching every given filter, newest first."""
        wanted_level = LogLevel(level) if level is not None else None
        matches = []
        for entry in self.recent():
            if wanted_level is not None and entry.level is not wanted_level:
                continue
            if trace_id is not None and entry.trace_id != trace_id:
                continue
            if start_time is not None and entry.timestamp < start_time:
                continue
            if end_time is not None and entry.timestamp > end_time:
                continue
            if deployment_id is not None and entry.metadata.get("deployment_id") != deployment_id:
                continue
            matches.append(entry)
        return matches

    def restore(self, entries: Iterable[LogEntry]) -> None:
        """Replace the contents with persisted entries (oldest first)."""
        with self._lock:
            self._entries = deque(entries, maxlen=self.capacity)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
