"""User-visible event log fed from the module loggers."""

import logging
from datetime import datetime
from typing import Callable

from const import LogEntry


class EventLog:
    """Append-only list of log entries."""

    def __init__(self, on_append: Callable[[LogEntry], None] | None = None) -> None:
        self._entries: list[LogEntry] = []
        self._on_append = on_append

    def append(self, message: str, timestamp: datetime | None = None) -> LogEntry:
        """Append a message and return the new entry."""
        entry = LogEntry(message, timestamp or datetime.now())
        self._entries.append(entry)
        if self._on_append:
            self._on_append(entry)
        return entry

    @property
    def entries(self) -> tuple[LogEntry, ...]:
        """Return all entries in insertion order."""
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class EventLogHandler(logging.Handler):
    """Logging handler copying records into an :class:`EventLog`."""

    def __init__(self, event_log: EventLog, level: int = logging.INFO) -> None:
        super().__init__(level)
        self._event_log = event_log
        self.setFormatter(logging.Formatter("[%(asctime)s] %(message)s", "%H:%M:%S"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._event_log.append(
                self.format(record), datetime.fromtimestamp(record.created)
            )
        except Exception:  # pylint: disable=broad-exception-caught
            self.handleError(record)
