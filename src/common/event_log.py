"""
Append-only lifecycle event log.

The event log is a plain text file with one "<timestamp> - <message>" line per
entry. It is truncated once when the server starts and only ever appended to
afterwards; the server never reads it back.

Every entry is flushed (and by default fsynced) before the write is reported
as done. Writes run on a dedicated single-worker thread, which keeps them off
the event loop and preserves call order without any extra locking.
"""

import asyncio
import os
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, TextIO

from common.logging import get_logger

logger = get_logger(__name__)


class LoggingError(Exception):
    """Raised internally when an event log entry cannot be persisted."""


def _timestamp() -> str:
    """UTC timestamp with millisecond precision, e.g. 2025-01-01T12:00:00.000Z."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class EventLog:
    """
    Durable, process-wide event log.

    Failures never propagate to callers: they are reported on the diagnostic
    channel (stderr via structlog) and the entry is dropped.
    """

    def __init__(self, path: Path, fsync: bool = True):
        """
        Initialize the event log.

        Args:
            path: File to write entries to
            fsync: Force every entry to storage after flushing
        """
        self.path = Path(path)
        self.fsync = fsync
        self._file: Optional[TextIO] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="event-log")
        self._closed = False

    @property
    def is_open(self) -> bool:
        """Whether entries are currently being persisted."""
        return self._file is not None

    def open(self) -> None:
        """Create or truncate the log file. Called once, before anything is recorded."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.path, "w", encoding="utf-8")
        except OSError as e:
            self._file = None
            self._report(LoggingError(f"Cannot open event log {self.path}: {e}"))
            return

        logger.debug(event="event_log_opened", path=str(self.path))

    def _format(self, message: str) -> str:
        return f"{_timestamp()} - {message}\n"

    def _write(self, line: str) -> None:
        """Write one line and force it to storage (runs on the writer thread)."""
        if self._file is None:
            raise LoggingError("Event log is not open")
        try:
            self._file.write(line)
            self._file.flush()
            if self.fsync:
                os.fsync(self._file.fileno())
        except (OSError, ValueError) as e:
            raise LoggingError(f"Cannot write event log entry: {e}") from e

    def _write_safely(self, line: str) -> bool:
        try:
            self._write(line)
        except LoggingError as e:
            self._report(e)
            return False
        return True

    def _report(self, error: LoggingError) -> None:
        logger.warning(event="event_log_failure", path=str(self.path), error=str(error))

    async def record(self, message: str) -> bool:
        """
        Append a timestamped entry.

        Args:
            message: Entry text

        Returns:
            True if the entry reached storage, False if it was dropped
        """
        line = self._format(message)
        if self._closed:
            self._report(LoggingError(f"Event log closed, dropped entry: {message}"))
            return False

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, self._write_safely, line)
        except RuntimeError as e:
            # Executor already shut down
            self._report(LoggingError(str(e)))
            return False

    def record_sync(self, message: str) -> bool:
        """Append an entry from synchronous code, waiting until it is written."""
        line = self._format(message)
        if self._closed:
            self._report(LoggingError(f"Event log closed, dropped entry: {message}"))
            return False

        try:
            return self._executor.submit(self._write_safely, line).result()
        except RuntimeError as e:
            self._report(LoggingError(str(e)))
            return False

    def close(self) -> None:
        """Wait for pending entries and release the file."""
        if self._closed:
            return

        self._closed = True
        self._executor.shutdown(wait=True)

        if self._file is not None:
            try:
                self._file.close()
            except OSError as e:
                self._report(LoggingError(f"Cannot close event log: {e}"))
            self._file = None
