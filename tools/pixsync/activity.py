"""Dashboard activity log – mirrors pipeline events to ``logging`` and ``crawler_logs``."""

from __future__ import annotations

import logging
import time
from typing import Protocol

import psycopg

logger = logging.getLogger("pixsync.activity")

LEVELS = ("info", "success", "warning", "error")
_PY_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class LogStore(Protocol):
    def insert_log(self, level: str, message: str, details: str | None = None) -> None: ...

    def trim_logs(self, keep: int) -> int: ...

    def rollback(self) -> None: ...


class ActivityLog:
    """Writes activity entries for the dashboard log viewer.

    Only the newest ``retention`` rows are kept; trimming runs at most once
    per ``trim_interval`` seconds.  A failed write never interrupts a crawl.
    """

    def __init__(self, store: LogStore | None, *, retention: int = 50, trim_interval: float = 60.0) -> None:
        self.store = store
        self.retention = retention
        self.trim_interval = trim_interval
        self._last_trim = 0.0

    def log(self, level: str, message: str, details: str | None = None) -> None:
        if level not in LEVELS:
            raise ValueError(f"Unknown log level: {level}")
        if details:
            logger.log(_PY_LEVELS[level], "[%s] %s (%s)", level.upper(), message, details)
        else:
            logger.log(_PY_LEVELS[level], "[%s] %s", level.upper(), message)
        if self.store is None:
            return
        try:
            self.store.insert_log(level, message, details)
            self._maybe_trim()
        except psycopg.Error as exc:
            logger.warning("Could not save activity log entry: %s", exc)
            self._recover()

    def _recover(self) -> None:
        try:
            self.store.rollback()  # type: ignore[union-attr]
        except psycopg.Error as exc:
            logger.warning("Rollback after failed log write also failed: %s", exc)

    def _maybe_trim(self) -> None:
        now = time.monotonic()
        if self._last_trim and now - self._last_trim < self.trim_interval:
            return
        self._last_trim = now
        removed = self.store.trim_logs(self.retention)  # type: ignore[union-attr]
        if removed:
            logger.debug("Trimmed %d old activity log rows", removed)

    def info(self, message: str, details: str | None = None) -> None:
        self.log("info", message, details)

    def success(self, message: str, details: str | None = None) -> None:
        self.log("success", message, details)

    def warning(self, message: str, details: str | None = None) -> None:
        self.log("warning", message, details)

    def error(self, message: str, details: str | None = None) -> None:
        self.log("error", message, details)
