"""
linepipe/core/logger.py — JSONL structured event log for supervised relays.

EventLogger writes one JSON object per line to ``{log_dir}/linepipe_{date}.jsonl``,
rotating automatically each day. WARN/ERROR are also mirrored to Python
stdlib logging (the ``linepipe`` logger). Thread-safe via threading.Lock, so
relay threads and the supervising thread can share one instance.

Usage::

    from linepipe.core.logger import get_logger
    log = get_logger("logs")
    log.info("supervisor", "process_started", {"pid": 4242})
    log.perf("relay", "relay_finished", latency_ms=1240.5, data={"lines": 22})
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Optional

_stdlib = logging.getLogger("linepipe")

_instance: Optional["EventLogger"] = None
_instance_lock = threading.Lock()


class EventLogger:
    """
    JSONL event logger.

    Fields written per entry:

    .. code-block:: json

        {
          "timestamp_iso": "2026-02-25T01:20:49.123456+00:00",
          "level": "INFO",
          "phase": "supervisor",
          "event": "ready",
          "data": {"line": "Service is up"},
          "latency_ms": 1240.5
        }

    ``latency_ms`` is omitted when ``None``.

    Args:
        log_dir: Directory the daily files are written to. Created on demand.
    """

    def __init__(self, log_dir: Path | str = "logs") -> None:
        self._log_dir = Path(log_dir)
        self._lock = threading.Lock()
        self._file: Optional[IO[str]] = None
        self._current_date: str = ""

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    @property
    def current_path(self) -> Optional[Path]:
        """Path of the file currently being written, or None before the first entry."""
        if not self._current_date:
            return None
        return self._path_for(self._current_date)

    def _path_for(self, date: str) -> Path:
        return self._log_dir / f"linepipe_{date}.jsonl"

    # ──────────────────────────────────────────
    # Public logging methods
    # ──────────────────────────────────────────

    def info(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """
        Write an INFO-level structured log entry.

        Args:
            phase: Subsystem (e.g. ``'relay'``, ``'supervisor'``).
            event: Short event identifier (e.g. ``'process_started'``).
            data: Optional dict of additional key-value context.
        """
        self._write("INFO", phase, event, data)

    def warn(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write a WARN-level entry and mirror it to stdlib logging."""
        self._write("WARN", phase, event, data)
        _stdlib.warning("[%s] %s | %s", phase, event, data or {})

    def error(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write an ERROR-level entry and mirror it to stdlib logging."""
        self._write("ERROR", phase, event, data)
        _stdlib.error("[%s] %s | %s", phase, event, data or {})

    def perf(
        self,
        phase: str,
        event: str,
        latency_ms: float,
        data: Optional[dict] = None,
    ) -> None:
        """
        Write a PERF-level entry for latency tracking.

        Args:
            phase: Subsystem the measurement belongs to.
            event: What was measured (e.g. ``'relay_finished'``).
            latency_ms: Measured latency in milliseconds.
            data: Optional additional context dict.
        """
        self._write("PERF", phase, event, data, latency_ms=latency_ms)

    def flush(self) -> None:
        """Flush the underlying file buffer immediately."""
        with self._lock:
            if self._file and not self._file.closed:
                self._file.flush()

    def close(self) -> None:
        """Close the current file. A later entry reopens it."""
        with self._lock:
            if self._file and not self._file.closed:
                self._file.close()
            self._file = None
            self._current_date = ""

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _write(
        self,
        level: str,
        phase: str,
        event: str,
        data: Optional[dict],
        latency_ms: Optional[float] = None,
    ) -> None:
        """Serialise and append one JSON line, rotating the file if the date changed."""
        now = datetime.now(tz=timezone.utc)
        record: dict[str, Any] = {
            "timestamp_iso": now.isoformat(),
            "level": level,
            "phase": phase,
            "event": event,
            "data": data or {},
        }
        if latency_ms is not None:
            record["latency_ms"] = round(latency_ms, 3)

        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)

        with self._lock:
            self._rotate_if_needed(now)
            if self._file and not self._file.closed:
                self._file.write(line + "\n")
                self._file.flush()

    def _rotate_if_needed(self, now: datetime) -> None:
        """
        Open a new log file if the calendar date has changed.

        Called inside ``self._lock`` — do not call from outside.
        """
        today = now.strftime("%Y-%m-%d")
        if today != self._current_date:
            if self._file and not self._file.closed:
                self._file.close()
            self._current_date = today
            self._log_dir.mkdir(parents=True, exist_ok=True)
            self._file = open(self._path_for(today), "a", encoding="utf-8", buffering=1)


# ──────────────────────────────────────────────────────────────
# Shared accessor
# ──────────────────────────────────────────────────────────────

def get_logger(log_dir: Path | str | None = None) -> EventLogger:
    """
    Return the process-wide :class:`EventLogger`.

    The first call creates the instance (in ``log_dir``, default ``logs``).
    Passing a different ``log_dir`` later replaces it.
    """
    global _instance
    with _instance_lock:
        wanted = Path(log_dir) if log_dir is not None else None
        if _instance is None:
            _instance = EventLogger(wanted or "logs")
        elif wanted is not None and wanted != _instance.log_dir:
            _instance.close()
            _instance = EventLogger(wanted)
        return _instance
