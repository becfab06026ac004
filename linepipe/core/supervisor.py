"""
linepipe/core/supervisor.py — Run a child process and relay its output.

SupervisedProcess starts a command, relays its stdout (and by default its
stderr) to a destination stream on a daemon thread, and exposes a "ready"
latch that trips the first time a configured pattern appears in the output::

    proc = SupervisedProcess(
        ["my-service", "--port", "1111"],
        destination=sys.stdout.buffer,
        settings=RelaySettings(prefix="[service] ", close_destination=False),
        ready_pattern=r"Service is (up|running)",
    )
    proc.start()
    if proc.wait_ready(timeout=30):
        run_the_next_thing()
    proc.wait()
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from typing import IO, Iterable, Optional, Sequence

from linepipe.core.config import (
    ErrorCallback,
    LineCallback,
    PatternLike,
    RelayDraft,
    RelaySettings,
)
from linepipe.core.logger import EventLogger
from linepipe.core.relay import Relay, RelayError, RelayHandle, RelayOutcome

logger = logging.getLogger(__name__)


class SupervisedProcess:
    """
    A child process whose output is piped through a :class:`Relay`.

    Args:
        argv: Command and arguments passed to :class:`subprocess.Popen`.
        destination: Binary stream the decorated output is written to.
        settings: Decoration, encoding and flush settings for the relay.
        ready_pattern: Optional regex; :meth:`wait_ready` returns once a line matches it.
        hooks: Extra ``(pattern, callback)`` pairs, evaluated before the ready hook.
        on_error: Relay error callback.
        merge_stderr: Relay stderr together with stdout. Otherwise stderr is inherited.
        event_log: Optional :class:`EventLogger` receiving lifecycle events.
        thread_name: Name of the relay thread.
    """

    #: Seconds between checks of the relay thread while waiting for readiness.
    _POLL_S: float = 0.05

    def __init__(
        self,
        argv: Sequence[str],
        destination: IO[bytes],
        settings: Optional[RelaySettings] = None,
        ready_pattern: Optional[PatternLike] = None,
        hooks: Iterable[tuple[PatternLike, LineCallback]] = (),
        on_error: Optional[ErrorCallback] = None,
        merge_stderr: bool = True,
        event_log: Optional[EventLogger] = None,
        thread_name: str = "relay-thread",
    ) -> None:
        if not argv:
            raise ValueError("argv must name a command")
        self._argv = list(argv)
        self._destination = destination
        self._settings = settings or RelaySettings()
        self._ready_pattern = ready_pattern
        self._hooks = list(hooks)
        self._on_error = on_error
        self._merge_stderr = merge_stderr
        self._event_log = event_log
        self._thread_name = thread_name

        self._ready = threading.Event()
        self._ready_line: Optional[str] = None
        self._proc: Optional[subprocess.Popen] = None
        self._handle: Optional[RelayHandle] = None
        self._t_start = 0.0

    # ──────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────

    def start(self) -> None:
        """
        Launch the child process and start relaying its output.

        Raises:
            RuntimeError: If the process was already started.
            OSError: If the command cannot be executed.
        """
        if self._proc is not None:
            raise RuntimeError("Process is already started")

        self._t_start = time.monotonic()
        self._proc = subprocess.Popen(
            self._argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT if self._merge_stderr else None,
        )
        logger.info("Started %s (pid=%d)", self._argv[0], self._proc.pid)
        self._log("info", "process_started", {"argv": self._argv, "pid": self._proc.pid})

        draft = (
            RelayDraft(self._proc.stdout, self._destination)
            .apply_settings(self._settings)
            .set_on_error(self._relay_error)
        )
        for pattern in self._settings.hooks:
            draft.add_hook(pattern, self._log_match(pattern))
        for pattern, callback in self._hooks:
            draft.add_hook(pattern, callback)
        if self._ready_pattern is not None:
            draft.add_hook(self._ready_pattern, self._mark_ready)

        self._handle = Relay(draft.build()).spawn(self._thread_name)

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the ready pattern has been seen.

        Also returns early once the relay has finished, since no more lines
        can arrive after that.

        Returns:
            True if it was seen, False on timeout, when the output ended
            without a match, or if no ready pattern is set.
        """
        if self._ready_pattern is None or self._handle is None:
            return False
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._ready.wait(self._POLL_S):
            if not self._handle.is_alive():
                return self._ready.is_set()
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning("Ready pattern not seen within %ss", timeout)
                self._log("warn", "ready_timeout", {"timeout_s": timeout})
                return False
        return True

    def wait(self, timeout: Optional[float] = None) -> int:
        """
        Wait for the child to exit and the relay to drain its output.

        Returns:
            The child's exit code.

        Raises:
            RuntimeError: If the process was never started.
            subprocess.TimeoutExpired: If the child does not exit in time.
        """
        if self._proc is None or self._handle is None:
            raise RuntimeError("Process was never started")
        returncode = self._proc.wait(timeout)
        outcome = self._handle.join(timeout)
        elapsed_ms = (time.monotonic() - self._t_start) * 1000.0
        self._log_perf(
            "relay_finished",
            elapsed_ms,
            {
                "returncode": returncode,
                "lines": outcome.lines if outcome else None,
                "ok": outcome.ok if outcome else None,
            },
        )
        return returncode

    def terminate(self) -> None:
        """Terminate the child. Its stdout closes and the relay ends at end of stream."""
        if self._proc is not None and self._proc.poll() is None:
            logger.info("Terminating pid=%d", self._proc.pid)
            self._proc.terminate()

    # ──────────────────────────────────────────
    # State
    # ──────────────────────────────────────────

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc is not None else None

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    @property
    def ready_line(self) -> Optional[str]:
        """The first line that matched the ready pattern."""
        return self._ready_line

    @property
    def outcome(self) -> Optional[RelayOutcome]:
        """Outcome of the relay, or None while it is still running."""
        return self._handle.outcome if self._handle is not None else None

    # ──────────────────────────────────────────
    # Hook callbacks (run on the relay thread)
    # ──────────────────────────────────────────

    def _mark_ready(self, line: str) -> None:
        if self._ready.is_set():
            return
        self._ready_line = line
        self._ready.set()
        elapsed_ms = (time.monotonic() - self._t_start) * 1000.0
        logger.info("Ready after %.0fms: %s", elapsed_ms, line)
        self._log_perf("ready", elapsed_ms, {"line": line})

    def _log_match(self, pattern: str) -> LineCallback:
        def _callback(line: str) -> None:
            logger.info("Pattern %r matched: %s", pattern, line)
            self._log("info", "hook_matched", {"pattern": pattern, "line": line})
        return _callback

    def _relay_error(self, error: RelayError) -> None:
        logger.warning("Relay for pid=%s failed: %s", self.pid, error)
        self._log("error", "relay_error", {"kind": error.kind.value, "error": str(error)})
        if self._on_error is not None:
            self._on_error(error)

    def _log(self, level: str, event: str, data: dict) -> None:
        if self._event_log is not None:
            getattr(self._event_log, level)("supervisor", event, data)

    def _log_perf(self, event: str, elapsed_ms: float, data: dict) -> None:
        if self._event_log is not None:
            self._event_log.perf("supervisor", event, elapsed_ms, data)
