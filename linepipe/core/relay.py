"""
linepipe/core/relay.py — The line relay (pump loop) and its worker thread.

A :class:`Relay` reads text from its source one line at a time, writes each
line to its destination surrounded by the configured prefix and suffix, and
runs every matching hook inline before reading the next line::

    source ─► decode ─► prefix + line + suffix + os.linesep ─► encode ─► destination
                  └─► hooks (same thread, after the line is written)

Hooks are part of the critical path: a slow or blocking hook delays every
line after it. Keep them short or hand work off to another thread.

There is no cancellation API. Closing the source (or terminating the process
that feeds it) ends the relay.
"""

from __future__ import annotations

import codecs
import io
import logging
import os
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import IO, Iterator, Optional, Union

from linepipe.core.config import RelayConfig, RelayDraft

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """What went wrong in a failed relay run."""

    READ = "read"
    WRITE = "write"
    ENCODING = "encoding"
    HOOK = "hook"
    CLEANUP = "cleanup"


class RelayError(Exception):
    """
    A terminal relay failure.

    The underlying exception (``OSError``, ``UnicodeError``, a hook's own
    exception, ...) is chained as ``__cause__``.

    Attributes:
        kind: The :class:`ErrorKind` of the failure.
    """

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.args[0]}"


@dataclass(frozen=True)
class RelayOutcome:
    """
    Result of one relay run.

    Attributes:
        lines: Number of lines written to the destination.
        error: The failure that ended the run, or None if the source ended normally.
    """

    lines: int = 0
    error: Optional[RelayError] = None

    @property
    def ok(self) -> bool:
        """True when the run completed without a failure."""
        return self.error is None


@contextmanager
def _io_errors(kind: ErrorKind, action: str) -> Iterator[None]:
    """Translate exceptions raised by stream operations inside the block into RelayError."""
    try:
        yield
    except UnicodeError as exc:
        raise RelayError(ErrorKind.ENCODING, f"{action} failed: {exc}") from exc
    except Exception as exc:  # noqa: BLE001
        # closed files raise ValueError; unsuitable stream objects raise
        # AttributeError or TypeError
        raise RelayError(kind, f"{action} failed: {exc}") from exc


class _LineReader:
    """
    Splits a binary source into decoded lines.

    Bytes are decoded incrementally as they arrive, so lines are handed out
    as soon as their terminator is read. ``\\n``, ``\\r\\n`` and ``\\r`` all
    end a line. When a chunk holds malformed bytes, the text decoded before
    them is still returned line by line and the decode error is raised once
    that text is used up.

    Only ``read`` is required of the source; ``read1`` is preferred when
    present so a pipe returns whatever is available instead of blocking for
    a full chunk.
    """

    _CHUNK = io.DEFAULT_BUFFER_SIZE
    _TERMINATOR = re.compile(r"\r\n|\r|\n")

    def __init__(self, source: IO[bytes], encoding: str) -> None:
        self._read = getattr(source, "read1", None) or source.read
        self._decoder = codecs.getincrementaldecoder(encoding)("strict")
        self._text = ""
        self._eof = False
        self._error: Optional[UnicodeDecodeError] = None

    def readline(self) -> Optional[str]:
        """Return the next line without its terminator, or None at end of stream."""
        while True:
            line = self._take_line()
            if line is not None:
                return line
            if self._error is not None:
                raise self._error
            if self._eof:
                if self._text:
                    line, self._text = self._text, ""
                    return line
                return None
            self._fill()

    def _take_line(self) -> Optional[str]:
        match = self._TERMINATOR.search(self._text)
        if match is None:
            return None
        # a trailing "\r" may be the first half of "\r\n", unless nothing more can be read
        more = not self._eof and self._error is None
        if match.group() == "\r" and match.end() == len(self._text) and more:
            return None
        line = self._text[:match.start()]
        self._text = self._text[match.end():]
        return line

    def _fill(self) -> None:
        chunk = self._read(self._CHUNK)
        if not chunk:
            self._eof = True
        pending = len(self._decoder.getstate()[0])
        try:
            self._text += self._decoder.decode(chunk or b"", final=self._eof)
        except UnicodeDecodeError as exc:
            # a failed decode leaves the decoder state untouched, and the
            # error offset counts from the start of its pending bytes
            good = chunk[:max(exc.start - pending, 0)] if chunk else b""
            if good:
                self._text += self._decoder.decode(good)
            self._error = exc


class _LineWriter:
    """
    Encodes text into a buffer and writes it to the destination in blocks.

    Bytes reach the destination when the buffer holds ``capacity`` bytes,
    on :meth:`drain` and on :meth:`flush`. Only ``write`` is required of the
    destination; ``flush`` is called when present.
    """

    def __init__(
        self, destination: IO[bytes], encoding: str, capacity: int = io.DEFAULT_BUFFER_SIZE
    ) -> None:
        self._destination = destination
        self._encoder = codecs.getincrementalencoder(encoding)("strict")
        self._capacity = capacity
        self._buffer = bytearray()

    def write(self, text: str) -> None:
        self._buffer += self._encoder.encode(text)
        if len(self._buffer) >= self._capacity:
            self.drain()

    def drain(self) -> None:
        """Hand all buffered bytes to the destination without flushing it."""
        data = bytes(self._buffer)
        self._buffer.clear()
        while data:
            written = self._destination.write(data)
            # raw streams may accept only part of the data
            if written is None or written >= len(data):
                return
            data = data[written:]

    def flush(self) -> None:
        self.drain()
        flush = getattr(self._destination, "flush", None)
        if flush is not None:
            flush()


class RelayHandle:
    """
    Handle to a relay running on a background thread.

    Returned by :meth:`Relay.spawn`. The thread is a daemon: an abandoned
    handle never keeps the interpreter alive.
    """

    def __init__(self, relay: "Relay", thread: threading.Thread) -> None:
        self._relay = relay
        self._thread = thread

    @property
    def name(self) -> str:
        return self._thread.name

    @property
    def outcome(self) -> Optional[RelayOutcome]:
        """The run's outcome, or None while the relay is still running."""
        return self._relay.outcome

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> Optional[RelayOutcome]:
        """
        Wait for the relay to finish.

        Args:
            timeout: Seconds to wait, or None to wait forever.

        Returns:
            The outcome, or None if the timeout expired first.
        """
        self._thread.join(timeout)
        return self._relay.outcome


class Relay:
    """
    Copies lines from a source stream to a destination stream, decorating
    them and firing hooks along the way.

    A relay runs exactly once, either on the calling thread with :meth:`run`
    or on a daemon thread with :meth:`spawn`.

    Args:
        config: Frozen :class:`RelayConfig`. A :class:`RelayDraft` is accepted
            and snapshotted immediately, so later edits to it have no effect.
    """

    def __init__(self, config: Union[RelayConfig, RelayDraft]) -> None:
        if isinstance(config, RelayDraft):
            config = config.build()
        self._config = config
        self._lock = threading.Lock()
        self._started = False
        self._outcome: Optional[RelayOutcome] = None
        self._lines = 0

    @property
    def config(self) -> RelayConfig:
        return self._config

    @property
    def outcome(self) -> Optional[RelayOutcome]:
        """Outcome of the run, or None if it has not finished."""
        return self._outcome

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    def run(self) -> RelayOutcome:
        """
        Run the relay on the calling thread until the source ends or fails.

        Read, write and encoding failures never raise; they are reported to
        ``on_error`` and returned in the outcome.

        Raises:
            RuntimeError: If this relay has already been started.
        """
        self._claim()
        return self._execute()

    def init_thread(self, name: str = "relay-thread") -> threading.Thread:
        """
        Create (but do not start) a daemon thread that runs this relay.

        Raises:
            RuntimeError: If this relay has already been started.
        """
        self._claim()
        return threading.Thread(target=self._execute, name=name, daemon=True)

    def spawn(self, name: str = "relay-thread") -> RelayHandle:
        """
        Start the relay on a daemon thread and return a handle to wait on.

        Raises:
            RuntimeError: If this relay has already been started.
        """
        thread = self.init_thread(name)
        thread.start()
        logger.debug("Relay started on thread %s", name)
        return RelayHandle(self, thread)

    # ──────────────────────────────────────────
    # Pump loop
    # ──────────────────────────────────────────

    def _claim(self) -> None:
        with self._lock:
            if self._started:
                raise RuntimeError("Relay has already been started")
            self._started = True

    def _execute(self) -> RelayOutcome:
        cfg = self._config
        reader: Optional[_LineReader] = None
        writer: Optional[_LineWriter] = None
        failure: Optional[RelayError] = None

        try:
            with _io_errors(ErrorKind.WRITE, "opening destination"):
                writer = _LineWriter(cfg.destination, cfg.destination_encoding)
            with _io_errors(ErrorKind.READ, "opening source"):
                reader = _LineReader(cfg.source, cfg.source_encoding)

            if cfg.header is not None:
                with _io_errors(ErrorKind.WRITE, "writing header"):
                    writer.write(cfg.header)

            self._pump(reader, writer)

            with _io_errors(ErrorKind.WRITE, "writing footer"):
                if cfg.footer is not None:
                    writer.write(cfg.footer)
                writer.drain()
        except RelayError as exc:
            failure = exc
            self._report(exc)
        finally:
            cleanup_failure = self._cleanup(writer)

        self._outcome = RelayOutcome(lines=self._lines, error=failure or cleanup_failure)
        logger.debug("Relay finished: %s", self._outcome)
        return self._outcome

    def _pump(self, reader: _LineReader, writer: _LineWriter) -> None:
        """Copy lines until end of stream."""
        cfg = self._config
        # checked once, not per line
        has_hooks = bool(cfg.hooks)
        lead = cfg.prefix or ""
        tail = (cfg.suffix or "") + os.linesep

        while True:
            with _io_errors(ErrorKind.READ, "reading source"):
                line = reader.readline()
            if line is None:
                return

            with _io_errors(ErrorKind.WRITE, "writing destination"):
                writer.write(lead + line + tail)
                if cfg.auto_flush:
                    writer.flush()
            self._lines += 1

            if has_hooks:
                self._dispatch(line)

    def _dispatch(self, line: str) -> None:
        """Run every hook whose pattern occurs in ``line``, in declaration order."""
        for hook in self._config.hooks:
            if not hook.matches(line):
                continue
            try:
                hook.callback(line)
            except Exception as exc:  # noqa: BLE001
                if self._config.abort_on_hook_error:
                    raise RelayError(
                        ErrorKind.HOOK, f"hook {hook.pattern.pattern!r} raised: {exc}"
                    ) from exc
                logger.error(
                    "Hook %r raised; relay continues", hook.pattern.pattern, exc_info=True
                )

    def _cleanup(self, writer: Optional[_LineWriter]) -> Optional[RelayError]:
        """
        Flush the destination, close it if configured, and always close the source.

        Every step runs even if an earlier one failed. Each failure is
        reported to ``on_error``; the first one is returned.
        """
        cfg = self._config
        first: Optional[RelayError] = None

        def attempt(action: str, fn) -> None:
            nonlocal first
            try:
                fn()
            except Exception as exc:  # noqa: BLE001
                err = RelayError(ErrorKind.CLEANUP, f"{action} failed: {exc}")
                err.__cause__ = exc
                self._report(err)
                if first is None:
                    first = err

        if writer is not None:
            attempt("flushing destination", writer.flush)
        if cfg.close_destination:
            attempt("closing destination", cfg.destination.close)
        attempt("closing source", cfg.source.close)
        return first

    def _report(self, error: RelayError) -> None:
        """Hand ``error`` to ``on_error``, or log it when no callback is set."""
        on_error = self._config.on_error
        if on_error is None:
            logger.warning("Relay failed: %s", error)
            return
        try:
            on_error(error)
        except Exception:  # noqa: BLE001
            logger.error("on_error callback raised", exc_info=True)
