"""
tests/test_relay.py — Tests for the relay pump loop and its worker thread.

Streams are in-memory (``io.BytesIO`` subclasses that remember flushes and
what was written before close) or OS pipes where timing matters.
"""

from __future__ import annotations

import io
import os
import threading
import unittest
from typing import List

from linepipe.core.config import RelayDraft
from linepipe.core.relay import ErrorKind, Relay, RelayError, RelayOutcome

NL = os.linesep


class TrackingStream(io.BytesIO):
    """BytesIO that counts flushes and keeps its contents after close."""

    def __init__(self, initial: bytes = b"") -> None:
        super().__init__(initial)
        self.flush_count = 0
        self._final = b""

    def flush(self) -> None:
        self.flush_count += 1
        super().flush()

    def close(self) -> None:
        if not self.closed:
            self._final = self.getvalue()
        super().close()

    def text(self, encoding: str = "utf-8") -> str:
        data = self._final if self.closed else self.getvalue()
        return data.decode(encoding)


def _source(*lines: str, terminator: str = "\n") -> TrackingStream:
    return TrackingStream("".join(line + terminator for line in lines).encode("utf-8"))


class ChunkedSource:
    """Read-only byte source that hands out at most ``size`` bytes per read."""

    def __init__(self, data: bytes, size: int = 1) -> None:
        self._data = data
        self._pos = 0
        self._size = size
        self.closed = False

    def read(self, n: int = -1) -> bytes:
        end = self._pos + (self._size if n < 0 else min(n, self._size))
        chunk, self._pos = self._data[self._pos:end], min(end, len(self._data))
        return chunk

    def close(self) -> None:
        self.closed = True


class CountingSink(io.RawIOBase):
    """Unbuffered destination that counts write calls."""

    def __init__(self) -> None:
        super().__init__()
        self.writes = 0
        self.data = bytearray()

    def writable(self) -> bool:
        return True

    def write(self, b) -> int:
        self.writes += 1
        self.data += bytes(b)
        return len(b)


class TestRelayCopy(unittest.TestCase):
    """Plain copying and decoration."""

    def test_lines_arrive_in_order_exactly_once(self) -> None:
        """Every input line appears once, in input order."""
        lines = [f"line {i}" for i in range(200)]
        dst = TrackingStream()
        outcome = Relay(RelayDraft(_source(*lines), dst)).run()

        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.lines, 200)
        self.assertEqual(dst.text(), "".join(line + NL for line in lines))

    def test_prefix_and_suffix_wrap_each_line(self) -> None:
        dst = TrackingStream()
        Relay(RelayDraft(_source("hello"), dst).set_prefix("P ").set_suffix(" S")).run()
        self.assertEqual(dst.text(), "P hello S" + NL)

    def test_header_and_footer_written_once(self) -> None:
        dst = TrackingStream()
        draft = RelayDraft(_source("a", "b"), dst).set_header("H\n").set_footer("F\n")
        Relay(draft).run()
        self.assertEqual(dst.text(), "H\n" + "a" + NL + "b" + NL + "F\n")

    def test_header_and_footer_on_empty_source(self) -> None:
        dst = TrackingStream()
        outcome = Relay(
            RelayDraft(TrackingStream(), dst).set_header("H\n").set_footer("F\n")
        ).run()
        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.lines, 0)
        self.assertEqual(dst.text(), "H\nF\n")

    def test_terminators_are_normalised(self) -> None:
        """\\r\\n, \\r and \\n in the source all become os.linesep."""
        dst = TrackingStream()
        src = TrackingStream(b"one\r\ntwo\rthree\n")
        Relay(RelayDraft(src, dst)).run()
        self.assertEqual(dst.text(), "one" + NL + "two" + NL + "three" + NL)

    def test_last_line_without_terminator_is_relayed(self) -> None:
        dst = TrackingStream()
        Relay(RelayDraft(TrackingStream(b"first\nlast"), dst)).run()
        self.assertEqual(dst.text(), "first" + NL + "last" + NL)

    def test_source_and_destination_encodings(self) -> None:
        src = TrackingStream("café\n".encode("latin-1"))
        dst = TrackingStream()
        draft = RelayDraft(src, dst, source_encoding="latin-1", destination_encoding="utf-16-le")
        Relay(draft).run()
        self.assertEqual(dst.text("utf-16-le"), "café" + NL)

    def test_identical_config_gives_identical_output(self) -> None:
        outputs = []
        for _ in range(2):
            dst = TrackingStream()
            draft = (
                RelayDraft(_source("x", "y", "z"), dst)
                .set_header("[begin]\n")
                .set_prefix("> ")
                .set_suffix(" <")
                .set_footer("[end]\n")
            )
            Relay(draft).run()
            outputs.append(dst._final)
        self.assertEqual(outputs[0], outputs[1])

    def test_draft_edits_after_construction_are_ignored(self) -> None:
        dst = TrackingStream()
        draft = RelayDraft(_source("a"), dst).set_prefix("1 ")
        relay = Relay(draft)
        draft.set_prefix("2 ")
        relay.run()
        self.assertEqual(dst.text(), "1 a" + NL)


class TestRelayHooks(unittest.TestCase):
    """Hook matching and dispatch timing."""

    def test_hook_fires_only_on_matching_lines(self) -> None:
        seen: List[str] = []
        draft = RelayDraft(_source("starting", "service is up", "done"), TrackingStream())
        draft.add_hook("up", seen.append)
        Relay(draft).run()
        self.assertEqual(seen, ["service is up"])

    def test_hook_sees_undecorated_line(self) -> None:
        seen: List[str] = []
        draft = (
            RelayDraft(_source("service is up"), TrackingStream())
            .set_prefix("[svc] ")
            .set_suffix(" !")
            .add_hook(r"^service", seen.append)
        )
        Relay(draft).run()
        self.assertEqual(seen, ["service is up"])

    def test_hook_runs_after_write_and_before_next_read(self) -> None:
        """
        The third line is only fed into the pipe by the hook itself. If the
        relay needed it before dispatching, the run would never finish.
        """
        read_fd, write_fd = os.pipe()
        src = os.fdopen(read_fd, "rb")
        feeder = os.fdopen(write_fd, "wb")
        dst = TrackingStream()
        snapshots: List[str] = []

        def on_up(line: str) -> None:
            snapshots.append(dst.text())
            feeder.write(b"done\n")
            feeder.close()

        relay = Relay(RelayDraft(src, dst).add_hook("up", on_up))
        handle = relay.spawn("hook-timing")
        feeder.write(b"starting\nservice is up\n")
        feeder.flush()

        outcome = handle.join(timeout=5.0)
        self.assertIsNotNone(outcome)
        self.assertTrue(outcome.ok)
        self.assertEqual(snapshots, ["starting" + NL + "service is up" + NL])
        self.assertEqual(dst.text(), "starting" + NL + "service is up" + NL + "done" + NL)

    def test_two_hooks_on_one_line_each_fire_once(self) -> None:
        calls: List[str] = []
        draft = (
            RelayDraft(_source("Super test and Service is running"), TrackingStream())
            .add_hook("Super test", lambda s: calls.append("super"))
            .add_hook("Service is (up|running)", lambda s: calls.append("service"))
        )
        Relay(draft).run()
        self.assertEqual(calls, ["super", "service"])

    def test_raising_hook_is_isolated_by_default(self) -> None:
        later: List[str] = []

        def broken(line: str) -> None:
            raise RuntimeError("boom")

        dst = TrackingStream()
        draft = (
            RelayDraft(_source("a", "b"), dst)
            .add_hook("a", broken)
            .add_hook(".", later.append)
            .set_footer("F\n")
        )
        with self.assertLogs("linepipe.core.relay", level="ERROR"):
            outcome = Relay(draft).run()

        self.assertTrue(outcome.ok)
        self.assertEqual(later, ["a", "b"])
        self.assertTrue(dst.text().endswith("F\n"))

    def test_raising_hook_aborts_when_configured(self) -> None:
        errors: List[Exception] = []

        def broken(line: str) -> None:
            raise RuntimeError("boom")

        dst = TrackingStream()
        draft = (
            RelayDraft(_source("a", "b", "c"), dst)
            .add_hook("b", broken)
            .set_footer("F\n")
            .set_on_error(errors.append)
            .set_abort_on_hook_error(True)
        )
        outcome = Relay(draft).run()

        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.error.kind, ErrorKind.HOOK)
        self.assertIsInstance(outcome.error.__cause__, RuntimeError)
        self.assertEqual(outcome.lines, 2)
        self.assertEqual(errors, [outcome.error])
        self.assertEqual(dst.text(), "a" + NL + "b" + NL)


class TestRelayCleanup(unittest.TestCase):
    """Stream release on success and failure."""

    def test_success_closes_both_streams(self) -> None:
        src, dst = _source("a"), TrackingStream()
        Relay(RelayDraft(src, dst)).run()
        self.assertTrue(src.closed)
        self.assertTrue(dst.closed)
        self.assertGreaterEqual(dst.flush_count, 1)

    def test_destination_left_open_when_requested(self) -> None:
        src, dst = _source("a"), TrackingStream()
        Relay(RelayDraft(src, dst).set_close_destination(False)).run()
        self.assertTrue(src.closed)
        self.assertFalse(dst.closed)
        self.assertEqual(dst.getvalue(), ("a" + NL).encode())

    def test_auto_flush_flushes_every_line(self) -> None:
        dst = TrackingStream()
        Relay(RelayDraft(_source("a", "b", "c"), dst).set_close_destination(False)).run()
        # three lines plus the final cleanup flush
        self.assertEqual(dst.flush_count, 4)

    def test_without_auto_flush_only_cleanup_flushes(self) -> None:
        dst = TrackingStream()
        draft = RelayDraft(_source("a", "b", "c"), dst).set_close_destination(False).set_auto_flush(False)
        Relay(draft).run()
        self.assertEqual(dst.flush_count, 1)
        self.assertEqual(dst.text(), "a" + NL + "b" + NL + "c" + NL)

    def test_closed_source_reports_read_error_without_footer(self) -> None:
        errors: List[Exception] = []
        src, dst = _source("never read"), TrackingStream()
        src.close()

        draft = RelayDraft(src, dst).set_footer("F\n").set_on_error(errors.append)
        outcome = Relay(draft).run()

        self.assertFalse(outcome.ok)
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], RelayError)
        self.assertEqual(errors[0].kind, ErrorKind.READ)
        self.assertIs(outcome.error, errors[0])
        self.assertNotIn("F\n", dst.text())
        self.assertTrue(dst.closed)
        self.assertGreaterEqual(dst.flush_count, 1)

    def test_closed_source_keeps_destination_open_when_requested(self) -> None:
        src, dst = _source("x"), TrackingStream()
        src.close()
        with self.assertLogs("linepipe.core.relay", level="WARNING"):
            outcome = Relay(RelayDraft(src, dst).set_close_destination(False)).run()
        self.assertEqual(outcome.error.kind, ErrorKind.READ)
        self.assertFalse(dst.closed)

    def test_malformed_bytes_report_encoding_error(self) -> None:
        errors: List[Exception] = []
        src = TrackingStream(b"ok\n\xff\xfe broken\n")
        dst = TrackingStream()
        draft = RelayDraft(src, dst).set_footer("F\n").set_on_error(errors.append)
        outcome = Relay(draft).run()

        self.assertEqual(outcome.error.kind, ErrorKind.ENCODING)
        self.assertIsInstance(outcome.error.__cause__, UnicodeDecodeError)
        # the line before the bad bytes shares their read but is still relayed
        self.assertEqual(dst.text(), "ok" + NL)
        self.assertEqual(outcome.lines, 1)
        self.assertTrue(src.closed)

    def test_every_line_before_malformed_bytes_is_relayed(self) -> None:
        seen: List[str] = []
        src = TrackingStream(b"one\r\ntwo\nthree\n\xc3(rest\n")
        dst = TrackingStream()
        draft = RelayDraft(src, dst).add_hook("t", seen.append)
        outcome = Relay(draft).run()

        self.assertEqual(outcome.error.kind, ErrorKind.ENCODING)
        self.assertEqual(outcome.lines, 3)
        self.assertEqual(dst.text(), "one" + NL + "two" + NL + "three" + NL)
        self.assertEqual(seen, ["two", "three"])

    def test_closed_destination_reports_write_error(self) -> None:
        errors: List[Exception] = []
        src, dst = _source("a"), TrackingStream()
        dst.close()
        outcome = Relay(RelayDraft(src, dst).set_header("H\n").set_on_error(errors.append)).run()

        self.assertEqual(outcome.error.kind, ErrorKind.WRITE)
        self.assertIs(errors[0], outcome.error)
        # the flush during cleanup fails too but does not replace the first error
        self.assertTrue(any(e.kind is ErrorKind.CLEANUP for e in errors[1:]))
        self.assertTrue(src.closed)

    def test_raising_error_callback_does_not_stop_cleanup(self) -> None:
        def broken(exc: Exception) -> None:
            raise RuntimeError("callback broke")

        src, dst = _source("a"), TrackingStream()
        src.close()
        with self.assertLogs("linepipe.core.relay", level="ERROR"):
            outcome = Relay(RelayDraft(src, dst).set_on_error(broken)).run()
        self.assertEqual(outcome.error.kind, ErrorKind.READ)
        self.assertTrue(dst.closed)


class TestRelayStreams(unittest.TestCase):
    """Sources and destinations beyond in-memory file objects."""

    def test_source_with_only_read_and_close(self) -> None:
        src, dst = ChunkedSource(b"a\nb\n", size=3), TrackingStream()
        outcome = Relay(RelayDraft(src, dst)).run()

        self.assertTrue(outcome.ok)
        self.assertEqual(dst.text(), "a" + NL + "b" + NL)
        self.assertTrue(src.closed)

    def test_spawned_relay_on_minimal_source_finishes(self) -> None:
        dst = TrackingStream()
        handle = Relay(RelayDraft(ChunkedSource(b"x\n"), dst)).spawn()
        outcome = handle.join(timeout=5.0)
        self.assertIsNotNone(outcome)
        self.assertTrue(outcome.ok)
        self.assertEqual(dst.text(), "x" + NL)

    def test_split_crlf_and_multibyte_characters(self) -> None:
        """Terminators and characters cut across reads are reassembled."""
        dst = TrackingStream()
        src = ChunkedSource("café\r\nnaïve\r".encode("utf-8"), size=1)
        outcome = Relay(RelayDraft(src, dst)).run()

        self.assertEqual(outcome.lines, 2)
        self.assertEqual(dst.text(), "café" + NL + "naïve" + NL)

    def test_source_without_read_reports_read_error(self) -> None:
        errors: List[Exception] = []

        class CloseOnly:
            closed = False

            def close(self) -> None:
                self.closed = True

        src, dst = CloseOnly(), TrackingStream()
        outcome = Relay(RelayDraft(src, dst).set_on_error(errors.append)).run()

        self.assertEqual(outcome.error.kind, ErrorKind.READ)
        self.assertIs(errors[0], outcome.error)
        self.assertTrue(src.closed)
        self.assertTrue(dst.closed)

    def test_text_destination_reports_write_error(self) -> None:
        dst = io.StringIO()
        outcome = Relay(RelayDraft(_source("a"), dst).set_close_destination(False)).run()
        self.assertEqual(outcome.error.kind, ErrorKind.WRITE)
        self.assertIsInstance(outcome.error.__cause__, TypeError)

    def test_unbuffered_destination_receives_blocks(self) -> None:
        lines = [f"entry {i}" for i in range(100)]
        dst = CountingSink()
        draft = (
            RelayDraft(_source(*lines), dst)
            .set_prefix("<")
            .set_suffix(">")
            .set_auto_flush(False)
            .set_close_destination(False)
        )
        outcome = Relay(draft).run()

        self.assertEqual(outcome.lines, 100)
        self.assertEqual(dst.writes, 1)
        self.assertEqual(dst.data.decode("utf-8"), "".join(f"<{line}>" + NL for line in lines))

    def test_auto_flush_writes_each_line_once(self) -> None:
        dst = CountingSink()
        draft = RelayDraft(_source("a", "b"), dst).set_prefix("[").set_suffix("]")
        Relay(draft.set_close_destination(False)).run()
        self.assertEqual(dst.writes, 2)


class TestRelayLifecycle(unittest.TestCase):
    """Single-shot semantics and the background worker."""

    def test_second_run_is_rejected(self) -> None:
        relay = Relay(RelayDraft(_source("a"), TrackingStream()))
        relay.run()
        with self.assertRaises(RuntimeError):
            relay.run()
        with self.assertRaises(RuntimeError):
            relay.spawn()

    def test_spawn_runs_on_daemon_thread(self) -> None:
        thread_names: List[str] = []
        draft = RelayDraft(_source("a"), TrackingStream()).add_hook(
            "a", lambda s: thread_names.append(threading.current_thread().name)
        )
        relay = Relay(draft)
        handle = relay.spawn("relay-under-test")

        outcome = handle.join(timeout=5.0)
        self.assertIsInstance(outcome, RelayOutcome)
        self.assertTrue(outcome.ok)
        self.assertFalse(handle.is_alive())
        self.assertEqual(handle.name, "relay-under-test")
        self.assertEqual(thread_names, ["relay-under-test"])
        self.assertIs(relay.outcome, outcome)

    def test_init_thread_is_daemon_and_not_started(self) -> None:
        relay = Relay(RelayDraft(_source("a"), TrackingStream()))
        thread = relay.init_thread("custom")
        self.assertTrue(thread.daemon)
        self.assertFalse(thread.is_alive())
        self.assertEqual(thread.name, "custom")
        thread.start()
        thread.join(timeout=5.0)
        self.assertTrue(relay.outcome.ok)

    def test_join_times_out_while_source_is_open(self) -> None:
        read_fd, write_fd = os.pipe()
        src = os.fdopen(read_fd, "rb")
        feeder = os.fdopen(write_fd, "wb")
        handle = Relay(RelayDraft(src, TrackingStream())).spawn()
        try:
            self.assertIsNone(handle.join(timeout=0.1))
            self.assertTrue(handle.is_alive())
        finally:
            feeder.close()
        self.assertTrue(handle.join(timeout=5.0).ok)


if __name__ == "__main__":
    unittest.main()
