"""
main.py — linepipe command-line runner.

Runs a command, relays its output to stdout with the configured decoration,
and reports when a ready pattern shows up::

    linepipe --prefix "[svc] " --wait-for "Service is (up|running)" -- ./svc --port 1111

Exits with the child's exit code.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from typing import Optional, Sequence

EXIT_USAGE = 2
EXIT_NOT_FOUND = 127


# ──────────────────────────────────────────────────────────────
# Argument parsing
# ──────────────────────────────────────────────────────────────

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="linepipe",
        description="Relay a command's output line by line, with decoration and pattern hooks",
    )
    p.add_argument("--config", default=None, help="Path to a linepipe.yaml settings file")
    p.add_argument("--prefix", default=None, help="Text prepended to every line")
    p.add_argument("--suffix", default=None, help="Text appended to every line")
    p.add_argument("--header", default=None, help="Text written once before the first line")
    p.add_argument("--footer", default=None, help="Text written once after the last line")
    p.add_argument(
        "--wait-for",
        dest="ready_pattern",
        default=None,
        help="Regex marking the command as ready; logged when first seen",
    )
    p.add_argument(
        "--ready-timeout",
        type=float,
        default=None,
        help="Seconds to wait for --wait-for before logging a warning",
    )
    p.add_argument(
        "--no-merge-stderr",
        action="store_true",
        help="Leave the command's stderr alone instead of relaying it",
    )
    p.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Minimum level for diagnostics on stderr",
    )
    p.add_argument("--event-log", default=None, help="Directory for the JSONL event log")
    p.add_argument("command", nargs=argparse.REMAINDER, help="Command to run, after --")
    return p


def _unescape(value: Optional[str]) -> Optional[str]:
    """Turn ``\\n`` and ``\\t`` typed on the command line into real characters."""
    if value is None:
        return None
    return value.replace("\\n", "\n").replace("\\t", "\t")


# ──────────────────────────────────────────────────────────────
# Main
# ──────────────────────────────────────────────────────────────

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Application entry point. Returns process exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        parser.print_usage(sys.stderr)
        print("linepipe: error: no command given", file=sys.stderr)
        return EXIT_USAGE

    from linepipe.core.config import load_config
    from linepipe.core.logger import get_logger
    from linepipe.core.supervisor import SupervisedProcess

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as exc:
        print(f"linepipe: error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    logging.basicConfig(
        level=(args.log_level or config.logging.level).upper(),
        format="[%(levelname)s] %(name)s — %(message)s",
        stream=sys.stderr,
    )

    overrides = {
        key: _unescape(value)
        for key, value in (
            ("prefix", args.prefix),
            ("suffix", args.suffix),
            ("header", args.header),
            ("footer", args.footer),
        )
        if value is not None
    }
    # stdout belongs to this process, never close it
    relay_settings = dataclasses.replace(config.relay, close_destination=False, **overrides)

    supervisor = config.supervisor
    ready_pattern = args.ready_pattern or supervisor.ready_pattern
    ready_timeout = args.ready_timeout if args.ready_timeout is not None else supervisor.ready_timeout_s
    event_log_dir = args.event_log or config.logging.event_log_dir
    event_log = get_logger(event_log_dir) if event_log_dir else None

    proc = SupervisedProcess(
        command,
        destination=sys.stdout.buffer,
        settings=relay_settings,
        ready_pattern=ready_pattern,
        merge_stderr=supervisor.merge_stderr and not args.no_merge_stderr,
        event_log=event_log,
        thread_name=supervisor.thread_name,
    )

    log = logging.getLogger("linepipe")
    try:
        proc.start()
    except OSError as exc:
        print(f"linepipe: cannot run {command[0]!r}: {exc}", file=sys.stderr)
        return EXIT_NOT_FOUND

    try:
        if ready_pattern is not None and proc.wait_ready(ready_timeout):
            log.info("Command is ready: %s", proc.ready_line)
        exit_code = proc.wait()
    except KeyboardInterrupt:
        proc.terminate()
        exit_code = proc.wait()
    finally:
        if event_log is not None:
            event_log.flush()

    outcome = proc.outcome
    if outcome is not None and not outcome.ok:
        log.warning("Relay ended early: %s", outcome.error)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
