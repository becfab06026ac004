"""
linepipe/core/config.py — Relay configuration: draft, snapshot and settings file.

Two shapes describe a relay. :class:`RelayDraft` is a mutable builder with
fluent setters; :meth:`RelayDraft.build` turns it into a frozen
:class:`RelayConfig` snapshot that :class:`~linepipe.core.relay.Relay`
consumes. Once built, a snapshot can no longer change, so a running relay
never observes edits made to its draft.

The second half of the module loads ``config/linepipe.yaml`` into typed
dataclasses, the same way for the CLI and the supervisor.
"""

from __future__ import annotations

import codecs
import collections.abc
import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import IO, Any, Callable, Iterable, Mapping, Optional, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "utf-8"

LineCallback = Callable[[str], None]
ErrorCallback = Callable[[Exception], None]
PatternLike = Union[str, "re.Pattern[str]"]


# ──────────────────────────────────────────────
# Hooks
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class Hook:
    """
    A compiled pattern paired with the callback it triggers.

    Attributes:
        pattern: Regular expression searched for in every line.
        callback: Called with the full line when ``pattern`` is found anywhere in it.
    """

    pattern: "re.Pattern[str]"
    callback: LineCallback

    @classmethod
    def of(cls, pattern: PatternLike, callback: LineCallback) -> "Hook":
        """
        Build a hook from a pattern string or an already compiled pattern.

        Raises:
            ValueError: If the pattern string is not a valid regular expression.
            TypeError: If ``callback`` is not callable.
        """
        if not callable(callback):
            raise TypeError(f"Hook callback must be callable, got {type(callback)!r}")
        if isinstance(pattern, str):
            try:
                pattern = re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"Invalid hook pattern {pattern!r}: {exc}") from exc
        return cls(pattern=pattern, callback=callback)

    def matches(self, line: str) -> bool:
        """Return True if the pattern occurs anywhere in ``line``."""
        return self.pattern.search(line) is not None


def _normalise_encoding(name: str, label: str) -> str:
    """Resolve a codec name to its canonical form, raising ValueError if unknown."""
    try:
        return codecs.lookup(name).name
    except (LookupError, TypeError) as exc:
        raise ValueError(f"{label} is not a known encoding: {name!r}") from exc


# ──────────────────────────────────────────────
# Immutable snapshot
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class RelayConfig:
    """
    Read-only configuration consumed by a relay.

    ``source`` and ``destination`` are borrowed binary streams. The relay
    always closes ``source`` when it finishes and closes ``destination`` only
    if ``close_destination`` is set. ``hooks`` are evaluated in declaration
    order.
    """

    source: IO[bytes]
    destination: IO[bytes]
    source_encoding: str = DEFAULT_ENCODING
    destination_encoding: str = DEFAULT_ENCODING
    header: Optional[str] = None
    footer: Optional[str] = None
    prefix: Optional[str] = None
    suffix: Optional[str] = None
    on_error: Optional[ErrorCallback] = None
    hooks: tuple[Hook, ...] = ()
    close_destination: bool = True
    auto_flush: bool = True
    abort_on_hook_error: bool = False


# ──────────────────────────────────────────────
# Mutable draft
# ──────────────────────────────────────────────


class RelayDraft:
    """
    Fluent builder for :class:`RelayConfig`.

    Example::

        config = (
            RelayDraft(proc.stdout, sys.stdout.buffer)
            .set_prefix("[service] ")
            .set_header("--- BEGIN service ---\\n")
            .add_hook(r"Service is (up|running)", lambda line: ready.set())
            .set_close_destination(False)
            .build()
        )

    Args:
        source: Binary stream lines are read from.
        destination: Binary stream decorated lines are written to.
        source_encoding: Codec used to decode ``source``.
        destination_encoding: Codec used to encode ``destination``.

    Raises:
        ValueError: If ``source`` or ``destination`` is None.
    """

    def __init__(
        self,
        source: IO[bytes],
        destination: IO[bytes],
        source_encoding: str = DEFAULT_ENCODING,
        destination_encoding: str = DEFAULT_ENCODING,
    ) -> None:
        if source is None:
            raise ValueError("source stream is required")
        if destination is None:
            raise ValueError("destination stream is required")
        self.source = source
        self.destination = destination
        self.source_encoding = source_encoding
        self.destination_encoding = destination_encoding
        self.header: Optional[str] = None
        self.footer: Optional[str] = None
        self.prefix: Optional[str] = None
        self.suffix: Optional[str] = None
        self.on_error: Optional[ErrorCallback] = None
        self.hooks: list[Hook] = []
        self.close_destination = True
        self.auto_flush = True
        self.abort_on_hook_error = False

    def set_header(self, header: Optional[str]) -> "RelayDraft":
        """Text written once before the first line. Include a trailing newline if wanted."""
        self.header = header
        return self

    def set_footer(self, footer: Optional[str]) -> "RelayDraft":
        """Text written once after the last line, only when the source ends normally."""
        self.footer = footer
        return self

    def set_prefix(self, prefix: Optional[str]) -> "RelayDraft":
        self.prefix = prefix
        return self

    def set_suffix(self, suffix: Optional[str]) -> "RelayDraft":
        self.suffix = suffix
        return self

    def set_on_error(self, on_error: Optional[ErrorCallback]) -> "RelayDraft":
        """Callback receiving the :class:`~linepipe.core.relay.RelayError` of a failed run."""
        self.on_error = on_error
        return self

    def add_hook(self, pattern: PatternLike, callback: LineCallback) -> "RelayDraft":
        """
        Register ``callback`` to run whenever ``pattern`` is found in a line.

        Hooks run synchronously on the relay's thread before the next line is
        read, so a slow callback delays every line after it. Keep patterns
        simple: every line is searched for every pattern.
        """
        self.hooks.append(Hook.of(pattern, callback))
        return self

    def set_hooks(
        self,
        hooks: Union[Mapping[PatternLike, LineCallback], Iterable[tuple[PatternLike, LineCallback]], None],
    ) -> "RelayDraft":
        """Replace all hooks with ``(pattern, callback)`` pairs or a pattern→callback mapping."""
        self.hooks = []
        if hooks is None:
            return self
        pairs = hooks.items() if isinstance(hooks, collections.abc.Mapping) else hooks
        for pattern, callback in pairs:
            self.add_hook(pattern, callback)
        return self

    def set_close_destination(self, should_close: bool) -> "RelayDraft":
        """Whether the destination is closed when the relay finishes. Default: True."""
        self.close_destination = bool(should_close)
        return self

    def set_auto_flush(self, auto_flush: bool) -> "RelayDraft":
        """
        Flush the destination after every line when True. When False, bytes
        reach the destination as its own buffering allows and on termination.
        Default: True.
        """
        self.auto_flush = bool(auto_flush)
        return self

    def set_abort_on_hook_error(self, abort: bool) -> "RelayDraft":
        """Turn a raising hook into a relay failure instead of logging it. Default: False."""
        self.abort_on_hook_error = bool(abort)
        return self

    def apply_settings(self, settings: "RelaySettings") -> "RelayDraft":
        """Copy decoration, encodings and flags from a loaded :class:`RelaySettings`."""
        self.source_encoding = settings.source_encoding
        self.destination_encoding = settings.destination_encoding
        self.header = settings.header
        self.footer = settings.footer
        self.prefix = settings.prefix
        self.suffix = settings.suffix
        self.close_destination = settings.close_destination
        self.auto_flush = settings.auto_flush
        self.abort_on_hook_error = settings.abort_on_hook_error
        return self

    def build(self) -> RelayConfig:
        """
        Validate the draft and return an immutable snapshot of it.

        Raises:
            ValueError: If either encoding is unknown.
        """
        return RelayConfig(
            source=self.source,
            destination=self.destination,
            source_encoding=_normalise_encoding(self.source_encoding, "source_encoding"),
            destination_encoding=_normalise_encoding(
                self.destination_encoding, "destination_encoding"
            ),
            header=self.header,
            footer=self.footer,
            prefix=self.prefix,
            suffix=self.suffix,
            on_error=self.on_error,
            hooks=tuple(self.hooks),
            close_destination=self.close_destination,
            auto_flush=self.auto_flush,
            abort_on_hook_error=self.abort_on_hook_error,
        )


# ──────────────────────────────────────────────
# Settings file — mirrors linepipe.yaml
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class RelaySettings:
    """Decoration and flush behaviour for relays built from the settings file."""

    source_encoding: str = DEFAULT_ENCODING
    destination_encoding: str = DEFAULT_ENCODING
    header: Optional[str] = None
    footer: Optional[str] = None
    prefix: Optional[str] = None
    suffix: Optional[str] = None
    close_destination: bool = True
    auto_flush: bool = True
    abort_on_hook_error: bool = False
    hooks: tuple[str, ...] = ()
    """Patterns that are only logged when a line matches them."""


@dataclass(frozen=True)
class SupervisorSettings:
    """Child process supervision settings."""

    ready_pattern: Optional[str] = None
    ready_timeout_s: float = 30.0
    merge_stderr: bool = True
    thread_name: str = "relay-thread"


@dataclass(frozen=True)
class LoggingSettings:
    """Stdlib log level and optional JSONL event log directory."""

    level: str = "INFO"
    event_log_dir: Optional[str] = None


@dataclass(frozen=True)
class LinepipeConfig:
    """Root configuration object."""

    relay: RelaySettings = field(default_factory=RelaySettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _build_section(cls: type, raw: Any, section: str) -> Any:
    """Instantiate a settings dataclass from a YAML mapping, rejecting unknown keys."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config section '{section}' must be a mapping, got: {type(raw)}")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown key(s) in '{section}': {', '.join(unknown)}")
    return cls(**raw)


def load_config(config_path: Path | str | None = None) -> LinepipeConfig:
    """
    Load, validate, and return a LinepipeConfig from a YAML file.

    The search order for the config file is:
    1. *config_path* argument (if provided)
    2. LINEPIPE_CONFIG environment variable
    3. ``config/linepipe.yaml`` relative to the project root
    4. Built-in defaults (no file required)

    Args:
        config_path: Optional path to a ``linepipe.yaml`` file.

    Returns:
        A fully populated and frozen :class:`LinepipeConfig` instance.

    Raises:
        ValueError: If a YAML field has an invalid type or value.
        FileNotFoundError: If *config_path* is explicitly given but does not exist.
    """
    resolved_path: Path | None = None

    if config_path is not None:
        resolved_path = Path(config_path)
        if not resolved_path.exists():
            raise FileNotFoundError(f"Config file not found: {resolved_path}")
    elif "LINEPIPE_CONFIG" in os.environ:
        resolved_path = Path(os.environ["LINEPIPE_CONFIG"])
        if not resolved_path.exists():
            raise FileNotFoundError(
                f"LINEPIPE_CONFIG points to missing file: {resolved_path}"
            )
    else:
        here = Path(__file__).resolve()
        candidate = here.parent.parent.parent / "config" / "linepipe.yaml"
        if candidate.exists():
            resolved_path = candidate

    raw: dict = {}
    if resolved_path is not None:
        logger.info("Loading config from: %s", resolved_path)
        with resolved_path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file must be a YAML mapping, got: {type(loaded)}")
        raw = loaded
    else:
        logger.info("No config file found — using built-in defaults")

    unknown = sorted(set(raw) - {"relay", "supervisor", "logging"})
    if unknown:
        raise ValueError(f"Unknown config section(s): {', '.join(unknown)}")

    try:
        # YAML lists → tuple
        relay_raw = dict(raw.get("relay") or {})
        if isinstance(relay_raw.get("hooks"), list):
            relay_raw["hooks"] = tuple(relay_raw["hooks"])
        relay_cfg = _build_section(RelaySettings, relay_raw, "relay")
        supervisor_cfg = _build_section(SupervisorSettings, raw.get("supervisor"), "supervisor")
        logging_cfg = _build_section(LoggingSettings, raw.get("logging"), "logging")
    except TypeError as exc:
        raise ValueError(f"Invalid config value: {exc}") from exc

    _validate_config(relay_cfg, supervisor_cfg, logging_cfg)

    config = LinepipeConfig(relay=relay_cfg, supervisor=supervisor_cfg, logging=logging_cfg)
    logger.debug("Config loaded: %s", config)
    return config


def _validate_config(
    relay: RelaySettings,
    supervisor: SupervisorSettings,
    log: LoggingSettings,
) -> None:
    """
    Validate cross-field constraints on the loaded configuration.

    Raises:
        ValueError: If any configured value violates a constraint.
    """
    _normalise_encoding(relay.source_encoding, "relay.source_encoding")
    _normalise_encoding(relay.destination_encoding, "relay.destination_encoding")
    for pattern in relay.hooks:
        try:
            re.compile(pattern)
        except (re.error, TypeError) as exc:
            raise ValueError(f"relay.hooks contains an invalid pattern {pattern!r}: {exc}") from exc
    if supervisor.ready_pattern is not None:
        try:
            re.compile(supervisor.ready_pattern)
        except (re.error, TypeError) as exc:
            raise ValueError(
                f"supervisor.ready_pattern is invalid {supervisor.ready_pattern!r}: {exc}"
            ) from exc
    if not supervisor.ready_timeout_s > 0:
        raise ValueError(
            f"supervisor.ready_timeout_s must be positive, got {supervisor.ready_timeout_s}"
        )
    if str(log.level).upper() not in _LOG_LEVELS:
        raise ValueError(
            f"logging.level must be one of {sorted(_LOG_LEVELS)}, got '{log.level}'"
        )
