"""Logging setup, in-memory log buffer and plugin output redirection.

Plugin code writes with ``print``. While a :class:`LogRedirect` is installed,
every plugin module loaded through :mod:`plughost.loader` has ``print``
bound to :func:`plugin_print`, which looks up the process-wide sink on each
call. Nothing captures the sink at import time, so restoring the redirect
immediately sends later calls back to the builtin.
"""

from __future__ import annotations

import builtins
import json
import logging
import logging.handlers
import sys
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from plughost.redaction import RedactingFilter

PLUGIN_LOGGER = "plughost.plugin"

MAX_LOG_FILE_BYTES = 10 * 1024 * 1024
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

LEVEL_NAMES = ("debug", "info", "warning", "error")


# ---------------------------------------------------------------------------
# Message serialisation
# ---------------------------------------------------------------------------


def _describe(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    if isinstance(value, (dict, list, tuple)):
        try:
            return json.dumps(value, default=repr, ensure_ascii=False)
        except (TypeError, ValueError):
            # Circular references land here.
            pass
    try:
        return repr(value)
    except Exception:
        return f"<unrepresentable {type(value).__name__}>"


def args_to_message(args: Iterable[Any], sep: str = " ") -> str:
    """Join ``print``-style arguments into one log message without raising."""
    return sep.join(_describe(arg) for arg in args)


# ---------------------------------------------------------------------------
# Plugin output redirection
# ---------------------------------------------------------------------------

_active_sink: logging.Logger | None = None
_sink_lock = threading.Lock()


def plugin_print(
    *args: Any,
    sep: str | None = " ",
    end: str | None = "\n",
    file: Any = None,
    flush: bool = False,
) -> None:
    """Drop-in ``print`` for plugin modules.

    Standard output goes to the plugin logger at INFO, standard error at
    ERROR. Writes to any other file object and calls made while no redirect
    is installed go to the builtin ``print``.
    """
    sink = active_sink()
    to_stderr = file is sys.stderr or file is sys.__stderr__
    to_stdout = file is None or file is sys.stdout or file is sys.__stdout__
    if sink is None or not (to_stdout or to_stderr):
        builtins.print(*args, sep=sep, end=end, file=file, flush=flush)
        return
    message = args_to_message(args, " " if sep is None else sep)
    sink.log(logging.ERROR if to_stderr else logging.INFO, message)


class LogRedirect:
    """Installs and restores the process-wide plugin log sink."""

    def __init__(self, logger_name: str = PLUGIN_LOGGER) -> None:
        self._logger = logging.getLogger(logger_name)
        self._previous: logging.Logger | None = None
        self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    def install(self) -> None:
        global _active_sink
        if self._installed:
            return
        with _sink_lock:
            self._previous = _active_sink
            _active_sink = self._logger
        self._installed = True

    def restore(self) -> None:
        global _active_sink
        if not self._installed:
            return
        with _sink_lock:
            _active_sink = self._previous
            self._previous = None
        self._installed = False
        logging.getLogger(__name__).debug("Plugin output redirection restored")


def active_sink() -> logging.Logger | None:
    """Return the logger plugin output currently goes to, if any."""
    return _active_sink


# ---------------------------------------------------------------------------
# In-memory buffer
# ---------------------------------------------------------------------------


@dataclass
class LogEntry:
    """A single buffered log record."""

    level: str
    message: str
    source: str
    ts: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


class LogBuffer(logging.Handler):
    """Keeps the most recent records in memory, newest first.

    Subscribers are notified of every new entry; a subscriber that raises
    is dropped from this notification only.
    """

    def __init__(self, max_entries: int = 1000, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self._max_entries = max_entries
        self._entries: list[LogEntry] = []
        self._listeners: list[Callable[[LogEntry], None]] = []

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
        except Exception:
            self.handleError(record)
            return
        if record.exc_info and record.exc_info[1] is not None:
            message = f"{message} ({_describe(record.exc_info[1])})"
        entry = LogEntry(
            level=_level_name(record.levelno),
            message=message,
            source=record.name,
            ts=record.created,
        )
        self._entries.insert(0, entry)
        del self._entries[self._max_entries :]
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception:
                self.handleError(record)

    def subscribe(self, listener: Callable[[LogEntry], None]) -> Callable[[], None]:
        """Register *listener*; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def get_logs(
        self,
        levels: Iterable[str] | None = None,
        source: str | None = None,
        since: float | None = None,
    ) -> list[LogEntry]:
        """Return buffered entries, newest first, optionally filtered.

        Args:
            levels: Keep only these level names (``debug``, ``info``, ...).
            source: Keep only entries whose logger name contains this text.
            since: Keep only entries created at or after this epoch time.
        """
        wanted = set(levels) if levels else None
        result = []
        for entry in self._entries:
            if wanted is not None and entry.level not in wanted:
                continue
            if source is not None and source not in entry.source:
                continue
            if since is not None and entry.ts < since:
                continue
            result.append(entry)
        return result

    def counts(self) -> dict[str, int]:
        totals = dict.fromkeys(LEVEL_NAMES, 0)
        for entry in self._entries:
            totals[entry.level] = totals.get(entry.level, 0) + 1
        return totals


def _level_name(levelno: int) -> str:
    if levelno >= logging.ERROR:
        return "error"
    if levelno >= logging.WARNING:
        return "warning"
    if levelno >= logging.INFO:
        return "info"
    return "debug"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def configure_logging(
    level: int | str = logging.INFO,
    log_file: Path | str | None = None,
    console: bool = False,
) -> LogBuffer:
    """Attach handlers to the ``plughost`` logger.

    Calling this again replaces the handlers installed by the previous call.

    Args:
        level: Threshold for the ``plughost`` logger tree.
        log_file: Optional path of a size-rotated log file.
        console: Also render records on stderr through Rich.

    Returns:
        The in-memory :class:`LogBuffer` handler.
    """
    root = logging.getLogger("plughost")
    for handler in list(root.handlers):
        if getattr(handler, "_plughost_managed", False):
            root.removeHandler(handler)
            handler.close()

    root.setLevel(level)
    redacting = RedactingFilter()
    handlers: list[logging.Handler] = []

    buffer = LogBuffer()
    handlers.append(buffer)

    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            path, maxBytes=MAX_LOG_FILE_BYTES, backupCount=1, encoding="utf-8"
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)

    if console:
        from rich.console import Console
        from rich.logging import RichHandler

        handlers.append(
            RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
        )

    for handler in handlers:
        handler.addFilter(redacting)
        handler._plughost_managed = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    return buffer
