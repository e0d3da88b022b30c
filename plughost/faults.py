"""Fault containment around plugin code.

Every call into the plugin goes through :meth:`FaultMonitor.safe_execute`
(or :meth:`FaultMonitor.safe_call` for synchronous work). Exceptions are
classified:

* expected: cooperative interruptions such as an aborted task. Logged at
  debug level and otherwise ignored.
* unexpected: logged as errors, counted in :class:`HealthMetrics` and
  published as a recoverable :class:`FaultEvent`.

Either way the caller gets the fallback value instead of an exception.
The same classifier backs the process-wide hooks for exceptions nobody
awaited (asyncio) or caught (threads).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from plughost.errors import ExpectedRuntimeError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Each pattern matches when every fragment occurs in the lower-cased message.
EXPECTED_PATTERNS: tuple[tuple[str, ...], ...] = (("task", "aborted"),)


@dataclass(frozen=True)
class FaultEvent:
    """A non-fatal fault published to the consumer."""

    context: str
    error: BaseException
    recoverable: bool
    timestamp: float


@dataclass
class HealthMetrics:
    """Error counters for the hosted plugin."""

    error_count: int = 0
    last_error: BaseException | None = None
    last_error_time: float = 0.0
    max_errors_before_warning: int = 10

    @property
    def is_healthy(self) -> bool:
        return self.error_count < self.max_errors_before_warning


class FaultMonitor:
    """Classifies, reports and contains exceptions raised by plugin code.

    Args:
        emit: Called with each :class:`FaultEvent` that should reach the
            consumer.
        max_errors_before_warning: Error count at which a single degraded
            health warning is logged.
        expected_patterns: Message fragments identifying benign errors.
        clock: Source of event timestamps (epoch seconds).
    """

    def __init__(
        self,
        emit: Callable[[FaultEvent], None] | None = None,
        *,
        max_errors_before_warning: int = 10,
        expected_patterns: tuple[tuple[str, ...], ...] = EXPECTED_PATTERNS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._emit = emit
        self._patterns = expected_patterns
        self._clock = clock
        self.health = HealthMetrics(max_errors_before_warning=max_errors_before_warning)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._previous_loop_handler: Any = None
        self._previous_thread_hook: Callable[..., Any] | None = None
        self._handlers_installed = False

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def is_expected_error(self, error: object) -> bool:
        """Return True if *error* is a benign, cooperative interruption."""
        if error is None:
            return False
        if isinstance(error, ExpectedRuntimeError):
            return True
        message = str(error).lower()
        return any(all(fragment in message for fragment in pattern) for pattern in self._patterns)

    def report(
        self, error: BaseException, context: str, *, recoverable: bool = True
    ) -> FaultEvent | None:
        """Classify *error* and publish it if it is not expected.

        Non-recoverable faults are always published.

        Returns:
            The published event, or None when the error was expected.
        """
        if recoverable and self.is_expected_error(error):
            logger.debug("Expected error in %s: %s", context, error)
            return None

        now = self._clock()
        self.health.error_count += 1
        self.health.last_error = error
        self.health.last_error_time = now
        logger.error(
            "Plugin error in %s: %s (error count %d)",
            context,
            error,
            self.health.error_count,
            exc_info=error,
        )
        if self.health.error_count == self.health.max_errors_before_warning:
            logger.warning(
                "Plugin has raised %d errors; it may be unstable", self.health.error_count
            )

        event = FaultEvent(context=context, error=error, recoverable=recoverable, timestamp=now)
        if self._emit is not None:
            self._emit(event)
        return event

    # ------------------------------------------------------------------
    # Contained execution
    # ------------------------------------------------------------------

    async def safe_execute(
        self,
        operation: Callable[[], T | Awaitable[T]],
        context: str,
        fallback: T | None = None,
    ) -> T | None:
        """Run *operation*, awaiting its result if needed, never raising.

        Args:
            operation: Zero-argument callable, sync or async.
            context: Label used in logs and fault events.
            fallback: Returned when the operation raises.
        """
        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as exc:
            self.report(exc, context)
            return fallback

    def safe_call(
        self,
        operation: Callable[[], T],
        context: str,
        fallback: T | None = None,
    ) -> T | None:
        """Synchronous counterpart of :meth:`safe_execute`."""
        try:
            return operation()
        except Exception as exc:
            self.report(exc, context)
            return fallback

    # ------------------------------------------------------------------
    # Process-wide handlers
    # ------------------------------------------------------------------

    def install_process_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Route unobserved task exceptions and thread crashes to :meth:`report`.

        Args:
            loop: Event loop to hook; defaults to the running loop. Without
                a loop only the thread hook is installed.
        """
        if self._handlers_installed:
            return
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
        if loop is not None:
            self._loop = loop
            self._previous_loop_handler = loop.get_exception_handler()
            loop.set_exception_handler(self._handle_loop_exception)

        self._previous_thread_hook = threading.excepthook
        threading.excepthook = self._handle_thread_exception
        self._handlers_installed = True
        logger.debug("Process-wide fault handlers installed")

    def remove_process_handlers(self) -> None:
        if not self._handlers_installed:
            return
        if self._loop is not None:
            # Leave a handler that someone installed after us in place.
            if self._loop.get_exception_handler() == self._handle_loop_exception:
                self._loop.set_exception_handler(self._previous_loop_handler)
            self._loop = None
            self._previous_loop_handler = None
        if threading.excepthook == self._handle_thread_exception:
            threading.excepthook = self._previous_thread_hook or threading.__excepthook__
        self._previous_thread_hook = None
        self._handlers_installed = False
        logger.debug("Process-wide fault handlers removed")

    @property
    def handlers_installed(self) -> bool:
        return self._handlers_installed

    def _handle_loop_exception(
        self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]
    ) -> None:
        error = context.get("exception")
        if error is None:
            error = RuntimeError(context.get("message", "Unhandled error in event loop"))
        self.report(error, "unhandled-async")

    def _handle_thread_exception(self, args: threading.ExceptHookArgs) -> None:
        if issubclass(args.exc_type, SystemExit):
            return
        error = args.exc_value
        if error is None:
            error = args.exc_type()
        self.report(error, "uncaught-thread-exception")
