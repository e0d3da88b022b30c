"""Minimal synchronous event emitter.

Listeners run in registration order. A listener that raises is logged and
skipped so one faulty subscriber cannot break delivery to the others.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class EventEmitter:
    """Publish/subscribe keyed by event name."""

    def __init__(self) -> None:
        self._listeners: defaultdict[str, list[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        """Subscribe *listener* to *event*.

        Returns:
            A callable that removes the subscription.
        """
        if not callable(listener):
            raise TypeError("listener must be callable")
        self._listeners[event].append(listener)
        return lambda: self.off(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        """Remove one registration of *listener* from *event*."""
        listeners = self._listeners.get(event)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return

    def emit(self, event: str, *args: Any) -> bool:
        """Call every listener of *event* with *args*.

        Returns:
            True if at least one listener was registered.
        """
        listeners = list(self._listeners.get(event, ()))
        for listener in listeners:
            try:
                listener(*args)
            except Exception:
                logger.exception("Listener for %r raised", event)
        return bool(listeners)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def remove_all_listeners(self, event: str | None = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)
