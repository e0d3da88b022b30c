"""Message-flow counters.

The bridge reports every inbound message it forwards and every outbound
message it accepts. Real telemetry backends implement :class:`TelemetrySink`;
:class:`MessageCounters` keeps the numbers in memory.
"""

from __future__ import annotations

from collections import Counter
from typing import Protocol


class TelemetrySink(Protocol):
    """Structural type for message-flow telemetry."""

    def track_message_sent(self, message_type: str) -> None: ...

    def track_message_received(self, message_type: str) -> None: ...


class MessageCounters:
    """In-memory :class:`TelemetrySink`."""

    def __init__(self) -> None:
        self.sent: Counter[str] = Counter()
        self.received: Counter[str] = Counter()

    def track_message_sent(self, message_type: str) -> None:
        self.sent[message_type] += 1

    def track_message_received(self, message_type: str) -> None:
        self.received[message_type] += 1

    def snapshot(self) -> dict[str, dict[str, int]]:
        return {"sent": dict(self.sent), "received": dict(self.received)}
