"""Bidirectional message relay between the plugin and its consumer.

Outbound (plugin → consumer) messages are fingerprinted to break feedback
loops, then routed: full-state pushes are merged into the state store and
rebroadcast, a few chatty types are suppressed, the rest is forwarded.

Inbound (consumer → plugin) messages that arrive before the plugin's render
surface is ready are queued. On readiness, configuration upserts are
replayed one at a time, each awaited, before the remaining messages are
dispatched without waiting on each other.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from plughost.config import Tuning
from plughost.faults import FaultMonitor
from plughost.state import State, StateStore
from plughost.telemetry import MessageCounters, TelemetrySink

logger = logging.getLogger(__name__)

Message = dict[str, Any]

CONFIG_UPSERT = "upsert_api_configuration"

STATE = "state"
ITEM_UPDATED = "message_updated"
HISTORY_RESPONSE = "task_history_response"
CONFIG_LIST = "list_api_config"

LEGACY_ITEM_KEY = "task_message"

# Rebroadcasting these makes the plugin and the consumer echo each other.
SUPPRESSED_TYPES: frozenset[str] = frozenset({"theme", "mcp_servers", "rules_data"})

INTERNAL_PREFIX = "_"


class MessageBridge:
    """Routes messages in both directions.

    Args:
        state: Store that full-state pushes are merged into.
        monitor: Fault monitor guarding each outbound relay.
        emit: Delivers a message to the consumer.
        telemetry: Receives message-flow counts.
        tuning: Dedup cache constants.
        clock: Epoch-seconds clock used for fingerprints.
    """

    def __init__(
        self,
        state: StateStore,
        monitor: FaultMonitor,
        emit: Callable[[Message], None],
        *,
        telemetry: TelemetrySink | None = None,
        tuning: Tuning | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._state = state
        self._monitor = monitor
        self._emit = emit
        self.telemetry: TelemetrySink = telemetry if telemetry is not None else MessageCounters()
        self._tuning = tuning or Tuning()
        self._clock = clock
        self._seen: dict[str, None] = {}
        self._pending: list[Message] = []
        self._ready = False
        self._tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def emit_raw(self, message: Message) -> None:
        """Deliver *message* to the consumer without dedup or filtering."""
        logger.debug("Sending message: %s", message.get("type"))
        self._emit(message)

    def broadcast_state(self, state: State) -> None:
        logger.debug(
            "Broadcasting state update (mode=%s, messages=%d)",
            state.get("mode"),
            len(state.get("chat_messages") or ()),
        )
        self._emit({"type": STATE, "state": state})

    def relay_outbound(self, message: Message) -> bool:
        """Route a message posted by the plugin, fault-contained.

        Returns:
            True if the message was accepted (not a duplicate and routed
            without error).
        """
        msg_type = message.get("type") if isinstance(message, dict) else None
        return bool(
            self._monitor.safe_call(
                lambda: self._route(message), f"plugin-message-{msg_type}", fallback=False
            )
        )

    def fingerprint(self, message: Message) -> str:
        bucket = int(self._clock() * 1000) // self._tuning.dedup_window_ms
        payload = json.dumps(message, default=repr, ensure_ascii=False)
        return f"{message.get('type')}_{bucket}_{payload[: self._tuning.dedup_payload_chars]}"

    def _route(self, message: Message) -> bool:
        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            logger.warning("Dropping malformed plugin message: %r", message)
            return False

        msg_type = message["type"]
        if not self._remember(self.fingerprint(message)):
            logger.debug("Skipping duplicate message: %s", msg_type)
            return False

        self.telemetry.track_message_received(msg_type)

        if msg_type == STATE:
            incoming = message.get("state")
            if not self._state.initialized:
                logger.debug("Dropping plugin state push received before state initialization")
            elif isinstance(incoming, dict):
                self._state.merge_plugin_push(incoming)
        elif msg_type == ITEM_UPDATED:
            item = message.get("chat_message")
            if item is None:
                item = message.get(LEGACY_ITEM_KEY)
            if item is not None:
                self._emit({"type": ITEM_UPDATED, "chat_message": item})
        elif msg_type == HISTORY_RESPONSE:
            if message.get("payload") is not None:
                self._emit({"type": HISTORY_RESPONSE, "payload": message["payload"]})
        elif msg_type == CONFIG_LIST:
            entries = message.get("list_api_config_meta")
            if isinstance(entries, list) and self._state.initialized:
                self._state.set_config_list(entries)
            self._emit(message)
        elif msg_type in SUPPRESSED_TYPES:
            logger.debug("Ignoring plugin message type to prevent loops: %s", msg_type)
        elif not msg_type.startswith(INTERNAL_PREFIX):
            logger.debug("Forwarding plugin message: %s", msg_type)
            self._emit(message)
        return True

    def _remember(self, fingerprint: str) -> bool:
        if fingerprint in self._seen:
            return False
        self._seen[fingerprint] = None
        if len(self._seen) > self._tuning.dedup_cache_size:
            for old in list(self._seen)[: self._tuning.dedup_evict_count]:
                del self._seen[old]
        return True

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def pending(self) -> list[Message]:
        return list(self._pending)

    def mark_ready(self) -> None:
        """Latch readiness; it never resets for this bridge."""
        self._ready = True

    def enqueue(self, message: Message) -> None:
        self._pending.append(message)
        logger.debug("Queued message %s - render surface not ready", message.get("type"))

    def note_inbound(self, msg_type: str) -> None:
        self.telemetry.track_message_sent(msg_type)

    async def flush_pending(self, deliver: Callable[[Message], Awaitable[None]]) -> None:
        """Replay queued messages through *deliver*.

        Configuration upserts go first, strictly in order; the rest are
        scheduled as independent tasks.
        """
        pending, self._pending = self._pending, []
        upserts = [m for m in pending if m.get("type") == CONFIG_UPSERT]
        others = [m for m in pending if m.get("type") != CONFIG_UPSERT]
        logger.info("Flushing %d pending messages", len(pending))

        for message in upserts:
            logger.debug("Flushing pending message: %s", message.get("type"))
            await deliver(message)

        for message in others:
            logger.debug("Flushing pending message: %s", message.get("type"))
            self.track(asyncio.ensure_future(deliver(message)))

    def track(self, task: asyncio.Future[Any]) -> None:
        """Keep a reference to a background task until it finishes."""
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait until every background delivery has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def reset(self) -> None:
        """Forget queued messages and fingerprints; readiness stays latched."""
        self._pending.clear()
        self._seen.clear()
