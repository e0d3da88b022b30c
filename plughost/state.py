"""Reconciled application state.

The snapshot has three writers: the plugin (state pushes and the snapshot
returned by its ``get_state`` capability), the consumer (``update_state``
and configuration injection) and the emulator's own bookkeeping for
messages it forwards. Each writer has its own merge rule; all of them keep
fields that an update does not mention, and ``None`` always means "not set".
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict

from plughost.config import HostOptions
from plughost.faults import FaultMonitor

logger = logging.getLogger(__name__)

TRANSCRIPT_KEY = "chat_messages"
LEGACY_TRANSCRIPT_KEY = "task_messages"
FLAGS_KEY = "experiments"

# Replaced only when an update explicitly carries a value.
PASS_THROUGH_FIELDS: tuple[str, ...] = (
    "current_api_config_name",
    "list_api_config_meta",
    "router_models",
)

State = dict[str, Any]


class ApplicationState(BaseModel):
    """Initial shape of the state snapshot."""

    model_config = ConfigDict(extra="allow")

    version: str = "1.0.0"
    api_configuration: dict[str, Any] = {}
    chat_messages: list[Any] = []
    mode: str = "code"
    custom_modes: list[dict] = []
    task_history_full_length: int = 0
    task_history_version: int = 0
    render_context: str = "cli"
    telemetry_setting: str = "unset"
    cwd: str = ""
    mcp_servers: list[Any] = []
    list_api_config_meta: list[Any] = []
    current_api_config_name: str = "default"
    experiments: dict[str, bool] = {}


def _present(data: Mapping[str, Any], key: str) -> bool:
    return data.get(key) is not None


class StateStore:
    """Owns the state snapshot and its merge rules.

    Args:
        monitor: Fault monitor every mutation runs under.
        on_change: Receives a copy of the full state after each successful
            mutation.
    """

    def __init__(self, monitor: FaultMonitor, on_change: Callable[[State], None]) -> None:
        self._monitor = monitor
        self._on_change = on_change
        self._state: State | None = None
        self._default_flags: dict[str, bool] = {}
        self._forced_flags: dict[str, bool] = {}

    @property
    def initialized(self) -> bool:
        return self._state is not None

    def snapshot(self) -> State | None:
        """Return a shallow copy of the current state, or None."""
        return dict(self._state) if self._state is not None else None

    def broadcast(self) -> None:
        if self._state is not None:
            self._on_change(dict(self._state))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, options: HostOptions) -> State:
        """Create the snapshot from host defaults and broadcast it."""
        self._default_flags = options.feature_flags()
        self._forced_flags = options.forced_flags()
        defaults = ApplicationState(
            mode=options.mode,
            custom_modes=list(options.custom_modes),
            render_context=options.hosting_mode,
            cwd=str(options.workspace()),
            experiments=dict(self._default_flags),
        ).model_dump()
        if options.append_system_prompt:
            defaults["append_system_prompt"] = options.append_system_prompt
        self._state = defaults
        logger.debug("Initial state created, waiting for configuration injection")
        self.broadcast()
        return dict(defaults)

    def clear(self) -> None:
        self._state = None
        self._default_flags = {}
        self._forced_flags = {}

    # ------------------------------------------------------------------
    # Merge rules
    # ------------------------------------------------------------------

    def merge_plugin_push(self, incoming: Mapping[str, Any]) -> bool:
        """Merge a full-state message pushed by the plugin.

        Keys the push does not set keep their current value. The transcript
        is taken from ``chat_messages``, then the legacy ``task_messages``.
        """

        def merge(current: State) -> State:
            merged = {**current, **{k: v for k, v in incoming.items() if v is not None}}
            merged.pop(LEGACY_TRANSCRIPT_KEY, None)
            merged[TRANSCRIPT_KEY] = _first_set(
                incoming, (TRANSCRIPT_KEY, LEGACY_TRANSCRIPT_KEY), current.get(TRANSCRIPT_KEY)
            )
            return merged

        return self._mutate(merge, "state.plugin-push")

    def merge_plugin_snapshot(self, snapshot: Mapping[str, Any]) -> bool:
        """Merge the plugin's own view of the state, fetched on surface launch.

        Only configuration, mode, transcript and pass-through fields are
        taken; everything else stays as the host knows it.
        """

        def merge(current: State) -> State:
            merged = dict(current)
            for key in ("api_configuration", "mode", TRANSCRIPT_KEY, *PASS_THROUGH_FIELDS):
                if _present(snapshot, key):
                    merged[key] = snapshot[key]
            return merged

        return self._mutate(merge, "state.plugin-snapshot")

    def inject_config(self, config: Mapping[str, Any]) -> bool:
        """Shallow-merge consumer configuration into the state.

        Feature flags follow a stricter rule: a flag takes the injected value
        only if the host defaults define it and the hosting mode does not
        force it. Every other flag keeps the value set at initialization.
        """

        def merge(current: State) -> State:
            merged = {**current, **{k: v for k, v in config.items() if v is not None}}
            merged[FLAGS_KEY] = self._merge_flags(current.get(FLAGS_KEY), config.get(FLAGS_KEY))
            return merged

        return self._mutate(merge, "state.inject-config")

    def update(self, partial: Mapping[str, Any]) -> bool:
        """Shallow-merge a consumer update."""
        return self._mutate(
            lambda current: {**current, **{k: v for k, v in partial.items() if v is not None}},
            "state.update",
        )

    def apply_config_upsert(self, name: str, api_configuration: Mapping[str, Any]) -> bool:
        def merge(current: State) -> State:
            merged = dict(current)
            merged["api_configuration"] = {
                **(current.get("api_configuration") or {}),
                **api_configuration,
            }
            merged["current_api_config_name"] = name
            return merged

        return self._mutate(merge, "state.config-upsert")

    def set_mode(self, mode: str) -> bool:
        return self._mutate(lambda current: {**current, "mode": mode}, "state.mode")

    def clear_transcript(self) -> bool:
        return self._mutate(lambda current: {**current, TRANSCRIPT_KEY: []}, "state.clear-task")

    def set_config_list(self, entries: list[Any]) -> bool:
        return self._mutate(
            lambda current: {**current, "list_api_config_meta": list(entries)},
            "state.config-list",
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _merge_flags(
        self, current: Mapping[str, bool] | None, injected: Mapping[str, bool] | None
    ) -> dict[str, bool]:
        flags = dict(current or {})
        if not injected:
            return flags
        for key, value in injected.items():
            if key in self._forced_flags:
                logger.debug("Keeping forced feature flag %s=%s", key, self._forced_flags[key])
            elif key in self._default_flags:
                flags[key] = value
            else:
                logger.debug("Ignoring unknown feature flag %s", key)
        return flags

    def _mutate(self, merge: Callable[[State], State], context: str) -> bool:
        if self._state is None:
            logger.debug("Ignoring %s: no state", context)
            return False

        current = self._state

        def apply() -> bool:
            self._state = merge(current)
            return True

        if not self._monitor.safe_call(apply, context, fallback=False):
            return False
        self.broadcast()
        return True


def _first_set(data: Mapping[str, Any], keys: tuple[str, ...], default: Any) -> Any:
    for key in keys:
        if _present(data, key):
            return data[key]
    return default
