"""Host emulator — runs one plugin outside its native host.

Lifecycle::

    UNINITIALIZED -> ACTIVATING -> ACTIVATED -> DEACTIVATING -> DEACTIVATED

A failed activation ends in DEACTIVATED as well. States are never
re-entered; hosting the plugin again takes a new :class:`HostEmulator`.

The emulator emits three events (see :meth:`EventEmitter.on`):

* ``"message"``: an outbound message for the consumer (a ``dict``).
* ``"activated"``: the :class:`ConsumerAPI`, once activation succeeds.
* ``"fault"``: a :class:`~plughost.faults.FaultEvent`.

Apart from :class:`~plughost.errors.DeactivationError` no public method
raises; failures surface as fault events and degraded results.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import time
from collections.abc import Callable, Mapping
from types import ModuleType
from typing import Any

from plughost.bridge import CONFIG_UPSERT, Message, MessageBridge
from plughost.config import HostOptions
from plughost.errors import ActivationError, DeactivationError
from plughost.events import EventEmitter
from plughost.faults import FaultEvent, FaultMonitor, HealthMetrics
from plughost.hostapi import HostApiFactory, SurfaceBinding, create_host_api
from plughost.journal import FaultRecord, write_fault
from plughost.loader import ModuleLoader
from plughost.logs import LogRedirect
from plughost.plugins.base import PluginModule, describe_capabilities, get_capability
from plughost.state import State, StateStore
from plughost.telemetry import TelemetrySink

logger = logging.getLogger(__name__)

SURFACE_LAUNCHED = "surface_did_launch"

# Settings forwarded to the plugin only when the consumer sets them.
AUTO_APPROVAL_SETTINGS: tuple[str, ...] = (
    "auto_approval_enabled",
    "always_allow_read_only",
    "always_allow_read_only_outside_workspace",
    "always_allow_write",
    "always_allow_write_outside_workspace",
    "always_allow_write_protected",
    "always_allow_browser",
    "always_approve_resubmit",
    "request_delay_seconds",
    "always_allow_mcp",
    "always_allow_mode_switch",
    "always_allow_subtasks",
    "always_allow_execute",
    "allowed_commands",
    "denied_commands",
    "always_allow_followup_questions",
    "followup_auto_approve_timeout_ms",
    "always_allow_update_todo_list",
)


class LifecycleState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    DEACTIVATING = "deactivating"
    DEACTIVATED = "deactivated"


class ConsumerAPI:
    """What the consumer holds after :meth:`HostEmulator.activate`.

    After a failed activation the same object is returned in degraded form:
    ``get_state`` yields None and ``update_state`` does nothing, while
    ``send_message`` keeps emitting.
    """

    def __init__(self, host: HostEmulator) -> None:
        self._host = host

    def get_state(self) -> State | None:
        return self._host.state.snapshot()

    def send_message(self, message: Message) -> None:
        self._host.bridge.emit_raw(message)

    def update_state(self, updates: Mapping[str, Any]) -> None:
        self._host.state.update(updates)


class HostEmulator(EventEmitter):
    """Loads a plugin, contains its faults and bridges its messages.

    Args:
        options: Host options.
        host_api_factory: Builds the host API mock for each activation.
        telemetry: Sink for message-flow counters.
        loader: Module loader; defaults to one bound to
            ``options.host_api_name``.
        clock: Epoch-seconds clock for cooldowns, fingerprints and fault
            timestamps.
    """

    def __init__(
        self,
        options: HostOptions,
        *,
        host_api_factory: HostApiFactory = create_host_api,
        telemetry: TelemetrySink | None = None,
        loader: ModuleLoader | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__()
        self.options = options
        self._host_api_factory = host_api_factory
        self._clock = clock
        self.lifecycle = LifecycleState.UNINITIALIZED

        self.monitor = FaultMonitor(
            self._on_fault,
            max_errors_before_warning=options.tuning.max_errors_before_warning,
            clock=clock,
        )
        self.state = StateStore(self.monitor, on_change=lambda s: self.bridge.broadcast_state(s))
        self.bridge = MessageBridge(
            self.state,
            self.monitor,
            emit=lambda message: self.emit("message", message),
            telemetry=telemetry,
            tuning=options.tuning,
            clock=clock,
        )
        self.loader = loader or ModuleLoader(options.host_api_name)

        self._log_redirect = LogRedirect()
        self._api = ConsumerAPI(self)
        self._module: PluginModule | None = None
        self._plugin_api: Any = None
        self._host_api: ModuleType | None = None
        self._render_surfaces: dict[str, Any] = {}
        self._initial_setup = True
        self._last_launch = 0.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_activated(self) -> bool:
        return self.lifecycle is LifecycleState.ACTIVATED

    @property
    def health(self) -> HealthMetrics:
        return self.monitor.health

    @property
    def plugin_api(self) -> Any:
        """The value the plugin's ``activate`` returned (None if absent)."""
        return self._plugin_api

    def get_consumer_api(self) -> ConsumerAPI:
        return self._api

    async def activate(self) -> ConsumerAPI:
        """Load and activate the plugin.

        Never raises. On failure a fault event with context ``"activation"``
        is emitted and the degraded consumer API is returned.
        """
        if self.lifecycle is LifecycleState.ACTIVATED:
            return self._api
        if self.lifecycle is not LifecycleState.UNINITIALIZED:
            logger.warning(
                "Cannot activate from state %s; create a new emulator", self.lifecycle.value
            )
            return self._api

        self.lifecycle = LifecycleState.ACTIVATING
        try:
            logger.info("Activating plugin...")
            self.monitor.install_process_handlers()
            self._log_redirect.install()
            self._host_api = self._host_api_factory(self.options, self)
            self._module = self.loader.load_plugin(self.options.plugin_file(), self._host_api)
            await self._activate_plugin(self._module, self._host_api)
        except Exception as exc:
            logger.error("Failed to activate plugin: %s", exc)
            self._teardown()
            self.lifecycle = LifecycleState.DEACTIVATED
            self.monitor.report(exc, "activation", recoverable=False)
            return self._api

        self.lifecycle = LifecycleState.ACTIVATED
        logger.info("Plugin activated successfully")
        self.emit("activated", self._api)
        return self._api

    async def _activate_plugin(self, module: PluginModule, host_api: ModuleType) -> None:
        logger.info("Calling plugin activate function...")
        try:
            result = module.activate(host_api.context)
            if inspect.isawaitable(result):
                result = await result
        except SystemExit as exc:
            raise ActivationError(f"Plugin activate() called sys.exit({exc.code!r})") from exc
        except Exception as exc:
            raise ActivationError(f"Plugin activate() failed: {exc}") from exc

        self._plugin_api = result
        if result is None:
            logger.warning("Plugin activation returned None, continuing with limited functionality")
        else:
            logger.info("Plugin API capabilities: %s", describe_capabilities(result))

        self.state.initialize(self.options)

    async def deactivate(self) -> None:
        """Deactivate the plugin and release everything activation installed.

        Safe to call in any state and more than once.

        Raises:
            DeactivationError: If the plugin's own ``deactivate`` hook raised.
                Cleanup has completed by then.
        """
        if self.lifecycle is not LifecycleState.ACTIVATED:
            return

        self.lifecycle = LifecycleState.DEACTIVATING
        logger.info("Deactivating plugin...")

        hook_error: Exception | SystemExit | None = None
        hook = getattr(self._module, "deactivate", None)
        if callable(hook):
            try:
                result = hook()
                if inspect.isawaitable(result):
                    await result
            except (Exception, SystemExit) as exc:
                logger.error("Error during plugin deactivation: %s", exc)
                hook_error = exc

        if self._host_api is not None:
            for subscription in list(self._host_api.context.subscriptions):
                dispose = getattr(subscription, "dispose", None)
                if callable(dispose):
                    self.monitor.safe_call(dispose, "dispose-subscription")

        self._teardown()
        self.lifecycle = LifecycleState.DEACTIVATED
        self.remove_all_listeners()
        logger.info("Plugin deactivated")

        if hook_error is not None:
            raise DeactivationError(f"Plugin deactivate() failed: {hook_error}") from hook_error

    def _teardown(self) -> None:
        window = getattr(self._host_api, "window", None)
        if callable(getattr(window, "dispose", None)):
            window.dispose()
        self._log_redirect.restore()
        self.monitor.remove_process_handlers()
        self.state.clear()
        self.bridge.reset()
        self._module = None
        self._plugin_api = None
        self._host_api = None
        self._render_surfaces.clear()
        self._last_launch = 0.0

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    async def send_inbound_message(self, message: Message) -> None:
        """Deliver a consumer message to the plugin. Never raises."""
        msg_type = message.get("type") if isinstance(message, dict) else None
        await self.monitor.safe_execute(
            lambda: self._dispatch_inbound(message), f"inbound-message-{msg_type}"
        )

    async def _dispatch_inbound(self, message: Message) -> None:
        msg_type = message.get("type")
        logger.debug("Processing inbound message: %s", msg_type)

        if self.lifecycle is not LifecycleState.ACTIVATED:
            logger.warning("Plugin not activated, ignoring message %s", msg_type)
            return

        if not self.bridge.ready:
            self.bridge.enqueue(message)
            return

        self.bridge.note_inbound(str(msg_type))

        if msg_type == SURFACE_LAUNCHED:
            now = self._clock()
            if now - self._last_launch < self.options.tuning.readiness_cooldown_seconds:
                logger.debug("Ignoring %s - too soon after the last one", msg_type)
                return
            self._last_launch = now
            await self._handle_surface_launch()

        surface = self._primary_surface()
        delivered = False
        if isinstance(surface, SurfaceBinding):
            delivered = await surface.deliver(message)
        if not delivered:
            logger.warning("No render surface accepts consumer messages; dropped %s", msg_type)

        self._apply_local_state(message)

    async def _handle_surface_launch(self) -> None:
        get_state = get_capability(self._plugin_api, "get_state")
        if get_state is not None:
            snapshot = await self.monitor.safe_execute(get_state, "get_state")
            if isinstance(snapshot, Mapping) and self.state.merge_plugin_snapshot(snapshot):
                logger.debug("Synced state with plugin on surface launch")
                return
        self.state.broadcast()

    def _apply_local_state(self, message: Message) -> None:
        msg_type = message.get("type")
        if msg_type == CONFIG_UPSERT:
            config = message.get("api_configuration")
            if message.get("text") and isinstance(config, Mapping):
                self.state.apply_config_upsert(message["text"], config)
        elif msg_type == "load_api_configuration":
            logger.debug("Profile loading requested but managed by the consumer: %s", message.get("text"))
        elif msg_type == "mode":
            if message.get("text"):
                self.state.set_mode(message["text"])
        elif msg_type == "clear_task":
            self.state.clear_transcript()
        elif msg_type == "select_images":
            # Image picking needs a GUI; answer with an empty selection.
            self.bridge.emit_raw(
                {
                    "type": "selected_images",
                    "images": [],
                    "context": message.get("context") or "chat",
                    "message_ts": message.get("message_ts"),
                }
            )

    def _primary_surface(self) -> Any:
        surface = self._render_surfaces.get(self.options.render_surface_id)
        if surface is None and self._render_surfaces:
            surface = next(iter(self._render_surfaces.values()))
        return surface

    # ------------------------------------------------------------------
    # Configuration injection
    # ------------------------------------------------------------------

    async def inject_configuration(self, config: Mapping[str, Any]) -> None:
        """Merge consumer configuration into the state and sync it to the plugin."""
        if not self.state.initialized:
            logger.warning("Cannot inject configuration: no current state")
            return
        self.state.inject_config(config)
        await self.sync_configuration_messages(config)

    async def sync_configuration_messages(self, config: Mapping[str, Any]) -> None:
        """Send the plugin one inbound message per setting present in *config*."""
        if config.get("api_configuration"):
            await self.send_inbound_message(
                {
                    "type": CONFIG_UPSERT,
                    "text": config.get("current_api_config_name") or "default",
                    "api_configuration": config["api_configuration"],
                }
            )

        if config.get("mode"):
            await self.send_inbound_message({"type": "mode", "text": config["mode"]})

        if config.get("telemetry_setting"):
            await self.send_inbound_message(
                {"type": "telemetry_setting", "text": config["telemetry_setting"]}
            )

        current = self.state.snapshot() or {}
        experiments = current.get("experiments") or config.get("experiments")
        if experiments:
            await self._send_settings({"experiments": experiments})

        approvals = {key: config[key] for key in AUTO_APPROVAL_SETTINGS if config.get(key) is not None}
        if approvals:
            await self._send_settings(approvals)
            logger.debug("Auto-approval settings synchronized: %s", sorted(approvals))

        prompt = config.get("append_system_prompt") or self.options.append_system_prompt
        if prompt:
            await self._send_settings({"append_system_prompt": prompt})

    async def _send_settings(self, settings: dict[str, Any]) -> None:
        await self.send_inbound_message({"type": "update_settings", "updated_settings": settings})

    # ------------------------------------------------------------------
    # Render-surface registry (called from the host API mock)
    # ------------------------------------------------------------------

    def register_render_surface(self, view_id: str, surface: Any) -> None:
        self._render_surfaces[view_id] = surface
        logger.info("Render surface registered: %s", view_id)

    def unregister_render_surface(self, view_id: str) -> None:
        self._render_surfaces.pop(view_id, None)
        logger.debug("Render surface unregistered: %s", view_id)

    def mark_render_surface_ready(self) -> None:
        """Latch readiness and flush queued inbound messages in the background."""
        if self.lifecycle in (LifecycleState.DEACTIVATING, LifecycleState.DEACTIVATED):
            logger.debug("Ignoring render surface readiness in state %s", self.lifecycle.value)
            return
        self.bridge.mark_ready()
        self._initial_setup = False
        logger.info("Render surface ready, flushing pending messages")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; call flush_pending_messages() to deliver the queue")
            return
        self.bridge.track(loop.create_task(self.flush_pending_messages()))

    def is_render_surface_ready(self) -> bool:
        return self.bridge.ready

    def is_in_initial_setup(self) -> bool:
        return self._initial_setup

    def post_plugin_message(self, message: Message) -> None:
        self.bridge.relay_outbound(message)

    async def flush_pending_messages(self) -> None:
        await self.bridge.flush_pending(self.send_inbound_message)

    async def drain(self) -> None:
        """Wait for background deliveries started by a flush."""
        await self.bridge.drain()

    # ------------------------------------------------------------------
    # Faults
    # ------------------------------------------------------------------

    def _on_fault(self, event: FaultEvent) -> None:
        self.emit("fault", event)
        if not self.options.record_faults:
            return
        record = FaultRecord(
            context=event.context,
            error=str(event.error),
            recoverable=event.recoverable,
            error_type=type(event.error).__name__,
        )
        try:
            write_fault(self.options.workspace(), record)
        except OSError as exc:
            logger.warning("Could not write fault journal: %s", exc)
