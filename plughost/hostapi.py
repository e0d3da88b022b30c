"""Minimal stand-in for the plugin's native host API.

Only the pieces the emulator itself depends on live here: the activation
context with its disposables, and render-surface registration. Everything
the plugin does through its surface reaches the emulator via the narrow
:class:`SurfaceRegistry` interface, never through a global.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from types import ModuleType, SimpleNamespace
from typing import Any, Protocol

from plughost.config import HostOptions
from plughost.plugins.base import RenderSurface

logger = logging.getLogger(__name__)


class SurfaceRegistry(Protocol):
    """What the host API mock may ask of the emulator."""

    def register_render_surface(self, view_id: str, surface: Any) -> None: ...

    def unregister_render_surface(self, view_id: str) -> None: ...

    def mark_render_surface_ready(self) -> None: ...

    def is_in_initial_setup(self) -> bool: ...

    def post_plugin_message(self, message: dict[str, Any]) -> None: ...


HostApiFactory = Callable[[HostOptions, SurfaceRegistry], ModuleType]


class Disposable:
    """Resource handle released through :meth:`dispose`; safe to dispose twice."""

    def __init__(self, on_dispose: Callable[[], Any] | None = None) -> None:
        self._on_dispose = on_dispose
        self.disposed = False

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        if self._on_dispose is not None:
            self._on_dispose()


class HostContext:
    """The context object handed to ``activate``."""

    def __init__(self, options: HostOptions) -> None:
        self.subscriptions: list[Any] = []
        self.extension_path = str(options.extension_root())
        self.workspace_path = str(options.workspace())
        self.hosting_mode = options.hosting_mode
        self.global_state: dict[str, Any] = {}
        self.workspace_state: dict[str, Any] = {}


class SurfaceView:
    """The view object a render-surface provider draws into.

    Messages the plugin posts go to the emulator's outbound path; listeners
    registered with :meth:`on_did_receive_message` receive consumer messages
    when the provider has no ``handle_consumer_message`` of its own.
    """

    def __init__(self, view_id: str, registry: SurfaceRegistry) -> None:
        self.view_type = view_id
        self.title = view_id
        self.visible = True
        self.html = ""
        self._registry = registry
        self.listeners: list[Callable[[dict[str, Any]], Any]] = []

    def post_message(self, message: dict[str, Any]) -> bool:
        self._registry.post_plugin_message(message)
        return True

    def on_did_receive_message(self, listener: Callable[[dict[str, Any]], Any]) -> Disposable:
        self.listeners.append(listener)
        return Disposable(lambda: self.listeners.remove(listener))


class SurfaceBinding:
    """Registry entry pairing a provider with the view it was resolved into."""

    def __init__(self, provider: RenderSurface, view: SurfaceView) -> None:
        self.provider = provider
        self.view = view

    async def deliver(self, message: dict[str, Any]) -> bool:
        """Hand *message* to the provider or the view's listeners.

        Returns:
            False when nothing on this surface accepts consumer messages.
        """
        handler = getattr(self.provider, "handle_consumer_message", None)
        targets = [handler] if callable(handler) else list(self.view.listeners)
        for target in targets:
            result = target(message)
            if inspect.isawaitable(result):
                await result
        return bool(targets)


class Window:
    """``hostapi.window``: render-surface registration."""

    def __init__(self, registry: SurfaceRegistry) -> None:
        self._registry = registry
        self._pending: set[asyncio.Task[None]] = set()

    def register_render_surface(self, view_id: str, provider: RenderSurface) -> Disposable:
        """Register *provider* and resolve it into a view in the background.

        The emulator is marked ready once ``provider.resolve_view`` (if any)
        completes.
        """
        view = SurfaceView(view_id, self._registry)
        self._registry.register_render_surface(view_id, SurfaceBinding(provider, view))
        task = asyncio.get_running_loop().create_task(self._resolve(view_id, provider, view))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return Disposable(lambda: self._registry.unregister_render_surface(view_id))

    def dispose(self) -> None:
        """Cancel surface resolutions that have not finished yet."""
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            logger.debug("Cancelled %d pending render surface resolutions", len(self._pending))

    async def _resolve(self, view_id: str, provider: RenderSurface, view: SurfaceView) -> None:
        resolve = getattr(provider, "resolve_view", None)
        try:
            if callable(resolve):
                state = {"initial_setup": self._registry.is_in_initial_setup()}
                logger.debug("Resolving render surface %s (initial_setup=%s)", view_id, state["initial_setup"])
                result = resolve(view, state)
                if inspect.isawaitable(result):
                    await result
        except Exception:
            logger.exception("Error resolving render surface %s", view_id)
            return
        self._registry.mark_render_surface_ready()


def create_host_api(options: HostOptions, registry: SurfaceRegistry) -> ModuleType:
    """Build the module object the plugin imports as its host API.

    Args:
        options: Options of the hosting emulator.
        registry: The emulator, seen through its narrow registry interface.

    Returns:
        A module exposing ``context``, ``window``, ``env`` and ``Disposable``.
    """
    module = ModuleType(options.host_api_name, "In-process stand-in for the plugin host API.")
    module.context = HostContext(options)  # type: ignore[attr-defined]
    module.window = Window(registry)  # type: ignore[attr-defined]
    module.env = SimpleNamespace(  # type: ignore[attr-defined]
        machine_id=options.identity.machine_id,
        session_id=options.identity.session_id,
        app_name=options.identity.app_name,
        hosting_mode=options.hosting_mode,
    )
    module.Disposable = Disposable  # type: ignore[attr-defined]
    logger.debug("Host API mock created for %s", options.host_api_name)
    return module
