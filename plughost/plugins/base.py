"""Plugin interface definition.

A hosted plugin is a Python module (a single ``.py`` file or a package
directory) written against its native host's API, imported under a fixed
name (``hostapi`` by default)::

    import hostapi

    def activate(context):
        provider = SidebarProvider(context)
        context.subscriptions.append(
            hostapi.window.register_render_surface("sidebar", provider)
        )
        return {"get_state": provider.get_state}

    def deactivate():
        ...

``activate`` and ``deactivate`` may be plain functions or coroutine
functions. Whatever ``activate`` returns is the plugin API: an object or a
mapping offering any subset of :data:`CAPABILITIES`. ``None`` is allowed.

The render surface ``provider`` may implement ``resolve_view(view, state)``
and ``handle_consumer_message(message)``; both may be coroutines.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Protocol

CAPABILITIES: tuple[str, ...] = (
    "start_new_task",
    "send_message",
    "cancel_task",
    "condense",
    "condense_task_context",
    "handle_terminal_operation",
    "get_state",
)


class PluginModule(Protocol):
    """Structural type that every plugin module must satisfy.

    ``deactivate`` is optional and therefore not part of the protocol.
    """

    def activate(self, context: Any) -> Any: ...


class RenderSurface(Protocol):
    """Structural type of a render-surface provider.

    Both methods are looked up at runtime and may be missing: a provider
    without ``resolve_view`` is ready immediately, and one without
    ``handle_consumer_message`` receives consumer messages through the
    listeners it registers on its view.
    """

    def resolve_view(self, view: Any, state: dict[str, Any]) -> Any: ...

    def handle_consumer_message(self, message: dict[str, Any]) -> Any: ...


def get_capability(api: Any, name: str) -> Callable[..., Any] | None:
    """Return the callable capability *name* of *api*, or None if absent."""
    if api is None:
        return None
    if isinstance(api, Mapping):
        value = api.get(name)
    else:
        value = getattr(api, name, None)
    return value if callable(value) else None


def describe_capabilities(api: Any) -> dict[str, bool]:
    """Map each known capability name to whether *api* provides it."""
    return {name: get_capability(api, name) is not None for name in CAPABILITIES}
