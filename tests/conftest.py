"""Shared test fixtures for plughost."""

from __future__ import annotations

import asyncio
import itertools
import sys
import textwrap
import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from plughost import logs
from plughost.config import HostOptions
from plughost.host import HostEmulator

# A plugin with a render surface that records every consumer message.
SURFACE_PLUGIN = """
import hostapi

RECEIVED = []
ACTIVATIONS = []
DISPOSED = []


class Provider:
    def __init__(self):
        self.view = None
        self.resolved_with = None

    def resolve_view(self, view, state):
        self.view = view
        self.resolved_with = state

    def handle_consumer_message(self, message):
        RECEIVED.append(message)
        if message.get("type") == "echo":
            self.view.post_message({"type": "echoed", "text": message.get("text")})


provider = Provider()


class Subscription:
    def dispose(self):
        DISPOSED.append(True)


def activate(context):
    ACTIVATIONS.append(context)
    print("surface plugin activated")
    context.subscriptions.append(hostapi.window.register_render_surface("sidebar", provider))
    context.subscriptions.append(Subscription())
    return {"get_state": lambda: {"mode": "plugin-mode", "chat_messages": [{"text": "hi"}]}}


def deactivate():
    print("surface plugin deactivated")
"""

_counter = itertools.count()


@pytest.fixture(autouse=True)
def _isolate_process_state(monkeypatch: pytest.MonkeyPatch) -> None:
    """Undo any process-wide hook a failing test leaves behind."""
    monkeypatch.setattr(threading, "excepthook", threading.excepthook)
    monkeypatch.setattr(logs, "_active_sink", None)
    monkeypatch.setattr(sys, "path", list(sys.path))
    monkeypatch.setattr(sys, "meta_path", list(sys.meta_path))


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    """Create an empty workspace directory."""
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture()
def write_plugin(tmp_path: Path) -> Callable[..., Path]:
    """Return a factory writing plugin source into its own directory.

    ``write_plugin(source, name="plugin", extra={"helper.py": "..."})``
    returns the path of the plugin file.
    """

    def _write(source: str, name: str = "plugin", extra: dict[str, str] | None = None) -> Path:
        root = tmp_path / f"plugins{next(_counter)}"
        root.mkdir()
        for filename, text in (extra or {}).items():
            target = root / filename
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(textwrap.dedent(text), encoding="utf-8")
        path = root / f"{name}.py"
        path.write_text(textwrap.dedent(source), encoding="utf-8")
        return path

    return _write


@pytest.fixture()
def make_options(workspace: Path) -> Callable[..., HostOptions]:
    """Return a factory for HostOptions rooted at the test workspace."""

    def _make(plugin_path: Path, **overrides: object) -> HostOptions:
        return HostOptions(plugin_path=str(plugin_path), workspace_path=str(workspace), **overrides)

    return _make


@pytest.fixture()
def surface_plugin(write_plugin: Callable[..., Path]) -> Path:
    """Write the standard render-surface plugin."""
    return write_plugin(SURFACE_PLUGIN, name="surface_plugin")


async def settle(host: HostEmulator) -> None:
    """Let render-surface resolution and background deliveries finish."""
    for _ in range(3):
        await asyncio.sleep(0)
    await host.drain()


def plugin_module(name: str = "surface_plugin"):
    """Return a loaded plugin module by name."""
    return sys.modules[name]
