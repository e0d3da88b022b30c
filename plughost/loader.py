"""Plugin module loader.

Loading a plugin does three things the normal import system does not:

1. The plugin's host API import (``import hostapi``) resolves to the
   in-memory mock built for this activation.
2. Every source module first imported while the plugin loads gets ``print``
   rebound to :func:`plughost.logs.plugin_print` before its body runs. That
   covers modules under the plugin root and dependencies found anywhere on
   ``sys.path``; modules already imported before the load are left alone.
3. Stale modules from an earlier load are evicted and plugin source is
   always compiled from text, so reloading picks up edits.

All hooks are installed right before the plugin executes and removed as soon
as the load finishes; modules imported afterwards are untouched.
"""

from __future__ import annotations

import importlib
import importlib.abc
import importlib.machinery
import importlib.util
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from types import CodeType, ModuleType
from typing import Any, cast

from plughost.errors import LoadError
from plughost.logs import plugin_print
from plughost.plugins.base import PluginModule

logger = logging.getLogger(__name__)

_MISSING = object()


class _LogInjectingLoader(importlib.machinery.SourceFileLoader):
    """Source loader that seeds each module's globals with the log shim."""

    def exec_module(self, module: ModuleType) -> None:
        module.__dict__["print"] = plugin_print
        super().exec_module(module)


class _FreshSourceLoader(_LogInjectingLoader):
    """Log-injecting loader for plugin-local files that bypasses bytecode caches."""

    def get_code(self, fullname: str) -> CodeType:
        # A .pyc from an earlier cycle must not win.
        source_path = self.get_filename(fullname)
        return cast(CodeType, self.source_to_code(self.get_data(source_path), source_path))


class _PluginSourceFinder(importlib.abc.MetaPathFinder):
    """Routes every source module imported during a load through the log shim.

    The import system only consults finders for names missing from
    ``sys.modules``, so whatever reaches :meth:`find_spec` is being imported
    for the first time on behalf of the plugin.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.injected: list[str] = []

    def find_spec(
        self,
        fullname: str,
        path: Sequence[str] | None,
        target: ModuleType | None = None,
    ) -> importlib.machinery.ModuleSpec | None:
        spec = importlib.machinery.PathFinder.find_spec(fullname, path)
        if spec is None or spec.origin is None:
            return None
        if not isinstance(spec.loader, importlib.machinery.SourceFileLoader):
            return None
        if Path(spec.origin).resolve().is_relative_to(self.root):
            spec.loader = _FreshSourceLoader(fullname, spec.origin)
        else:
            spec.loader = _LogInjectingLoader(fullname, spec.origin)
        self.injected.append(fullname)
        return spec


class ModuleLoader:
    """Loads plugin modules against an injected host API object.

    Args:
        host_api_name: The module name the plugin imports its host API as.
    """

    def __init__(self, host_api_name: str = "hostapi") -> None:
        self.host_api_name = host_api_name
        self.last_injected: list[str] = []

    def load_plugin(self, path: Path | str, host_api: Any) -> PluginModule:
        """Load the plugin at *path* with *host_api* bound to the host API name.

        Args:
            path: A ``.py`` file or a package directory.
            host_api: The object ``import <host_api_name>`` should yield.

        Returns:
            The executed plugin module.

        Raises:
            LoadError: If the plugin cannot be found or executed, calls
                ``sys.exit`` while loading, or does not export a callable
                ``activate``.
        """
        plugin_path = Path(path).resolve()
        name, entry, root, is_package = _describe_plugin(plugin_path)
        logger.info("Loading plugin from: %s", plugin_path)

        self._evict_stale(name, root)
        importlib.invalidate_caches()

        finder = _PluginSourceFinder(root)
        previous_api = sys.modules.get(self.host_api_name, _MISSING)
        sys.modules[self.host_api_name] = host_api
        sys.meta_path.insert(0, finder)
        sys.path.insert(0, str(root))
        try:
            module = self._execute(name, entry, is_package)
        except SystemExit as exc:
            # Plugin code must not end the host process.
            logger.error("Plugin called sys.exit(%r) while loading", exc.code)
            raise LoadError(f"Failed to load plugin: sys.exit({exc.code!r}) called") from exc
        except Exception as exc:
            logger.error("Failed to load plugin module: %s", exc)
            raise LoadError(f"Failed to load plugin: {exc}") from exc
        finally:
            _remove(sys.meta_path, finder)
            _remove(sys.path, str(root))
            if previous_api is _MISSING:
                sys.modules.pop(self.host_api_name, None)
            else:
                sys.modules[self.host_api_name] = previous_api
            self.last_injected = [name, *finder.injected]

        if not callable(getattr(module, "activate", None)):
            sys.modules.pop(name, None)
            raise LoadError("Plugin module does not export an activate function")

        logger.info("Plugin module %s loaded (%d modules redirected)", name, len(self.last_injected))
        return cast(PluginModule, module)

    def _execute(self, name: str, entry: Path, is_package: bool) -> ModuleType:
        loader = _FreshSourceLoader(name, str(entry))
        if is_package:
            spec = importlib.util.spec_from_file_location(
                name, entry, loader=loader, submodule_search_locations=[str(entry.parent)]
            )
        else:
            spec = importlib.util.spec_from_file_location(name, entry, loader=loader)
        if spec is None:
            raise ImportError(f"Cannot build an import spec for {entry}")

        module = importlib.util.module_from_spec(spec)
        sys.modules[name] = module
        try:
            loader.exec_module(module)
        except BaseException:
            sys.modules.pop(name, None)
            raise
        return module

    def _evict_stale(self, name: str, root: Path) -> None:
        stale = []
        for mod_name, module in list(sys.modules.items()):
            if mod_name == name or mod_name.startswith(name + "."):
                stale.append(mod_name)
                continue
            origin = getattr(module, "__file__", None)
            if origin and Path(origin).resolve().is_relative_to(root):
                stale.append(mod_name)
        for mod_name in stale:
            del sys.modules[mod_name]
        if stale:
            logger.debug("Evicted %d stale plugin modules", len(stale))


def _describe_plugin(plugin_path: Path) -> tuple[str, Path, Path, bool]:
    """Return ``(module name, entry file, plugin root, is package)``."""
    if plugin_path.is_dir():
        entry = plugin_path / "__init__.py"
        if not entry.is_file():
            raise LoadError(f"Plugin directory has no __init__.py: {plugin_path}")
        return plugin_path.name, entry, plugin_path, True
    if plugin_path.is_file() and plugin_path.suffix == ".py":
        return plugin_path.stem, plugin_path, plugin_path.parent, False
    raise LoadError(f"Plugin not found or not a Python module: {plugin_path}")


def _remove(items: list[Any], item: Any) -> None:
    try:
        items.remove(item)
    except ValueError:
        pass
