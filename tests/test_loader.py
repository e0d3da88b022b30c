"""Tests for plughost.loader."""

from __future__ import annotations

import importlib.util
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from types import ModuleType, SimpleNamespace

import pytest

from plughost.errors import LoadError
from plughost.loader import ModuleLoader
from plughost.logs import PLUGIN_LOGGER, LogRedirect, plugin_print


@pytest.fixture()
def fake_api() -> ModuleType:
    module = ModuleType("hostapi")
    module.marker = "mock"  # type: ignore[attr-defined]
    return module


@pytest.fixture()
def loader() -> ModuleLoader:
    return ModuleLoader("hostapi")


class TestLoadPlugin:
    def test_loads_module_with_activate(
        self, loader: ModuleLoader, fake_api: ModuleType, write_plugin: Callable[..., Path]
    ) -> None:
        path = write_plugin("def activate(context):\n    return {'ok': True}\n", name="simple_plugin")
        module = loader.load_plugin(path, fake_api)
        assert module.activate(None) == {"ok": True}
        assert sys.modules["simple_plugin"] is module

    def test_missing_activate_is_load_error(
        self, loader: ModuleLoader, fake_api: ModuleType, write_plugin: Callable[..., Path]
    ) -> None:
        path = write_plugin("VALUE = 1\n", name="no_activate")
        with pytest.raises(LoadError, match="does not export an activate function"):
            loader.load_plugin(path, fake_api)
        assert "no_activate" not in sys.modules

    def test_non_callable_activate_is_load_error(
        self, loader: ModuleLoader, fake_api: ModuleType, write_plugin: Callable[..., Path]
    ) -> None:
        path = write_plugin("activate = 'not a function'\n", name="bad_activate")
        with pytest.raises(LoadError):
            loader.load_plugin(path, fake_api)

    def test_execution_error_wrapped(
        self, loader: ModuleLoader, fake_api: ModuleType, write_plugin: Callable[..., Path]
    ) -> None:
        path = write_plugin("raise RuntimeError('broken at import')\n", name="broken_plugin")
        with pytest.raises(LoadError, match="Failed to load plugin: broken at import") as info:
            loader.load_plugin(path, fake_api)
        assert isinstance(info.value.__cause__, RuntimeError)
        assert "broken_plugin" not in sys.modules

    def test_syntax_error_wrapped(
        self, loader: ModuleLoader, fake_api: ModuleType, write_plugin: Callable[..., Path]
    ) -> None:
        path = write_plugin("def activate(:\n", name="syntax_plugin")
        with pytest.raises(LoadError, match="Failed to load plugin"):
            loader.load_plugin(path, fake_api)

    def test_missing_path(self, loader: ModuleLoader, fake_api: ModuleType, tmp_path: Path) -> None:
        with pytest.raises(LoadError, match="not found"):
            loader.load_plugin(tmp_path / "nope.py", fake_api)

    def test_directory_without_init(
        self, loader: ModuleLoader, fake_api: ModuleType, tmp_path: Path
    ) -> None:
        (tmp_path / "empty_pkg").mkdir()
        with pytest.raises(LoadError, match="no __init__.py"):
            loader.load_plugin(tmp_path / "empty_pkg", fake_api)


class TestHostApiRedirection:
    def test_plugin_imports_mock(
        self, loader: ModuleLoader, fake_api: ModuleType, write_plugin: Callable[..., Path]
    ) -> None:
        source = """
        import hostapi

        SEEN = hostapi.marker

        def activate(context):
            return None
        """
        module = loader.load_plugin(write_plugin(source, name="api_plugin"), fake_api)
        assert module.SEEN == "mock"  # type: ignore[attr-defined]

    def test_binding_removed_after_load(
        self, loader: ModuleLoader, fake_api: ModuleType, write_plugin: Callable[..., Path]
    ) -> None:
        path = write_plugin("import hostapi\ndef activate(c):\n    pass\n", name="api_plugin2")
        loader.load_plugin(path, fake_api)
        assert "hostapi" not in sys.modules

    def test_previous_binding_restored(
        self,
        loader: ModuleLoader,
        fake_api: ModuleType,
        write_plugin: Callable[..., Path],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        previous = SimpleNamespace(name="previous")
        monkeypatch.setitem(sys.modules, "hostapi", previous)
        path = write_plugin("import hostapi\ndef activate(c):\n    pass\n", name="api_plugin3")
        loader.load_plugin(path, fake_api)
        assert sys.modules["hostapi"] is previous

    def test_binding_restored_after_failure(
        self, loader: ModuleLoader, fake_api: ModuleType, write_plugin: Callable[..., Path]
    ) -> None:
        path = write_plugin("import hostapi\nraise ValueError('x')\n", name="api_plugin4")
        with pytest.raises(LoadError):
            loader.load_plugin(path, fake_api)
        assert "hostapi" not in sys.modules

    def test_custom_host_api_name(
        self, fake_api: ModuleType, write_plugin: Callable[..., Path]
    ) -> None:
        loader = ModuleLoader("ide_api")
        source = """
        import ide_api as api

        SEEN = api.marker

        def activate(context):
            return None
        """
        module = loader.load_plugin(write_plugin(source, name="custom_name_plugin"), fake_api)
        assert module.SEEN == "mock"  # type: ignore[attr-defined]
        assert "ide_api" not in sys.modules


class TestLogInjection:
    def test_print_bound_in_plugin_and_dependencies(
        self, loader: ModuleLoader, fake_api: ModuleType, write_plugin: Callable[..., Path]
    ) -> None:
        source = """
        import helper

        def activate(context):
            return helper.greet()
        """
        extra = {
            "helper.py": """
            import vendored.deep

            def greet():
                print("hello from helper")
                return vendored.deep.VALUE
            """,
            "vendored/__init__.py": "",
            "vendored/deep.py": "VALUE = 7\n",
        }
        module = loader.load_plugin(write_plugin(source, name="inject_plugin", extra=extra), fake_api)

        assert module.__dict__["print"] is plugin_print
        assert sys.modules["helper"].__dict__["print"] is plugin_print
        assert sys.modules["vendored.deep"].__dict__["print"] is plugin_print
        assert set(loader.last_injected) >= {"inject_plugin", "helper", "vendored", "vendored.deep"}

    def test_transitive_output_reaches_plugin_logger(
        self,
        loader: ModuleLoader,
        fake_api: ModuleType,
        write_plugin: Callable[..., Path],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        source = """
        import chatty

        def activate(context):
            chatty.talk()
        """
        extra = {
            "chatty.py": """
            import sys

            def talk():
                print("to stdout", {"n": 1})
                print("to stderr", file=sys.stderr)
            """
        }
        module = loader.load_plugin(write_plugin(source, name="chatty_plugin", extra=extra), fake_api)

        redirect = LogRedirect()
        redirect.install()
        try:
            with caplog.at_level(logging.INFO, logger=PLUGIN_LOGGER):
                module.activate(None)
        finally:
            redirect.restore()

        records = [(r.levelno, r.getMessage()) for r in caplog.records if r.name == PLUGIN_LOGGER]
        assert (logging.INFO, 'to stdout {"n": 1}') in records
        assert (logging.ERROR, "to stderr") in records

    def test_dependency_outside_plugin_root_redirected(
        self,
        loader: ModuleLoader,
        fake_api: ModuleType,
        write_plugin: Callable[..., Path],
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        site = tmp_path / "site-packages"
        site.mkdir()
        (site / "outside_dep.py").write_text(
            "print('from outside dep')\n\nVALUE = 3\n", encoding="utf-8"
        )
        monkeypatch.syspath_prepend(str(site))
        source = """
        import outside_dep

        print("from plugin")

        def activate(context):
            return outside_dep.VALUE
        """
        path = write_plugin(source, name="outside_user")

        redirect = LogRedirect()
        redirect.install()
        try:
            with caplog.at_level(logging.INFO, logger=PLUGIN_LOGGER):
                module = loader.load_plugin(path, fake_api)
        finally:
            redirect.restore()
            dep = sys.modules.pop("outside_dep", None)

        messages = [r.getMessage() for r in caplog.records if r.name == PLUGIN_LOGGER]
        assert messages == ["from outside dep", "from plugin"]
        assert "from outside dep" not in capsys.readouterr().out
        assert module.activate(None) == 3
        assert dep is not None and dep.__dict__["print"] is plugin_print
        assert "outside_dep" in loader.last_injected

    def test_modules_imported_before_load_untouched(
        self,
        loader: ModuleLoader,
        fake_api: ModuleType,
        write_plugin: Callable[..., Path],
    ) -> None:
        path = write_plugin("import textwrap\ndef activate(c):\n    pass\n", name="stdlib_user")
        loader.load_plugin(path, fake_api)
        assert "print" not in sys.modules["textwrap"].__dict__
        assert "textwrap" not in loader.last_injected

    def test_hooks_removed_after_load(
        self, loader: ModuleLoader, fake_api: ModuleType, write_plugin: Callable[..., Path]
    ) -> None:
        path = write_plugin("def activate(c):\n    pass\n", name="hook_plugin")
        meta_before = list(sys.meta_path)
        path_before = list(sys.path)
        loader.load_plugin(path, fake_api)
        assert sys.meta_path == meta_before
        assert sys.path == path_before

    def test_later_imports_not_injected(
        self, loader: ModuleLoader, fake_api: ModuleType, write_plugin: Callable[..., Path]
    ) -> None:
        source = """
        def activate(context):
            return None
        """
        extra = {"late.py": "VALUE = 1\n"}
        path = write_plugin(source, name="late_plugin", extra=extra)
        loader.load_plugin(path, fake_api)

        spec = importlib.util.spec_from_file_location("late", path.parent / "late.py")
        assert spec is not None and spec.loader is not None
        late = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(late)

        assert "print" not in late.__dict__
        assert "late" not in loader.last_injected


class TestReload:
    def test_reload_observes_fresh_code(
        self, loader: ModuleLoader, fake_api: ModuleType, write_plugin: Callable[..., Path]
    ) -> None:
        path = write_plugin(
            "import helper2\nVALUE = 1\ndef activate(c):\n    return VALUE + helper2.N\n",
            name="fresh_plugin",
            extra={"helper2.py": "N = 10\n"},
        )
        assert loader.load_plugin(path, fake_api).activate(None) == 11

        path.write_text(
            "import helper2\nVALUE = 2\ndef activate(c):\n    return VALUE + helper2.N\n",
            encoding="utf-8",
        )
        (path.parent / "helper2.py").write_text("N = 20\n", encoding="utf-8")

        assert loader.load_plugin(path, fake_api).activate(None) == 22


class TestPackagePlugin:
    def test_package_with_submodule(
        self, loader: ModuleLoader, fake_api: ModuleType, tmp_path: Path
    ) -> None:
        pkg = tmp_path / "pkg_plugin"
        pkg.mkdir()
        (pkg / "__init__.py").write_text(
            "from pkg_plugin.core import run\n\ndef activate(context):\n    return run()\n",
            encoding="utf-8",
        )
        (pkg / "core.py").write_text(
            "def run():\n    print('core running')\n    return 'ran'\n", encoding="utf-8"
        )

        module = loader.load_plugin(pkg, fake_api)

        assert module.activate(None) == "ran"
        assert sys.modules["pkg_plugin.core"].__dict__["print"] is plugin_print
        assert "pkg_plugin.core" in loader.last_injected
