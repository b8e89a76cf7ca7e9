"""Shared fixtures: on-disk plugin trees and in-process plugin classes."""

import json
import sys
from pathlib import Path

import pytest

from plugin_runtime import BasePlugin, PluginLoadResult, PluginMetadata, PluginRuntime, Settings
from plugin_runtime.models import PluginDiscoveryResult
from plugin_runtime.sources import PLUGIN_MODULE_PREFIX

PLUGIN_TEMPLATE = '''
from plugin_runtime import BasePlugin


class Plugin(BasePlugin):
    greeting = __GREETING__
    fail_on = __FAIL_ON__

    def on_load(self):
        self._record("load")

    async def on_activate(self):
        self._record("activate")

    async def on_deactivate(self):
        self._record("deactivate")

    def on_unload(self):
        self._record("unload")

    def _record(self, hook):
        if hook == self.fail_on:
            raise RuntimeError(f"{hook} exploded")
        if isinstance(self.api, list):
            self.api.append((self.id, hook))
'''


def render_plugin(greeting: str = "hello", fail_on: str | None = None) -> str:
    return PLUGIN_TEMPLATE.replace("__GREETING__", repr(greeting)).replace(
        "__FAIL_ON__", repr(fail_on)
    )


class RecordingPlugin(BasePlugin):
    """Appends ``(plugin_id, hook)`` to the bound api when it is a list."""

    fail_on = None

    def on_load(self):
        self._record("load")

    async def on_activate(self):
        self._record("activate")

    async def on_deactivate(self):
        self._record("deactivate")

    def on_unload(self):
        self._record("unload")

    def _record(self, hook):
        if hook == self.fail_on:
            raise RuntimeError(f"{hook} exploded")
        if isinstance(self.api, list):
            self.api.append((self.id, hook))


@pytest.fixture(autouse=True)
def _forget_plugin_modules():
    """Drop file-loaded plugin modules between tests."""
    yield
    for name in [m for m in sys.modules if m.startswith(f"{PLUGIN_MODULE_PREFIX}.")]:
        del sys.modules[name]


@pytest.fixture
def plugins_root(tmp_path) -> Path:
    root = tmp_path / "plugins"
    root.mkdir()
    return root


@pytest.fixture
def write_plugin(plugins_root):
    """Return a function writing ``<root>/<dir>/plugin.json`` plus its entry file.

    Manifest fields passed as None are left out of the manifest.
    """

    def _write(
        plugin_id: str,
        *,
        root: Path | None = None,
        dir_name: str | None = None,
        name: str | None = "",
        version: str | None = "1.0.0",
        entry: str | None = "main.py",
        dependencies: list[str] | None = None,
        permissions: list[str] | None = None,
        min_app_version: str | None = "1.0.0",
        keywords: list[str] | None = None,
        greeting: str = "hello",
        fail_on: str | None = None,
        source: str | None = None,
        write_entry: bool = True,
    ) -> Path:
        plugin_dir = (root or plugins_root) / (dir_name or plugin_id)
        plugin_dir.mkdir(parents=True, exist_ok=True)

        manifest = {
            "id": plugin_id,
            "name": name if name != "" else plugin_id.replace("-", " ").title(),
            "version": version,
            "entry": entry,
            "dependencies": dependencies,
            "permissions": permissions,
            "minAppVersion": min_app_version,
            "keywords": keywords,
        }
        manifest = {key: value for key, value in manifest.items() if value is not None}
        (plugin_dir / "plugin.json").write_text(json.dumps(manifest, indent=2))

        if write_entry and entry and entry.endswith(".py"):
            code = source if source is not None else render_plugin(greeting, fail_on)
            (plugin_dir / entry).write_text(code)
        return plugin_dir

    return _write


@pytest.fixture
def journal() -> list:
    """Lifecycle calls recorded by plugins bound to it as their api."""
    return []


@pytest.fixture
def make_settings(plugins_root, tmp_path):
    """Settings scoped to the test's plugin root, persistence off by default."""

    def _make(**overrides) -> Settings:
        values = {
            "plugin_directories": [str(plugins_root)],
            "state_dir": tmp_path / "state",
            "enable_state_persistence": False,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def plugin_class():
    """Return a RecordingPlugin subclass, optionally failing in one hook."""

    def _make(fail_on: str | None = None) -> type:
        return type("TestPlugin", (RecordingPlugin,), {"fail_on": fail_on})

    return _make


@pytest.fixture
def make_load_result(plugin_class):
    """Build a successful PluginLoadResult without touching the file system."""

    def _make(plugin_id: str, dependencies=(), cls: type | None = None, **metadata) -> PluginLoadResult:
        meta = PluginMetadata(
            id=plugin_id,
            name=metadata.pop("name", plugin_id.title()),
            version=metadata.pop("version", "1.0.0"),
            dependencies=list(dependencies),
            **metadata,
        )
        return PluginLoadResult(
            plugin_id=plugin_id,
            metadata=meta,
            success=True,
            plugin_class=cls or plugin_class(),
            load_time=1.0,
        )

    return _make


@pytest.fixture
def make_discovery_result(tmp_path):
    """Discovery result with no entry file, for module-source-driven loads."""

    def _make(plugin_id: str, **metadata) -> PluginDiscoveryResult:
        meta = PluginMetadata(
            id=plugin_id,
            name=metadata.pop("name", plugin_id.title()),
            version=metadata.pop("version", "1.0.0"),
            **metadata,
        )
        return PluginDiscoveryResult(metadata=meta, plugin_path=tmp_path / plugin_id)

    return _make


@pytest.fixture
def make_runtime(make_settings, journal):
    """PluginRuntime whose plugins record their hooks into ``journal``."""

    def _make(**overrides) -> PluginRuntime:
        return PluginRuntime(make_settings(**overrides), api_provider=lambda plugin_id: journal)

    return _make
