"""Tests for module sources and the plugin loader."""

import asyncio
import sys
import types

import pytest

from plugin_runtime import BasePlugin
from plugin_runtime.discovery import DiscoveryConfig, PluginDiscovery
from plugin_runtime.loader import LoaderConfig, PluginLoader, candidate_names
from plugin_runtime.models import PluginMetadata
from plugin_runtime.sources import (
    FactoryModuleSource,
    FileModuleSource,
    InstalledModuleSource,
    module_name_for,
)


@pytest.fixture
def parse(plugins_root, write_plugin):
    discovery = PluginDiscovery(DiscoveryConfig(plugin_directories=[str(plugins_root)]))

    def _parse(plugin_id="demo", **kwargs):
        return discovery.parse_plugin_directory(write_plugin(plugin_id, **kwargs))

    return _parse


def _module(**attrs):
    module = types.ModuleType("fake_plugin_module")
    for name, value in attrs.items():
        setattr(module, name, value)
    return module


class DuckPlugin:
    """Structurally valid without subclassing BasePlugin."""

    def on_activate(self):
        pass


class TestFileLoading:
    """Tests for loading entry files from disk."""

    @pytest.mark.asyncio
    async def test_load_plugin_from_file(self, parse):
        loader = PluginLoader()

        result = await loader.load_plugin(parse())

        assert result.success
        assert result.error is None
        assert result.plugin_class.__name__ == "Plugin"
        assert issubclass(result.plugin_class, BasePlugin)
        assert result.load_time >= 0
        assert loader.is_plugin_loaded("demo")
        assert module_name_for("demo") in sys.modules

    @pytest.mark.asyncio
    async def test_cached_module_reused(self, parse):
        loader = PluginLoader()
        discovered = parse()

        first = await loader.load_plugin(discovered)
        second = await loader.load_plugin(discovered)

        assert second.module is first.module
        assert second.plugin_class is first.plugin_class

    @pytest.mark.asyncio
    async def test_cache_disabled_reimports(self, parse):
        loader = PluginLoader(LoaderConfig(enable_cache=False))
        discovered = parse()

        first = await loader.load_plugin(discovered)
        second = await loader.load_plugin(discovered)

        assert second.success
        assert second.module is not first.module
        assert loader.is_plugin_loaded("demo")

    @pytest.mark.asyncio
    async def test_import_error_reported(self, parse):
        loader = PluginLoader()

        result = await loader.load_plugin(parse(source="raise RuntimeError('boom at import')\n"))

        assert not result.success
        assert "boom at import" in result.error
        assert not loader.is_plugin_loaded("demo")
        assert module_name_for("demo") not in sys.modules

    @pytest.mark.asyncio
    async def test_syntax_error_reported(self, parse):
        loader = PluginLoader()

        result = await loader.load_plugin(parse(source="def broken(:\n"))

        assert not result.success
        assert result.error

    @pytest.mark.asyncio
    async def test_module_without_plugin_class_fails(self, parse):
        loader = PluginLoader()

        result = await loader.load_plugin(parse(source="VALUE = 1\n"))

        assert not result.success
        assert result.error == "Plugin module does not export a valid plugin class"
        assert module_name_for("demo") not in sys.modules

    @pytest.mark.asyncio
    async def test_module_without_plugin_class_allowed_in_development(self, parse):
        loader = PluginLoader(LoaderConfig(development=True))

        result = await loader.load_plugin(parse(source="VALUE = 1\n"))

        assert result.success
        assert result.plugin_class is None

    @pytest.mark.asyncio
    async def test_unload_plugin(self, parse):
        loader = PluginLoader()
        await loader.load_plugin(parse())

        assert loader.unload_plugin("demo") is True
        assert loader.unload_plugin("demo") is False
        assert not loader.is_plugin_loaded("demo")
        assert loader.get_loaded_module("demo") is None
        assert module_name_for("demo") not in sys.modules

    @pytest.mark.asyncio
    async def test_reload_plugin_picks_up_changes(self, parse):
        loader = PluginLoader()
        first = await loader.load_plugin(parse(greeting="hello"))

        second = await loader.reload_plugin(parse(greeting="hello again"))

        assert first.plugin_class.greeting == "hello"
        assert second.plugin_class.greeting == "hello again"

    @pytest.mark.asyncio
    async def test_load_stats(self, parse):
        loader = PluginLoader()
        await loader.load_plugin(parse())

        stats = loader.get_load_stats()

        assert stats["total_loaded"] == 1
        assert stats["in_flight"] == []
        assert stats["loaded_plugins"][0]["id"] == "demo"
        assert stats["loaded_plugins"][0]["source"] == "file"

    @pytest.mark.asyncio
    async def test_clear_cache(self, parse):
        loader = PluginLoader()
        await loader.load_plugin(parse("one"))
        await loader.load_plugin(parse("two"))

        loader.clear_cache()

        assert loader.get_load_stats()["total_loaded"] == 0
        assert module_name_for("one") not in sys.modules


class TestPermissions:
    """Tests for the load-time permission allow-list."""

    @pytest.mark.asyncio
    async def test_denied_permission_blocks_import(self, make_discovery_result):
        calls = []
        source = FactoryModuleSource({"cam": lambda: calls.append("imported")})
        loader = PluginLoader(sources=[source])

        result = await loader.load_plugin(make_discovery_result("cam", permissions=["camera"]))

        assert not result.success
        assert result.error == "Invalid permissions: Permission not allowed: camera"
        assert calls == []

    @pytest.mark.asyncio
    async def test_load_metadata_only(self, make_discovery_result):
        loader = PluginLoader(sources=[])

        ok = await loader.load_metadata_only(make_discovery_result("fine", permissions=["storage"]))
        denied = await loader.load_metadata_only(make_discovery_result("bad", permissions=["camera"]))

        assert ok.success
        assert ok.plugin_class is None
        assert not denied.success
        assert "camera" in denied.error

    @pytest.mark.asyncio
    async def test_update_config_changes_allow_list(self, make_discovery_result):
        source = FactoryModuleSource({"cam": lambda: _module(Plugin=DuckPlugin)})
        loader = PluginLoader(sources=[source])

        loader.update_config(allowed_permissions=["camera"])
        result = await loader.load_plugin(make_discovery_result("cam", permissions=["camera"]))

        assert result.success


class TestModuleSources:
    """Tests for source selection and the non-file sources."""

    @pytest.mark.asyncio
    async def test_factory_source(self, make_discovery_result):
        source = FactoryModuleSource()
        source.add("builtin", lambda: _module(Plugin=DuckPlugin))
        loader = PluginLoader(sources=[source])

        result = await loader.load_plugin(make_discovery_result("builtin"))

        assert result.success
        assert result.plugin_class is DuckPlugin
        assert loader.get_load_stats()["loaded_plugins"][0]["source"] == "factory"

    @pytest.mark.asyncio
    async def test_async_factory(self, make_discovery_result):
        async def build():
            await asyncio.sleep(0)
            return _module(Plugin=DuckPlugin)

        loader = PluginLoader(sources=[FactoryModuleSource({"builtin": build})])

        result = await loader.load_plugin(make_discovery_result("builtin"))

        assert result.success

    @pytest.mark.asyncio
    async def test_unsupported_entry(self, make_discovery_result):
        loader = PluginLoader(sources=[FactoryModuleSource()])

        result = await loader.load_plugin(make_discovery_result("orphan"))

        assert not result.success
        assert result.error.startswith("Unsupported plugin entry")

    @pytest.mark.asyncio
    async def test_added_source_takes_precedence(self, parse):
        loader = PluginLoader()
        loader.add_source(FactoryModuleSource({"demo": lambda: _module(Plugin=DuckPlugin)}))

        result = await loader.load_plugin(parse())

        assert result.plugin_class is DuckPlugin

    def test_factory_remove(self):
        source = FactoryModuleSource({"x": lambda: None})

        assert source.remove("x") is True
        assert source.remove("x") is False

    @pytest.mark.asyncio
    async def test_installed_module_source(self, tmp_path, monkeypatch, parse):
        site = tmp_path / "site"
        site.mkdir()
        (site / "installed_hello_plugin.py").write_text(
            "from plugin_runtime import BasePlugin\n\n\n"
            "class HelloPlugin(BasePlugin):\n"
            "    def on_activate(self):\n"
            "        pass\n\n"
            "    def on_deactivate(self):\n"
            "        pass\n"
        )
        monkeypatch.syspath_prepend(str(site))
        discovered = parse("hello", entry="module:installed_hello_plugin")

        try:
            result = await PluginLoader().load_plugin(discovered)
        finally:
            sys.modules.pop("installed_hello_plugin", None)

        assert InstalledModuleSource().supports(discovered)
        assert not FileModuleSource().supports(discovered)
        assert result.success
        assert result.plugin_class.__name__ == "HelloPlugin"

    @pytest.mark.asyncio
    async def test_installed_module_missing(self, parse):
        discovered = parse("ghost", entry="module:no_such_plugin_package_xyz")

        result = await PluginLoader().load_plugin(discovered)

        assert not result.success
        assert "no_such_plugin_package_xyz" in result.error


class TestConcurrency:
    """Tests for in-flight deduplication and the import timeout."""

    @pytest.mark.asyncio
    async def test_concurrent_loads_share_one_import(self, make_discovery_result):
        calls = []

        async def build():
            calls.append("import")
            await asyncio.sleep(0.05)
            return _module(Plugin=DuckPlugin)

        loader = PluginLoader(
            LoaderConfig(enable_cache=False),
            sources=[FactoryModuleSource({"slow": build})],
        )
        discovered = make_discovery_result("slow")

        first, second = await asyncio.gather(
            loader.load_plugin(discovered), loader.load_plugin(discovered)
        )

        assert calls == ["import"]
        assert first is second
        assert first.success

    @pytest.mark.asyncio
    async def test_timeout_reports_failure_and_discards_late_module(self, make_discovery_result):
        async def build():
            await asyncio.sleep(0.2)
            return _module(Plugin=DuckPlugin)

        loader = PluginLoader(
            LoaderConfig(load_timeout=0.05),
            sources=[FactoryModuleSource({"slow": build})],
        )

        result = await loader.load_plugin(make_discovery_result("slow"))

        assert not result.success
        assert result.error == "Plugin load timeout after 0.05s: slow"
        assert not loader.is_plugin_loaded("slow")

        await asyncio.sleep(0.3)
        assert not loader.is_plugin_loaded("slow")

    @pytest.mark.asyncio
    async def test_load_plugins_keeps_input_order(self, make_discovery_result):
        async def slow():
            await asyncio.sleep(0.02)
            return _module(Plugin=DuckPlugin)

        source = FactoryModuleSource({"a": slow, "b": lambda: _module(Plugin=DuckPlugin)})
        loader = PluginLoader(sources=[source])

        results = await loader.load_plugins(
            [make_discovery_result("a"), make_discovery_result("b"), make_discovery_result("c")]
        )

        assert [r.plugin_id for r in results] == ["a", "b", "c"]
        assert [r.success for r in results] == [True, True, False]


class TestClassExtraction:
    """Tests for picking the plugin class out of a module."""

    def test_candidate_names(self):
        names = candidate_names(PluginMetadata(id="hello-world", name="Hello"))

        assert names[:2] == ["default", "Plugin"]
        for expected in ("Hello", "HelloPlugin", "hello-world", "helloworld", "hello_world", "HelloWorld"):
            assert expected in names

    def test_named_export_preferred(self):
        class Other(BasePlugin):
            def on_activate(self):
                pass

            def on_deactivate(self):
                pass

        module = _module(Other=Other, default=DuckPlugin)

        found = PluginLoader().extract_plugin_class(module, PluginMetadata(id="demo"))

        assert found is DuckPlugin

    def test_pascal_case_export(self):
        module = _module(HelloWorld=DuckPlugin, helper=len)

        found = PluginLoader().extract_plugin_class(module, PluginMetadata(id="hello-world"))

        assert found is DuckPlugin

    def test_all_restricts_fallback(self):
        module = _module(Hidden=DuckPlugin, __all__=[])

        assert PluginLoader().extract_plugin_class(module, PluginMetadata(id="demo")) is None

    def test_base_plugin_and_abstract_rejected(self):
        class StillAbstract(BasePlugin):
            pass

        loader = PluginLoader()

        assert not loader.is_valid_plugin_class(BasePlugin)
        assert not loader.is_valid_plugin_class(StillAbstract)
        assert not loader.is_valid_plugin_class("not a class")

    def test_duck_typed_class_accepted(self):
        assert PluginLoader().is_valid_plugin_class(DuckPlugin)

    def test_probe_only_in_development(self):
        class Described:
            id = "demo"
            name = "Demo"
            version = "1.0.0"

        assert not PluginLoader().is_valid_plugin_class(Described, probe=True)
        dev_loader = PluginLoader(LoaderConfig(development=True))
        assert dev_loader.is_valid_plugin_class(Described, probe=True)
        assert not dev_loader.is_valid_plugin_class(Described, probe=False)

    def test_probe_failure_rejects(self):
        class Explodes:
            def __init__(self):
                raise RuntimeError("no")

        loader = PluginLoader(LoaderConfig(development=True))

        assert not loader.is_valid_plugin_class(Explodes, probe=True)
