"""Tests for the runtime composition: load, activate, shutdown and restore."""

import json

import pytest

from plugin_runtime import PluginRuntime
from plugin_runtime.models import PluginState


class TestLoadAll:
    """Tests for discover, validate, load and register in one pass."""

    @pytest.mark.asyncio
    async def test_registers_valid_plugins_in_dependency_order(self, write_plugin, make_runtime):
        write_plugin("app", dependencies=["core"])
        write_plugin("core")
        write_plugin("broken", version=None)
        runtime = make_runtime()

        report = await runtime.load_all()

        assert report.registered == ["core", "app"]
        assert list(report.failed) == ["broken"]
        assert "Missing plugin version" in report.failed["broken"]
        assert not report.ok
        assert runtime.registry.get_plugin("core").dependents == ["app"]
        assert runtime.validation_results["app"].valid

    @pytest.mark.asyncio
    async def test_missing_dependency_fails_transitively(self, write_plugin, make_runtime):
        write_plugin("mid", dependencies=["ghost"])
        write_plugin("top", dependencies=["mid"])
        write_plugin("solo")
        runtime = make_runtime()

        report = await runtime.load_all()

        assert report.registered == ["solo"]
        assert report.failed["mid"] == "Missing dependencies: ghost"
        assert report.failed["top"] == "Missing dependencies: mid"

    @pytest.mark.asyncio
    async def test_cycle_fails_every_member(self, write_plugin, make_runtime):
        write_plugin("a", dependencies=["b"])
        write_plugin("b", dependencies=["a"])
        write_plugin("c", dependencies=["a"])
        runtime = make_runtime()

        report = await runtime.load_all()

        assert report.registered == []
        assert report.failed["a"].startswith("Circular dependency detected")
        assert report.failed["b"].startswith("Circular dependency detected")
        assert "c" in report.failed

    @pytest.mark.asyncio
    async def test_validation_failure_blocks_load(self, write_plugin, make_runtime, journal):
        write_plugin("camera", permissions=["camera"])
        runtime = make_runtime()

        report = await runtime.load_all()

        assert report.failed["camera"] == "Invalid permissions requested: camera"
        assert not runtime.loader.is_plugin_loaded("camera")

    @pytest.mark.asyncio
    async def test_import_failure_reported(self, write_plugin, make_runtime):
        write_plugin("explodes", source="raise ImportError('missing thing')\n")
        write_plugin("fine")
        runtime = make_runtime()

        report = await runtime.load_all()

        assert report.registered == ["fine"]
        assert "missing thing" in report.failed["explodes"]

    @pytest.mark.asyncio
    async def test_warnings_collected(self, write_plugin, make_runtime):
        write_plugin("loose", min_app_version=None)
        runtime = make_runtime()

        report = await runtime.load_all()

        assert report.ok
        assert report.warnings == ["loose: No minimum app version specified"]

    @pytest.mark.asyncio
    async def test_second_pass_skips_registered(self, write_plugin, make_runtime):
        write_plugin("demo")
        runtime = make_runtime()
        await runtime.load_all()

        report = await runtime.load_all()

        assert report.registered == []
        assert report.warnings == ["demo: already registered, skipped"]


class TestActivation:
    """Tests for bulk activation and deactivation."""

    @pytest.mark.asyncio
    async def test_activate_all_dependencies_first(self, write_plugin, make_runtime, journal):
        write_plugin("app", dependencies=["core"])
        write_plugin("core")
        runtime = make_runtime()
        await runtime.load_all()

        failures = await runtime.activate_all()

        assert failures == {}
        assert [pid for pid, hook in journal if hook == "activate"] == ["core", "app"]
        assert runtime.registry.get_stats()["active_plugins"] == 2

    @pytest.mark.asyncio
    async def test_activate_all_reports_failures(self, write_plugin, make_runtime):
        write_plugin("good")
        write_plugin("bad", fail_on="activate")
        runtime = make_runtime()
        await runtime.load_all()

        failures = await runtime.activate_all()

        assert list(failures) == ["bad"]
        assert "activate exploded" in failures["bad"]
        assert runtime.registry.get_plugin("good").state == PluginState.ACTIVE
        assert runtime.registry.get_plugin("bad").state == PluginState.ERROR

    @pytest.mark.asyncio
    async def test_deactivate_all_dependents_first(self, write_plugin, make_runtime, journal):
        write_plugin("app", dependencies=["core"])
        write_plugin("core")
        runtime = make_runtime()
        await runtime.load_all()
        await runtime.activate_all()
        journal.clear()

        failures = await runtime.deactivate_all()

        assert failures == {}
        assert journal == [("app", "deactivate"), ("core", "deactivate")]


class TestLifecycleAndPersistence:
    """Tests for start, shutdown and restoring the previous session."""

    @pytest.mark.asyncio
    async def test_shutdown_unloads_everything(self, write_plugin, make_runtime, journal):
        write_plugin("demo")
        runtime = make_runtime()
        await runtime.load_all()
        await runtime.activate_all()

        await runtime.shutdown()

        plugin = runtime.registry.get_plugin("demo")
        assert plugin.state == PluginState.REGISTERED
        assert plugin.instance is None
        assert journal[-2:] == [("demo", "deactivate"), ("demo", "unload")]
        assert runtime.loader.get_load_stats()["total_loaded"] == 0

    @pytest.mark.asyncio
    async def test_restore_previously_active(self, write_plugin, make_runtime, tmp_path):
        write_plugin("core")
        write_plugin("extra")
        first = make_runtime(enable_state_persistence=True)
        await first.load_all()
        await first.registry.activate("core")
        await first.shutdown()

        snapshot = json.loads((tmp_path / "state" / "plugin-registry.json").read_text())
        assert snapshot["previously_active"] == ["core"]

        second = make_runtime(enable_state_persistence=True)
        await second.load_all()
        failures = await second.activate_previous()

        assert failures == {}
        assert second.registry.get_plugin("core").state == PluginState.ACTIVE
        assert second.registry.get_plugin("extra").state == PluginState.REGISTERED
        assert second.registry.get_plugin("core").stats.activation_count == 2
        await second.shutdown()

    @pytest.mark.asyncio
    async def test_context_manager(self, write_plugin, make_settings):
        write_plugin("demo")

        async with PluginRuntime(make_settings()) as runtime:
            await runtime.load_all()
            await runtime.activate_all()
            assert runtime.registry._cleanup_task is not None

        assert runtime.registry._cleanup_task is None
        assert runtime.registry.get_plugin("demo").state == PluginState.REGISTERED

    @pytest.mark.asyncio
    async def test_get_status(self, write_plugin, make_runtime):
        write_plugin("demo")
        runtime = make_runtime()
        await runtime.load_all()

        status = runtime.get_status()

        assert set(status) == {"discovery", "loader", "registry", "hot_reload"}
        assert status["discovery"]["total"] == 1
        assert status["loader"]["total_loaded"] == 1
        assert status["registry"]["total_plugins"] == 1
        assert status["hot_reload"]["is_reloading"] is False
