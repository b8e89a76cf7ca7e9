"""Tests for settings and logging configuration."""

import io
import json
import logging
from pathlib import Path

import pytest

from plugin_runtime.config import (
    JSONFormatter,
    PluginContextFilter,
    Settings,
    TextFormatter,
    configure_logging,
    get_settings,
)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestSettings:
    """Tests for Settings defaults, environment and validation."""

    def test_defaults(self, tmp_path):
        settings = Settings(base_dir=tmp_path)

        assert settings.validation_mode == "strict"
        assert settings.load_timeout == 10.0
        assert settings.max_plugins == 100
        assert settings.debounce_delay == 0.3
        assert settings.development is False
        assert settings.resolve_plugin_directories() == [tmp_path / "plugins", tmp_path / "extensions"]

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("PLUGIN_RUNTIME_LOAD_TIMEOUT", "2.5")
        monkeypatch.setenv("PLUGIN_RUNTIME_DEVELOPMENT", "true")
        monkeypatch.setenv("PLUGIN_RUNTIME_PLUGIN_DIRECTORIES", '["/opt/plugins"]')

        settings = Settings()

        assert settings.load_timeout == 2.5
        assert settings.development is True
        assert settings.plugin_directories == ["/opt/plugins"]

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError):
            Settings(load_timeout=0)
        with pytest.raises(ValueError):
            Settings(validation_mode="lenient")

    def test_permissive_outside_development_warns(self):
        with pytest.warns(UserWarning, match="Permissive validation"):
            Settings(validation_mode="permissive")

    def test_dangerous_allow_list_in_strict_mode_warns(self):
        with pytest.warns(UserWarning, match="strict validation rejects them"):
            Settings(allowed_permissions=["storage", "network"])

    def test_strict_config_raises(self):
        with pytest.raises(ValueError, match="Invalid plugin runtime configuration"):
            Settings(strict_config=True, validation_mode="permissive")

    def test_absolute_directories_kept(self, tmp_path):
        settings = Settings(plugin_directories=[str(tmp_path / "abs"), "rel"], base_dir=Path("/srv"))

        assert settings.resolve_plugin_directories() == [tmp_path / "abs", Path("/srv/rel")]

    def test_component_configs(self, tmp_path):
        settings = Settings(
            base_dir=tmp_path,
            plugin_directories=["plugins"],
            development=True,
            validation_mode="permissive",
            load_timeout=3,
            max_plugins=5,
            debounce_delay=0.1,
            enabled_rules=["metadata.*"],
        )

        assert settings.discovery_config().plugin_directories == [str(tmp_path / "plugins")]
        assert settings.validator_config().mode == "permissive"
        assert settings.validator_config().enabled_rules == ["metadata.*"]
        assert settings.loader_config().load_timeout == 3
        assert settings.loader_config().development is True
        assert settings.registry_config().max_plugins == 5
        hot_reload = settings.hot_reload_config()
        assert hot_reload.development is True
        assert hot_reload.debounce_delay == 0.1
        assert hot_reload.watch_paths == [str(tmp_path / "plugins")]

    def test_get_settings_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()


class TestLogging:
    """Tests for configure_logging and the formatters."""

    def test_json_output(self, restore_root_logger):
        stream = io.StringIO()
        configure_logging(level="INFO", format="json", stream=stream)

        logging.getLogger("plugin_runtime.test").info(
            "Plugin loaded", extra={"plugin_id": "demo", "duration_ms": 1.5}
        )

        record = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert record["message"] == "Plugin loaded"
        assert record["level"] == "INFO"
        assert record["logger"] == "plugin_runtime.test"
        assert record["plugin_id"] == "demo"
        assert record["duration_ms"] == 1.5
        assert "timestamp" in record

    def test_json_omits_missing_context(self, restore_root_logger):
        stream = io.StringIO()
        configure_logging(level="INFO", format="json", stream=stream)

        logging.getLogger("plugin_runtime.test").warning("No context")

        record = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert "plugin_id" not in record

    def test_text_output_has_plugin_slot(self, restore_root_logger):
        stream = io.StringIO()
        configure_logging(level="DEBUG", format="text", stream=stream)

        logging.getLogger("plugin_runtime.test").debug("Scanning")

        line = stream.getvalue().strip().splitlines()[-1]
        assert "plugin_runtime.test - DEBUG - [-] Scanning" in line

    def test_level_filters_records(self, restore_root_logger):
        stream = io.StringIO()
        configure_logging(level="ERROR", stream=stream)

        logging.getLogger("plugin_runtime.test").warning("quiet")

        assert stream.getvalue() == ""

    def test_watchdog_logger_quietened(self, restore_root_logger):
        configure_logging(level="DEBUG", stream=io.StringIO())

        assert logging.getLogger("watchdog").level == logging.WARNING

    def test_context_filter_sets_default(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)

        assert PluginContextFilter().filter(record) is True
        assert record.plugin_id == "-"

    def test_formatters_directly(self):
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed %s", ("demo",), None)
        record.plugin_id = "demo"

        assert json.loads(JSONFormatter().format(record))["message"] == "failed demo"
        assert "[demo] failed demo" in TextFormatter().format(record)
