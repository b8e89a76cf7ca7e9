"""Configuration module for the plugin runtime."""

from .settings import Settings, get_settings
from .logging import configure_logging, JSONFormatter, TextFormatter, PluginContextFilter

__all__ = [
    "Settings",
    "get_settings",
    "configure_logging",
    "JSONFormatter",
    "TextFormatter",
    "PluginContextFilter",
]
