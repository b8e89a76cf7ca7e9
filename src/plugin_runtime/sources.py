"""Module sources: where a plugin's entry module comes from.

The loader never calls importlib directly; it asks the first source that
``supports()`` a discovery result to produce the module.
"""

from __future__ import annotations

import asyncio
import importlib
import importlib.util
import inspect
import logging
import re
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from types import ModuleType
from typing import Any, Callable

from .discovery import MODULE_ENTRY_PREFIX
from .errors import PluginLoadError
from .models import PluginDiscoveryResult

logger = logging.getLogger(__name__)

PLUGIN_MODULE_PREFIX = "plugin_runtime_plugins"

ModuleFactory = Callable[[], Any]


def module_name_for(plugin_id: str) -> str:
    """``sys.modules`` key used for a file-loaded plugin."""
    return f"{PLUGIN_MODULE_PREFIX}.{re.sub(r'[^0-9a-zA-Z_]', '_', plugin_id)}"


class ModuleSource(ABC):
    """Produces the entry module for a discovered plugin."""

    name: str = "source"

    @abstractmethod
    def supports(self, discovery_result: PluginDiscoveryResult) -> bool:
        """Whether this source can load the plugin."""
        ...

    @abstractmethod
    async def load(self, discovery_result: PluginDiscoveryResult) -> Any:
        """Import and return the plugin's entry module."""
        ...

    def unload(self, plugin_id: str) -> None:
        """Forget any module this source holds for the plugin."""
        return None


class FileModuleSource(ModuleSource):
    """Imports ``.py`` entry files by path in a worker thread."""

    name = "file"

    def supports(self, discovery_result: PluginDiscoveryResult) -> bool:
        entry_path = discovery_result.entry_path
        return entry_path is not None and entry_path.suffix == ".py"

    async def load(self, discovery_result: PluginDiscoveryResult) -> ModuleType:
        return await asyncio.to_thread(
            self._import,
            discovery_result.metadata.id,
            discovery_result.entry_path,
        )

    def _import(self, plugin_id: str, entry_path: Path) -> ModuleType:
        if not entry_path.is_file():
            raise PluginLoadError(f"Entry file not found: {entry_path}")

        module_name = module_name_for(plugin_id)
        spec = importlib.util.spec_from_file_location(module_name, entry_path)
        if not spec or not spec.loader:
            raise PluginLoadError(f"Cannot load module spec from: {entry_path}")

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            sys.modules.pop(module_name, None)
            raise

        logger.debug(f"Imported {entry_path} as {module_name}")
        return module

    def unload(self, plugin_id: str) -> None:
        sys.modules.pop(module_name_for(plugin_id), None)


class InstalledModuleSource(ModuleSource):
    """Imports plugins shipped as installed packages.

    The manifest entry is written as ``module:package.name``.
    """

    name = "installed"

    @staticmethod
    def module_path(discovery_result: PluginDiscoveryResult) -> str | None:
        entry = discovery_result.metadata.entry or ""
        if entry.startswith(MODULE_ENTRY_PREFIX):
            return entry[len(MODULE_ENTRY_PREFIX):].strip() or None
        return None

    def supports(self, discovery_result: PluginDiscoveryResult) -> bool:
        return self.module_path(discovery_result) is not None

    async def load(self, discovery_result: PluginDiscoveryResult) -> ModuleType:
        module_path = self.module_path(discovery_result)
        if module_path is None:
            raise PluginLoadError(f"No module path for plugin {discovery_result.metadata.id}")
        try:
            return await asyncio.to_thread(importlib.import_module, module_path)
        except ImportError as e:
            raise PluginLoadError(f"Failed to import module {module_path}: {e}") from e


class FactoryModuleSource(ModuleSource):
    """In-process plugins: ``plugin_id -> factory`` returning a module-like object.

    Factories may be sync or async. Used for built-in plugins and tests.
    """

    name = "factory"

    def __init__(self, factories: dict[str, ModuleFactory] | None = None):
        self._factories: dict[str, ModuleFactory] = dict(factories or {})

    def add(self, plugin_id: str, factory: ModuleFactory) -> None:
        self._factories[plugin_id] = factory

    def remove(self, plugin_id: str) -> bool:
        return self._factories.pop(plugin_id, None) is not None

    def supports(self, discovery_result: PluginDiscoveryResult) -> bool:
        return discovery_result.metadata.id in self._factories

    async def load(self, discovery_result: PluginDiscoveryResult) -> Any:
        factory = self._factories[discovery_result.metadata.id]
        module = factory()
        if inspect.isawaitable(module):
            module = await module
        return module


def default_sources() -> list[ModuleSource]:
    return [FileModuleSource(), InstalledModuleSource()]
