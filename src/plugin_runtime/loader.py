"""Dynamic plugin loading.

Imports a discovered plugin's entry module through a module source, picks a
usable plugin class out of it and caches the result by plugin id.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any

from pydantic import BaseModel, Field

from .base import BasePlugin
from .config.settings import DEFAULT_ALLOWED_PERMISSIONS
from .errors import PermissionDeniedError, PluginLoadError, PluginLoadTimeoutError
from .models import PluginDiscoveryResult, PluginLoadResult, PluginMetadata, utcnow
from .sources import ModuleSource, default_sources

logger = logging.getLogger(__name__)

STRUCTURAL_METHODS = ("get_metadata", "on_load", "on_activate")


class LoaderConfig(BaseModel):
    """Loader settings."""

    load_timeout: float = Field(10.0, gt=0, description="Import timeout in seconds")
    enable_cache: bool = True
    validate_plugin_class: bool = True
    allowed_permissions: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_PERMISSIONS)
    )
    development: bool = False


@dataclass
class LoadedModule:
    """A successfully imported plugin module."""

    module: Any
    plugin_class: type | None
    metadata: PluginMetadata
    source: ModuleSource
    load_time: float
    loaded_at: datetime = field(default_factory=utcnow)


class PluginLoader:
    """Loads plugin entry modules.

    Concurrent ``load_plugin`` calls for one id share a single in-flight
    task. An import that exceeds ``load_timeout`` is reported as a failure
    but keeps running in its worker; when it finally completes its module
    is discarded rather than cached.
    """

    def __init__(
        self,
        config: LoaderConfig | None = None,
        sources: list[ModuleSource] | None = None,
    ):
        self.config = config or LoaderConfig()
        self.sources: list[ModuleSource] = list(sources) if sources is not None else default_sources()
        self._loaded: dict[str, LoadedModule] = {}
        self._in_flight: dict[str, asyncio.Future] = {}

    def add_source(self, source: ModuleSource, index: int = 0) -> None:
        """Register a module source; earlier sources win."""
        self.sources.insert(index, source)

    async def load_plugin(self, discovery_result: PluginDiscoveryResult) -> PluginLoadResult:
        """Load a plugin, never raising.

        Returns:
            PluginLoadResult; ``success`` is False with ``error`` set on failure
        """
        plugin_id = discovery_result.metadata.id
        task = self._in_flight.get(plugin_id)
        if task is None:
            task = asyncio.ensure_future(self._do_load(discovery_result))
            self._in_flight[plugin_id] = task
            task.add_done_callback(partial(self._load_finished, plugin_id))
        else:
            logger.debug(f"Joining in-flight load of {plugin_id}")
        return await asyncio.shield(task)

    def _load_finished(self, plugin_id: str, task: asyncio.Future) -> None:
        if self._in_flight.get(plugin_id) is task:
            del self._in_flight[plugin_id]

    async def _do_load(self, discovery_result: PluginDiscoveryResult) -> PluginLoadResult:
        metadata = discovery_result.metadata
        plugin_id = metadata.id
        start = time.perf_counter()

        try:
            cached = self._loaded.get(plugin_id) if self.config.enable_cache else None
            if cached is not None:
                logger.debug(f"Using cached module for plugin: {plugin_id}")
                return PluginLoadResult(
                    plugin_id=plugin_id,
                    metadata=cached.metadata,
                    success=True,
                    plugin_class=cached.plugin_class,
                    module=cached.module,
                    load_time=_elapsed_ms(start),
                )

            self.check_permissions(metadata)
            source = self._select_source(discovery_result)
            module = await self._import_with_timeout(source, discovery_result)

            try:
                plugin_class = self.extract_plugin_class(module, metadata)
                if self.config.validate_plugin_class and plugin_class is None:
                    if self.config.development:
                        logger.warning(
                            f"Plugin class validation failed for {plugin_id}, "
                            "continuing in development mode",
                            extra={"plugin_id": plugin_id},
                        )
                    else:
                        raise PluginLoadError(
                            "Plugin module does not export a valid plugin class"
                        )
            except Exception:
                source.unload(plugin_id)
                raise

            load_time = _elapsed_ms(start)
            self._loaded[plugin_id] = LoadedModule(
                module=module,
                plugin_class=plugin_class,
                metadata=metadata,
                source=source,
                load_time=load_time,
            )

            logger.info(
                f"Successfully loaded plugin: {plugin_id} ({load_time:.2f}ms)",
                extra={"plugin_id": plugin_id, "duration_ms": round(load_time, 2)},
            )
            return PluginLoadResult(
                plugin_id=plugin_id,
                metadata=metadata,
                success=True,
                plugin_class=plugin_class,
                module=module,
                load_time=load_time,
            )

        except Exception as e:
            load_time = _elapsed_ms(start)
            logger.error(
                f"Failed to load plugin {plugin_id}: {e}",
                extra={"plugin_id": plugin_id, "duration_ms": round(load_time, 2)},
            )
            return PluginLoadResult(
                plugin_id=plugin_id,
                metadata=metadata,
                success=False,
                error=str(e) or type(e).__name__,
                load_time=load_time,
            )

    def _select_source(self, discovery_result: PluginDiscoveryResult) -> ModuleSource:
        for source in self.sources:
            if source.supports(discovery_result):
                return source
        entry = discovery_result.metadata.entry or discovery_result.entry_path
        raise PluginLoadError(f"Unsupported plugin entry: {entry}")

    async def _import_with_timeout(
        self, source: ModuleSource, discovery_result: PluginDiscoveryResult
    ) -> Any:
        plugin_id = discovery_result.metadata.id
        task = asyncio.ensure_future(source.load(discovery_result))
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.config.load_timeout)
        except asyncio.TimeoutError:
            task.add_done_callback(partial(self._discard_late_import, plugin_id, source))
            raise PluginLoadTimeoutError(plugin_id, self.config.load_timeout) from None

    def _discard_late_import(self, plugin_id: str, source: ModuleSource, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                f"Timed-out import of {plugin_id} later failed: {error}",
                extra={"plugin_id": plugin_id},
            )
            return

        # A newer successful load owns the module name; leave it alone
        if plugin_id not in self._loaded:
            source.unload(plugin_id)
        logger.warning(
            f"Timed-out import of {plugin_id} completed late; module discarded",
            extra={"plugin_id": plugin_id},
        )

    def check_permissions(self, metadata: PluginMetadata) -> None:
        """Raise PermissionDeniedError if any requested permission is not allowed."""
        denied = [p for p in metadata.permissions if p not in self.config.allowed_permissions]
        if denied:
            raise PermissionDeniedError(metadata.id, denied)

    def extract_plugin_class(self, module: Any, metadata: PluginMetadata) -> type | None:
        """Pick the plugin class exported by a module.

        Well-known export names are tried first, then every other exported
        class, classes defined in the module itself ahead of imported ones.
        """
        named: list[Any] = []
        for attr in candidate_names(metadata):
            value = getattr(module, attr, None)
            if value is not None and not any(value is c for c in named):
                named.append(value)

        exported = getattr(module, "__all__", None)
        if exported is None:
            exported = [n for n in dir(module) if not n.startswith("_")]
        module_name = getattr(module, "__name__", None)
        others = [
            value
            for value in (getattr(module, n, None) for n in exported)
            if isinstance(value, type) and not any(value is c for c in named)
        ]
        others.sort(key=lambda cls: cls.__module__ != module_name)

        for candidate in named:
            if self.is_valid_plugin_class(candidate, probe=True):
                logger.debug(f"Valid plugin class found for {metadata.id}: {candidate.__name__}")
                return candidate

        for candidate in others:
            probe = module_name is not None and candidate.__module__ == module_name
            if self.is_valid_plugin_class(candidate, probe=probe):
                logger.debug(f"Valid plugin class found for {metadata.id}: {candidate.__name__}")
                return candidate

        logger.debug(f"No valid plugin class found in module for {metadata.id}")
        return None

    def is_valid_plugin_class(self, candidate: Any, probe: bool = False) -> bool:
        """Whether ``candidate`` can be used as a plugin class.

        Subclassing BasePlugin is a fast path; otherwise the class must
        expose at least one lifecycle method. In development, when ``probe``
        is set, a throwaway instance is also inspected.
        """
        if not isinstance(candidate, type):
            return False
        if candidate is BasePlugin or inspect.isabstract(candidate):
            return False
        if issubclass(candidate, BasePlugin):
            return True
        if any(callable(getattr(candidate, m, None)) for m in STRUCTURAL_METHODS):
            return True
        if not (self.config.development and probe):
            return False

        try:
            instance = candidate()
        except Exception as e:
            logger.debug(f"Could not create test instance of {candidate.__name__}: {e}")
            return False

        has_properties = all(
            isinstance(getattr(instance, attr, None), str) for attr in ("id", "name", "version")
        )
        has_methods = any(callable(getattr(instance, m, None)) for m in STRUCTURAL_METHODS)
        return has_properties or has_methods

    async def load_plugins(self, discovery_results: list[PluginDiscoveryResult]) -> list[PluginLoadResult]:
        """Load many plugins concurrently; results keep the input order."""
        results = await asyncio.gather(
            *(self.load_plugin(r) for r in discovery_results),
            return_exceptions=True,
        )

        load_results = []
        for discovery_result, result in zip(discovery_results, results):
            if isinstance(result, BaseException):
                load_results.append(
                    PluginLoadResult(
                        plugin_id=discovery_result.metadata.id,
                        metadata=discovery_result.metadata,
                        success=False,
                        error=str(result) or type(result).__name__,
                    )
                )
            else:
                load_results.append(result)

        succeeded = sum(1 for r in load_results if r.success)
        logger.info(f"Loaded {succeeded}/{len(load_results)} plugins")
        return load_results

    async def load_metadata_only(self, discovery_result: PluginDiscoveryResult) -> PluginLoadResult:
        """Check permissions without executing any plugin code."""
        metadata = discovery_result.metadata
        start = time.perf_counter()
        try:
            self.check_permissions(metadata)
        except PermissionDeniedError as e:
            logger.error(f"Failed to load metadata for plugin {metadata.id}: {e}")
            return PluginLoadResult(
                plugin_id=metadata.id,
                metadata=metadata,
                success=False,
                error=str(e),
                load_time=_elapsed_ms(start),
            )
        return PluginLoadResult(
            plugin_id=metadata.id,
            metadata=metadata,
            success=True,
            load_time=_elapsed_ms(start),
        )

    def unload_plugin(self, plugin_id: str) -> bool:
        """Evict a plugin's module. Returns False if it was not loaded."""
        entry = self._loaded.pop(plugin_id, None)
        if entry is None:
            return False
        entry.source.unload(plugin_id)
        logger.info(f"Unloaded plugin module: {plugin_id}", extra={"plugin_id": plugin_id})
        return True

    async def reload_plugin(self, discovery_result: PluginDiscoveryResult) -> PluginLoadResult:
        self.unload_plugin(discovery_result.metadata.id)
        return await self.load_plugin(discovery_result)

    def get_loaded_module(self, plugin_id: str) -> Any:
        entry = self._loaded.get(plugin_id)
        return entry.module if entry else None

    def is_plugin_loaded(self, plugin_id: str) -> bool:
        return plugin_id in self._loaded

    def get_load_stats(self) -> dict[str, Any]:
        entries = list(self._loaded.values())
        return {
            "total_loaded": len(entries),
            "avg_load_time": (
                sum(e.load_time for e in entries) / len(entries) if entries else 0.0
            ),
            "cache_enabled": self.config.enable_cache,
            "load_timeout": self.config.load_timeout,
            "in_flight": sorted(self._in_flight),
            "loaded_plugins": [
                {
                    "id": e.metadata.id,
                    "name": e.metadata.name,
                    "version": e.metadata.version,
                    "load_time": e.load_time,
                    "loaded_at": e.loaded_at.isoformat(),
                    "source": e.source.name,
                }
                for e in entries
            ],
        }

    def clear_cache(self) -> None:
        for plugin_id in list(self._loaded):
            self.unload_plugin(plugin_id)
        logger.info("Plugin module cache cleared")

    def update_config(self, **changes: Any) -> None:
        self.config = self.config.model_copy(update=changes)
        logger.debug(f"Loader configuration updated: {sorted(changes)}")


def candidate_names(metadata: PluginMetadata) -> list[str]:
    """Export names tried, in order, when looking for the plugin class."""
    plugin_id = metadata.id
    names = ["default", "Plugin"]
    if metadata.name:
        names += [metadata.name, f"{metadata.name}Plugin"]
    if plugin_id:
        pascal = "".join(part.capitalize() for part in re.split(r"[-_]+", plugin_id) if part)
        names += [
            plugin_id,
            plugin_id.replace("-", ""),
            plugin_id.replace("-", "_"),
            pascal,
        ]
    return list(dict.fromkeys(names))


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000
