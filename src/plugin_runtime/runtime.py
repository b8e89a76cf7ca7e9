"""Composition root wiring discovery, validation, loading and the registry."""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel, Field

from .config.settings import Settings, get_settings
from .discovery import PluginDiscovery
from .errors import CircularDependencyError, PluginRuntimeError
from .events import EventBus
from .hot_reload import HotReloadManager
from .loader import PluginLoader
from .models import PluginDiscoveryResult, PluginState, PluginValidationResult
from .registry import ApiProvider, PluginRegistry
from .sources import ModuleSource
from .storage import JsonFileStore, MemoryStore, StateStore
from .validation import PluginValidator

logger = logging.getLogger(__name__)


class RuntimeReport(BaseModel):
    """Outcome of ``PluginRuntime.load_all``."""

    registered: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class PluginRuntime:
    """Owns one instance of every runtime component.

    Example:
        async with PluginRuntime(Settings(plugin_directories=["plugins"])) as runtime:
            report = await runtime.load_all()
            await runtime.activate_all()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        event_bus: EventBus | None = None,
        store: StateStore | None = None,
        sources: list[ModuleSource] | None = None,
        api_provider: Optional[ApiProvider] = None,
    ):
        self.settings = settings or get_settings()
        self.events = event_bus or EventBus()

        if store is None:
            store = (
                JsonFileStore(self.settings.state_dir)
                if self.settings.enable_state_persistence
                else MemoryStore()
            )

        self.discovery = PluginDiscovery(self.settings.discovery_config())
        self.validator = PluginValidator(self.settings.validator_config())
        self.loader = PluginLoader(self.settings.loader_config(), sources)
        self.registry = PluginRegistry(
            self.settings.registry_config(),
            event_bus=self.events,
            store=store,
            api_provider=api_provider,
        )
        self.hot_reload = HotReloadManager(self, self.settings.hot_reload_config())
        self.validation_results: dict[str, PluginValidationResult] = {}

    async def __aenter__(self) -> PluginRuntime:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    def discover(self) -> list[PluginDiscoveryResult]:
        return self.discovery.discover_plugins()

    async def load_all(self) -> RuntimeReport:
        """Discover, validate, load and register every plugin that qualifies.

        Plugins are registered in dependency order; a plugin fails when it
        or any of its dependencies fails.
        """
        report = RuntimeReport()
        candidates: dict[str, PluginDiscoveryResult] = {}

        for result in self.discover():
            plugin_id = result.metadata.id
            if self.registry.has_plugin(plugin_id):
                report.warnings.append(f"{plugin_id}: already registered, skipped")
                continue
            if not result.is_valid:
                report.failed[plugin_id] = "; ".join(result.errors)
                continue

            validation = self.validator.validate_discovery(result)
            self.validation_results[plugin_id] = validation
            report.warnings.extend(f"{plugin_id}: {w.message}" for w in validation.warnings)
            if not validation.valid:
                report.failed[plugin_id] = "; ".join(r.message for r in validation.errors)
                continue
            candidates[plugin_id] = result

        self._drop_unsatisfied(candidates, report)

        try:
            ordered = self.discovery.sort_plugins_by_dependencies(list(candidates.values()))
        except CircularDependencyError as e:
            for plugin_id in set(e.cycle):
                candidates.pop(plugin_id, None)
                report.failed[plugin_id] = str(e)
            self._drop_unsatisfied(candidates, report)
            ordered = self.discovery.sort_plugins_by_dependencies(list(candidates.values()))

        for load_result in await self.loader.load_plugins(ordered):
            plugin_id = load_result.plugin_id
            if not load_result.success:
                report.failed[plugin_id] = load_result.error or "Plugin load failed"
                continue

            validation = self.validator.validate_load(load_result)
            self.validation_results[plugin_id] = validation
            if not validation.valid:
                report.failed[plugin_id] = "; ".join(r.message for r in validation.errors)
                continue

            try:
                self.registry.register(load_result, validation)
            except PluginRuntimeError as e:
                report.failed[plugin_id] = str(e)
                continue
            report.registered.append(plugin_id)

        logger.info(
            f"Registered {len(report.registered)} plugins, {len(report.failed)} failed"
        )
        return report

    def _drop_unsatisfied(
        self, candidates: dict[str, PluginDiscoveryResult], report: RuntimeReport
    ) -> None:
        # Repeat until stable so failures propagate to dependents
        changed = True
        while changed:
            changed = False
            for plugin_id, result in list(candidates.items()):
                check = self.discovery.check_dependencies(result)
                if check.circular:
                    reason = f"Circular dependency detected: {' -> '.join(check.circular)}"
                else:
                    missing = [
                        dep
                        for dep in result.metadata.dependencies
                        if dep not in candidates and not self.registry.has_plugin(dep)
                    ]
                    if not missing:
                        continue
                    reason = f"Missing dependencies: {', '.join(missing)}"

                del candidates[plugin_id]
                report.failed[plugin_id] = reason
                changed = True

    async def activate_all(self) -> dict[str, str]:
        """Activate every registered plugin, dependencies first.

        Returns:
            Failure reasons keyed by plugin id
        """
        return await self._activate_ids([p.id for p in self.registry.get_all_plugins()])

    async def activate_previous(self) -> dict[str, str]:
        """Re-activate the plugins that were active in the last session."""
        previous = [
            pid for pid in self.registry.get_previously_active() if self.registry.has_plugin(pid)
        ]
        return await self._activate_ids(previous)

    async def _activate_ids(self, plugin_ids: list[str]) -> dict[str, str]:
        failures: dict[str, str] = {}
        try:
            order = self.registry.get_dependency_order(plugin_ids)
        except CircularDependencyError as e:
            return {plugin_id: str(e) for plugin_id in plugin_ids}

        for plugin_id in order:
            try:
                await self.registry.activate(plugin_id)
            except PluginRuntimeError as e:
                failures[plugin_id] = str(e)
                logger.error(str(e), extra={"plugin_id": plugin_id})
        return failures

    async def deactivate_all(self) -> dict[str, str]:
        """Deactivate every active plugin, dependents first."""
        failures: dict[str, str] = {}
        active = [p.id for p in self.registry.get_plugins_by_state(PluginState.ACTIVE)]
        try:
            order = list(reversed(self.registry.get_dependency_order(active)))
        except CircularDependencyError:
            order = active

        for plugin_id in order:
            try:
                await self.registry.deactivate(plugin_id)
            except PluginRuntimeError as e:
                failures[plugin_id] = str(e)
                logger.error(str(e), extra={"plugin_id": plugin_id})
        return failures

    async def reload_plugin(self, plugin_id: str) -> bool:
        return await self.hot_reload.manual_reload(plugin_id)

    def start(self) -> None:
        """Start registry cleanup and, in development, hot reload."""
        self.registry.start()
        self.hot_reload.start()

    async def shutdown(self) -> None:
        """Deactivate and unload everything, then persist the final snapshot."""
        previously_active = [
            p.id for p in self.registry.get_plugins_by_state(PluginState.ACTIVE)
        ]
        await self.hot_reload.stop()
        await self.deactivate_all()

        for plugin in self.registry.get_all_plugins():
            try:
                await self.registry.unload_instance(plugin.id)
            except PluginRuntimeError as e:
                logger.warning(f"Failed to unload {plugin.id}: {e}", extra={"plugin_id": plugin.id})

        self.registry.persist_state(previously_active=previously_active)
        await self.registry.close()
        self.loader.clear_cache()
        logger.info("Plugin runtime shut down")

    def get_status(self) -> dict[str, Any]:
        return {
            "discovery": self.discovery.get_discovery_stats(),
            "loader": self.loader.get_load_stats(),
            "registry": self.registry.get_stats(),
            "hot_reload": self.hot_reload.get_reload_status(),
        }
