"""Plugin registry: dependency graph, lifecycle state machine and persistence."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from datetime import timedelta
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field, ValidationError

from . import events
from .errors import (
    CircularDependencyError,
    DependencyError,
    InvalidStateTransitionError,
    PluginActivationError,
    PluginDeactivationError,
    PluginNotFoundError,
    PluginRegistrationError,
)
from .events import EventBus
from .graph import find_cycle, topological_sort
from .models import (
    PersistedPlugin,
    PluginLoadResult,
    PluginState,
    PluginStats,
    PluginValidationResult,
    RegisteredPlugin,
    utcnow,
)
from .storage import MemoryStore, StateStore

logger = logging.getLogger(__name__)

ERROR_RETENTION = timedelta(hours=24)
ACTIVATION_COUNT_LIMIT = 10_000

ALLOWED_TRANSITIONS: dict[PluginState, set[PluginState]] = {
    PluginState.REGISTERED: {PluginState.LOADED, PluginState.ERROR},
    PluginState.LOADED: {
        PluginState.ACTIVE,
        PluginState.INACTIVE,
        PluginState.REGISTERED,
        PluginState.ERROR,
    },
    PluginState.ACTIVE: {PluginState.INACTIVE, PluginState.ERROR},
    PluginState.INACTIVE: {
        PluginState.ACTIVE,
        PluginState.LOADED,
        PluginState.REGISTERED,
        PluginState.ERROR,
    },
    PluginState.ERROR: {
        PluginState.REGISTERED,
        PluginState.LOADED,
        PluginState.INACTIVE,
        PluginState.ERROR,
    },
    PluginState.UNREGISTERED: set(),
}

ApiProvider = Callable[[str], Any]


class RegistryConfig(BaseModel):
    """Registry settings."""

    max_plugins: int = Field(100, ge=1)
    enable_dependency_check: bool = True
    enable_state_persistence: bool = True
    persistence_key: str = "plugin-registry"
    cleanup_interval: float = Field(300.0, gt=0, description="Seconds between cleanups")
    enable_stats: bool = True


async def call_hook(instance: Any, name: str) -> None:
    """Call a lifecycle hook if the instance has one, awaiting coroutines."""
    method = getattr(instance, name, None)
    if not callable(method):
        return
    result = method()
    if inspect.isawaitable(result):
        await result


class PluginRegistry:
    """Owns every registered plugin.

    Activation and deactivation walk the dependency graph depth-first and
    are serialised by a single lock, so a subtree is never half-activated
    by two callers at once.

    Args:
        config: Registry settings
        event_bus: Bus receiving lifecycle events (a private one by default)
        store: Snapshot store (in-memory by default)
        api_provider: Returns the capability object bound to a new instance
    """

    def __init__(
        self,
        config: RegistryConfig | None = None,
        event_bus: EventBus | None = None,
        store: StateStore | None = None,
        api_provider: Optional[ApiProvider] = None,
    ):
        self.config = config or RegistryConfig()
        self.events = event_bus or EventBus()
        self.store = store or MemoryStore()
        self.api_provider = api_provider

        self._plugins: dict[str, RegisteredPlugin] = {}
        self._dependency_graph: dict[str, list[str]] = {}
        self._reverse_graph: dict[str, list[str]] = {}
        self._persisted: dict[str, PersistedPlugin] = {}
        self._previously_active: list[str] = []
        self._lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task | None = None

        self.load_persisted_state()

    # Registration

    def register(
        self,
        load_result: PluginLoadResult,
        validation_result: PluginValidationResult | None = None,
    ) -> RegisteredPlugin:
        """Register a loaded plugin.

        Raises:
            PluginRegistrationError: No plugin class, registry full or id taken
            DependencyError: Declared dependencies are not registered
        """
        plugin_id = load_result.plugin_id
        metadata = load_result.metadata

        if load_result.plugin_class is None:
            raise PluginRegistrationError(
                plugin_id,
                f"Cannot register plugin {plugin_id}: Plugin class is not available",
            )
        if len(self._plugins) >= self.config.max_plugins:
            raise PluginRegistrationError(
                plugin_id,
                f"Cannot register plugin {plugin_id}: "
                f"Maximum plugin limit ({self.config.max_plugins}) reached",
            )
        if plugin_id in self._plugins:
            raise PluginRegistrationError(plugin_id, f"Plugin {plugin_id} is already registered")
        if self.config.enable_dependency_check:
            self._check_dependencies(plugin_id, metadata.dependencies)

        plugin = RegisteredPlugin(
            id=plugin_id,
            metadata=metadata,
            plugin_class=load_result.plugin_class,
            validation_result=validation_result,
            dependencies=list(metadata.dependencies),
            dependents=list(self._reverse_graph.get(plugin_id, [])),
            stats=self._initial_stats(plugin_id, load_result.load_time),
        )

        self._plugins[plugin_id] = plugin
        self._update_dependency_graph(plugin_id, plugin.dependencies)

        self.events.emit(events.PLUGIN_REGISTERED, {"plugin": plugin})
        self.persist_state()

        logger.info(f"Plugin registered: {plugin_id}", extra={"plugin_id": plugin_id})
        return plugin

    def reregister(
        self,
        load_result: PluginLoadResult,
        validation_result: PluginValidationResult | None = None,
    ) -> RegisteredPlugin:
        """Swap in a freshly loaded class for an existing, inactive plugin.

        Dependents stay attached, which is what a hot reload needs.

        Raises:
            PluginRegistrationError: Plugin is active or has no class
            DependencyError: New dependencies are not registered
            CircularDependencyError: New dependencies would close a cycle
        """
        plugin_id = load_result.plugin_id
        plugin = self._require(plugin_id)

        if plugin.state == PluginState.ACTIVE:
            raise PluginRegistrationError(
                plugin_id, f"Cannot re-register plugin {plugin_id} while it is active"
            )
        if load_result.plugin_class is None:
            raise PluginRegistrationError(
                plugin_id,
                f"Cannot register plugin {plugin_id}: Plugin class is not available",
            )
        new_dependencies = list(load_result.metadata.dependencies)
        if self.config.enable_dependency_check:
            self._check_dependencies(plugin_id, new_dependencies)

        cycle = find_cycle(
            plugin_id,
            lambda pid: new_dependencies if pid == plugin_id else self._dependency_graph.get(pid),
        )
        if cycle:
            raise CircularDependencyError(cycle)

        self._remove_dependency_edges(plugin_id)
        plugin.metadata = load_result.metadata
        plugin.plugin_class = load_result.plugin_class
        plugin.validation_result = validation_result
        plugin.instance = None
        plugin.dependencies = new_dependencies
        plugin.stats.avg_load_time = _running_average(
            plugin.stats.avg_load_time, load_result.load_time
        )
        self._update_dependency_graph(plugin_id, new_dependencies)

        if plugin.state != PluginState.REGISTERED:
            self.update_plugin_state(plugin_id, PluginState.REGISTERED)
        else:
            self.persist_state()

        logger.info(f"Plugin re-registered: {plugin_id}", extra={"plugin_id": plugin_id})
        return plugin

    async def unregister(self, plugin_id: str) -> None:
        """Remove a plugin, deactivating and unloading it first.

        Raises:
            PluginNotFoundError: Unknown id
            PluginRegistrationError: Other plugins still depend on it
        """
        async with self._lock:
            plugin = self._require(plugin_id)
            if plugin.dependents:
                raise PluginRegistrationError(
                    plugin_id,
                    f"Cannot unregister plugin {plugin_id}: "
                    f"It is required by {', '.join(plugin.dependents)}",
                )

            if plugin.state == PluginState.ACTIVE:
                await self._deactivate(plugin_id, set())
            await self._unload(plugin)

            self._remove_dependency_edges(plugin_id)
            self._reverse_graph.pop(plugin_id, None)
            del self._plugins[plugin_id]

        self.events.emit(events.PLUGIN_UNREGISTERED, {"plugin_id": plugin_id})
        self.persist_state()
        logger.info(f"Plugin unregistered: {plugin_id}", extra={"plugin_id": plugin_id})

    def _check_dependencies(self, plugin_id: str, dependencies: list[str]) -> None:
        missing = [dep for dep in dependencies if dep not in self._plugins]
        if missing:
            raise DependencyError(plugin_id, missing)

    def _initial_stats(self, plugin_id: str, load_time: float) -> PluginStats:
        persisted = self._persisted.get(plugin_id)
        if persisted is None:
            return PluginStats(avg_load_time=load_time)
        stats = persisted.stats.model_copy()
        stats.avg_load_time = _running_average(stats.avg_load_time, load_time)
        logger.debug(f"Restored persisted stats for {plugin_id}", extra={"plugin_id": plugin_id})
        return stats

    # Dependency graph

    def _update_dependency_graph(self, plugin_id: str, dependencies: list[str]) -> None:
        self._dependency_graph[plugin_id] = list(dependencies)

        for dep in dependencies:
            dependents = self._reverse_graph.setdefault(dep, [])
            if plugin_id not in dependents:
                dependents.append(plugin_id)

            dep_plugin = self._plugins.get(dep)
            if dep_plugin and plugin_id not in dep_plugin.dependents:
                dep_plugin.dependents.append(plugin_id)

        plugin = self._plugins[plugin_id]
        self.events.emit(
            events.DEPENDENCY_CHANGED,
            {
                "plugin_id": plugin_id,
                "dependencies": list(plugin.dependencies),
                "dependents": list(plugin.dependents),
            },
        )

    def _remove_dependency_edges(self, plugin_id: str) -> None:
        for dep in self._dependency_graph.pop(plugin_id, []):
            dependents = self._reverse_graph.get(dep)
            if dependents and plugin_id in dependents:
                dependents.remove(plugin_id)
                if not dependents and dep not in self._plugins:
                    del self._reverse_graph[dep]

            dep_plugin = self._plugins.get(dep)
            if dep_plugin and plugin_id in dep_plugin.dependents:
                dep_plugin.dependents.remove(plugin_id)

    def get_dependency_order(self, plugin_ids: list[str]) -> list[str]:
        """Order ``plugin_ids`` so dependencies come first.

        Raises:
            CircularDependencyError: If the ids contain a dependency cycle
        """
        return topological_sort(plugin_ids, lambda pid: self._dependency_graph.get(pid, []))

    def get_dependency_graph(self) -> dict[str, list[str]]:
        return {pid: list(deps) for pid, deps in self._dependency_graph.items()}

    def has_circular_dependency(self) -> bool:
        try:
            self.get_dependency_order(list(self._plugins))
        except CircularDependencyError:
            return True
        return False

    # State machine

    def update_plugin_state(
        self, plugin_id: str, new_state: PluginState, error: str | None = None
    ) -> None:
        """Move a plugin to ``new_state``, maintaining timestamps and stats.

        Raises:
            PluginNotFoundError: Unknown id
            InvalidStateTransitionError: Transition not allowed
        """
        plugin = self._require(plugin_id)
        old_state = plugin.state
        new_state = PluginState(new_state)

        if new_state != old_state and new_state not in ALLOWED_TRANSITIONS[old_state]:
            raise InvalidStateTransitionError(plugin_id, old_state.value, new_state.value)

        plugin.state = new_state
        plugin.error = error

        now = utcnow()
        if new_state == PluginState.ACTIVE and old_state != PluginState.ACTIVE:
            plugin.last_activated_at = now
            plugin.stats.activation_count += 1
        elif old_state == PluginState.ACTIVE and new_state != PluginState.ACTIVE:
            plugin.last_deactivated_at = now
            if plugin.last_activated_at:
                runtime = (now - plugin.last_activated_at).total_seconds() * 1000
                plugin.stats.total_runtime += runtime

        if error:
            plugin.stats.error_count += 1
            plugin.stats.last_error_at = now
            plugin.stats.last_error = error
            self.events.emit(events.PLUGIN_ERROR, {"plugin_id": plugin_id, "error": error})

        self.events.emit(
            events.PLUGIN_STATE_CHANGED,
            {"plugin_id": plugin_id, "old_state": old_state, "new_state": new_state},
        )
        self.persist_state()

        logger.info(
            f"Plugin {plugin_id} state changed: {old_state.value} -> {new_state.value}",
            extra={"plugin_id": plugin_id, "state": new_state.value},
        )

    def set_plugin_instance(self, plugin_id: str, instance: Any) -> None:
        plugin = self._require(plugin_id)
        plugin.instance = instance
        logger.debug(f"Plugin instance set: {plugin_id}", extra={"plugin_id": plugin_id})

    # Activation

    async def activate(self, plugin_id: str) -> None:
        """Activate a plugin and, before it, every dependency.

        Raises:
            PluginNotFoundError: Unknown id
            CircularDependencyError: The dependency walk loops back
            PluginActivationError: A hook failed or a dependency is missing
        """
        async with self._lock:
            await self._activate(plugin_id, [])

    async def _activate(self, plugin_id: str, path: list[str]) -> None:
        if plugin_id in path:
            raise CircularDependencyError(path[path.index(plugin_id):] + [plugin_id])

        plugin = self._require(plugin_id)
        if plugin.state == PluginState.ACTIVE:
            return

        for dep in plugin.dependencies:
            if dep not in self._plugins:
                raise PluginActivationError(plugin_id, f"Dependency {dep} is not registered")
            try:
                await self._activate(dep, path + [plugin_id])
            except PluginActivationError as e:
                raise PluginActivationError(
                    plugin_id, f"Dependency {dep} failed to activate: {e.reason}"
                ) from e

        try:
            if plugin.instance is None or plugin.state == PluginState.REGISTERED:
                await self._load_instance(plugin)
            elif plugin.state == PluginState.ERROR:
                self.update_plugin_state(plugin_id, PluginState.LOADED)

            await call_hook(plugin.instance, "on_activate")
        except Exception as e:
            reason = str(e) or type(e).__name__
            self.update_plugin_state(plugin_id, PluginState.ERROR, reason)
            raise PluginActivationError(plugin_id, reason) from e

        self.update_plugin_state(plugin_id, PluginState.ACTIVE)

    async def _load_instance(self, plugin: RegisteredPlugin) -> None:
        if plugin.instance is None:
            instance = plugin.plugin_class()
            bind = getattr(instance, "bind", None)
            if callable(bind):
                api = self.api_provider(plugin.id) if self.api_provider else None
                bind(plugin.metadata, api)
            plugin.instance = instance

        try:
            await call_hook(plugin.instance, "on_load")
        except Exception:
            plugin.instance = None
            raise
        if plugin.state != PluginState.LOADED:
            self.update_plugin_state(plugin.id, PluginState.LOADED)

    async def deactivate(self, plugin_id: str) -> None:
        """Deactivate a plugin after deactivating everything that depends on it.

        Raises:
            PluginNotFoundError: Unknown id
            PluginDeactivationError: ``on_deactivate`` failed
        """
        async with self._lock:
            await self._deactivate(plugin_id, set())

    async def _deactivate(self, plugin_id: str, seen: set[str]) -> None:
        plugin = self._require(plugin_id)
        if plugin.state != PluginState.ACTIVE or plugin_id in seen:
            return
        seen.add(plugin_id)

        for dependent in list(plugin.dependents):
            if dependent in self._plugins:
                await self._deactivate(dependent, seen)

        try:
            if plugin.instance is not None:
                await call_hook(plugin.instance, "on_deactivate")
        except Exception as e:
            reason = str(e) or type(e).__name__
            self.update_plugin_state(plugin_id, PluginState.ERROR, reason)
            raise PluginDeactivationError(plugin_id, reason) from e

        self.update_plugin_state(plugin_id, PluginState.INACTIVE)

    async def unload_instance(self, plugin_id: str) -> None:
        """Deactivate if needed, call ``on_unload`` and drop the instance.

        The plugin stays registered, back in the ``registered`` state.
        """
        async with self._lock:
            plugin = self._require(plugin_id)
            if plugin.state == PluginState.ACTIVE:
                await self._deactivate(plugin_id, set())
            await self._unload(plugin)
            if plugin.state != PluginState.REGISTERED:
                self.update_plugin_state(plugin_id, PluginState.REGISTERED)

    async def _unload(self, plugin: RegisteredPlugin) -> None:
        if plugin.instance is None:
            return
        try:
            await call_hook(plugin.instance, "on_unload")
        except Exception as e:
            logger.warning(
                f"on_unload failed for {plugin.id}: {e}", extra={"plugin_id": plugin.id}
            )
        plugin.instance = None

    # Queries

    def _require(self, plugin_id: str) -> RegisteredPlugin:
        plugin = self._plugins.get(plugin_id)
        if plugin is None:
            raise PluginNotFoundError(plugin_id)
        return plugin

    def get_plugin(self, plugin_id: str) -> RegisteredPlugin | None:
        return self._plugins.get(plugin_id)

    def get_all_plugins(self) -> list[RegisteredPlugin]:
        return list(self._plugins.values())

    def get_plugins_by_state(self, state: PluginState) -> list[RegisteredPlugin]:
        return [p for p in self._plugins.values() if p.state == state]

    def get_plugin_count(self) -> int:
        return len(self._plugins)

    def has_plugin(self, plugin_id: str) -> bool:
        return plugin_id in self._plugins

    def search_plugins(self, query: str) -> list[RegisteredPlugin]:
        """Case-insensitive match on id, name, description and keywords."""
        q = query.lower()
        return [
            p
            for p in self._plugins.values()
            if q in p.id.lower()
            or q in p.metadata.name.lower()
            or q in (p.metadata.description or "").lower()
            or any(q in keyword.lower() for keyword in p.metadata.keywords)
        ]

    def get_stats(self) -> dict[str, Any]:
        plugins = self.get_all_plugins()
        return {
            "total_plugins": len(plugins),
            "active_plugins": sum(1 for p in plugins if p.state == PluginState.ACTIVE),
            "inactive_plugins": sum(1 for p in plugins if p.state == PluginState.INACTIVE),
            "error_plugins": sum(1 for p in plugins if p.state == PluginState.ERROR),
            "total_activations": sum(p.stats.activation_count for p in plugins),
            "total_runtime": sum(p.stats.total_runtime for p in plugins),
            "avg_load_time": (
                sum(p.stats.avg_load_time for p in plugins) / len(plugins) if plugins else 0.0
            ),
        }

    # Persistence

    def persist_state(self, previously_active: list[str] | None = None) -> None:
        """Write a snapshot of every registered plugin. Failures are logged only."""
        if not self.config.enable_state_persistence:
            return

        if previously_active is None:
            previously_active = [
                p.id for p in self._plugins.values() if p.state == PluginState.ACTIVE
            ]
        snapshot = {
            "plugins": [p.to_snapshot() for p in self._plugins.values()],
            "previously_active": list(previously_active),
            "last_updated": utcnow().isoformat(),
        }
        try:
            self.store.save(self.config.persistence_key, snapshot)
        except Exception as e:
            logger.warning(f"Failed to persist registry state: {e}")

    def load_persisted_state(self) -> dict[str, PersistedPlugin]:
        """Read the last snapshot; unreadable entries are skipped."""
        self._persisted = {}
        self._previously_active = []
        if not self.config.enable_state_persistence:
            return {}

        try:
            snapshot = self.store.load(self.config.persistence_key)
        except Exception as e:
            logger.warning(f"Failed to load persisted registry state: {e}")
            return {}
        if not snapshot:
            return {}

        for raw in snapshot.get("plugins") or []:
            try:
                record = PersistedPlugin.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping invalid persisted plugin record: {e.error_count()} errors")
                continue
            self._persisted[record.id] = record

        previously_active = snapshot.get("previously_active")
        if isinstance(previously_active, list):
            self._previously_active = [str(pid) for pid in previously_active]
        else:
            self._previously_active = [
                pid for pid, record in self._persisted.items() if record.state == PluginState.ACTIVE
            ]

        logger.info(f"Loaded persisted state with {len(self._persisted)} plugins")
        return dict(self._persisted)

    def get_persisted(self, plugin_id: str) -> PersistedPlugin | None:
        return self._persisted.get(plugin_id)

    def get_previously_active(self) -> list[str]:
        """Plugin ids that were active when the last snapshot was written."""
        return list(self._previously_active)

    # Maintenance

    def cleanup_registry(self) -> None:
        """Expire old error details and damp runaway activation counters."""
        if not self.config.enable_stats:
            return

        now = utcnow()
        for plugin in self._plugins.values():
            stats = plugin.stats
            if stats.last_error_at and now - stats.last_error_at > ERROR_RETENTION:
                stats.last_error = None
                stats.last_error_at = None
            if stats.activation_count > ACTIVATION_COUNT_LIMIT:
                stats.activation_count //= 10

        logger.debug("Registry cleanup completed")

    def start(self) -> None:
        """Start periodic cleanup. Must be called from a running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def _cleanup_loop(self, previous: asyncio.Task | None = None) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                self.cleanup_registry()
            except Exception:
                logger.exception("Registry cleanup failed")

    async def close(self) -> None:
        """Stop periodic cleanup."""
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def clear(self) -> None:
        """Forget every plugin without running lifecycle hooks."""
        self._plugins.clear()
        self._dependency_graph.clear()
        self._reverse_graph.clear()
        if self.config.enable_state_persistence:
            try:
                self.store.delete(self.config.persistence_key)
            except Exception as e:
                logger.warning(f"Failed to delete persisted registry state: {e}")
        logger.info("Registry cleared")

    def update_config(self, **changes: Any) -> None:
        self.config = self.config.model_copy(update=changes)
        previous = self._cleanup_task
        if "cleanup_interval" in changes and previous is not None and not previous.done():
            # The replacement loop waits for the cancelled one to finish
            previous.cancel()
            self._cleanup_task = asyncio.get_running_loop().create_task(
                self._cleanup_loop(previous)
            )
        logger.debug(f"Registry configuration updated: {sorted(changes)}")


def _running_average(previous: float, current: float) -> float:
    return (previous + current) / 2 if previous else current
