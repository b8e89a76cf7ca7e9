"""Hot reload for plugin directories (development builds only).

A ``watchdog`` observer thread reports file changes; they are marshalled onto
the event loop, debounced, grouped by plugin and turned into either a full
reload (manifest, entry file or deletion) or a partial-reload notification.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, Field
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from . import events
from .discovery import MANIFEST_FILENAME
from .errors import PluginLoadError
from .models import FileChangeEvent, PluginState, utcnow

if TYPE_CHECKING:
    from .runtime import PluginRuntime

logger = logging.getLogger(__name__)

TEMPLATE_EXTENSIONS = (".html", ".jinja", ".j2")
STYLE_EXTENSIONS = (".css",)


class HotReloadConfig(BaseModel):
    """Hot reload settings."""

    enabled: bool = True
    development: bool = False
    watch_paths: list[str] = Field(default_factory=lambda: ["plugins"])
    watch_extensions: list[str] = Field(
        default_factory=lambda: [".py", ".json", ".html", ".jinja", ".j2", ".css"]
    )
    debounce_delay: float = Field(0.3, ge=0, description="Quiet period in seconds")
    preserve_state: bool = True
    history_size: int = Field(50, ge=1)


class ReloadPhase(str, Enum):
    """Steps of a full plugin reload."""

    PENDING = "pending"
    PRESERVING = "preserving"
    DEACTIVATING = "deactivating"
    UNLOADING = "unloading"
    RELOADING = "reloading"
    REGISTERING = "registering"
    ACTIVATING = "activating"
    RESTORING = "restoring"
    RELOADED = "reloaded"
    ERROR = "error"


TERMINAL_PHASES = (ReloadPhase.RELOADED, ReloadPhase.ERROR)


@dataclass
class ReloadTask:
    """One full reload; ends in exactly one terminal phase."""

    plugin_id: str
    reason: str = "manual"
    phase: ReloadPhase = ReloadPhase.PENDING
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    failed_phase: Optional[ReloadPhase] = None
    preserved_state: Any = None
    reactivated: list[str] = field(default_factory=list)

    @property
    def done(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def succeeded(self) -> bool:
        return self.phase == ReloadPhase.RELOADED

    def advance(self, phase: ReloadPhase) -> None:
        if self.done:
            raise RuntimeError(f"Reload of {self.plugin_id} already finished ({self.phase.value})")
        logger.debug(
            f"Reload {self.plugin_id}: {self.phase.value} -> {phase.value}",
            extra={"plugin_id": self.plugin_id},
        )
        self.phase = phase

    def complete(self) -> None:
        self.advance(ReloadPhase.RELOADED)
        self.finished_at = utcnow()

    def fail(self, error: str) -> None:
        if self.done:
            return
        self.failed_phase = self.phase
        self.error = error
        self.phase = ReloadPhase.ERROR
        self.finished_at = utcnow()

    @property
    def duration_ms(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds() * 1000


class ChangeForwarder(FileSystemEventHandler):
    """Forward watchdog events from the observer thread onto the event loop."""

    _KINDS = {"created": "added", "modified": "changed", "deleted": "deleted"}

    def __init__(self, manager: HotReloadManager, loop: asyncio.AbstractEventLoop):
        super().__init__()
        self.manager = manager
        self.loop = loop

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type == "moved":
            self._forward(event.src_path, "deleted")
            self._forward(getattr(event, "dest_path", ""), "added")
            return

        kind = self._KINDS.get(event.event_type)
        if kind is None or (event.is_directory and kind != "deleted"):
            return
        self._forward(event.src_path, kind)

    def _forward(self, raw_path: Any, kind: str) -> None:
        if not raw_path:
            return
        change = FileChangeEvent(path=Path(os.fsdecode(raw_path)), type=kind)
        try:
            self.loop.call_soon_threadsafe(self.manager.notify, change)
        except RuntimeError:
            # Loop already closed during shutdown
            pass


class HotReloadManager:
    """Batches file changes and reloads the affected plugins.

    Args:
        runtime: Owner of the discovery, validator, loader and registry
        config: Hot reload settings
    """

    def __init__(self, runtime: PluginRuntime, config: HotReloadConfig | None = None):
        self.runtime = runtime
        self.config = config or HotReloadConfig()

        self._queue: list[FileChangeEvent] = []
        self._timer: asyncio.TimerHandle | None = None
        self._flush_task: asyncio.Task | None = None
        self._reload_lock = asyncio.Lock()
        self._observer: Any = None
        self._is_reloading = False
        self._history: deque[ReloadTask] = deque(maxlen=self.config.history_size)
        self._stats: dict[str, Any] = {
            "total_reloads": 0,
            "successful_reloads": 0,
            "failed_reloads": 0,
            "last_reload_time": None,
        }

    @property
    def active(self) -> bool:
        return self.config.enabled and self.config.development

    # Watching

    def start(self) -> bool:
        """Start the file observer. Returns False when hot reload is off."""
        if not self.active:
            logger.info("Hot reload disabled")
            return False
        if self._observer is not None:
            return True

        loop = asyncio.get_running_loop()
        handler = ChangeForwarder(self, loop)
        observer = Observer()
        watched = 0
        for watch_path in self._watch_roots():
            if watch_path.is_dir():
                observer.schedule(handler, str(watch_path), recursive=True)
                watched += 1
            else:
                logger.debug(f"Watch path not found: {watch_path}")

        observer.start()
        self._observer = observer
        logger.info(f"Hot reload watching {watched} directories")
        return True

    async def stop(self) -> None:
        """Stop the observer and drop any pending batch."""
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join, 5)
        self.cleanup()

        task, self._flush_task = self._flush_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _watch_roots(self) -> list[Path]:
        return [Path(p).expanduser().resolve() for p in self.config.watch_paths]

    # Change batching

    def notify(self, change: FileChangeEvent) -> None:
        """Queue a change and restart the debounce timer. Event-loop thread only."""
        if not self.config.enabled:
            return

        suffix = change.path.suffix
        if suffix not in self.config.watch_extensions and not (
            change.type == "deleted" and not suffix
        ):
            return

        logger.debug(f"File {change.type}: {change.path}")
        self._queue.append(change)

        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.config.debounce_delay, self._start_flush)

    def _start_flush(self) -> None:
        self._timer = None
        self._flush_task = asyncio.get_running_loop().create_task(self.process_queue())

    async def process_queue(self) -> None:
        """Reload every plugin touched by the queued changes."""
        async with self._reload_lock:
            changes, self._queue = self._queue, []
            if not changes:
                return

            self._is_reloading = True
            try:
                for (plugin_id, plugin_dir), plugin_changes in self._group_by_plugin(changes).items():
                    await self._reload_plugin(plugin_id, plugin_dir, plugin_changes)
            finally:
                self._is_reloading = False

    def _group_by_plugin(
        self, changes: list[FileChangeEvent]
    ) -> dict[tuple[str, Path], list[FileChangeEvent]]:
        grouped: dict[tuple[str, Path], list[FileChangeEvent]] = {}
        for change in changes:
            owner = self.resolve_plugin(change.path)
            if owner is None:
                logger.debug(f"Ignoring change outside plugin directories: {change.path}")
                continue
            grouped.setdefault(owner, []).append(change)
        return grouped

    def resolve_plugin(self, path: Path) -> tuple[str, Path] | None:
        """Map a changed path to ``(plugin_id, plugin_dir)``.

        The plugin directory is the first path component below a watch root;
        its id comes from discovery when known, else the directory name.
        """
        path = Path(path).expanduser().resolve()
        for root in self._watch_roots():
            try:
                relative = path.relative_to(root)
            except ValueError:
                continue
            parts = relative.parts
            # Files directly under the root belong to no plugin
            if not parts or (len(parts) == 1 and Path(parts[0]).suffix):
                return None
            plugin_dir = root / parts[0]
            for discovered in self.runtime.discovery.get_all_discovered_plugins():
                if discovered.plugin_path.resolve() == plugin_dir:
                    return discovered.metadata.id, plugin_dir
            return parts[0], plugin_dir
        return None

    # Reloading

    def needs_full_reload(self, plugin_id: str, changes: list[FileChangeEvent]) -> bool:
        discovered = self.runtime.discovery.get_plugin_by_id(plugin_id)
        entry_path = discovered.entry_path.resolve() if discovered and discovered.entry_path else None
        for change in changes:
            if change.type == "deleted" or change.path.name == MANIFEST_FILENAME:
                return True
            if entry_path is not None and change.path.resolve() == entry_path:
                return True
        return False

    async def _reload_plugin(
        self, plugin_id: str, plugin_dir: Path, changes: list[FileChangeEvent]
    ) -> bool:
        logger.info(f"Reloading plugin: {plugin_id}", extra={"plugin_id": plugin_id})
        if self.needs_full_reload(plugin_id, changes):
            task = await self.full_reload(plugin_id, plugin_dir, reason="file-change")
            return task.succeeded

        self._partial_reload(plugin_id, changes)
        self._record(True, plugin_id, "partial")
        return True

    def _partial_reload(self, plugin_id: str, changes: list[FileChangeEvent]) -> None:
        for change in changes:
            suffix = change.path.suffix
            if suffix in TEMPLATE_EXTENSIONS:
                event = events.PLUGIN_COMPONENT_CHANGED
            elif suffix in STYLE_EXTENSIONS:
                event = events.PLUGIN_STYLE_CHANGED
            else:
                event = events.PLUGIN_SCRIPT_CHANGED
            self.runtime.events.emit(
                event,
                {"plugin_id": plugin_id, "path": str(change.path), "timestamp": utcnow()},
            )
        self._dispatch_reload_event(plugin_id, "partial")

    async def full_reload(
        self, plugin_id: str, plugin_dir: Path | None = None, reason: str = "manual"
    ) -> ReloadTask:
        """Run a complete reload of one plugin and return its finished task."""
        task = ReloadTask(plugin_id=plugin_id, reason=reason)
        self._history.append(task)
        try:
            await self._run_full_reload(task, plugin_dir)
            task.complete()
        except asyncio.CancelledError:
            task.fail("cancelled")
            logger.warning(
                f"Reload of plugin {plugin_id} cancelled during {task.failed_phase.value}",
                extra={"plugin_id": plugin_id, "reload_type": "full"},
            )
            self._record(False, plugin_id, "full", task.duration_ms)
            raise
        except Exception as e:
            task.fail(str(e) or type(e).__name__)
            logger.error(
                f"Failed to reload plugin {plugin_id} during {task.failed_phase.value}: {task.error}",
                extra={"plugin_id": plugin_id, "reload_type": "full"},
            )

        self._record(task.succeeded, plugin_id, "full", task.duration_ms)
        if task.succeeded:
            self._dispatch_reload_event(plugin_id, "full")
        return task

    async def _run_full_reload(self, task: ReloadTask, plugin_dir: Path | None) -> None:
        runtime = self.runtime
        registry = runtime.registry
        plugin_id = task.plugin_id
        plugin = registry.get_plugin(plugin_id)

        task.advance(ReloadPhase.PRESERVING)
        if self.config.preserve_state and plugin is not None and plugin.instance is not None:
            get_state = getattr(plugin.instance, "get_state", None)
            if callable(get_state):
                task.preserved_state = get_state()

        task.advance(ReloadPhase.DEACTIVATING)
        to_reactivate: list[str] = []
        if plugin is not None:
            active_before = [p.id for p in registry.get_plugins_by_state(PluginState.ACTIVE)]
            await registry.deactivate(plugin_id)
            to_reactivate = [
                pid
                for pid in active_before
                if registry.has_plugin(pid)
                and registry.get_plugin(pid).state != PluginState.ACTIVE
            ]

        task.advance(ReloadPhase.UNLOADING)
        if plugin is not None:
            await registry.unload_instance(plugin_id)
        runtime.loader.unload_plugin(plugin_id)

        task.advance(ReloadPhase.RELOADING)
        discovery_result = self._rediscover(plugin_id, plugin_dir)
        validation = runtime.validator.validate_discovery(discovery_result)
        if not validation.valid:
            raise PluginLoadError(
                "Validation failed: " + "; ".join(r.message for r in validation.errors)
            )
        load_result = await runtime.loader.load_plugin(discovery_result)
        if not load_result.success:
            raise PluginLoadError(load_result.error or "Plugin load failed")
        load_validation = runtime.validator.validate_load(load_result)
        if not load_validation.valid:
            raise PluginLoadError(
                "Validation failed: " + "; ".join(r.message for r in load_validation.errors)
            )

        task.advance(ReloadPhase.REGISTERING)
        if registry.has_plugin(plugin_id):
            registry.reregister(load_result, load_validation)
        else:
            registry.register(load_result, load_validation)

        task.advance(ReloadPhase.ACTIVATING)
        present = [pid for pid in to_reactivate if registry.has_plugin(pid)]
        for pid in registry.get_dependency_order(present):
            await registry.activate(pid)
            task.reactivated.append(pid)

        task.advance(ReloadPhase.RESTORING)
        if task.preserved_state is not None:
            reloaded = registry.get_plugin(plugin_id)
            set_state = getattr(reloaded.instance, "set_state", None) if reloaded else None
            if callable(set_state):
                set_state(task.preserved_state)
            else:
                logger.debug(
                    f"State for {plugin_id} not restored: plugin is not active",
                    extra={"plugin_id": plugin_id},
                )

    def _rediscover(self, plugin_id: str, plugin_dir: Path | None):
        discovery = self.runtime.discovery
        if plugin_dir is None:
            known = discovery.get_plugin_by_id(plugin_id)
            if known is None:
                raise PluginLoadError(f"Plugin {plugin_id} has not been discovered")
            plugin_dir = known.plugin_path

        result = discovery.rediscover_plugin(plugin_dir)
        if result is None:
            raise PluginLoadError(f"Plugin manifest not found in {plugin_dir}")
        if result.metadata.id != plugin_id:
            raise PluginLoadError(
                f"Plugin id changed from {plugin_id} to {result.metadata.id}; restart required"
            )
        return result

    def _dispatch_reload_event(self, plugin_id: str, reload_type: str) -> None:
        self.runtime.events.emit(
            events.PLUGIN_HOT_RELOAD,
            {"plugin_id": plugin_id, "type": reload_type, "timestamp": utcnow()},
        )

    def _record(
        self, success: bool, plugin_id: str, reload_type: str, duration_ms: float | None = None
    ) -> None:
        self._stats["total_reloads"] += 1
        if success:
            self._stats["successful_reloads"] += 1
        else:
            self._stats["failed_reloads"] += 1
        self._stats["last_reload_time"] = utcnow()

        extra = {"plugin_id": plugin_id, "reload_type": reload_type}
        if duration_ms is not None:
            extra["duration_ms"] = round(duration_ms, 2)
        if success:
            logger.info(f"Plugin {plugin_id} reloaded ({reload_type})", extra=extra)

    # Control

    async def manual_reload(self, plugin_id: str) -> bool:
        """Fully reload one plugin on request."""
        logger.info(f"Manual reload triggered for plugin: {plugin_id}", extra={"plugin_id": plugin_id})
        async with self._reload_lock:
            self._is_reloading = True
            try:
                task = await self.full_reload(plugin_id)
            finally:
                self._is_reloading = False
        return task.succeeded

    def get_reload_status(self) -> dict[str, Any]:
        stats = dict(self._stats)
        if stats["last_reload_time"] is not None:
            stats["last_reload_time"] = stats["last_reload_time"].isoformat()
        return {
            "is_reloading": self._is_reloading,
            "pending_changes": len(self._queue),
            "stats": stats,
        }

    def get_history(self) -> list[ReloadTask]:
        return list(self._history)

    def update_config(self, **changes: Any) -> None:
        self.config = self.config.model_copy(update=changes)
        if not self.config.enabled:
            self.cleanup()
        logger.debug(f"Hot reload configuration updated: {sorted(changes)}")

    def cleanup(self) -> None:
        """Cancel the pending flush and forget queued changes."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._queue = []
