"""Event bus for registry and hot-reload notifications.

Event names consumed by the host application:

- ``plugin:registered`` ``{"plugin": RegisteredPlugin}``
- ``plugin:unregistered`` ``{"plugin_id": str}``
- ``plugin:state-changed`` ``{"plugin_id", "old_state", "new_state"}``
- ``plugin:error`` ``{"plugin_id", "error"}``
- ``dependency:changed`` ``{"plugin_id", "dependencies", "dependents"}``
- ``plugin:hot-reload`` ``{"plugin_id", "type", "timestamp"}``
- ``plugin:component-changed`` / ``plugin:style-changed`` /
  ``plugin:script-changed`` ``{"plugin_id", "path", "timestamp"}``
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

PLUGIN_REGISTERED = "plugin:registered"
PLUGIN_UNREGISTERED = "plugin:unregistered"
PLUGIN_STATE_CHANGED = "plugin:state-changed"
PLUGIN_ERROR = "plugin:error"
DEPENDENCY_CHANGED = "dependency:changed"
PLUGIN_HOT_RELOAD = "plugin:hot-reload"
PLUGIN_COMPONENT_CHANGED = "plugin:component-changed"
PLUGIN_STYLE_CHANGED = "plugin:style-changed"
PLUGIN_SCRIPT_CHANGED = "plugin:script-changed"

Listener = Callable[[dict[str, Any]], Any]


class EventBus:
    """Simple publish/subscribe bus.

    Listeners run synchronously in registration order. A listener that
    raises is logged and skipped; coroutine listeners are scheduled on the
    running event loop.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def on(self, event: str, listener: Listener) -> None:
        """Subscribe to an event."""
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> bool:
        """Unsubscribe from an event. Returns False if it was not subscribed."""
        listeners = self._listeners.get(event)
        if not listeners:
            return False
        try:
            listeners.remove(listener)
        except ValueError:
            return False
        return True

    def emit(self, event: str, data: dict[str, Any]) -> None:
        """Publish an event to all subscribers."""
        for listener in list(self._listeners.get(event, [])):
            try:
                result = listener(data)
            except Exception:
                logger.exception("Event listener error for %s", event)
                continue
            if inspect.isawaitable(result):
                self._schedule(event, result)

    def _schedule(self, event: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Async listener for %s ignored: no running loop", event)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(task)
        task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async event listener failed: %s", task.exception())

    def clear(self, event: str | None = None) -> None:
        """Remove listeners for one event, or for all events."""
        if event:
            self._listeners.pop(event, None)
        else:
            self._listeners.clear()

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))
