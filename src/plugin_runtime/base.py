"""Base class for runtime plugins.

Subclassing is optional: the loader also accepts any class exposing the same
lifecycle methods. Hooks may be plain methods or coroutines.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from .models import PluginMetadata


class BasePlugin(ABC):
    """Lifecycle contract for a plugin.

    Example:
        class HelloPlugin(BasePlugin):
            async def on_activate(self):
                self.api.notify(f"{self.metadata.name} ready")

            async def on_deactivate(self):
                pass
    """

    def __init__(self) -> None:
        self.metadata: PluginMetadata | None = None
        self.api: Any = None
        self._state: dict[str, Any] = {}

    def bind(self, metadata: PluginMetadata, api: Any = None) -> None:
        """Attach manifest metadata and the host capability object."""
        self.metadata = metadata
        self.api = api

    @property
    def id(self) -> str:
        return self.metadata.id if self.metadata else ""

    def get_metadata(self) -> PluginMetadata | None:
        return self.metadata

    def on_load(self) -> Any:
        """Called once after instantiation, before the first activation."""
        return None

    @abstractmethod
    def on_activate(self) -> Any:
        """Start providing functionality."""
        ...

    @abstractmethod
    def on_deactivate(self) -> Any:
        """Stop providing functionality; may be activated again later."""
        ...

    def on_unload(self) -> Any:
        """Release resources before the instance is discarded."""
        return None

    def get_state(self) -> dict[str, Any]:
        """State carried across a hot reload."""
        return dict(self._state)

    def set_state(self, state: dict[str, Any]) -> None:
        self._state = dict(state)
