"""Exception hierarchy for the plugin runtime."""

from __future__ import annotations


class PluginRuntimeError(Exception):
    """Base exception for plugin runtime errors."""

    pass


class ManifestError(PluginRuntimeError):
    """A plugin manifest could not be read or parsed."""

    pass


class PluginNotFoundError(PluginRuntimeError):
    """Raised when a plugin id is not known to the registry."""

    def __init__(self, plugin_id: str):
        self.plugin_id = plugin_id
        super().__init__(f"Plugin {plugin_id} is not registered")


class PluginRegistrationError(PluginRuntimeError):
    """Registration or unregistration was rejected."""

    def __init__(self, plugin_id: str, message: str):
        self.plugin_id = plugin_id
        super().__init__(message)


class DependencyError(PluginRegistrationError):
    """One or more declared dependencies are not registered."""

    def __init__(self, plugin_id: str, missing: list[str]):
        self.missing = list(missing)
        details = ", ".join(f"Dependency {dep} is not registered" for dep in missing)
        super().__init__(
            plugin_id,
            f"Dependency validation failed for plugin {plugin_id}: {details}",
        )


class CircularDependencyError(PluginRuntimeError):
    """A dependency cycle was detected.

    Attributes:
        cycle: Plugin ids along the cycle, first id repeated at the end.
    """

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle)
        super().__init__(f"Circular dependency detected: {path}")


class InvalidStateTransitionError(PluginRuntimeError):
    """A lifecycle transition not allowed by the state machine."""

    def __init__(self, plugin_id: str, old_state: str, new_state: str):
        self.plugin_id = plugin_id
        self.old_state = old_state
        self.new_state = new_state
        super().__init__(
            f"Plugin {plugin_id} cannot move from {old_state} to {new_state}"
        )


class PluginActivationError(PluginRuntimeError):
    """A plugin (or one of its dependencies) failed to activate."""

    def __init__(self, plugin_id: str, reason: str):
        self.plugin_id = plugin_id
        self.reason = reason
        super().__init__(f"Failed to activate plugin {plugin_id}: {reason}")


class PluginDeactivationError(PluginRuntimeError):
    """A plugin failed to deactivate cleanly."""

    def __init__(self, plugin_id: str, reason: str):
        self.plugin_id = plugin_id
        self.reason = reason
        super().__init__(f"Failed to deactivate plugin {plugin_id}: {reason}")


class PluginLoadError(PluginRuntimeError):
    """The plugin entry module could not be imported or used."""

    pass


class PluginLoadTimeoutError(PluginLoadError):
    """Import did not finish within the configured timeout."""

    def __init__(self, plugin_id: str, timeout: float):
        self.plugin_id = plugin_id
        self.timeout = timeout
        super().__init__(f"Plugin load timeout after {timeout:g}s: {plugin_id}")


class PermissionDeniedError(PluginLoadError):
    """The plugin requests permissions outside the allow-list."""

    def __init__(self, plugin_id: str, denied: list[str]):
        self.plugin_id = plugin_id
        self.denied = list(denied)
        details = ", ".join(f"Permission not allowed: {p}" for p in denied)
        super().__init__(f"Invalid permissions: {details}")
