"""Plugin Runtime - discovery, validation, loading and lifecycle management for plugins."""

__version__ = "0.1.0"

from .config import Settings, get_settings
from .base import BasePlugin
from .errors import (
    PluginRuntimeError,
    ManifestError,
    PluginNotFoundError,
    PluginRegistrationError,
    DependencyError,
    CircularDependencyError,
    InvalidStateTransitionError,
    PluginActivationError,
    PluginDeactivationError,
    PluginLoadError,
    PluginLoadTimeoutError,
    PermissionDeniedError,
)
from .models import (
    PluginMetadata,
    PluginDiscoveryResult,
    ValidationResult,
    PluginValidationResult,
    PluginLoadResult,
    PluginState,
    PluginStats,
    RegisteredPlugin,
    FileChangeEvent,
    Severity,
)
from .events import EventBus
from .discovery import (
    PluginDiscovery,
    DiscoveryConfig,
    DependencyCheck,
    validate_manifest,
    compare_versions,
    is_version_compatible,
)
from .validation import (
    PluginValidator,
    ValidatorConfig,
    ValidationContext,
    create_validation_summary,
)
from .sources import (
    ModuleSource,
    FileModuleSource,
    InstalledModuleSource,
    FactoryModuleSource,
)
from .loader import PluginLoader, LoaderConfig
from .storage import StateStore, JsonFileStore, MemoryStore
from .registry import PluginRegistry, RegistryConfig
from .hot_reload import HotReloadManager, HotReloadConfig, ReloadTask, ReloadPhase
from .runtime import PluginRuntime, RuntimeReport

__all__ = [
    "__version__",
    "Settings",
    "get_settings",
    "BasePlugin",
    # Errors
    "PluginRuntimeError",
    "ManifestError",
    "PluginNotFoundError",
    "PluginRegistrationError",
    "DependencyError",
    "CircularDependencyError",
    "InvalidStateTransitionError",
    "PluginActivationError",
    "PluginDeactivationError",
    "PluginLoadError",
    "PluginLoadTimeoutError",
    "PermissionDeniedError",
    # Models
    "PluginMetadata",
    "PluginDiscoveryResult",
    "ValidationResult",
    "PluginValidationResult",
    "PluginLoadResult",
    "PluginState",
    "PluginStats",
    "RegisteredPlugin",
    "FileChangeEvent",
    "Severity",
    # Components
    "EventBus",
    "PluginDiscovery",
    "DiscoveryConfig",
    "DependencyCheck",
    "validate_manifest",
    "compare_versions",
    "is_version_compatible",
    "PluginValidator",
    "ValidatorConfig",
    "ValidationContext",
    "create_validation_summary",
    "ModuleSource",
    "FileModuleSource",
    "InstalledModuleSource",
    "FactoryModuleSource",
    "PluginLoader",
    "LoaderConfig",
    "StateStore",
    "JsonFileStore",
    "MemoryStore",
    "PluginRegistry",
    "RegistryConfig",
    "HotReloadManager",
    "HotReloadConfig",
    "ReloadTask",
    "ReloadPhase",
    "PluginRuntime",
    "RuntimeReport",
]
