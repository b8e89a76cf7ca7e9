"""Settings and configuration management."""

from __future__ import annotations

import logging
import warnings
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from plugin_runtime.discovery import DiscoveryConfig
    from plugin_runtime.hot_reload import HotReloadConfig
    from plugin_runtime.loader import LoaderConfig
    from plugin_runtime.registry import RegistryConfig
    from plugin_runtime.validation import ValidatorConfig

logger = logging.getLogger(__name__)

DANGEROUS_PERMISSIONS = ("system", "file-system", "network")
DEFAULT_ALLOWED_PERMISSIONS = ["storage", "notification", "menu", "component", "shortcut"]


class Settings(BaseSettings):
    """Runtime settings, read from ``PLUGIN_RUNTIME_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PLUGIN_RUNTIME_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Host application
    app_version: str = Field("1.0.0", description="Host application version")
    development: bool = Field(
        False, description="Development build: enables hot reload and lenient class checks"
    )
    strict_config: bool = Field(
        False, description="Raise instead of warn on questionable configuration"
    )
    log_level: str = Field("INFO", description="Logging level")
    log_format: str = Field("text", description="Log format: 'text' or 'json'")

    # Discovery
    plugin_directories: list[str] = Field(
        default_factory=lambda: ["plugins", "extensions"],
        description="Plugin root directories (absolute or relative to base_dir)",
    )
    base_dir: Path = Field(default_factory=Path.cwd)
    recursive: bool = True
    max_depth: int = Field(3, ge=0)
    supported_extensions: list[str] = Field(default_factory=lambda: [".py"])

    # Validation
    validation_mode: Literal["strict", "permissive"] = "strict"
    allowed_permissions: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_PERMISSIONS)
    )
    enabled_rules: list[str] = Field(default_factory=lambda: ["*"])

    # Loader
    load_timeout: float = Field(10.0, gt=0, description="Import timeout in seconds")
    enable_cache: bool = True
    validate_plugin_class: bool = True

    # Registry
    max_plugins: int = Field(100, ge=1)
    enable_dependency_check: bool = True
    enable_state_persistence: bool = True
    persistence_key: str = "plugin-registry"
    state_dir: Path = Field(default_factory=lambda: Path.home() / ".plugin-runtime")
    cleanup_interval: float = Field(300.0, gt=0, description="Cleanup period in seconds")
    enable_stats: bool = True

    # Hot reload
    hot_reload_enabled: bool = True
    debounce_delay: float = Field(0.3, ge=0, description="Quiet period in seconds")
    preserve_state: bool = True
    watch_extensions: list[str] = Field(
        default_factory=lambda: [".py", ".json", ".html", ".jinja", ".j2", ".css"]
    )

    def model_post_init(self, __context) -> None:
        """Validate the configuration combination."""
        self._validate_config()

    def _validate_config(self) -> None:
        issues = []

        dangerous = [p for p in self.allowed_permissions if p in DANGEROUS_PERMISSIONS]
        if dangerous and self.validation_mode == "strict":
            issues.append(
                f"Permissions {', '.join(dangerous)} are allow-listed but strict "
                "validation rejects them. Use validation_mode='permissive' or "
                "remove them from ALLOWED_PERMISSIONS."
            )

        if self.validation_mode == "permissive" and not self.development:
            issues.append(
                "Permissive validation is enabled outside development. "
                "Dangerous permissions will only produce warnings."
            )

        if not self.enable_dependency_check and not self.development:
            issues.append(
                "Dependency checking is disabled. Plugins may register before "
                "their dependencies and cycles can only be found at activation."
            )

        if issues:
            if self.strict_config:
                raise ValueError(
                    "Invalid plugin runtime configuration:\n"
                    + "\n".join(f"  - {issue}" for issue in issues)
                )
            for issue in issues:
                warnings.warn(f"Configuration: {issue}", stacklevel=3)
                logger.warning("CONFIG WARNING: %s", issue)

    def resolve_plugin_directories(self) -> list[Path]:
        """Plugin roots with relative entries resolved against base_dir."""
        resolved = []
        for directory in self.plugin_directories:
            path = Path(directory).expanduser()
            resolved.append(path if path.is_absolute() else self.base_dir / path)
        return resolved

    def discovery_config(self) -> DiscoveryConfig:
        from plugin_runtime.discovery import DiscoveryConfig

        return DiscoveryConfig(
            plugin_directories=[str(p) for p in self.resolve_plugin_directories()],
            recursive=self.recursive,
            supported_extensions=list(self.supported_extensions),
            max_depth=self.max_depth,
        )

    def validator_config(self) -> ValidatorConfig:
        from plugin_runtime.validation import ValidatorConfig

        return ValidatorConfig(
            mode=self.validation_mode,
            app_version=self.app_version,
            allowed_permissions=list(self.allowed_permissions),
            enabled_rules=list(self.enabled_rules),
        )

    def loader_config(self) -> LoaderConfig:
        from plugin_runtime.loader import LoaderConfig

        return LoaderConfig(
            load_timeout=self.load_timeout,
            enable_cache=self.enable_cache,
            validate_plugin_class=self.validate_plugin_class,
            allowed_permissions=list(self.allowed_permissions),
            development=self.development,
        )

    def registry_config(self) -> RegistryConfig:
        from plugin_runtime.registry import RegistryConfig

        return RegistryConfig(
            max_plugins=self.max_plugins,
            enable_dependency_check=self.enable_dependency_check,
            enable_state_persistence=self.enable_state_persistence,
            persistence_key=self.persistence_key,
            cleanup_interval=self.cleanup_interval,
            enable_stats=self.enable_stats,
        )

    def hot_reload_config(self) -> HotReloadConfig:
        from plugin_runtime.hot_reload import HotReloadConfig

        return HotReloadConfig(
            enabled=self.hot_reload_enabled,
            development=self.development,
            watch_paths=[str(p) for p in self.resolve_plugin_directories()],
            watch_extensions=list(self.watch_extensions),
            debounce_delay=self.debounce_delay,
            preserve_state=self.preserve_state,
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
