"""Pydantic models shared by discovery, validation, loading and the registry."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class PluginState(str, Enum):
    """Lifecycle state of a registered plugin."""

    REGISTERED = "registered"
    LOADED = "loaded"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    UNREGISTERED = "unregistered"


class Severity(str, Enum):
    """Severity attached to a validation result."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class PluginMetadata(BaseModel):
    """Declarative description of a plugin, read from ``plugin.json``.

    Field names are snake_case; the manifest's camelCase keys
    (``minAppVersion``) are accepted as aliases.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = ""
    name: str = ""
    version: str = ""
    description: Optional[str] = None
    author: Optional[str] = None
    entry: Optional[str] = None
    dependencies: list[str] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)
    min_app_version: Optional[str] = Field(None, alias="minAppVersion")
    keywords: list[str] = Field(default_factory=list)

    @field_validator("id", "name", "version", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("dependencies", "permissions", "keywords", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


class PluginDiscoveryResult(BaseModel):
    """One discovered manifest and the outcome of its basic checks."""

    metadata: PluginMetadata
    plugin_path: Path
    entry_path: Optional[Path] = None
    is_valid: bool = True
    errors: list[str] = Field(default_factory=list)

    @property
    def plugin_id(self) -> str:
        return self.metadata.id


class ValidationResult(BaseModel):
    """Outcome of a single validation rule."""

    valid: bool
    severity: Severity = Severity.INFO
    message: str = ""
    rule: str = ""
    details: Optional[dict[str, Any]] = None


class PluginValidationResult(BaseModel):
    """Aggregate of every enabled rule run against one plugin."""

    plugin_id: str
    valid: bool
    error_count: int = 0
    warning_count: int = 0
    results: list[ValidationResult] = Field(default_factory=list)
    duration: float = Field(0.0, description="Validation time in milliseconds")

    def get_result(self, rule: str) -> ValidationResult | None:
        """Get the result produced by a rule."""
        for result in self.results:
            if result.rule == rule:
                return result
        return None

    @property
    def errors(self) -> list[ValidationResult]:
        return [
            r for r in self.results if not r.valid and r.severity == Severity.ERROR
        ]

    @property
    def warnings(self) -> list[ValidationResult]:
        return [r for r in self.results if r.severity == Severity.WARNING]


class PluginLoadResult(BaseModel):
    """Outcome of importing a plugin entry module."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    plugin_id: str
    metadata: PluginMetadata
    success: bool
    plugin_class: Optional[type] = None
    error: Optional[str] = None
    load_time: float = Field(0.0, description="Load time in milliseconds")
    module: Any = None


class PluginStats(BaseModel):
    """Runtime counters kept for every registered plugin."""

    activation_count: int = 0
    total_runtime: float = Field(0.0, description="Milliseconds spent active")
    avg_load_time: float = 0.0
    error_count: int = 0
    last_error_at: Optional[datetime] = None
    last_error: Optional[str] = None


class RegisteredPlugin(BaseModel):
    """The registry's unit of record."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    metadata: PluginMetadata
    plugin_class: type
    instance: Any = None
    state: PluginState = PluginState.REGISTERED
    registered_at: datetime = Field(default_factory=utcnow)
    last_activated_at: Optional[datetime] = None
    last_deactivated_at: Optional[datetime] = None
    validation_result: Optional[PluginValidationResult] = None
    error: Optional[str] = None
    dependencies: list[str] = Field(default_factory=list)
    dependents: list[str] = Field(default_factory=list)
    stats: PluginStats = Field(default_factory=PluginStats)

    def to_snapshot(self) -> dict[str, Any]:
        """Serialize the persistable part of this record."""
        return {
            "id": self.id,
            "metadata": self.metadata.model_dump(mode="json", by_alias=True),
            "state": self.state.value,
            "registered_at": self.registered_at.isoformat(),
            "last_activated_at": _iso(self.last_activated_at),
            "last_deactivated_at": _iso(self.last_deactivated_at),
            "error": self.error,
            "dependencies": list(self.dependencies),
            "dependents": list(self.dependents),
            "stats": self.stats.model_dump(mode="json"),
        }


class PersistedPlugin(BaseModel):
    """A plugin record read back from a registry snapshot."""

    id: str
    metadata: PluginMetadata
    state: PluginState
    registered_at: datetime
    last_activated_at: Optional[datetime] = None
    last_deactivated_at: Optional[datetime] = None
    error: Optional[str] = None
    dependencies: list[str] = Field(default_factory=list)
    dependents: list[str] = Field(default_factory=list)
    stats: PluginStats = Field(default_factory=PluginStats)


class FileChangeEvent(BaseModel):
    """A file-system change reported to the hot-reload manager."""

    path: Path
    type: Literal["added", "changed", "deleted"] = "changed"
    timestamp: datetime = Field(default_factory=utcnow)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
