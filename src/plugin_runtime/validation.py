"""Plugin validation rule engine.

Rules are plain callables ``(target, context) -> ValidationResult`` kept in
an ordered registry and toggled by name or wildcard pattern.
"""

from __future__ import annotations

import fnmatch
import logging
import re
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel, Field

from .config.settings import DANGEROUS_PERMISSIONS, DEFAULT_ALLOWED_PERMISSIONS
from .discovery import MANIFEST_FILENAME, compare_versions
from .models import (
    PluginDiscoveryResult,
    PluginLoadResult,
    PluginMetadata,
    PluginValidationResult,
    Severity,
    ValidationResult,
)

logger = logging.getLogger(__name__)

SEMVER_PATTERN = r"^\d+\.\d+\.\d+(?:-[a-zA-Z0-9.-]+)?(?:\+[a-zA-Z0-9.-]+)?$"
PLUGIN_ID_PATTERN = r"^[a-z0-9-_]+$"
LIFECYCLE_METHODS = ("on_load", "on_activate", "on_deactivate", "on_unload")


class ValidatorConfig(BaseModel):
    """Validator settings."""

    mode: Literal["strict", "permissive"] = "strict"
    app_version: str = "1.0.0"
    allowed_permissions: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_PERMISSIONS)
    )
    enabled_rules: list[str] = Field(default_factory=lambda: ["*"])


@dataclass
class ValidationContext:
    """Everything a rule may look at besides its target."""

    app_version: str
    allowed_permissions: list[str]
    mode: str
    metadata: Optional[PluginMetadata] = None
    discovery_result: Optional[PluginDiscoveryResult] = None
    load_result: Optional[PluginLoadResult] = None


ValidationRule = Callable[[Any, ValidationContext], ValidationResult]


def _ok(message: str, **kwargs: Any) -> ValidationResult:
    return ValidationResult(valid=True, severity=Severity.INFO, message=message, **kwargs)


def _fail(message: str, **kwargs: Any) -> ValidationResult:
    return ValidationResult(valid=False, severity=Severity.ERROR, message=message, **kwargs)


def _metadata(target: Any, context: ValidationContext) -> Any:
    if context.metadata is not None:
        return context.metadata
    return getattr(target, "metadata", None)


def _field(metadata: Any, name: str, default: Any = None) -> Any:
    if isinstance(metadata, dict):
        return metadata.get(name, default)
    return getattr(metadata, name, default)


# Metadata rules


def check_required_fields(target: Any, context: ValidationContext) -> ValidationResult:
    metadata = _metadata(target, context)
    if metadata is None:
        return _fail("Plugin metadata is missing")

    missing = [field for field in ("id", "name", "version") if not _field(metadata, field)]
    if missing:
        return _fail(
            f"Missing required fields: {', '.join(missing)}",
            details={"missing_fields": missing},
        )
    return _ok("All required fields are present")


def check_metadata_format(target: Any, context: ValidationContext) -> ValidationResult:
    metadata = _metadata(target, context)
    if not isinstance(metadata, (PluginMetadata, dict)):
        return _fail("Plugin metadata must be an object")
    return _ok("Metadata format is valid")


def check_version_format(target: Any, context: ValidationContext) -> ValidationResult:
    version = _field(_metadata(target, context), "version")
    if not version:
        return _fail("Version is required")
    if not re.match(SEMVER_PATTERN, str(version)):
        return _fail(
            "Version must follow semantic versioning (x.y.z)",
            details={"version": version},
        )
    return _ok("Version format is valid")


def check_id_format(target: Any, context: ValidationContext) -> ValidationResult:
    plugin_id = _field(_metadata(target, context), "id")
    if not plugin_id:
        return _fail("Plugin ID is required")
    if not re.match(PLUGIN_ID_PATTERN, str(plugin_id)):
        return _fail(
            "Plugin ID can only contain lowercase letters, numbers, hyphens, and underscores",
            details={"id": plugin_id},
        )
    return _ok("Plugin ID format is valid")


# Compatibility rules


def check_app_version(target: Any, context: ValidationContext) -> ValidationResult:
    metadata = _metadata(target, context)
    min_app_version = _field(metadata, "min_app_version") or _field(metadata, "minAppVersion")
    if not min_app_version:
        return ValidationResult(
            valid=True,
            severity=Severity.WARNING,
            message="No minimum app version specified",
        )

    if compare_versions(context.app_version, min_app_version) < 0:
        return _fail(
            f"Plugin requires app version {min_app_version} or higher, "
            f"but current version is {context.app_version}",
            details={"required": min_app_version, "current": context.app_version},
        )
    return _ok("App version compatibility verified")


def check_dependencies(target: Any, context: ValidationContext) -> ValidationResult:
    metadata = _metadata(target, context)
    dependencies = list(_field(metadata, "dependencies") or [])
    plugin_id = _field(metadata, "id")

    if plugin_id and plugin_id in dependencies:
        return _fail(
            f"Plugin {plugin_id} cannot depend on itself",
            details={"dependencies": dependencies},
        )
    return _ok(
        f"Dependencies validated ({len(dependencies)} dependencies)",
        details={"dependencies": dependencies},
    )


# Security rules


def check_permissions(target: Any, context: ValidationContext) -> ValidationResult:
    permissions = _field(_metadata(target, context), "permissions") or []
    invalid = [p for p in permissions if p not in context.allowed_permissions]
    if invalid:
        return _fail(
            f"Invalid permissions requested: {', '.join(invalid)}",
            details={
                "invalid_permissions": invalid,
                "allowed_permissions": list(context.allowed_permissions),
            },
        )
    return _ok("All requested permissions are valid")


def check_dangerous_permissions(target: Any, context: ValidationContext) -> ValidationResult:
    permissions = _field(_metadata(target, context), "permissions") or []
    dangerous = [p for p in permissions if p in DANGEROUS_PERMISSIONS]

    if not dangerous:
        return _ok("No dangerous permissions requested")
    if context.mode == "strict":
        return _fail(
            "Dangerous permissions are not allowed in strict mode",
            details={"dangerous_permissions": dangerous},
        )
    return ValidationResult(
        valid=True,
        severity=Severity.WARNING,
        message="Plugin requests potentially dangerous permissions",
        details={"dangerous_permissions": dangerous},
    )


# Plugin class rules


def check_class_structure(target: Any, context: ValidationContext) -> ValidationResult:
    if context.load_result is None:
        return _ok("Plugin class validation skipped (not loaded)")
    if context.load_result.plugin_class is None:
        return _fail("Plugin class not found or invalid")
    return _ok("Plugin class structure is valid")


def check_lifecycle_methods(target: Any, context: ValidationContext) -> ValidationResult:
    if context.load_result is None:
        return _ok("Lifecycle method validation skipped (not loaded)")

    plugin_class = context.load_result.plugin_class
    if plugin_class is None:
        return _fail("Cannot validate lifecycle methods: plugin class not available")

    missing = [m for m in LIFECYCLE_METHODS if not callable(getattr(plugin_class, m, None))]
    if missing:
        return _fail(
            f"Missing required lifecycle methods: {', '.join(missing)}",
            details={"missing_methods": missing},
        )
    return _ok("All required lifecycle methods are present")


# File rules


def check_entry_exists(target: Any, context: ValidationContext) -> ValidationResult:
    discovery = context.discovery_result
    if discovery is None:
        return _ok("Entry file validation skipped (no discovery result)")
    if not discovery.is_valid:
        return _fail(
            "Entry file validation failed during discovery",
            details={"errors": list(discovery.errors)},
        )
    return _ok("Entry file exists and is accessible")


def check_manifest_integrity(target: Any, context: ValidationContext) -> ValidationResult:
    discovery = context.discovery_result
    if discovery is None:
        return _ok("Manifest integrity check skipped (no discovery result)")

    manifest_path = discovery.plugin_path / MANIFEST_FILENAME
    if not manifest_path.is_file():
        return _fail(
            "Manifest file is no longer present",
            details={"path": str(manifest_path)},
        )
    return _ok("Manifest integrity check passed")


DEFAULT_RULES: dict[str, ValidationRule] = {
    "metadata.required-fields": check_required_fields,
    "metadata.format": check_metadata_format,
    "metadata.version-format": check_version_format,
    "metadata.id-format": check_id_format,
    "compatibility.app-version": check_app_version,
    "compatibility.dependencies": check_dependencies,
    "security.permissions": check_permissions,
    "security.dangerous-permissions": check_dangerous_permissions,
    "plugin.class-structure": check_class_structure,
    "plugin.lifecycle-methods": check_lifecycle_methods,
    "files.entry-exists": check_entry_exists,
    "files.manifest-integrity": check_manifest_integrity,
}


class PluginValidator:
    """Runs enabled rules against discovery and load results.

    Validation never raises: a rule that throws becomes an error result
    carrying the rule's name.
    """

    def __init__(self, config: ValidatorConfig | None = None):
        self.config = config or ValidatorConfig()
        self._rules: dict[str, ValidationRule] = dict(DEFAULT_RULES)

    def validate_discovery(self, discovery_result: PluginDiscoveryResult) -> PluginValidationResult:
        """Validate a plugin before any of its code runs."""
        context = self._context(
            metadata=discovery_result.metadata,
            discovery_result=discovery_result,
        )
        return self._run(discovery_result.metadata.id, discovery_result, context)

    def validate_load(self, load_result: PluginLoadResult) -> PluginValidationResult:
        """Validate a plugin after its entry module was imported."""
        context = self._context(metadata=load_result.metadata, load_result=load_result)
        return self._run(load_result.plugin_id, load_result, context)

    def _context(self, **kwargs: Any) -> ValidationContext:
        return ValidationContext(
            app_version=self.config.app_version,
            allowed_permissions=list(self.config.allowed_permissions),
            mode=self.config.mode,
            **kwargs,
        )

    def _run(self, plugin_id: str, target: Any, context: ValidationContext) -> PluginValidationResult:
        start = time.perf_counter()
        results: list[ValidationResult] = []

        for name, rule in list(self._rules.items()):
            if not self.is_rule_enabled(name):
                continue
            try:
                result = rule(target, context)
                results.append(result.model_copy(update={"rule": name}))
            except Exception as e:
                logger.warning(
                    "Validation rule %s raised: %s", name, e, extra={"plugin_id": plugin_id}
                )
                results.append(
                    _fail(
                        f"Validation rule error: {e}",
                        rule=name,
                        details={"error": repr(e)},
                    )
                )

        errors = [r for r in results if not r.valid and r.severity == Severity.ERROR]
        warnings = [r for r in results if r.severity == Severity.WARNING]
        duration = (time.perf_counter() - start) * 1000

        validation = PluginValidationResult(
            plugin_id=plugin_id,
            valid=not errors,
            error_count=len(errors),
            warning_count=len(warnings),
            results=results,
            duration=duration,
        )

        if errors:
            logger.info(
                "Plugin %s failed validation: %s",
                plugin_id,
                "; ".join(r.message for r in errors),
                extra={"plugin_id": plugin_id},
            )
        return validation

    def is_rule_enabled(self, name: str) -> bool:
        patterns = self.config.enabled_rules
        if "*" in patterns:
            return True
        return any(
            fnmatch.fnmatchcase(name, pattern) if "*" in pattern else pattern == name
            for pattern in patterns
        )

    def add_rule(self, name: str, rule: ValidationRule) -> None:
        """Add or replace a rule."""
        self._rules[name] = rule
        logger.debug("Added validation rule: %s", name)

    def remove_rule(self, name: str) -> bool:
        removed = self._rules.pop(name, None) is not None
        if removed:
            logger.debug("Removed validation rule: %s", name)
        return removed

    def get_rule_names(self) -> list[str]:
        return list(self._rules.keys())

    def update_config(self, **changes: Any) -> None:
        self.config = self.config.model_copy(update=changes)
        logger.debug("Validator configuration updated: %s", sorted(changes))


def create_validation_summary(results: list[PluginValidationResult]) -> dict[str, Any]:
    """Totals across many validation results plus the most common failing rules."""
    issue_count: Counter[str] = Counter(
        validation.rule
        for result in results
        for validation in result.results
        if not validation.valid
    )
    valid = sum(1 for r in results if r.valid)

    return {
        "total_plugins": len(results),
        "valid_plugins": valid,
        "invalid_plugins": len(results) - valid,
        "total_errors": sum(r.error_count for r in results),
        "total_warnings": sum(r.warning_count for r in results),
        "common_issues": [rule for rule, _ in issue_count.most_common(5)],
    }
