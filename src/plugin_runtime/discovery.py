"""Plugin discovery: scan plugin directories for ``plugin.json`` manifests."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .errors import ManifestError
from .graph import find_cycle, topological_sort
from .models import PluginDiscoveryResult, PluginMetadata

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "plugin.json"
MODULE_ENTRY_PREFIX = "module:"
REQUIRED_MANIFEST_FIELDS = ("id", "name", "version", "entry")

_SKIP_DIRS = {"__pycache__", "node_modules", ".git"}
_VERSION_RE = re.compile(r"^\d+\.\d+\.\d+")
_ID_RE = re.compile(r"^[a-z0-9-_]+$")


class DiscoveryConfig(BaseModel):
    """Discovery settings."""

    plugin_directories: list[str] = Field(default_factory=lambda: ["plugins", "extensions"])
    recursive: bool = True
    supported_extensions: list[str] = Field(default_factory=lambda: [".py"])
    max_depth: int = 3
    search_paths: list[Path] = Field(
        default_factory=list,
        description="Extra base directories tried for relative plugin directories",
    )


class DependencyCheck(BaseModel):
    """Result of checking one plugin's dependencies against the discovered set."""

    satisfied: bool
    missing: list[str] = Field(default_factory=list)
    circular: list[str] = Field(default_factory=list)


class PluginDiscovery:
    """Scans the file system for plugins and caches what it finds by id."""

    def __init__(self, config: DiscoveryConfig | None = None):
        self.config = config or DiscoveryConfig()
        self._discovered: dict[str, PluginDiscoveryResult] = {}

    def discover_plugins(self) -> list[PluginDiscoveryResult]:
        """Scan every configured plugin directory.

        A broken manifest produces an invalid result; it never stops the
        scan. The cache is replaced with the new results.
        """
        results: list[PluginDiscoveryResult] = []

        for plugin_dir in self.config.plugin_directories:
            for candidate in self._candidate_paths(plugin_dir):
                if candidate.is_dir():
                    logger.info("Scanning plugin directory: %s", candidate)
                    results.extend(self._scan_directory(candidate))
                    break
            else:
                logger.debug("Plugin directory not found: %s", plugin_dir)

        self._discovered.clear()
        for result in results:
            if result.metadata.id in self._discovered:
                logger.warning(
                    "Duplicate plugin id %s at %s replaces %s",
                    result.metadata.id,
                    result.plugin_path,
                    self._discovered[result.metadata.id].plugin_path,
                )
            self._discovered[result.metadata.id] = result

        logger.info("Discovered %d plugins", len(self._discovered))
        return list(self._discovered.values())

    def rediscover_plugin(self, plugin_path: str | Path) -> PluginDiscoveryResult | None:
        """Re-read a single plugin directory and overwrite its cache entry."""
        plugin_path = Path(plugin_path)
        if not (plugin_path / MANIFEST_FILENAME).exists():
            return None
        result = self.parse_plugin_directory(plugin_path)
        self._discovered[result.metadata.id] = result
        return result

    def _candidate_paths(self, plugin_dir: str) -> list[Path]:
        path = Path(plugin_dir).expanduser()
        if path.is_absolute():
            return [path, path / "plugins"]
        return [Path.cwd() / path] + [base / path for base in self.config.search_paths]

    def _scan_directory(self, dir_path: Path, depth: int = 0) -> list[PluginDiscoveryResult]:
        results: list[PluginDiscoveryResult] = []
        if depth > self.config.max_depth:
            return results

        try:
            entries = sorted(dir_path.iterdir())
        except OSError as e:
            logger.error("Failed to scan directory %s: %s", dir_path, e)
            return results

        for entry in entries:
            if entry.is_dir():
                if self.config.recursive and entry.name not in _SKIP_DIRS and not entry.name.startswith("."):
                    results.extend(self._scan_directory(entry, depth + 1))
            elif entry.name == MANIFEST_FILENAME:
                results.append(self.parse_plugin_directory(dir_path))

        return results

    def parse_plugin_directory(self, plugin_path: Path) -> PluginDiscoveryResult:
        """Parse ``plugin.json`` in a plugin directory into a discovery result."""
        manifest_path = plugin_path / MANIFEST_FILENAME
        errors: list[str] = []

        try:
            manifest = load_manifest(manifest_path)
        except ManifestError as e:
            logger.error("Failed to parse plugin manifest %s: %s", manifest_path, e)
            return self._broken_result(plugin_path, str(e))

        for field in REQUIRED_MANIFEST_FIELDS:
            if not manifest.get(field):
                errors.append(f"Missing plugin {'entry file' if field == 'entry' else field}")

        try:
            metadata = PluginMetadata.model_validate(manifest)
        except ValidationError as e:
            return self._broken_result(plugin_path, f"Invalid manifest fields: {e.error_count()} errors")

        entry_path = None
        entry = manifest.get("entry")
        if isinstance(entry, str) and entry:
            if entry.startswith(MODULE_ENTRY_PREFIX):
                pass
            else:
                entry_path = plugin_path / entry
                if not entry_path.is_file():
                    errors.append(f"Entry file not found: {entry}")
                suffix = Path(entry).suffix
                if suffix not in self.config.supported_extensions:
                    errors.append(f"Unsupported entry file extension: {suffix or '(none)'}")

        result = PluginDiscoveryResult(
            metadata=metadata,
            plugin_path=plugin_path,
            entry_path=entry_path,
            is_valid=not errors,
            errors=errors,
        )

        if not result.is_valid:
            logger.warning(
                "Invalid plugin %s: %s",
                metadata.id or plugin_path.name,
                "; ".join(errors),
                extra={"plugin_id": metadata.id},
            )

        return result

    def _broken_result(self, plugin_path: Path, error: str) -> PluginDiscoveryResult:
        return PluginDiscoveryResult(
            metadata=PluginMetadata(id=plugin_path.name, name=plugin_path.name),
            plugin_path=plugin_path,
            is_valid=False,
            errors=[error],
        )

    def get_plugin_by_id(self, plugin_id: str) -> PluginDiscoveryResult | None:
        return self._discovered.get(plugin_id)

    def get_all_discovered_plugins(self) -> list[PluginDiscoveryResult]:
        return list(self._discovered.values())

    def get_valid_plugins(self) -> list[PluginDiscoveryResult]:
        return [p for p in self._discovered.values() if p.is_valid]

    def get_invalid_plugins(self) -> list[PluginDiscoveryResult]:
        return [p for p in self._discovered.values() if not p.is_valid]

    def sort_plugins_by_dependencies(
        self, plugins: list[PluginDiscoveryResult] | None = None
    ) -> list[PluginDiscoveryResult]:
        """Sort plugins so dependencies come first.

        Dependencies outside the supplied set are ignored.

        Raises:
            CircularDependencyError: If the set contains a dependency cycle
        """
        to_sort = plugins if plugins is not None else self.get_valid_plugins()
        by_id = {p.metadata.id: p for p in to_sort}
        order = topological_sort(
            by_id.keys(), lambda plugin_id: by_id[plugin_id].metadata.dependencies
        )
        return [by_id[plugin_id] for plugin_id in order]

    def check_dependencies(self, plugin: PluginDiscoveryResult) -> DependencyCheck:
        """Check declared dependencies against the discovered set."""
        missing = [
            dep for dep in plugin.metadata.dependencies if dep not in self._discovered
        ]

        def deps_of(plugin_id: str) -> list[str] | None:
            if plugin_id == plugin.metadata.id:
                return plugin.metadata.dependencies
            found = self._discovered.get(plugin_id)
            return found.metadata.dependencies if found else None

        cycle = find_cycle(plugin.metadata.id, deps_of)
        circular = list(dict.fromkeys(cycle))

        return DependencyCheck(
            satisfied=not missing and not circular,
            missing=missing,
            circular=circular,
        )

    def clear_cache(self) -> None:
        self._discovered.clear()

    def get_discovery_stats(self) -> dict[str, Any]:
        invalid = self.get_invalid_plugins()
        return {
            "total": len(self._discovered),
            "valid": len(self._discovered) - len(invalid),
            "invalid": len(invalid),
            "directories": list(self.config.plugin_directories),
            "errors": [error for plugin in invalid for error in plugin.errors],
        }


def load_manifest(manifest_path: Path) -> dict[str, Any]:
    """Read and parse a manifest file.

    Raises:
        ManifestError: If the file cannot be read or is not a JSON object
    """
    try:
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ManifestError(f"Invalid manifest: {e}") from e
    if not isinstance(manifest, dict):
        raise ManifestError("Invalid manifest: expected a JSON object")
    return manifest


def validate_manifest(manifest: dict[str, Any]) -> list[str]:
    """Check a raw manifest dict for required fields and formats."""
    errors = []
    for field in REQUIRED_MANIFEST_FIELDS:
        if not manifest.get(field):
            errors.append(f"Missing required field: {field}")

    version = manifest.get("version")
    if version and not _VERSION_RE.match(str(version)):
        errors.append("Invalid version format (expected x.y.z)")

    plugin_id = manifest.get("id")
    if plugin_id and not _ID_RE.match(str(plugin_id)):
        errors.append(
            "Invalid plugin ID format (only lowercase letters, numbers, "
            "hyphens, and underscores allowed)"
        )

    return errors


def _version_parts(version: str) -> list[int]:
    core = re.split(r"[-+]", version.strip(), maxsplit=1)[0]
    parts = []
    for piece in core.split("."):
        match = re.match(r"\d+", piece)
        parts.append(int(match.group()) if match else 0)
    return parts


def compare_versions(version1: str, version2: str) -> int:
    """Numeric component-wise comparison; returns -1, 0 or 1."""
    v1 = _version_parts(version1)
    v2 = _version_parts(version2)
    for i in range(max(len(v1), len(v2))):
        a = v1[i] if i < len(v1) else 0
        b = v2[i] if i < len(v2) else 0
        if a < b:
            return -1
        if a > b:
            return 1
    return 0


def is_version_compatible(required: str, available: str) -> bool:
    """True if ``available`` is at least ``required``."""
    return compare_versions(available, required) >= 0
