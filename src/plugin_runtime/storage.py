"""Key/value stores for registry snapshots."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Persists JSON-serialisable snapshots under a key."""

    @abstractmethod
    def save(self, key: str, data: dict[str, Any]) -> None: ...

    @abstractmethod
    def load(self, key: str) -> dict[str, Any] | None: ...

    @abstractmethod
    def delete(self, key: str) -> bool: ...


class JsonFileStore(StateStore):
    """One ``<key>.json`` file per key inside a directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory).expanduser()

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def save(self, key: str, data: dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.replace(path)

    def load(self, key: str) -> dict[str, Any] | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read state file {path}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        return True


class MemoryStore(StateStore):
    """In-process store, used when persistence should not touch disk."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def save(self, key: str, data: dict[str, Any]) -> None:
        # Round-trip through JSON so callers get the same shapes as from disk
        self._data[key] = json.dumps(data, default=str)

    def load(self, key: str) -> dict[str, Any] | None:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None
