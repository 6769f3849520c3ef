"""Persistent user preferences for CodeCut MCP Server.

Remembers the directories last used for map import and export, and the
Python executable chosen for module name guessing, across server runs.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger("codecut.preferences")

LAST_IMPORT_DIRECTORY = "last_import_directory"
LAST_EXPORT_DIRECTORY = "last_export_directory"
PYTHON_EXECUTABLE = "python_executable"


class Preferences:
    """Small JSON-backed key/value store."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._values: Dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"Ignoring unreadable preferences file {self.path}: {e}")
            return
        if isinstance(data, dict):
            self._values = data

    def _save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(self._values, f, indent=2, sort_keys=True)
        except IOError as e:
            logger.warning(f"Could not save preferences to {self.path}: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._values[key] = value
            self._save()

    def last_directory(self, key: str, fallback: Path) -> Path:
        value = self.get(key)
        if value:
            path = Path(value)
            if path.is_dir():
                return path
        return Path(fallback)

    def resolve_map_path(self, file_path: Union[str, Path], key: str, fallback: Path) -> Path:
        """Resolve a relative map path against the last directory used for ``key``."""
        path = Path(file_path).expanduser()
        if not path.is_absolute():
            path = self.last_directory(key, fallback) / path
        return path

    def remember_directory(self, key: str, file_path: Path) -> None:
        parent = Path(file_path).resolve().parent
        self.set(key, str(parent))


_preferences: Optional[Preferences] = None


def get_preferences() -> Preferences:
    """Get the global preferences instance, creating it if necessary."""
    global _preferences
    if _preferences is None:
        from .config import config
        _preferences = Preferences(config.preferences_file)
    return _preferences


def reset_preferences() -> None:
    """Drop the global instance (for testing)."""
    global _preferences
    _preferences = None
