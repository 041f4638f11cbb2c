"""
Keyed JSON state storage in the per-user cache directory.

Each key maps to one JSON file. Reads and writes are best effort: I/O and
decode failures are logged and reported as "nothing stored" or a failed
write, never raised, so in-memory state stays authoritative.
"""

import json
import logging
import os
import platform
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


def default_state_dir() -> Path:
    """Standard cache location for persisted state."""
    # Check XDG_CACHE_HOME first (Linux/Unix standard)
    cache_dir = os.environ.get("XDG_CACHE_HOME")
    if cache_dir:
        return Path(cache_dir) / "treadsync"

    system = platform.system()
    if system == "Darwin":
        return Path.home() / "Library" / "Caches" / "treadsync"
    elif system == "Windows":
        local_appdata = os.environ.get("LOCALAPPDATA")
        if local_appdata:
            return Path(local_appdata) / "treadsync"
        appdata = os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming"))
        return Path(appdata) / "treadsync"
    return Path.home() / ".cache" / "treadsync"


class StateStore:
    """Stores JSON documents under string keys."""

    def __init__(self, directory: Optional[Path] = None) -> None:
        self.directory = Path(directory) if directory else default_state_dir()

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def load(self, key: str) -> Optional[Any]:
        """Load the document stored under ``key``.

        Returns:
            Decoded JSON value, or None if missing or unreadable
        """
        path = self._path(key)
        try:
            if not path.exists():
                return None
            with open(path, "r") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load {key}: {e}")
            return None

    def save(self, key: str, value: Any) -> bool:
        """Write ``value`` under ``key``.

        The document is written to a temporary file first and renamed into
        place so a crash mid-write leaves the previous version intact.

        Returns:
            True if the write succeeded
        """
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w") as f:
                json.dump(value, f, indent=2)
            os.replace(tmp_path, path)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to save {key}: {e}")
            return False

    def delete(self, key: str) -> None:
        """Remove the document stored under ``key`` if present."""
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to delete {key}: {e}")
