from __future__ import annotations
from pathlib import Path
from typing import Any
import logging
import threading

from helpers.fs_utils import read_json_file, write_json_file

logger = logging.getLogger(__name__)


class JsonSettingsStore:
    """Flat key/value settings persisted to a single JSON file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        data = read_json_file(path)
        self._data: dict[str, Any] = data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            write_json_file(self.path, self._data)
        logger.debug("Persisted setting %s", key)
