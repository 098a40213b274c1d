from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import logging
import re
import subprocess
import sys
import threading

from config.launcher_config import LauncherConfig
from helpers.fs_utils import path_exists, remove_dir_with_retry
from interfaces.backend.records import Backend, OperationResult
from interfaces.events.sink import EventSink, EventType
from interfaces.settings.store import SettingsStore

logger = logging.getLogger(__name__)

CURRENT_BACKEND_KEY = "currentBackend"

_FOLDER_VERSION_RE = re.compile(r"-(\d+\.\d+(?:\.\d+)?(?:\.[a-zA-Z0-9]+)*(?:-[a-zA-Z0-9]+)*)$")
_VERSION_TOKEN_RE = re.compile(r"^\d+\.\d+")


@dataclass(frozen=True, slots=True)
class VersionInfo:
    version: str
    actual_version: Optional[str] = None


def folder_version(folder_name: str) -> Optional[str]:
    """Return the trailing `-<version>` of a backend folder name, if any."""
    match = _FOLDER_VERSION_RE.search(folder_name)
    return match.group(1) if match else None


def parse_version_output(output: str) -> Optional[str]:
    """
    Take the last non-blank line of a `--version` run and return its first
    token when it looks like a version (`<major>.<minor>...`).
    """
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines:
        return None
    token = lines[-1].split()[0]
    return token if _VERSION_TOKEN_RE.match(token) else None


class BackendRegistry:
    """
    Installed backend versions under the install directory, plus the
    persisted pointer to the one that is currently active.

    Version detection is cached per launcher path. Entries are only dropped
    through `invalidate()` (installer, delete), never by age.
    """

    def __init__(
        self,
        install_dir: Path,
        settings: SettingsStore,
        events: EventSink,
        config: LauncherConfig | None = None,
    ) -> None:
        self.install_dir = install_dir
        self.settings = settings
        self.events = events
        self.config = config or LauncherConfig()
        self._lock = threading.Lock()
        self._version_cache: dict[str, VersionInfo] = {}

    # ---- discovery ----

    def launcher_candidates(self, folder: Path) -> list[Path]:
        extensions = [".exe", ""] if sys.platform == "win32" else ["", ".exe"]
        return [folder / f"{self.config.launcher_name}{ext}" for ext in extensions]

    def find_launcher(self, folder: Path) -> Optional[Path]:
        for candidate in self.launcher_candidates(folder):
            if candidate.is_file():
                return candidate
        return None

    def detect_version(self, launcher: Path) -> VersionInfo:
        key = str(launcher)
        with self._lock:
            cached = self._version_cache.get(key)
        if cached is not None:
            return cached

        from_folder = folder_version(launcher.parent.name)
        from_binary = self._query_binary_version(launcher)

        info = VersionInfo(
            version=from_folder or from_binary or "unknown",
            actual_version=from_binary if from_folder and from_binary and from_folder != from_binary else None,
        )
        with self._lock:
            self._version_cache[key] = info
        return info

    def _query_binary_version(self, launcher: Path) -> Optional[str]:
        try:
            result = subprocess.run(
                [str(launcher), "--version"],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.config.version_timeout_s,
            )
        except (OSError, subprocess.SubprocessError):
            logger.debug("Version query failed for %s", launcher, exc_info=True)
            return None
        return parse_version_output((result.stdout or "") + "\n" + (result.stderr or ""))

    def invalidate(self, path: str | Path) -> None:
        with self._lock:
            self._version_cache.pop(str(path), None)

    def list_backends(self) -> list[Backend]:
        if not self.install_dir.is_dir():
            return []

        backends: list[Backend] = []
        for folder in sorted(self.install_dir.iterdir()):
            try:
                if not folder.is_dir():
                    continue
                launcher = self.find_launcher(folder)
                if launcher is None:
                    continue
                backends.append(self._backend_for(launcher))
            except Exception:
                logger.warning("Could not detect version for %s", folder.name, exc_info=True)
        return backends

    def _backend_for(self, launcher: Path) -> Backend:
        info = self.detect_version(launcher)
        return Backend(
            path=str(launcher),
            folder_name=launcher.parent.name,
            version=info.version,
            actual_version=info.actual_version,
            size_bytes=launcher.stat().st_size,
        )

    # ---- current backend pointer ----

    def current_path(self) -> str:
        value = self.settings.get(CURRENT_BACKEND_KEY, "")
        return value if isinstance(value, str) else ""

    def get_current(self) -> Optional[Backend]:
        current = self.current_path()
        if current and path_exists(current):
            try:
                return self._backend_for(Path(current))
            except OSError:
                logger.warning("Current backend %s is unreadable", current, exc_info=True)

        backends = self.list_backends()
        if backends:
            first = backends[0]
            logger.info("Current backend %r unavailable, selecting %s", current, first.path)
            self.settings.set(CURRENT_BACKEND_KEY, first.path)
            return first

        if current:
            logger.info("No backends installed, clearing current backend pointer")
            self.settings.set(CURRENT_BACKEND_KEY, "")
        return None

    def set_current(self, path: str, notify: bool = True) -> bool:
        if not path_exists(path):
            logger.warning("Refusing to select missing backend: %s", path)
            return False
        self.settings.set(CURRENT_BACKEND_KEY, str(path))
        if notify:
            self.events.emit(EventType.BACKENDS_CHANGED)
        return True

    def delete(self, path: str) -> OperationResult:
        if self.current_path() and Path(path) == Path(self.current_path()):
            return OperationResult(False, "Cannot delete the currently active backend")

        folder = Path(path).parent
        if folder == self.install_dir or self.install_dir not in folder.parents:
            return OperationResult(False, f"Backend is not inside the install directory: {path}")

        try:
            remove_dir_with_retry(folder)
        except OSError as e:
            logger.exception("Failed to delete backend %s", path)
            return OperationResult(False, f"Failed to delete backend: {e}")

        self.invalidate(path)
        self.events.emit(EventType.BACKENDS_CHANGED)
        return OperationResult(True)
