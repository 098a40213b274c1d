from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional
import logging
import re
import subprocess
import time

import requests

from config.launcher_config import LauncherConfig, NetworkConfig
from helpers.fs_utils import exe_name, make_executable, path_exists, remove_dir_with_retry, remove_file
from interfaces.backend.records import DownloadAsset, InstallOptions
from interfaces.events.sink import EventSink, EventType
from services.backend_registry import BackendRegistry
from services.errors import IncompleteDownloadError, InstallError, UnpackError

logger = logging.getLogger(__name__)

_ASSET_EXT_RE = re.compile(r"\.(tar\.gz|zip|exe|dmg|AppImage)$", re.IGNORECASE)

ProgressCallback = Callable[[float], None]


def strip_asset_extensions(name: str) -> str:
    return _ASSET_EXT_RE.sub("", name)


def folder_name_for(asset: DownloadAsset) -> str:
    base = strip_asset_extensions(asset.name)
    return f"{base}-{asset.version}" if asset.version else base


class ReleaseInstaller:
    """
    Downloads a packed backend release, unpacks it into a versioned folder
    under the install directory and registers it with the backend registry.

    The current-backend pointer is only touched once unpacking and launcher
    discovery have both succeeded.
    """

    def __init__(
        self,
        registry: BackendRegistry,
        events: EventSink,
        launcher_cfg: LauncherConfig | None = None,
        network_cfg: NetworkConfig | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.registry = registry
        self.events = events
        self.launcher_cfg = launcher_cfg or LauncherConfig()
        self.network_cfg = network_cfg or NetworkConfig()
        self.session = session or requests.Session()

    @property
    def install_dir(self) -> Path:
        return self.registry.install_dir

    def install(
        self,
        asset: DownloadAsset,
        options: InstallOptions | None = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        options = options or InstallOptions()
        self.install_dir.mkdir(parents=True, exist_ok=True)
        packed_path = self.install_dir / f"{asset.name}.packed"
        dest_dir = self.install_dir / folder_name_for(asset)
        logger.info("Installing %s into %s", asset.name, dest_dir)

        try:
            self._download(asset, packed_path, on_progress)
            make_executable(packed_path)

            if dest_dir.exists():
                remove_dir_with_retry(dest_dir)
            dest_dir.mkdir(parents=True, exist_ok=True)

            self._unpack(packed_path, dest_dir)
            launcher = self._setup_launcher(packed_path, dest_dir)
        except Exception as e:
            logger.exception("Failed to download or unpack binary: %s", asset.name)
            remove_file(packed_path)
            self._discard_partial(dest_dir)
            # Make sure the pointer does not end up on anything half-built.
            self.registry.get_current()
            raise InstallError(f"Failed to download or unpack binary: {e}") from e

        self.registry.invalidate(launcher)

        current = self.registry.current_path()
        if not current or not path_exists(current) or (options.is_update and options.was_current):
            self.registry.set_current(str(launcher), notify=False)
            logger.info("Current backend set to %s", launcher)

        if options.is_update and options.old_backend_path:
            self._retire_old_backend(Path(options.old_backend_path), dest_dir)

        self.events.emit(EventType.BACKENDS_CHANGED)
        return launcher

    # ---- steps ----

    def _download(self, asset: DownloadAsset, target: Path, on_progress: Optional[ProgressCallback]) -> None:
        interval = self.network_cfg.release_progress_interval_s
        with self.session.get(asset.source_url, stream=True, timeout=(30, 300)) as resp:
            if not resp.ok:
                raise InstallError(f"Failed to download: {resp.status_code} {resp.reason}")

            total = int(resp.headers.get("content-length") or 0) or asset.expected_size_bytes
            received = 0
            last_report = 0.0

            with open(target, "wb") as f:
                # raw bytes, so the count matches content-length even when the body is encoded
                for chunk in resp.raw.stream(self.network_cfg.chunk_size, decode_content=False):
                    if not chunk:
                        continue
                    f.write(chunk)
                    received += len(chunk)
                    now = time.monotonic()
                    if total > 0 and now - last_report >= interval:
                        last_report = now
                        self._report(received / total * 100.0, on_progress)

        if total > 0 and received != total:
            raise IncompleteDownloadError(received, total)
        self._report(100.0, on_progress)

    def _report(self, percent: float, on_progress: Optional[ProgressCallback]) -> None:
        self.events.emit(EventType.RELEASE_DOWNLOAD_PROGRESS, percent)
        if on_progress is not None:
            on_progress(percent)

    def _unpack(self, packed_path: Path, dest_dir: Path) -> None:
        try:
            subprocess.run(
                [str(packed_path), "--unpack", str(dest_dir)],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.launcher_cfg.unpack_timeout_s,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or "").strip() or (e.stdout or "").strip() or str(e)
            raise UnpackError(f"Unpack failed: {detail}") from e
        except (subprocess.TimeoutExpired, OSError) as e:
            raise UnpackError(f"Unpack failed: {e}") from e

    def _setup_launcher(self, packed_path: Path, dest_dir: Path) -> Path:
        launcher = self.registry.find_launcher(dest_dir)
        if launcher is None:
            # Single-file releases have nothing to unpack; the download is the launcher.
            launcher = dest_dir / exe_name(self.launcher_cfg.launcher_name)
            packed_path.replace(launcher)
            make_executable(launcher)
        else:
            remove_file(packed_path)

        if not launcher.is_file():
            raise InstallError("Failed to find or create launcher")
        return launcher

    def _discard_partial(self, dest_dir: Path) -> None:
        if not dest_dir.exists():
            return
        try:
            remove_dir_with_retry(dest_dir)
        except OSError:
            logger.warning("Could not remove partial install %s", dest_dir, exc_info=True)

    def _retire_old_backend(self, old_path: Path, dest_dir: Path) -> None:
        old_dir = old_path.parent
        if old_dir == dest_dir or old_dir == self.install_dir or not old_dir.exists():
            return
        try:
            remove_dir_with_retry(old_dir)
            logger.info("Removed old version: %s", old_dir)
        except OSError:
            logger.warning("Failed to remove old backend %s", old_dir, exc_info=True)
        self.registry.invalidate(old_path)
