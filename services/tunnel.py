from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional
import logging
import platform
import re
import shutil
import subprocess
import sys
import tarfile
import threading
import time

import requests

from config.launcher_config import NetworkConfig
from helpers.fs_utils import exe_name, make_executable, remove_file
from helpers.process_utils import pump_lines, terminate_process
from interfaces.events.sink import EventSink, EventType
from services.errors import TunnelError, TunnelRateLimited

logger = logging.getLogger(__name__)

TUNNEL_URL_RE = re.compile(r"https://[a-z0-9-]+\.trycloudflare\.com")

_ARCH = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "armv7l": "arm",
}


def tunnel_asset_name(system: str = sys.platform, machine: str | None = None) -> str:
    """Release asset name of the tunnel binary for a platform."""
    arch = _ARCH.get((machine or platform.machine()).lower(), "amd64")
    if system == "win32":
        return f"cloudflared-windows-{arch}.exe"
    if system == "darwin":
        return f"cloudflared-darwin-{arch}.tgz"
    return f"cloudflared-linux-{arch}"


def is_rate_limited(line: str) -> bool:
    return "429" in line or "Too Many Requests" in line


class TunnelManager:
    """
    One public tunnel (cloudflared quick tunnel) pointed at the local proxy
    or at a frontend's own port.

    `start()` blocks until the tunnel prints its public URL. `stop()` may be
    called from another thread and interrupts a start in progress.
    """

    def __init__(
        self,
        install_dir: Path,
        events: EventSink,
        network_cfg: NetworkConfig | None = None,
        session: requests.Session | None = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        self.install_dir = install_dir
        self.events = events
        self.network_cfg = network_cfg or NetworkConfig()
        self.session = session or requests.Session()
        self._popen = popen

        self._start_lock = threading.Lock()
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._proc: Optional[subprocess.Popen] = None
        self._url: Optional[str] = None

    @property
    def url(self) -> Optional[str]:
        return self._url

    @property
    def is_active(self) -> bool:
        return self._proc is not None

    @property
    def binary_path(self) -> Path:
        return self.install_dir / exe_name(self.network_cfg.tunnel_bin_name)

    def target_for(self, frontend_preference: str) -> str:
        return self.network_cfg.frontend_targets.get(frontend_preference, self.network_cfg.proxy_url)

    def start(self, frontend_preference: str = "koboldcpp", target: str | None = None) -> Optional[str]:
        """
        Return the public URL, or None when the target never became reachable.
        Raises TunnelError (TunnelRateLimited on HTTP 429) if no URL shows up in time.
        """
        with self._start_lock:
            with self._lock:
                if self._proc is not None:
                    return self._url
            self._cancel.clear()

            target = target or self.target_for(frontend_preference)
            self._output("Starting Cloudflare tunnel...")
            if not self.wait_for_target(target):
                self._output(f"Tunnel target {target} is not reachable, not starting tunnel")
                return None

            binary = self.ensure_binary()
            if self._cancel.is_set():
                logger.info("Tunnel stopped before cloudflared was started")
                return None
            proc = self._popen(
                [str(binary), "tunnel", "--url", target, "--no-autoupdate"],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
            with self._lock:
                cancelled = self._cancel.is_set()
                if not cancelled:
                    self._proc = proc
            if cancelled:
                terminate_process(proc)
                return None

            found = threading.Event()
            seen: dict[str, object] = {"url": None, "rate_limited": False}

            def _on_line(line: str) -> None:
                logger.debug("cloudflared: %s", line)
                if is_rate_limited(line):
                    seen["rate_limited"] = True
                match = TUNNEL_URL_RE.search(line)
                if match and seen["url"] is None:
                    seen["url"] = match.group(0)
                    found.set()

            reader = pump_lines(proc.stdout, _on_line)
            threading.Thread(target=self._watch_exit, args=(proc, reader, found), daemon=True).start()

            found.wait(self.network_cfg.tunnel_url_timeout_s)
            url = seen["url"]
            with self._lock:
                still_ours = self._proc is proc
                if url and still_ours:
                    self._url = str(url)

            if url and still_ours:
                self._output(f"Tunnel ready at {url}")
                self.events.emit(EventType.TUNNEL_URL_CHANGED, str(url))
                return str(url)

            if still_ours:
                with self._lock:
                    self._proc = None
                terminate_process(proc)
            if seen["rate_limited"]:
                raise TunnelRateLimited("Cloudflare rate limit exceeded. Please wait a few minutes and try again.")
            if not still_ours:
                raise TunnelError("Tunnel stopped before it was ready")
            raise TunnelError("Tunnel connection timed out")

    def stop(self) -> None:
        self._cancel.set()
        with self._lock:
            proc, self._proc = self._proc, None
            self._url = None
        if proc is not None:
            self._output("Stopping Cloudflare tunnel...")
            terminate_process(proc)
            self._output("Tunnel stopped")
        self.events.emit(EventType.TUNNEL_URL_CHANGED, None)

    def wait_for_target(self, target: str) -> bool:
        deadline = time.monotonic() + self.network_cfg.tunnel_target_wait_s
        while not self._cancel.is_set():
            try:
                self.session.head(target, timeout=2, allow_redirects=False)
                return True
            except requests.RequestException:
                pass
            if time.monotonic() >= deadline:
                return False
            self._cancel.wait(self.network_cfg.tunnel_poll_interval_s)
        return False

    def ensure_binary(self) -> Path:
        binary = self.binary_path
        if binary.is_file():
            return binary

        asset = tunnel_asset_name()
        url = f"{self.network_cfg.tunnel_release_url.rstrip('/')}/{asset}"
        self._output(f"Installing cloudflared binary to {binary}...")
        self.install_dir.mkdir(parents=True, exist_ok=True)

        tmp_path = binary.with_name(binary.name + ".download")
        try:
            with self.session.get(url, stream=True, timeout=(30, 300)) as resp:
                resp.raise_for_status()
                with open(tmp_path, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=self.network_cfg.chunk_size):
                        f.write(chunk)

            if asset.endswith(".tgz"):
                self._extract_tgz(tmp_path, binary)
                remove_file(tmp_path)
            else:
                tmp_path.replace(binary)
        except (requests.RequestException, OSError, tarfile.TarError) as e:
            remove_file(tmp_path)
            raise TunnelError(f"Failed to install cloudflared: {e}") from e

        make_executable(binary)
        return binary

    @staticmethod
    def _extract_tgz(archive: Path, binary: Path) -> None:
        with tarfile.open(archive, "r:gz") as tar:
            member = next((m for m in tar.getmembers() if m.isfile() and Path(m.name).name == "cloudflared"), None)
            if member is None:
                raise TunnelError("cloudflared binary not found in archive")
            src = tar.extractfile(member)
            if src is None:
                raise TunnelError("cloudflared binary not found in archive")
            with src, open(binary, "wb") as out:
                shutil.copyfileobj(src, out)

    def _watch_exit(self, proc: subprocess.Popen, reader: threading.Thread, found: threading.Event) -> None:
        code = proc.wait()
        reader.join()
        found.set()
        with self._lock:
            was_active = self._proc is proc
            if was_active:
                self._proc = None
                self._url = None
        if was_active:
            self._output(f"Tunnel process exited (code: {code})")
            self.events.emit(EventType.TUNNEL_URL_CHANGED, None)

    def _output(self, line: str) -> None:
        logger.info(line)
        self.events.emit(EventType.BACKEND_OUTPUT, line)
