from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional
from urllib.parse import urljoin, urlsplit
import logging
import re
import threading
import time

import requests
from huggingface_hub.utils import build_hf_headers

from config.launcher_config import NetworkConfig
from helpers.fs_utils import path_exists, remove_file
from interfaces.events.payloads import CachedModel, DownloadProgress
from interfaces.events.sink import EventSink, EventType
from services.errors import DownloadAborted, IncompleteDownloadError, ModelDownloadError, TooManyRedirects

logger = logging.getLogger(__name__)

MODEL_EXTENSIONS = (".gguf", ".safetensors", ".bin", ".ggml")
REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

# /<author>/<model>/(resolve|blob)/<revision>/<path/to/file>
_HF_PATH_RE = re.compile(r"^/([^/]+)/([^/]+)/(?:resolve|blob)/[^/]+/(.+)$")
_HF_HOST = "huggingface.co"

ProgressCallback = Callable[[DownloadProgress], None]


class CancelToken:
    """
    Cancellation handle for a single download. Callbacks run on the thread
    that calls `cancel()`; a callback added after cancellation runs at once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancel callback failed")


class CancelScope:
    """A set of tokens cancelled together. Tokens added after `close()` are cancelled immediately."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: set[CancelToken] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def token(self) -> CancelToken:
        token = CancelToken()
        self.add(token)
        return token

    def add(self, token: CancelToken) -> None:
        with self._lock:
            if not self._closed:
                self._tokens.add(token)
                return
        token.cancel()

    def release(self, token: CancelToken) -> None:
        with self._lock:
            self._tokens.discard(token)

    def cancel_all(self) -> None:
        with self._lock:
            tokens, self._tokens = self._tokens, set()
        for token in tokens:
            token.cancel()

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self.cancel_all()


def is_remote_model_url(value: str) -> bool:
    if not value or not value.strip():
        return False
    if not value.startswith(("http://", "https://")):
        return False
    path = value.split("?", 1)[0].lower()
    return path.endswith(MODEL_EXTENSIONS)


def cache_key(url: str) -> tuple[str, str, str]:
    """Return (author, model, filename) for a model URL."""
    path = urlsplit(url).path
    match = _HF_PATH_RE.match(path)
    if match:
        return match.group(1), match.group(2), Path(match.group(3)).name
    return "external", "models", Path(path).name


def normalize_url(url: str) -> str:
    parts = urlsplit(url)
    if _HF_PATH_RE.match(parts.path) and "/blob/" in parts.path:
        return parts._replace(path=parts.path.replace("/blob/", "/resolve/", 1)).geturl()
    return url


def _is_hf_host(url: str) -> bool:
    host = (urlsplit(url).hostname or "").lower()
    return host == _HF_HOST or host.endswith("." + _HF_HOST)


def format_eta(seconds: int) -> str:
    minutes, rest = divmod(seconds, 60)
    return f"{minutes}m{rest}s" if minutes > 0 else f"{seconds}s"


def format_progress_line(progress: DownloadProgress) -> str:
    mb = 1024 * 1024
    downloaded = progress.downloaded_bytes / mb
    speed = (progress.speed_bytes_per_s or 0.0) / mb
    if progress.total_bytes:
        return (
            f"Downloaded {downloaded:.2f}MB / {progress.total_bytes / mb:.2f}MB ({progress.percent}%)"
            f" - {speed:.2f}MB/s - ETA: {format_eta(progress.eta_s or 0)}"
        )
    return f"Downloaded {downloaded:.2f}MB - {speed:.2f}MB/s"


class ModelResolver:
    """
    Turns model references into local files.

    Local paths are passed through. Remote URLs are downloaded once into
    `<models_dir>/<param type>/<author>/<model>/<file>` via a `.tmp` sibling
    that is only renamed into place after a complete transfer. Every
    download holds a CancelToken registered with this resolver (and with the
    caller's scope, if given) so it can be aborted from another thread.
    """

    def __init__(
        self,
        models_dir: Path,
        events: EventSink,
        network_cfg: NetworkConfig | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.models_dir = models_dir
        self.events = events
        self.network_cfg = network_cfg or NetworkConfig()
        self.session = session or requests.Session()
        self._active = CancelScope()
        self._locks_guard = threading.Lock()
        # path -> [lock, number of resolves holding or waiting for it]
        self._path_locks: dict[Path, list] = {}

    def cache_path(self, url: str, param_type: str) -> Path:
        author, model, filename = cache_key(url)
        return self.models_dir / param_type / author / model / filename

    def resolve(
        self,
        url_or_path: str,
        param_type: str,
        scope: CancelScope | None = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        if not is_remote_model_url(url_or_path):
            return url_or_path

        local_path = self.cache_path(url_or_path, param_type)
        with self._locked(local_path):
            if path_exists(local_path):
                self._output(f"Using cached model at: {local_path}")
                self._progress(DownloadProgress(kind="complete", local_path=str(local_path)), on_progress)
                return str(local_path)

            self._output(f"Downloading model from {url_or_path} to {local_path}...")
            token = self._active.token()
            if scope is not None:
                scope.add(token)
            try:
                self._download(url_or_path, local_path, token, on_progress)
            except DownloadAborted:
                logger.info("Download aborted: %s", url_or_path)
                raise
            except Exception as e:
                self._progress(DownloadProgress(kind="error", error=f"Download failed: {e}"), on_progress)
                raise ModelDownloadError(f"Failed to download model from {url_or_path}: {e}") from e
            finally:
                self._active.release(token)
                if scope is not None:
                    scope.release(token)

        self._output(f"Model downloaded successfully to: {local_path}")
        self._progress(DownloadProgress(kind="complete", local_path=str(local_path)), on_progress)
        return str(local_path)

    def abort_active_downloads(self) -> None:
        self._active.cancel_all()

    def list_cached(self, param_type: str) -> list[CachedModel]:
        root = self.models_dir / param_type
        if not root.is_dir():
            return []

        models: list[CachedModel] = []
        try:
            for author_dir in sorted(root.iterdir()):
                if not author_dir.is_dir():
                    continue
                for model_dir in sorted(author_dir.iterdir()):
                    if not model_dir.is_dir():
                        continue
                    for f in sorted(model_dir.iterdir()):
                        if f.is_file() and not f.name.endswith(".tmp"):
                            models.append(CachedModel(str(f), author_dir.name, model_dir.name, f.name))
        except OSError:
            logger.exception("Error scanning local models in %s", root)
        return models

    # ---- download ----

    @contextmanager
    def _locked(self, path: Path) -> Iterator[None]:
        with self._locks_guard:
            entry = self._path_locks.setdefault(path, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._path_locks[path]

    def _download(
        self,
        url: str,
        output_path: Path,
        token: CancelToken,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = output_path.with_name(output_path.name + ".tmp")

        resp: requests.Response | None = None

        def _abort() -> None:
            if resp is not None:
                try:
                    resp.raw.shutdown()
                except (OSError, ValueError, RuntimeError):
                    logger.debug("Socket shutdown failed during abort", exc_info=True)
                resp.close()
            remove_file(tmp_path)

        token.add_callback(_abort)
        try:
            if token.cancelled:
                raise DownloadAborted("Download aborted by user")
            resp = self._open(normalize_url(url), token)
            if token.cancelled:
                raise DownloadAborted("Download aborted by user")
            self._stream_to(resp, tmp_path, token, on_progress)
            tmp_path.replace(output_path)
        except DownloadAborted:
            remove_file(tmp_path)
            raise
        except Exception:
            remove_file(tmp_path)
            if token.cancelled:
                raise DownloadAborted("Download aborted by user")
            raise
        finally:
            if resp is not None:
                resp.close()

    def _open(self, url: str, token: CancelToken) -> requests.Response:
        headers = build_hf_headers() if _is_hf_host(url) else {}
        origin_is_hf = _is_hf_host(url)

        for _ in range(self.network_cfg.max_redirects + 1):
            if token.cancelled:
                raise DownloadAborted("Download aborted by user")
            resp = self.session.get(url, headers=headers, stream=True, allow_redirects=False, timeout=(30, 60))
            if resp.status_code in REDIRECT_STATUSES:
                location = resp.headers.get("location")
                resp.close()
                if not location:
                    raise ModelDownloadError("Redirect without location header")
                url = urljoin(url, location)
                if origin_is_hf and not _is_hf_host(url):
                    headers = {k: v for k, v in headers.items() if k.lower() != "authorization"}
                continue
            if resp.status_code != 200:
                resp.close()
                raise ModelDownloadError(f"HTTP {resp.status_code}: {resp.reason}")
            return resp
        raise TooManyRedirects("Too many redirects")

    def _stream_to(
        self,
        resp: requests.Response,
        tmp_path: Path,
        token: CancelToken,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        total = int(resp.headers.get("content-length") or 0)
        interval = self.network_cfg.model_progress_interval_s
        received = 0
        last_time = time.monotonic()
        last_bytes = 0

        with open(tmp_path, "wb") as f:
            for chunk in resp.raw.stream(self.network_cfg.chunk_size, decode_content=False):
                if token.cancelled:
                    raise DownloadAborted("Download aborted by user")
                f.write(chunk)
                received += len(chunk)

                now = time.monotonic()
                elapsed = now - last_time
                if elapsed >= interval:
                    speed = (received - last_bytes) / elapsed
                    progress = DownloadProgress(
                        kind="progress",
                        percent=round(received / total * 100) if total else 0,
                        downloaded_bytes=received,
                        total_bytes=total or None,
                        speed_bytes_per_s=speed,
                        eta_s=round((total - received) / speed) if total and speed else None,
                    )
                    self._output(format_progress_line(progress))
                    self._progress(progress, on_progress)
                    last_time, last_bytes = now, received

        if token.cancelled:
            raise DownloadAborted("Download aborted by user")
        if total > 0 and received != total:
            raise IncompleteDownloadError(received, total)

    # ---- notifications ----

    def _output(self, line: str) -> None:
        self.events.emit(EventType.BACKEND_OUTPUT, line)

    def _progress(self, progress: DownloadProgress, on_progress: Optional[ProgressCallback]) -> None:
        self.events.emit(EventType.DOWNLOAD_PROGRESS, progress)
        if on_progress is not None:
            on_progress(progress)
