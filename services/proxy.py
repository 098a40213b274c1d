from __future__ import annotations

from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterator, Optional
import logging
import threading

import requests
from urllib3.exceptions import HTTPError as UpstreamStreamError

from config.launcher_config import NetworkConfig

logger = logging.getLogger(__name__)

HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)

STREAM_CHUNK = 64 * 1024


def rewrite_json_body(body: bytes, vendor_prefix: str, product_prefix: str) -> bytes:
    """Replace the quoted vendor prefix (`"koboldcpp/`) with the product one (`"burrow/`)."""
    return body.replace(f'"{vendor_prefix}/'.encode(), f'"{product_prefix}/'.encode())


def _iter_raw(resp: requests.Response) -> Iterator[bytes]:
    raw = resp.raw
    if raw.chunked:
        yield from raw.stream(STREAM_CHUNK, decode_content=False)
        return
    # read1 returns whatever is available so event streams are not held back
    while True:
        data = raw.read1(STREAM_CHUNK, decode_content=False)
        if not data:
            return
        yield data


class LocalProxy:
    """
    Reverse HTTP proxy on a fixed local port in front of the backend.

    JSON responses are buffered so the vendor prefix can be rewritten;
    everything else is piped through as it arrives. One server at a time:
    `start()` while listening is a no-op, and the target can only change
    once the previous server has been stopped.
    """

    def __init__(
        self,
        network_cfg: NetworkConfig | None = None,
        vendor_prefix: str = "koboldcpp",
        product_prefix: str = "burrow",
        upstream_timeout_s: float = 600.0,
    ) -> None:
        self.network_cfg = network_cfg or NetworkConfig()
        self.vendor_prefix = vendor_prefix
        self.product_prefix = product_prefix
        self.upstream_timeout_s = upstream_timeout_s

        self._lock = threading.Lock()
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._target: Optional[tuple[str, int]] = None

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def target(self) -> Optional[tuple[str, int]]:
        return self._target

    @property
    def url(self) -> str:
        server = self._server
        if server is None:
            return self.network_cfg.proxy_url
        host, port = server.server_address[:2]
        return f"http://{host}:{port}"

    def start(self, target_host: str, target_port: int) -> None:
        with self._lock:
            if self._server is not None:
                logger.debug("Proxy already listening on %s", self.url)
                return

            self._target = (target_host, target_port)
            server = ThreadingHTTPServer(
                (self.network_cfg.proxy_host, self.network_cfg.proxy_port),
                self._handler_class(),
            )
            server.daemon_threads = True
            self._server = server
            self._thread = threading.Thread(target=server.serve_forever, daemon=True)
            self._thread.start()
        logger.info("Proxy listening on %s -> http://%s:%s", self.url, target_host, target_port)

    def stop(self) -> None:
        with self._lock:
            server, self._server = self._server, None
            thread, self._thread = self._thread, None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(timeout=5)
        logger.info("Proxy stopped")

    def _handler_class(self) -> type[BaseHTTPRequestHandler]:
        proxy = self

        class Handler(_ProxyHandler):
            owner = proxy

        return Handler


class _ProxyHandler(BaseHTTPRequestHandler):
    # HTTP/1.0: each response ends with the connection, so bodies of unknown length pass through.
    protocol_version = "HTTP/1.0"
    owner: LocalProxy

    def do_GET(self) -> None:  # noqa: N802
        self._forward()

    def do_POST(self) -> None:  # noqa: N802
        self._forward()

    def do_PUT(self) -> None:  # noqa: N802
        self._forward()

    def do_PATCH(self) -> None:  # noqa: N802
        self._forward()

    def do_DELETE(self) -> None:  # noqa: N802
        self._forward()

    def do_HEAD(self) -> None:  # noqa: N802
        self._forward()

    def do_OPTIONS(self) -> None:  # noqa: N802
        self._forward()

    def log_message(self, format: str, *args) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)

    def _read_body(self) -> Optional[bytes]:
        if "chunked" in self.headers.get("Transfer-Encoding", "").lower():
            parts = []
            while True:
                size = int(self.rfile.readline().split(b";", 1)[0].strip() or b"0", 16)
                if size == 0:
                    # trailer section ends with an empty line
                    while self.rfile.readline() not in (b"\r\n", b"\n", b""):
                        pass
                    break
                parts.append(self.rfile.read(size))
                self.rfile.readline()
            return b"".join(parts)
        length = int(self.headers.get("Content-Length") or 0)
        return self.rfile.read(length) if length > 0 else None

    def _forward(self) -> None:
        owner = self.owner
        target = owner.target
        if target is None:
            self.send_error(502, "Bad Gateway")
            return

        host, port = target
        url = f"http://{host}:{port}{self.path}"
        headers = {k: v for k, v in self.headers.items() if k.lower() not in HOP_BY_HOP}

        headers_sent = False
        try:
            body = self._read_body()
            with requests.request(
                self.command,
                url,
                headers=headers,
                data=body,
                stream=True,
                allow_redirects=False,
                timeout=(10, owner.upstream_timeout_s),
            ) as resp:
                content_type = resp.headers.get("content-type", "")
                is_json = "application/json" in content_type.lower()
                payload = None
                if is_json and self.command != "HEAD":
                    payload = rewrite_json_body(resp.content, owner.vendor_prefix, owner.product_prefix)

                self.send_response(resp.status_code, resp.reason)
                for key, value in resp.headers.items():
                    lk = key.lower()
                    if lk in HOP_BY_HOP:
                        continue
                    if is_json and lk == "content-encoding":
                        continue
                    self.send_header(key, value)

                if self.command == "HEAD":
                    if resp.headers.get("content-length"):
                        self.send_header("Content-Length", resp.headers["content-length"])
                    self.end_headers()
                    headers_sent = True
                    return

                if payload is not None:
                    self.send_header("Content-Length", str(len(payload)))
                    self.end_headers()
                    headers_sent = True
                    self.wfile.write(payload)
                    return

                if resp.headers.get("content-length") and not resp.raw.chunked:
                    self.send_header("Content-Length", resp.headers["content-length"])
                self.end_headers()
                headers_sent = True
                for chunk in _iter_raw(resp):
                    self.wfile.write(chunk)
        except (requests.RequestException, UpstreamStreamError) as e:
            logger.warning("Proxy upstream error for %s %s: %s", self.command, self.path, e)
            if not headers_sent:
                self._bad_gateway()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Proxy client went away during %s %s", self.command, self.path)

    def _bad_gateway(self) -> None:
        body = b"Bad Gateway"
        try:
            self.send_response(502, "Bad Gateway")
            self.send_header("Content-Type", "text/plain")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)
        except OSError:
            pass
