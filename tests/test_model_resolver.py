import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from config.launcher_config import NetworkConfig
from interfaces.events.sink import EventType
from services.errors import DownloadAborted, ModelDownloadError, TooManyRedirects
from services.model_resolver import (
    CancelScope,
    CancelToken,
    ModelResolver,
    cache_key,
    format_eta,
    is_remote_model_url,
    normalize_url,
)
from tests.fakes import FakeHttpServer, RecordingEvents

MODEL_BYTES = b"GGUF" + b"\x01" * 4096


def _slow_body(handler):
    handler.send_response(200)
    handler.send_header("Content-Length", str(10 * 1024 * 1024))
    handler.end_headers()
    try:
        for _ in range(200):
            handler.wfile.write(b"\x00" * 1024)
            handler.wfile.flush()
            time.sleep(0.05)
    except (BrokenPipeError, ConnectionResetError):
        pass
    handler.close_connection = True


def _truncated(handler):
    handler.send_response(200)
    handler.send_header("Content-Length", "5000")
    handler.end_headers()
    handler.wfile.write(b"\x00" * 100)
    handler.wfile.flush()
    handler.close_connection = True


class UrlHelpersTests(unittest.TestCase):
    def test_remote_model_url_detection(self):
        self.assertTrue(is_remote_model_url("https://huggingface.co/a/b/resolve/main/m.gguf"))
        self.assertTrue(is_remote_model_url("http://host/x/model.SafeTensors?download=true"))
        self.assertFalse(is_remote_model_url("/models/m.gguf"))
        self.assertFalse(is_remote_model_url("https://host/readme.md"))
        self.assertFalse(is_remote_model_url("ftp://host/m.gguf"))
        self.assertFalse(is_remote_model_url("  "))

    def test_cache_key_for_hf_style_paths(self):
        self.assertEqual(cache_key("https://host/a/b/resolve/main/model.gguf"), ("a", "b", "model.gguf"))
        self.assertEqual(
            cache_key("https://huggingface.co/org/repo/blob/v1/sub/dir/q4.gguf?download=true"),
            ("org", "repo", "q4.gguf"),
        )

    def test_cache_key_fallback_for_other_urls(self):
        self.assertEqual(cache_key("https://example.com/files/m.bin?x=1"), ("external", "models", "m.bin"))

    def test_blob_urls_become_resolve_urls(self):
        self.assertEqual(
            normalize_url("https://huggingface.co/a/b/blob/main/m.gguf"),
            "https://huggingface.co/a/b/resolve/main/m.gguf",
        )
        self.assertEqual(normalize_url("https://example.com/blob/m.gguf"), "https://example.com/blob/m.gguf")

    def test_eta_format(self):
        self.assertEqual(format_eta(42), "42s")
        self.assertEqual(format_eta(125), "2m5s")


class CancelScopeTests(unittest.TestCase):
    def test_close_cancels_registered_and_future_tokens(self):
        scope = CancelScope()
        calls = []
        token = scope.token()
        token.add_callback(lambda: calls.append("first"))

        scope.close()
        late = scope.token()

        self.assertTrue(token.cancelled)
        self.assertTrue(late.cancelled)
        self.assertEqual(calls, ["first"])

    def test_callback_added_after_cancel_runs_immediately(self):
        token = CancelToken()
        token.cancel()
        calls = []

        token.add_callback(lambda: calls.append(1))

        self.assertEqual(calls, [1])

    def test_released_token_is_not_cancelled(self):
        scope = CancelScope()
        token = scope.token()
        scope.release(token)

        scope.cancel_all()

        self.assertFalse(token.cancelled)


class ModelResolverTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.models_dir = Path(self._tmp.name) / "models"
        self.events = RecordingEvents()
        self.server = FakeHttpServer({
            "/a/b/resolve/main/model.gguf": (200, {"Content-Type": "application/octet-stream"}, MODEL_BYTES),
            "/start/model.gguf": (302, {"Location": "/a/b/resolve/main/model.gguf"}, b""),
            "/loop/model.gguf": (302, {"Location": "/loop/model.gguf"}, b""),
            "/gone/model.gguf": (404, {}, b"nope"),
            "/slow/model.gguf": (200, {}, _slow_body),
            "/short/model.gguf": (200, {}, _truncated),
        })
        self.server.__enter__()
        self.resolver = ModelResolver(
            self.models_dir,
            self.events,
            NetworkConfig(max_redirects=3, chunk_size=1024, model_progress_interval_s=0.1),
        )

    def tearDown(self):
        self.server.__exit__(None, None, None)
        self._tmp.cleanup()

    def _leftovers(self):
        return [p for p in self.models_dir.rglob("*") if p.is_file()] if self.models_dir.exists() else []

    def test_local_paths_pass_through(self):
        self.assertEqual(self.resolver.resolve("/models/m.gguf", "model"), "/models/m.gguf")
        self.assertEqual(self.resolver.resolve("https://host/notes.txt", "model"), "https://host/notes.txt")
        self.assertEqual(self.server.requests, [])

    def test_resolve_downloads_once_then_hits_cache(self):
        url = self.server.url("/a/b/resolve/main/model.gguf")

        first = self.resolver.resolve(url, "model")
        second = self.resolver.resolve(url, "model")

        self.assertEqual(first, second)
        self.assertTrue(first.endswith(str(Path("model") / "a" / "b" / "model.gguf")))
        self.assertEqual(Path(first), self.models_dir / "model" / "a" / "b" / "model.gguf")
        self.assertEqual(Path(first).read_bytes(), MODEL_BYTES)
        self.assertEqual(len(self.server.requests), 1)
        self.assertIn(f"Using cached model at: {first}", self.events.of(EventType.BACKEND_OUTPUT))
        kinds = [p.kind for p in self.events.of(EventType.DOWNLOAD_PROGRESS)]
        self.assertEqual(kinds[-2:], ["complete", "complete"])

    def test_per_file_locks_are_released_after_each_resolve(self):
        self.resolver.resolve(self.server.url("/a/b/resolve/main/model.gguf"), "model")
        with self.assertRaises(ModelDownloadError):
            self.resolver.resolve(self.server.url("/gone/model.gguf"), "model")

        self.assertEqual(self.resolver._path_locks, {})

    def test_blob_url_is_fetched_as_resolve(self):
        path = self.resolver.resolve(self.server.url("/a/b/blob/main/model.gguf"), "model")

        self.assertEqual(self.server.paths(), ["/a/b/resolve/main/model.gguf"])
        self.assertEqual(Path(path).read_bytes(), MODEL_BYTES)

    def test_follows_relative_redirects(self):
        path = self.resolver.resolve(self.server.url("/start/model.gguf"), "sdmodel")

        self.assertEqual(self.server.paths(), ["/start/model.gguf", "/a/b/resolve/main/model.gguf"])
        self.assertEqual(Path(path), self.models_dir / "sdmodel" / "external" / "models" / "model.gguf")

    def test_redirect_loop_is_capped(self):
        with self.assertRaises(ModelDownloadError) as ctx:
            self.resolver.resolve(self.server.url("/loop/model.gguf"), "model")

        self.assertIsInstance(ctx.exception.__cause__, TooManyRedirects)
        self.assertEqual(len(self.server.requests), 4)
        self.assertEqual(self._leftovers(), [])

    def test_http_error_is_wrapped(self):
        url = self.server.url("/gone/model.gguf")

        with self.assertRaises(ModelDownloadError) as ctx:
            self.resolver.resolve(url, "model")

        self.assertIn(f"Failed to download model from {url}", str(ctx.exception))
        self.assertIn("404", str(ctx.exception))
        self.assertEqual(self.events.of(EventType.DOWNLOAD_PROGRESS)[-1].kind, "error")

    def test_truncated_download_leaves_nothing_behind(self):
        with self.assertRaises(ModelDownloadError):
            self.resolver.resolve(self.server.url("/short/model.gguf"), "model")

        self.assertEqual(self._leftovers(), [])

    def test_abort_removes_temp_file_and_is_distinguishable(self):
        url = self.server.url("/slow/model.gguf")
        final = self.resolver.cache_path(url, "model")
        tmp = final.with_name(final.name + ".tmp")
        outcome = {}

        def run():
            try:
                self.resolver.resolve(url, "model")
            except Exception as e:
                outcome["error"] = e

        worker = threading.Thread(target=run)
        worker.start()
        deadline = time.monotonic() + 5
        while not tmp.exists() and time.monotonic() < deadline:
            time.sleep(0.02)
        self.assertTrue(tmp.exists())

        self.resolver.abort_active_downloads()
        worker.join(10)

        self.assertFalse(worker.is_alive())
        self.assertIsInstance(outcome.get("error"), DownloadAborted)
        self.assertFalse(tmp.exists())
        self.assertFalse(final.exists())

    def test_closed_scope_aborts_before_any_request(self):
        scope = CancelScope()
        scope.close()

        with self.assertRaises(DownloadAborted):
            self.resolver.resolve(self.server.url("/a/b/resolve/main/model.gguf"), "model", scope=scope)

        self.assertEqual(self.server.requests, [])

    def test_list_cached_walks_param_tree(self):
        target = self.models_dir / "model" / "a" / "b"
        target.mkdir(parents=True)
        (target / "m.gguf").write_bytes(b"x")
        (target / "partial.gguf.tmp").write_bytes(b"x")
        (self.models_dir / "model" / "stray.txt").write_bytes(b"x")

        models = self.resolver.list_cached("model")

        self.assertEqual([(m.author, m.model, m.filename) for m in models], [("a", "b", "m.gguf")])
        self.assertEqual(self.resolver.list_cached("sdmodel"), [])


class AuthHeaderTests(unittest.TestCase):
    def _response(self, status, headers=None):
        resp = MagicMock()
        resp.status_code = status
        resp.headers = headers or {}
        resp.reason = "OK"
        return resp

    def test_authorization_dropped_when_redirect_leaves_hugging_face(self):
        session = MagicMock()
        session.get.side_effect = [
            self._response(302, {"location": "https://cdn-lfs.example.net/blob/xyz"}),
            self._response(200),
        ]
        resolver = ModelResolver(Path("/unused"), RecordingEvents(), session=session)

        with patch("services.model_resolver.build_hf_headers", return_value={"authorization": "Bearer t", "user-agent": "ua"}):
            resolver._open("https://huggingface.co/a/b/resolve/main/m.gguf", CancelToken())

        first_headers = session.get.call_args_list[0].kwargs["headers"]
        second_headers = session.get.call_args_list[1].kwargs["headers"]
        self.assertEqual(first_headers["authorization"], "Bearer t")
        self.assertNotIn("authorization", second_headers)
        self.assertEqual(second_headers["user-agent"], "ua")

    def test_non_hugging_face_hosts_get_no_hf_headers(self):
        session = MagicMock()
        session.get.return_value = self._response(200)
        resolver = ModelResolver(Path("/unused"), RecordingEvents(), session=session)

        with patch("services.model_resolver.build_hf_headers") as build:
            resolver._open("https://example.com/m.gguf", CancelToken())

        build.assert_not_called()
        self.assertEqual(session.get.call_args.kwargs["headers"], {})


if __name__ == "__main__":
    unittest.main()
