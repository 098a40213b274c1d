import io
import socket
import subprocess
import sys
import tarfile
import tempfile
import textwrap
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from config.launcher_config import NetworkConfig
from interfaces.events.sink import EventType
from services.errors import TunnelError, TunnelRateLimited
from services.tunnel import TunnelManager, is_rate_limited, tunnel_asset_name
from tests.fakes import FakeHttpServer, RecordingEvents

PUBLIC_URL = "https://quiet-river-1234.trycloudflare.com"


def _script_popen(body: str):
    """Popen stand-in that runs a Python snippet instead of cloudflared."""
    calls = []

    def popen(args, **kwargs):
        calls.append(args)
        return subprocess.Popen([sys.executable, "-c", textwrap.dedent(body)], **kwargs)

    popen.calls = calls
    return popen


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class AssetNameTests(unittest.TestCase):
    def test_platform_assets(self):
        self.assertEqual(tunnel_asset_name("linux", "x86_64"), "cloudflared-linux-amd64")
        self.assertEqual(tunnel_asset_name("linux", "aarch64"), "cloudflared-linux-arm64")
        self.assertEqual(tunnel_asset_name("win32", "AMD64"), "cloudflared-windows-amd64.exe")
        self.assertEqual(tunnel_asset_name("darwin", "arm64"), "cloudflared-darwin-arm64.tgz")

    def test_rate_limit_detection(self):
        self.assertTrue(is_rate_limited("ERR failed: 429 Too Many Requests"))
        self.assertFalse(is_rate_limited("INF Registered tunnel connection"))


class TunnelManagerTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.events = RecordingEvents()
        self.cfg = NetworkConfig(tunnel_url_timeout_s=1.0, tunnel_target_wait_s=0.3, tunnel_poll_interval_s=0.05)

    def tearDown(self):
        self._tmp.cleanup()

    def _manager(self, body: str) -> TunnelManager:
        manager = TunnelManager(Path(self._tmp.name), self.events, self.cfg, popen=_script_popen(body))
        self.addCleanup(manager.stop)
        patch.object(manager, "wait_for_target", return_value=True).start()
        patch.object(manager, "ensure_binary", return_value=Path("cloudflared")).start()
        self.addCleanup(patch.stopall)
        return manager

    def test_start_returns_public_url_and_reuses_it(self):
        manager = self._manager(f"""
            import sys, time
            print("INF Requesting new quick Tunnel on trycloudflare.com...", flush=True)
            print("INF |  {PUBLIC_URL}  |", flush=True)
            time.sleep(30)
        """)

        url = manager.start()
        again = manager.start()

        self.assertEqual(url, PUBLIC_URL)
        self.assertEqual(again, PUBLIC_URL)
        self.assertEqual(len(manager._popen.calls), 1)
        self.assertEqual(manager._popen.calls[0][1:3], ["tunnel", "--url"])
        self.assertEqual(self.events.of(EventType.TUNNEL_URL_CHANGED), [PUBLIC_URL])

    def test_target_follows_frontend_preference(self):
        self.cfg = NetworkConfig(frontend_targets={"sillytavern": "http://127.0.0.1:3000"})
        manager = TunnelManager(Path(self._tmp.name), self.events, self.cfg)

        self.assertEqual(manager.target_for("sillytavern"), "http://127.0.0.1:3000")
        self.assertEqual(manager.target_for("koboldcpp"), self.cfg.proxy_url)

    def test_rate_limit_is_reported(self):
        manager = self._manager("""
            import sys
            print("ERR Error unmarshaling QuickTunnel response: 429 Too Many Requests", flush=True)
            sys.exit(1)
        """)

        with self.assertRaises(TunnelRateLimited):
            manager.start()

        self.assertIsNone(manager.url)
        self.assertFalse(manager.is_active)

    def test_timeout_without_url(self):
        manager = self._manager("""
            import time
            print("INF starting", flush=True)
            time.sleep(30)
        """)

        with self.assertRaises(TunnelError) as ctx:
            manager.start()

        self.assertIn("timed out", str(ctx.exception))
        self.assertFalse(manager.is_active)

    def test_unreachable_target_skips_tunnel(self):
        manager = self._manager("print('unused')")
        manager.wait_for_target.return_value = False

        self.assertIsNone(manager.start())
        self.assertEqual(manager._popen.calls, [])

    def test_exit_clears_url(self):
        manager = self._manager(f"""
            import time
            print("{PUBLIC_URL}", flush=True)
            time.sleep(0.3)
        """)

        self.assertEqual(manager.start(), PUBLIC_URL)

        self.assertTrue(_wait_until(lambda: manager.url is None))
        self.assertEqual(self.events.of(EventType.TUNNEL_URL_CHANGED), [PUBLIC_URL, None])

    def test_stop_terminates_and_always_notifies(self):
        manager = self._manager(f"""
            import time
            print("{PUBLIC_URL}", flush=True)
            time.sleep(30)
        """)
        manager.stop()
        self.assertEqual(self.events.of(EventType.TUNNEL_URL_CHANGED), [None])

        manager.start()
        manager.stop()

        self.assertIsNone(manager.url)
        self.assertFalse(manager.is_active)
        self.assertEqual(self.events.of(EventType.TUNNEL_URL_CHANGED), [None, PUBLIC_URL, None])

    def test_stop_during_binary_download_prevents_spawn(self):
        manager = self._manager("print('unused')")
        entered, release = threading.Event(), threading.Event()

        def slow_binary():
            entered.set()
            release.wait(5)
            return Path("cloudflared")

        manager.ensure_binary.side_effect = slow_binary
        outcome = {}
        worker = threading.Thread(target=lambda: outcome.update(url=manager.start()), daemon=True)
        worker.start()
        self.assertTrue(entered.wait(5))

        manager.stop()
        release.set()
        worker.join(5)

        self.assertFalse(worker.is_alive())
        self.assertIsNone(outcome["url"])
        self.assertEqual(manager._popen.calls, [])
        self.assertFalse(manager.is_active)
        self.assertEqual(self.events.of(EventType.TUNNEL_URL_CHANGED), [None])


class WaitForTargetTests(unittest.TestCase):
    def test_reachable_and_unreachable_targets(self):
        cfg = NetworkConfig(tunnel_target_wait_s=0.3, tunnel_poll_interval_s=0.05)
        manager = TunnelManager(Path("."), RecordingEvents(), cfg)

        with FakeHttpServer({"/": (200, {}, b"")}) as server:
            self.assertTrue(manager.wait_for_target(server.url("/")))

        with socket.socket() as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]
        self.assertFalse(manager.wait_for_target(f"http://127.0.0.1:{port}"))


class EnsureBinaryTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.install_dir = Path(self._tmp.name) / "bin"

    def tearDown(self):
        self._tmp.cleanup()

    def _session(self, payload: bytes) -> MagicMock:
        resp = MagicMock()
        resp.iter_content.return_value = [payload]
        session = MagicMock()
        session.get.return_value.__enter__.return_value = resp
        return session

    def test_downloads_plain_binary_once(self):
        session = self._session(b"ELF-binary")
        manager = TunnelManager(self.install_dir, RecordingEvents(), session=session)

        with patch("services.tunnel.tunnel_asset_name", return_value="cloudflared-linux-amd64"):
            binary = manager.ensure_binary()
            manager.ensure_binary()

        self.assertEqual(binary.read_bytes(), b"ELF-binary")
        self.assertEqual(session.get.call_count, 1)
        self.assertTrue(session.get.call_args.args[0].endswith("/latest/download/cloudflared-linux-amd64"))
        self.assertFalse(binary.with_name(binary.name + ".download").exists())

    def test_extracts_binary_from_tgz(self):
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            data = b"mach-o-binary"
            info = tarfile.TarInfo("cloudflared")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        manager = TunnelManager(self.install_dir, RecordingEvents(), session=self._session(buf.getvalue()))

        with patch("services.tunnel.tunnel_asset_name", return_value="cloudflared-darwin-arm64.tgz"):
            binary = manager.ensure_binary()

        self.assertEqual(binary.read_bytes(), b"mach-o-binary")
        self.assertEqual([p.name for p in self.install_dir.iterdir()], [binary.name])

    def test_download_failure_raises_tunnel_error(self):
        session = self._session(b"")
        session.get.return_value.__enter__.return_value.raise_for_status.side_effect = OSError("boom")
        manager = TunnelManager(self.install_dir, RecordingEvents(), session=session)

        with self.assertRaises(TunnelError):
            manager.ensure_binary()

        self.assertFalse(manager.binary_path.exists())


if __name__ == "__main__":
    unittest.main()
