import tempfile
import unittest
from pathlib import Path

from helpers.events import EventHub
from helpers.settings_store import JsonSettingsStore
from interfaces.events.sink import EventType


class EventHubTests(unittest.TestCase):
    def test_failing_listener_does_not_block_others(self):
        hub = EventHub()
        received = []

        def broken(_):
            raise RuntimeError("boom")

        hub.subscribe(EventType.SERVER_READY, broken)
        hub.subscribe(EventType.SERVER_READY, received.append)

        with self.assertLogs("helpers.events", level="ERROR"):
            hub.emit(EventType.SERVER_READY, 1234)

        self.assertEqual(received, [1234])

    def test_unsubscribe_and_type_isolation(self):
        hub = EventHub()
        received = []
        hub.subscribe(EventType.BACKEND_OUTPUT, received.append)

        hub.emit(EventType.BACKENDS_CHANGED)
        hub.unsubscribe(EventType.BACKEND_OUTPUT, received.append)
        hub.emit(EventType.BACKEND_OUTPUT, "line")

        self.assertEqual(received, [])


class JsonSettingsStoreTests(unittest.TestCase):
    def test_values_survive_reload(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            JsonSettingsStore(path).set("frontendPreference", "sillytavern")

            reloaded = JsonSettingsStore(path)

            self.assertEqual(reloaded.get("frontendPreference"), "sillytavern")
            self.assertEqual(reloaded.get("currentBackend", ""), "")

    def test_corrupt_file_starts_empty(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text("[1, 2", encoding="utf-8")

            self.assertIsNone(JsonSettingsStore(path).get("currentBackend"))


if __name__ == "__main__":
    unittest.main()
