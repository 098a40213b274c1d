from __future__ import annotations

from enum import Enum
from typing import Any, Protocol


class EventType(Enum):
    BACKEND_OUTPUT = "backend-output"
    DOWNLOAD_PROGRESS = "download-progress"
    RELEASE_DOWNLOAD_PROGRESS = "release-download-progress"
    SERVER_READY = "server-ready"
    BACKEND_CRASHED = "backend-crashed"
    TUNNEL_URL_CHANGED = "tunnel-url-changed"
    BACKENDS_CHANGED = "backends-changed"


class EventSink(Protocol):
    def emit(self, event_type: EventType, payload: Any = None) -> None:
        ...
