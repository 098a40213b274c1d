from __future__ import annotations

from typing import Any, Protocol


class SettingsStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...
