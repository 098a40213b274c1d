from __future__ import annotations

from typing import Protocol


class Frontend(Protocol):
    """
    A companion UI that talks to the backend through the local proxy.
    """

    def start(self, args: list[str], target_url: str) -> None:
        ...

    def stop(self) -> None:
        ...
