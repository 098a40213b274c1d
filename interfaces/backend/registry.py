from __future__ import annotations

from typing import Optional, Protocol

from interfaces.backend.records import Backend, OperationResult


class InstalledBackends(Protocol):
    def list_backends(self) -> list[Backend]:
        ...

    def current_path(self) -> str:
        ...

    def get_current(self) -> Optional[Backend]:
        ...

    def set_current(self, path: str, notify: bool = True) -> bool:
        ...

    def delete(self, path: str) -> OperationResult:
        ...
