from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Backend:
    path: str
    folder_name: str
    version: str
    size_bytes: int
    actual_version: Optional[str] = None


@dataclass(frozen=True)
class DownloadAsset:
    name: str
    source_url: str
    expected_size_bytes: int = 0
    version: Optional[str] = None


@dataclass(frozen=True)
class InstallOptions:
    is_update: bool = False
    was_current: bool = False
    old_backend_path: Optional[str] = None


@dataclass(frozen=True)
class OperationResult:
    success: bool
    error: Optional[str] = None
