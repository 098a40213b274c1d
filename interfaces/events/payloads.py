from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class DownloadProgress:
    kind: str  # "progress", "complete", "error"
    percent: Optional[int] = None
    downloaded_bytes: int = 0
    total_bytes: Optional[int] = None
    speed_bytes_per_s: Optional[float] = None
    eta_s: Optional[int] = None
    local_path: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class CrashInfo:
    pid: Optional[int]
    exit_code: Optional[int]
    signal: Optional[str]
    message: str


@dataclass(frozen=True)
class CachedModel:
    path: str
    author: str
    model: str
    filename: str
