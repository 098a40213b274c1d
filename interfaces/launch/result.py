from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class LaunchResult:
    success: bool
    pid: Optional[int] = None
    error: Optional[str] = None
    aborted: bool = False
