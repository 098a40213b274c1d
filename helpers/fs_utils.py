from __future__ import annotations
from pathlib import Path
from typing import Any, Callable
import json
import logging
import os
import shutil
import sys
import time

logger = logging.getLogger(__name__)


def exe_name(name: str) -> str:
    return name + ".exe" if sys.platform == "win32" else name


def path_exists(path: str | Path | None) -> bool:
    if not path:
        return False
    try:
        return Path(path).exists()
    except OSError:
        return False


def read_json_file(path: Path) -> Any | None:
    """
    Return the parsed JSON content of `path`, or None when the file is
    missing or unreadable.
    """
    try:
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8-sig") as f:
            return json.load(f)
    except (OSError, ValueError):
        logger.debug("Failed to read json: %s", path, exc_info=True)
        return None


def write_json_file(path: Path, data: Any) -> None:
    """
    Write `data` as JSON through a sibling temp file and an atomic replace,
    so readers never observe a half-written file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
        f.flush()
        os.fsync(f.fileno())
    tmp_path.replace(path)


def make_executable(path: Path) -> None:
    if sys.platform != "win32":
        os.chmod(path, os.stat(path).st_mode | 0o111)


def remove_file(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def remove_dir_with_retry(
    path: Path,
    *,
    max_retries: int = 3,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Recursively delete `path`, retrying with exponential backoff (1s, 2s, 4s).

    A process that just exited on Windows can keep file locks for a moment,
    so the first attempts are allowed to fail. The last error is re-raised.
    """
    for attempt in range(max_retries + 1):
        try:
            shutil.rmtree(path)
            return
        except FileNotFoundError:
            return
        except OSError:
            if attempt >= max_retries:
                logger.error("Failed to remove directory after %d retries: %s", max_retries, path)
                raise
            delay = 2 ** attempt
            logger.debug("Removing %s failed, retrying in %ss", path, delay)
            sleep(delay)
