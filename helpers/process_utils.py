from __future__ import annotations
from typing import IO, Callable, Iterable, Optional
import logging
import signal
import subprocess
import sys
import threading

import psutil

logger = logging.getLogger(__name__)


def signal_name(returncode: Optional[int]) -> Optional[str]:
    """
    Popen reports death-by-signal as a negative return code on POSIX.
    """
    if returncode is None or returncode >= 0 or sys.platform == "win32":
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


def _kill_tree(pid: int) -> None:
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    procs = parent.children(recursive=True) + [parent]
    for proc in procs:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass


def terminate_process(proc: Optional[subprocess.Popen], *, timeout: float = 5.0) -> None:
    """
    Stop `proc` and wait for it to exit.

    On Windows the whole process tree is killed at once (launchers spawn the
    real server as a child). Elsewhere SIGTERM is sent first and SIGKILL
    follows if the process is still alive after `timeout` seconds.
    """
    if proc is None or proc.poll() is not None:
        return
    if sys.platform == "win32":
        _kill_tree(proc.pid)
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Process %s did not exit after tree kill", proc.pid)
        return

    try:
        proc.terminate()
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning("Process %s ignored SIGTERM, sending SIGKILL", proc.pid)
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        proc.wait()
    except ProcessLookupError:
        pass


def cleanup_specific(procs: Iterable[subprocess.Popen], *, timeout: float = 5.0) -> None:
    for proc in procs:
        terminate_process(proc, timeout=timeout)


def pump_lines(stream: IO[bytes], on_line: Callable[[str], None]) -> threading.Thread:
    """
    Start a daemon thread that decodes `stream` line by line and hands each
    line (newline stripped) to `on_line` until EOF.
    """

    def _run() -> None:
        try:
            for raw in iter(stream.readline, b""):
                on_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
        except (OSError, ValueError):
            logger.debug("Stream reader stopped", exc_info=True)
        finally:
            try:
                stream.close()
            except OSError:
                pass

    thread = threading.Thread(target=_run, daemon=True)
    thread.start()
    return thread
