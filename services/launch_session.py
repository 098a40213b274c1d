from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union
import logging
import queue
import subprocess
import threading
import time

from helpers.process_utils import pump_lines, signal_name, terminate_process
from interfaces.events.payloads import CrashInfo
from interfaces.events.sink import EventSink, EventType
from services.output_filter import filter_line

logger = logging.getLogger(__name__)

# How long the exit watcher lets the readers drain before classifying the exit.
# Descendants that inherited the pipes can keep them open indefinitely.
OUTPUT_DRAIN_S = 1.0


class LaunchState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING_UNREADY = "running-unready"
    READY = "ready"
    STOPPED = "stopped"
    CRASHED = "crashed"


@dataclass(frozen=True)
class OutputLine:
    text: str


@dataclass(frozen=True)
class StopRequested:
    pass


@dataclass(frozen=True)
class Exited:
    returncode: Optional[int]


Message = Union[OutputLine, StopRequested, Exited]


def exit_display_line(returncode: Optional[int]) -> str:
    sig = signal_name(returncode)
    if sig:
        return f"[INFO] Process terminated with signal {sig}"
    if returncode == 0:
        return "[INFO] Process exited successfully"
    if returncode is not None and (returncode > 1 or returncode < 0):
        return f"[ERROR] Process exited with code {returncode}"
    return f"[INFO] Process exited with code {returncode}"


class LaunchSession:
    """
    One running backend process and its readiness/crash state machine.

    Reader threads (stdout, stderr) and the exit watcher only post messages;
    the controller thread is the only place where the state changes, so the
    ready marker is honoured once no matter which stream shows it first, and
    the exit is always classified after every output line has been seen.

        STARTING -> RUNNING_UNREADY -> READY -> STOPPED
                                         \\-> CRASHED
        RUNNING_UNREADY -> STOPPED  (exit before ready: launch failure)
    """

    def __init__(
        self,
        proc: subprocess.Popen,
        events: EventSink,
        ready_marker: str,
        notify_ready: bool = True,
        debug_output: bool = False,
        teardown_timeout_s: float = 5.0,
    ) -> None:
        self.proc = proc
        self.events = events
        self.ready_marker = ready_marker
        self.notify_ready = notify_ready
        self.debug_output = debug_output
        self.teardown_timeout_s = teardown_timeout_s

        self._state = LaunchState.STARTING
        self._intentional_stop = False
        self._failure: Optional[str] = None
        self._returncode: Optional[int] = None
        self._reached_ready = False

        self._inbox: "queue.Queue[Message]" = queue.Queue()
        self._post_lock = threading.Lock()
        self._exit_posted = False
        self._settled = threading.Event()  # ready, or exited before ready
        self._exited = threading.Event()
        self._controller: Optional[threading.Thread] = None

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def state(self) -> LaunchState:
        return self._state

    @property
    def failure(self) -> Optional[str]:
        return self._failure

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    @property
    def intentional_stop(self) -> bool:
        return self._intentional_stop

    def start(self) -> None:
        self._state = LaunchState.RUNNING_UNREADY
        readers = [
            pump_lines(stream, self._post_line)
            for stream in (self.proc.stdout, self.proc.stderr)
            if stream is not None
        ]
        threading.Thread(target=self._watch_exit, args=(readers,), daemon=True).start()
        self._controller = threading.Thread(target=self._run, daemon=True)
        self._controller.start()

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until the marker is seen or the process exits; True means ready."""
        self._settled.wait(timeout)
        return self._reached_ready

    def wait_exit(self, timeout: Optional[float] = None) -> bool:
        return self._exited.wait(timeout)

    def request_stop(self) -> None:
        self._inbox.put(StopRequested())

    def stop(self) -> None:
        """Mark the exit as intentional, terminate the process and wait for the exit to be classified."""
        if self._exited.is_set():
            return
        self.request_stop()
        terminate_process(self.proc, timeout=self.teardown_timeout_s)
        if not self._exited.wait(self.teardown_timeout_s):
            logger.warning("Backend %s exit was not observed within %ss", self.pid, self.teardown_timeout_s)

    # ---- producers ----

    def _post_line(self, text: str) -> None:
        with self._post_lock:
            if not self._exit_posted:
                self._inbox.put(OutputLine(text))
                return
        # late output from a descendant still holding the pipe
        self._emit_output(text)

    def _watch_exit(self, readers: list[threading.Thread]) -> None:
        returncode = self.proc.wait()
        deadline = time.monotonic() + OUTPUT_DRAIN_S
        for reader in readers:
            reader.join(max(0.0, deadline - time.monotonic()))
        with self._post_lock:
            self._exit_posted = True
            self._inbox.put(Exited(returncode))

    # ---- controller ----

    def _run(self) -> None:
        while True:
            msg = self._inbox.get()
            if isinstance(msg, OutputLine):
                self._on_output(msg.text)
            elif isinstance(msg, StopRequested):
                self._intentional_stop = True
            elif isinstance(msg, Exited):
                self._on_exit(msg.returncode)
                return

    def _emit_output(self, text: str) -> None:
        shown = filter_line(text, self.debug_output)
        if shown is not None:
            self.events.emit(EventType.BACKEND_OUTPUT, shown)

    def _on_output(self, text: str) -> None:
        self._emit_output(text)

        if self._state == LaunchState.RUNNING_UNREADY and self.ready_marker in text:
            self._state = LaunchState.READY
            self._reached_ready = True
            logger.info("Backend %s is ready", self.pid)
            self._settled.set()
            if self.notify_ready:
                self.events.emit(EventType.SERVER_READY, self.pid)

    def _on_exit(self, returncode: Optional[int]) -> None:
        self._returncode = returncode
        sig = signal_name(returncode)
        code = None if sig else returncode
        self.events.emit(EventType.BACKEND_OUTPUT, exit_display_line(returncode))

        if self._state == LaunchState.READY:
            if not self._intentional_stop and (sig is not None or (code is not None and code != 0)):
                self._state = LaunchState.CRASHED
                message = f"Process crashed (code: {code}, signal: {sig})"
                logger.error("Backend %s crashed: %s", self.pid, message)
                self.events.emit(EventType.BACKEND_CRASHED, CrashInfo(self.pid, code, sig, message))
            else:
                self._state = LaunchState.STOPPED
        else:
            self._state = LaunchState.STOPPED
            self._failure = f"Process exited before ready signal (code: {code}, signal: {sig})"
            logger.warning("Backend %s: %s", self.pid, self._failure)

        self._settled.set()
        self._exited.set()
