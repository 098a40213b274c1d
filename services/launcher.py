from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional
import logging
import subprocess
import threading

from config.launcher_config import LauncherConfig
from helpers.fs_utils import path_exists
from helpers.launch_args import parse_backend_address, param_type_for
from helpers.process_utils import cleanup_specific, pump_lines, terminate_process
from interfaces.backend.registry import InstalledBackends
from interfaces.events.sink import EventSink, EventType
from interfaces.frontend.frontend import Frontend
from interfaces.launch.result import LaunchResult
from services.errors import DownloadAborted, ModelDownloadError, TunnelError
from services.launch_session import LaunchSession, LaunchState
from services.model_resolver import CancelScope, ModelResolver
from services.proxy import LocalProxy
from services.tunnel import TunnelManager

logger = logging.getLogger(__name__)


class ProcessLauncher:
    """
    Owns the single backend Launch Session.

    `launch()` tears down any previous session, resolves model arguments,
    starts the local proxy, spawns the current backend and blocks until it
    prints the ready marker or exits. `stop()` can be called from any thread,
    including while `launch()` is still downloading models or waiting for
    readiness.
    """

    def __init__(
        self,
        registry: InstalledBackends,
        resolver: ModelResolver,
        proxy: LocalProxy,
        tunnel: TunnelManager,
        events: EventSink,
        config: LauncherConfig | None = None,
        frontends: Mapping[str, Frontend] | None = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        self.registry = registry
        self.resolver = resolver
        self.proxy = proxy
        self.tunnel = tunnel
        self.events = events
        self.config = config or LauncherConfig()
        self.frontends = dict(frontends or {})
        self._popen = popen

        self._launch_lock = threading.Lock()
        self._lock = threading.Lock()
        self._session: Optional[LaunchSession] = None
        self._scope: Optional[CancelScope] = None
        self._pre_launch: list[subprocess.Popen] = []
        self._active_frontend: Optional[Frontend] = None

    @property
    def session(self) -> Optional[LaunchSession]:
        return self._session

    @property
    def state(self) -> LaunchState:
        session = self._session
        return session.state if session is not None else LaunchState.IDLE

    @property
    def is_running(self) -> bool:
        return self.state in (LaunchState.RUNNING_UNREADY, LaunchState.READY)

    # ---- launch ----

    def launch(
        self,
        args: list[str],
        frontend_preference: str | None = None,
        pre_launch_commands: Iterable[str] | None = None,
        tunnel: bool = False,
    ) -> LaunchResult:
        frontend_preference = frontend_preference or self.config.builtin_frontend

        with self._launch_lock:
            self.stop()

            scope = CancelScope()
            with self._lock:
                self._scope = scope

            try:
                session = self._start_session(args, frontend_preference, pre_launch_commands, scope)
            except DownloadAborted:
                logger.info("Launch aborted while resolving models")
                self._teardown_failed_launch()
                return LaunchResult(False, error="Launch aborted", aborted=True)
            except _LaunchFailed as e:
                self._teardown_failed_launch()
                return LaunchResult(False, error=str(e))
            except Exception as e:
                logger.exception("Launch failed")
                self._output(f"[ERROR] Launch failed: {e}")
                self.stop()
                return LaunchResult(False, error=str(e))

        if not session.wait_ready():
            if session.intentional_stop:
                return LaunchResult(False, pid=session.pid, error="Launch stopped", aborted=True)
            self._teardown_failed_launch(session)
            return LaunchResult(False, pid=session.pid, error=session.failure)

        threading.Thread(
            target=self._after_ready,
            args=(session, list(args), frontend_preference, tunnel),
            daemon=True,
        ).start()
        return LaunchResult(True, pid=session.pid)

    def _start_session(
        self,
        args: list[str],
        frontend_preference: str,
        pre_launch_commands: Iterable[str] | None,
        scope: CancelScope,
    ) -> LaunchSession:
        self._run_pre_launch(pre_launch_commands or ())

        backend = self.registry.get_current()
        if backend is None or not path_exists(backend.path):
            error = f"Binary file does not exist at path: {backend.path}" if backend else "No version configured"
            logger.error("Launch failed: %s. Raw config path: %r", error, self.registry.current_path())
            raise _LaunchFailed(error)

        final_args = self.resolve_model_args(args, scope)
        if scope.closed:
            raise DownloadAborted("Launch aborted by user")

        address = parse_backend_address(final_args, self.config.default_host, self.config.default_port)
        self.proxy.start(address.host, address.port)

        self._output(" ".join([backend.path, *final_args]))
        try:
            proc = self._popen(
                [backend.path, *final_args],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(Path(backend.path).parent),
            )
        except OSError as e:
            logger.exception("Failed to spawn backend %s", backend.path)
            self._output(f"[ERROR] Process error: {e}")
            raise _LaunchFailed(str(e)) from e

        session = LaunchSession(
            proc,
            self.events,
            ready_marker=self.config.ready_marker,
            notify_ready=frontend_preference == self.config.builtin_frontend,
            debug_output=self.config.debug_output,
            teardown_timeout_s=self.config.teardown_timeout_s,
        )
        with self._lock:
            stopped = self._scope is not scope
            if not stopped:
                self._session = session
        if stopped:
            terminate_process(proc, timeout=self.config.teardown_timeout_s)
            raise DownloadAborted("Launch aborted by user")

        session.start()
        logger.info("Spawned backend pid=%s: %s", proc.pid, backend.path)
        return session

    def resolve_model_args(self, args: list[str], scope: CancelScope | None = None) -> list[str]:
        """
        Replace the value after every model-bearing flag with a local path.
        A failed download keeps the original value; an abort propagates.
        """
        resolved = list(args)
        for i in range(len(resolved) - 1):
            flag = resolved[i]
            if flag not in self.config.model_params:
                continue
            value = resolved[i + 1]
            try:
                resolved[i + 1] = self.resolver.resolve(value, param_type_for(flag), scope=scope)
            except DownloadAborted:
                raise
            except ModelDownloadError as e:
                logger.warning("Keeping unresolved %s %s: %s", flag, value, e)
                self._output(f"[ERROR] {e}")
        return resolved

    def _run_pre_launch(self, commands: Iterable[str]) -> None:
        for command in commands:
            if not command or not command.strip():
                continue
            self._output(f"Running pre-launch command: {command}")
            try:
                proc = self._popen(
                    command,
                    shell=True,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                )
            except OSError as e:
                logger.warning("Pre-launch command failed to start: %s", command, exc_info=True)
                self._output(f"[ERROR] Pre-launch command failed: {e}")
                continue
            if proc.stdout is not None:
                pump_lines(proc.stdout, self._output)
            with self._lock:
                self._pre_launch.append(proc)

    def _after_ready(self, session: LaunchSession, args: list[str], frontend_preference: str, tunnel: bool) -> None:
        if frontend_preference != self.config.builtin_frontend:
            frontend = self.frontends.get(frontend_preference)
            if frontend is None:
                logger.warning("No frontend registered for %r", frontend_preference)
            elif self._session is session:
                try:
                    frontend.start(args, self.proxy.url)
                except Exception as e:
                    logger.exception("Failed to start frontend %s", frontend_preference)
                    self._output(f"[ERROR] Failed to start {frontend_preference}: {e}")
                else:
                    with self._lock:
                        superseded = self._session is not session
                        if not superseded:
                            self._active_frontend = frontend
                    if superseded:
                        # stop() ran while the frontend was starting
                        self._stop_frontend(frontend)

        if tunnel and self._session is session:
            try:
                self.tunnel.start(frontend_preference)
            except TunnelError as e:
                logger.warning("Failed to start tunnel: %s", e)
                self._output(f"Failed to start tunnel: {e}")
                return
            if self._session is not session:
                self.tunnel.stop()

    def _stop_frontend(self, frontend: Frontend) -> None:
        try:
            frontend.stop()
        except Exception:
            logger.exception("Failed to stop frontend")

    # ---- stop ----

    def stop(self) -> None:
        with self._lock:
            session, self._session = self._session, None
            scope, self._scope = self._scope, None
            pre_launch, self._pre_launch = self._pre_launch, []
            frontend, self._active_frontend = self._active_frontend, None

        if session is not None:
            session.request_stop()
        if scope is not None:
            scope.close()
        self.resolver.abort_active_downloads()

        self.proxy.stop()
        self.tunnel.stop()
        cleanup_specific(pre_launch, timeout=self.config.teardown_timeout_s)
        if frontend is not None:
            self._stop_frontend(frontend)

        if session is not None:
            session.stop()
            logger.info("Backend %s stopped", session.pid)

    def _teardown_failed_launch(self, session: LaunchSession | None = None) -> None:
        with self._lock:
            if session is not None and self._session is not session:
                return
            self._session = None
            self._scope = None
            pre_launch, self._pre_launch = self._pre_launch, []
        self.proxy.stop()
        cleanup_specific(pre_launch, timeout=self.config.teardown_timeout_s)

    def _output(self, line: str) -> None:
        self.events.emit(EventType.BACKEND_OUTPUT, line)


class _LaunchFailed(Exception):
    pass
