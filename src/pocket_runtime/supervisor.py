from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Mapping, Optional, Union

from .config import DEFAULT_VOICE, RuntimeConfig
from .errors import (
    HealthCheckFailed,
    InvalidHost,
    PocketRuntimeError,
    RuntimeNotInstalled,
    StartTimedOut,
    StartupFailed,
)
from .health import HealthVerifier, base_url
from .installer import MINIMUM_PYTHON_SPECIFIER, UNKNOWN_VERSION, EnvironmentInstaller
from .logging_utils import log_event
from .models import HealthResult, RuntimeSnapshot, RuntimeStatus, ServerLaunchConfig
from .output import DEFAULT_LOG_CAPACITY, LogRingBuffer, ServerOutputPump
from .paths import RuntimePaths
from .recovery import RestartPolicy

LOOPBACK_HOSTS = frozenset({"127.0.0.1", "localhost", "::1"})
DEFAULT_START_TIMEOUT = 20.0
STOP_GRACE_SECONDS = 5.0
PORT_FALLBACK_COUNT = 5

StatusListener = Callable[[RuntimeSnapshot], None]
Sleep = Callable[[float], Awaitable[None]]
VenvPath = Optional[Union[str, Path]]


def is_loopback_host(host: str) -> bool:
    return host.strip().lower() in LOOPBACK_HOSTS


def candidate_ports(start_port: int) -> list[int]:
    safe_start = max(1025, min(65500, start_port))
    return [
        safe_start + offset
        for offset in range(PORT_FALLBACK_COUNT + 1)
        if safe_start + offset <= 65535
    ]


@dataclass
class _ServerHandle:
    process: asyncio.subprocess.Process
    pump: ServerOutputPump
    launch: ServerLaunchConfig
    stopping: bool = False
    restart_scheduled: bool = False
    watcher: Optional[asyncio.Task[None]] = None
    exit_handled: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


class PocketRuntimeSupervisor:
    """
    Owns the managed Pocket TTS runtime: installation, at most one server
    process, health verification and bounded crash recovery.

    All state lives on the event loop that drives the supervisor. Whole
    install/start/restart operations are serialized by one lock; ``stop`` is
    not, so it can interrupt a start that is still waiting for health.
    """

    def __init__(
        self,
        *,
        venv_path: VenvPath = None,
        uv_path: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
        installer: Optional[EnvironmentInstaller] = None,
        health_verifier: Optional[HealthVerifier] = None,
        restart_policy: Optional[RestartPolicy] = None,
        start_timeout: float = DEFAULT_START_TIMEOUT,
        log_capacity: int = DEFAULT_LOG_CAPACITY,
        env: Optional[Mapping[str, str]] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._default_venv_path = venv_path
        self._installer = installer or EnvironmentInstaller(
            uv_path=uv_path, logger=self._logger, on_log=self._append_log_line, env=env
        )
        self._health = health_verifier or HealthVerifier(logger=self._logger)
        self._policy = restart_policy or RestartPolicy()
        self._start_timeout = start_timeout
        self._env = dict(env) if env is not None else None
        self._sleep = sleep

        self._status = RuntimeStatus.NOT_INSTALLED
        self._logs = LogRingBuffer(log_capacity)
        self._installed_version = UNKNOWN_VERSION
        self._last_error: Optional[str] = None
        self._restart_attempt = 0
        self._launch_config: Optional[ServerLaunchConfig] = None
        self._handle: Optional[_ServerHandle] = None
        self._restart_task: Optional[asyncio.Task[None]] = None
        self._stop_generation = 0
        self._listeners: list[StatusListener] = []
        self._operation_lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls, config: RuntimeConfig, *, logger: Optional[logging.Logger] = None
    ) -> "PocketRuntimeSupervisor":
        return cls(
            venv_path=config.venv_path,
            uv_path=config.uv_path,
            logger=logger,
            health_verifier=HealthVerifier(
                timeout=config.health_timeout_seconds, logger=logger
            ),
            start_timeout=config.start_timeout_seconds,
        )

    # Observation

    @property
    def status(self) -> RuntimeStatus:
        return self._status

    @property
    def recent_logs(self) -> tuple[str, ...]:
        return self._logs.snapshot()

    @property
    def installed_version(self) -> str:
        return self._installed_version

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def last_health_check_at(self) -> Optional[datetime]:
        return self._health.last_checked_at

    @property
    def restart_attempt(self) -> int:
        return self._restart_attempt

    @property
    def launch_config(self) -> Optional[ServerLaunchConfig]:
        return self._launch_config

    @property
    def is_running(self) -> bool:
        handle = self._handle
        return handle is not None and handle.alive and self._status == RuntimeStatus.RUNNING

    def snapshot(self) -> RuntimeSnapshot:
        return RuntimeSnapshot(
            status=self._status,
            recent_logs=self._logs.snapshot(),
            installed_version=self._installed_version,
            last_error=self._last_error,
            last_health_check_at=self._health.last_checked_at,
            is_running=self.is_running,
            restart_attempt=self._restart_attempt,
        )

    def add_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Call ``listener`` with a snapshot on every status change."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def clear_last_error(self) -> None:
        self._last_error = None

    def paths(self, venv_path: VenvPath = None) -> RuntimePaths:
        return RuntimePaths.from_venv_path(
            venv_path if venv_path is not None else self._default_venv_path
        )

    def has_installed_runtime(self, venv_path: VenvPath = None) -> bool:
        return self._installer.has_installed_runtime(self.paths(venv_path))

    # Installation

    async def install_if_needed(self, venv_path: VenvPath = None) -> None:
        async with self._operation_lock:
            paths = self.paths(venv_path)
            if await self._installer.is_ready(paths):
                if self._handle is None:
                    self._set_status(RuntimeStatus.INSTALLED)
                self._installed_version = await self._installer.query_installed_version(
                    paths
                )
                return
            if paths.venv_dir.exists():
                self._append_log_line(
                    "Existing managed venv is incompatible; reinstalling with "
                    f"Python {MINIMUM_PYTHON_SPECIFIER}+."
                )
            await self._reinstall_locked(paths)

    async def reinstall(self, venv_path: VenvPath = None) -> None:
        async with self._operation_lock:
            await self._reinstall_locked(self.paths(venv_path))

    async def _reinstall_locked(self, paths: RuntimePaths) -> None:
        if self._handle is not None:
            self._launch_config = None
            await self._stop_and_reap()
        self._set_status(RuntimeStatus.INSTALLING)
        self._last_error = None
        log_event(
            self._logger,
            logging.INFO,
            "pocket_runtime.install.started",
            venv=paths.venv_dir,
        )
        try:
            version = await self._installer.reinstall(paths)
        except PocketRuntimeError as exc:
            self._fail(exc)
            raise
        self._installed_version = version
        self._set_status(RuntimeStatus.INSTALLED)

    # Server lifecycle

    async def start(
        self,
        host: str,
        port: int,
        voice: str = DEFAULT_VOICE,
        venv_path: VenvPath = None,
        auto_restart: bool = False,
    ) -> None:
        async with self._operation_lock:
            await self._start_locked(
                ServerLaunchConfig(
                    host=host,
                    port=port,
                    voice=voice,
                    venv_path=_as_path(venv_path, self._default_venv_path),
                    auto_restart=auto_restart,
                )
            )

    async def restart(
        self,
        host: str,
        port: int,
        voice: str = DEFAULT_VOICE,
        venv_path: VenvPath = None,
        auto_restart: bool = False,
    ) -> None:
        async with self._operation_lock:
            self._launch_config = None
            await self._stop_and_reap()
            await self._start_locked(
                ServerLaunchConfig(
                    host=host,
                    port=port,
                    voice=voice,
                    venv_path=_as_path(venv_path, self._default_venv_path),
                    auto_restart=auto_restart,
                )
            )

    async def stop(self) -> None:
        """Request termination; the exit watcher finishes cleanup asynchronously."""
        self._stop_generation += 1
        self._launch_config = None
        self._cancel_pending_restart()
        handle = self._handle
        if handle is None:
            self._set_status(RuntimeStatus.STOPPED)
            return
        await self._request_stop(handle)

    async def close(self) -> None:
        """Stop the server and wait for it to exit; call once at application shutdown."""
        self._stop_generation += 1
        self._launch_config = None
        await self._stop_and_reap()

    async def ensure_started(self, config: RuntimeConfig) -> int:
        """
        Install if needed, then bring the service up on the configured port or
        one of the next few. A port already serving Pocket TTS is adopted; a
        port held by some other HTTP service is skipped. Returns the port used.
        """
        host = config.host.strip()
        if not is_loopback_host(host):
            raise self._fail(InvalidHost(host))
        await self.install_if_needed(config.venv_path)

        last_error: Optional[PocketRuntimeError] = None
        for port in candidate_ports(config.port):
            url = base_url(host, port)
            health = await self.health_check(url)
            if health.is_healthy:
                if port != config.port:
                    self._append_log_line(
                        f"Using Pocket TTS already running on fallback port {port}."
                    )
                return port
            if health.status_code is not None and not health.is_service_confirmed:
                self._append_log_line(
                    f"Port {port} is occupied by a non-Pocket service, skipping."
                )
                continue
            try:
                await self.start(
                    host,
                    port,
                    config.voice,
                    config.venv_path,
                    auto_restart=config.auto_restart,
                )
            except (InvalidHost, RuntimeNotInstalled):
                raise
            except PocketRuntimeError as exc:
                last_error = exc
                continue
            post_start = await self.health_check(url)
            if post_start.is_healthy:
                if port != config.port:
                    self._append_log_line(f"Using fallback Pocket TTS port {port}.")
                return port
            self._launch_config = None
            await self._stop_and_reap()

        if last_error is not None:
            raise last_error
        raise self._fail(HealthCheckFailed())

    # Health

    async def health_check(self, url: str) -> HealthResult:
        return await self._health.check(url)

    async def wait_for_healthy(
        self,
        url: str,
        timeout_seconds: float,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> bool:
        handle = self._handle
        if handle is None:
            return False
        return await self._health.wait_for_healthy(
            url,
            timeout_seconds,
            is_alive=lambda: handle.alive and self._handle is handle,
            cancel_event=cancel_event,
        )

    # Internals

    async def _start_locked(self, requested: ServerLaunchConfig) -> None:
        generation = self._stop_generation
        host = requested.host.strip()
        if not is_loopback_host(host):
            raise self._fail(InvalidHost(host))
        voice = requested.voice.strip() if requested.voice else ""
        launch = ServerLaunchConfig(
            host=host,
            port=requested.port,
            voice=voice or DEFAULT_VOICE,
            venv_path=requested.venv_path,
            auto_restart=requested.auto_restart,
        )
        paths = self.paths(launch.venv_path)
        if not self._installer.has_installed_runtime(paths):
            raise self._fail(RuntimeNotInstalled())

        await self._stop_and_reap()
        if generation != self._stop_generation:
            raise StartupFailed("Server was stopped before it became healthy.")

        pump = ServerOutputPump(paths.log_file, self._logs.extend, logger=self._logger)
        try:
            paths.ensure_directories()
            pump.open()
        except OSError as exc:
            await pump.detach()
            raise self._fail(StartupFailed(f"Could not open {paths.log_file}: {exc}")) from exc

        self._last_error = None
        self._launch_config = launch
        self._set_status(RuntimeStatus.STARTING)
        self._append_log_line(f"Starting Pocket TTS server on {host}:{launch.port}")
        try:
            process = await asyncio.create_subprocess_exec(
                str(paths.service_binary),
                "serve",
                "--host",
                host,
                "--port",
                str(launch.port),
                "--voice",
                launch.voice,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env,
            )
        except OSError as exc:
            await pump.detach()
            raise self._fail(StartupFailed(str(exc))) from exc

        handle = _ServerHandle(process=process, pump=pump, launch=launch)
        self._handle = handle
        pump.attach(process.stdout, process.stderr)
        handle.watcher = asyncio.create_task(self._watch_process(handle))
        log_event(
            self._logger,
            logging.INFO,
            "pocket_runtime.server.spawned",
            pid=process.pid,
            host=host,
            port=launch.port,
            voice=launch.voice,
            auto_restart=launch.auto_restart,
        )
        if generation != self._stop_generation:
            await self._request_stop(handle)
            raise StartupFailed("Server was stopped before it became healthy.")

        url = base_url(host, launch.port)
        healthy = await self._health.wait_for_healthy(
            url,
            self._start_timeout,
            is_alive=lambda: handle.alive and self._handle is handle,
        )
        if healthy and handle.alive and self._handle is handle and not handle.stopping:
            self._restart_attempt = 0
            self._set_status(RuntimeStatus.RUNNING)
            self._append_log_line("Pocket TTS server is healthy.")
            log_event(
                self._logger,
                logging.INFO,
                "pocket_runtime.server.healthy",
                pid=process.pid,
                url=url,
            )
            return

        if handle.stopping:
            raise StartupFailed("Server was stopped before it became healthy.")
        if not handle.alive:
            await handle.exit_handled.wait()
            if handle.stopping:
                raise StartupFailed("Server was stopped before it became healthy.")
            error = StartupFailed(
                f"Server exited with code {process.returncode} before becoming healthy."
            )
            if handle.restart_scheduled and self._restart_task is not None:
                self._last_error = str(error)
                raise error
            raise self._fail(error)

        await self._request_stop(handle)
        raise self._fail(StartTimedOut())

    async def _request_stop(self, handle: _ServerHandle) -> None:
        handle.stopping = True
        if handle.alive:
            try:
                handle.process.terminate()
            except ProcessLookupError:
                pass
        await handle.pump.detach()
        self._set_status(RuntimeStatus.STOPPED)
        log_event(
            self._logger,
            logging.INFO,
            "pocket_runtime.server.stopping",
            pid=handle.process.pid,
        )

    async def _stop_and_reap(self, grace_seconds: float = STOP_GRACE_SECONDS) -> None:
        self._cancel_pending_restart()
        handle = self._handle
        if handle is None:
            return
        await self._request_stop(handle)
        try:
            await asyncio.wait_for(asyncio.shield(handle.exit_handled.wait()), grace_seconds)
        except asyncio.TimeoutError:
            if handle.alive:
                try:
                    handle.process.kill()
                except ProcessLookupError:
                    pass
            await handle.exit_handled.wait()

    async def _watch_process(self, handle: _ServerHandle) -> None:
        exit_code = await handle.process.wait()
        await self._handle_termination(handle, exit_code)

    async def _handle_termination(self, handle: _ServerHandle, exit_code: int) -> None:
        try:
            if self._handle is handle:
                self._handle = None
            if handle.stopping:
                await self._record_stopped(handle, exit_code)
                return

            generation = self._stop_generation
            await handle.pump.drain()
            if generation != self._stop_generation:
                # stop() arrived while the output was draining.
                handle.stopping = True
                await self._record_stopped(handle, exit_code)
                return
            self._append_log_line(f"Pocket TTS server exited unexpectedly ({exit_code}).")
            log_event(
                self._logger,
                logging.WARNING,
                "pocket_runtime.server.exited",
                pid=handle.process.pid,
                exit_code=exit_code,
                restart_attempt=self._restart_attempt,
            )
            if self._handle is not None:
                return

            decision = self._policy.decide(
                attempt=self._restart_attempt,
                auto_restart=handle.launch.auto_restart,
                exit_code=exit_code,
            )
            if not decision.restart:
                self._last_error = decision.reason
                self._set_status(RuntimeStatus.FAILED)
                return

            self._restart_attempt = decision.attempt
            self._set_status(RuntimeStatus.UNHEALTHY)
            self._append_log_line(
                f"Restarting Pocket TTS in {decision.delay_seconds:g}s "
                f"(attempt {decision.attempt}/{self._policy.max_attempts})"
            )
            log_event(
                self._logger,
                logging.INFO,
                "pocket_runtime.server.restart.scheduled",
                delay_seconds=decision.delay_seconds,
                attempt=decision.attempt,
            )
            handle.restart_scheduled = True
            self._cancel_pending_restart()
            self._restart_task = asyncio.create_task(
                self._restart_after_delay(handle.launch, decision.delay_seconds)
            )
        finally:
            handle.exit_handled.set()

    async def _record_stopped(self, handle: _ServerHandle, exit_code: int) -> None:
        await handle.pump.detach()
        self._append_log_line("Pocket TTS server stopped.")
        log_event(
            self._logger,
            logging.INFO,
            "pocket_runtime.server.stopped",
            pid=handle.process.pid,
            exit_code=exit_code,
        )

    async def _restart_after_delay(self, launch: ServerLaunchConfig, delay: float) -> None:
        await self._sleep(delay)
        async with self._operation_lock:
            if self._restart_task is not asyncio.current_task():
                return
            self._restart_task = None
            if self._handle is not None or self._launch_config is not launch:
                return
            try:
                await self._start_locked(launch)
            except PocketRuntimeError as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "pocket_runtime.server.restart.failed",
                    attempt=self._restart_attempt,
                    exc=exc,
                )
                if self._launch_config is None:
                    return
                self._last_error = str(exc)
                if self._restart_task is None:
                    self._set_status(RuntimeStatus.FAILED)

    def _cancel_pending_restart(self) -> None:
        task = self._restart_task
        if task is None or task is asyncio.current_task():
            return
        self._restart_task = None
        if not task.done():
            task.cancel()

    def _fail(self, error: PocketRuntimeError) -> PocketRuntimeError:
        self._last_error = str(error)
        self._set_status(RuntimeStatus.FAILED)
        self._append_log_line(str(error))
        log_event(
            self._logger,
            logging.WARNING,
            "pocket_runtime.failed",
            reason=error.reason,
            exc=error,
        )
        return error

    def _append_log_line(self, line: str) -> None:
        self._logs.append(line)

    def _set_status(self, status: RuntimeStatus) -> None:
        if status == self._status:
            return
        self._status = status
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "pocket_runtime.listener.failed",
                    status=status.value,
                    exc=exc,
                )


def _as_path(value: VenvPath, default: VenvPath) -> Optional[Path]:
    chosen = value if value is not None else default
    if chosen is None or not str(chosen).strip():
        return None
    return Path(chosen).expanduser()


__all__ = [
    "LOOPBACK_HOSTS",
    "PocketRuntimeSupervisor",
    "candidate_ports",
    "is_loopback_host",
]
