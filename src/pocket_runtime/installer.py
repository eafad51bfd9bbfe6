from __future__ import annotations

import logging
import shutil
from typing import Callable, Mapping, Optional, Sequence

from .commands import CommandResult, resolve_uv_binary, run_command
from .errors import InstallFailed, ToolMissing
from .logging_utils import log_event
from .paths import RuntimePaths, is_executable_file

PACKAGE_NAME = "pocket-tts"
MINIMUM_PYTHON = (3, 10)
MINIMUM_PYTHON_SPECIFIER = "3.10"
UNKNOWN_VERSION = "unknown"

_PYTHON_VERSION_SCRIPT = (
    "import sys; print(f'{sys.version_info.major}.{sys.version_info.minor}')"
)
_PACKAGE_VERSION_SCRIPT = (
    f"import importlib.metadata as m; print(m.version('{PACKAGE_NAME}'))"
)

LogSink = Callable[[str], None]
UvResolver = Callable[[Optional[str]], Optional[str]]


def parse_python_version(raw: Optional[str]) -> Optional[tuple[int, int]]:
    if not raw:
        return None
    parts = raw.strip().split(".")
    if len(parts) < 2:
        return None
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return None


class EnvironmentInstaller:
    """
    Creates the isolated uv environment and installs the service package into it.

    The installer reports progress through ``on_log`` and raises typed errors;
    status bookkeeping is left to the supervisor that owns it.
    """

    def __init__(
        self,
        *,
        uv_path: Optional[str] = None,
        package: str = PACKAGE_NAME,
        logger: Optional[logging.Logger] = None,
        on_log: Optional[LogSink] = None,
        uv_resolver: UvResolver = resolve_uv_binary,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._uv_path = uv_path
        self._package = package
        self._logger = logger or logging.getLogger(__name__)
        self._on_log = on_log
        self._uv_resolver = uv_resolver
        self._env = env

    def has_installed_runtime(self, paths: RuntimePaths) -> bool:
        return is_executable_file(paths.service_binary) and is_executable_file(
            paths.python_binary
        )

    async def python_version_supported(self, paths: RuntimePaths) -> Optional[bool]:
        """True/False when the interpreter reports a version, None when it cannot be read."""
        if not is_executable_file(paths.python_binary):
            return None
        try:
            result = await self._run(str(paths.python_binary), ["-c", _PYTHON_VERSION_SCRIPT])
        except OSError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "pocket_runtime.install.version_probe_failed",
                python=paths.python_binary,
                exc=exc,
            )
            return None
        if not result.ok:
            return None
        version = parse_python_version(result.last_line())
        if version is None:
            return None
        return version >= MINIMUM_PYTHON

    async def is_ready(self, paths: RuntimePaths) -> bool:
        if not self.has_installed_runtime(paths):
            return False
        return await self.python_version_supported(paths) is True

    async def query_installed_version(self, paths: RuntimePaths) -> str:
        if not is_executable_file(paths.python_binary):
            return UNKNOWN_VERSION
        script = _PACKAGE_VERSION_SCRIPT.replace(PACKAGE_NAME, self._package)
        try:
            result = await self._run(str(paths.python_binary), ["-c", script])
        except OSError:
            return UNKNOWN_VERSION
        if not result.ok:
            return UNKNOWN_VERSION
        return result.last_line() or UNKNOWN_VERSION

    async def reinstall(self, paths: RuntimePaths) -> str:
        """Recreate the environment from scratch and return the installed package version."""
        self._log(f"Installing Pocket TTS runtime with uv into {paths.venv_dir}")
        uv_binary = self._uv_resolver(self._uv_path)
        if uv_binary is None:
            raise ToolMissing()

        try:
            paths.ensure_directories()
        except OSError as exc:
            raise InstallFailed("create runtime directories", str(exc)) from exc

        if paths.venv_dir.exists() or paths.venv_dir.is_symlink():
            try:
                shutil.rmtree(paths.venv_dir)
            except OSError as exc:
                raise InstallFailed("remove incompatible venv", str(exc)) from exc

        await self._checked_step(
            "uv venv",
            uv_binary,
            ["venv", str(paths.venv_dir), "--python", MINIMUM_PYTHON_SPECIFIER],
        )

        supported = await self.python_version_supported(paths)
        if supported is not True:
            raise InstallFailed(
                "python version check",
                "Managed venv uses unsupported Python version. "
                f"{self._package} requires Python >={MINIMUM_PYTHON_SPECIFIER}.",
            )

        await self._checked_step(
            "uv pip install",
            uv_binary,
            [
                "pip",
                "install",
                "--python",
                str(paths.python_binary),
                "--upgrade",
                self._package,
            ],
        )

        version = await self.query_installed_version(paths)
        log_event(
            self._logger,
            logging.INFO,
            "pocket_runtime.install.completed",
            venv=paths.venv_dir,
            version=version,
        )
        self._log("Pocket TTS runtime installation complete.")
        return version

    async def _checked_step(
        self, step: str, executable: str, args: Sequence[str]
    ) -> CommandResult:
        try:
            result = await self._run(executable, args)
        except OSError as exc:
            raise InstallFailed(step, str(exc)) from exc
        if not result.ok:
            log_event(
                self._logger,
                logging.WARNING,
                "pocket_runtime.install.step_failed",
                step=step,
                exit_code=result.exit_code,
                output=result.output.strip()[-2000:],
            )
            raise InstallFailed(step, result.output)
        return result

    async def _run(self, executable: str, args: Sequence[str]) -> CommandResult:
        return await run_command(executable, args, env=self._env)

    def _log(self, line: str) -> None:
        if self._on_log is not None:
            self._on_log(line)
