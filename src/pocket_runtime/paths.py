from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Union

RUNTIME_HOME_ENV = "POCKET_RUNTIME_HOME"
SERVICE_BINARY_NAME = "pocket-tts"
SERVER_LOG_NAME = "server.log"

PathLike = Union[str, Path]


def default_runtime_home(env: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if env is None else env
    override = (env.get(RUNTIME_HOME_ENV) or "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".pocket-runtime"


def default_venv_path(env: Optional[Mapping[str, str]] = None) -> Path:
    return default_runtime_home(env) / "pocket-tts" / ".venv"


@dataclass(frozen=True)
class RuntimePaths:
    """Filesystem layout derived from the managed environment directory."""

    base_dir: Path
    venv_dir: Path
    python_binary: Path
    service_binary: Path
    log_dir: Path
    log_file: Path

    @classmethod
    def from_venv_path(cls, venv_path: Optional[PathLike] = None) -> "RuntimePaths":
        raw = str(venv_path).strip() if venv_path is not None else ""
        venv_dir = Path(raw).expanduser() if raw else default_venv_path()
        base_dir = venv_dir.parent
        log_dir = base_dir / "logs"
        return cls(
            base_dir=base_dir,
            venv_dir=venv_dir,
            python_binary=venv_dir / "bin" / "python",
            service_binary=venv_dir / "bin" / SERVICE_BINARY_NAME,
            log_dir=log_dir,
            log_file=log_dir / SERVER_LOG_NAME,
        )

    def ensure_directories(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def as_dict(self) -> dict[str, str]:
        return {
            "base_dir": str(self.base_dir),
            "venv_dir": str(self.venv_dir),
            "python_binary": str(self.python_binary),
            "service_binary": str(self.service_binary),
            "log_dir": str(self.log_dir),
            "log_file": str(self.log_file),
        }


def is_executable_file(path: Path) -> bool:
    return path.is_file() and os.access(str(path), os.X_OK)
