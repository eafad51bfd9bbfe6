from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional


class RuntimeStatus(str, Enum):
    NOT_INSTALLED = "not_installed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    STARTING = "starting"
    RUNNING = "running"
    UNHEALTHY = "unhealthy"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    RuntimeStatus.NOT_INSTALLED: "Not installed",
    RuntimeStatus.INSTALLING: "Installing",
    RuntimeStatus.INSTALLED: "Installed",
    RuntimeStatus.STARTING: "Starting",
    RuntimeStatus.RUNNING: "Running",
    RuntimeStatus.UNHEALTHY: "Unhealthy",
    RuntimeStatus.STOPPED: "Stopped",
    RuntimeStatus.FAILED: "Failed",
}


@dataclass(frozen=True)
class ServerLaunchConfig:
    host: str
    port: int
    voice: str
    venv_path: Optional[Path]
    auto_restart: bool


@dataclass(frozen=True)
class HealthResult:
    is_healthy: bool
    status_code: Optional[int] = None
    message: Optional[str] = None
    is_service_confirmed: bool = False

    def to_dict(self) -> dict:
        return {
            "is_healthy": self.is_healthy,
            "status_code": self.status_code,
            "message": self.message,
            "is_service_confirmed": self.is_service_confirmed,
        }


@dataclass(frozen=True)
class RuntimeSnapshot:
    """Point-in-time copy of everything the supervisor exposes for observation."""

    status: RuntimeStatus
    recent_logs: tuple[str, ...]
    installed_version: str
    last_error: Optional[str]
    last_health_check_at: Optional[datetime]
    is_running: bool
    restart_attempt: int
