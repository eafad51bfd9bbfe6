from .config import ConfigError, LogConfig, RuntimeConfig, load_config
from .errors import (
    HealthCheckFailed,
    InstallFailed,
    InvalidHost,
    PocketRuntimeError,
    RuntimeNotInstalled,
    StartTimedOut,
    StartupFailed,
    ToolMissing,
)
from .health import HealthVerifier, base_url
from .installer import EnvironmentInstaller
from .models import HealthResult, RuntimeSnapshot, RuntimeStatus, ServerLaunchConfig
from .paths import RuntimePaths, default_venv_path
from .recovery import RestartPolicy
from .supervisor import PocketRuntimeSupervisor

__all__ = [
    "ConfigError",
    "EnvironmentInstaller",
    "HealthCheckFailed",
    "HealthResult",
    "HealthVerifier",
    "InstallFailed",
    "InvalidHost",
    "LogConfig",
    "PocketRuntimeError",
    "PocketRuntimeSupervisor",
    "RestartPolicy",
    "RuntimeConfig",
    "RuntimeNotInstalled",
    "RuntimePaths",
    "RuntimeSnapshot",
    "RuntimeStatus",
    "ServerLaunchConfig",
    "StartTimedOut",
    "StartupFailed",
    "ToolMissing",
    "base_url",
    "default_venv_path",
    "load_config",
]
