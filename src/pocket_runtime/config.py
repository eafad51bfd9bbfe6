import dataclasses
import json
import os
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

import yaml
from dotenv import load_dotenv

from .paths import default_venv_path

CONFIG_FILENAME = "pocket-runtime.yml"
CONFIG_SECTION = "pocket_runtime"

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000
DEFAULT_VOICE = "alba"

DEFAULT_RUNTIME_CONFIG: Dict[str, Any] = {
    "enabled": False,
    "auto_start": True,
    "auto_restart": True,
    "host": DEFAULT_HOST,
    "port": DEFAULT_PORT,
    "voice": DEFAULT_VOICE,
    "venv_path": None,
    "uv_path": None,
    "start_timeout_seconds": 20.0,
    "health_timeout_seconds": 2.0,
    "log": {
        "path": None,
        "max_bytes": 5_000_000,
        "backup_count": 3,
    },
}


class ConfigError(Exception):
    """Raised when configuration is invalid."""


@dataclasses.dataclass
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int


@dataclasses.dataclass
class RuntimeConfig:
    enabled: bool
    auto_start: bool
    auto_restart: bool
    host: str
    port: int
    voice: str
    venv_path: Path
    uv_path: Optional[str]
    start_timeout_seconds: float
    health_timeout_seconds: float
    log: LogConfig

    @classmethod
    def from_raw(
        cls,
        raw: Optional[Mapping[str, Any]],
        env: Optional[Mapping[str, str]] = None,
    ) -> "RuntimeConfig":
        """
        Build a normalized RuntimeConfig from the `pocket_runtime` section and env overrides.
        Env values win over file values; malformed env values fall back to the file value.
        """
        env = os.environ if env is None else env
        merged: MutableMapping[str, Any] = _merge_defaults(DEFAULT_RUNTIME_CONFIG, {})
        if raw is not None:
            if not isinstance(raw, Mapping):
                raise ConfigError(f"{CONFIG_SECTION} must be a mapping")
            merged = _merge_defaults(DEFAULT_RUNTIME_CONFIG, dict(raw))

        merged["enabled"] = _env_bool(env.get("POCKET_RUNTIME_ENABLED"), merged["enabled"])
        merged["auto_start"] = _env_bool(
            env.get("POCKET_RUNTIME_AUTO_START"), merged["auto_start"]
        )
        merged["auto_restart"] = _env_bool(
            env.get("POCKET_RUNTIME_AUTO_RESTART"), merged["auto_restart"]
        )
        merged["host"] = env.get("POCKET_RUNTIME_HOST", merged["host"])
        merged["port"] = _env_int(env.get("POCKET_RUNTIME_PORT"), merged["port"])
        merged["voice"] = env.get("POCKET_RUNTIME_VOICE", merged["voice"])
        merged["venv_path"] = env.get("POCKET_RUNTIME_VENV", merged["venv_path"])
        merged["uv_path"] = env.get("POCKET_RUNTIME_UV", merged["uv_path"])

        _validate_runtime_config(merged)

        venv_raw = merged.get("venv_path")
        venv_path = (
            Path(str(venv_raw)).expanduser()
            if venv_raw and str(venv_raw).strip()
            else default_venv_path(env)
        )
        log_raw = merged["log"]
        log_path_raw = log_raw.get("path")
        log_path = (
            Path(str(log_path_raw)).expanduser()
            if log_path_raw
            else venv_path.parent / "logs" / "pocket-runtime.log"
        )
        voice = str(merged.get("voice") or "").strip() or DEFAULT_VOICE
        return cls(
            enabled=bool(merged["enabled"]),
            auto_start=bool(merged["auto_start"]),
            auto_restart=bool(merged["auto_restart"]),
            host=str(merged["host"]).strip(),
            port=int(merged["port"]),
            voice=voice,
            venv_path=venv_path,
            uv_path=str(merged["uv_path"]) if merged.get("uv_path") else None,
            start_timeout_seconds=float(merged["start_timeout_seconds"]),
            health_timeout_seconds=float(merged["health_timeout_seconds"]),
            log=LogConfig(
                path=log_path,
                max_bytes=int(log_raw["max_bytes"]),
                backup_count=int(log_raw["backup_count"]),
            ),
        )


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(base))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_dotenv_for_config(config_path: Path) -> None:
    """Best-effort load of a `.env` next to the config file."""
    try:
        candidate = config_path.parent / ".env"
        if candidate.exists():
            load_dotenv(dotenv_path=candidate, override=False)
    except Exception:
        # Never fail config loading due to dotenv issues.
        pass


def load_config(
    config_path: Optional[Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> RuntimeConfig:
    """
    Load runtime config from a YAML file. A missing path yields defaults plus env
    overrides; the file may hold the settings at top level or under `pocket_runtime`.
    """
    if config_path is None:
        return RuntimeConfig.from_raw(None, env)
    if not config_path.exists():
        raise ConfigError(f"Missing config file: {config_path}")
    _load_dotenv_for_config(config_path)
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    section = data.get(CONFIG_SECTION, data)
    return RuntimeConfig.from_raw(section, env)


def _validate_runtime_config(cfg: Mapping[str, Any]) -> None:
    for key in ("enabled", "auto_start", "auto_restart"):
        if not isinstance(cfg.get(key), bool):
            raise ConfigError(f"{CONFIG_SECTION}.{key} must be a boolean")
    host = cfg.get("host")
    if not isinstance(host, str) or not host.strip():
        raise ConfigError(f"{CONFIG_SECTION}.host must be a non-empty string")
    port = cfg.get("port")
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise ConfigError(f"{CONFIG_SECTION}.port must be an integer between 1 and 65535")
    if cfg.get("voice") is not None and not isinstance(cfg.get("voice"), str):
        raise ConfigError(f"{CONFIG_SECTION}.voice must be a string")
    for key in ("venv_path", "uv_path"):
        value = cfg.get(key)
        if value is not None and not isinstance(value, (str, os.PathLike)):
            raise ConfigError(f"{CONFIG_SECTION}.{key} must be a path string")
    for key in ("start_timeout_seconds", "health_timeout_seconds"):
        value = cfg.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ConfigError(f"{CONFIG_SECTION}.{key} must be a positive number")
    log = cfg.get("log")
    if not isinstance(log, dict):
        raise ConfigError(f"{CONFIG_SECTION}.log must be a mapping")
    for key in ("max_bytes", "backup_count"):
        if not isinstance(log.get(key), int) or log[key] < 0:
            raise ConfigError(f"{CONFIG_SECTION}.log.{key} must be a non-negative integer")


def _env_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(raw: Optional[str], default: int) -> int:
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except (TypeError, ValueError):
        return default
