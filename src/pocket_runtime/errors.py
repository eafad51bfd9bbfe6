from __future__ import annotations


class PocketRuntimeError(Exception):
    """Base error for managed runtime failures; ``str(err)`` is the user-facing text."""

    reason = "runtime_error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ToolMissing(PocketRuntimeError):
    reason = "uv_missing"

    def __init__(self) -> None:
        super().__init__("uv was not found. Install uv and retry Pocket TTS setup.")


class InvalidHost(PocketRuntimeError):
    reason = "invalid_host"

    def __init__(self, host: str) -> None:
        self.host = host
        super().__init__(
            f"Managed Pocket runtime only supports localhost. Invalid host: {host}"
        )


class InstallFailed(PocketRuntimeError):
    reason = "install_failed"

    def __init__(self, step: str, output: str = "") -> None:
        self.step = step
        self.output = (output or "").strip()
        if self.output:
            detail = f"Pocket TTS install failed at step: {step}. {self.output}"
        else:
            detail = f"Pocket TTS install failed at step: {step}."
        super().__init__(detail)


class RuntimeNotInstalled(PocketRuntimeError):
    reason = "not_installed"

    def __init__(self) -> None:
        super().__init__("Pocket TTS runtime is not installed.")


class StartupFailed(PocketRuntimeError):
    reason = "startup_failed"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Pocket TTS failed to start. {message}".strip())


class StartTimedOut(PocketRuntimeError):
    reason = "start_timed_out"

    def __init__(self) -> None:
        super().__init__("Pocket TTS server did not become healthy in time.")


class HealthCheckFailed(PocketRuntimeError):
    reason = "health_check_failed"

    def __init__(self) -> None:
        super().__init__("Pocket TTS health check failed.")


__all__ = [
    "HealthCheckFailed",
    "InstallFailed",
    "InvalidHost",
    "PocketRuntimeError",
    "RuntimeNotInstalled",
    "StartTimedOut",
    "StartupFailed",
    "ToolMissing",
]
