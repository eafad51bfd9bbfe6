import asyncio
import importlib.metadata
import json
import logging
import signal
from pathlib import Path
from typing import NoReturn, Optional

import typer

from .config import ConfigError, RuntimeConfig, load_config
from .errors import PocketRuntimeError
from .health import HealthVerifier, base_url
from .logging_utils import log_event, setup_rotating_logger
from .models import RuntimeSnapshot
from .paths import RuntimePaths, is_executable_file
from .supervisor import PocketRuntimeSupervisor

logger = logging.getLogger("pocket_runtime.cli")

app = typer.Typer(add_completion=False, help="Manage a local Pocket TTS runtime.")


def _runtime_version() -> str:
    try:
        return importlib.metadata.version("pocket-runtime")
    except Exception:
        return "unknown"


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"pocket-runtime {_runtime_version()}")
    raise typer.Exit(code=0)


@app.callback()
def _root(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    return


def main() -> None:
    """Entrypoint for CLI execution."""
    app()


def _raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def _load_runtime_config(config_path: Optional[Path]) -> RuntimeConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        _raise_exit(str(exc), cause=exc)


def _build_supervisor(config: RuntimeConfig) -> PocketRuntimeSupervisor:
    runtime_logger = setup_rotating_logger("pocket_runtime", config.log)
    return PocketRuntimeSupervisor.from_config(config, logger=runtime_logger)


@app.command()
def install(
    venv: Optional[Path] = typer.Option(None, "--venv", help="Managed venv path"),
    force: bool = typer.Option(False, "--force", help="Reinstall even if present"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file"),
) -> None:
    """Create the managed environment and install pocket-tts into it."""
    config = _load_runtime_config(config_path)
    if venv is not None:
        config.venv_path = venv.expanduser()
    supervisor = _build_supervisor(config)

    async def _run() -> None:
        if force:
            await supervisor.reinstall(config.venv_path)
        else:
            await supervisor.install_if_needed(config.venv_path)

    try:
        asyncio.run(_run())
    except PocketRuntimeError as exc:
        _raise_exit(str(exc), cause=exc)
    typer.echo(
        f"Pocket TTS runtime installed at {config.venv_path} "
        f"(pocket-tts {supervisor.installed_version})"
    )


@app.command()
def serve(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file"),
    host: Optional[str] = typer.Option(None, "--host", help="Loopback host to bind"),
    port: Optional[int] = typer.Option(None, "--port", help="Preferred port"),
    voice: Optional[str] = typer.Option(None, "--voice", help="Voice name or URL"),
    venv: Optional[Path] = typer.Option(None, "--venv", help="Managed venv path"),
    no_auto_restart: bool = typer.Option(
        False, "--no-auto-restart", help="Do not restart the server after a crash"
    ),
) -> None:
    """Install if needed, start the server and supervise it until interrupted."""
    config = _load_runtime_config(config_path)
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if voice is not None:
        config.voice = voice
    if venv is not None:
        config.venv_path = venv.expanduser()
    if no_auto_restart:
        config.auto_restart = False
    supervisor = _build_supervisor(config)

    def _echo_status(snapshot: RuntimeSnapshot) -> None:
        line = f"status: {snapshot.status.display_name}"
        if snapshot.last_error:
            line += f" ({snapshot.last_error})"
        typer.echo(line)

    async def _run() -> None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except (NotImplementedError, RuntimeError):
                pass
        supervisor.add_listener(_echo_status)
        try:
            chosen = await supervisor.ensure_started(config)
            typer.echo(f"Pocket TTS ready at {base_url(config.host, chosen)}")
            await stop_event.wait()
        finally:
            await supervisor.close()
            log_event(
                logger,
                logging.INFO,
                "pocket_runtime.cli.serve.exited",
                status=supervisor.status.value,
            )

    try:
        asyncio.run(_run())
    except PocketRuntimeError as exc:
        _raise_exit(str(exc), cause=exc)


@app.command()
def health(
    url: Optional[str] = typer.Option(None, "--url", help="Service base URL"),
    host: str = typer.Option("127.0.0.1", "--host", help="Service host"),
    port: int = typer.Option(8000, "--port", help="Service port"),
    timeout: float = typer.Option(2.0, "--timeout", help="Probe timeout in seconds"),
    output_json: bool = typer.Option(False, "--json", help="Emit JSON output"),
) -> None:
    """Probe a running service once; exits non-zero when it is not Pocket TTS."""
    target = url or base_url(host, port)
    result = asyncio.run(HealthVerifier(timeout=timeout).check(target))
    if output_json:
        typer.echo(json.dumps({"url": target, **result.to_dict()}, indent=2))
    elif result.is_healthy:
        typer.echo(f"{target}: healthy")
    else:
        typer.echo(f"{target}: unhealthy ({result.message or 'no details'})")
    if not result.is_healthy:
        raise typer.Exit(code=1)


@app.command()
def paths(
    venv: Optional[Path] = typer.Option(None, "--venv", help="Managed venv path"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file"),
    output_json: bool = typer.Option(False, "--json", help="Emit JSON output"),
) -> None:
    """Show the managed runtime layout and whether it is installed."""
    if venv is None:
        venv = _load_runtime_config(config_path).venv_path
    layout = RuntimePaths.from_venv_path(venv)
    installed = is_executable_file(layout.service_binary) and is_executable_file(
        layout.python_binary
    )
    if output_json:
        typer.echo(json.dumps({**layout.as_dict(), "installed": installed}, indent=2))
        return
    for key, value in layout.as_dict().items():
        typer.echo(f"{key}: {value}")
    typer.echo(f"installed: {'yes' if installed else 'no'}")


if __name__ == "__main__":
    app()
