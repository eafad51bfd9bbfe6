from __future__ import annotations

import asyncio
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def last_line(self) -> Optional[str]:
        lines = [line.strip() for line in self.output.strip().splitlines() if line.strip()]
        return lines[-1] if lines else None


async def run_command(
    executable: str,
    args: Sequence[str],
    *,
    env: Optional[Mapping[str, str]] = None,
) -> CommandResult:
    """
    Run a command to completion with no stdin and stdout/stderr merged.
    Raises OSError when the executable cannot be launched.
    """
    process = await asyncio.create_subprocess_exec(
        executable,
        *[str(arg) for arg in args],
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        env=dict(env) if env is not None else dict(os.environ),
    )
    stdout, _ = await process.communicate()
    output = stdout.decode("utf-8", errors="replace") if stdout else ""
    return CommandResult(
        exit_code=process.returncode if process.returncode is not None else -1,
        output=output,
    )


def uv_fallback_paths() -> list[Path]:
    """Install locations checked after PATH; launchd-style environments often omit them."""
    home = Path.home()
    return [
        home / ".local" / "bin" / "uv",
        home / ".cargo" / "bin" / "uv",
        Path("/opt/homebrew/bin/uv"),
        Path("/usr/local/bin/uv"),
    ]


def resolve_uv_binary(
    explicit: Optional[str] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    fallbacks: Optional[Sequence[Path]] = None,
) -> Optional[str]:
    if explicit:
        candidate = Path(explicit).expanduser()
        if candidate.is_file() and os.access(str(candidate), os.X_OK):
            return str(candidate)
        return None
    path = env.get("PATH") if env is not None else os.environ.get("PATH")
    resolved = shutil.which("uv", path=path)
    if resolved:
        return resolved
    for candidate in fallbacks if fallbacks is not None else uv_fallback_paths():
        if candidate.is_file() and os.access(str(candidate), os.X_OK):
            return str(candidate)
    return None
