"""Test harness configuration.

This repo uses a `src/` layout; make sure tests import the in-repo code even
when an older `pocket_runtime` is installed.
"""

from __future__ import annotations

import asyncio
import os
import socket
import stat
import sys
import time
from pathlib import Path
from typing import Callable

import pytest

FIXTURES_DIR = Path(__file__).parent / "fixtures"
SERVER_FIXTURE = FIXTURES_DIR / "pocket_server_fixture.py"
FAKE_UV = FIXTURES_DIR / "fake_uv.py"


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


def write_executable(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def build_fake_venv(venv: Path, *, python_version: str | None = None) -> Path:
    """Lay out a venv whose `pocket-tts` is the fixture server."""
    site = venv / "site"
    dist_info = site / "pocket_tts-0.4.2.dist-info"
    dist_info.mkdir(parents=True, exist_ok=True)
    (dist_info / "METADATA").write_text(
        "Metadata-Version: 2.1\nName: pocket-tts\nVersion: 0.4.2\n", encoding="utf-8"
    )
    if python_version is None:
        python = f'#!/bin/sh\nPYTHONPATH="{site}" exec "{sys.executable}" "$@"\n'
    else:
        python = f"#!/bin/sh\necho {python_version}\n"
    write_executable(venv / "bin" / "python", python)
    write_executable(
        venv / "bin" / "pocket-tts",
        f'#!/bin/sh\nexec "{sys.executable}" "{SERVER_FIXTURE}" "$@"\n',
    )
    return venv


def pick_free_port() -> int:
    while True:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        if port <= 65000:
            return port


async def wait_until(predicate: Callable[[], bool], timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.05)
    return predicate()


@pytest.fixture(autouse=True)
def isolated_runtime_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep POCKET_RUNTIME_* settings from the developer shell out of tests."""
    for key in list(os.environ):
        if key.startswith("POCKET_RUNTIME_") or key.startswith("POCKET_FIXTURE_"):
            monkeypatch.delenv(key, raising=False)
    home = tmp_path / "runtime-home"
    monkeypatch.setenv("POCKET_RUNTIME_HOME", str(home))
    return home


@pytest.fixture()
def free_port() -> int:
    return pick_free_port()


@pytest.fixture()
def fixture_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    state = tmp_path / "fixture-state"
    monkeypatch.setenv("POCKET_FIXTURE_STATE", str(state))
    return state


@pytest.fixture()
def runtime_venv(tmp_path: Path, fixture_state: Path) -> Path:
    return build_fake_venv(tmp_path / "runtime" / ".venv")


@pytest.fixture()
def fake_uv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Put a fake `uv` first on PATH; returns the file that records its invocations."""
    tools = tmp_path / "tools"
    write_executable(tools / "uv", f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_UV}" "$@"\n')
    monkeypatch.setenv("PATH", f"{tools}{os.pathsep}{os.environ.get('PATH', '')}")
    calls = tmp_path / "uv-calls.jsonl"
    monkeypatch.setenv("FAKE_UV_LOG", str(calls))
    return calls


def launches(state: Path) -> int:
    counter = state / "launches"
    if not counter.exists():
        return 0
    return int(counter.read_text(encoding="utf-8") or "0")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
