from __future__ import annotations

import asyncio
import collections
import logging
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, Optional

from .logging_utils import log_event

DEFAULT_LOG_CAPACITY = 200
_READ_CHUNK_SIZE = 64 * 1024
_QUEUE_SIZE = 256

LinesHandler = Callable[[list[str]], None]


class LogRingBuffer:
    """Most recent log lines, oldest evicted first."""

    def __init__(self, capacity: int = DEFAULT_LOG_CAPACITY) -> None:
        self._lines: collections.deque[str] = collections.deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._lines.maxlen or 0

    def append(self, line: str) -> None:
        trimmed = line.strip()
        if trimmed:
            self._lines.append(trimmed)

    def extend(self, lines: Iterable[str]) -> None:
        for line in lines:
            self.append(line)

    def snapshot(self) -> tuple[str, ...]:
        return tuple(self._lines)

    def __len__(self) -> int:
        return len(self._lines)


def split_output_lines(chunk: bytes) -> list[str]:
    text = chunk.decode("utf-8", errors="replace")
    return [line.strip() for line in text.splitlines() if line.strip()]


class ServerOutputPump:
    """
    Capture a child's stdout/stderr.

    One reader task per stream feeds a bounded queue; a single writer task
    appends each chunk verbatim to the log file and then hands its lines to
    ``on_lines``, so both streams are serialized before touching shared state.
    """

    def __init__(
        self,
        log_file: Path,
        on_lines: LinesHandler,
        *,
        logger: Optional[logging.Logger] = None,
        queue_size: int = _QUEUE_SIZE,
    ) -> None:
        self._log_file = log_file
        self._on_lines = on_lines
        self._logger = logger or logging.getLogger(__name__)
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue(maxsize=queue_size)
        self._handle: Optional[BinaryIO] = None
        self._readers: list[asyncio.Task[None]] = []
        self._closer: Optional[asyncio.Task[None]] = None
        self._writer: Optional[asyncio.Task[None]] = None

    def open(self) -> None:
        """Open the log file for append; raises OSError when it cannot be created."""
        if self._handle is None:
            self._log_file.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self._log_file.open("ab")

    def attach(
        self,
        stdout: Optional[asyncio.StreamReader],
        stderr: Optional[asyncio.StreamReader],
    ) -> None:
        self.open()
        for stream in (stdout, stderr):
            if stream is not None:
                self._readers.append(asyncio.create_task(self._read_stream(stream)))
        self._closer = asyncio.create_task(
            self._close_queue_when_done(list(self._readers))
        )
        self._writer = asyncio.create_task(self._write_loop())

    async def drain(self, timeout: float = 1.0) -> None:
        """Wait for the streams to hit EOF and the writer to flush, then release the file."""
        writer = self._writer
        if writer is not None and not writer.done():
            try:
                await asyncio.wait_for(asyncio.shield(writer), timeout)
            except asyncio.TimeoutError:
                pass
        await self.detach()

    async def detach(self) -> None:
        """Stop reading immediately and release the log file."""
        tasks = [task for task in (*self._readers, self._closer, self._writer) if task]
        self._readers = []
        self._closer = None
        self._writer = None
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "pocket_runtime.output.task_failed",
                    exc=exc,
                )
        self._close_file()

    async def _read_stream(self, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.read(_READ_CHUNK_SIZE)
            if not chunk:
                break
            await self._queue.put(chunk)

    async def _close_queue_when_done(self, readers: list[asyncio.Task[None]]) -> None:
        await asyncio.gather(*readers, return_exceptions=True)
        await self._queue.put(None)

    async def _write_loop(self) -> None:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                break
            if self._handle is not None:
                try:
                    self._handle.write(chunk)
                    self._handle.flush()
                except OSError as exc:
                    log_event(
                        self._logger,
                        logging.WARNING,
                        "pocket_runtime.output.write_failed",
                        path=self._log_file,
                        exc=exc,
                    )
            lines = split_output_lines(chunk)
            if lines:
                self._on_lines(lines)

    def _close_file(self) -> None:
        handle = self._handle
        self._handle = None
        if handle is not None:
            try:
                handle.close()
            except OSError as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "pocket_runtime.output.close_failed",
                    path=self._log_file,
                    exc=exc,
                )
