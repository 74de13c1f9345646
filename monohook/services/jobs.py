"""
Job model and builder.

A ``Job`` describes one command invocation derived from one accepted trigger
request. Jobs are frozen once built; the only resource they own is the
optional read end of the request body pipe.
"""
from __future__ import annotations

import asyncio
import itertools
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import AsyncIterable, BinaryIO, Iterable, Mapping, Optional, Tuple

from monohook.settings import ENV_PREFIX, HookConfig


REQUEST_HEADER_ENV_PREFIX = ENV_PREFIX + "REQUEST_HEADER_"
REQUEST_URL_ENV = ENV_PREFIX + "REQUEST_URL"


def header_env_name(header_name: str) -> str:
    """``Content-Type`` -> ``MONOHOOK_REQUEST_HEADER_CONTENT_TYPE``."""
    return REQUEST_HEADER_ENV_PREFIX + header_name.replace("-", "_").upper()


@dataclass(frozen=True)
class Job:
    job_id: int
    command: str
    args: Tuple[str, ...] = ()
    cwd: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    input_stream: Optional[BinaryIO] = None

    def close(self) -> None:
        """Release the body pipe's read end, if any. Safe to call twice."""
        if self.input_stream is not None and not self.input_stream.closed:
            self.input_stream.close()


class _PipeProtocol(asyncio.Protocol):
    """Flow control for a write pipe transport."""

    def __init__(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._paused = False
        self._drain_waiter: Optional[asyncio.Future] = None
        self.closed = self._loop.create_future()

    def pause_writing(self) -> None:
        self._paused = True

    def resume_writing(self) -> None:
        self._paused = False
        self._wake()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if not self.closed.done():
            self.closed.set_result(None)
        self._wake()

    def _wake(self) -> None:
        if self._drain_waiter is not None and not self._drain_waiter.done():
            self._drain_waiter.set_result(None)

    async def drain(self) -> None:
        while self._paused and not self.closed.done():
            self._drain_waiter = self._loop.create_future()
            try:
                await self._drain_waiter
            finally:
                self._drain_waiter = None


class BodyPipe:
    """Write end of the pipe feeding a request body to a job's stdin."""

    def __init__(self, writer: BinaryIO) -> None:
        self._writer = writer

    @property
    def closed(self) -> bool:
        return self._writer.closed

    async def forward(self, chunks: AsyncIterable[bytes]) -> int:
        """
        Copy ``chunks`` into the pipe through the event loop, then close it.
        Waits only while the reader is behind; no thread is held meanwhile.
        Raises BrokenPipeError when the reader goes away first.
        """
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.connect_write_pipe(_PipeProtocol, self._writer)
        copied = 0
        try:
            async for chunk in chunks:
                if not chunk:
                    continue
                transport.write(chunk)
                await protocol.drain()
                if transport.is_closing():
                    raise BrokenPipeError("body pipe reader closed")
                copied += len(chunk)
        finally:
            # Flushes what is still buffered before the pipe is closed.
            transport.close()
            await protocol.closed
        return copied

    def close(self) -> None:
        """Close the write end without sending anything."""
        if not self._writer.closed:
            self._writer.close()


def open_body_pipe() -> Tuple[BinaryIO, BodyPipe]:
    read_fd, write_fd = os.pipe()
    reader = os.fdopen(read_fd, "rb", buffering=0)
    writer = os.fdopen(write_fd, "wb", buffering=0)
    return reader, BodyPipe(writer)


class JobBuilder:
    """Turns an authorized request into a Job using the static configuration."""

    def __init__(self, config: HookConfig) -> None:
        self._config = config
        self._sequence = itertools.count(1)

    def build_env(
        self,
        headers: Iterable[Tuple[str, str]],
        url: str,
    ) -> Mapping[str, str]:
        """
        Inherited process environment plus the request-derived entries the
        configuration enables. ``headers`` are ``(name, value)`` pairs; values
        of repeated headers are joined with ``,``. When two entries resolve to
        the same variable the later one wins.
        """
        env = dict(os.environ)

        if self._config.forward_request_headers:
            grouped = {}
            for name, value in headers:
                grouped.setdefault(name, []).append(value)
            for name, values in grouped.items():
                env[header_env_name(name)] = ",".join(values)

        if self._config.forward_request_url:
            env[REQUEST_URL_ENV] = url

        return MappingProxyType(env)

    def build(
        self,
        headers: Iterable[Tuple[str, str]],
        url: str,
    ) -> Tuple[Job, Optional[BodyPipe]]:
        """Build a Job; the BodyPipe is returned when body forwarding is on."""
        reader: Optional[BinaryIO] = None
        pipe: Optional[BodyPipe] = None
        if self._config.forward_request_body:
            reader, pipe = open_body_pipe()

        job = Job(
            job_id=next(self._sequence),
            command=self._config.command,
            args=tuple(self._config.args),
            cwd=self._config.cwd,
            env=self.build_env(headers, url),
            input_stream=reader,
        )
        return job, pipe
