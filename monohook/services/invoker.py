"""
Command invoker: runs one job's command to completion and reports the outcome.
"""
from __future__ import annotations

import asyncio
import logging
from typing import IO, Optional, Union

from monohook.services.jobs import Job

logger = logging.getLogger(__name__)

# Anything asyncio.create_subprocess_exec accepts for stdout: None inherits the
# host's standard output, or a file object / descriptor.
OutputTarget = Optional[Union[int, IO]]


class CommandInvoker:
    """Spawns the job's command; outcome is logged, never raised."""

    def __init__(self, stdout: OutputTarget = None) -> None:
        self._stdout = stdout

    async def run(self, job: Job) -> bool:
        logger.info("Executing %s", job.command)
        try:
            returncode = await self._spawn_and_wait(job)
        except (OSError, ValueError) as exc:
            logger.error("Command %s error: %s", job.command, exc)
            return False
        finally:
            job.close()

        if returncode != 0:
            logger.error("Command %s error: exit status %d", job.command, returncode)
            return False

        logger.info("Successfully executed %s", job.command)
        return True

    async def _spawn_and_wait(self, job: Job) -> int:
        stdin = job.input_stream if job.input_stream is not None else asyncio.subprocess.DEVNULL
        process = await asyncio.create_subprocess_exec(
            job.command,
            *job.args,
            cwd=job.cwd,
            env=dict(job.env),
            stdin=stdin,
            stdout=self._stdout,
            stderr=asyncio.subprocess.STDOUT,
        )
        return await process.wait()
