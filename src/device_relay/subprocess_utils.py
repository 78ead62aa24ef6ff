"""Subprocess helpers shared by the transport and the tunnel forwarder.

- run_command: one-shot command with a bounded round trip (discovery, cancel)
- drain_subprocess_output: background stdout/stderr reader for long-lived tunnels
- log_task_exception: done-callback so detached tasks never fail silently
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

from device_relay._logging import get_logger
from device_relay.exceptions import CommandTimeoutError

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from device_relay.process import ManagedProcess

logger = get_logger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Completed one-shot command."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(argv: Sequence[str], *, timeout: float) -> CommandResult:
    """Run argv to completion and capture its output.

    The process is killed and reaped if it outlives timeout, so an
    unresponsive remote shell cannot hold the caller.

    Raises:
        CommandTimeoutError: command did not finish within timeout
        OSError: executable could not be spawned
    """
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        raise CommandTimeoutError(
            f"Command timed out after {timeout}s: {' '.join(argv)}",
            context={"argv": list(argv), "timeout": timeout},
        ) from None
    except asyncio.CancelledError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await asyncio.shield(proc.wait())
        raise

    return CommandResult(
        argv=tuple(argv),
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


async def drain_subprocess_output(
    process: ManagedProcess,
    *,
    process_name: str,
    context_id: str,
    on_line: Callable[[str, str], None] | None = None,
) -> None:
    """Consume every piped stream of process until EOF.

    An ssh tunnel writes warnings to a pipe for hours; unread, the pipe
    fills and ssh blocks. Each non-empty line is logged at debug and, if
    given, passed to on_line(stream_name, line).
    """

    async def pump(stream_name: str, stream: asyncio.StreamReader) -> None:
        async for raw in stream:
            line = raw.decode(errors="replace").rstrip()
            if not line:
                continue
            logger.debug(f"[{process_name} {stream_name}] {line}", extra={"context_id": context_id})
            if on_line is not None:
                on_line(stream_name, line)

    streams = {"stdout": process.stdout, "stderr": process.stderr}
    async with asyncio.TaskGroup() as tg:
        for stream_name, stream in streams.items():
            if stream is not None:
                tg.create_task(pump(stream_name, stream))


def log_task_exception(task: asyncio.Task[object]) -> None:
    """Done-callback that logs an exception left in a background task.

    Usage:
        task = asyncio.create_task(watch())
        task.add_done_callback(log_task_exception)
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )
