"""Long-lived child processes that stay safe to signal.

An ssh tunnel can run for hours. By the time stop() signals it, its PID
may in theory belong to an unrelated process; psutil.Process pins the
creation time and refuses to act on a recycled PID.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import TYPE_CHECKING, Self

import psutil

if TYPE_CHECKING:
    from collections.abc import Sequence


class ManagedProcess:
    """An asyncio subprocess and the psutil handle used to signal it.

    Attributes:
        argv: Command line the process was started with
    """

    def __init__(self, proc: asyncio.subprocess.Process, argv: Sequence[str]) -> None:
        self._proc = proc
        self.argv: tuple[str, ...] = tuple(argv)
        self._handle: psutil.Process | None = None
        # Gone or unreadable already: fall back to asyncio's own signalling
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            self._handle = psutil.Process(proc.pid)

    @classmethod
    async def spawn(cls, argv: Sequence[str], *, timeout: float) -> Self:
        """Start argv in its own session with only stderr piped.

        Raises:
            OSError: executable missing or not runnable
            TimeoutError: spawn did not complete within timeout
        """
        proc = await asyncio.wait_for(
            asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,  # Ctrl-C in the host terminal must not reach ssh directly
            ),
            timeout=timeout,
        )
        return cls(proc, argv)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        """Exit code, or None while running."""
        return self._proc.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self._proc.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self._proc.stderr

    def describe(self) -> str:
        return " ".join(self.argv)

    async def alive(self) -> bool:
        if self._proc.returncode is not None:
            return False
        if self._handle is None:
            return True
        try:
            # /proc reads can stall; keep them off the event loop
            return await asyncio.to_thread(self._handle.is_running)
        except psutil.Error:
            return False

    async def send_signal(self, sig: signal.Signals) -> None:
        """Deliver sig unless the process already exited or its PID was recycled.

        Raises:
            ProcessLookupError: process vanished between the check and the signal
        """
        if self._handle is None:
            if self._proc.returncode is None:
                self._proc.send_signal(sig)
            return
        if not await self.alive():
            return
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            await asyncio.to_thread(self._handle.send_signal, sig)

    async def wait(self, timeout: float | None = None) -> int:
        """Exit code, waiting at most timeout seconds if given.

        Raises:
            TimeoutError: still running after timeout
        """
        if timeout is None:
            return await self._proc.wait()
        return await asyncio.wait_for(self._proc.wait(), timeout=timeout)
