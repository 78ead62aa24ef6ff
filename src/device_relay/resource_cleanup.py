"""Teardown helpers for tunnel resources.

Everything here logs and reports failure through its return value; none
of it raises, so one stuck tunnel cannot abort teardown of the others.
"""

import asyncio
import signal
import socket

from device_relay import constants
from device_relay._logging import get_logger
from device_relay.process import ManagedProcess

logger = get_logger(__name__)


async def cleanup_process(
    proc: ManagedProcess | None,
    name: str,
    context_id: str,
    term_timeout: float = constants.TERMINATE_TIMEOUT_SECONDS,
    kill_timeout: float = constants.KILL_TIMEOUT_SECONDS,
) -> bool:
    """Stop a subprocess, escalating from SIGTERM to SIGKILL.

    Args:
        proc: Process to stop (None is a no-op)
        name: Process label for logging (e.g. "ssh tunnel")
        context_id: Correlation id for logging (e.g. the -L spec)
        term_timeout: Seconds to wait for exit after SIGTERM
        kill_timeout: Seconds to wait for exit after SIGKILL

    Returns:
        True once the process is gone, False if it outlived SIGKILL or cleanup failed
    """
    if proc is None:
        return True
    if proc.returncode is not None:
        logger.debug(f"{name} had already exited", extra={"context_id": context_id, "returncode": proc.returncode})
        return True

    try:
        for sig, timeout in ((signal.SIGTERM, term_timeout), (signal.SIGKILL, kill_timeout)):
            logger.debug(f"Sending {sig.name} to {name}", extra={"context_id": context_id, "pid": proc.pid})
            await proc.send_signal(sig)
            try:
                code = await proc.wait(timeout)
            except TimeoutError:
                logger.warning(
                    f"{name} still running {timeout}s after {sig.name}",
                    extra={"context_id": context_id, "pid": proc.pid},
                )
                continue
            logger.debug(f"{name} exited after {sig.name}", extra={"context_id": context_id, "returncode": code})
            return True
    except ProcessLookupError:
        logger.debug(f"{name} vanished before it could be signalled", extra={"context_id": context_id})
        return True
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(
            f"{name} cleanup error",
            extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False

    logger.error(f"{name} survived SIGKILL", extra={"context_id": context_id, "pid": proc.pid})
    return False


def close_socket(sock: socket.socket | None, context_id: str) -> bool:
    """Release a reserved local port.

    Returns:
        True on success (or sock is None), False if close() failed
    """
    if sock is None:
        return True
    try:
        sock.close()
    except OSError as e:
        logger.error(
            "Failed to release local port",
            extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
        )
        return False
    return True
