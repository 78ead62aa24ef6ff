"""Logging setup for device-relay.

As a library, device-relay only attaches a NullHandler; applications
decide where records go. ``configure_logging()`` installs the CLI's
stderr output:

    WARNING  2026-02-25 10:02:54 device_relay.forwarder [40123:127.0.0.1:31782] Cancel command failed

The bracketed part is the record's ``context_id`` (the tunnel's -L spec)
when one is attached, so interleaved output from concurrent tunnels
stays attributable.

Records pass through a bounded queue to a QueueListener thread that
writes through click, keeping a slow terminal from stalling the event
loop that supervises the tunnels. Records are dropped when the queue is
full and flushed at interpreter exit.
"""

import atexit
import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "device_relay"

_library_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
_library_logger.addHandler(logging.NullHandler())

# DEVICE_RELAY_LOG_LEVEL=DEBUG etc.
_env_level = logging.getLevelNamesMapping().get(os.environ.get("DEVICE_RELAY_LOG_LEVEL", "").strip().upper())
if _env_level:
    _library_logger.setLevel(_env_level)

_QUEUE_CAPACITY = 1024

_LEVEL_COLOURS: dict[int, str] = {
    logging.WARNING: "yellow",
    logging.ERROR: "red",
    logging.CRITICAL: "red",
}


class _TunnelFormatter(logging.Formatter):
    """Adds `[context_id]` after the logger name when the record carries one."""

    def __init__(self) -> None:
        super().__init__(fmt="%(levelname)-8s %(asctime)s %(name)s %(context)s%(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        context_id = getattr(record, "context_id", None)
        record.context = f"[{context_id}] " if context_id else ""
        return super().format(record)


class _EchoHandler(logging.Handler):
    """Writes to stderr through click, colouring by level (plain when not a TTY)."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            click.secho(line, err=True, fg=_LEVEL_COLOURS.get(record.levelno), dim=record.levelno <= logging.DEBUG)
        except BlockingIOError:
            pass  # non-blocking stderr is full
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _DroppingQueue(queue.Queue[logging.LogRecord | None]):
    """Bounded queue whose put_nowait discards records instead of raising."""

    def put_nowait(self, item: logging.LogRecord | None) -> None:
        if item is None:
            # QueueListener stop sentinel; dropping it would hang stop()
            self.put(item)
            return
        with contextlib.suppress(queue.Full):
            super().put_nowait(item)


def get_logger(name: str) -> logging.Logger:
    """Logger for a device_relay module."""
    return logging.getLogger(name)


def _install_stderr_handler() -> logging.handlers.QueueHandler:
    records = _DroppingQueue(maxsize=_QUEUE_CAPACITY)
    echo = _EchoHandler()
    echo.setFormatter(_TunnelFormatter())
    listener = logging.handlers.QueueListener(records, echo)
    listener.start()
    atexit.register(listener.stop)

    handler = logging.handlers.QueueHandler(records)
    _library_logger.addHandler(handler)
    return handler


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Send device_relay records to stderr (once per process) and set the level.

    Args:
        level: Level name or number; overrides DEVICE_RELAY_LOG_LEVEL.
        quiet: Only errors. Wins over level.
    """
    if not any(isinstance(h, logging.handlers.QueueHandler) for h in _library_logger.handlers):
        _install_stderr_handler()

    if quiet:
        _library_logger.setLevel(logging.ERROR)
    elif level is not None:
        _library_logger.setLevel(level)
