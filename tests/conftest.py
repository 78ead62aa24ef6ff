"""Shared fixtures and fakes for device-relay tests.

Two kinds of doubles:
- In-process fakes (FakeTransport, FakeStrategy, FakeConnector) for the
  connection orchestration logic.
- A fake `ssh` executable (shell script) for the forwarder and transport,
  so real subprocesses are spawned, signalled and reaped.
"""

import asyncio
import stat
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import pytest

from device_relay.config import RelayConfig


# ============================================================================
# Fake ssh executable
# ============================================================================


@dataclass
class FakeSsh:
    """Handle to a generated fake ssh script."""

    path: Path
    log_path: Path

    @property
    def bin(self) -> str:
        return str(self.path)

    def calls(self) -> list[list[str]]:
        """argv (without argv[0]) of every invocation so far."""
        if not self.log_path.exists():
            return []
        return [line.split(" ") for line in self.log_path.read_text().splitlines()]

    def tunnel_calls(self) -> list[list[str]]:
        return [c for c in self.calls() if "-nNT" in c]

    def cancel_calls(self) -> list[list[str]]:
        return [c for c in self.calls() if "-O" in c]


def _write_fake_ssh(
    directory: Path,
    *,
    tunnel_exit: int | None = None,
    cancel_exit: int = 0,
    cancel_sleep: float = 0,
    listing: list[str] | None = None,
    command_exit: int = 0,
) -> FakeSsh:
    """Write a POSIX sh script that behaves like the parts of ssh we use.

    - `-O cancel ...`: hangs for cancel_sleep if set, else exits cancel_exit
    - `-nNT -L ...`: exits tunnel_exit, or stays up (exec sleep) if None
    - anything else: prints listing lines, exits command_exit
    """
    log_path = directory / "ssh-calls.log"
    path = directory / "fake-ssh"
    listing_text = "\n".join(listing or [])
    tunnel_action = f"exit {tunnel_exit}" if tunnel_exit is not None else "exec sleep 60"
    cancel_action = f"exec sleep {cancel_sleep}" if cancel_sleep else f"exit {cancel_exit}"
    path.write_text(
        f"""#!/bin/sh
printf '%s\\n' "$*" >> '{log_path}'
case " $* " in
  *" -O cancel "*)
    {cancel_action}
    ;;
  *" -nNT "*)
    echo "fake tunnel starting" >&2
    {tunnel_action}
    ;;
esac
cat <<'LISTING'
{listing_text}
LISTING
exit {command_exit}
"""
    )
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return FakeSsh(path=path, log_path=log_path)


@pytest.fixture
def make_fake_ssh(tmp_path: Path) -> Callable[..., FakeSsh]:
    """Factory for fake ssh scripts in tmp_path."""

    def factory(**kwargs: Any) -> FakeSsh:
        return _write_fake_ssh(tmp_path, **kwargs)

    return factory


@pytest.fixture
def fast_config() -> RelayConfig:
    """RelayConfig with short timeouts for subprocess tests."""
    return RelayConfig(
        command_timeout_seconds=5,
        tunnel_spawn_timeout_seconds=5,
        tunnel_startup_grace_seconds=0.1,
        cancel_timeout_seconds=2,
        terminate_timeout_seconds=2,
        kill_timeout_seconds=2,
        client_connect_timeout_seconds=1,
        client_connect_attempts=3,
    )


# ============================================================================
# In-process fakes
# ============================================================================


class FakeTransport:
    """ShellTransport returning canned listing lines."""

    def __init__(
        self,
        lines: list[str] | None = None,
        *,
        address: str = "192.168.42.17",
        interface: str = "",
        config_path: str | None = None,
        error: Exception | None = None,
    ) -> None:
        self.lines = lines or []
        self._address = address
        self._interface = interface
        self._config_path = config_path
        self.error = error
        self.commands: list[str] = []

    @property
    def address(self) -> str:
        return self._address

    @property
    def interface(self) -> str:
        return self._interface

    @property
    def config_path(self) -> str | None:
        return self._config_path

    async def run(self, command: str) -> list[str]:
        self.commands.append(command)
        if self.error is not None:
            raise self.error
        return list(self.lines)


class FakeForwarder:
    """PortForwarder that records stop() into a shared event log."""

    def __init__(self, local_port: int, remote_port: int, events: list[tuple[str, int]]) -> None:
        self._local_port = local_port
        self._remote_port = remote_port
        self._events = events
        self.stop_count = 0

    @property
    def local_port(self) -> int:
        return self._local_port

    @property
    def remote_port(self) -> int:
        return self._remote_port

    async def stop(self) -> None:
        self.stop_count += 1
        await asyncio.sleep(0)
        self._events.append(("forwarder_stop", self._local_port))


@dataclass
class FakeStrategy:
    """ForwardingStrategy handing out FakeForwarders on sequential local ports."""

    events: list[tuple[str, int]] = field(default_factory=list)
    failures: dict[int, BaseException] = field(default_factory=dict)
    delay: float = 0.01
    delays: dict[int, float] = field(default_factory=dict)
    next_local_port: int = 40000
    calls: list[tuple[str, int, str, str | None]] = field(default_factory=list)
    started: list[FakeForwarder] = field(default_factory=list)
    in_flight: int = 0
    max_in_flight: int = 0

    async def forward(
        self,
        address: str,
        remote_port: int,
        interface: str = "",
        config_path: str | None = None,
    ) -> FakeForwarder:
        self.calls.append((address, remote_port, interface, config_path))
        # Allocated up front, like a bind, so local ports follow call order
        local_port = self.next_local_port
        self.next_local_port += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(remote_port, self.delay))
        finally:
            self.in_flight -= 1
        if remote_port in self.failures:
            raise self.failures[remote_port]
        forwarder = FakeForwarder(local_port, remote_port, self.events)
        self.started.append(forwarder)
        return forwarder


class FakeClient:
    """ServiceClient with canned results."""

    def __init__(
        self,
        port: int,
        events: list[tuple[str, int]],
        views: list[Any] | None = None,
        units: list[Any] | None = None,
    ) -> None:
        self.port = port
        self._events = events
        self.views = views if views is not None else []
        self.units = units if units is not None else []
        self.patterns: list[Any] = []
        self.stopped = False

    async def stop(self) -> None:
        await asyncio.sleep(0)
        self.stopped = True
        self._events.append(("client_stop", self.port))

    async def list_views(self) -> list[Any]:
        return list(self.views)

    async def list_execution_units_by_pattern(self, pattern: Any) -> list[Any]:
        self.patterns.append(pattern)
        return list(self.units)


@dataclass
class FakeConnector:
    """ClientConnector producing FakeClients keyed by the URI's port.

    views/units map local port to the canned results of that port's client.
    fail_first makes the first N connects per URI raise ConnectionRefusedError.
    """

    events: list[tuple[str, int]] = field(default_factory=list)
    views: dict[int, list[Any]] = field(default_factory=dict)
    units: dict[int, list[Any]] = field(default_factory=dict)
    delay: float = 0.0
    fail_first: int = 0
    uris: list[str] = field(default_factory=list)
    clients: list[FakeClient] = field(default_factory=list)

    async def connect(self, uri: str) -> FakeClient:
        self.uris.append(uri)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.uris.count(uri) <= self.fail_first:
            raise ConnectionRefusedError(f"connection refused: {uri}")
        port = urlsplit(uri).port
        assert port is not None
        client = FakeClient(port, self.events, self.views.get(port), self.units.get(port))
        self.clients.append(client)
        return client

    def connect_count(self, uri: str) -> int:
        return self.uris.count(uri)
