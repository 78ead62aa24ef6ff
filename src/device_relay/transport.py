"""Remote shell transport.

Every interaction with the device that is not a tunnel goes through a
ShellTransport: one command in, stdout lines out. SshCommandRunner is the
production implementation; tests substitute any object with the same shape.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from device_relay import constants
from device_relay._logging import get_logger
from device_relay.exceptions import TransportError
from device_relay.net_utils import is_ipv6_address, ssh_target, validate_address
from device_relay.subprocess_utils import run_command

logger = get_logger(__name__)


@runtime_checkable
class ShellTransport(Protocol):
    """Command execution on the remote device."""

    @property
    def address(self) -> str: ...

    @property
    def interface(self) -> str: ...

    @property
    def config_path(self) -> str | None: ...

    async def run(self, command: str) -> list[str]:
        """Run command on the device and return its stdout, one entry per line."""
        ...


class SshCommandRunner:
    """Runs commands on a device over a fresh ssh invocation each time.

    Attributes:
        address: Device IPv4/IPv6 literal
        interface: Outgoing host interface for IPv6 link-local addresses
        config_path: ssh_config passed with -F, if any
    """

    def __init__(
        self,
        address: str,
        interface: str = "",
        config_path: str | None = None,
        *,
        ssh_bin: str = constants.DEFAULT_SSH_BIN,
        timeout: float = constants.COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self._address = validate_address(address)
        self._interface = interface
        self._config_path = config_path
        self._ssh_bin = ssh_bin
        self._timeout = timeout

    @property
    def address(self) -> str:
        return self._address

    @property
    def interface(self) -> str:
        return self._interface

    @property
    def config_path(self) -> str | None:
        return self._config_path

    def build_command(self, command: str) -> list[str]:
        """argv for running command on the device."""
        argv = [self._ssh_bin]
        if is_ipv6_address(self._address):
            argv.append(constants.SSH_IPV6_FLAG)
        if self._config_path is not None:
            argv.extend(["-F", self._config_path])
        argv.extend([ssh_target(self._address, self._interface), command])
        return argv

    async def run(self, command: str) -> list[str]:
        """Run command on the device.

        Raises:
            TransportError: ssh could not be spawned or exited non-zero
            CommandTimeoutError: no result within the configured timeout
        """
        argv = self.build_command(command)
        logger.debug("Running remote command", extra={"argv": argv})
        try:
            result = await run_command(argv, timeout=self._timeout)
        except OSError as e:
            raise TransportError(
                f"Failed to spawn {self._ssh_bin}: {e}",
                context={"argv": argv},
            ) from e

        if not result.ok:
            raise TransportError(
                f"Remote command failed with exit code {result.returncode}: {command}",
                context={"argv": argv, "address": self._address},
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result.stdout.splitlines()
