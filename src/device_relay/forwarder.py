"""Local-to-device port forwarding.

A PortForwarder owns one tunnel from an ephemeral port on the host
loopback to a service port on the device. SshPortForwarder implements it
with a long-lived `ssh -nNT -L` subprocess; other mechanisms plug in by
providing a ForwardingStrategy to RemoteConnection.

Lifecycle of an SshPortForwarder:
    bind      reserve a free port on 127.0.0.1
    launch    spawn `ssh [-6] [-F cfg] -nNT -L port:127.0.0.1:remote target`
    monitor   detached task logs the exit code whenever ssh exits
    terminate SIGTERM (then SIGKILL) the ssh process
    cancel    `ssh [-F cfg] -O cancel -L <same spec> target`, failure logged only
    release   close the reserved socket

Target-side loopback:
    The forward spec always names the IPv4 loopback as the destination on
    the device. Locally, ssh may end up listening only on ::1 for IPv6
    sessions, which is why RemoteConnection picks the client loopback from
    the endpoint's address family rather than from this spec.
"""

from __future__ import annotations

import asyncio
import collections
import socket
from typing import Protocol, Self, runtime_checkable

from device_relay import constants
from device_relay._logging import get_logger
from device_relay.config import RelayConfig
from device_relay.exceptions import CancelCommandError, CommandTimeoutError, PortBindError, TunnelLaunchError
from device_relay.net_utils import is_ipv6_address, ssh_target
from device_relay.process import ManagedProcess
from device_relay.resource_cleanup import cleanup_process, close_socket
from device_relay.settings import Settings
from device_relay.subprocess_utils import drain_subprocess_output, log_task_exception, run_command

logger = get_logger(__name__)


@runtime_checkable
class PortForwarder(Protocol):
    """One forwarded port. stop() must be safe to call more than once."""

    @property
    def local_port(self) -> int: ...

    @property
    def remote_port(self) -> int: ...

    async def stop(self) -> None: ...


class ForwardingStrategy(Protocol):
    """Creates PortForwarders for a RemoteConnection.

    Implementations raise ForwardError (PortBindError, TunnelLaunchError)
    for per-port failures; the connection records them and keeps going.
    """

    async def forward(
        self,
        address: str,
        remote_port: int,
        interface: str = "",
        config_path: str | None = None,
    ) -> PortForwarder: ...


def forward_spec(local_port: int, remote_port: int) -> str:
    """-L argument: host loopback port to the device's IPv4 loopback."""
    return f"{local_port}:{constants.IPV4_LOOPBACK}:{remote_port}"


def build_forward_command(
    ssh_bin: str,
    address: str,
    local_port: int,
    remote_port: int,
    interface: str = "",
    config_path: str | None = None,
) -> list[str]:
    """argv for a forwarding-only ssh session."""
    argv = [ssh_bin]
    if is_ipv6_address(address):
        argv.append(constants.SSH_IPV6_FLAG)
    if config_path is not None:
        argv.extend(["-F", config_path])
    argv.extend(
        [
            constants.SSH_FORWARD_ONLY_FLAGS,
            "-L",
            forward_spec(local_port, remote_port),
            ssh_target(address, interface),
        ]
    )
    return argv


def build_cancel_command(
    ssh_bin: str,
    address: str,
    local_port: int,
    remote_port: int,
    interface: str = "",
    config_path: str | None = None,
) -> list[str]:
    """argv asking the ssh control master to drop the forward built by build_forward_command."""
    argv = [ssh_bin]
    if config_path is not None:
        argv.extend(["-F", config_path])
    argv.extend(
        [
            "-O",
            "cancel",
            "-L",
            forward_spec(local_port, remote_port),
            ssh_target(address, interface),
        ]
    )
    return argv


def reserve_local_port(remote_port: int) -> socket.socket:
    """Bind an ephemeral port on the IPv4 loopback and keep it bound.

    The socket is bound but never listens. While it stays bound the kernel
    will not hand the same port to a concurrent bind-to-0, and with
    SO_REUSEADDR set ssh can still take the port for its own listener.

    Raises:
        PortBindError: bind failed or the kernel returned port 0
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((constants.IPV4_LOOPBACK, 0))
        port = sock.getsockname()[1]
    except OSError as e:
        sock.close()
        raise PortBindError(
            f"Failed to reserve a local port for remote port {remote_port}: {e}",
            remote_port,
            context={"error": str(e)},
        ) from e
    if port == 0:
        sock.close()
        raise PortBindError(f"Kernel returned port 0 for remote port {remote_port}", remote_port)
    return sock


class SshPortForwarder:
    """A running `ssh -L` tunnel from the host to a device service port.

    Create with SshPortForwarder.start(); tear down with stop().
    """

    def __init__(
        self,
        *,
        address: str,
        remote_port: int,
        local_socket: socket.socket,
        process: ManagedProcess,
        interface: str,
        config_path: str | None,
        ssh_bin: str,
        config: RelayConfig,
    ) -> None:
        self._address = address
        self._remote_port = remote_port
        self._local_socket = local_socket
        self._local_port: int = local_socket.getsockname()[1]
        self._process = process
        self._interface = interface
        self._config_path = config_path
        self._ssh_bin = ssh_bin
        self._config = config
        self._stopped = False
        self._stop_lock = asyncio.Lock()
        self._drain_task: asyncio.Task[None] | None = None
        self._exit_task: asyncio.Task[None] | None = None
        self._stderr_tail: collections.deque[str] = collections.deque(maxlen=constants.SSH_STDERR_TAIL_LINES)

    @property
    def local_port(self) -> int:
        return self._local_port

    @property
    def remote_port(self) -> int:
        return self._remote_port

    @property
    def address(self) -> str:
        return self._address

    @property
    def process(self) -> ManagedProcess:
        return self._process

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def stderr_tail(self) -> list[str]:
        """Most recent lines ssh wrote to stderr."""
        return list(self._stderr_tail)

    @property
    def spec(self) -> str:
        """The -L spec, also used as log correlation id."""
        return forward_spec(self._local_port, self._remote_port)

    @classmethod
    async def start(
        cls,
        address: str,
        remote_port: int,
        interface: str = "",
        config_path: str | None = None,
        *,
        ssh_bin: str = constants.DEFAULT_SSH_BIN,
        config: RelayConfig | None = None,
    ) -> Self:
        """Reserve a local port and launch the ssh tunnel for remote_port.

        Returns once ssh has been spawned and survived the startup grace
        window; it does not wait for the tunnel process to exit.

        Raises:
            PortBindError: no local port could be reserved
            TunnelLaunchError: ssh could not be spawned in time or exited during startup
        """
        config = config or RelayConfig()
        local_socket = reserve_local_port(remote_port)
        local_port = local_socket.getsockname()[1]
        argv = build_forward_command(ssh_bin, address, local_port, remote_port, interface, config_path)
        spec = forward_spec(local_port, remote_port)

        logger.debug("Launching ssh tunnel", extra={"context_id": spec, "argv": argv})
        try:
            process = await ManagedProcess.spawn(argv, timeout=config.tunnel_spawn_timeout_seconds)
        except (OSError, TimeoutError) as e:
            local_socket.close()
            raise TunnelLaunchError(
                f"Failed to launch ssh tunnel for remote port {remote_port}: {str(e) or type(e).__name__}",
                remote_port,
                context={"argv": argv},
            ) from e
        except BaseException:
            local_socket.close()
            raise

        forwarder = cls(
            address=address,
            remote_port=remote_port,
            local_socket=local_socket,
            process=process,
            interface=interface,
            config_path=config_path,
            ssh_bin=ssh_bin,
            config=config,
        )
        forwarder._start_background_tasks()

        try:
            await forwarder._await_startup()
        except BaseException:
            await forwarder.stop()
            raise

        logger.info(
            "Forwarding established",
            extra={"context_id": spec, "local_port": local_port, "address": address, "remote_port": remote_port},
        )
        return forwarder

    def _start_background_tasks(self) -> None:
        spec = self.spec
        command = self._process.describe()

        self._drain_task = asyncio.create_task(
            drain_subprocess_output(
                self._process,
                process_name="ssh",
                context_id=spec,
                on_line=lambda _stream, line: self._stderr_tail.append(line),
            ),
            name=f"ssh-drain-{spec}",
        )
        self._drain_task.add_done_callback(log_task_exception)

        async def watch_exit() -> None:
            code = await self._process.wait()
            logger.debug(f"'{command}' exited with exit code {code}", extra={"context_id": spec, "returncode": code})

        self._exit_task = asyncio.create_task(watch_exit(), name=f"ssh-exit-{spec}")
        self._exit_task.add_done_callback(log_task_exception)

    async def _await_startup(self) -> None:
        """Fail if ssh exits within the startup grace window.

        Raises:
            TunnelLaunchError: ssh exited early (bad host, bad forward spec, auth failure)
        """
        grace = self._config.tunnel_startup_grace_seconds
        if grace <= 0:
            return
        try:
            code = await asyncio.wait_for(asyncio.shield(self._process.wait()), timeout=grace)
        except TimeoutError:
            return

        # Read what ssh printed before it exited
        if self._drain_task is not None:
            await asyncio.wait([self._drain_task], timeout=constants.SSH_STDERR_SETTLE_SECONDS)
        reason = self._stderr_tail[-1] if self._stderr_tail else "no output"
        raise TunnelLaunchError(
            f"ssh tunnel for remote port {self._remote_port} exited during startup with code {code}: {reason}",
            self._remote_port,
            context={"context_id": self.spec, "returncode": code, "stderr": list(self._stderr_tail)},
        )

    async def stop(self) -> None:
        """Tear down the tunnel. Never raises for cleanup failures; idempotent.

        Kills the ssh process, then runs `ssh -O cancel` for the same
        forward in case a control master kept the forward registered, then
        releases the reserved local port.
        """
        async with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True
            spec = self.spec

            await cleanup_process(
                self._process,
                name="ssh tunnel",
                context_id=spec,
                term_timeout=self._config.terminate_timeout_seconds,
                kill_timeout=self._config.kill_timeout_seconds,
            )

            try:
                await self._cancel_forward()
            except CancelCommandError as e:
                logger.warning(e.message, extra={"context_id": spec, **e.context})
            finally:
                close_socket(self._local_socket, spec)

            logger.debug("Forwarding stopped", extra={"context_id": spec})

    async def _cancel_forward(self) -> None:
        """Run the cancel command.

        Raises:
            CancelCommandError: cancel exited non-zero, timed out or could not be spawned
        """
        argv = build_cancel_command(
            self._ssh_bin,
            self._address,
            self._local_port,
            self._remote_port,
            self._interface,
            self._config_path,
        )
        logger.debug("Cancelling ssh forward", extra={"context_id": self.spec, "argv": argv})
        try:
            result = await run_command(argv, timeout=self._config.cancel_timeout_seconds)
        except CommandTimeoutError as e:
            raise CancelCommandError(e.message, context={"argv": argv}) from e
        except OSError as e:
            raise CancelCommandError(f"Failed to spawn cancel command: {e}", context={"argv": argv}) from e
        if not result.ok:
            raise CancelCommandError(
                f"Cancel command failed:\nstdout: {result.stdout}\nstderr: {result.stderr}",
                context={"argv": argv, "returncode": result.returncode},
            )


class SshForwardingStrategy:
    """Default ForwardingStrategy: one SshPortForwarder per port."""

    def __init__(self, settings: Settings | None = None, config: RelayConfig | None = None) -> None:
        self._ssh_bin = (settings or Settings()).ssh_bin
        self._config = config or RelayConfig()

    async def forward(
        self,
        address: str,
        remote_port: int,
        interface: str = "",
        config_path: str | None = None,
    ) -> SshPortForwarder:
        return await SshPortForwarder.start(
            address,
            remote_port,
            interface,
            config_path,
            ssh_bin=self._ssh_bin,
            config=self._config,
        )
