"""device-relay: reach every service on a device through one ssh endpoint.

Discovers the service ports a remote device advertises, forwards a local
port to each over ssh, and fans queries out over one cached service
client per forwarded port.

Quick Start:
    ```python
    from device_relay import connect

    async with await connect("192.168.42.17", connector=MyServiceConnector()) as conn:
        print(conn.forwarded_ports)
        views = await conn.get_views()
    ```

With IPv6 link-local and a custom ssh_config:
    ```python
    conn = await connect(
        "fe80::8eae:4cff:fef4:9247",
        interface="eno1",
        config_path="~/.ssh/device_config",
        connector=MyServiceConnector(),
    )
    try:
        units = await conn.get_execution_units_by_pattern("main")
    finally:
        await conn.stop()
    ```

Requirements:
    - OpenSSH client on PATH (or DEVICE_RELAY_SSH_BIN)
    - Python 3.12+
"""

from device_relay.client_cache import ClientCache, ClientConnector, ServiceClient
from device_relay.config import RelayConfig
from device_relay.connection import RemoteConnection, connect
from device_relay.exceptions import (
    CancelCommandError,
    ClientConnectError,
    CommandTimeoutError,
    ForwardError,
    InvalidArgumentError,
    PermanentError,
    PortBindError,
    PortNotForwardedError,
    RelayError,
    TransientError,
    TransportError,
    TunnelLaunchError,
)
from device_relay.forwarder import ForwardingStrategy, PortForwarder, SshForwardingStrategy, SshPortForwarder
from device_relay.models import ForwardFailure, ForwardingReport, PortMapping
from device_relay.settings import Settings
from device_relay.transport import ShellTransport, SshCommandRunner

__all__ = [
    "CancelCommandError",
    "ClientCache",
    "ClientConnectError",
    "ClientConnector",
    "CommandTimeoutError",
    "ForwardError",
    "ForwardFailure",
    "ForwardingReport",
    "ForwardingStrategy",
    "InvalidArgumentError",
    "PermanentError",
    "PortBindError",
    "PortForwarder",
    "PortMapping",
    "PortNotForwardedError",
    "RelayConfig",
    "RelayError",
    "RemoteConnection",
    "ServiceClient",
    "Settings",
    "ShellTransport",
    "SshCommandRunner",
    "SshForwardingStrategy",
    "SshPortForwarder",
    "TransientError",
    "TransportError",
    "TunnelLaunchError",
    "connect",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("device-relay")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
