"""Connection configuration for device-relay.

RelayConfig carries the timeouts and retry budget used by a
RemoteConnection and its forwarders.

Example:
    ```python
    from device_relay import RelayConfig, connect

    config = RelayConfig(cancel_timeout_seconds=2.0)
    async with await connect("fe80::1", "en0", connector=my_connector, config=config) as conn:
        views = await conn.get_views()
    ```
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from device_relay import constants


class RelayConfig(BaseModel):
    """Configuration for RemoteConnection.

    Attributes:
        command_timeout_seconds: Bound on a remote shell command (discovery listing).
        tunnel_spawn_timeout_seconds: Bound on spawning an ssh tunnel process.
        tunnel_startup_grace_seconds: A tunnel that exits within this window is
            treated as a launch failure. 0 disables the check.
        cancel_timeout_seconds: Bound on the `ssh -O cancel` round trip in stop().
        terminate_timeout_seconds: Wait after SIGTERM before SIGKILL.
        kill_timeout_seconds: Wait after SIGKILL before giving up.
        client_connect_timeout_seconds: Bound on one client handshake attempt.
        client_connect_attempts: Handshake attempts per forwarded port.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    command_timeout_seconds: float = Field(
        default=constants.COMMAND_TIMEOUT_SECONDS,
        gt=0,
        le=600,
        description="Remote shell command timeout",
    )
    tunnel_spawn_timeout_seconds: float = Field(
        default=constants.TUNNEL_SPAWN_TIMEOUT_SECONDS,
        gt=0,
        le=120,
        description="ssh tunnel spawn timeout",
    )
    tunnel_startup_grace_seconds: float = Field(
        default=constants.TUNNEL_STARTUP_GRACE_SECONDS,
        ge=0,
        le=30,
        description="Early-exit window for tunnel startup",
    )
    cancel_timeout_seconds: float = Field(
        default=constants.CANCEL_TIMEOUT_SECONDS,
        gt=0,
        le=120,
        description="`ssh -O cancel` timeout",
    )
    terminate_timeout_seconds: float = Field(
        default=constants.TERMINATE_TIMEOUT_SECONDS,
        gt=0,
        le=60,
        description="SIGTERM grace period",
    )
    kill_timeout_seconds: float = Field(
        default=constants.KILL_TIMEOUT_SECONDS,
        gt=0,
        le=60,
        description="SIGKILL reap timeout",
    )
    client_connect_timeout_seconds: float = Field(
        default=constants.CLIENT_CONNECT_TIMEOUT_SECONDS,
        gt=0,
        le=300,
        description="Service client handshake timeout per attempt",
    )
    client_connect_attempts: int = Field(
        default=constants.CLIENT_CONNECT_ATTEMPTS,
        ge=1,
        le=20,
        description="Service client handshake attempts",
    )
