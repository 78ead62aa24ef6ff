"""Constants for device-relay."""

from typing import Final

# ============================================================================
# Loopback literals
# ============================================================================

IPV4_LOOPBACK: Final[str] = "127.0.0.1"
"""IPv4 loopback; used for local port reservation and the target side of every -L spec."""

IPV6_LOOPBACK: Final[str] = "::1"
"""IPv6 loopback; clients of IPv6 endpoints connect through it."""

# ============================================================================
# Service discovery
# ============================================================================

DEFAULT_SERVICES_DIR: Final[str] = "/tmp/dart.services"  # noqa: S108
"""Directory on the device where each running service advertises its port as an entry name."""

DISCOVERY_PSEUDO_ENTRIES: Final[frozenset[str]] = frozenset({".", ".."})
"""Directory listing entries that never denote a port."""

LISTING_TOTAL_PREFIX: Final[str] = "total "
"""Header line of a long listing (`total 12`); its number is a block count, not a port."""

# ============================================================================
# SSH
# ============================================================================

DEFAULT_SSH_BIN: Final[str] = "ssh"

SSH_FORWARD_ONLY_FLAGS: Final[str] = "-nNT"
"""No stdin, no remote command, no tty: the session exists only to hold -L forwards."""

SSH_IPV6_FLAG: Final[str] = "-6"

# ============================================================================
# Timeouts (seconds)
# ============================================================================

COMMAND_TIMEOUT_SECONDS: Final[float] = 30.0
"""Remote shell command round trip (discovery listing)."""

TUNNEL_SPAWN_TIMEOUT_SECONDS: Final[float] = 10.0
"""Spawning the ssh tunnel subprocess."""

TUNNEL_STARTUP_GRACE_SECONDS: Final[float] = 0.5
"""An ssh tunnel that exits within this window is reported as a launch failure."""

CANCEL_TIMEOUT_SECONDS: Final[float] = 10.0
"""`ssh -O cancel` round trip during teardown."""

TERMINATE_TIMEOUT_SECONDS: Final[float] = 3.0
"""Wait after SIGTERM before escalating to SIGKILL."""

KILL_TIMEOUT_SECONDS: Final[float] = 2.0
"""Wait after SIGKILL before giving up on reaping."""

CLIENT_CONNECT_TIMEOUT_SECONDS: Final[float] = 10.0
"""Single remote-service client handshake attempt."""

CLIENT_CONNECT_ATTEMPTS: Final[int] = 3
"""Handshake attempts per forwarded port (tunnels may take a moment to accept)."""

CLIENT_CONNECT_RETRY_MIN_SECONDS: Final[float] = 0.05
CLIENT_CONNECT_RETRY_MAX_SECONDS: Final[float] = 1.0

# ============================================================================
# Tunnel diagnostics
# ============================================================================

SSH_STDERR_TAIL_LINES: Final[int] = 20
"""stderr lines kept per tunnel for launch-failure messages."""

SSH_STDERR_SETTLE_SECONDS: Final[float] = 1.0
"""After an early exit, how long to wait for ssh's remaining stderr to be read."""
