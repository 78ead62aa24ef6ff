"""Exception hierarchy for device-relay.

All exceptions inherit from RelayError.

Hierarchy:
    RelayError (base)
    ├── TransientError (retryable marker base)
    │   ├── TransportError             ← remote shell command failed
    │   │   └── CommandTimeoutError    ← remote shell command timed out
    │   ├── ForwardError               ← one tunnel could not be established
    │   │   ├── PortBindError          ← no local port could be reserved
    │   │   └── TunnelLaunchError      ← ssh failed to start or exited early
    │   └── ClientConnectError         ← service client handshake failed
    ├── PermanentError (non-retryable marker base)
    │   ├── InvalidArgumentError       ← malformed endpoint address
    │   └── PortNotForwardedError      ← no tunnel for the requested local port
    └── CancelCommandError             ← `ssh -O cancel` failed (logged, never raised by stop())

ForwardError and its subclasses are soft: the connection records them in
its ForwardingReport and carries on with the remaining ports.
"""

from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """Base exception for all device-relay errors.

    Attributes:
        message: Human-readable error message
        context: Structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class TransientError(RelayError):
    """Base for errors that may succeed on retry (flaky links, slow devices)."""


class PermanentError(RelayError):
    """Base for errors that will not succeed on retry."""


# =============================================================================
# Transient
# =============================================================================


class TransportError(TransientError):
    """Remote shell command failed.

    Attributes:
        returncode: Exit code of the ssh invocation (None if it never exited)
        stderr: Captured standard error
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        returncode: int | None = None,
        stderr: str = "",
    ):
        super().__init__(message, context)
        self.returncode = returncode
        self.stderr = stderr


class CommandTimeoutError(TransportError):
    """Remote shell command did not finish within its timeout."""


class ForwardError(TransientError):
    """A single port forward could not be established.

    Attributes:
        remote_port: Device port the forward was meant for
    """

    def __init__(self, message: str, remote_port: int, context: dict[str, Any] | None = None):
        super().__init__(message, context)
        self.remote_port = remote_port


class PortBindError(ForwardError):
    """No local ephemeral port could be reserved on the loopback interface."""


class TunnelLaunchError(ForwardError):
    """The ssh tunnel process could not be spawned, or exited during startup."""


class ClientConnectError(TransientError):
    """Remote-service client could not be connected through a forwarded port."""


# =============================================================================
# Permanent
# =============================================================================


class InvalidArgumentError(PermanentError, ValueError):
    """Endpoint address is not a valid IPv4 or IPv6 literal."""


class PortNotForwardedError(PermanentError):
    """A client was requested for a local port with no active forwarder."""


# =============================================================================
# Logged only
# =============================================================================


class CancelCommandError(RelayError):
    """`ssh -O cancel` exited non-zero or timed out.

    Built by the forwarder so the failure carries structured context in
    the warning log; stop() never raises it.
    """
