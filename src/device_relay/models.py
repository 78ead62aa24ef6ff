"""Data models for device-relay."""

from pydantic import BaseModel, ConfigDict, Field


class PortMapping(BaseModel):
    """An established forward: local loopback port to device service port."""

    model_config = ConfigDict(frozen=True)

    local_port: int = Field(ge=1, le=65535, description="Ephemeral port on the host loopback")
    remote_port: int = Field(description="Service port on the device")


class ForwardFailure(BaseModel):
    """A discovered port that could not be forwarded."""

    model_config = ConfigDict(frozen=True)

    remote_port: int = Field(description="Service port on the device")
    error_type: str = Field(description="Exception class name (e.g. PortBindError)")
    message: str = Field(description="Human-readable failure reason")


class ForwardingReport(BaseModel):
    """Outcome of one discovery + forward pass."""

    discovered_ports: list[int] = Field(default_factory=list, description="Ports advertised by the device")
    forwarded: list[PortMapping] = Field(default_factory=list, description="Established forwards, discovery order")
    failures: list[ForwardFailure] = Field(default_factory=list, description="Ports that failed to forward")
    discovery_error: str | None = Field(default=None, description="Set when the listing command itself failed")

    @property
    def failed_ports(self) -> list[int]:
        """Remote ports that failed to forward."""
        return [f.remote_port for f in self.failures]
