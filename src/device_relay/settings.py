"""Runtime configuration from environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict

from device_relay import constants


class Settings(BaseSettings):
    """Host environment configuration.

    All settings can be overridden via environment variables with DEVICE_RELAY_ prefix.
    Example: DEVICE_RELAY_SSH_BIN=/opt/openssh/bin/ssh
    """

    model_config = SettingsConfigDict(
        env_prefix="DEVICE_RELAY_",
        extra="ignore",
    )

    ssh_bin: str = constants.DEFAULT_SSH_BIN
    """ssh executable used for discovery, tunnels and cancel requests."""

    services_dir: str = constants.DEFAULT_SERVICES_DIR
    """Advertisement directory listed on the device during discovery."""
