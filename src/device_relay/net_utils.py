"""Address helpers: literal validation, address family, ssh target formatting."""

import ipaddress

from device_relay import constants
from device_relay.exceptions import InvalidArgumentError


def validate_address(address: str) -> str:
    """Return address unchanged if it is an IPv4 or IPv6 literal.

    Raises:
        InvalidArgumentError: address is empty or not an IP literal
    """
    try:
        ipaddress.ip_address(address)
    except ValueError as e:
        raise InvalidArgumentError(
            f"Invalid IPv4 or IPv6 address: {address!r}",
            context={"address": address},
        ) from e
    return address


def is_ipv6_address(address: str) -> bool:
    """True if address parses as an IPv6 literal."""
    try:
        return isinstance(ipaddress.ip_address(address), ipaddress.IPv6Address)
    except ValueError:
        return False


def ssh_target(address: str, interface: str = "") -> str:
    """Host argument for ssh.

    IPv6 link-local devices need the outgoing host interface as a zone
    suffix (fe80::1%en0); IPv4 addresses never carry one.
    """
    if interface and "%" not in address and is_ipv6_address(address):
        return f"{address}%{interface}"
    return address


def loopback_for(address: str) -> str:
    """Loopback literal a service client should dial for a device at address."""
    return constants.IPV6_LOOPBACK if is_ipv6_address(address) else constants.IPV4_LOOPBACK


def service_uri(loopback: str, port: int) -> str:
    """http:// URI for a forwarded port; IPv6 literals are bracketed."""
    host = f"[{loopback}]" if ":" in loopback else loopback
    return f"http://{host}:{port}"
