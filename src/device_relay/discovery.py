"""Service port discovery.

Each service on the device advertises itself by creating an entry named
after its port in a well-known directory. Listing that directory over the
remote shell yields the ports, e.g.:

    ['31782\\n', '1234\\n', '11967']

The listing is a convention, not an API, so parsing is lenient: any line
whose last word is not an integer is skipped instead of failing the pass.
"""

from __future__ import annotations

import shlex
from typing import TYPE_CHECKING

from device_relay import constants
from device_relay._logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable

    from device_relay.transport import ShellTransport

logger = get_logger(__name__)


def listing_command(services_dir: str = constants.DEFAULT_SERVICES_DIR) -> str:
    """Shell command that lists the advertisement directory."""
    return f"ls {shlex.quote(services_dir)}"


def parse_service_ports(lines: Iterable[str]) -> list[int]:
    """Extract advertised ports from directory listing lines.

    The last space-separated word of each trimmed line is taken, so long
    listings (`ls -l`) parse the same as plain ones, minus their `total N`
    header. Encounter order is kept and duplicates are not removed.
    """
    ports: list[int] = []
    for line in lines:
        trimmed = line.strip()
        if trimmed.startswith(constants.LISTING_TOTAL_PREFIX) and trimmed.count(" ") == 1:
            continue
        last_word = trimmed[trimmed.rfind(" ") + 1 :]
        if last_word in constants.DISCOVERY_PSEUDO_ENTRIES:
            continue
        if not (last_word.isascii() and last_word.isdigit()):
            logger.debug("Skipping non-port listing entry", extra={"line": trimmed})
            continue
        ports.append(int(last_word))
    return ports


async def discover_service_ports(
    transport: ShellTransport,
    services_dir: str = constants.DEFAULT_SERVICES_DIR,
) -> list[int]:
    """List the service ports currently advertised on the device.

    An empty list means no services are running.

    Raises:
        TransportError: the listing command itself failed
    """
    lines = await transport.run(listing_command(services_dir))
    ports = parse_service_ports(lines)
    logger.info(
        "Discovered service ports",
        extra={"address": transport.address, "ports": ports, "count": len(ports)},
    )
    return ports
