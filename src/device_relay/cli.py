"""Command-line interface for device-relay.

Usage:
    device-relay ports 192.168.42.17                 # List advertised service ports
    device-relay forward fe80::1 -i eno1             # Forward all services until Ctrl-C
    device-relay forward 10.0.0.5 -F ~/.ssh/dev --json --once
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import signal
import sys
from typing import NoReturn

import click

from device_relay import (
    ForwardingReport,
    InvalidArgumentError,
    RelayConfig,
    RelayError,
    RemoteConnection,
    Settings,
    SshCommandRunner,
    __version__,
)
from device_relay._logging import configure_logging
from device_relay.discovery import discover_service_ports

EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_RELAY_ERROR = 125


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message as title, explanation, then suggestions."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]
    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)
    return "\n".join(lines)


def format_report_json(report: ForwardingReport) -> str:
    """Forwarding report as JSON."""
    return json.dumps(report.model_dump(), indent=2)


def format_report_text(address: str, report: ForwardingReport, loopback: str = "127.0.0.1") -> str:
    """Forwarding report as one line per port."""
    local_host = f"[{loopback}]" if ":" in loopback else loopback
    if report.discovery_error:
        return f"Discovery on {address} failed: {report.discovery_error}"
    if not report.discovered_ports:
        return f"No services advertised on {address}"
    lines = [f"{local_host}:{m.local_port} -> {address}:{m.remote_port}" for m in report.forwarded]
    lines.extend(f"failed: {address}:{f.remote_port} ({f.error_type}: {f.message})" for f in report.failures)
    return "\n".join(lines)


async def wait_for_shutdown_signal() -> None:
    """Block until SIGINT or SIGTERM."""
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):  # add_signal_handler is Unix-only
            loop.add_signal_handler(sig, stop_event.set)
    try:
        await stop_event.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(sig)


async def list_ports(address: str, interface: str, config_path: str | None, json_output: bool) -> int:
    """Print the service ports advertised on the device."""
    settings = Settings()
    config = RelayConfig()
    try:
        transport = SshCommandRunner(
            address,
            interface,
            config_path,
            ssh_bin=settings.ssh_bin,
            timeout=config.command_timeout_seconds,
        )
        ports = await discover_service_ports(transport, settings.services_dir)
    except InvalidArgumentError as e:
        click.echo(format_error("Invalid address", e.message, ["Use an IPv4 or IPv6 literal"]), err=True)
        return EXIT_CLI_ERROR
    except RelayError as e:
        click.echo(
            format_error(
                "Discovery failed",
                e.message,
                ["Check that `ssh <address>` works non-interactively", "Pass an ssh_config with -F"],
            ),
            err=True,
        )
        return EXIT_RELAY_ERROR

    if json_output:
        click.echo(json.dumps(ports))
    else:
        for port in ports:
            click.echo(port)
    return EXIT_SUCCESS


async def forward_all(
    address: str,
    interface: str,
    config_path: str | None,
    json_output: bool,
    once: bool,
) -> int:
    """Forward every advertised service and hold the tunnels until interrupted."""
    try:
        connection = await RemoteConnection.connect(address, interface, config_path)
    except InvalidArgumentError as e:
        click.echo(format_error("Invalid address", e.message, ["Use an IPv4 or IPv6 literal"]), err=True)
        return EXIT_CLI_ERROR
    except RelayError as e:
        click.echo(format_error("Forwarding failed", e.message), err=True)
        return EXIT_RELAY_ERROR

    async with connection:
        report = connection.report
        if json_output:
            click.echo(format_report_json(report))
        else:
            click.echo(format_report_text(address, report, connection.loopback))

        if report.discovery_error:
            return EXIT_RELAY_ERROR
        if not once and connection.forwarders:
            click.echo(click.style("Forwarding; press Ctrl-C to stop", dim=True), err=True)
            await wait_for_shutdown_signal()
    return EXIT_SUCCESS


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging")
@click.option("-q", "--quiet", is_flag=True, help="Only show errors")
@click.version_option(__version__, "-V", "--version", prog_name="device-relay")
def main(verbose: bool, quiet: bool) -> None:
    """Reach the services running on a remote device over ssh."""
    configure_logging(level="DEBUG" if verbose else None, quiet=quiet)


_address_argument = click.argument("address")
_interface_option = click.option(
    "-i", "--interface", default="", help="Outgoing host interface (IPv6 link-local addresses)"
)
_config_option = click.option("-F", "--ssh-config", "config_path", default=None, help="ssh_config file")
_json_option = click.option("--json", "json_output", is_flag=True, help="Output as JSON")


@main.command()
@_address_argument
@_interface_option
@_config_option
@_json_option
def ports(address: str, interface: str, config_path: str | None, json_output: bool) -> NoReturn:
    """List the service ports advertised on the device at ADDRESS."""
    sys.exit(asyncio.run(list_ports(address, interface, config_path, json_output)))


@main.command()
@_address_argument
@_interface_option
@_config_option
@_json_option
@click.option("--once", is_flag=True, help="Print the mappings and tear down instead of waiting")
def forward(address: str, interface: str, config_path: str | None, json_output: bool, once: bool) -> NoReturn:
    """Forward a local port to every service advertised on ADDRESS.

    \b
    Examples:
      device-relay forward 192.168.42.17
      device-relay forward fe80::8eae:4cff:fef4:9247 -i eno1
      device-relay forward 10.0.0.5 --json --once | jq .forwarded
    """
    sys.exit(asyncio.run(forward_all(address, interface, config_path, json_output, once)))


if __name__ == "__main__":
    main()
