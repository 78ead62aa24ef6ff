"""RemoteConnection - every service on a device, reached through one ssh endpoint.

A RemoteConnection discovers the service ports a device advertises,
forwards a local port to each of them, and answers aggregate queries by
fanning out over one cached service client per forwarded port.

Example:
    ```python
    from device_relay import connect

    async with await connect("fe80::8eae:4cff:fef4:9247", "eno1", connector=my_connector) as conn:
        views = await conn.get_views()
        units = await conn.get_execution_units_by_pattern(re.compile("main"))
    ```

Lifecycle:
    - connect() validates the address, then runs discover_and_forward_all()
    - the set of tunnels is fixed until the next discover_and_forward_all()
    - stop() stops each port's client, then its tunnel; safe to repeat

Forwarding is best-effort: a port that cannot be bound or tunnelled is
left out and recorded in `report`; it never fails the whole pass.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import TYPE_CHECKING, Any, Self

from device_relay._logging import get_logger
from device_relay.client_cache import ClientCache, ClientConnector, ServiceClient
from device_relay.config import RelayConfig
from device_relay.discovery import discover_service_ports
from device_relay.exceptions import ForwardError, PortNotForwardedError, TransportError
from device_relay.forwarder import ForwardingStrategy, PortForwarder, SshForwardingStrategy
from device_relay.models import ForwardFailure, ForwardingReport, PortMapping
from device_relay.net_utils import loopback_for, service_uri, validate_address
from device_relay.settings import Settings
from device_relay.transport import ShellTransport, SshCommandRunner

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

logger = get_logger(__name__)


class RemoteConnection:
    """Tunnels and service clients for one remote device.

    Attributes:
        address: Device address the connection was made to.
        loopback: Loopback literal service clients dial (fixed at construction).
        report: Outcome of the last discovery + forward pass.
    """

    def __init__(
        self,
        transport: ShellTransport,
        *,
        connector: ClientConnector | None = None,
        strategy: ForwardingStrategy | None = None,
        config: RelayConfig | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._transport = transport
        self._config = config or RelayConfig()
        self._settings = settings or Settings()
        self._strategy = strategy or SshForwardingStrategy(self._settings, self._config)
        # An IPv6 device gets its tunnels exposed on ::1 locally, whatever the -L spec says.
        self._loopback = loopback_for(transport.address)
        self._forwarders: list[PortForwarder] = []
        self._clients = ClientCache(connector, self._uri_for_port, self._config)
        self._report = ForwardingReport()
        self._lifecycle_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    async def connect(
        cls,
        address: str,
        interface: str = "",
        config_path: str | None = None,
        *,
        connector: ClientConnector | None = None,
        strategy: ForwardingStrategy | None = None,
        config: RelayConfig | None = None,
        settings: Settings | None = None,
    ) -> Self:
        """Connect to the device at address and forward all advertised services.

        Args:
            address: Device IPv4 or IPv6 literal. IPv6 link-local addresses
                usually need interface as well.
            interface: Outgoing host interface for IPv6 link-local addresses.
            config_path: ssh_config passed to every ssh invocation with -F.
            connector: Opens service clients for forwarded ports. Without one
                the connection only forwards; queries raise ClientConnectError.
            strategy: Tunnel mechanism (default: ssh -L).
            config: Timeouts and retry budget.
            settings: Host settings (default: from environment).

        Raises:
            InvalidArgumentError: address is not an IPv4 or IPv6 literal
        """
        validate_address(address)
        config = config or RelayConfig()
        settings = settings or Settings()
        transport = SshCommandRunner(
            address,
            interface,
            config_path,
            ssh_bin=settings.ssh_bin,
            timeout=config.command_timeout_seconds,
        )
        return await cls.connect_with_transport(
            transport,
            connector=connector,
            strategy=strategy,
            config=config,
            settings=settings,
        )

    @classmethod
    async def connect_with_transport(
        cls,
        transport: ShellTransport,
        *,
        connector: ClientConnector | None = None,
        strategy: ForwardingStrategy | None = None,
        config: RelayConfig | None = None,
        settings: Settings | None = None,
    ) -> Self:
        """Same as connect() with a ready-made transport."""
        connection = cls(transport, connector=connector, strategy=strategy, config=config, settings=settings)
        try:
            await connection.discover_and_forward_all()
        except BaseException:
            await connection.stop()
            raise
        return connection

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def address(self) -> str:
        return self._transport.address

    @property
    def transport(self) -> ShellTransport:
        return self._transport

    @property
    def loopback(self) -> str:
        return self._loopback

    @property
    def use_ipv6_loopback(self) -> bool:
        return ":" in self._loopback

    @property
    def forwarders(self) -> tuple[PortForwarder, ...]:
        """Active forwarders in discovery order."""
        return tuple(self._forwarders)

    @property
    def forwarded_ports(self) -> list[PortMapping]:
        """local_port -> remote_port for every active forwarder."""
        return [PortMapping(local_port=f.local_port, remote_port=f.remote_port) for f in self._forwarders]

    @property
    def clients(self) -> ClientCache:
        return self._clients

    @property
    def report(self) -> ForwardingReport:
        return self._report

    @property
    def failed_ports(self) -> list[int]:
        """Remote ports the last pass discovered but could not forward."""
        return self._report.failed_ports

    # -------------------------------------------------------------------------
    # Discovery and forwarding
    # -------------------------------------------------------------------------

    async def get_device_service_ports(self) -> list[int]:
        """Service ports currently advertised on the device.

        Raises:
            TransportError: the listing command failed
        """
        return await discover_service_ports(self._transport, self._settings.services_dir)

    async def discover_and_forward_all(self) -> ForwardingReport:
        """Rebuild all forwarding from scratch.

        Stops every existing client and tunnel, discovers the advertised
        ports, and starts one forwarder per port concurrently. Ports whose
        forwarder fails are recorded in the returned report; a failed
        discovery yields an empty set of forwarders.
        """
        async with self._lifecycle_lock:
            await self._stop_unlocked()
            report = ForwardingReport()
            self._report = report

            try:
                ports = await self.get_device_service_ports()
            except TransportError as e:
                logger.warning(
                    "Service port discovery failed",
                    extra={"address": self.address, "error": e.message, **e.context},
                )
                report.discovery_error = e.message
                return report
            except Exception as e:
                logger.error(
                    "Service port discovery failed unexpectedly",
                    extra={"address": self.address, "error_type": type(e).__name__},
                    exc_info=e,
                )
                report.discovery_error = str(e) or type(e).__name__
                return report

            report.discovered_ports = list(ports)
            results = await self._forward_ports(ports)

            for remote_port, result in zip(ports, results, strict=True):
                if isinstance(result, BaseException) or result is None:
                    report.failures.append(self._record_failure(remote_port, result))
                    continue
                self._forwarders.append(result)
                report.forwarded.append(PortMapping(local_port=result.local_port, remote_port=result.remote_port))

            logger.info(
                "Forwarded device services",
                extra={
                    "address": self.address,
                    "forwarded": [(m.local_port, m.remote_port) for m in report.forwarded],
                    "failed": report.failed_ports,
                },
            )
            return report

    async def _forward_ports(self, ports: Sequence[int]) -> list[PortForwarder | BaseException | None]:
        """Start a forwarder for every port concurrently; results line up with ports."""
        transport = self._transport
        tasks = [
            asyncio.create_task(
                self._strategy.forward(transport.address, port, transport.interface, transport.config_path),
                name=f"forward-{port}",
            )
            for port in ports
        ]
        if not tasks:
            return []
        try:
            return await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            # Tunnels that came up before the cancellation would otherwise leak.
            for task in tasks:
                task.cancel()
            await asyncio.wait(tasks)
            started = [t.result() for t in tasks if not t.cancelled() and t.exception() is None and t.result()]
            await asyncio.gather(*(self._stop_forwarder(f) for f in started))
            raise

    def _record_failure(self, remote_port: int, error: BaseException | None) -> ForwardFailure:
        if error is None:
            message = "forwarding strategy returned no forwarder"
            error_type = "NoForwarder"
        else:
            message = getattr(error, "message", None) or str(error) or type(error).__name__
            error_type = type(error).__name__

        if isinstance(error, ForwardError) or error is None:
            logger.warning(
                "Port forward failed",
                extra={"address": self.address, "remote_port": remote_port, "error": message},
            )
        else:
            logger.error(
                "Port forward failed unexpectedly",
                extra={"address": self.address, "remote_port": remote_port, "error_type": error_type},
                exc_info=error,
            )
        return ForwardFailure(remote_port=remote_port, error_type=error_type, message=message)

    # -------------------------------------------------------------------------
    # Service clients and aggregate queries
    # -------------------------------------------------------------------------

    def _uri_for_port(self, port: int) -> str:
        return service_uri(self._loopback, port)

    async def get_or_create_client(self, local_port: int) -> ServiceClient:
        """Cached service client for a forwarded port, connecting on first use.

        Concurrent calls for the same port share a single connect.

        Raises:
            PortNotForwardedError: no active forwarder owns local_port
            ClientConnectError: the service did not accept a connection
        """
        if not any(f.local_port == local_port for f in self._forwarders):
            raise PortNotForwardedError(
                f"Local port {local_port} is not forwarded",
                context={"local_port": local_port, "address": self.address},
            )
        return await self._clients.get_or_create(local_port)

    async def get_views(self) -> tuple[Any, ...]:
        """Views from every forwarded service, in forwarder order.

        Returns an empty tuple when nothing is forwarded. Cancelling the
        call stops waiting on outstanding services; clients already being
        connected are still cached.
        """

        async def views_for(port: int) -> list[Any]:
            client = await self.get_or_create_client(port)
            return await client.list_views()

        per_port = await self._query_each_port(views_for)
        return tuple(itertools.chain.from_iterable(per_port))

    async def get_execution_units_by_pattern(self, pattern: Any) -> tuple[Any, ...]:
        """Execution units matching pattern across every forwarded service.

        pattern is passed to each client unchanged (a str or compiled
        re.Pattern in practice). Returns an empty tuple when nothing is
        forwarded, the same as get_views().
        """

        async def units_for(port: int) -> list[Any]:
            client = await self.get_or_create_client(port)
            return await client.list_execution_units_by_pattern(pattern)

        per_port = await self._query_each_port(units_for)
        return tuple(itertools.chain.from_iterable(units for units in per_port if units))

    async def _query_each_port(self, query: Callable[[int], Awaitable[list[Any]]]) -> list[list[Any]]:
        """Run query for every forwarded local port; results line up with forwarders.

        The first failing port cancels the others and its exception is
        raised as-is.
        """
        forwarders = list(self._forwarders)
        if not forwarders:
            return []
        try:
            async with asyncio.TaskGroup() as tg:
                tasks = [tg.create_task(query(f.local_port), name=f"query-{f.local_port}") for f in forwarders]
        except ExceptionGroup as eg:
            raise eg.exceptions[0] from None
        return [t.result() for t in tasks]

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def stop(self) -> None:
        """Stop every service client and tunnel. Idempotent.

        For each port the client is stopped before its tunnel; different
        ports are torn down concurrently. Objects obtained from this
        connection (clients, views) are unusable afterwards.
        """
        async with self._lifecycle_lock:
            await self._stop_unlocked()

    async def _stop_unlocked(self) -> None:
        forwarders = list(self._forwarders)
        if forwarders:
            logger.debug("Stopping forwarded ports", extra={"address": self.address, "count": len(forwarders)})
        await asyncio.gather(*(self._teardown_port(f) for f in forwarders))
        # Clients whose connect raced with teardown
        await self._clients.clear()
        self._forwarders.clear()

    async def _teardown_port(self, forwarder: PortForwarder) -> None:
        # The tunnel must outlive its client's shutdown handshake.
        await self._clients.discard(forwarder.local_port)
        await self._stop_forwarder(forwarder)

    async def _stop_forwarder(self, forwarder: PortForwarder) -> None:
        try:
            await forwarder.stop()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Forwarder stop failed",
                extra={
                    "address": self.address,
                    "local_port": forwarder.local_port,
                    "remote_port": forwarder.remote_port,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
                exc_info=True,
            )

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self, _exc_type: type[BaseException] | None, _exc_val: BaseException | None, _exc_tb: object
    ) -> None:
        await self.stop()


connect = RemoteConnection.connect
