"""Per-port cache of remote-service clients.

Each forwarded port gets at most one client. Concurrent callers asking
for the same port share one in-flight connect (single-flight): the first
caller starts a connect task, later callers await the same task, and
every caller receives the same client instance.

The connect task is shielded from its waiters. A caller that is
cancelled stops waiting but does not abort the handshake, so the client
still lands in the cache and is stopped by discard() like any other.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from device_relay import constants
from device_relay._logging import get_logger
from device_relay.config import RelayConfig
from device_relay.exceptions import ClientConnectError

logger = get_logger(__name__)


def _note_connect_outcome(task: asyncio.Task[ServiceClient]) -> None:
    # Waiters re-raise the error; this only marks it retrieved when every waiter was cancelled.
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Client connect task failed", extra={"task_name": task.get_name()})


@runtime_checkable
class ServiceClient(Protocol):
    """Connection to one remote service instance."""

    async def stop(self) -> None: ...

    async def list_views(self) -> list[Any]: ...

    async def list_execution_units_by_pattern(self, pattern: Any) -> list[Any]: ...


class ClientConnector(Protocol):
    """Opens a ServiceClient for a service URI such as http://127.0.0.1:40123."""

    async def connect(self, uri: str) -> ServiceClient: ...


class ClientCache:
    """Memoizing, concurrency-safe map of local port to ServiceClient.

    Attributes:
        connect_count: Number of connect tasks started (one per cache miss)
    """

    def __init__(
        self,
        connector: ClientConnector | None,
        uri_for_port: Callable[[int], str],
        config: RelayConfig | None = None,
    ) -> None:
        self._connector = connector
        self._uri_for_port = uri_for_port
        self._config = config or RelayConfig()
        self._clients: dict[int, ServiceClient] = {}
        self._pending: dict[int, asyncio.Task[ServiceClient]] = {}
        self.connect_count = 0

    def __contains__(self, port: object) -> bool:
        return port in self._clients

    def __len__(self) -> int:
        return len(self._clients)

    @property
    def ports(self) -> list[int]:
        """Ports with a connected client."""
        return list(self._clients)

    def get(self, port: int) -> ServiceClient | None:
        """Cached client for port, without connecting."""
        return self._clients.get(port)

    async def get_or_create(self, port: int) -> ServiceClient:
        """Return the client for port, connecting on first use.

        Raises:
            ClientConnectError: every connect attempt failed, or the port was
                discarded while the connect was in flight
        """
        client = self._clients.get(port)
        if client is not None:
            return client

        task = self._pending.get(port)
        if task is None:
            self.connect_count += 1
            task = asyncio.create_task(self._connect(port), name=f"client-connect-{port}")
            task.add_done_callback(_note_connect_outcome)
            self._pending[port] = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and current is not None and current.cancelling() == 0:
                # discard() cancelled the shared connect, not this caller
                raise ClientConnectError(
                    f"Client for port {port} was discarded while connecting",
                    context={"uri": self._uri_for_port(port), "port": port},
                ) from None
            raise

    async def _connect(self, port: int) -> ServiceClient:
        uri = self._uri_for_port(port)
        config = self._config
        if self._connector is None:
            if self._pending.get(port) is asyncio.current_task():
                del self._pending[port]
            raise ClientConnectError(f"No client connector configured for {uri}", context={"uri": uri, "port": port})
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(config.client_connect_attempts),
                wait=wait_random_exponential(
                    min=constants.CLIENT_CONNECT_RETRY_MIN_SECONDS,
                    max=constants.CLIENT_CONNECT_RETRY_MAX_SECONDS,
                ),
                # Freshly started tunnels can refuse connections for a moment
                retry=retry_if_exception_type((OSError, TimeoutError)),
                before_sleep=before_sleep_log(logger, logging.DEBUG),
                reraise=True,
            ):
                with attempt:
                    async with asyncio.timeout(config.client_connect_timeout_seconds):
                        client = await self._connector.connect(uri)
        except (OSError, TimeoutError) as e:
            raise ClientConnectError(
                f"Failed to connect to service at {uri}: {str(e) or type(e).__name__}",
                context={"uri": uri, "port": port, "attempts": config.client_connect_attempts},
            ) from e
        finally:
            if self._pending.get(port) is asyncio.current_task():
                del self._pending[port]

        self._clients[port] = client
        logger.debug("Service client connected", extra={"uri": uri, "port": port})
        return client

    async def discard(self, port: int) -> None:
        """Stop and forget the client for port. Never raises for client errors.

        An in-flight connect for port is cancelled first so it cannot
        populate the cache after the port is gone.
        """
        task = self._pending.pop(port, None)
        if task is not None:
            task.cancel()
            await asyncio.wait([task])

        client = self._clients.pop(port, None)
        if client is None:
            return
        try:
            await client.stop()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Service client stop failed",
                extra={"port": port, "error": str(e), "error_type": type(e).__name__},
            )

    async def clear(self) -> None:
        """discard() every port with a client or an in-flight connect.

        Repeats until nothing is left, so connects started while earlier
        ports were being stopped are discarded too.
        """
        while self._clients or self._pending:
            ports = set(self._clients) | set(self._pending)
            await asyncio.gather(*(self.discard(port) for port in ports))
