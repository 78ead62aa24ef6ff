# pyright: reportPrivateUsage=false
"""Tests for ClientCache: single-flight connects, retries, discard."""

import asyncio

import pytest

from device_relay.client_cache import ClientCache, ServiceClient
from device_relay.config import RelayConfig
from device_relay.exceptions import ClientConnectError
from device_relay.net_utils import service_uri

from tests.conftest import FakeClient, FakeConnector


def uri_for(port: int) -> str:
    return service_uri("127.0.0.1", port)


@pytest.fixture
def config() -> RelayConfig:
    return RelayConfig(client_connect_timeout_seconds=1, client_connect_attempts=3)


class TestGetOrCreate:
    """Connect-on-first-use and memoization."""

    async def test_connects_once_and_memoizes(self, config: RelayConfig) -> None:
        connector = FakeConnector()
        cache = ClientCache(connector, uri_for, config)

        first = await cache.get_or_create(40000)
        second = await cache.get_or_create(40000)

        assert first is second
        assert isinstance(first, ServiceClient)
        assert connector.uris == ["http://127.0.0.1:40000"]
        assert 40000 in cache
        assert len(cache) == 1
        assert cache.get(40000) is first

    async def test_concurrent_callers_share_one_connect(self, config: RelayConfig) -> None:
        connector = FakeConnector(delay=0.05)
        cache = ClientCache(connector, uri_for, config)

        clients = await asyncio.gather(*(cache.get_or_create(40000) for _ in range(10)))

        assert connector.connect_count("http://127.0.0.1:40000") == 1
        assert cache.connect_count == 1
        assert all(c is clients[0] for c in clients)

    async def test_ports_are_independent(self, config: RelayConfig) -> None:
        connector = FakeConnector(delay=0.01)
        cache = ClientCache(connector, uri_for, config)

        a, b = await asyncio.gather(cache.get_or_create(40000), cache.get_or_create(40001))

        assert a is not b
        assert sorted(cache.ports) == [40000, 40001]

    async def test_retries_refused_connections(self, config: RelayConfig) -> None:
        """A freshly started tunnel may refuse the first handshakes."""
        connector = FakeConnector(fail_first=2)
        cache = ClientCache(connector, uri_for, config)

        client = await cache.get_or_create(40000)

        assert isinstance(client, FakeClient)
        assert connector.connect_count("http://127.0.0.1:40000") == 3

    async def test_exhausted_attempts_raise(self, config: RelayConfig) -> None:
        connector = FakeConnector(fail_first=10)
        cache = ClientCache(connector, uri_for, config)

        with pytest.raises(ClientConnectError) as exc_info:
            await cache.get_or_create(40000)

        assert exc_info.value.context["uri"] == "http://127.0.0.1:40000"
        assert connector.connect_count("http://127.0.0.1:40000") == 3
        assert 40000 not in cache
        assert cache._pending == {}

    async def test_failure_is_not_cached(self, config: RelayConfig) -> None:
        connector = FakeConnector(fail_first=3)
        cache = ClientCache(connector, uri_for, config)

        with pytest.raises(ClientConnectError):
            await cache.get_or_create(40000)
        client = await cache.get_or_create(40000)

        assert client is cache.get(40000)

    async def test_handshake_timeout(self) -> None:
        connector = FakeConnector(delay=5)
        cache = ClientCache(
            connector,
            uri_for,
            RelayConfig(client_connect_timeout_seconds=0.05, client_connect_attempts=1),
        )

        with pytest.raises(ClientConnectError):
            await cache.get_or_create(40000)

    async def test_no_connector(self) -> None:
        cache = ClientCache(None, uri_for)

        with pytest.raises(ClientConnectError, match="No client connector"):
            await cache.get_or_create(40000)
        assert cache._pending == {}

    async def test_cancelled_waiter_still_caches_client(self, config: RelayConfig) -> None:
        """Cancelling a caller does not abort the shared handshake."""
        connector = FakeConnector(delay=0.05)
        cache = ClientCache(connector, uri_for, config)

        waiter = asyncio.create_task(cache.get_or_create(40000))
        await asyncio.sleep(0.01)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        client = await cache.get_or_create(40000)
        assert connector.connect_count("http://127.0.0.1:40000") == 1
        assert client is connector.clients[0]


class TestDiscard:
    """Stopping and forgetting clients."""

    async def test_discard_stops_client(self, config: RelayConfig) -> None:
        connector = FakeConnector()
        cache = ClientCache(connector, uri_for, config)
        client = await cache.get_or_create(40000)

        await cache.discard(40000)

        assert isinstance(client, FakeClient)
        assert client.stopped
        assert 40000 not in cache
        assert connector.events == [("client_stop", 40000)]

    async def test_discard_unknown_port_is_noop(self, config: RelayConfig) -> None:
        cache = ClientCache(FakeConnector(), uri_for, config)
        await cache.discard(12345)

    async def test_discard_fails_pending_waiters(self, config: RelayConfig) -> None:
        """Waiters see a connect error, not a cancellation they never asked for."""
        connector = FakeConnector(delay=5)
        cache = ClientCache(connector, uri_for, config)

        waiter = asyncio.create_task(cache.get_or_create(40000))
        await asyncio.sleep(0.01)
        await cache.discard(40000)

        with pytest.raises(ClientConnectError, match="discarded"):
            await waiter
        assert not waiter.cancelled()
        assert 40000 not in cache
        assert connector.clients == []

    async def test_cancelled_waiter_still_sees_cancellation(self, config: RelayConfig) -> None:
        connector = FakeConnector(delay=5)
        cache = ClientCache(connector, uri_for, config)

        waiter = asyncio.create_task(cache.get_or_create(40000))
        await asyncio.sleep(0.01)
        waiter.cancel()

        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert 40000 in cache._pending
        await cache.discard(40000)

    async def test_client_stop_failure_is_logged(self, config: RelayConfig) -> None:
        class BrokenClient(FakeClient):
            async def stop(self) -> None:
                raise RuntimeError("already closed")

        class BrokenConnector(FakeConnector):
            async def connect(self, uri: str) -> FakeClient:
                return BrokenClient(40000, self.events)

        cache = ClientCache(BrokenConnector(), uri_for, config)
        await cache.get_or_create(40000)

        await cache.discard(40000)

        assert 40000 not in cache

    async def test_clear_stops_everything(self, config: RelayConfig) -> None:
        connector = FakeConnector()
        cache = ClientCache(connector, uri_for, config)
        await asyncio.gather(*(cache.get_or_create(p) for p in (40000, 40001, 40002)))

        await cache.clear()

        assert len(cache) == 0
        assert sorted(port for _, port in connector.events) == [40000, 40001, 40002]

    async def test_clear_discards_connects_started_during_teardown(self, config: RelayConfig) -> None:
        connector = FakeConnector()
        cache = ClientCache(connector, uri_for, config)
        client = await cache.get_or_create(40000)
        connector.delay = 5
        late: list[asyncio.Task[ServiceClient]] = []
        stop_client = client.stop

        async def stop_while_another_port_connects() -> None:
            late.append(asyncio.create_task(cache.get_or_create(40001)))
            await asyncio.sleep(0)
            await stop_client()

        client.stop = stop_while_another_port_connects  # type: ignore[method-assign]

        await cache.clear()

        assert len(cache) == 0
        assert cache._pending == {}
        with pytest.raises(ClientConnectError):
            await late[0]
        assert [c.port for c in connector.clients] == [40000]
