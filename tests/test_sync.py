"""End-to-end sync tests: two mirrors, one server, one broadcast channel."""

import httpx
import pytest
import pytest_asyncio

from tabular.broadcaster import InMemoryBroadcaster
from tabular.client import ListClient
from tabular.config import Config
from tabular.mirror import ClientMirror
from tabular.server import create_app
from tabular.service import MutationService
from tabular.store import OrderedStore


class Device:
    """A client device: mirror plus its subscription."""

    def __init__(self, device_id, app, broadcaster):
        self.client = ListClient(
            "http://tabular.test",
            device_id=device_id,
            transport=httpx.ASGITransport(app=app),
        )
        self.mirror = ClientMirror(device_id, self.client)
        self.subscription = broadcaster.subscribe()

    async def sync(self):
        """Apply every event delivered so far; return how many changed state."""
        applied = 0
        while (event := await self.subscription.get(timeout=0.01)) is not None:
            applied += self.mirror.apply_event(event)
        return applied


@pytest.fixture
def store():
    store = OrderedStore(":memory:")
    store.connect()
    yield store
    store.close()


@pytest_asyncio.fixture
async def broadcaster():
    broadcaster = InMemoryBroadcaster()
    await broadcaster.connect()
    yield broadcaster
    await broadcaster.disconnect()


@pytest.fixture
def move_strategy():
    return "overwrite"


@pytest.fixture
def service(store, broadcaster, move_strategy):
    return MutationService(store, broadcaster, move_strategy=move_strategy)


@pytest_asyncio.fixture
async def devices(service, broadcaster):
    """Two devices connected to the same server with the same starting list."""
    app = create_app(Config(), service)
    for name in ("Alice", "Bob", "Carol"):
        await service.add(name, "seed")

    a = Device("device-a", app, broadcaster)
    b = Device("device-b", app, broadcaster)
    await a.mirror.connect()
    await b.mirror.connect()
    yield a, b
    await a.client.close()
    await b.client.close()


async def server_ids(service):
    return [item.id for item in await service.list()]


class TestConvergence:
    """Tests that mirrors converge on the server order."""

    @pytest.mark.asyncio
    async def test_add_reaches_other_device(self, devices):
        """Test B ends with the item A added, under the id A received."""
        a, b = devices

        entry = await a.mirror.add("X")
        await a.sync()
        await b.sync()

        assert b.mirror.items[-1].name == "X"
        assert b.mirror.items[-1].id == entry.id
        assert a.mirror.ids == b.mirror.ids

    @pytest.mark.asyncio
    async def test_originator_applies_echo_zero_times(self, devices):
        """Test A's own move echo does not change A's order."""
        a, b = devices

        await a.mirror.move(0, 1)
        order = list(a.mirror.ids)

        assert await a.sync() == 0
        assert a.mirror.ids == order
        assert await b.sync() == 1
        assert b.mirror.ids == order

    @pytest.mark.asyncio
    async def test_concurrent_deletes_with_stale_indices(self, devices, service):
        """Test two deletes converge even though each index goes stale."""
        a, b = devices

        await a.mirror.remove(0)  # Alice
        await b.mirror.remove(2)  # Carol, index 2 no longer exists on A
        await a.sync()
        await b.sync()

        assert a.mirror.names == ["Bob"]
        assert b.mirror.names == ["Bob"]
        assert await server_ids(service) == [1]

    @pytest.mark.asyncio
    async def test_same_item_deleted_twice(self, devices, service):
        """Test both devices deleting the same item leaves it gone for both."""
        a, b = devices

        await a.mirror.remove(1)
        await b.mirror.remove(1)  # server answers 404, removal stands
        await a.sync()
        await b.sync()

        assert a.mirror.names == ["Alice", "Carol"]
        assert b.mirror.names == ["Alice", "Carol"]

    @pytest.mark.asyncio
    async def test_forward_move_matches_server(self, devices, service):
        """Test a move to the end leaves mirrors and server in the same order."""
        a, b = devices

        await a.mirror.move(0, 2)
        await b.sync()

        assert a.mirror.ids == [1, 2, 0]
        assert b.mirror.ids == [1, 2, 0]
        assert await server_ids(service) == [1, 2, 0]

    @pytest.mark.asyncio
    async def test_backward_move_overwrite_diverges(self, devices, service, store):
        """Test a single backward move under overwrite lands one slot late on the server.

        Carol is stored at position dest + 1 = 1 and wins the tie with Bob, so
        the server reads [Alice, Carol, Bob] while both mirrors show Carol
        first. Only a refresh brings the mirrors back in line.
        """
        a, b = devices

        await a.mirror.move(2, 0)
        await b.sync()

        assert a.mirror.ids == [2, 0, 1]
        assert b.mirror.ids == [2, 0, 1]
        assert await server_ids(service) == [0, 2, 1]
        assert store.get_stats()["positions_dense"] is False

        await a.mirror.refresh()
        assert a.mirror.ids == [0, 2, 1]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("move_strategy", ["rerank"])
    async def test_backward_move_rerank_converges(self, devices, service, store):
        """Test rerank places the moved item exactly where every mirror put it."""
        a, b = devices

        await a.mirror.move(2, 0)
        await b.sync()

        assert a.mirror.ids == [2, 0, 1]
        assert b.mirror.ids == [2, 0, 1]
        assert await server_ids(service) == [2, 0, 1]
        assert store.get_stats()["positions_dense"] is True

    @pytest.mark.asyncio
    async def test_refresh_recovers_lost_broadcast(self, devices, broadcaster):
        """Test a device that missed an event catches up on refresh."""
        a, b = devices
        b.subscription.close()

        await a.mirror.add("Dan")
        await b.sync()
        assert "Dan" not in b.mirror.names

        await b.mirror.refresh()
        assert b.mirror.ids == a.mirror.ids
