"""Tests for the HTTP list client."""

import json
from unittest.mock import patch

import httpx
import pytest

from tabular.client import ListClient
from tabular.errors import NotFoundError, StorageError, TransportError, ValidationError


def make_client(handler, max_retries=3):
    return ListClient(
        "http://tabular.test/",
        device_id="device-a",
        max_retries=max_retries,
        transport=httpx.MockTransport(handler),
    )


class TestListItems:
    """Tests for fetching the list."""

    @pytest.mark.asyncio
    async def test_list_items(self):
        """Test the list is parsed into ListItems in server order."""

        def handler(request):
            assert request.url.path == "/users"
            return httpx.Response(
                200,
                json=[
                    {"id": 1, "name": "Bob", "position": 0, "updated_at": "2026-01-01T00:00:00"},
                    {"id": 0, "name": "Alice", "position": 1, "updated_at": "2026-01-01T00:00:01"},
                ],
            )

        async with make_client(handler) as client:
            items = await client.list_items()

        assert [item.id for item in items] == [1, 0]
        assert items[1].name == "Alice"

    @pytest.mark.asyncio
    async def test_list_retries_server_errors(self):
        """Test a 503 is retried with backoff before succeeding."""
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503, json={"error": "storage", "detail": "locked"})
            return httpx.Response(200, json=[])

        with patch("tabular.client.asyncio.sleep") as mock_sleep:
            async with make_client(handler) as client:
                assert await client.list_items() == []

        assert len(calls) == 3
        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_list_gives_up(self):
        """Test exhausted retries raise the last error."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with patch("tabular.client.asyncio.sleep"):
            async with make_client(handler, max_retries=2) as client:
                with pytest.raises(TransportError):
                    await client.list_items()

    @pytest.mark.asyncio
    async def test_list_retries_read_errors(self):
        """Test a dropped connection mid-response is retried, then surfaces as TransportError."""
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadError("connection reset", request=request)

        with patch("tabular.client.asyncio.sleep"):
            async with make_client(handler, max_retries=2) as client:
                with pytest.raises(TransportError):
                    await client.list_items()

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_list_unreadable_body(self):
        """Test a 200 that is not a JSON list of items raises TransportError."""
        async with make_client(lambda request: httpx.Response(200, text="<html>")) as client:
            with pytest.raises(TransportError):
                await client.list_items()

        async with make_client(lambda request: httpx.Response(200, json=[{"name": "x"}])) as client:
            with pytest.raises(TransportError):
                await client.list_items()


class TestMutations:
    """Tests for add/remove/move requests."""

    @pytest.mark.asyncio
    async def test_add_sends_device_id(self):
        """Test add posts the name and originator id."""

        def handler(request):
            body = json.loads(request.content)
            assert request.url.path == "/add"
            assert body == {"name": "Alice", "deviceId": "device-a"}
            return httpx.Response(200, json={"id": 0, "name": "Alice", "deviceId": "device-a"})

        async with make_client(handler) as client:
            item = await client.add("Alice")

        assert item.id == 0
        assert item.name == "Alice"

    @pytest.mark.asyncio
    async def test_move_payload(self):
        """Test move uses the wire field names."""
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json=seen)

        async with make_client(handler) as client:
            await client.move(src_id=4, dest_id=7, src_index=0, dest_index=2)

        assert seen == {"deviceId": "device-a", "src": 0, "dest": 2, "src_id": 4, "dest_id": 7}

    @pytest.mark.asyncio
    async def test_not_found(self):
        """Test a 404 maps to NotFoundError for the requested id."""

        def handler(request):
            return httpx.Response(404, json={"error": "not_found", "detail": "No item with id 3"})

        async with make_client(handler) as client:
            with pytest.raises(NotFoundError) as exc_info:
                await client.remove(3, 0)

        assert exc_info.value.item_id == 3

    @pytest.mark.asyncio
    async def test_validation_error(self):
        """Test a 400 maps to ValidationError with the server's detail."""

        def handler(request):
            return httpx.Response(400, json={"error": "validation", "detail": "Name must not be empty"})

        async with make_client(handler) as client:
            with pytest.raises(ValidationError, match="Name must not be empty"):
                await client.add("")

    @pytest.mark.asyncio
    async def test_storage_error_not_retried(self):
        """Test a failing mutation is sent exactly once."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, json={"error": "storage", "detail": "locked"})

        async with make_client(handler) as client:
            with pytest.raises(StorageError):
                await client.add("Alice")

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_protocol_error(self):
        """Test a broken HTTP exchange on a mutation raises TransportError."""

        def handler(request):
            raise httpx.RemoteProtocolError("server disconnected", request=request)

        async with make_client(handler) as client:
            with pytest.raises(TransportError):
                await client.add("Alice")

    @pytest.mark.asyncio
    async def test_non_json_success(self):
        """Test a 200 with a non-JSON body on a mutation raises TransportError."""
        async with make_client(lambda request: httpx.Response(200, text="ok")) as client:
            with pytest.raises(TransportError):
                await client.remove(0, 0)

    @pytest.mark.asyncio
    async def test_network_failure(self):
        """Test a connection failure on a mutation raises TransportError."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(TransportError):
                await client.remove(0, 0)


class TestCheckConnection:
    """Tests for the health probe."""

    @pytest.mark.asyncio
    async def test_reachable(self):
        """Test a healthy server reports reachable."""
        async with make_client(lambda request: httpx.Response(200, json={})) as client:
            assert await client.check_connection() is True

    @pytest.mark.asyncio
    async def test_unreachable(self):
        """Test a refused connection reports unreachable."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            assert await client.check_connection() is False
