"""HTTP client for the list API.

Handles retry for reads and maps error responses back onto the error
taxonomy, so callers see the same exceptions the server raised.
"""

import asyncio
import logging
from typing import Any

import httpx

from .errors import NotFoundError, StorageError, TransportError, ValidationError
from .store import ListItem

logger = logging.getLogger(__name__)


class ListClient:
    """Async client for the list API.

    Only ``GET /users`` is retried. Mutations are sent once: a retried add
    after a lost response would append a duplicate.
    """

    def __init__(
        self,
        base_url: str,
        device_id: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Server URL (e.g., "http://localhost:4000").
            device_id: Originator id sent with every mutation.
            timeout: Request timeout in seconds.
            max_retries: Attempts for idempotent reads.
            transport: Optional httpx transport override.
        """
        self.base_url = base_url.rstrip("/")
        self.device_id = device_id
        self.timeout = timeout
        self.max_retries = max_retries
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ListClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _raise_for_error(self, response: httpx.Response, item_id: int | None = None) -> None:
        if response.status_code < 400:
            return

        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, AttributeError):
            detail = response.text

        if response.status_code == 404 and item_id is not None:
            raise NotFoundError(item_id)
        if response.status_code in (400, 422):
            raise ValidationError(str(detail))
        if response.status_code >= 500:
            raise StorageError(f"HTTP {response.status_code}: {detail}")
        raise TransportError(f"HTTP {response.status_code}: {detail}")

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(
                f"Unreadable response from {response.request.url.path}: {e}"
            ) from e

    async def _post(self, path: str, payload: dict[str, Any], item_id: int | None = None) -> Any:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.HTTPError as e:
            raise TransportError(f"POST {path} failed: {e}") from e

        self._raise_for_error(response, item_id)
        return self._json(response)

    def _parse_items(self, rows: Any) -> list[ListItem]:
        try:
            return [ListItem.from_dict(row) for row in rows]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise TransportError(f"Malformed list data from server: {e!r}") from e

    async def list_items(self) -> list[ListItem]:
        """Fetch the whole list in display order, retrying with backoff.

        Raises:
            StorageError: If the server kept failing.
            TransportError: If the server stayed unreachable.
        """
        backoff = 1.0
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                response = await self._client.get("/users")
                if response.status_code < 500:
                    self._raise_for_error(response)
                    return self._parse_items(self._json(response))

                logger.warning(
                    f"Server error {response.status_code}, "
                    f"attempt {attempt + 1}/{self.max_retries}"
                )
                last_error = StorageError(f"HTTP {response.status_code}")
            except httpx.TimeoutException as e:
                logger.warning(f"Request timeout, attempt {attempt + 1}/{self.max_retries}")
                last_error = TransportError(str(e))
            except httpx.HTTPError as e:
                logger.warning(
                    f"Request failed ({type(e).__name__}), "
                    f"attempt {attempt + 1}/{self.max_retries}"
                )
                last_error = TransportError(str(e))

            if attempt < self.max_retries - 1:
                await asyncio.sleep(backoff)
                backoff *= 2

        raise last_error or TransportError("No attempts made")

    async def add(self, name: str) -> ListItem:
        data = await self._post("/add", {"name": name, "deviceId": self.device_id})
        return self._parse_items([data])[0]

    async def remove(self, item_id: int, index: int) -> dict[str, Any]:
        return await self._post(
            "/delete",
            {"id": item_id, "index": index, "deviceId": self.device_id},
            item_id=item_id,
        )

    async def move(
        self, src_id: int, dest_id: int, src_index: int, dest_index: int
    ) -> dict[str, Any]:
        return await self._post(
            "/move",
            {
                "deviceId": self.device_id,
                "src": src_index,
                "dest": dest_index,
                "src_id": src_id,
                "dest_id": dest_id,
            },
            item_id=src_id,
        )

    async def check_connection(self) -> bool:
        """Check if the server answers its health endpoint."""
        try:
            response = await self._client.get("/api/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False
