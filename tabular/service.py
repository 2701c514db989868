"""Mutation service: the single sequencer for the shared list."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from .broadcaster import Broadcaster
from .errors import TransportError, ValidationError
from .events import (
    ADD_USER,
    MOVE_USER,
    REMOVE_USER,
    AddEvent,
    MoveEvent,
    MutationEvent,
    RemoveEvent,
)
from .store import ListItem, OrderedStore

logger = logging.getLogger(__name__)


@dataclass
class RemoveResult:
    id: int
    index: int


@dataclass
class MoveResult:
    src_index: int
    dest_index: int


class MutationService:
    """Applies list mutations to the store and broadcasts them.

    Every mutation holds one lock from validation through publish, so the
    server sees a total order over mutations and all mirrors converge to
    it. An event is published only after its mutation is committed; a
    store failure publishes nothing. A failed publish is logged and the
    committed mutation stands.
    """

    def __init__(
        self,
        store: OrderedStore,
        broadcaster: Broadcaster,
        move_strategy: str = "overwrite",
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.move_strategy = move_strategy
        self._lock = asyncio.Lock()
        self._publish_failures = 0

    async def _publish(self, event: MutationEvent) -> None:
        try:
            await self.broadcaster.publish(event)
        except TransportError as e:
            self._publish_failures += 1
            logger.warning(
                f"Broadcast failed, clients will catch up on next refresh: {e}",
                extra={"event": event.to_dict()["event"], "originator_id": event.originator_id},
            )

    async def list(self) -> list[ListItem]:
        """Return all items in display order."""
        return self.store.list_items()

    async def add(self, name: str, originator_id: str) -> ListItem:
        """Append a new item.

        Args:
            name: Display name. Must not be blank.
            originator_id: Device that requested the add.

        Returns:
            The stored item with its server-assigned id.

        Raises:
            ValidationError: If name is blank.
            StorageError: If the store failed.
        """
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Name must not be empty")

        async with self._lock:
            item = self.store.insert(name)
            logger.info(
                f"Added item {item.id} ({name!r}) for {originator_id}",
                extra={"event": ADD_USER, "item_id": item.id, "originator_id": originator_id},
            )
            await self._publish(AddEvent(originator_id=originator_id, id=item.id, name=item.name))

        return item

    async def remove(self, item_id: int, index: int, originator_id: str) -> RemoveResult:
        """Delete an item by id.

        The index is only echoed to receivers; it never selects the row.

        Raises:
            NotFoundError: If the id is absent.
            StorageError: If the store failed.
        """
        async with self._lock:
            self.store.delete(item_id)
            logger.info(
                f"Removed item {item_id} (index {index}) for {originator_id}",
                extra={"event": REMOVE_USER, "item_id": item_id, "originator_id": originator_id},
            )
            await self._publish(
                RemoveEvent(originator_id=originator_id, id=item_id, index=index)
            )

        return RemoveResult(id=item_id, index=index)

    async def move(
        self,
        src_id: int,
        dest_id: int,
        src_index: int,
        dest_index: int,
        originator_id: str,
    ) -> MoveResult:
        """Move an item to dest_index using the configured strategy.

        Raises:
            NotFoundError: If src_id is absent.
            StorageError: If the store failed.
        """
        async with self._lock:
            item = self.store.reposition(src_id, dest_index, strategy=self.move_strategy)
            logger.info(
                f"Moved item {src_id} from {src_index} to {dest_index} "
                f"(stored position {item.position}) for {originator_id}",
                extra={"event": MOVE_USER, "item_id": src_id, "originator_id": originator_id},
            )
            await self._publish(
                MoveEvent(
                    originator_id=originator_id,
                    src_id=src_id,
                    dest_id=dest_id,
                    src_index=src_index,
                    dest_index=dest_index,
                )
            )

        return MoveResult(src_index=src_index, dest_index=dest_index)

    def get_status(self) -> dict[str, Any]:
        """Get service status for health checks."""
        return {
            "move_strategy": self.move_strategy,
            "broadcaster_connected": self.broadcaster.is_connected,
            "publish_failures": self._publish_failures,
        }
