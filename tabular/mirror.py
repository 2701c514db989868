"""Client-side mirror of the shared list.

The mirror holds the order this device displays. Local edits are applied
optimistically and rolled back if the server rejects them; broadcast events
from other devices are reconciled by item id, never by the index the sender
saw.
"""

import logging
from dataclasses import dataclass
from typing import Callable

from .broadcaster import Subscription
from .client import ListClient
from .errors import NotFoundError, TabularError, ValidationError
from .events import AddEvent, MoveEvent, MutationEvent, RemoveEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MirrorEntry:
    """One displayed row. ``id`` is None while a local add is in flight.

    Entries are immutable, so lists handed to change callbacks stay valid.
    """

    id: int | None
    name: str


ChangeCallback = Callable[[list[MirrorEntry]], None]


class ClientMirror:
    """In-memory ordered copy of the list for one device."""

    def __init__(
        self,
        device_id: str,
        client: ListClient,
        on_change: ChangeCallback | None = None,
    ):
        self.device_id = device_id
        self.client = client
        self.items: list[MirrorEntry] = []
        self._on_change = on_change

    @property
    def ids(self) -> list[int | None]:
        return [entry.id for entry in self.items]

    @property
    def names(self) -> list[str]:
        return [entry.name for entry in self.items]

    def _notify(self) -> None:
        if self._on_change:
            self._on_change(list(self.items))

    def _index_of(self, item_id: int) -> int | None:
        for index, entry in enumerate(self.items):
            if entry.id == item_id:
                return index
        return None

    def _index_of_entry(self, target: MirrorEntry) -> int | None:
        for index, entry in enumerate(self.items):
            if entry is target:
                return index
        return None

    def _entry_at(self, index: int) -> MirrorEntry:
        if not 0 <= index < len(self.items):
            raise ValidationError(f"Index {index} out of range for {len(self.items)} items")
        entry = self.items[index]
        if entry.id is None:
            raise ValidationError(f"Item {entry.name!r} is still being added")
        return entry

    async def connect(self) -> None:
        """Load the initial state from the server."""
        await self.refresh()

    async def refresh(self) -> None:
        """Replace local state with the server's order.

        Also discards any optimistic state that has not been confirmed.
        """
        items = await self.client.list_items()
        self.items = [MirrorEntry(id=item.id, name=item.name) for item in items]
        logger.debug(f"Refreshed mirror with {len(self.items)} items")
        self._notify()

    # ==================== Inbound events ====================

    def apply_event(self, event: MutationEvent) -> bool:
        """Reconcile one broadcast event into the local order.

        Returns:
            True if the local order changed.
        """
        if event.originator_id == self.device_id:
            logger.debug(f"Ignoring echo of own {type(event).__name__}")
            return False

        changed = False
        if isinstance(event, AddEvent):
            if self._index_of(event.id) is None:
                self.items.append(MirrorEntry(id=event.id, name=event.name))
                changed = True
        elif isinstance(event, RemoveEvent):
            index = self._index_of(event.id)
            if index is not None:
                del self.items[index]
                changed = True
        elif isinstance(event, MoveEvent):
            index = self._index_of(event.src_id)
            if index is not None:
                entry = self.items.pop(index)
                self.items.insert(min(max(event.dest_index, 0), len(self.items)), entry)
                changed = True

        if changed:
            self._notify()
        else:
            logger.debug(f"{type(event).__name__} did not match local state, skipped")
        return changed

    async def listen(self, subscription: Subscription) -> None:
        """Apply events from a subscription until it ends or is cancelled."""
        async for event in subscription:
            self.apply_event(event)

    # ==================== Local edits ====================

    async def add(self, name: str) -> MirrorEntry:
        """Append an item locally, then confirm it with the server.

        Raises:
            ValidationError: If name is blank.
            TabularError: If the server rejected the add; the local row
                is removed again.
        """
        if not name.strip():
            raise ValidationError("Name must not be empty")

        pending = MirrorEntry(id=None, name=name)
        self.items.append(pending)
        self._notify()

        try:
            item = await self.client.add(name)
        except TabularError:
            index = self._index_of_entry(pending)
            if index is not None:
                del self.items[index]
            self._notify()
            raise

        index = self._index_of_entry(pending)
        existing = self._index_of(item.id)
        if existing is not None:
            # A refresh already delivered the confirmed row
            confirmed = self.items[existing]
            if index is not None:
                del self.items[index]
        else:
            confirmed = MirrorEntry(id=item.id, name=item.name)
            if index is not None:
                self.items[index] = confirmed
            else:
                # A refresh ran before the server committed and dropped the placeholder
                self.items.append(confirmed)
        self._notify()
        return confirmed

    async def remove(self, index: int) -> None:
        """Remove the item at a display index.

        Raises:
            TabularError: If the server rejected the delete; the row is
                restored. A NotFoundError keeps the removal, since the
                server no longer has the item either.
        """
        entry = self._entry_at(index)
        del self.items[index]
        self._notify()

        try:
            await self.client.remove(entry.id, index)
        except NotFoundError:
            logger.info(f"Item {entry.id} was already removed on the server")
        except TabularError:
            self.items.insert(min(index, len(self.items)), entry)
            self._notify()
            raise

    async def move(self, src_index: int, dest_index: int) -> None:
        """Move an item between display indices.

        Raises:
            TabularError: If the server rejected the move; the row goes
                back to src_index.
        """
        entry = self._entry_at(src_index)
        dest_entry = self._entry_at(dest_index)

        self.items.pop(src_index)
        self.items.insert(dest_index, entry)
        self._notify()

        try:
            await self.client.move(entry.id, dest_entry.id, src_index, dest_index)
        except TabularError:
            current = self._index_of_entry(entry)
            if current is not None:
                self.items.pop(current)
                self.items.insert(min(src_index, len(self.items)), entry)
                self._notify()
            raise
