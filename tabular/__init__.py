"""Shared users list with real-time sync.

A single sequencer applies add/delete/move mutations to an ordered SQLite
store and broadcasts them over MQTT; each client keeps a mirror of the list
and reconciles events from other devices by item id.
"""

from .errors import NotFoundError, StorageError, TabularError, TransportError, ValidationError
from .events import AddEvent, MoveEvent, MutationEvent, RemoveEvent
from .store import ListItem, OrderedStore

__all__ = [
    "AddEvent",
    "ListItem",
    "MoveEvent",
    "MutationEvent",
    "NotFoundError",
    "OrderedStore",
    "RemoveEvent",
    "StorageError",
    "TabularError",
    "TransportError",
    "ValidationError",
]
