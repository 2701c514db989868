"""Typed mutation events carried on the broadcast channel.

Each event is a small dataclass tagged on the wire by its ``event`` field.
Field names on the wire (``deviceId``, ``src``, ``dest``...) match what the
mobile clients already send and bind to.
"""

import json
from dataclasses import dataclass
from typing import Any, Union

from .errors import ValidationError

ADD_USER = "addUser"
REMOVE_USER = "removeUser"
MOVE_USER = "moveUser"


@dataclass(frozen=True)
class AddEvent:
    """An item was appended to the list."""

    originator_id: str
    id: int
    name: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": ADD_USER,
            "deviceId": self.originator_id,
            "id": self.id,
            "name": self.name,
        }


@dataclass(frozen=True)
class RemoveEvent:
    """An item was deleted.

    ``index`` is where the originator saw the item. Receivers resolve the
    item by ``id``; the index is stale as soon as another delete lands.
    """

    originator_id: str
    id: int
    index: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": REMOVE_USER,
            "deviceId": self.originator_id,
            "id": self.id,
            "index": self.index,
        }


@dataclass(frozen=True)
class MoveEvent:
    """An item was dragged from src_index to dest_index."""

    originator_id: str
    src_id: int
    dest_id: int
    src_index: int
    dest_index: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": MOVE_USER,
            "deviceId": self.originator_id,
            "src_id": self.src_id,
            "dest_id": self.dest_id,
            "src": self.src_index,
            "dest": self.dest_index,
        }


MutationEvent = Union[AddEvent, RemoveEvent, MoveEvent]


def require_int(data: dict[str, Any], key: str) -> int:
    value = data.get(key)
    # bool is an int subclass but never a valid id or index
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f"Field {key!r} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Field {key!r} must be an integer, got {value!r}") from None


def require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Field {key!r} must be a non-empty string")
    return value


def decode_event(payload: str | bytes | dict[str, Any]) -> MutationEvent:
    """Decode a wire payload into a MutationEvent.

    Args:
        payload: JSON text, raw bytes, or an already-parsed dictionary.

    Returns:
        The matching event dataclass.

    Raises:
        ValidationError: If the payload is not a well-formed event.
    """
    if isinstance(payload, (str, bytes)):
        try:
            data = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Event payload is not valid JSON: {e}") from e
    else:
        data = payload

    if not isinstance(data, dict):
        raise ValidationError("Event payload must be a JSON object")

    event_type = data.get("event")
    originator_id = require_str(data, "deviceId")

    if event_type == ADD_USER:
        return AddEvent(
            originator_id=originator_id,
            id=require_int(data, "id"),
            name=require_str(data, "name"),
        )
    if event_type == REMOVE_USER:
        return RemoveEvent(
            originator_id=originator_id,
            id=require_int(data, "id"),
            index=require_int(data, "index"),
        )
    if event_type == MOVE_USER:
        return MoveEvent(
            originator_id=originator_id,
            src_id=require_int(data, "src_id"),
            dest_id=require_int(data, "dest_id"),
            src_index=require_int(data, "src"),
            dest_index=require_int(data, "dest"),
        )

    raise ValidationError(f"Unknown event type: {event_type!r}")


def encode_event(event: MutationEvent) -> str:
    """Serialize an event to its JSON wire form."""
    return json.dumps(event.to_dict())
