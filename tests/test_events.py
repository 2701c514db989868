"""Tests for mutation event encoding and decoding."""

import json

import pytest

from tabular.errors import ValidationError
from tabular.events import (
    AddEvent,
    MoveEvent,
    RemoveEvent,
    decode_event,
    encode_event,
)


class TestEncode:
    """Tests for the wire form of each event."""

    def test_add_wire_fields(self):
        """Test AddEvent uses the mobile protocol's field names."""
        event = AddEvent(originator_id="device-a", id=3, name="Alice")

        assert json.loads(encode_event(event)) == {
            "event": "addUser",
            "deviceId": "device-a",
            "id": 3,
            "name": "Alice",
        }

    def test_remove_wire_fields(self):
        """Test RemoveEvent carries both id and the observed index."""
        event = RemoveEvent(originator_id="device-a", id=3, index=1)

        assert event.to_dict() == {
            "event": "removeUser",
            "deviceId": "device-a",
            "id": 3,
            "index": 1,
        }

    def test_move_wire_fields(self):
        """Test MoveEvent maps indices onto src/dest."""
        event = MoveEvent(
            originator_id="device-a", src_id=4, dest_id=7, src_index=0, dest_index=2
        )

        assert event.to_dict() == {
            "event": "moveUser",
            "deviceId": "device-a",
            "src_id": 4,
            "dest_id": 7,
            "src": 0,
            "dest": 2,
        }


class TestDecode:
    """Tests for decoding payloads at the channel boundary."""

    def test_decode_json_text(self):
        """Test decoding a JSON string."""
        event = decode_event('{"event": "addUser", "deviceId": "d", "id": 1, "name": "X"}')

        assert event == AddEvent(originator_id="d", id=1, name="X")

    def test_decode_bytes(self):
        """Test decoding raw bytes as delivered by the broker."""
        payload = b'{"event": "removeUser", "deviceId": "d", "id": 1, "index": 0}'

        assert decode_event(payload) == RemoveEvent(originator_id="d", id=1, index=0)

    def test_decode_numeric_strings(self):
        """Test form-style numeric strings are accepted as integers."""
        event = decode_event(
            {"event": "moveUser", "deviceId": "d", "src_id": "1", "dest_id": "2", "src": "0", "dest": "1"}
        )

        assert event == MoveEvent(
            originator_id="d", src_id=1, dest_id=2, src_index=0, dest_index=1
        )

    def test_encode_decode_preserves_event(self):
        """Test an encoded move decodes to an equal event."""
        event = MoveEvent(
            originator_id="device-b", src_id=9, dest_id=2, src_index=5, dest_index=1
        )

        assert decode_event(encode_event(event)) == event

    @pytest.mark.parametrize(
        "payload",
        [
            "not json",
            b"\xff\xfe",
            "[1, 2, 3]",
            '{"event": "renameUser", "deviceId": "d"}',
            '{"event": "addUser", "id": 1, "name": "X"}',
            '{"event": "addUser", "deviceId": "", "id": 1, "name": "X"}',
            '{"event": "addUser", "deviceId": "d", "id": "one", "name": "X"}',
            '{"event": "addUser", "deviceId": "d", "id": 1, "name": ""}',
            '{"event": "removeUser", "deviceId": "d", "id": 1}',
            '{"event": "removeUser", "deviceId": "d", "id": true, "index": 0}',
            '{"event": "moveUser", "deviceId": "d", "src_id": 1, "dest_id": 2, "src": 0.5, "dest": 1}',
        ],
    )
    def test_malformed_payloads_rejected(self, payload):
        """Test malformed payloads raise ValidationError instead of crashing."""
        with pytest.raises(ValidationError):
            decode_event(payload)
