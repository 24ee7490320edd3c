# tests/test_proto.py
from __future__ import annotations

import pytest
from pydantic import ValidationError

from chatline.core import proto


def test_message_event_aliases_and_defaults():
    ev = proto.MessageEvent.model_validate(
        {"type": "message", "senderId": 1, "receiverId": 2, "content": "hi", "extra": "ignored"}
    )
    assert (ev.sender_id, ev.receiver_id, ev.content) == (1, 2, "hi")
    assert ev.message_type == "text"
    assert ev.temp_id is None


@pytest.mark.parametrize("temp_id", [1001, "local-7", 1001.5, 1001.0, True, {"local": 7}, [1, 2]])
def test_temp_id_kept_verbatim(temp_id):
    ev = proto.MessageEvent.model_validate(
        {"type": "message", "senderId": 1, "receiverId": 2, "content": "x", "tempId": temp_id}
    )
    assert ev.temp_id == temp_id
    assert type(ev.temp_id) is type(temp_id)


def test_content_is_required_but_not_trimmed():
    with pytest.raises(ValidationError):
        proto.MessageEvent.model_validate({"senderId": 1, "receiverId": 2})
    ev = proto.MessageEvent.model_validate({"senderId": 1, "receiverId": 2, "content": "  "})
    assert ev.content == "  "


def test_typing_defaults_to_false():
    ev = proto.TypingEvent.model_validate({"senderId": 1, "receiverId": 2})
    assert ev.is_typing is False


def test_presence_event_fields_optional():
    ev = proto.PresenceEvent.model_validate({"type": "presence"})
    assert ev.contact_id is None and ev.is_active is True


def test_every_routed_type_has_a_model():
    assert set(proto.EVENT_MODELS) == {
        "message", "typing", "activity", "presence", "status-update",
        "contact-add", "contact-remove", "contacts", "history",
    }


def test_message_frame_shape():
    row = proto.MessageRow(id=7, sender_id=1, receiver_id=2, content="hi", created_at=0)
    frame = proto.message_frame(row, 1001)
    assert frame == {
        "type": "message",
        "id": 7,
        "sender_id": 1,
        "receiver_id": 2,
        "content": "hi",
        "message_type": "text",
        "status": "sent",
        "timestamp": "1970-01-01T00:00:00.000Z",
        "tempId": 1001,
    }


def test_iso_from_ms_keeps_milliseconds():
    assert proto.iso_from_ms(1_700_000_000_123) == "2023-11-14T22:13:20.123Z"


def test_status_update_frame_copies_ids():
    ids = [3, 4]
    frame = proto.status_update_frame(ids)
    ids.append(5)
    assert frame == {"type": "status-update", "messageIds": [3, 4], "status": "read"}


def test_encode_decode_frame():
    text = proto.encode_frame(proto.presence_frame(3, is_online=False, is_idle=True))
    assert isinstance(text, str)
    assert proto.decode_frame(text) == {"type": "presence", "userId": 3, "isOnline": False, "isIdle": True}
    assert proto.decode_frame(text.encode("utf-8"))["userId"] == 3


@pytest.mark.parametrize("raw", ["", "{", "[]", "null", "42"])
def test_decode_frame_rejects_non_objects(raw):
    with pytest.raises(ValueError):
        proto.decode_frame(raw)
