from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

import orjson
from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Inbound events (client -> server), discriminated by "type"
# ---------------------------------------------------------------------------

MessageKind = Literal["text", "image", "file"]


class InboundEvent(BaseModel):
    """Base for every client frame. Unknown keys are tolerated."""

    type: str

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class MessageEvent(InboundEvent):
    type: Literal["message"] = "message"
    sender_id: int = Field(alias="senderId")
    receiver_id: int = Field(alias="receiverId")
    content: str
    message_type: MessageKind = Field(default="text", alias="messageType")
    # opaque correlation token, echoed back exactly as sent
    temp_id: Any = Field(default=None, alias="tempId")


class TypingEvent(InboundEvent):
    type: Literal["typing"] = "typing"
    sender_id: int = Field(alias="senderId")
    receiver_id: int = Field(alias="receiverId")
    # older clients send "typing" instead of "isTyping"
    is_typing: bool = Field(default=False, validation_alias=AliasChoices("isTyping", "typing"))


class ActivityEvent(InboundEvent):
    type: Literal["activity"] = "activity"


class PresenceEvent(InboundEvent):
    type: Literal["presence"] = "presence"
    contact_id: Optional[int] = Field(default=None, alias="contactId")
    is_active: bool = Field(default=True, alias="isActive")


class StatusUpdateEvent(InboundEvent):
    type: Literal["status-update"] = "status-update"
    sender_id: int = Field(alias="senderId")
    receiver_id: int = Field(alias="receiverId")


class ContactAddEvent(InboundEvent):
    type: Literal["contact-add"] = "contact-add"
    contact_id: int = Field(alias="contactId")


class ContactRemoveEvent(InboundEvent):
    type: Literal["contact-remove"] = "contact-remove"
    contact_id: int = Field(alias="contactId")


class ContactsEvent(InboundEvent):
    type: Literal["contacts"] = "contacts"


class HistoryEvent(InboundEvent):
    type: Literal["history"] = "history"
    contact_id: int = Field(alias="contactId")
    limit: Optional[int] = Field(default=None, ge=1)


EVENT_MODELS: Dict[str, type[InboundEvent]] = {
    "message": MessageEvent,
    "typing": TypingEvent,
    "activity": ActivityEvent,
    "presence": PresenceEvent,
    "status-update": StatusUpdateEvent,
    "contact-add": ContactAddEvent,
    "contact-remove": ContactRemoveEvent,
    "contacts": ContactsEvent,
    "history": HistoryEvent,
}


# ---------------------------------------------------------------------------
# Persisted rows as they travel on the wire
# ---------------------------------------------------------------------------

class MessageRow(BaseModel):
    """A stored message. ``created_at`` is milliseconds since the epoch."""

    id: int
    sender_id: int
    receiver_id: int
    content: str
    message_type: MessageKind = "text"
    status: Literal["sent", "read"] = "sent"
    created_at: int

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "content": self.content,
            "message_type": self.message_type,
            "status": self.status,
            "timestamp": iso_from_ms(self.created_at),
        }


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

CLOSE_UNAUTHORIZED = 4401


def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


def iso_from_ms(value: int) -> str:
    dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def encode_frame(frame: Dict[str, Any]) -> str:
    return orjson.dumps(frame).decode("utf-8")


def decode_frame(raw: Union[str, bytes]) -> Dict[str, Any]:
    """Parse one inbound frame. Raises ValueError when it is not a JSON object."""

    obj = orjson.loads(raw)
    if not isinstance(obj, dict):
        raise ValueError("frame must be a JSON object")
    return obj


# ---------------------------------------------------------------------------
# Outbound frame construction
# ---------------------------------------------------------------------------

def message_frame(row: MessageRow, temp_id: Any) -> Dict[str, Any]:
    frame = row.to_wire()
    frame["type"] = "message"
    frame["tempId"] = temp_id
    return frame


def presence_frame(user_id: int, *, is_online: bool, is_idle: bool) -> Dict[str, Any]:
    return {"type": "presence", "userId": user_id, "isOnline": is_online, "isIdle": is_idle}


def status_update_frame(message_ids: list[int]) -> Dict[str, Any]:
    return {"type": "status-update", "messageIds": list(message_ids), "status": "read"}


def typing_frame(sender_id: int, is_typing: bool) -> Dict[str, Any]:
    return {"type": "typing", "senderId": sender_id, "isTyping": is_typing}


def new_contact_frame(contact: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "new-contact", "contact": contact}


def contact_added_frame(contact: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "contact-added", "contact": contact}


def contact_removed_frame(contact_id: int, removed: bool) -> Dict[str, Any]:
    return {"type": "contact-removed", "contactId": contact_id, "removed": removed}


def contacts_frame(contacts: List[Dict[str, Any]], requests: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"type": "contacts", "contacts": contacts, "requests": requests}


def history_frame(contact_id: int, rows: List[MessageRow]) -> Dict[str, Any]:
    return {"type": "history", "contactId": contact_id, "messages": [row.to_wire() for row in rows]}


def error_frame(about: str, reason: str) -> Dict[str, Any]:
    """Reply to a request frame that could not be carried out."""

    return {"type": "error", "about": about, "reason": reason}


__all__ = [
    "InboundEvent",
    "MessageEvent",
    "TypingEvent",
    "ActivityEvent",
    "PresenceEvent",
    "StatusUpdateEvent",
    "ContactAddEvent",
    "ContactRemoveEvent",
    "ContactsEvent",
    "HistoryEvent",
    "EVENT_MODELS",
    "MessageRow",
    "CLOSE_UNAUTHORIZED",
    "now_ms",
    "iso_from_ms",
    "encode_frame",
    "decode_frame",
    "message_frame",
    "presence_frame",
    "status_update_frame",
    "typing_frame",
    "new_contact_frame",
    "contact_added_frame",
    "contact_removed_frame",
    "contacts_frame",
    "history_frame",
    "error_frame",
]
