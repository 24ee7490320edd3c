from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pydantic import ValidationError

from . import proto
from .contacts import ContactBook, ContactError
from .registry import SessionRegistry
from .store import ChatStore, StoreError

log = logging.getLogger("chatline.router")

Handler = Callable[[int, Any], Awaitable[None]]


class MessageRouter:
    """Validates inbound frames and dispatches them by ``type``.

    The router holds no state of its own. Every emission names its
    destination user ids explicitly and the registry resolves those to
    live connections; users without a session simply miss the frame.
    """

    def __init__(self, registry: SessionRegistry, store: ChatStore, contacts: Optional[ContactBook] = None) -> None:
        self.registry = registry
        self.store = store
        self.contacts = contacts if contacts is not None else ContactBook(store, registry)
        self._handlers: Dict[str, Handler] = {
            "message": self._on_message,
            "typing": self._on_typing,
            "activity": self._on_activity,
            "presence": self._on_presence,
            "status-update": self._on_status_update,
            "contact-add": self._on_contact_add,
            "contact-remove": self._on_contact_remove,
            "contacts": self._on_contacts,
            "history": self._on_history,
        }

    async def dispatch(self, user_id: int, raw: Union[str, bytes]) -> None:
        """Handle one frame from ``user_id``'s connection to completion.

        Malformed frames and persistence failures are logged and dropped;
        nothing raised here should end the connection.
        """
        try:
            data = proto.decode_frame(raw)
        except ValueError:
            log.warning("Dropped unparsable frame from user %s", user_id)
            return

        type_ = data.get("type")
        handler = self._handlers.get(type_) if isinstance(type_, str) else None
        if handler is None:
            log.debug("Ignored frame of unknown type %r from user %s", type_, user_id)
            return

        try:
            event = proto.EVENT_MODELS[type_].model_validate(data)
        except ValidationError as exc:
            log.warning("Dropped malformed %s frame from user %s: %s", type_, user_id, exc.errors(include_url=False))
            return

        try:
            await handler(user_id, event)
        except StoreError:
            log.error("Dropped %s frame from user %s: persistence failed", type_, user_id, exc_info=True)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_message(self, user_id: int, event: proto.MessageEvent) -> None:
        if event.sender_id != user_id:
            log.warning("User %s tried to send a message as %s", user_id, event.sender_id)
            return
        row = await self.store.insert_message(event.sender_id, event.receiver_id, event.content, event.message_type)
        frame = proto.message_frame(row, event.temp_id)
        self.registry.deliver([event.sender_id, event.receiver_id], frame)
        log.debug("Message %s from %s to %s stored", row.id, row.sender_id, row.receiver_id)

    async def _on_typing(self, user_id: int, event: proto.TypingEvent) -> None:
        if event.sender_id != user_id:
            log.warning("User %s sent a typing event as %s", user_id, event.sender_id)
            return
        self.registry.deliver([event.receiver_id], proto.typing_frame(event.sender_id, event.is_typing))

    async def _on_activity(self, user_id: int, event: proto.ActivityEvent) -> None:
        await self._heartbeat(user_id)

    async def _on_presence(self, user_id: int, event: proto.PresenceEvent) -> None:
        # legacy heartbeat; contactId/isActive are informational only
        await self._heartbeat(user_id)

    async def _on_status_update(self, user_id: int, event: proto.StatusUpdateEvent) -> None:
        if event.receiver_id != user_id:
            log.warning("User %s tried to mark messages to %s as read", user_id, event.receiver_id)
            return
        ids = await self.store.mark_read(event.sender_id, event.receiver_id)
        self.registry.deliver([event.sender_id], proto.status_update_frame(ids))
        if ids:
            log.debug("User %s read %d message(s) from %s", user_id, len(ids), event.sender_id)

    # Requests below answer only the connection's own user.

    async def _on_contact_add(self, user_id: int, event: proto.ContactAddEvent) -> None:
        try:
            contact = await self.contacts.add(user_id, event.contact_id)
        except ContactError as exc:
            log.warning("User %s could not add contact %s: %s", user_id, event.contact_id, exc)
            self.registry.deliver([user_id], proto.error_frame("contact-add", str(exc)))
            return
        self.registry.deliver([user_id], proto.contact_added_frame(contact))

    async def _on_contact_remove(self, user_id: int, event: proto.ContactRemoveEvent) -> None:
        removed = await self.contacts.remove(user_id, event.contact_id)
        self.registry.deliver([user_id], proto.contact_removed_frame(event.contact_id, removed))

    async def _on_contacts(self, user_id: int, event: proto.ContactsEvent) -> None:
        contacts = await self.contacts.list(user_id)
        requests = await self.contacts.requests(user_id)
        self.registry.deliver([user_id], proto.contacts_frame(contacts, requests))

    async def _on_history(self, user_id: int, event: proto.HistoryEvent) -> None:
        rows = await self.store.load_conversation(user_id, event.contact_id, limit=event.limit)
        self.registry.deliver([user_id], proto.history_frame(event.contact_id, rows))

    async def _heartbeat(self, user_id: int) -> None:
        if user_id not in self.registry:
            return
        self.registry.touch(user_id)
        await self.store.touch_last_seen(user_id)


__all__ = ["MessageRouter"]
