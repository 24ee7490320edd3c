from __future__ import annotations

import logging
from typing import Any, Dict, List

from . import proto
from .registry import SessionRegistry
from .store import ChatStore

log = logging.getLogger("chatline.contacts")


class ContactError(Exception):
    pass


class ContactBook:
    """Mutual opt-in contacts.

    An edge owner → target is a request until target adds owner back; the
    pair is then friends. Each side removes only its own edge.
    """

    def __init__(self, store: ChatStore, registry: SessionRegistry) -> None:
        self.store = store
        self.registry = registry

    async def add(self, owner_id: int, target_id: int) -> Dict[str, Any]:
        """Add ``target_id`` to ``owner_id``'s contacts and tell the target if online.

        Returns the target's contact summary as ``owner_id`` will see it.
        """
        if owner_id == target_id:
            raise ContactError("cannot add yourself as a contact")
        owner = await self.store.get_user(owner_id)
        target = await self.store.get_user(target_id)
        if owner is None or target is None:
            raise ContactError(f"unknown user {target_id if owner else owner_id}")

        created = await self.store.add_contact(owner_id, target_id)
        mutual = await self.store.has_contact(target_id, owner_id)
        if created:
            notice = {
                "id": owner["id"],
                "username": owner["username"],
                "avatar": owner["avatar"],
                "status": "friend" if mutual else "request",
            }
            state = self.registry.state(owner_id)
            notice["isOnline"], notice["isIdle"] = state.is_online, state.is_idle
            self.registry.deliver([target_id], proto.new_contact_frame(notice))
            log.info("User %s added %s (%s)", owner_id, target_id, notice["status"])

        state = self.registry.state(target_id)
        return {
            "id": target["id"],
            "username": target["username"],
            "avatar": target["avatar"],
            "status": "friend" if mutual else "pending",
            "isOnline": state.is_online,
            "isIdle": state.is_idle,
        }

    async def remove(self, owner_id: int, target_id: int) -> bool:
        removed = await self.store.remove_contact(owner_id, target_id)
        if removed:
            log.info("User %s removed contact %s", owner_id, target_id)
        return removed

    async def list(self, owner_id: int) -> List[Dict[str, Any]]:
        return await self.store.list_contacts_with_state(owner_id, self.registry)

    async def requests(self, user_id: int) -> List[Dict[str, Any]]:
        return await self.store.list_contact_requests(user_id)


__all__ = ["ContactBook", "ContactError"]
