from __future__ import annotations

import logging
from typing import Any

import websockets

from . import proto
from .credentials import CredentialError, TokenAuthority
from .registry import SessionRegistry
from .router import MessageRouter
from .store import ChatStore, StoreError
from .ws import Connection, query_param

log = logging.getLogger("chatline.lifecycle")


class ConnectionLifecycle:
    """Owns a websocket from handshake to close.

    Authenticates with the ``token`` query parameter, registers the session,
    feeds frames to the router one at a time and cleans up on close.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        store: ChatStore,
        router: MessageRouter,
        authority: TokenAuthority,
    ) -> None:
        self.registry = registry
        self.store = store
        self.router = router
        self.authority = authority

    async def handle(self, websocket: Any) -> None:
        """Websocket server handler."""

        try:
            user_id = self.authority.verify(query_param(websocket, "token"))
        except CredentialError as exc:
            log.info("Rejected connection: %s", exc)
            await websocket.close(code=proto.CLOSE_UNAUTHORIZED, reason="unauthorized")
            return

        conn = Connection(websocket=websocket, user_id=user_id)
        await self.on_connect(user_id, conn)
        try:
            async for raw in websocket:
                await self.router.dispatch(user_id, raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            await self.on_disconnect(user_id, conn)

    async def on_connect(self, user_id: int, conn: Any) -> None:
        self.registry.register(user_id, conn)
        await self._persist_last_seen(user_id)
        self.registry.broadcast(proto.presence_frame(user_id, is_online=True, is_idle=False), exclude=user_id)
        for state in self.registry.snapshot_all():
            if state.user_id != user_id:
                conn.push(proto.presence_frame(state.user_id, is_online=state.is_online, is_idle=state.is_idle))
        log.info("User %s connected (%d online)", user_id, len(self.registry))

    async def on_disconnect(self, user_id: int, conn: Any) -> None:
        await self._persist_last_seen(user_id)
        if self.registry.remove(user_id, conn):
            self.registry.broadcast(proto.presence_frame(user_id, is_online=False, is_idle=False))
            log.info("User %s disconnected", user_id)
        else:
            log.debug("Closed superseded connection of user %s", user_id)

    async def _persist_last_seen(self, user_id: int) -> None:
        try:
            await self.store.touch_last_seen(user_id)
        except StoreError:
            log.error("Could not persist last_seen for user %s", user_id, exc_info=True)


__all__ = ["ConnectionLifecycle"]
