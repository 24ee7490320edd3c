from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import websockets

from chatline.core.contacts import ContactBook
from chatline.core.credentials import TokenAuthority
from chatline.core.lifecycle import ConnectionLifecycle
from chatline.core.presence import PresenceMonitor
from chatline.core.registry import SessionRegistry
from chatline.core.router import MessageRouter
from chatline.core.store import ChatStore

log = logging.getLogger("chatline.server.runtime")

SECRET_ENV = "CHATLINE_SECRET"


class ChatServer:
    """Wires store, registry, router, lifecycle and presence sweep together."""

    def __init__(self, config: Dict[str, Any]) -> None:
        self.cfg = config
        self.listen_host, self.listen_port = self._parse_listen(config.get("listen", "0.0.0.0:3000"))
        self.db_path = config.get("db_path", "chat.db")
        self.secret = config.get("secret") or os.getenv(SECRET_ENV, "")
        if not self.secret:
            raise ValueError(f"no token secret: set 'secret' in the config or {SECRET_ENV}")
        self.token_ttl_secs = int(config.get("token_ttl_secs", 3600))
        self.idle_after_secs = int(config.get("idle_after_secs", 300))
        self.sweep_secs = float(config.get("sweep_secs", 60))

        self.store = ChatStore(self.db_path)
        self.registry = SessionRegistry(idle_after_ms=self.idle_after_secs * 1000)
        self.authority = TokenAuthority(self.secret, ttl_secs=self.token_ttl_secs)
        self.contacts = ContactBook(self.store, self.registry)
        self.router = MessageRouter(self.registry, self.store, self.contacts)
        self.lifecycle = ConnectionLifecycle(self.registry, self.store, self.router, self.authority)
        self.presence = PresenceMonitor(self.registry, self.store, interval_s=self.sweep_secs)

        self._ws_server: Optional[Any] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.store.open()
        self._ws_server = await websockets.serve(self.lifecycle.handle, self.listen_host, self.listen_port)
        self.presence.start()
        log.info("chatline listening on ws://%s:%d", self.listen_host, self.listen_port)

    async def stop(self) -> None:
        await self.presence.stop()
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        await self.store.close()
        log.info("chatline stopped")

    @staticmethod
    def _parse_listen(value: str) -> tuple[str, int]:
        host, port = value.rsplit(":", 1)
        return host, int(port)


__all__ = ["ChatServer", "SECRET_ENV"]
