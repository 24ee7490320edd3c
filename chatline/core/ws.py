from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlsplit

import websockets

from .proto import encode_frame

log = logging.getLogger("chatline.ws")


@dataclass(eq=False)
class Connection:
    """One live websocket. Identity (``is``) is what the registry compares."""

    websocket: Any
    user_id: Optional[int] = None
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    _pending: set = field(default_factory=set)

    async def send(self, frame: Dict[str, Any]) -> None:
        text = encode_frame(frame)
        async with self.send_lock:
            await self.websocket.send(text)

    def push(self, frame: Dict[str, Any]) -> None:
        """Best-effort send that never blocks the caller.

        Frames pushed to the same connection keep their order because the
        send lock hands out turns first come, first served.
        """
        task = asyncio.get_running_loop().create_task(self._send_quietly(frame))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send_quietly(self, frame: Dict[str, Any]) -> None:
        try:
            await self.send(frame)
        except websockets.ConnectionClosed:
            log.debug("Dropped %s frame for user %s: connection closed", frame.get("type"), self.user_id)
        except Exception:
            log.debug("Dropped %s frame for user %s", frame.get("type"), self.user_id, exc_info=True)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self.websocket.close(code=code, reason=reason)


def request_path(websocket: Any) -> str:
    request = getattr(websocket, "request", None)
    if request is not None:
        return request.path
    return getattr(websocket, "path", "") or ""


def query_param(websocket: Any, name: str) -> Optional[str]:
    values = parse_qs(urlsplit(request_path(websocket)).query).get(name)
    return values[0] if values else None


__all__ = ["Connection", "request_path", "query_param"]
