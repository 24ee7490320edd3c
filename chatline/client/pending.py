from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

NowFn = Callable[[], int]

# local states, in the only order they may be visited
PENDING = "pending"
CONFIRMED = "confirmed"
READ = "read"

_RANK = {PENDING: 0, CONFIRMED: 1, READ: 2}


@dataclass
class PendingSend:
    temp_id: int
    receiver_id: int
    content: str
    message_type: str = "text"
    state: str = PENDING
    server_id: Optional[int] = None
    timestamp: Optional[str] = None

    def advance(self, state: str) -> bool:
        if _RANK[state] <= _RANK[self.state]:
            return False
        self.state = state
        return True


class PendingSends:
    """Client-side bookkeeping for optimistic sends.

    Each outbound message gets a ``tempId`` the server echoes back untouched;
    the echo upgrades the local entry from pending to confirmed and attaches
    the server id, which later read receipts refer to.
    """

    def __init__(self, sender_id: int, now: NowFn = lambda: int(time.time() * 1000)) -> None:
        self.sender_id = sender_id
        self.now = now
        self._by_temp: Dict[int, PendingSend] = {}
        self._by_server: Dict[int, PendingSend] = {}
        self._last_temp = 0

    def _next_temp_id(self) -> int:
        # ms-based like browser clients, but never repeated within a session
        self._last_temp = max(self.now(), self._last_temp + 1)
        return self._last_temp

    def create(self, receiver_id: int, content: str, message_type: str = "text") -> tuple[Dict[str, Any], PendingSend]:
        entry = PendingSend(
            temp_id=self._next_temp_id(),
            receiver_id=receiver_id,
            content=content,
            message_type=message_type,
        )
        self._by_temp[entry.temp_id] = entry
        frame = {
            "type": "message",
            "senderId": self.sender_id,
            "receiverId": receiver_id,
            "content": content,
            "messageType": message_type,
            "tempId": entry.temp_id,
        }
        return frame, entry

    def confirm(self, echo: Dict[str, Any]) -> Optional[PendingSend]:
        """Reconcile a server message echo; None when it is not one of ours."""

        entry = self._by_temp.get(echo.get("tempId"))
        if entry is None or echo.get("sender_id") != self.sender_id:
            return None
        entry.server_id = echo.get("id")
        entry.timestamp = echo.get("timestamp")
        entry.advance(READ if echo.get("status") == "read" else CONFIRMED)
        if entry.server_id is not None:
            self._by_server[entry.server_id] = entry
        return entry

    def apply_status_update(self, frame: Dict[str, Any]) -> List[PendingSend]:
        if frame.get("status") != "read":
            return []
        changed = []
        for mid in frame.get("messageIds") or []:
            entry = self._by_server.get(mid)
            if entry is not None and entry.advance(READ):
                changed.append(entry)
        return changed

    def get(self, temp_id: int) -> Optional[PendingSend]:
        return self._by_temp.get(temp_id)

    def unconfirmed(self) -> Iterable[PendingSend]:
        return [e for e in self._by_temp.values() if e.state == PENDING]


__all__ = ["PendingSend", "PendingSends", "PENDING", "CONFIRMED", "READ"]
