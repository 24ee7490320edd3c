from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from .proto import now_ms

"""
Session Registry
----------------
In-memory map of authenticated user id -> one live connection plus the time
of its last activity. This is the only place that knows who is online.

  • register() replaces any previous session for the same user id; the old
    connection is orphaned and left to close on its own.
  • remove() is guarded: it only deletes when the caller still holds the
    connection that is currently registered, so the close handler of a
    replaced connection cannot evict the session that replaced it.
  • Presence is derived, never stored: online while the last activity is at
    most ``idle_after_ms`` old, idle after that, offline without a session.

All mutations happen on the event loop thread, so no locking is needed.
"""


log = logging.getLogger("chatline.registry")

NowFn = Callable[[], int]

IDLE_AFTER_MS = 5 * 60 * 1000

ONLINE = "online"
IDLE = "idle"
OFFLINE = "offline"


class Pushable(Protocol):
    def push(self, frame: Dict[str, Any]) -> None: ...


@dataclass(slots=True)
class Session:
    user_id: int
    connection: Pushable
    last_activity_ms: int


@dataclass(frozen=True, slots=True)
class PresenceState:
    user_id: int
    is_online: bool
    is_idle: bool

    @property
    def label(self) -> str:
        if self.is_online:
            return ONLINE
        return IDLE if self.is_idle else OFFLINE


class SessionRegistry:
    """Tracks exactly one session per user id."""

    def __init__(self, idle_after_ms: int = IDLE_AFTER_MS, now: NowFn = now_ms) -> None:
        self.idle_after_ms = idle_after_ms
        self.now = now
        self._sessions: Dict[int, Session] = {}

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def register(self, user_id: int, connection: Pushable) -> Session:
        previous = self._sessions.get(user_id)
        if previous is not None and previous.connection is not connection:
            log.info("User %s reconnected; orphaning previous connection", user_id)
        session = Session(user_id=user_id, connection=connection, last_activity_ms=self.now())
        self._sessions[user_id] = session
        return session

    def touch(self, user_id: int) -> None:
        session = self._sessions.get(user_id)
        if session is not None:
            session.last_activity_ms = self.now()

    def remove(self, user_id: int, connection: Pushable) -> bool:
        session = self._sessions.get(user_id)
        if session is None:
            return False
        if session.connection is not connection:
            log.debug("Ignored stale removal for user %s", user_id)
            return False
        del self._sessions[user_id]
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, user_id: int) -> Optional[Session]:
        return self._sessions.get(user_id)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def state(self, user_id: int) -> PresenceState:
        session = self._sessions.get(user_id)
        if session is None:
            return PresenceState(user_id, is_online=False, is_idle=False)
        active = self.now() - session.last_activity_ms <= self.idle_after_ms
        return PresenceState(user_id, is_online=active, is_idle=not active)

    def is_online(self, user_id: int) -> bool:
        return self.state(user_id).is_online

    def is_idle(self, user_id: int) -> bool:
        return self.state(user_id).is_idle

    def snapshot_all(self) -> List[PresenceState]:
        return [self.state(uid) for uid in sorted(self._sessions)]

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def deliver(self, user_ids: Iterable[int], frame: Dict[str, Any]) -> int:
        """Push ``frame`` to each listed user that has a live session.

        Duplicate ids are delivered once. Returns how many sessions got it.
        """
        delivered = 0
        for uid in dict.fromkeys(user_ids):
            session = self._sessions.get(uid)
            if session is None:
                continue
            session.connection.push(frame)
            delivered += 1
        return delivered

    def broadcast(self, frame: Dict[str, Any], *, exclude: Optional[int] = None) -> int:
        targets = [uid for uid in self._sessions if uid != exclude]
        return self.deliver(targets, frame)


__all__ = [
    "SessionRegistry",
    "Session",
    "PresenceState",
    "IDLE_AFTER_MS",
    "ONLINE",
    "IDLE",
    "OFFLINE",
]
