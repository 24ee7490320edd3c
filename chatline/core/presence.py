from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from . import proto
from .registry import PresenceState, SessionRegistry
from .store import ChatStore, StoreError


"""
Presence sweep
--------------
Every ``interval_s`` seconds, independent of traffic:
  • take a snapshot of every registered session
  • reclassify each as online or idle from the age of its last activity
  • broadcast the classification of every user to every session, changed or not
  • persist last_seen for users that are still active

Unchanged states are re-sent too: a client that missed a presence
delta (reconnect race, dropped frame) converges on the next sweep.
"""


log = logging.getLogger("chatline.presence")

SWEEP_INTERVAL_S = 60.0


class PresenceMonitor:
    def __init__(
        self,
        registry: SessionRegistry,
        store: Optional[ChatStore] = None,
        interval_s: float = SWEEP_INTERVAL_S,
    ) -> None:
        self.registry = registry
        self.store = store
        self.interval_s = interval_s
        self._task: Optional[asyncio.Task] = None

    async def sweep(self) -> List[PresenceState]:
        """Run one pass and return the states that were broadcast."""

        states = self.registry.snapshot_all()
        for state in states:
            frame = proto.presence_frame(state.user_id, is_online=state.is_online, is_idle=state.is_idle)
            self.registry.broadcast(frame)
        if self.store is not None:
            await self._persist_active(states)
        log.debug("Presence sweep: %d session(s)", len(states))
        return states

    async def _persist_active(self, states: List[PresenceState]) -> None:
        for state in states:
            if not state.is_online:
                continue
            session = self.registry.get(state.user_id)
            if session is None:
                continue
            try:
                await self.store.touch_last_seen(state.user_id, at=session.last_activity_ms)
            except StoreError:
                log.error("Could not persist last_seen for user %s", state.user_id, exc_info=True)

    # ------------------------------------------------------------------
    # Task management
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="presence-sweep")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(max(0.01, self.interval_s))
            try:
                await self.sweep()
            except Exception:
                log.exception("presence sweep failed")


__all__ = ["PresenceMonitor", "SWEEP_INTERVAL_S"]
