# tests/test_presence.py
from __future__ import annotations

import asyncio

import pytest

from chatline.core.presence import PresenceMonitor


# -----------------------------
# Utilities / fixtures
# -----------------------------

@pytest.fixture
def monitor(registry, store):
    return PresenceMonitor(registry, store, interval_s=60)


@pytest.fixture
def pair(registry, make_conn, users):
    """alice and bob connected at the same instant."""
    conns = {"alice": make_conn("alice"), "bob": make_conn("bob")}
    registry.register(users["alice"], conns["alice"])
    registry.register(users["bob"], conns["bob"])
    return conns


def states(conn):
    return {f["userId"]: (f["isOnline"], f["isIdle"]) for f in conn.of_type("presence")}


# -----------------------------
# sweep()
# -----------------------------

@pytest.mark.asyncio
async def test_sweep_broadcasts_every_state_to_every_session(monitor, users, pair):
    result = await monitor.sweep()

    assert {s.user_id for s in result} == {users["alice"], users["bob"]}
    for conn in pair.values():
        assert len(conn.of_type("presence")) == 2
        assert states(conn) == {users["alice"]: (True, False), users["bob"]: (True, False)}


@pytest.mark.asyncio
async def test_silent_user_turns_idle_but_stays_registered(monitor, registry, users, pair, clock):
    a, b = users["alice"], users["bob"]
    clock.advance(minutes=6)
    registry.touch(a)

    await monitor.sweep()

    assert states(pair["alice"])[b] == (False, True)
    assert states(pair["bob"])[a] == (True, False)
    assert b in registry


@pytest.mark.asyncio
async def test_unchanged_states_are_resent(monitor, users, pair):
    await monitor.sweep()
    await monitor.sweep()
    frames = pair["alice"].of_type("presence")
    assert len(frames) == 4
    assert frames[:2] == frames[2:]


@pytest.mark.asyncio
async def test_sweep_persists_last_seen_for_active_users_only(monitor, registry, store, users, pair, clock):
    a, b = users["alice"], users["bob"]
    clock.advance(minutes=6)
    registry.touch(a)
    touched_at = clock.now
    clock.advance(seconds=20)

    await monitor.sweep()

    assert (await store.get_user(a))["last_seen"] == touched_at
    assert (await store.get_user(b))["last_seen"] is None


@pytest.mark.asyncio
async def test_sweep_without_store(registry, make_conn):
    conn = make_conn()
    registry.register(5, conn)
    await PresenceMonitor(registry).sweep()
    assert conn.sent == [{"type": "presence", "userId": 5, "isOnline": True, "isIdle": False}]


@pytest.mark.asyncio
async def test_sweep_with_no_sessions_is_quiet(monitor):
    assert await monitor.sweep() == []


# -----------------------------
# Scenario: idle then back
# -----------------------------

@pytest.mark.asyncio
async def test_idle_user_comes_back_on_activity(monitor, registry, users, pair, clock):
    b = users["bob"]
    clock.advance(minutes=6)
    await monitor.sweep()
    assert states(pair["alice"])[b] == (False, True)

    registry.touch(b)
    await monitor.sweep()
    assert states(pair["alice"])[b] == (True, False)


# -----------------------------
# Background task
# -----------------------------

@pytest.mark.asyncio
async def test_start_and_stop_background_loop(registry, make_conn):
    conn = make_conn()
    registry.register(1, conn)
    monitor = PresenceMonitor(registry, interval_s=0.01)

    task = monitor.start()
    assert monitor.start() is task
    await asyncio.sleep(0.05)
    await monitor.stop()

    assert task.done()
    assert len(conn.of_type("presence")) >= 1
    seen = len(conn.sent)
    await asyncio.sleep(0.03)
    assert len(conn.sent) == seen


@pytest.mark.asyncio
async def test_loop_survives_failed_sweep(registry, monkeypatch):
    monitor = PresenceMonitor(registry, interval_s=0.01)
    calls = {"n": 0}

    async def flaky():
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("boom")
        return []

    monkeypatch.setattr(monitor, "sweep", flaky)
    monitor.start()
    await asyncio.sleep(0.06)
    await monitor.stop()
    assert calls["n"] >= 2


@pytest.mark.asyncio
async def test_stop_without_start_is_noop(registry):
    await PresenceMonitor(registry).stop()
