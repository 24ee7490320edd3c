# tests/test_pending.py
from __future__ import annotations

import pytest

from chatline.client.pending import CONFIRMED, PENDING, READ, PendingSends


@pytest.fixture
def pending(clock):
    return PendingSends(sender_id=1, now=clock)


def echo_for(frame, server_id, status="sent"):
    return {
        "type": "message",
        "id": server_id,
        "sender_id": frame["senderId"],
        "receiver_id": frame["receiverId"],
        "content": frame["content"],
        "message_type": frame["messageType"],
        "status": status,
        "timestamp": "2025-10-09T08:53:20.000Z",
        "tempId": frame["tempId"],
    }


def test_create_builds_outbound_frame(pending, clock):
    frame, entry = pending.create(2, "hello")
    assert frame == {
        "type": "message",
        "senderId": 1,
        "receiverId": 2,
        "content": "hello",
        "messageType": "text",
        "tempId": clock.now,
    }
    assert entry.state == PENDING
    assert list(pending.unconfirmed()) == [entry]


def test_temp_ids_unique_within_same_millisecond(pending):
    ids = [pending.create(2, str(i))[1].temp_id for i in range(3)]
    assert len(set(ids)) == 3
    assert ids == sorted(ids)


def test_echo_confirms_matching_entry(pending):
    frame, entry = pending.create(2, "hello")
    confirmed = pending.confirm(echo_for(frame, server_id=55))

    assert confirmed is entry
    assert entry.state == CONFIRMED
    assert entry.server_id == 55
    assert list(pending.unconfirmed()) == []


def test_echo_of_someone_elses_message_is_not_ours(pending):
    frame, entry = pending.create(2, "hello")
    incoming = echo_for(frame, server_id=56)
    incoming["sender_id"] = 2
    assert pending.confirm(incoming) is None
    assert entry.state == PENDING


def test_unknown_temp_id_ignored(pending):
    assert pending.confirm({"type": "message", "sender_id": 1, "tempId": 123, "id": 9}) is None


def test_read_receipt_moves_confirmed_to_read(pending):
    f1, e1 = pending.create(2, "one")
    f2, e2 = pending.create(2, "two")
    pending.confirm(echo_for(f1, 10))
    pending.confirm(echo_for(f2, 11))

    changed = pending.apply_status_update({"type": "status-update", "messageIds": [10, 99], "status": "read"})

    assert changed == [e1]
    assert (e1.state, e2.state) == (READ, CONFIRMED)
    assert pending.apply_status_update({"type": "status-update", "messageIds": [10], "status": "read"}) == []


def test_state_never_goes_backwards(pending):
    frame, entry = pending.create(2, "x")
    pending.confirm(echo_for(frame, 10))
    pending.apply_status_update({"type": "status-update", "messageIds": [10], "status": "read"})

    # a late duplicate echo must not undo the read
    pending.confirm(echo_for(frame, 10))
    assert entry.state == READ


def test_non_read_status_update_ignored(pending):
    frame, entry = pending.create(2, "x")
    pending.confirm(echo_for(frame, 10))
    assert pending.apply_status_update({"messageIds": [10], "status": "sent"}) == []
    assert entry.state == CONFIRMED
