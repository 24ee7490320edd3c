# tests/test_contacts.py
from __future__ import annotations

import pytest

from chatline.core.contacts import ContactBook, ContactError


@pytest.fixture
def book(store, registry):
    return ContactBook(store, registry)


@pytest.mark.asyncio
async def test_add_sends_request_to_online_target(book, registry, users, make_conn):
    a, b = users["alice"], users["bob"]
    bob = make_conn("bob")
    registry.register(b, bob)

    summary = await book.add(a, b)

    assert summary["id"] == b and summary["username"] == "bob"
    assert summary["status"] == "pending"
    assert summary["isOnline"] is True

    [notice] = bob.of_type("new-contact")
    assert notice["contact"]["id"] == a
    assert notice["contact"]["status"] == "request"
    assert notice["contact"]["isOnline"] is False


@pytest.mark.asyncio
async def test_adding_back_makes_both_friends(book, registry, users, make_conn):
    a, b = users["alice"], users["bob"]
    alice = make_conn("alice")
    registry.register(a, alice)

    await book.add(a, b)
    summary = await book.add(b, a)

    assert summary["status"] == "friend"
    [notice] = alice.of_type("new-contact")
    assert notice["contact"]["status"] == "friend"
    assert [c["status"] for c in await book.list(a)] == ["friend"]
    assert await book.requests(b) == []


@pytest.mark.asyncio
async def test_repeat_add_does_not_notify_again(book, registry, users, make_conn):
    a, b = users["alice"], users["bob"]
    bob = make_conn("bob")
    registry.register(b, bob)

    await book.add(a, b)
    await book.add(a, b)
    assert len(bob.of_type("new-contact")) == 1


@pytest.mark.asyncio
async def test_requests_lists_one_sided_edges(book, users):
    a, b, c = users["alice"], users["bob"], users["carol"]
    await book.add(a, c)
    await book.add(b, c)
    assert sorted(r["id"] for r in await book.requests(c)) == [a, b]


@pytest.mark.asyncio
async def test_list_includes_presence(book, registry, users, make_conn, clock):
    a, b, c = users["alice"], users["bob"], users["carol"]
    await book.add(a, b)
    await book.add(a, c)
    registry.register(b, make_conn())
    clock.advance(minutes=6)

    by_id = {c_["id"]: c_ for c_ in await book.list(a)}
    assert (by_id[b]["isOnline"], by_id[b]["isIdle"]) == (False, True)
    assert (by_id[c]["isOnline"], by_id[c]["isIdle"]) == (False, False)


@pytest.mark.asyncio
async def test_add_self_or_unknown_rejected(book, users):
    with pytest.raises(ContactError):
        await book.add(users["alice"], users["alice"])
    with pytest.raises(ContactError):
        await book.add(users["alice"], 404)


@pytest.mark.asyncio
async def test_remove_only_drops_own_edge(book, users):
    a, b = users["alice"], users["bob"]
    await book.add(a, b)
    await book.add(b, a)

    assert await book.remove(a, b) is True
    assert await book.remove(a, b) is False
    assert await book.list(a) == []
    assert [c["status"] for c in await book.list(b)] == ["pending"]
