import pytest
import pytest_asyncio

from chatline.core.registry import SessionRegistry
from chatline.core.store import ChatStore

T0 = 1_760_000_000_000


class FakeConnection:
    """Stands in for chatline.core.ws.Connection; records pushed frames."""

    def __init__(self, name: str = "conn") -> None:
        self.name = name
        self.sent: list[dict] = []

    def push(self, frame: dict) -> None:
        self.sent.append(frame)

    def of_type(self, type_: str) -> list[dict]:
        return [f for f in self.sent if f.get("type") == type_]

    def __repr__(self) -> str:
        return f"FakeConnection({self.name!r})"


class Clock:
    def __init__(self, start: int = T0) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, *, seconds: float = 0, minutes: float = 0) -> None:
        self.now += int((seconds + minutes * 60) * 1000)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def registry(clock):
    return SessionRegistry(now=clock)


@pytest.fixture
def make_conn():
    return FakeConnection


@pytest_asyncio.fixture
async def store(tmp_path, clock):
    s = ChatStore(tmp_path / "chat.db", now=clock)
    await s.open()
    try:
        yield s
    finally:
        await s.close()


@pytest_asyncio.fixture
async def users(store):
    """Three users: alice=1, bob=2, carol=3."""
    ids = {}
    for name in ("alice", "bob", "carol"):
        ids[name] = await store.create_user(name, "x")
    return ids
