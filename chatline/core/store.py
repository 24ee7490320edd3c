from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

import aiosqlite

from .proto import MessageRow, iso_from_ms, now_ms

if TYPE_CHECKING:
    from .registry import SessionRegistry

"""
ChatStore - SQLite-backed persistence gateway
---------------------------------------------
Durable state for the chat core: users, contact edges and messages.

Tables:
1. users     → identity, unique username, password hash, avatar, last_seen (ms)
2. contacts  → directed edges owner → target; both directions = friends
3. messages  → one row per message, status moves sent → read only

Every sqlite failure surfaces as StoreError so callers can drop the single
event that triggered it without tearing down the connection.
"""

log = logging.getLogger("chatline.store")

NowFn = Callable[[], int]

SCHEMA = """
CREATE TABLE IF NOT EXISTS users(
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    username      TEXT    NOT NULL UNIQUE,
    password_hash TEXT    NOT NULL DEFAULT '',
    avatar        TEXT    NOT NULL DEFAULT '',
    last_seen     INTEGER
);
CREATE TABLE IF NOT EXISTS contacts(
    owner_id   INTEGER NOT NULL,
    target_id  INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    PRIMARY KEY (owner_id, target_id),
    FOREIGN KEY (owner_id)  REFERENCES users(id),
    FOREIGN KEY (target_id) REFERENCES users(id)
);
CREATE TABLE IF NOT EXISTS messages(
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    sender_id    INTEGER NOT NULL,
    receiver_id  INTEGER NOT NULL,
    content      TEXT    NOT NULL,
    message_type TEXT    NOT NULL CHECK(message_type IN ('text', 'image', 'file')),
    status       TEXT    NOT NULL CHECK(status IN ('sent', 'read')),
    created_at   INTEGER NOT NULL,
    FOREIGN KEY (sender_id)   REFERENCES users(id),
    FOREIGN KEY (receiver_id) REFERENCES users(id)
);
CREATE INDEX IF NOT EXISTS idx_messages_pair ON messages(sender_id, receiver_id);
CREATE INDEX IF NOT EXISTS idx_messages_created ON messages(created_at);
"""

_MESSAGE_COLUMNS = "id, sender_id, receiver_id, content, message_type, status, created_at"


class StoreError(Exception):
    """Persistence failed; the triggering operation had no durable effect."""


class DuplicateUser(StoreError):
    pass


def _row_to_message(row: sqlite3.Row) -> MessageRow:
    return MessageRow(**dict(row))


class ChatStore:
    """Async gateway over one aiosqlite connection."""

    def __init__(self, path: Path | str = "chat.db", *, now: NowFn = now_ms) -> None:
        self.path = str(path)
        self.now = now
        self._db: Optional[aiosqlite.Connection] = None
        self._last_ts = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(self.path)
            self._db.row_factory = sqlite3.Row
            await self._db.execute("PRAGMA foreign_keys=ON;")
            await self._db.executescript(SCHEMA)
            await self._db.commit()
            cur = await self._db.execute("SELECT MAX(created_at) FROM messages")
            row = await cur.fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open store at {self.path}: {exc}") from exc
        self._last_ts = row[0] or 0
        log.info("Opened chat store %s", self.path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("store is not open")
        return self._db

    def _next_timestamp(self) -> int:
        ts = max(self.now(), self._last_ts)
        self._last_ts = ts
        return ts

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def create_user(self, username: str, password_hash: str = "", avatar: str = "") -> int:
        try:
            cur = await self.db.execute(
                "INSERT INTO users(username, password_hash, avatar) VALUES(?,?,?)",
                (username, password_hash, avatar),
            )
            await self.db.commit()
        except sqlite3.IntegrityError as exc:
            raise DuplicateUser(f"username {username!r} is taken") from exc
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return cur.lastrowid

    async def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        return await self._fetch_user("SELECT * FROM users WHERE id=?", (user_id,))

    async def get_user_by_name(self, username: str) -> Optional[Dict[str, Any]]:
        return await self._fetch_user("SELECT * FROM users WHERE username=?", (username,))

    async def _fetch_user(self, sql: str, params: tuple) -> Optional[Dict[str, Any]]:
        try:
            cur = await self.db.execute(sql, params)
            row = await cur.fetchone()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return dict(row) if row else None

    async def set_avatar(self, user_id: int, url: str) -> None:
        await self._write("UPDATE users SET avatar=? WHERE id=?", (url, user_id))

    async def touch_last_seen(self, user_id: int, at: Optional[int] = None) -> None:
        ts = self.now() if at is None else at
        await self._write("UPDATE users SET last_seen=? WHERE id=?", (ts, user_id))

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def insert_message(self, sender_id: int, receiver_id: int, content: str, kind: str = "text") -> MessageRow:
        created_at = self._next_timestamp()
        try:
            cur = await self.db.execute(
                "INSERT INTO messages(sender_id, receiver_id, content, message_type, status, created_at) "
                "VALUES(?,?,?,?,?,?)",
                (sender_id, receiver_id, content, kind, "sent", created_at),
            )
            await self.db.commit()
        except sqlite3.Error as exc:
            raise StoreError(f"insert_message failed: {exc}") from exc
        return MessageRow(
            id=cur.lastrowid,
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            message_type=kind,
            status="sent",
            created_at=created_at,
        )

    async def mark_read(self, sender_id: int, receiver_id: int) -> List[int]:
        """Flip every unread sender → receiver row to read; return their ids."""

        # one statement: concurrent calls never report the same id twice
        try:
            cur = await self.db.execute(
                "UPDATE messages SET status='read' "
                "WHERE sender_id=? AND receiver_id=? AND status != 'read' RETURNING id",
                (sender_id, receiver_id),
            )
            rows = await cur.fetchall()
            await self.db.commit()
        except sqlite3.Error as exc:
            raise StoreError(f"mark_read failed: {exc}") from exc
        return sorted(row[0] for row in rows)

    async def load_conversation(self, user_a: int, user_b: int, limit: Optional[int] = None) -> List[MessageRow]:
        # newest first so LIMIT keeps the tail of the conversation
        sql = (
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE (sender_id=? AND receiver_id=?) OR (sender_id=? AND receiver_id=?) "
            "ORDER BY created_at DESC, id DESC LIMIT ?"
        )
        params = (user_a, user_b, user_b, user_a, -1 if limit is None else limit)
        try:
            cur = await self.db.execute(sql, params)
            rows = await cur.fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"load_conversation failed: {exc}") from exc
        return [_row_to_message(row) for row in reversed(rows)]

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    async def add_contact(self, owner_id: int, target_id: int) -> bool:
        """Insert the owner → target edge. Returns False if it already existed."""

        try:
            cur = await self.db.execute(
                "INSERT OR IGNORE INTO contacts(owner_id, target_id, created_at) VALUES(?,?,?)",
                (owner_id, target_id, self.now()),
            )
            await self.db.commit()
        except sqlite3.Error as exc:
            raise StoreError(f"add_contact failed: {exc}") from exc
        return cur.rowcount > 0

    async def remove_contact(self, owner_id: int, target_id: int) -> bool:
        return await self._write("DELETE FROM contacts WHERE owner_id=? AND target_id=?", (owner_id, target_id)) > 0

    async def has_contact(self, owner_id: int, target_id: int) -> bool:
        try:
            cur = await self.db.execute(
                "SELECT 1 FROM contacts WHERE owner_id=? AND target_id=?", (owner_id, target_id)
            )
            return await cur.fetchone() is not None
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    async def list_contacts(self, owner_id: int) -> List[Dict[str, Any]]:
        """Outgoing edges of ``owner_id`` with the target's profile and edge status."""

        sql = """
        SELECT u.id, u.username, u.avatar, u.last_seen,
               EXISTS(SELECT 1 FROM contacts r WHERE r.owner_id = c.target_id AND r.target_id = c.owner_id)
                   AS mutual
        FROM contacts c JOIN users u ON u.id = c.target_id
        WHERE c.owner_id = ?
        ORDER BY u.username ASC
        """
        rows = await self._fetch_all(sql, (owner_id,))
        return [_contact_summary(row) for row in rows]

    async def list_contact_requests(self, user_id: int) -> List[Dict[str, Any]]:
        """Users who added ``user_id`` without being added back."""

        sql = """
        SELECT u.id, u.username, u.avatar, u.last_seen, 0 AS mutual
        FROM contacts c JOIN users u ON u.id = c.owner_id
        WHERE c.target_id = ?
          AND NOT EXISTS(SELECT 1 FROM contacts r WHERE r.owner_id = c.target_id AND r.target_id = c.owner_id)
        ORDER BY c.created_at ASC
        """
        rows = await self._fetch_all(sql, (user_id,))
        return [_contact_summary(row, status="request") for row in rows]

    async def list_contacts_with_state(self, user_id: int, registry: "SessionRegistry") -> List[Dict[str, Any]]:
        contacts = await self.list_contacts(user_id)
        for contact in contacts:
            state = registry.state(contact["id"])
            contact["isOnline"] = state.is_online
            contact["isIdle"] = state.is_idle
        return contacts

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _write(self, sql: str, params: tuple) -> int:
        try:
            cur = await self.db.execute(sql, params)
            await self.db.commit()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return cur.rowcount

    async def _fetch_all(self, sql: str, params: tuple) -> List[sqlite3.Row]:
        try:
            cur = await self.db.execute(sql, params)
            return list(await cur.fetchall())
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc


def _contact_summary(row: sqlite3.Row, status: Optional[str] = None) -> Dict[str, Any]:
    last_seen = row["last_seen"]
    return {
        "id": row["id"],
        "username": row["username"],
        "avatar": row["avatar"],
        "last_seen": iso_from_ms(last_seen) if last_seen else None,
        "status": status or ("friend" if row["mutual"] else "pending"),
    }


__all__ = ["ChatStore", "StoreError", "DuplicateUser", "SCHEMA"]
