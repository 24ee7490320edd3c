from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from typing import Any, Dict, Optional

import orjson
import websockets

from chatline.client.pending import PendingSends
from chatline.core import proto
from chatline.core.credentials import b64url_decode

log = logging.getLogger("chatline.cmd.client")

HISTORY_PAGE = 50


def token_subject(token: str) -> int:
    """Read the user id out of a token without verifying it."""

    body = token.partition(".")[0]
    return int(orjson.loads(b64url_decode(body))["sub"])


def _presence_label(entry: Dict[str, Any]) -> str:
    if entry.get("isOnline"):
        return "online"
    return "idle" if entry.get("isIdle") else "offline"


class ClientApp:
    def __init__(self, server_url: str, token: str) -> None:
        self.server_url = server_url
        self.token = token
        self.user_id = token_subject(token)
        self.pending = PendingSends(self.user_id)
        self.active_contact: Optional[int] = None
        self.ws: Optional[Any] = None
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        url = f"{self.server_url.rstrip('/')}/?token={self.token}"
        async with websockets.connect(url) as ws:
            self.ws = ws
            receiver = asyncio.create_task(self._rx_loop())
            try:
                await self._command_loop()
            finally:
                self.stop_event.set()
                receiver.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await receiver

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print("chatline client ready. Commands: /to <user id>, /typing, /contacts, /add <user id>, /remove <user id>, /history [n], /quit; anything else is sent to the active contact")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            await self._send({"type": "activity"})
            if line.startswith("/"):
                await self._handle_command(line)
            else:
                await self._cmd_say(line)

    async def _handle_command(self, line: str) -> None:
        parts = line.split()
        cmd = parts[0]
        if cmd == "/to" and len(parts) == 2 and parts[1].isdigit():
            await self._cmd_select(int(parts[1]))
        elif cmd == "/typing" and self.active_contact is not None:
            await self._send({"type": "typing", "senderId": self.user_id, "receiverId": self.active_contact, "isTyping": True})
        elif cmd == "/contacts":
            await self._send({"type": "contacts"})
        elif cmd in {"/add", "/remove"} and len(parts) == 2 and parts[1].isdigit():
            await self._send({"type": "contact-" + cmd[1:], "contactId": int(parts[1])})
        elif cmd == "/history" and self.active_contact is not None:
            limit = int(parts[1]) if len(parts) == 2 and parts[1].isdigit() else None
            await self._request_history(self.active_contact, limit)
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print("Unknown command")

    async def _cmd_select(self, contact_id: int) -> None:
        self.active_contact = contact_id
        await self._send({"type": "presence", "contactId": contact_id, "isActive": True})
        await self._mark_read(contact_id)
        await self._request_history(contact_id, HISTORY_PAGE)
        print(f"Now talking to {contact_id}")

    async def _request_history(self, contact_id: int, limit: Optional[int]) -> None:
        frame: Dict[str, Any] = {"type": "history", "contactId": contact_id}
        if limit:
            frame["limit"] = limit
        await self._send(frame)

    async def _mark_read(self, contact_id: int) -> None:
        await self._send({"type": "status-update", "senderId": contact_id, "receiverId": self.user_id})

    async def _cmd_say(self, text: str) -> None:
        if self.active_contact is None:
            print("Pick a contact first with /to <user id>")
            return
        frame, entry = self.pending.create(self.active_contact, text)
        await self._send(frame)
        print(f"[me -> {entry.receiver_id}] {text} (sending...)")

    async def _rx_loop(self) -> None:
        assert self.ws is not None
        try:
            async for raw in self.ws:
                try:
                    frame = proto.decode_frame(raw)
                except ValueError:
                    log.warning("Dropped invalid frame: %s", raw)
                    continue
                await self._handle_incoming(frame)
        except websockets.ConnectionClosed as exc:
            if exc.rcvd is not None and exc.rcvd.code == proto.CLOSE_UNAUTHORIZED:
                print("Server rejected the token")
            else:
                print("Connection lost")
        finally:
            self.stop_event.set()

    async def _handle_incoming(self, frame: Dict[str, Any]) -> None:
        typ = frame.get("type")
        if typ == "message":
            entry = self.pending.confirm(frame)
            if entry is not None:
                print(f"[me -> {entry.receiver_id}] {entry.content} ({entry.state}, id {entry.server_id})")
            elif frame.get("sender_id") != self.user_id:
                print(f"[{frame.get('sender_id')}] {frame.get('content')}")
                if frame.get("sender_id") == self.active_contact:
                    await self._mark_read(self.active_contact)
        elif typ == "status-update":
            for entry in self.pending.apply_status_update(frame):
                print(f"[read] {entry.content}")
        elif typ == "presence":
            log.info("User %s is %s", frame.get("userId"), _presence_label(frame))
        elif typ == "typing":
            if frame.get("isTyping"):
                print(f"[{frame.get('senderId')} is typing]")
        elif typ == "new-contact":
            contact = frame.get("contact") or {}
            print(f"[contact] {contact.get('username')} ({contact.get('status')})")
        elif typ == "contact-added":
            contact = frame.get("contact") or {}
            print(f"[contact] added {contact.get('username')} ({contact.get('status')})")
        elif typ == "contact-removed":
            print(f"[contact] {frame.get('contactId')} {'removed' if frame.get('removed') else 'was not a contact'}")
        elif typ == "contacts":
            for contact in frame.get("contacts") or []:
                print(f"  {contact['id']:>5} {contact['username']} ({contact['status']}, {_presence_label(contact)})")
            for request in frame.get("requests") or []:
                print(f"  {request['id']:>5} {request['username']} wants to add you")
        elif typ == "history":
            for msg in frame.get("messages") or []:
                who = "me" if msg.get("sender_id") == self.user_id else msg.get("sender_id")
                print(f"[{msg.get('timestamp')}] [{who}] {msg.get('content')} ({msg.get('status')})")
        elif typ == "error":
            print(f"[error] {frame.get('about')}: {frame.get('reason')}")
        else:
            log.debug("Unhandled frame %s", typ)

    async def _send(self, frame: Dict[str, Any]) -> None:
        assert self.ws is not None
        await self.ws.send(proto.encode_frame(frame))


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="chatline terminal client")
    parser.add_argument("--server", default="ws://127.0.0.1:3000", help="ws://host:port of the chatline server")
    parser.add_argument("--token", required=True, help="Bearer token from `chatline-users token`")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    app = ClientApp(args.server, args.token)
    await app.run()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
