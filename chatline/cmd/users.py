from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import os
import sys
from pathlib import Path

from chatline.cmd.server import load_config
from chatline.core.credentials import TokenAuthority, hash_password, verify_password
from chatline.core.store import ChatStore, DuplicateUser
from chatline.server.runtime import SECRET_ENV

log = logging.getLogger("chatline.cmd.users")


async def _add(db_path: str, username: str, password: str, avatar: str) -> int:
    store = ChatStore(db_path)
    await store.open()
    try:
        return await store.create_user(username, hash_password(password), avatar)
    finally:
        await store.close()


async def _lookup(db_path: str, username: str) -> dict | None:
    store = ChatStore(db_path)
    await store.open()
    try:
        return await store.get_user_by_name(username)
    finally:
        await store.close()


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Provision chatline users and tokens")
    ap.add_argument("--config", type=Path, help="Server YAML config (db_path, secret, token_ttl_secs)")
    sub = ap.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Create a user")
    add.add_argument("username")
    add.add_argument("--password", help="Prompted for when omitted")
    add.add_argument("--avatar", default="")

    tok = sub.add_parser("token", help="Log in: check the password and print a bearer token")
    tok.add_argument("username")
    tok.add_argument("--password", help="Prompted for when omitted")

    args = ap.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = load_config(args.config)
    db_path = config.get("db_path", "chat.db")

    if args.command == "add":
        password = args.password or getpass.getpass(f"Password for {args.username}: ")
        try:
            user_id = asyncio.run(_add(db_path, args.username, password, args.avatar))
        except DuplicateUser as exc:
            log.error("%s", exc)
            return 1
        print(f"Created user {args.username} with id {user_id} in {db_path}")
        return 0

    secret = config.get("secret") or os.getenv(SECRET_ENV, "")
    if not secret:
        log.error("No token secret: set 'secret' in the config or %s", SECRET_ENV)
        return 1
    password = args.password or getpass.getpass(f"Password for {args.username}: ")
    user = asyncio.run(_lookup(db_path, args.username))
    if user is None or not verify_password(password, user["password_hash"]):
        log.error("Invalid username or password")
        return 1
    authority = TokenAuthority(secret, ttl_secs=int(config.get("token_ttl_secs", 3600)))
    print(authority.issue(user["id"]))
    return 0


if __name__ == "__main__":
    sys.exit(main())
