from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, Dict

import yaml

from chatline.server.runtime import ChatServer

log = logging.getLogger("chatline.cmd.server")


def load_config(config_path: Path | None) -> Dict[str, Any]:
    if config_path is None:
        return {}
    return yaml.safe_load(config_path.read_text()) or {}


async def _run(config: Dict[str, Any]) -> None:
    server = ChatServer(config)
    await server.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Server running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await server.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="chatline websocket chat server")
    parser.add_argument("--config", type=Path, help="Path to server YAML config")
    parser.add_argument("--listen", help="host:port, overrides the config")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config(args.config)
    if args.listen:
        config["listen"] = args.listen
    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
