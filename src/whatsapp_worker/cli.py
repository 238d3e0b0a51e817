from __future__ import annotations

import argparse
import asyncio
import json

import uvicorn

from .config import get_settings
from .dispatcher import BulkDispatcher, BulkSendResult, DispatchConfig
from .logging import configure_logging
from .providers import build_sender, close_sender


def serve(host: str, port: int) -> None:
    uvicorn.run("whatsapp_worker.main:app", host=host, port=port)


def send(phones: list[str], text: str) -> int:
    """
    Run one bulk send in the foreground and print the aggregate result.

    Uses the same provider and pacing settings as the HTTP worker.
    """
    settings = get_settings()
    configure_logging(settings.service_name, settings.log_level)
    sender = build_sender(settings)
    dispatcher = BulkDispatcher(sender, DispatchConfig.from_settings(settings))

    async def run() -> BulkSendResult:
        try:
            return await dispatcher.dispatch(phones, text.strip())
        finally:
            await close_sender(sender)

    result = asyncio.run(run())
    print(json.dumps(result.to_dict()))
    return 0 if result.failed == 0 else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="whatsapp-worker")
    sub = parser.add_subparsers(dest="command", required=True)

    serve_parser = sub.add_parser("serve", help="run the HTTP worker")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None)

    send_parser = sub.add_parser("send", help="send one message to a list of phones")
    send_parser.add_argument("--text", required=True)
    send_parser.add_argument("phones", nargs="+")

    args = parser.parse_args(argv)

    if args.command == "serve":
        serve(args.host, args.port or get_settings().port)
        return 0
    return send(args.phones, args.text)


if __name__ == "__main__":
    raise SystemExit(main())
