"""Entry point for `python -m pantry_chef` and the `pantry-chef` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from pathlib import Path

from pantry_chef import ConversationEngine
from pantry_chef.routing import RoutingError
from pantry_chef.settings import RuntimeSettings
from pantry_chef.state_store import StateStoreError, validate_thread_id

QUIT_COMMANDS = frozenset({"/quit", "/exit"})


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Chat with the pantry_chef recipe assistant")
    parser.add_argument(
        "--thread-id",
        default=None,
        help="Conversation thread to resume (default: a new random thread)",
    )
    parser.add_argument("--message", default=None, help="Send one message, print the reply and exit")
    parser.add_argument("--no-stream", action="store_true", help="Print whole replies instead of streaming tokens")
    parser.add_argument("--reindex", action="store_true", help="Rebuild the recipe similarity index before starting")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


async def send(engine: ConversationEngine, thread_id: str, text: str, *, stream: bool) -> None:
    if not stream:
        reply = await engine.run_turn(thread_id, text)
        print(reply.content)
        return
    async for token in engine.stream_turn(thread_id, text):
        print(token, end="", flush=True)
    print()


async def chat(engine: ConversationEngine, thread_id: str, *, stream: bool) -> None:
    print(f"thread_id={thread_id} (type /quit to leave)")
    while True:
        try:
            line = await asyncio.to_thread(input, "you> ")
        except EOFError:
            print()
            return
        text = line.strip()
        if not text:
            continue
        if text.lower() in QUIT_COMMANDS:
            return
        print("chef> ", end="", flush=True)
        await send(engine, thread_id, text, stream=stream)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    repo_root = Path.cwd()
    thread_id = args.thread_id or uuid.uuid4().hex
    try:
        validate_thread_id(thread_id)
        settings = RuntimeSettings.from_env()
        engine = ConversationEngine.from_settings(settings, repo_root, reindex=args.reindex)
    except (OSError, ValueError, RuntimeError) as exc:
        logging.error("Unable to start the assistant: %s", exc)
        return 1

    stream = not args.no_stream
    try:
        if args.message is not None:
            asyncio.run(send(engine, thread_id, args.message, stream=stream))
        else:
            asyncio.run(chat(engine, thread_id, stream=stream))
    except KeyboardInterrupt:
        print(file=sys.stderr)
        return 130
    except (RoutingError, StateStoreError) as exc:
        logging.error("Conversation aborted: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
