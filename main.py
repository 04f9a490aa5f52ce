"""Tavern generation: dev launcher. Sends one message through the pipeline and prints the reply."""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

DATA_DIR = Path(os.getenv("DATA_DIR", "data"))


def _load_character(path: Path):
    from tavern_gen.models import Participant

    return Participant.model_validate(json.loads(path.read_text()))


async def run(args: argparse.Namespace) -> int:
    from tavern_gen.config import load_settings
    from tavern_gen.errors import TavernError
    from tavern_gen.hooks import GenerationHooks, HookRegistry
    from tavern_gen.llm import EchoLLM, HttpLLM
    from tavern_gen.models import ChatState, Participant
    from tavern_gen.pipeline import ChatSession, GenerationOrchestrator, GroupScheduler
    from tavern_gen.storage import Storage
    from tavern_gen.tokenizer import ApproxTokenizer

    try:
        settings = load_settings(args.config, env_file=ROOT / ".env")
    except TavernError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    characters = [_load_character(p) for p in args.character]
    if not characters:
        characters = [Participant(avatar="assistant.png", name="Assistant")]
    persona = Participant(avatar="user.png", name=args.persona_name)

    class NoticePrinter(GenerationHooks):
        async def on_notice(self, level: str, message: str) -> None:
            print(f"[{level}] {message}", file=sys.stderr)

    storage = Storage(args.data_dir)
    hooks = HookRegistry()
    session = ChatSession(ChatState(metadata={"members": [c.avatar for c in characters]}))
    orchestrator = GenerationOrchestrator(
        session,
        characters=characters,
        persona=persona,
        settings=settings,
        tokenizer=ApproxTokenizer(),
        client_factory=(lambda profile: EchoLLM()) if args.echo else HttpLLM.from_profile,
        book_lookup=storage.get_book,
        hooks=hooks,
    )
    hooks.register(GroupScheduler(orchestrator))
    hooks.register(NoticePrinter())

    await orchestrator.send_message(args.message)
    replies = [m for m in session.chat.messages if not m.is_user]
    for reply in replies:
        print(f"{reply.name}: {reply.mes}")
    return 0 if replies else 1


def main():
    parser = argparse.ArgumentParser(description="Tavern generation dev launcher")
    parser.add_argument("message", help="Message to send as the user")
    parser.add_argument("--config", type=Path, default=DATA_DIR / "config.json",
                        help="Settings file (default: ./data/config.json)")
    parser.add_argument("--data-dir", type=Path, default=DATA_DIR,
                        help="Data directory holding lorebooks/ (default: ./data)")
    parser.add_argument("--character", type=Path, action="append", default=[],
                        help="Character JSON file; repeat for a group chat")
    parser.add_argument("--persona-name", default="User",
                        help="Name the user speaks as")
    parser.add_argument("--echo", action="store_true",
                        help="Use the echo client instead of a real backend")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "WARNING"))
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
