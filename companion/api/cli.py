"""
Interactive terminal client for the companion engine.

Architectural role:
- Terminal interface over `CompanionEngine` for a single owner.
- Loads the owner's companion or creates one from command-line traits.
- Renders streamed responses chunk-by-chunk.

Request lifecycle (per user turn):
1. Read stdin.
2. Handle local commands (`exit`/`quit`, `clear`, `/status`).
3. Stream the turn through the engine with the local conversation window.
4. Print chunks as they arrive, then emotion and suggestions.

Error handling strategy:
- Engine errors of a turn are printed and the loop continues.
- EOF and keyboard interrupts end the session without a traceback.

Side effects:
- With `STORAGE_BACKEND=file` companions and memories persist under `DATA_DIR`.
"""

import argparse
import asyncio
import sys

from companion.config import EngineSettings
from companion.core.engine import CompanionEngine, build_engine
from companion.core.models import ConversationTurn
from companion.errors import CompanionError, NotFound
from companion.logging_config import setup_logging
from companion.registry.models import TRAIT_NAMES


if hasattr(sys.stdout, "reconfigure"):
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Chat with your companion in the terminal.")
    parser.add_argument("--owner", required=True, help="Owner id the companion belongs to")
    parser.add_argument("--name", default="Nova", help="Name used when a companion is created")
    parser.add_argument("--interest", action="append", default=[], help="Companion interest (repeatable)")
    for trait in TRAIT_NAMES:
        parser.add_argument(f"--{trait}", type=float, default=None, help=f"{trait} in [0, 1]")
    parser.add_argument("--log-level", default=None, help="Logging level (default: LOG_LEVEL or WARNING)")
    return parser.parse_args(argv)


async def load_or_create(engine: CompanionEngine, args):
    try:
        return await engine.get_companion_by_owner(args.owner)
    except NotFound:
        traits = {t: getattr(args, t) for t in TRAIT_NAMES if getattr(args, t) is not None}
        print(f"Creating companion '{args.name}'...")
        return await engine.create_companion(args.owner, args.name, traits, args.interest)


def print_status(companion):
    print(f"Companion: {companion.name} ({companion.id})")
    print(f"Style: {companion.communication_style}")
    print(f"Relationship level: {companion.relationship_level:.1f}")
    print(f"Interactions: {companion.interaction_count}")


async def chat_loop(engine: CompanionEngine, companion_id: str, window_size: int):
    history: list[ConversationTurn] = []

    while True:
        try:
            message = (await asyncio.to_thread(input, "You: ")).strip()
        except (EOFError, KeyboardInterrupt):
            print("\nBye.")
            return

        if not message:
            continue

        if message.lower() in ("exit", "quit"):
            print("Bye.")
            return

        if message.lower() == "clear":
            history.clear()
            print("Conversation window cleared.")
            continue

        if message.lower() == "/status":
            print_status(await engine.get_companion(companion_id))
            continue

        print("\nCompanion: ", end="", flush=True)
        reply = ""

        async for event in engine.stream_chat(companion_id, message, history=history):
            if event.type == "chunk":
                reply += event.content
                print(event.content, end="", flush=True)
            elif event.type == "error":
                print(f"\n[{event.code}] {event.message}")
            else:
                emotion = event.data.get("emotion", {})
                print(f"\n\n(mood: {emotion.get('sentiment', 'neutral')})")
                for suggestion in event.data.get("suggestions", []):
                    print(f"  > {suggestion}")

                history.append(ConversationTurn("user", message))
                history.append(ConversationTurn("companion", event.data.get("text", reply)))
                del history[:-window_size]

        print("\n" + "-" * 60)


async def run(args) -> int:
    settings = EngineSettings.from_env()
    setup_logging(args.log_level or "WARNING")
    engine = build_engine(settings)

    try:
        try:
            companion = await load_or_create(engine, args)
        except CompanionError as exc:
            print(f"Could not load companion: [{exc.code}] {exc.message}")
            return 1

        print_status(companion)
        print("Type 'exit' to quit, 'clear' to reset the window, '/status' for stats.")
        print("-" * 60)

        await chat_loop(engine, companion.id, settings.generation.window_size)
        return 0
    finally:
        await engine.close()


def main(argv=None):
    args = parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nOperation cancelled by user.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
