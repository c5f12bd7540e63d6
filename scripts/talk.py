#!/usr/bin/env python3
"""
Talk — drive the turn engine from a terminal.

Each line typed is one user utterance; sentences are printed as they would
be handed to speech. Lines starting with '/' are commands:

    /fast on|off     toggle fast-first generation
    /max N           sentence budget (1..10)
    /model NAME      switch model
    /clear           forget the conversation
    /stats           latency summary
    /quit

Usage:
    python scripts/talk.py
    python scripts/talk.py --model gpt-5-mini --fast-first --max-sentences 3
    python scripts/talk.py --config path/to/settings.yaml
"""
import argparse
import asyncio
import json
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def build_callbacks():
    from core.engine import EngineCallbacks

    return EngineCallbacks(
        on_first_sentence=lambda s: print(f"  ▶ {s}"),
        on_remaining_sentences=lambda ss: [print(f"  ▷ {s}") for s in ss],
        on_stream_sentence=lambda s: print(f"  ▶ {s}"),
        on_system=lambda s: print(f"  [system] {s}"),
        on_error=lambda s: print(f"  [error] {s}", file=sys.stderr),
    )


def handle_command(engine, line: str, state: dict) -> bool:
    """Apply a '/' command. Returns False when the session should end."""
    cmd, _, arg = line[1:].partition(" ")
    arg = arg.strip()
    if cmd == "quit":
        return False
    if cmd == "fast":
        engine.set_faster_first(arg.lower() in ("on", "1", "true", "yes"))
        print(f"  fast-first: {engine.fast_first}")
    elif cmd == "max" and arg.isdigit():
        engine.set_max_sentences(int(arg))
        print(f"  max sentences: {engine.max_sentences}")
    elif cmd == "model" and arg:
        state["model"] = arg
        print(f"  model: {arg}")
    elif cmd == "clear":
        engine.clear_history()
        print("  history cleared")
    elif cmd == "stats":
        print(json.dumps(engine.latency.to_dict(), indent=2))
    else:
        print(f"  unknown command: {line}")
    return True


async def run(args):
    from config.settings import load_settings
    from core.engine import TurnEngine
    from providers.factory import create_provider_registry

    settings = load_settings(args.config)
    registry = create_provider_registry(settings)
    overrides = {}
    if args.fast_first:
        overrides["fast_first"] = True
    if args.max_sentences:
        overrides["max_sentences"] = args.max_sentences
    engine = TurnEngine.from_settings(settings, registry, build_callbacks(), **overrides)
    state = {"model": args.model or settings.engine.default_model}

    print(f"Model: {state['model']}  fast-first: {engine.fast_first}  "
          f"max sentences: {engine.max_sentences}   (/quit to exit)")
    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                if not handle_command(engine, line, state):
                    break
                continue
            engine.start_turn(line, state["model"])
            await engine.wait_idle()
    finally:
        await engine.close()
        await registry.close()


def main():
    parser = argparse.ArgumentParser(description="Interactive sentence turn engine")
    parser.add_argument("--model", default=None, help="Model id (default from settings)")
    parser.add_argument("--fast-first", action="store_true", help="Two-phase fast first sentence")
    parser.add_argument("--max-sentences", type=int, default=0, help="Sentence budget (1..10)")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args()
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
