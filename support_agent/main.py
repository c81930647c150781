"""CLI entry point for the support agent.

A terminal chat loop for development and prompt tuning.  For production,
use the FastAPI server (support_agent/server.py).

Usage:
    uv run python -m support_agent.main                          # default scenario
    uv run python -m support_agent.main --scenario apparel_store
    uv run python -m support_agent.main --debug                  # show API calls
"""

from __future__ import annotations

import argparse
import logging

from dotenv import load_dotenv

from support_agent.config import DEFAULT_SCENARIO
from support_agent.engine import create_dialogue_engine
from support_agent.errors import ScenarioNotFound

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("support_agent").setLevel(logging.DEBUG if debug else logging.INFO)


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Support agent CLI")
    parser.add_argument(
        "--scenario", default=DEFAULT_SCENARIO,
        help=f"Scenario to chat with (default: {DEFAULT_SCENARIO})",
    )
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    engine = create_dialogue_engine()
    try:
        session_id = engine.start_session(args.scenario)
    except ScenarioNotFound:
        parser.error(
            f"unknown scenario {args.scenario!r} "
            f"(available: {', '.join(engine.scenario_names())})"
        )

    print("\n" + "=" * 60)
    print(f"  Support Agent - CLI Chat ({args.scenario})")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session.")
    print("=" * 60 + "\n")

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye! Have a great day!")
            break

        if user_input.lower() == "new":
            session_id = engine.start_session(args.scenario)
            print(f"\n>> New session started: {session_id[:8]}...\n")
            continue

        try:
            reply = engine.handle_message(session_id, user_input)
        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break

        print(f"\nAgent: {reply}\n")


if __name__ == "__main__":
    main()
