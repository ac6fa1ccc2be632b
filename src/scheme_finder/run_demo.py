"""
CLI entrypoint that runs the scheme finder conversation loop end-to-end.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports when running directly
if __name__ == "__main__":
    repo_root = Path(__file__).resolve().parents[2]
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))

try:
    from src.scheme_finder.config import Settings
    from src.scheme_finder.controller import ConversationController
    from src.scheme_finder.errors import SchemeFinderError
except ImportError:
    # Fallback to relative imports when run as module
    from .config import Settings
    from .controller import ConversationController
    from .errors import SchemeFinderError

HELP_TEXT = """Commands:
  <free text>               describe your situation
  :answer <yes|no|value>    answer the pending question
  :session                  print the stored session snapshot
  :new                      start over with a new session
  quit / exit               leave the demo
"""


def build_controller(args: argparse.Namespace) -> ConversationController:
    settings = Settings.from_env()
    if args.offline:
        settings.openai_api_key = None
    if args.catalog_dir:
        settings.catalog_dir = Path(args.catalog_dir)
    if args.sqlite_path:
        settings.sqlite_path = args.sqlite_path
    return ConversationController.from_settings(settings)


def print_response(response: dict) -> None:
    print(f"Assistant: {response['message']}")
    question = response.get("question")
    if question:
        print(f"  (question {question['question_id']}, round {response['round']}/5)")
    print()
    sys.stdout.flush()


def interactive_loop(controller: ConversationController, language: str) -> None:
    """
    Simple REPL loop: free text goes to submit_utterance, ``:answer`` to submit_answer.
    """

    print("Scheme Finder Demo\nType ':help' for commands or 'quit' to exit.\n")
    sys.stdout.flush()

    session_id = None
    pending_question_id = None
    while True:
        try:
            sys.stdout.write("You: ")
            sys.stdout.flush()
            user_text = input().strip()
        except (EOFError, KeyboardInterrupt):
            print("\nEnding demo. Goodbye!")
            break

        if not user_text:
            continue
        if user_text.lower() in {"quit", "exit"}:
            print("Goodbye!")
            break
        if user_text == ":help":
            print(HELP_TEXT)
            continue
        if user_text == ":new":
            session_id, pending_question_id = None, None
            print("Started over.\n")
            continue
        if user_text == ":session":
            snapshot = controller.get_session(session_id) if session_id else None
            print(json.dumps(snapshot, indent=2, ensure_ascii=False) if snapshot else "No active session.")
            continue

        try:
            if user_text.startswith(":answer"):
                answer = user_text[len(":answer"):].strip()
                if not pending_question_id:
                    print("There is no pending question.\n")
                    continue
                response = controller.submit_answer(session_id, pending_question_id, answer)
            else:
                response = controller.submit_utterance(session_id, user_text, language)
        except SchemeFinderError as e:
            print(f"Error: {e}\n")
            sys.stdout.flush()
            continue

        session_id = response["session_id"]
        question = response.get("question")
        pending_question_id = question["question_id"] if question else None
        print_response(response)


def main() -> None:
    """
    Parse CLI args and start the interactive demo loop.
    """

    parser = argparse.ArgumentParser(description="Run the scheme finder CLI.")
    parser.add_argument("--language", default="en", choices=["en", "hi"], help="Conversation language.")
    parser.add_argument("--offline", action="store_true", help="Ignore OPENAI_API_KEY and use rule-based matching.")
    parser.add_argument("--catalog-dir", default=None, help="Directory holding programs.csv and program_constraints.csv.")
    parser.add_argument("--sqlite-path", default=None, help="Persist sessions in this SQLite file.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    controller = build_controller(args)
    try:
        interactive_loop(controller, args.language)
    finally:
        controller.close()


if __name__ == "__main__":
    main()
