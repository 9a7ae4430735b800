from __future__ import annotations

import argparse
from typing import List, Optional

from . import config
from .errors import GraphIntegrityError, GraphLoadError
from .orchestrator import NodeView, Orchestrator, TurnOutcome

BANNER = """Health Check-in (LangGraph + AWS Bedrock)

Flow:
  reason → respond → route (escalation | declared edges | default) → summary
Type a choice number or your answer. 'quit' stops the check-in.
"""


def _print_node(node: NodeView) -> None:
    print(f"\nbot: {node.prompt}")
    if node.help_text:
        print(f"     ({node.help_text})")
    for idx, choice in enumerate(node.choices or [], start=1):
        print(f"  {idx}. {choice}")


def _answer_for(node: NodeView, raw: str) -> str:
    # numbered shortcut for choice nodes
    if node.choices and raw.isdigit():
        idx = int(raw) - 1
        if 0 <= idx < len(node.choices):
            return node.choices[idx]
    return raw


def _print_outcome(outcome: TurnOutcome) -> None:
    if outcome.generated_response:
        print(f"\nbot: {outcome.generated_response}")
    if outcome.status == "unroutable" and outcome.error:
        print(f"bot: {outcome.error}")


def main(argv: Optional[List[str]] = None, orchestrator: Optional[Orchestrator] = None) -> int:
    ap = argparse.ArgumentParser(description="Interactive health check-in")
    ap.add_argument("--user", default="cli-user", help="User id for the session")
    args = ap.parse_args(argv)

    config.configure_logging()
    if orchestrator is None:
        try:
            orchestrator = Orchestrator.from_config()
        except (GraphLoadError, GraphIntegrityError) as exc:
            raise SystemExit(f"Could not load conversation graph: {exc}")

    print(BANNER)
    view = orchestrator.start_session(args.user)
    node = view.node
    session_id = view.session_id
    _print_node(node)

    while not node.is_terminal:
        try:
            raw = input("you: ").strip()
        except (EOFError, KeyboardInterrupt):
            orchestrator.abandon_session(session_id)
            print("\nbye.")
            return 0

        if raw.lower() in {"q", "quit", "exit"}:
            orchestrator.abandon_session(session_id)
            print("bye.")
            return 0
        if not raw:
            continue

        outcome = orchestrator.handle_input(session_id, _answer_for(node, raw))
        _print_outcome(outcome)
        if outcome.node is not None:
            node = outcome.node
        if outcome.status in ("not_found", "inactive"):
            print(f"bot: {outcome.error}")
            return 1
        if outcome.status == "unroutable":
            _print_node(node)
            continue
        if not node.is_terminal:
            _print_node(node)
        else:
            print(f"bot: {node.prompt}")
            if outcome.summary is not None:
                print("\n" + outcome.summary.text + "\n")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
