from __future__ import annotations

from typing import Any, List


class CheckinError(Exception):
    pass


# ---------- Load-time (fatal) ----------

class GraphLoadError(CheckinError):
    """The graph document is missing, unreadable or structurally malformed."""


class GraphIntegrityError(CheckinError):
    """The graph parsed but references things that do not exist."""

    def __init__(self, problems: List[str]) -> None:
        self.problems = list(problems)
        joined = "\n".join(f"  - {p}" for p in self.problems)
        super().__init__(f"Conversation graph failed validation ({len(self.problems)} problem(s)):\n{joined}")


# ---------- Request-time ----------

class SessionNotFound(CheckinError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class UnroutableInput(CheckinError):
    def __init__(self, node_id: str, user_input: Any) -> None:
        self.node_id = node_id
        self.user_input = user_input
        super().__init__(f"No transition matches input {user_input!r} at node '{node_id}'")


class CorruptState(CheckinError):
    """Stored current node id is absent from a validated graph."""

    def __init__(self, session_id: str, node_id: str) -> None:
        self.session_id = session_id
        self.node_id = node_id
        super().__init__(f"Session {session_id} points at unknown node '{node_id}'")


class GenerationError(CheckinError):
    """Text generation failed or returned nothing usable."""
