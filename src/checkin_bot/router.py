from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List

from .conversation_graph import (
    Always,
    Condition,
    ConversationGraph,
    InputEquals,
    InputMatches,
    MemoryPredicate,
    Node,
    input_text,
)
from .errors import UnroutableInput
from .memory import Session
from .reasoning import MOOD_FOLLOW_UP
from .calculators import MOOD_SCREEN_THRESHOLD
from .safety import matches_escalation

logger = logging.getLogger(__name__)


# -------------------------
# Memory predicates
# -------------------------
MemoryCheck = Callable[[Session], bool]


def has_prior_conditions(session: Session) -> bool:
    return bool(session.reasoning.facts.get("conditions"))


def needs_mood_screening(session: Session) -> bool:
    score = session.reasoning.scores.get("mood_screen", 0)
    return score >= MOOD_SCREEN_THRESHOLD or MOOD_FOLLOW_UP in session.reasoning.recommendations


def has_red_flags(session: Session) -> bool:
    return session.reasoning.has_red_flags()


def has_high_severity_flags(session: Session) -> bool:
    return session.reasoning.has_high_severity()


def has_medications(session: Session) -> bool:
    return bool(session.reasoning.facts.get("medications"))


MEMORY_PREDICATES: Dict[str, MemoryCheck] = {
    "has_prior_conditions": has_prior_conditions,
    "needs_mood_screening": needs_mood_screening,
    "has_red_flags": has_red_flags,
    "has_high_severity_flags": has_high_severity_flags,
    "has_medications": has_medications,
}


def known_predicates() -> List[str]:
    return sorted(MEMORY_PREDICATES)


# -------------------------
# Resolution
# -------------------------
def evaluate(condition: Condition, text: str, session: Session) -> bool:
    if isinstance(condition, Always):
        return True
    if isinstance(condition, InputEquals):
        return text.strip().lower() == condition.value.strip().lower()
    if isinstance(condition, InputMatches):
        return condition.regex.search(text) is not None
    if isinstance(condition, MemoryPredicate):
        check = MEMORY_PREDICATES.get(condition.name)
        if check is None:
            # validation rejects unknown names; a graph built by hand may still carry one
            logger.warning("Unknown memory predicate '%s' evaluated as false", condition.name)
            return False
        return check(session)
    raise TypeError(f"Unsupported condition: {condition!r}")


def resolve(
    graph: ConversationGraph,
    node: Node,
    user_input: Any,
    session: Session,
    escalate: bool = False,
) -> str:
    """
    Next node id for (node, input, memory), in priority order:

      1. escalation override (raw input hits the high-severity phrase set,
         or the caller passes escalate=True from this turn's reasoning)
      2. declared transitions, first match wins
      3. the node's default edge
      4. terminal nodes stay put

    Anything else raises UnroutableInput. No randomness, no I/O.
    """
    text = input_text(user_input)

    if not node.is_terminal and (escalate or matches_escalation(text)):
        logger.info("Escalating session %s from %s", session.session_id, node.id)
        return graph.escalation_node_id

    for transition in node.transitions:
        if evaluate(transition.condition, text, session):
            return transition.target

    if node.default is not None:
        return node.default

    if node.is_terminal:
        return node.id

    raise UnroutableInput(node.id, user_input)
