from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Tuple


@dataclass(frozen=True)
class EscalationRule:
    id: str
    label: str
    phrases: Tuple[str, ...]
    patterns: Tuple[str, ...] = ()


# ---------- High-severity phrase set ----------
# Any hit short-circuits the declared graph and routes to the escalation node.
ESCALATION_RULES: Tuple[EscalationRule, ...] = (
    EscalationRule(
        id="chest_pain",
        label="Chest pain or pressure",
        phrases=("chest pain", "pressure in my chest", "chest pressure", "chest tightness", "tightness in my chest"),
        patterns=(r"crushing.*chest", r"pain in (?:my|the) chest"),
    ),
    EscalationRule(
        id="acute_respiratory_distress",
        label="Severe shortness of breath",
        phrases=(
            "can't breathe",
            "cannot breathe",
            "can not breathe",
            "difficulty breathing",
            "severe shortness of breath",
            "can't catch my breath",
            "struggling to breathe",
            "very breathless",
        ),
        patterns=(r"turning blue", r"blue lips"),
    ),
    EscalationRule(
        id="neurologic_stroke",
        label="Stroke signs",
        phrases=("face droop", "facial droop", "slurred speech", "one-sided weakness", "can't move one side", "can't speak"),
        patterns=(r"sudden (?:numbness|weakness) (?:on|in) one side",),
    ),
    EscalationRule(
        id="suicidal_ideation",
        label="Suicidal ideation or self-harm",
        phrases=(
            "kill myself",
            "want to die",
            "suicidal",
            "end my life",
            "better off dead",
            "hurt myself",
            "harm myself",
        ),
    ),
    EscalationRule(
        id="sepsis_like",
        label="Sepsis / very ill",
        phrases=("very high fever", "cold clammy skin", "very fast breathing"),
    ),
    EscalationRule(
        id="loss_of_consciousness",
        label="Fainting or loss of consciousness",
        phrases=("passed out", "fainted", "lost consciousness", "blacked out"),
    ),
)


def _normalize(text: str) -> str:
    # fold curly apostrophes so "can’t" matches "can't"
    return (text or "").lower().replace("’", "'")


def escalation_hits(text: str) -> List[EscalationRule]:
    t = _normalize(text)
    if not t.strip():
        return []
    hits: List[EscalationRule] = []
    for rule in ESCALATION_RULES:
        if any(p in t for p in rule.phrases) or any(re.search(p, t) for p in rule.patterns):
            hits.append(rule)
    return hits


def matches_escalation(text: str) -> bool:
    return bool(escalation_hits(text))
