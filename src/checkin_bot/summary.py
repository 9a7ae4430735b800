from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence

from langchain_core.messages import SystemMessage, HumanMessage

from .conversation_graph import input_text
from .errors import GenerationError
from .memory import Step, utcnow
from .prompt_engine import SYSTEM_PROMPT, PromptEngine
from .prompts import fill_prompt, load_prompt
from .reasoning import ReasoningAccumulator, RedFlag

logger = logging.getLogger(__name__)

SUMMARY_USER_TMPL = load_prompt("summary_user.txt")

DISCLAIMER = (
    "Remember: this is educational information only. "
    "Please consult a healthcare professional for medical advice."
)

SummarySource = Literal["generated", "fallback"]


@dataclass(frozen=True)
class Summary:
    red_flags: List[RedFlag] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    screenings: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    text: str = ""
    source: SummarySource = "fallback"
    created_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "red_flags": [f.to_dict() for f in self.red_flags],
            "recommendations": list(self.recommendations),
            "screenings": list(self.screenings),
            "notes": list(self.notes),
            "text": self.text,
            "source": self.source,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Summary":
        return cls(
            red_flags=[RedFlag.from_dict(f) for f in data.get("red_flags", [])],
            recommendations=list(data.get("recommendations", [])),
            screenings=list(data.get("screenings", [])),
            notes=list(data.get("notes", [])),
            text=data.get("text", ""),
            source=data.get("source", "fallback"),
            created_at=data.get("created_at", ""),
        )


def _unique(items: Sequence[str]) -> List[str]:
    out: List[str] = []
    for item in items:
        if item and item not in out:
            out.append(item)
    return out


def _bullets(items: Sequence[str], empty: str) -> str:
    if not items:
        return f"- {empty}"
    return "\n".join(f"- {item}" for item in items)


def render_fallback(
    red_flags: Sequence[RedFlag],
    recommendations: Sequence[str],
    screenings: Sequence[str],
    notes: Sequence[str],
) -> str:
    """Deterministic markdown summary. Every section is always present."""
    flag_lines = [f"{f.label}: {f.reason}" if f.reason else f.label for f in red_flags]
    parts = [
        "## Health Check-in Summary",
        "Thank you for completing your health check-in.",
        "### Areas to Discuss with Your Doctor",
        _bullets(flag_lines, "Nothing urgent was flagged."),
        "### Recommendations",
        _bullets(recommendations, "No specific recommendations."),
        "### Suggested Screenings",
        _bullets(screenings, "No screenings suggested from the information given."),
        "### Notes",
        _bullets(notes, "No additional notes."),
        DISCLAIMER,
    ]
    return "\n\n".join(parts)


def _transcript(steps: Sequence[Step]) -> str:
    if not steps:
        return "- (no answers recorded)"
    return "\n".join(f'- {s.node_id}: user said "{input_text(s.input)}"' for s in steps)


def synthesize(
    steps: Sequence[Step],
    reasoning: ReasoningAccumulator,
    prompt_engine: Optional[PromptEngine] = None,
) -> Summary:
    """
    Build the end-of-session summary.

    Structured fields always come straight from the accumulator. The prose
    comes from the generator when one is available and answers in time,
    otherwise from render_fallback.
    """
    red_flags = list(reasoning.red_flags)
    recommendations = _unique(reasoning.recommendations)
    screenings = _unique(reasoning.screenings)
    notes = _unique(reasoning.notes)

    text: Optional[str] = None
    source: SummarySource = "fallback"
    if prompt_engine is not None:
        flag_lines = [f"{f.label} ({f.severity}): {f.reason}" for f in red_flags]
        messages = [
            SystemMessage(content=SYSTEM_PROMPT),
            HumanMessage(
                content=fill_prompt(
                    SUMMARY_USER_TMPL,
                    transcript=_transcript(steps),
                    red_flags=_bullets(flag_lines, "none"),
                    recommendations=_bullets(recommendations, "none"),
                    screenings=_bullets(screenings, "none"),
                )
            ),
        ]
        try:
            text = prompt_engine.run(messages, max_tokens=700, temperature=0.3)
            source = "generated"
        except GenerationError as exc:
            logger.warning("Summary generation failed, using templated summary: %s", exc)

    if text is None:
        text = render_fallback(red_flags, recommendations, screenings, notes)

    return Summary(
        red_flags=red_flags,
        recommendations=recommendations,
        screenings=screenings,
        notes=notes,
        text=text,
        source=source,
        created_at=utcnow().isoformat(),
    )
