# checkin_bot/__init__.py
"""
Health check-in dialogue engine.

This package contains:
- config: env + Bedrock client + logging setup
- errors: typed failures raised by the engine
- conversation_graph: declarative graph model, loader and validator
- safety: high-severity escalation phrase set
- router: next-node resolution (escalation, declared edges, default)
- calculators: pure risk / screening helpers
- reasoning: per-node extraction rules and the reasoning delta
- memory: session aggregate + session stores
- profiles: read-only patient profile store
- prompts: prompt text loader (templates/*.txt)
- generator / prompt_engine: text generation collaborator + fallbacks
- summary: end-of-session synthesis
- orchestrator: the LangGraph turn pipeline tying it all together
- app: interactive CLI
"""

from .errors import (
    CheckinError,
    CorruptState,
    GenerationError,
    GraphIntegrityError,
    GraphLoadError,
    SessionNotFound,
    UnroutableInput,
)
from .orchestrator import Orchestrator, TurnOutcome

__all__ = [
    "CheckinError",
    "CorruptState",
    "GenerationError",
    "GraphIntegrityError",
    "GraphLoadError",
    "Orchestrator",
    "SessionNotFound",
    "TurnOutcome",
    "UnroutableInput",
]
