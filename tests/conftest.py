import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pytest
from langchain_core.messages import BaseMessage, SystemMessage

from checkin_bot.errors import GenerationError
from checkin_bot.generator import TextGenerator


@dataclass
class GeneratorCall:
    messages: List[BaseMessage]
    max_tokens: int
    temperature: float


class FakeGenerator(TextGenerator):
    """
    Deterministic stand-in for the Bedrock generator.

    We detect which "kind" of call it is from the first SystemMessage content
    (the fixture swaps the real prompts for sentinels):
      - STEP: per-turn elaboration, returns `reply`
      - SUMMARY: end-of-session synthesis, returns `summary_reply`

    `mode` switches failure behaviour: "ok", "fail" (GenerationError),
    "error" (arbitrary exception), "empty", "hang" (blocks until released).
    """

    def __init__(self) -> None:
        self.calls: List[GeneratorCall] = []
        self.reply: str = "STEP_ANSWER"
        self.summary_reply: str = "SUMMARY_ANSWER"
        self.mode: str = "ok"
        self.release = threading.Event()
        self._lock = threading.Lock()

    def kinds(self) -> List[str]:
        return [c.messages[0].content for c in self.calls]

    def chat(self, messages, max_tokens: int = 350, temperature: float = 0.2) -> str:
        with self._lock:
            self.calls.append(GeneratorCall(messages=list(messages), max_tokens=max_tokens, temperature=temperature))

        if self.mode == "fail":
            raise GenerationError("fake generator failure")
        if self.mode == "error":
            raise ConnectionError("network unreachable")
        if self.mode == "empty":
            return "   "
        if self.mode == "hang":
            self.release.wait(5)
            return "TOO_LATE"

        sys = messages[0].content if messages and isinstance(messages[0], SystemMessage) else ""
        if sys == "STEP":
            return self.reply
        if sys == "SUMMARY":
            return self.summary_reply

        # make unexpected prompts obvious in tests
        raise AssertionError(f"FakeGenerator got unexpected system prompt: {sys!r}")


@pytest.fixture()
def fake_generator(monkeypatch) -> FakeGenerator:
    """
    Patch the prompt modules so:
      - per-turn calls carry the sentinel system prompt "STEP"
      - summary calls carry the sentinel system prompt "SUMMARY"
    """
    from checkin_bot import prompt_engine as pe
    from checkin_bot import summary as sm

    monkeypatch.setattr(pe, "SYSTEM_PROMPT", "STEP")
    monkeypatch.setattr(sm, "SYSTEM_PROMPT", "SUMMARY")

    fg = FakeGenerator()
    yield fg
    fg.release.set()


def scenario_document() -> Dict[str, Any]:
    """Small graph used by the router and orchestrator scenarios."""
    return {
        "metadata": {"name": "scenario", "version": "1"},
        "initialState": "START",
        "nodes": {
            "START": {
                "prompt": "Shall we start?",
                "inputType": "choice",
                "choices": ["yes", "no"],
                "transitions": {"yes": "AGENDA", "no": "CONSENT"},
            },
            "CONSENT": {
                "prompt": "Do you consent to continue?",
                "inputType": "choice",
                "choices": ["yes", "no"],
                "transitions": {"yes": "AGENDA", "no": "END"},
            },
            "AGENDA": {
                "prompt": "What's on your mind today?",
                "inputType": "text",
                "transitions": {"match(input,/headache|migraine/i)": "SYMPTOMS", "default": "DONE"},
            },
            "SYMPTOMS": {
                "prompt": "Tell me more about it.",
                "inputType": "text",
                "isRedFlag": True,
                "transitions": {"default": "DONE"},
            },
            "DONE": {"prompt": "Thanks, all done.", "inputType": "none", "isTerminal": True},
            "END": {"prompt": "Goodbye.", "inputType": "none", "isTerminal": True},
            "ESCALATE": {"prompt": "Please seek urgent care.", "inputType": "none", "isTerminal": True},
        },
    }


def loop_document() -> Dict[str, Any]:
    """One node that routes back to itself forever."""
    return {
        "metadata": {"name": "loop", "version": "1"},
        "initialState": "LOOP",
        "nodes": {
            "LOOP": {"prompt": "Say anything.", "inputType": "text", "transitions": {"default": "LOOP"}},
            "ESCALATE": {"prompt": "Please seek urgent care.", "inputType": "none", "isTerminal": True},
        },
    }


@pytest.fixture()
def scenario_graph():
    from checkin_bot.conversation_graph import load_graph
    from checkin_bot.router import known_predicates

    return load_graph(scenario_document(), known_predicates())


@pytest.fixture()
def packaged_graph():
    from checkin_bot.config import DEFAULT_GRAPH_PATH
    from checkin_bot.conversation_graph import load_graph
    from checkin_bot.router import known_predicates

    return load_graph(DEFAULT_GRAPH_PATH, known_predicates())


@pytest.fixture()
def make_orchestrator(fake_generator):
    """Factory so tests can pick the graph / store / timeout."""
    from checkin_bot.orchestrator import Orchestrator

    created: List[Orchestrator] = []

    def _make(graph, memory=None, profiles=None, engine=None, timeout_seconds: Optional[float] = 2.0) -> Orchestrator:
        orch = Orchestrator(
            graph=graph,
            generator=fake_generator,
            memory=memory,
            engine=engine,
            profiles=profiles,
            timeout_seconds=timeout_seconds,
        )
        created.append(orch)
        return orch

    yield _make
    fake_generator.release.set()
    for orch in created:
        orch.close()
