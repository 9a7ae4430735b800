from __future__ import annotations

import os

import pytest

from checkin_bot.config import DEFAULT_GRAPH_PATH
from checkin_bot.conversation_graph import load_graph
from checkin_bot.generator import BedrockTextGenerator
from checkin_bot.memory import Step, utcnow
from checkin_bot.prompt_engine import FALLBACK_RESPONSES, PromptEngine
from checkin_bot.reasoning import ReasoningAccumulator, ReasoningDelta, RedFlag
from checkin_bot.router import known_predicates
from checkin_bot.summary import synthesize

pytestmark = pytest.mark.integration

# Opt-in guard to avoid accidental spend.
RUN_FLAG = os.getenv("RUN_BEDROCK_TESTS", "").strip().lower() in {"1", "true", "yes"}

LEAK_MARKERS = ("analysis notes", "reasoning:", "system:", "{node_id}", "{reasoning}")


@pytest.fixture()
def engine():
    pe = PromptEngine(BedrockTextGenerator(), timeout_seconds=30)
    yield pe
    pe.close()


@pytest.mark.skipif(not RUN_FLAG, reason="Set RUN_BEDROCK_TESTS=1 to run Bedrock integration tests.")
def test_bedrock_complete_smoke():
    out = BedrockTextGenerator().complete("Reply with the single word: ready", max_tokens=20, temperature=0.0)
    assert "ready" in out.lower()


@pytest.mark.skipif(not RUN_FLAG, reason="Set RUN_BEDROCK_TESTS=1 to run Bedrock integration tests.")
def test_step_response_is_plain_and_not_a_fallback(engine):
    graph = load_graph(DEFAULT_GRAPH_PATH, known_predicates())
    node = graph.get_node("SLEEP_QUALITY")
    delta = ReasoningDelta(recommendations=["discuss sleep problems with your doctor"])

    out = engine.respond(node, "Poor", delta)

    assert out
    assert out not in FALLBACK_RESPONSES.values()
    lowered = out.lower()
    assert not any(marker in lowered for marker in LEAK_MARKERS), out


@pytest.mark.skipif(not RUN_FLAG, reason="Set RUN_BEDROCK_TESTS=1 to run Bedrock integration tests.")
def test_generated_summary_mentions_flagged_blood_pressure(engine):
    steps = [
        Step(node_id="BLOOD_PRESSURE", timestamp=utcnow(), input="150/95", generated_response="Thanks."),
        Step(node_id="SLEEP_QUALITY", timestamp=utcnow(), input="Poor", generated_response="Noted."),
    ]
    reasoning = ReasoningAccumulator(
        red_flags=[RedFlag("bp_stage_2", "High blood pressure", "Reported blood pressure 150/95", "moderate")],
        recommendations=["follow up with a clinician about high blood pressure"],
    )

    summary = synthesize(steps, reasoning, engine)

    assert summary.source == "generated"
    assert "blood pressure" in summary.text.lower()
