from __future__ import annotations

from checkin_bot.memory import Step, utcnow
from checkin_bot.prompt_engine import PromptEngine
from checkin_bot.reasoning import ReasoningAccumulator, RedFlag
from checkin_bot.summary import Summary, render_fallback, synthesize


def _steps():
    return [
        Step(node_id="START", timestamp=utcnow(), input="yes", generated_response="ok"),
        Step(node_id="AGENDA", timestamp=utcnow(), input="sleep", generated_response="ok"),
    ]


def _accumulator() -> ReasoningAccumulator:
    return ReasoningAccumulator(
        red_flags=[RedFlag("bp_stage_2", "High blood pressure", "Reported blood pressure 150/95", "moderate")],
        recommendations=["follow up with a clinician about high blood pressure", "follow up with a clinician about high blood pressure"],
        screenings=["Lipid panel (cholesterol) (every 5 years)"],
        notes=["Blood pressure 150/95 (stage_2)"],
    )


def test_fallback_keeps_every_section_when_empty():
    text = render_fallback([], [], [], [])

    for heading in (
        "## Health Check-in Summary",
        "### Areas to Discuss with Your Doctor",
        "### Recommendations",
        "### Suggested Screenings",
        "### Notes",
    ):
        assert heading in text
    assert "Nothing urgent was flagged." in text
    assert "No specific recommendations." in text
    assert "not" in text.lower() or "consult" in text.lower()


def test_synthesize_without_generator_uses_fallback():
    summary = synthesize(_steps(), _accumulator())

    assert summary.source == "fallback"
    assert summary.recommendations == ["follow up with a clinician about high blood pressure"]
    assert "- High blood pressure: Reported blood pressure 150/95" in summary.text
    assert "- Lipid panel (cholesterol) (every 5 years)" in summary.text


def test_synthesize_with_zero_findings_still_produces_sections():
    summary = synthesize([], ReasoningAccumulator())

    assert summary.red_flags == []
    assert summary.recommendations == []
    assert summary.screenings == []
    assert "### Recommendations" in summary.text


def test_synthesize_uses_generator_when_available(fake_generator):
    engine = PromptEngine(fake_generator, timeout_seconds=2)
    try:
        summary = synthesize(_steps(), _accumulator(), engine)
    finally:
        engine.close()

    assert summary.source == "generated"
    assert summary.text == "SUMMARY_ANSWER"
    assert summary.red_flags[0].id == "bp_stage_2"
    assert fake_generator.kinds() == ["SUMMARY"]
    prompt = fake_generator.calls[0].messages[-1].content
    assert 'AGENDA: user said "sleep"' in prompt
    assert "High blood pressure (moderate)" in prompt


def test_synthesize_falls_back_when_generator_fails(fake_generator):
    fake_generator.mode = "error"
    engine = PromptEngine(fake_generator, timeout_seconds=2)
    try:
        summary = synthesize(_steps(), _accumulator(), engine)
    finally:
        engine.close()

    assert summary.source == "fallback"
    assert summary.text.startswith("## Health Check-in Summary")


def test_summary_round_trips_through_a_document():
    summary = synthesize(_steps(), _accumulator())
    assert Summary.from_dict(summary.to_dict()) == summary
