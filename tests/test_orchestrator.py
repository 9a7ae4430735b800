from __future__ import annotations

import gc
import threading

import pytest

from checkin_bot.conversation_graph import load_graph
from checkin_bot.errors import CorruptState
from checkin_bot.memory import InMemorySessionStore, SessionMemory, SqlSessionStore
from checkin_bot.prompt_engine import FALLBACK_RESPONSES
from checkin_bot.profiles import InMemoryProfileStore, Profile
from checkin_bot.reasoning import MOOD_FOLLOW_UP, ReasoningEngine

from conftest import loop_document


def test_start_session_projects_initial_node(make_orchestrator, scenario_graph):
    orch = make_orchestrator(scenario_graph)
    view = orch.start_session("user-1")

    assert view.node.id == "START"
    assert view.node.choices == ["yes", "no"]
    assert view.status == "active"
    assert (view.progress.current, view.progress.total) == (1, 7)
    assert view.progress.percentage == 14
    assert view.summary is None


def test_yes_at_start_advances_to_agenda(make_orchestrator, scenario_graph, fake_generator):
    orch = make_orchestrator(scenario_graph)
    sid = orch.start_session("user-1").session_id

    outcome = orch.handle_input(sid, "yes")

    assert outcome.status == "advanced"
    assert outcome.node.id == "AGENDA"
    assert outcome.generated_response == "STEP_ANSWER"
    assert outcome.summary is None
    assert outcome.progress.current == 3
    assert fake_generator.kinds() == ["STEP"]
    assert orch.get_session(sid).node.id == "AGENDA"


def test_chest_pain_escalates_from_any_non_terminal_node(make_orchestrator, scenario_graph):
    orch = make_orchestrator(scenario_graph)
    sid = orch.start_session("user-1").session_id
    orch.handle_input(sid, "yes")

    outcome = orch.handle_input(sid, "I have chest pain")

    assert outcome.node.id == "ESCALATE"
    assert outcome.status == "completed"
    assert any(f.severity == "high" for f in outcome.summary.red_flags)


def test_unmapped_input_is_unroutable_and_keeps_the_node(make_orchestrator, scenario_graph):
    orch = make_orchestrator(scenario_graph)
    sid = orch.start_session("user-1").session_id

    outcome = orch.handle_input(sid, "xyz-unmapped")

    assert outcome.status == "unroutable"
    assert outcome.node.id == "START"
    assert outcome.error
    view = orch.get_session(sid)
    assert view.node.id == "START"
    assert view.status == "active"
    assert view.step_count == 1

    # and the session still works afterwards
    assert orch.handle_input(sid, "yes").node.id == "AGENDA"


def test_terminal_node_synthesizes_summary_exactly_once(make_orchestrator, scenario_graph, fake_generator):
    orch = make_orchestrator(scenario_graph)
    sid = orch.start_session("user-1").session_id
    orch.handle_input(sid, "yes")

    outcome = orch.handle_input(sid, "just a routine check")

    assert outcome.status == "completed"
    assert outcome.node.id == "DONE"
    assert outcome.summary.text == "SUMMARY_ANSWER"
    assert fake_generator.kinds().count("SUMMARY") == 1

    first = orch.get_session(sid).summary
    second = orch.get_session(sid).summary
    assert first == second == outcome.summary
    assert fake_generator.kinds().count("SUMMARY") == 1


def test_input_after_completion_is_a_no_op(make_orchestrator, scenario_graph, fake_generator):
    orch = make_orchestrator(scenario_graph)
    sid = orch.start_session("user-1").session_id
    orch.handle_input(sid, "yes")
    done = orch.handle_input(sid, "nothing much")
    calls_before = len(fake_generator.calls)

    again = orch.handle_input(sid, "hello?")

    assert again.status == "already_completed"
    assert again.node.id == "DONE"
    assert again.summary == done.summary
    assert len(fake_generator.calls) == calls_before
    assert orch.get_session(sid).step_count == 2


def test_red_flag_node_answer_is_accumulated(make_orchestrator, scenario_graph):
    orch = make_orchestrator(scenario_graph)
    sid = orch.start_session("user-1").session_id
    orch.handle_input(sid, "yes")
    assert orch.handle_input(sid, "bad headache").node.id == "SYMPTOMS"

    outcome = orch.handle_input(sid, "throbbing behind my eyes")

    assert outcome.status == "completed"
    reasons = [f.reason for f in outcome.summary.red_flags]
    assert "throbbing behind my eyes" in reasons


def test_generator_failure_is_invisible_to_the_caller(make_orchestrator, scenario_graph, fake_generator):
    fake_generator.mode = "error"
    orch = make_orchestrator(scenario_graph)
    sid = orch.start_session("user-1").session_id

    outcome = orch.handle_input(sid, "yes")

    assert outcome.status == "advanced"
    assert outcome.generated_response == FALLBACK_RESPONSES["consent"]

    done = orch.handle_input(sid, "nothing much")
    assert done.status == "completed"
    assert done.summary.source == "fallback"
    assert "### Recommendations" in done.summary.text


def test_generator_timeout_uses_fallback(make_orchestrator, scenario_graph, fake_generator):
    fake_generator.mode = "hang"
    orch = make_orchestrator(scenario_graph, timeout_seconds=0.1)
    sid = orch.start_session("user-1").session_id

    outcome = orch.handle_input(sid, "yes")

    assert outcome.status == "advanced"
    assert outcome.generated_response == FALLBACK_RESPONSES["consent"]


def test_unknown_session_is_an_outcome_not_an_exception(make_orchestrator, scenario_graph):
    orch = make_orchestrator(scenario_graph)

    outcome = orch.handle_input("nope", "yes")

    assert outcome.status == "not_found"
    assert not outcome.ok
    assert orch.get_session("nope") is None
    assert orch.abandon_session("nope") is None


def test_corrupt_current_node_is_a_hard_failure(make_orchestrator, scenario_graph):
    memory = SessionMemory(InMemorySessionStore())
    orch = make_orchestrator(scenario_graph, memory=memory)
    sid = orch.start_session("user-1").session_id
    memory.update_current_node(sid, "GHOST")

    with pytest.raises(CorruptState):
        orch.handle_input(sid, "yes")


def test_abandoned_session_rejects_input(make_orchestrator, scenario_graph):
    orch = make_orchestrator(scenario_graph)
    sid = orch.start_session("user-1").session_id

    assert orch.abandon_session(sid).status == "abandoned"
    outcome = orch.handle_input(sid, "yes")
    assert outcome.status == "inactive"
    assert orch.get_session(sid).step_count == 0


def test_list_sessions_for_user(make_orchestrator, scenario_graph):
    orch = make_orchestrator(scenario_graph)
    first = orch.start_session("user-1").session_id
    second = orch.start_session("user-1").session_id
    orch.start_session("user-2")

    assert [v.session_id for v in orch.list_sessions("user-1")] == [second, first]


def test_concurrent_inputs_for_one_session_do_not_lose_steps(make_orchestrator):
    orch = make_orchestrator(load_graph(loop_document()))
    sid = orch.start_session("user-1").session_id
    barrier = threading.Barrier(8)

    def send(i: int) -> None:
        barrier.wait()
        orch.handle_input(sid, f"message {i}")

    threads = [threading.Thread(target=send, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    view = orch.get_session(sid)
    assert view.step_count == 8
    assert view.node.id == "LOOP"


def test_full_packaged_check_in(make_orchestrator, packaged_graph, fake_generator):
    orch = make_orchestrator(packaged_graph)
    sid = orch.start_session("user-1").session_id

    answers = [
        ("START", "Yes"),
        ("CONSENT", "I agree"),
        ("AGENDA", "nothing in particular"),
        ("DEMOGRAPHICS", "40, female, 70kg, 1.65m"),
        ("BLOOD_PRESSURE", "118/76"),
        ("MEDICAL_HISTORY", "asthma"),
        ("CONDITIONS_FOLLOWUP", "Well controlled"),
        ("MEDICATIONS", "none"),
        ("SYMPTOM_CHECK", "None of the above"),
        ("SLEEP_QUALITY", "Good"),
        ("STRESS_LEVEL", "Moderate"),
        ("MOOD_INTEREST", "Several days"),
        ("MOOD_DOWN", "More than half the days"),
        ("MOOD_FOLLOWUP", "no"),
        ("EXERCISE", "3-4 days"),
        ("DIET", "Mostly healthy"),
        ("SCREENING_HISTORY", "Within the last year"),
    ]
    outcome = None
    for expected_node, answer in answers:
        assert orch.get_session(sid).node.id == expected_node
        outcome = orch.handle_input(sid, answer)
        assert outcome.ok, (expected_node, outcome)

    assert outcome.status == "completed"
    assert outcome.node.id == "SUMMARY"
    assert MOOD_FOLLOW_UP in outcome.summary.recommendations
    assert "Blood pressure screening (annually)" in outcome.summary.screenings
    assert fake_generator.kinds().count("STEP") == len(answers)
    assert fake_generator.kinds().count("SUMMARY") == 1
    assert orch.get_session(sid).progress.percentage == round(
        packaged_graph.position("SUMMARY") / len(packaged_graph.nodes) * 100
    )


def test_no_prior_conditions_skips_followup(make_orchestrator, packaged_graph):
    orch = make_orchestrator(packaged_graph)
    sid = orch.start_session("user-1").session_id
    for answer in ("Yes", "I agree", "no", "40, male, 80kg, 1.80m", "not sure"):
        orch.handle_input(sid, answer)

    assert orch.handle_input(sid, "none").node.id == "MEDICATIONS"


def test_profile_store_feeds_reasoning(make_orchestrator, packaged_graph):
    profiles = InMemoryProfileStore({"user-9": Profile(user_id="user-9", age=60, sex="male", smoker=True)})
    orch = make_orchestrator(packaged_graph, profiles=profiles)
    sid = orch.start_session("user-9").session_id
    for answer in ("Yes", "I agree", "no"):
        orch.handle_input(sid, answer)

    # an unparseable demographics answer still gets screenings from the profile
    orch.handle_input(sid, "rather not say")
    orch.handle_input(sid, "not sure")
    orch.handle_input(sid, "none")
    orch.handle_input(sid, "none")
    orch.handle_input(sid, "None of the above")
    for answer in ("Good", "Low", "Not at all", "Not at all", "5 or more days", "Mostly healthy"):
        orch.handle_input(sid, answer)
    outcome = orch.handle_input(sid, "Never / not sure")

    assert outcome.status == "completed"
    assert any(s.startswith("Low-dose CT") for s in outcome.summary.screenings)
    assert any(s.startswith("Prostate cancer screening") for s in outcome.summary.screenings)


def _walk_to_demographics(orch, sid) -> None:
    for answer in ("Yes", "I agree", "nothing in particular"):
        orch.handle_input(sid, answer)
    assert orch.get_session(sid).node.id == "DEMOGRAPHICS"


def test_structured_demographics_with_units_advance(make_orchestrator, packaged_graph):
    memory = SessionMemory(InMemorySessionStore())
    orch = make_orchestrator(packaged_graph, memory=memory)
    sid = orch.start_session("user-1").session_id
    _walk_to_demographics(orch, sid)

    outcome = orch.handle_input(sid, {"age": 40, "sex": "female", "weight": "70kg", "height": "1.65m"})

    assert outcome.status == "advanced"
    assert outcome.node.id == "BLOOD_PRESSURE"
    facts = memory.get(sid).reasoning.facts
    assert (facts["weight_kg"], facts["height_m"]) == (70.0, 1.65)


def test_a_failing_rule_does_not_escape_handle_input(make_orchestrator, packaged_graph):
    engine = ReasoningEngine()

    @engine.register("AGENDA")
    def broken(ctx, out):
        raise RuntimeError("rule bug")

    orch = make_orchestrator(packaged_graph, engine=engine)
    sid = orch.start_session("user-1").session_id
    orch.handle_input(sid, "Yes")
    orch.handle_input(sid, "I agree")

    outcome = orch.handle_input(sid, "nothing in particular")

    assert outcome.status == "advanced"
    assert outcome.node.id == "DEMOGRAPHICS"


def test_session_locks_do_not_accumulate(make_orchestrator, scenario_graph):
    orch = make_orchestrator(scenario_graph)
    for i in range(50):
        assert orch.handle_input(f"bogus-{i}", "yes").status == "not_found"
    sid = orch.start_session("user-1").session_id
    orch.handle_input(sid, "yes")
    orch.handle_input(sid, "nothing much")
    orch.abandon_session(sid)

    gc.collect()
    assert len(orch._locks) == 0


def test_full_check_in_over_the_sql_store(make_orchestrator, scenario_graph, fake_generator, tmp_path):
    url = f"sqlite:///{tmp_path / 'sessions.db'}"
    orch = make_orchestrator(scenario_graph, memory=SessionMemory(SqlSessionStore(url)))
    sid = orch.start_session("user-1").session_id
    orch.handle_input(sid, "yes")

    outcome = orch.handle_input(sid, "I have chest pain")

    assert outcome.status == "completed"
    assert outcome.node.id == "ESCALATE"

    # a fresh process over the same database sees the same finished session
    reopened = make_orchestrator(scenario_graph, memory=SessionMemory(SqlSessionStore(url)))
    first = reopened.get_session(sid)
    second = reopened.get_session(sid)
    assert first.status == "completed"
    assert first.step_count == 2
    assert first.summary == second.summary == outcome.summary
    assert reopened.handle_input(sid, "hello?").status == "already_completed"
    assert fake_generator.kinds().count("SUMMARY") == 1
    assert [v.session_id for v in reopened.list_sessions("user-1")] == [sid]
