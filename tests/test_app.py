from __future__ import annotations

import builtins

from checkin_bot import app
from checkin_bot.orchestrator import UNROUTABLE_MESSAGE


def _feed(monkeypatch, answers):
    it = iter(answers)

    def fake_input(prompt=""):
        try:
            return next(it)
        except StopIteration:
            raise EOFError

    monkeypatch.setattr(builtins, "input", fake_input)


def test_cli_walks_to_summary_with_numbered_choices(monkeypatch, capsys, make_orchestrator, scenario_graph):
    orch = make_orchestrator(scenario_graph)
    _feed(monkeypatch, ["1", "just checking in"])

    assert app.main(["--user", "cli-test"], orchestrator=orch) == 0

    out = capsys.readouterr().out
    assert "1. yes" in out
    assert "bot: STEP_ANSWER" in out
    assert "bot: Thanks, all done." in out
    assert "SUMMARY_ANSWER" in out
    assert [v.status for v in orch.list_sessions("cli-test")] == ["completed"]


def test_cli_quit_abandons_the_session(monkeypatch, capsys, make_orchestrator, scenario_graph):
    orch = make_orchestrator(scenario_graph)
    _feed(monkeypatch, ["quit"])

    assert app.main(["--user", "cli-test"], orchestrator=orch) == 0

    assert "bye." in capsys.readouterr().out
    assert [v.status for v in orch.list_sessions("cli-test")] == ["abandoned"]


def test_cli_reprompts_on_unroutable_input(monkeypatch, capsys, make_orchestrator, scenario_graph):
    orch = make_orchestrator(scenario_graph)
    _feed(monkeypatch, ["maybe"])

    assert app.main([], orchestrator=orch) == 0

    out = capsys.readouterr().out
    assert UNROUTABLE_MESSAGE in out
    assert out.count("Shall we start?") == 2
