"""Tests for the command-line entry point and its terminal callbacks."""

import io
import json
import sys

import pytest
from rich.console import Console

from relay import agent, fmt
from relay.approval import APPROVE_ALWAYS, APPROVE_ONCE, REJECT, REJECT_WITH_REPLY
from relay.config import _UNSET
from relay.providers import StreamEvent, make_tool_call
from relay.report import UserRejectedError
from relay.session import Session


@pytest.fixture
def cli(tmp_path, monkeypatch):
    """Run main() against a scripted LLM; returns a runner taking argv."""
    base = tmp_path / "project"
    base.mkdir()
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setattr(sys, "stdin", io.StringIO())
    old_console = fmt._console

    def run(llm, *argv):
        monkeypatch.setattr(agent, "Session", lambda **kw: Session(llm=llm, **kw))
        monkeypatch.setattr(sys, "argv", ["relay", "--base-dir", str(base), "--model", "m", *argv])
        try:
            agent.main()
        finally:
            fmt._console = old_console

    run.base = base
    return run


def _answers(monkeypatch, *replies):
    it = iter(replies)
    monkeypatch.setattr(agent.Prompt, "ask", lambda *a, **kw: next(it))


class TestParser:
    def test_defaults_are_unset(self):
        args = agent.build_parser().parse_args(["hi"])
        assert args.question == "hi"
        assert args.model is _UNSET
        assert args.yolo is _UNSET
        assert args.base_dir == "."
        assert args.report is None

    def test_system_prompt_flags_exclusive(self):
        with pytest.raises(SystemExit):
            agent.build_parser().parse_args(["--system-prompt", "x", "--no-system-prompt", "q"])

    def test_unknown_provider_rejected(self):
        with pytest.raises(SystemExit):
            agent.build_parser().parse_args(["--provider", "fax", "q"])


class TestMain:
    def test_answer_printed(self, cli, scripted_llm, capsys):
        cli(scripted_llm(["hi there"]), "hello")
        captured = capsys.readouterr()
        assert captured.out == "hi there\n"
        assert "tokens: 10 in, 5 out" in captured.err

    def test_quiet(self, cli, scripted_llm, capsys):
        cli(scripted_llm(["hi there"]), "-q", "hello")
        assert "tokens:" not in capsys.readouterr().err

    def test_exhausted_exit_code(self, cli, scripted_llm, capsys):
        llm = scripted_llm([("partial", [("search-files", {"pattern": "*.py"})])])
        with pytest.raises(SystemExit) as exc:
            cli(llm, "--yolo", "--max-turns", "1", "find")
        assert exc.value.code == 2
        assert capsys.readouterr().out == "partial\n"

    def test_provider_error_exit_code(self, cli, scripted_llm, capsys):
        llm = scripted_llm([StreamEvent("error", error="HTTP 401: denied", status=401)])
        with pytest.raises(SystemExit) as exc:
            cli(llm, "hello")
        assert exc.value.code == 1
        assert "HTTP 401: denied" in capsys.readouterr().err

    def test_report_written(self, cli, scripted_llm, tmp_path):
        path = tmp_path / "report.json"
        cli(scripted_llm(["done"]), "--report", str(path), "task")
        report = json.loads(path.read_text(encoding="utf-8"))
        assert report["task"] == "task"
        assert report["result"]["outcome"] == "success"

    def test_error_report_written(self, cli, scripted_llm, tmp_path):
        path = tmp_path / "report.json"
        llm = scripted_llm([StreamEvent("error", error="HTTP 400: bad", status=400)])
        with pytest.raises(SystemExit):
            cli(llm, "--report", str(path), "task")
        report = json.loads(path.read_text(encoding="utf-8"))
        assert report["result"]["outcome"] == "error"
        assert "HTTP 400: bad" in report["result"]["error_message"]

    def test_non_tty_rejects_writes(self, cli, scripted_llm, capsys):
        llm = scripted_llm([[("filesystem-create", {"path": "a.txt", "content": "x"})]])
        with pytest.raises(SystemExit) as exc:
            cli(llm, "write a.txt")
        assert exc.value.code == 1
        assert not (cli.base / "a.txt").exists()
        assert "User rejected tool execution: filesystem-create" in capsys.readouterr().err

    def test_question_required(self, cli, scripted_llm):
        with pytest.raises(SystemExit) as exc:
            cli(scripted_llm())
        assert exc.value.code == 2

    def test_report_incompatible_with_repl(self, cli, scripted_llm):
        with pytest.raises(SystemExit) as exc:
            cli(scripted_llm(), "--repl", "--report", "r.json")
        assert exc.value.code == 2

    def test_init_config(self, cli, scripted_llm, capsys):
        with pytest.raises(SystemExit) as exc:
            cli(scripted_llm(), "--init-config", "--project")
        assert exc.value.code == 0
        assert "Project config" in capsys.readouterr().out

    def test_config_error(self, cli, scripted_llm, capsys):
        (cli.base / "relay.toml").write_text('max_turns = "lots"\n', encoding="utf-8")
        with pytest.raises(SystemExit) as exc:
            cli(scripted_llm(), "hello")
        assert exc.value.code == 1
        assert "max_turns" in capsys.readouterr().err


class TestConfirm:
    def _call(self, args='{"command": "ls"}'):
        return make_tool_call("call_0", "terminal-execute", args)

    @pytest.mark.parametrize(
        "choice, kind", [("y", APPROVE_ONCE), ("a", APPROVE_ALWAYS), ("n", REJECT)]
    )
    def test_choices(self, monkeypatch, choice, kind):
        _answers(monkeypatch, choice)
        decision = agent.confirm_tool_call(self._call(), None)
        assert decision.kind == kind
        assert decision.reply is None

    def test_reject_with_reply(self, monkeypatch):
        _answers(monkeypatch, "r", "use the makefile")
        decision = agent.confirm_tool_call(self._call(), None)
        assert decision.kind == REJECT_WITH_REPLY
        assert decision.reply == "use the makefile"

    def test_raw_arguments_shown(self, monkeypatch):
        _answers(monkeypatch, "n")
        assert agent.confirm_tool_call(self._call("not json"), None).kind == REJECT


class TestAskUser:
    def test_number_selects_option(self, monkeypatch):
        _answers(monkeypatch, " 2 ")
        assert agent.ask_user_question("Which?", ["red", "blue"]) == "blue"

    def test_out_of_range_is_free_text(self, monkeypatch):
        _answers(monkeypatch, "7")
        assert agent.ask_user_question("Which?", ["red", "blue"]) == "7"

    def test_free_text(self, monkeypatch):
        _answers(monkeypatch, "green please")
        assert agent.ask_user_question("Which?", []) == "green please"


class TestReportError:
    def _report(self, monkeypatch, error):
        buf = io.StringIO()
        monkeypatch.setattr(fmt, "_console", Console(file=buf, no_color=True, width=100))
        agent.report_error(error)
        return buf.getvalue()

    def test_rejection_reply_shown(self, monkeypatch):
        out = self._report(monkeypatch, UserRejectedError(["terminal-execute"], "use the makefile"))
        assert "User rejected tool execution: terminal-execute" in out
        assert "reply: use the makefile" in out

    def test_rejection_without_reply(self, monkeypatch):
        out = self._report(monkeypatch, UserRejectedError(["filesystem-create"]))
        assert "reply:" not in out
