"""Tests for sub-agent specs, tool filtering and nested runs."""

import json

import pytest

from relay.approval import APPROVE_ALWAYS, ApprovalGate, ApprovalStore, Decision
from relay.hooks import HooksEngine
from relay.report import UserRejectedError
from relay.subagents import (
    BUILTIN_AGENTS,
    SubAgentRunner,
    SubAgentSpec,
    filter_tools,
    load_agents,
    subagent_tools,
    tool_allowed,
)
from relay.tools import TOOLS


def _names(tools):
    return [t["function"]["name"] for t in tools]


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------


class TestToolFiltering:
    def test_prefix_match(self):
        names = _names(filter_tools(TOOLS, ["filesystem"]))
        assert "filesystem-read" in names
        assert "filesystem-edit" in names
        assert "terminal-execute" not in names

    def test_exact_match(self):
        assert _names(filter_tools(TOOLS, ["search-text"])) == ["search-text"]

    def test_prefix_needs_hyphen_boundary(self):
        assert not tool_allowed("filesystem-read", ["file"])

    def test_underscore_and_hyphen_equivalent(self):
        assert tool_allowed("askuser-ask_question", ["askuser"])
        assert tool_allowed("filesystem-read", ["filesystem_read"])

    def test_empty_allow_list(self):
        assert filter_tools(TOOLS, []) == []


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_builtins_without_file(self, tmp_path):
        agents = load_agents(tmp_path / "sub-agents.json")
        assert [a.id for a in agents] == [a.id for a in BUILTIN_AGENTS]

    def test_override_replaces_builtin(self, tmp_path):
        path = tmp_path / "sub-agents.json"
        path.write_text(
            json.dumps(
                {
                    "agents": [
                        {"id": "agent_explore", "name": "Narrow Explorer", "tools": ["search-files"]},
                        {"id": "reviewer", "name": "Reviewer", "allowedTools": ["filesystem-read"]},
                    ]
                }
            ),
            encoding="utf-8",
        )
        agents = load_agents(path)
        explore = next(a for a in agents if a.id == "agent_explore")
        assert explore.name == "Narrow Explorer"
        assert explore.allowed_tools == ["search-files"]
        assert not explore.builtin
        assert [a.id for a in agents][-1] == "reviewer"
        assert sum(1 for a in agents if a.id == "agent_explore") == 1

    def test_malformed_entries_skipped(self, tmp_path):
        path = tmp_path / "sub-agents.json"
        path.write_text(json.dumps({"agents": [{"name": "no id"}, "junk"]}), encoding="utf-8")
        assert len(load_agents(path)) == len(BUILTIN_AGENTS)

    def test_subagent_tool_schema(self):
        (tool,) = subagent_tools([SubAgentSpec("helper", "Helper", ["search"], "Finds things.")])
        assert tool["function"]["name"] == "subagent-helper"
        assert tool["function"]["parameters"]["required"] == ["prompt"]
        assert "Finds things." in tool["function"]["description"]


# ---------------------------------------------------------------------------
# SubAgentRunner
# ---------------------------------------------------------------------------


def _runner(agents, llm, tmp_path, **kw):
    kw.setdefault("gate", ApprovalGate(ApprovalStore(), yolo=True))
    return SubAgentRunner(agents, tools=TOOLS, llm=llm, base_dir=str(tmp_path), **kw)


class TestRunner:
    def test_success_payload(self, tmp_path, scripted_llm):
        (tmp_path / "main.py").write_text("print('hi')\n", encoding="utf-8")
        llm = scripted_llm([[("filesystem-read", {"path": "main.py"})], "main.py prints hi"])
        agent = SubAgentSpec("reader", "Reader", ["filesystem-read"], role="Be terse.")
        runner = _runner([agent], llm, tmp_path)

        out = json.loads(runner("reader", "What does main.py do?"))

        assert out["success"] is True
        assert out["result"] == "main.py prints hi"
        assert out["usage"]["input_tokens"] == 20
        assert runner.usage.input_tokens == 20
        seed, tools = llm.requests[0]
        assert seed == [{"role": "user", "content": "What does main.py do?\n\nBe terse."}]
        assert _names(tools) == ["filesystem-read"]

    def test_unknown_agent(self, tmp_path, scripted_llm):
        out = _runner([], scripted_llm(), tmp_path)("ghost", "x")
        assert out == 'error: Sub-agent with ID "ghost" not found'

    def test_no_tools(self, tmp_path, scripted_llm):
        agent = SubAgentSpec("empty", "Empty Agent", ["teleport"])
        out = _runner([agent], scripted_llm(), tmp_path)("empty", "x")
        assert out == 'error: Sub-agent "Empty Agent" has no valid tools configured'

    def test_provider_failure_becomes_tool_error(self, tmp_path, scripted_llm):
        from relay.providers import StreamEvent

        llm = scripted_llm([StreamEvent("error", error="HTTP 400: bad", status=400)])
        agent = SubAgentSpec("reader", "Reader", ["filesystem-read"])
        out = _runner([agent], llm, tmp_path)("reader", "x")
        assert out == 'error: Sub-agent "Reader" failed: HTTP 400: bad'

    def test_rejection_propagates(self, tmp_path, scripted_llm):
        llm = scripted_llm([[("filesystem-create", {"path": "x", "content": ""})]])
        agent = SubAgentSpec("writer", "Writer", ["filesystem"])
        runner = _runner([agent], llm, tmp_path, gate=ApprovalGate(ApprovalStore()))
        with pytest.raises(UserRejectedError):
            runner("writer", "write x")

    def test_child_approvals_reach_parent_gate(self, tmp_path, scripted_llm):
        llm = scripted_llm([[("filesystem-create", {"path": "x.txt", "content": "x"})], "written"])
        parent = ApprovalGate(ApprovalStore(), confirm=lambda tc, s: Decision(APPROVE_ALWAYS))
        runner = _runner([SubAgentSpec("writer", "Writer", ["filesystem"])], llm, tmp_path, gate=parent)
        runner("writer", "write x")
        assert "filesystem-create" in parent.session_approved

    def test_exhausted_flag(self, tmp_path, scripted_llm):
        llm = scripted_llm([("partial", [("search-files", {"pattern": "*.py"})])])
        runner = _runner([SubAgentSpec("s", "Searcher", ["search"])], llm, tmp_path, max_turns=1)
        out = json.loads(runner("s", "find"))
        assert out["exhausted"] is True
        assert out["result"] == "partial"

    def test_completion_hook_continues_on_hard_stop(self, tmp_path, scripted_llm, hook_writer):
        hook_writer(
            tmp_path,
            "onSubAgentComplete",
            [{"hooks": [{"type": "command", "command": "echo 'tests missing'; exit 2"}]}],
        )
        llm = scripted_llm(["first answer", "second answer", "third", "fourth", "fifth", "sixth"])
        hooks = HooksEngine(base_dir=str(tmp_path), config_dir=tmp_path / "g")
        runner = _runner([SubAgentSpec("s", "Searcher", ["search"])], llm, tmp_path, hooks=hooks)

        out = json.loads(runner("s", "find"))

        assert out["result"] == "sixth"
        second_request, _ = llm.requests[1]
        assert second_request[-1] == {"role": "user", "content": "tests missing\n"}

    def test_completion_prompt_hook_continues(self, tmp_path, scripted_llm, hook_writer):
        hook_writer(tmp_path, "onSubAgentComplete", [{"hooks": [{"type": "prompt", "prompt": "Is it finished?"}]}])
        judge = scripted_llm(
            completions=[
                '{"ask": "ai", "message": "Also check the tests.", "continue": true}',
                '{"ask": "user", "message": "Looks complete", "continue": false}',
            ]
        )
        hooks = HooksEngine(base_dir=str(tmp_path), config_dir=tmp_path / "g", basic_llm=judge)
        llm = scripted_llm(["first answer", "tests checked"])
        runner = _runner([SubAgentSpec("s", "Searcher", ["search"])], llm, tmp_path, hooks=hooks)

        out = json.loads(runner("s", "find"))

        assert out["result"] == "tests checked"
        assert len(judge.completion_requests) == 2
        second_request, _ = llm.requests[1]
        assert second_request[-1] == {"role": "user", "content": "Also check the tests."}

    def test_unoffered_tool_rejected(self, tmp_path, scripted_llm):
        llm = scripted_llm([[("terminal-execute", {"command": "echo PWNED > pwned.txt"})], "done"])
        runner = _runner([SubAgentSpec("reader", "Reader", ["filesystem-read"])], llm, tmp_path)

        out = json.loads(runner("reader", "look around"))

        assert out["result"] == "done"
        second_request, _ = llm.requests[1]
        assert second_request[-1]["content"] == 'error: tool "terminal-execute" is not available'
        assert not (tmp_path / "pwned.txt").exists()

    def test_ask_user_reaches_parent_callback(self, tmp_path, scripted_llm):
        seen = []

        def ask(question, options):
            seen.append((question, options))
            return "B"

        llm = scripted_llm(
            [[("askuser-ask_question", {"question": "Which?", "options": ["A", "B"]})], "chose B"]
        )
        # no confirm: a gated call would be rejected
        runner = _runner(
            [SubAgentSpec("s", "Asker", ["askuser", "search"])],
            llm,
            tmp_path,
            gate=ApprovalGate(ApprovalStore()),
            ask_user=ask,
        )

        out = json.loads(runner("s", "pick one"))

        assert out["result"] == "chose B"
        assert seen == [("Which?", ["A", "B"])]
        second_request, _ = llm.requests[1]
        assert json.loads(second_request[-1]["content"])["selected"] == "B"
