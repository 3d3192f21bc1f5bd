"""Tests for the conversation engine loop."""

import json
import sys
import threading

import pytest

from relay.approval import ApprovalGate, ApprovalStore
from relay.engine import (
    MAX_HOOK_CONTINUATIONS,
    compress_history,
    handle_tool_call,
    over_budget,
    run_agent_loop,
    stop_hook_follow_ups,
)
from relay.hooks import HooksEngine
from relay.providers import StreamEvent
from relay.report import (
    AbortedError,
    HookFailedError,
    HookInterrupt,
    ProviderError,
    ReportCollector,
)
from relay.tools import TOOLS

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell")


def _yolo_gate():
    return ApprovalGate(ApprovalStore(), yolo=True)


def _hooks(tmp_path):
    return HooksEngine(base_dir=str(tmp_path), config_dir=tmp_path / "global")


def _loop(messages, llm, tmp_path, **kw):
    kw.setdefault("gate", _yolo_gate())
    return run_agent_loop(messages, TOOLS, llm=llm, base_dir=str(tmp_path), **kw)


def _assert_paired(messages):
    """Every assistant tool_calls message is followed by its results, in order."""
    for i, m in enumerate(messages):
        if m["role"] == "assistant" and m.get("tool_calls"):
            ids = [tc["id"] for tc in m["tool_calls"]]
            results = messages[i + 1 : i + 1 + len(ids)]
            assert [r["role"] for r in results] == ["tool"] * len(ids)
            assert [r["tool_call_id"] for r in results] == ids


# ---------------------------------------------------------------------------
# Basic flow
# ---------------------------------------------------------------------------


class TestLoop:
    def test_read_then_answer(self, tmp_path, scripted_llm):
        (tmp_path / "a.ts").write_text("export const a = 1;\n", encoding="utf-8")
        llm = scripted_llm([[("filesystem-read", {"path": "a.ts"})], "a is 1"])
        messages = [{"role": "user", "content": "what is a?"}]

        result = _loop(messages, llm, tmp_path)

        assert result.answer == "a is 1"
        assert not result.exhausted
        assert result.turns == 2
        assert len(messages) == 4
        assert [m["role"] for m in messages] == ["user", "assistant", "tool", "assistant"]
        assert messages[2]["content"] == "1: export const a = 1;"
        assert messages[2]["tool_call_id"] == messages[1]["tool_calls"][0]["id"]
        assert result.usage.input_tokens == 20

    def test_parallel_calls_paired_in_order(self, tmp_path, scripted_llm):
        (tmp_path / "x.txt").write_text("x", encoding="utf-8")
        llm = scripted_llm(
            [
                [
                    ("filesystem-read", {"path": "x.txt"}),
                    ("search-files", {"pattern": "*.txt"}),
                    ("filesystem-read", {"path": "missing.txt"}),
                ],
                "done",
            ]
        )
        messages = [{"role": "user", "content": "go"}]
        _loop(messages, llm, tmp_path)
        _assert_paired(messages)
        assert messages[4]["content"].startswith("error: path does not exist")

    def test_tool_errors_fed_back(self, tmp_path, scripted_llm):
        llm = scripted_llm([[("teleport", {}), ("filesystem-read", "{not json")], "ok"])
        messages = [{"role": "user", "content": "go"}]
        _loop(messages, llm, tmp_path)
        assert messages[2]["content"] == 'error: tool "teleport" is not available'
        assert messages[3]["content"].startswith("error: invalid JSON in tool arguments")

    def test_exhausted(self, tmp_path, scripted_llm):
        llm = scripted_llm([[("search-files", {"pattern": "*"})]] * 3)
        result = _loop([{"role": "user", "content": "loop"}], llm, tmp_path, max_turns=3)
        assert result.exhausted
        assert result.turns == 3
        assert result.answer is None

    def test_provider_error_raises(self, tmp_path, scripted_llm):
        llm = scripted_llm([StreamEvent("error", error="HTTP 401: no", status=401)])
        with pytest.raises(ProviderError):
            _loop([{"role": "user", "content": "hi"}], llm, tmp_path)

    def test_abort_before_request(self, tmp_path, scripted_llm):
        abort = threading.Event()
        abort.set()
        llm = scripted_llm(["never"])
        with pytest.raises(AbortedError):
            _loop([{"role": "user", "content": "hi"}], llm, tmp_path, abort=abort)
        assert llm.requests == []

    def test_unoffered_tool_never_runs(self, tmp_path, scripted_llm):
        llm = scripted_llm([[("terminal-execute", {"command": "echo PWNED > pwned.txt"})], "done"])
        read_only = [t for t in TOOLS if t["function"]["name"] == "filesystem-read"]
        messages = [{"role": "user", "content": "go"}]
        result = run_agent_loop(messages, read_only, llm=llm, gate=_yolo_gate(), base_dir=str(tmp_path))
        assert result.answer == "done"
        assert messages[2]["content"] == 'error: tool "terminal-execute" is not available'
        assert not (tmp_path / "pwned.txt").exists()

    def test_abort_between_calls_of_a_batch(self, tmp_path, scripted_llm):
        abort = threading.Event()
        asked = []

        def ask(question, options):
            asked.append(question)
            abort.set()
            return "A"

        llm = scripted_llm(
            [
                [
                    ("filesystem-create", {"path": "a.txt", "content": "x"}),
                    ("askuser-ask_question", {"question": "Which?", "options": ["A"]}),
                    ("filesystem-create", {"path": "b.txt", "content": "y"}),
                ],
                "never",
            ]
        )
        messages = [{"role": "user", "content": "go"}]
        with pytest.raises(AbortedError):
            _loop(messages, llm, tmp_path, abort=abort, ask_user=ask)
        assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "x"
        assert not (tmp_path / "b.txt").exists()
        assert asked == ["Which?"]
        assert messages == [{"role": "user", "content": "go"}]
        assert len(llm.requests) == 1

    def test_interrupt_in_batch_rolls_back(self, tmp_path, scripted_llm):
        def interrupt(question, options):
            raise KeyboardInterrupt

        llm = scripted_llm(
            [
                [
                    ("filesystem-create", {"path": "a.txt", "content": "x"}),
                    ("askuser-ask_question", {"question": "Which?"}),
                ]
            ]
        )
        messages = [{"role": "user", "content": "go"}]
        with pytest.raises(KeyboardInterrupt):
            _loop(messages, llm, tmp_path, ask_user=interrupt)
        assert messages == [{"role": "user", "content": "go"}]

    def test_ask_user_bypasses_gate(self, tmp_path, scripted_llm):
        llm = scripted_llm(
            [[("askuser-ask_question", {"question": "Which?", "options": ["A", "B"]})], "picked B"]
        )
        gate = ApprovalGate(ApprovalStore())  # no confirm: anything gated would be rejected
        messages = [{"role": "user", "content": "choose"}]
        result = _loop(messages, llm, tmp_path, gate=gate, ask_user=lambda q, o: "B")
        assert result.answer == "picked B"
        assert json.loads(messages[2]["content"])["selected"] == "B"

    def test_report_records_calls(self, tmp_path, scripted_llm):
        llm = scripted_llm([[("filesystem-read", {"path": "nope"})], "done"])
        report = ReportCollector()
        _loop([{"role": "user", "content": "go"}], llm, tmp_path, report=report)
        assert report.llm_calls == 2
        assert report.tool_stats["filesystem-read"]["failed"] == 1


# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------


@posix_only
class TestToolHooks:
    def test_exit_zero_changes_nothing(self, tmp_path, scripted_llm, hook_writer):
        hook_writer(tmp_path, "beforeToolCall", [{"hooks": [{"type": "command", "command": "exit 0"}]}])
        llm = scripted_llm([[("search-files", {"pattern": "*"})], "done"])
        messages = [{"role": "user", "content": "go"}]
        _loop(messages, llm, tmp_path, hooks=_hooks(tmp_path))
        assert [m["role"] for m in messages] == ["user", "assistant", "tool", "assistant"]

    def test_exit_one_appends_one_warning(self, tmp_path, scripted_llm, hook_writer):
        hook_writer(
            tmp_path,
            "afterToolCall",
            [{"hooks": [{"type": "command", "command": "echo lint failed; exit 1"}]}],
        )
        llm = scripted_llm([[("search-files", {"pattern": "*"})], "done"])
        messages = [{"role": "user", "content": "go"}]
        _loop(messages, llm, tmp_path, hooks=_hooks(tmp_path))
        assert [m["role"] for m in messages] == ["user", "assistant", "tool", "user", "assistant"]
        assert messages[3]["content"].startswith("[Hook Command Warning]")
        assert "lint failed" in messages[3]["content"]

    def test_exit_two_terminates_without_messages(self, tmp_path, scripted_llm, hook_writer):
        hook_writer(
            tmp_path,
            "beforeToolCall",
            [{"matcher": "toolName:filesystem-create", "hooks": [{"type": "command", "command": "exit 2"}]}],
        )
        llm = scripted_llm(
            [[("search-files", {"pattern": "*"}), ("filesystem-create", {"path": "f", "content": ""})]]
        )
        messages = [{"role": "user", "content": "go"}]
        with pytest.raises(HookFailedError) as exc_info:
            _loop(messages, llm, tmp_path, hooks=_hooks(tmp_path))
        assert exc_info.value.hook == "beforeToolCall"
        assert messages == [{"role": "user", "content": "go"}]
        assert not (tmp_path / "f").exists()

    def test_hook_sees_tool_result(self, tmp_path, scripted_llm, hook_writer):
        hook_writer(
            tmp_path,
            "afterToolCall",
            [{"hooks": [{"type": "command", "command": "cat > seen.json"}]}],
        )
        (tmp_path / "a.txt").write_text("alpha", encoding="utf-8")
        llm = scripted_llm([[("filesystem-read", {"path": "a.txt"})], "done"])
        _loop([{"role": "user", "content": "go"}], llm, tmp_path, hooks=_hooks(tmp_path))
        seen = json.loads((tmp_path / "seen.json").read_text(encoding="utf-8"))
        assert seen == {"toolName": "filesystem-read", "args": {"path": "a.txt"}, "result": "1: alpha"}


class TestStopHooks:
    def _stop_rule(self, hook_writer, tmp_path):
        hook_writer(tmp_path, "onStop", [{"hooks": [{"type": "prompt", "prompt": "Was it verified?"}]}])

    def test_ai_continuation(self, tmp_path, scripted_llm, hook_writer):
        self._stop_rule(hook_writer, tmp_path)
        judge = scripted_llm(
            completions=[
                '{"ask": "ai", "message": "Run the tests first.", "continue": true}',
                '{"ask": "ai", "message": "ok", "continue": true}',
                '{"ask": "user", "message": "Looks good", "continue": false}',
            ]
        )
        hooks = HooksEngine(base_dir=str(tmp_path), config_dir=tmp_path / "g", basic_llm=judge)
        llm = scripted_llm(["done", "tests pass", "really done"])
        messages = [{"role": "user", "content": "fix it"}]
        with pytest.raises(HookInterrupt) as exc_info:
            _loop(messages, llm, tmp_path, hooks=hooks, on_complete=stop_hook_follow_ups(hooks))
        assert exc_info.value.message == "Looks good"
        assert {"role": "user", "content": "Run the tests first."} in messages

    def test_continuation_cap(self, tmp_path, scripted_llm, hook_writer):
        self._stop_rule(hook_writer, tmp_path)
        reply = '{"ask": "ai", "message": "again", "continue": true}'
        judge = scripted_llm(completions=[reply] * (MAX_HOOK_CONTINUATIONS + 1))
        hooks = HooksEngine(base_dir=str(tmp_path), config_dir=tmp_path / "g", basic_llm=judge)
        llm = scripted_llm([f"answer {i}" for i in range(MAX_HOOK_CONTINUATIONS + 1)])
        result = _loop(
            [{"role": "user", "content": "go"}], llm, tmp_path, hooks=hooks, on_complete=stop_hook_follow_ups(hooks)
        )
        assert result.continuations == MAX_HOOK_CONTINUATIONS
        assert result.answer == f"answer {MAX_HOOK_CONTINUATIONS}"


# ---------------------------------------------------------------------------
# Compression in the loop
# ---------------------------------------------------------------------------


def _long_history():
    messages = []
    for i in range(6):
        messages.append({"role": "user", "content": f"question {i} " + "word " * 50})
        messages.append({"role": "assistant", "content": f"answer {i}"})
    return messages


class TestCompression:
    def test_over_budget(self):
        msgs = [{"role": "user", "content": "word " * 100}]
        assert over_budget(msgs, [], 50, 80)
        assert not over_budget(msgs, [], 100_000, 80)
        assert not over_budget(msgs, [], None, 80)

    def test_compress_history_in_place(self, scripted_llm):
        messages = _long_history()
        before = len(messages)
        usage = compress_history(messages, [], compact_llm=scripted_llm(completions=["summary text"]))
        assert usage is not None
        assert len(messages) < before
        assert "summary text" in messages[0]["content"]
        assert messages[-1] == {"role": "assistant", "content": "answer 5"}

    @posix_only
    def test_before_compress_hard_stop(self, tmp_path, scripted_llm, hook_writer):
        hook_writer(tmp_path, "beforeCompress", [{"hooks": [{"type": "command", "command": "exit 3"}]}])
        messages = _long_history()
        original = list(messages)
        compact = scripted_llm(completions=["summary"])
        with pytest.raises(HookFailedError):
            compress_history(messages, [], compact_llm=compact, hooks=_hooks(tmp_path))
        assert messages == original
        assert compact.completion_requests == []

    def test_auto_compress_after_tool_batch(self, tmp_path, scripted_llm):
        llm = scripted_llm([[("search-files", {"pattern": "*"})], "final"])
        compact = scripted_llm(completions=["the summary"], usage=(7, 3))
        messages = _long_history() + [{"role": "user", "content": "go on"}]
        result = _loop(messages, llm, tmp_path, compact_llm=compact, max_context_tokens=100, compress_threshold=50)
        assert result.answer == "final"
        assert len(compact.completion_requests) == 1
        assert any("the summary" in (m.get("content") or "") for m in messages)
        _assert_paired(messages)
        # compaction usage counted with the run
        assert result.usage.input_tokens == 20 + 7

    def test_auto_compress_after_continuation(self, tmp_path, scripted_llm):
        llm = scripted_llm(["first", "second"])
        compact = scripted_llm(completions=["the summary"])
        messages = _long_history() + [{"role": "user", "content": "go on"}]

        def on_complete(content, usage, turn):
            return ["keep going"] if content == "first" else []

        result = _loop(
            messages,
            llm,
            tmp_path,
            compact_llm=compact,
            max_context_tokens=100,
            compress_threshold=50,
            on_complete=on_complete,
        )
        assert result.answer == "second"
        assert result.continuations == 1
        assert len(compact.completion_requests) == 1
        sent, _ = llm.requests[1]
        assert any("the summary" in (m.get("content") or "") for m in sent)
        assert sent[-1] == {"role": "user", "content": "keep going"}

    def test_compression_failure_fails_turn(self, tmp_path, scripted_llm):
        from relay.report import CompressionError

        llm = scripted_llm([[("search-files", {"pattern": "*"})]])
        compact = scripted_llm(completions=[""])
        messages = _long_history() + [{"role": "user", "content": "go on"}]
        with pytest.raises(CompressionError):
            _loop(messages, llm, tmp_path, compact_llm=compact, max_context_tokens=100, compress_threshold=50)


# ---------------------------------------------------------------------------
# handle_tool_call
# ---------------------------------------------------------------------------


class TestHandleToolCall:
    def test_oversized_result_becomes_error(self, tmp_path):
        (tmp_path / "big.txt").write_text("token " * 2000, encoding="utf-8")
        tc = {"id": "c", "type": "function", "function": {"name": "filesystem-read", "arguments": '{"path": "big.txt"}'}}
        msg, meta, warnings = handle_tool_call(tc, base_dir=str(tmp_path), gate=_yolo_gate(), tool_token_limit=50)
        assert msg["content"].startswith('error: Tool "filesystem-read" returned content that exceeds token limit.')
        assert meta["succeeded"] is False
        assert warnings == []
