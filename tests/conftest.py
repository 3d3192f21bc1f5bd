"""Shared test helpers: a scripted stand-in for LLMClient."""

import copy
import json

import pytest

from relay.providers import DONE, StreamEvent, TokenUsage, content_event, make_tool_call


class ScriptedLLM:
    """Replays canned turns through the LLMClient streaming interface.

    Each turn is either a string (plain content, no tool calls) or a list
    of ``(name, args)`` pairs, optionally preceded by a content string as
    ``("text", [(name, args), ...])``. ``completions`` feeds complete().
    """

    def __init__(self, turns=(), completions=(), usage=(10, 5)):
        self.turns = list(turns)
        self.completions = list(completions)
        self.usage = usage
        self.model = "scripted"
        self.requests = []
        self.completion_requests = []
        self._call_no = 0

    def with_model(self, model):
        return self

    def _calls(self, pairs):
        calls = []
        for name, args in pairs:
            calls.append(
                make_tool_call(
                    f"call_{self._call_no}",
                    name,
                    args if isinstance(args, str) else json.dumps(args),
                )
            )
            self._call_no += 1
        return calls

    def stream_with_retry(self, messages, tools=None, *, max_tokens=None, abort=None, on_retry=None):
        self.requests.append((copy.deepcopy(messages), tools))
        if not self.turns:
            raise AssertionError("ScriptedLLM ran out of turns")
        turn = self.turns.pop(0)
        if isinstance(turn, StreamEvent):
            yield turn
            return
        text, pairs = "", []
        if isinstance(turn, str):
            text = turn
        elif isinstance(turn, tuple):
            text, pairs = turn
        else:
            pairs = turn
        if text:
            yield content_event(text)
        if pairs:
            yield StreamEvent("tool_calls", tool_calls=self._calls(pairs))
        yield StreamEvent("usage", usage=TokenUsage(*self.usage))
        yield DONE

    def complete(self, messages, *, max_tokens=None, abort=None):
        self.completion_requests.append(copy.deepcopy(messages))
        if not self.completions:
            raise AssertionError("ScriptedLLM ran out of completions")
        reply = self.completions.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply, TokenUsage(*self.usage)


@pytest.fixture
def scripted_llm():
    return ScriptedLLM


def write_hook(base_dir, point, rules):
    """Write project-scope hook rules for *point* under *base_dir*."""
    hooks_dir = base_dir / ".relay" / "hooks"
    hooks_dir.mkdir(parents=True, exist_ok=True)
    (hooks_dir / f"{point}.json").write_text(json.dumps(rules), encoding="utf-8")


@pytest.fixture
def hook_writer():
    return write_hook
