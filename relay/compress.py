"""Context compression: summarize the older half of a conversation.

The history is cut at a user message so that no tool result is separated
from the assistant message that requested it. Everything before the cut
is summarized by the compact model; everything after is kept verbatim.
"""

import logging
from dataclasses import dataclass, field

from .providers import TokenUsage
from .report import AgentError, CompressionError

logger = logging.getLogger(__name__)

COMPRESSION_SYSTEM = (
    "You are a context compression assistant. You turn long agent "
    "conversations into dense, faithful summaries that another agent can "
    "resume from without access to the original messages."
)

COMPRESSION_PROMPT = """Summarize the conversation above so the work can continue from the summary alone.
Use exactly these sections:

## Current Task & Goals
What the user asked for, the overall objective, and any acceptance criteria.

## Technical Context
Languages, frameworks, files, directories, commands and environment details that matter.

## Key Decisions & Approaches
Choices that were made and the reasons given, including rejected alternatives.

## Completed Work
What has been done so far: files created or changed, commands run, results observed.

## Pending & In-Progress Work
What remains to be done and what was being worked on when the conversation was cut.

## Critical Information
Exact identifiers, paths, error messages, values and user preferences that must not be lost.

Be specific. Quote exact names and values. Do not invent anything that is not in the conversation."""

SUMMARY_HEADER = "## Previous Context (Compressed Summary)"
SUMMARY_FOOTER = (
    "*The above summarizes the earlier part of this conversation. "
    "Continue from it and from the messages that follow.*"
)


@dataclass
class CompressionResult:
    summary: str
    usage: TokenUsage
    split_index: int
    preserved_tail: list[dict] = field(default_factory=list)
    head: list[dict] = field(default_factory=list)


def _is_safe_split(messages: list[dict], i: int) -> bool:
    if messages[i].get("role") != "user":
        return False
    prev = messages[i - 1]
    return not (prev.get("role") == "assistant" and prev.get("tool_calls"))


def find_split_point(messages: list[dict]) -> int | None:
    """Index where the preserved tail starts, or None when no cut is safe.

    Scans forward from the middle, then backward, then forward from the
    second message, for a user message not directly preceded by an
    assistant message with tool calls.
    """
    n = len(messages)
    if n < 2:
        return None
    mid = n // 2
    for i in range(max(mid, 1), n):
        if _is_safe_split(messages, i):
            return i
    for i in range(mid - 1, 0, -1):
        if _is_safe_split(messages, i):
            return i
    for i in range(1, n):
        if _is_safe_split(messages, i):
            return i
    return None


def render_transcript(messages: list[dict]) -> str:
    """Flatten messages into text for the compact model.

    System messages are left out; tool calls and tool_call_ids are kept so
    the summary can refer to what ran.
    """
    parts = []
    for m in messages:
        role = m.get("role")
        if role == "system":
            continue
        content = m.get("content") or ""
        if role == "tool":
            parts.append(f"[tool result {m.get('tool_call_id', '')}]\n{content}")
            continue
        block = f"[{role}]\n{content}" if content else f"[{role}]"
        for tc in m.get("tool_calls") or ():
            fn = tc.get("function", {})
            block += f"\n[tool call {tc.get('id', '')}] {fn.get('name', '')}({fn.get('arguments', '')})"
        parts.append(block)
    return "\n\n".join(parts)


def compress(messages: list[dict], llm, *, max_tokens: int | None = None, abort=None):
    """Summarize the head of *messages*.

    Returns a CompressionResult, or None when there is nothing to compress
    (no safe split point, or fewer than two non-system messages in the
    head). Raises CompressionError when the compact model fails or returns
    an empty summary.
    """
    split = find_split_point(messages)
    if split is None:
        logger.info("no safe split point in %d messages, not compressing", len(messages))
        return None
    head = messages[:split]
    if sum(1 for m in head if m.get("role") != "system") < 2:
        return None

    request = [
        {"role": "system", "content": COMPRESSION_SYSTEM},
        {
            "role": "user",
            "content": "## Conversation History to Compress\n\n"
            + render_transcript(head)
            + "\n\n---\n\n"
            + COMPRESSION_PROMPT,
        },
    ]
    try:
        summary, usage = llm.complete(request, max_tokens=max_tokens, abort=abort)
    except AgentError as e:
        raise CompressionError(f"Context compression failed: {e}") from e

    summary = summary.strip()
    if not summary:
        raise CompressionError("Context compression failed: empty summary")

    return CompressionResult(
        summary=summary,
        usage=usage,
        split_index=split,
        preserved_tail=messages[split:],
        head=head,
    )


def summary_message(summary: str) -> dict:
    return {
        "role": "user",
        "content": f"{SUMMARY_HEADER}\n\n{summary}\n\n---\n\n{SUMMARY_FOOTER}",
    }


def splice(result: CompressionResult) -> list[dict]:
    """Leading system messages, then the summary, then the preserved tail."""
    leading = [m for m in result.head if m.get("role") == "system"]
    return leading + [summary_message(result.summary)] + list(result.preserved_tail)
