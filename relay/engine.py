"""Conversation engine: the tool-calling turn loop shared by runs and sub-agents."""

import json
import logging
import time
from dataclasses import dataclass, field

from . import fmt
from .compress import compress, splice
from .guard import DEFAULT_TOKEN_LIMIT, estimate_tokens, guard_tool_result
from .providers import TokenUsage, TurnResult
from .report import (
    AbortedError,
    AgentError,
    ProviderError,
    UserRejectedError,
)
from .tools import ASKUSER_PREFIX, answer_ask_user, dispatch

logger = logging.getLogger(__name__)

MAX_HOOK_CONTINUATIONS = 5
MAX_ARG_LOG = 1000
DEFAULT_COMPRESS_THRESHOLD = 80


@dataclass
class LoopResult:
    answer: str | None
    exhausted: bool
    turns: int
    usage: TokenUsage = field(default_factory=TokenUsage)
    continuations: int = 0


def check_abort(abort, where: str = "") -> None:
    if abort is not None and abort.is_set():
        raise AbortedError(f"Aborted {where}".rstrip())


def request_turn(llm, messages: list, tools: list, *, abort=None, verbose=False) -> tuple[TurnResult, int]:
    """Stream one model turn. Returns (turn, retries). Raises ProviderError."""
    turn = TurnResult()
    parts: list[str] = []
    retries = 0

    def _on_retry(attempt, delay, event):
        nonlocal retries
        retries = attempt
        if verbose:
            fmt.retry(attempt, delay, event.error or "")

    for event in llm.stream_with_retry(messages, tools, abort=abort, on_retry=_on_retry):
        if event.kind == "content":
            parts.append(event.content)
        elif event.kind == "tool_calls":
            turn.tool_calls.extend(event.tool_calls or ())
        elif event.kind == "usage":
            turn.usage.add(event.usage)
        elif event.kind == "error":
            raise ProviderError(event.error or "stream error", event.status, event.body)
    turn.content = "".join(parts)
    return turn, retries


# ---------------------------------------------------------------------------
# Hooks glue
# ---------------------------------------------------------------------------


def show_hook_warnings(point: str, result, verbose: bool) -> None:
    if not verbose:
        return
    for r in result.warnings():
        fmt.hook_warning(point, r.command or "", r.combined_output())


def run_hook(hooks, point: str, context: dict, *, abort=None, verbose=False, report=None, turn=0):
    """Execute *point*, show warnings, and raise on a hard stop.

    Returns the HookResult, or None when no hooks engine is configured.
    """
    if hooks is None:
        return None
    result = hooks.execute(point, context, abort)
    if report is not None and result.executed_count:
        report.record_hook(turn, point, result.executed_count, result.success)
    show_hook_warnings(point, result, verbose)
    result.raise_for_stop(point)
    return result


def stop_hook_follow_ups(hooks, *, abort=None, verbose=False, report=None):
    """on_complete callback for the main loop: fires onStop.

    A prompt answering ``ask: "ai"`` continues the run with its message;
    hard stops and ``ask: "user"`` end it through raise_for_stop().
    """

    def _on_complete(content: str, usage: TokenUsage, turn: int) -> list[str]:
        result = run_hook(
            hooks,
            "onStop",
            {"content": content, "usage": usage.to_dict()},
            abort=abort,
            verbose=verbose,
            report=report,
            turn=turn,
        )
        return result.ai_messages() if result is not None else []

    return _on_complete


# ---------------------------------------------------------------------------
# Compression
# ---------------------------------------------------------------------------


def over_budget(messages: list, tools: list, max_context_tokens: int | None, threshold: int) -> bool:
    if not max_context_tokens:
        return False
    return estimate_tokens(messages, tools) > max_context_tokens * threshold / 100


def compress_history(
    messages: list,
    tools: list,
    *,
    compact_llm,
    hooks=None,
    abort=None,
    verbose=False,
    report=None,
    turn: int = 0,
) -> TokenUsage | None:
    """Replace the head of *messages* with a summary, in place.

    Returns the compact model's usage, or None when nothing was compressed.
    beforeCompress hard stops and compression failures propagate.
    """
    tokens_before = estimate_tokens(messages, tools)
    run_hook(
        hooks,
        "beforeCompress",
        {"messageCount": len(messages), "estimatedTokens": tokens_before},
        abort=abort,
        verbose=verbose,
        report=report,
        turn=turn,
    )
    if verbose:
        fmt.info(f"Compressing context (~{tokens_before} tokens)...")
    result = compress(messages, compact_llm, abort=abort)
    if result is None:
        if verbose:
            fmt.info("Nothing to compress.")
        return None

    messages[:] = splice(result)
    tokens_after = estimate_tokens(messages, tools)
    if report is not None:
        report.record_compaction(turn, tokens_before, tokens_after)
    if verbose:
        fmt.context_stats("Context after compression", tokens_after)
    return result.usage


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


def _tool_message(tool_call: dict, content: str) -> dict:
    return {"role": "tool", "tool_call_id": tool_call["id"], "content": content}


def handle_tool_call(
    tool_call: dict,
    *,
    base_dir: str,
    gate,
    hooks=None,
    abort=None,
    ask_user=None,
    subagent_runner=None,
    tool_token_limit: int = DEFAULT_TOKEN_LIMIT,
    yolo: bool = False,
    verbose: bool = False,
    http_client=None,
    report=None,
    turn: int = 0,
    offered: frozenset | None = None,
) -> tuple[dict, dict, list[str]]:
    """Approve, dispatch and guard one call.

    Returns (tool_msg, metadata, warnings). metadata has the keys name,
    arguments, elapsed, succeeded. Raises UserRejectedError on rejection
    and HookFailedError/HookInterrupt when a tool hook stops the flow.
    A name outside *offered* gets an error result and never runs.
    """
    name = tool_call["function"]["name"]
    raw_args = tool_call["function"].get("arguments") or "{}"

    if offered is not None and name not in offered:
        content = f'error: tool "{name}" is not available'
        if verbose:
            fmt.tool_error(name, content)
        return (
            _tool_message(tool_call, content),
            {"name": name, "arguments": None, "elapsed": 0.0, "succeeded": False},
            [],
        )

    try:
        parsed_args = json.loads(raw_args)
        if not isinstance(parsed_args, dict):
            raise TypeError(f"expected a JSON object, got {type(parsed_args).__name__}")
    except (json.JSONDecodeError, TypeError) as e:
        parsed_args = None
        args_error = f"error: invalid JSON in tool arguments: {e}"
    else:
        args_error = None

    if verbose:
        pretty = json.dumps(parsed_args, indent=2) if parsed_args is not None else raw_args
        if len(pretty) > MAX_ARG_LOG:
            pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
        fmt.tool_call(name, pretty)

    # Questions go straight to the user: no approval, no dispatch.
    if name.startswith(ASKUSER_PREFIX):
        content = answer_ask_user(ask_user, parsed_args or {})
        return (
            _tool_message(tool_call, content),
            {"name": name, "arguments": parsed_args, "elapsed": 0.0, "succeeded": not content.startswith("error:")},
            [],
        )

    decision = gate.decide(tool_call)
    if not decision.approved:
        raise UserRejectedError([name], decision.reply)

    if args_error is not None:
        if verbose:
            fmt.tool_error(name, args_error)
        return (
            _tool_message(tool_call, args_error),
            {"name": name, "arguments": None, "elapsed": 0.0, "succeeded": False},
            [],
        )

    warnings: list[str] = []
    before = run_hook(
        hooks,
        "beforeToolCall",
        {"toolName": name, "args": parsed_args},
        abort=abort,
        verbose=verbose,
        report=report,
        turn=turn,
    )
    if before is not None and before.warnings():
        warnings.append(before.warning_text().lstrip("\n"))

    t0 = time.monotonic()
    try:
        result = dispatch(
            name,
            parsed_args,
            base_dir,
            yolo=yolo,
            ask_user=ask_user,
            subagent_runner=subagent_runner,
            http_client=http_client,
        )
    except AgentError:
        raise
    except KeyError as e:
        result = f"error: {e.args[0] if e.args else e}"
    except Exception as e:
        logger.debug("tool %s raised", name, exc_info=True)
        result = f"error: {e}"
    elapsed = time.monotonic() - t0

    content = guard_tool_result(name, result, tool_token_limit)
    succeeded = not content.startswith("error:")
    if verbose:
        if succeeded:
            fmt.tool_result(name, elapsed, content[:500])
        else:
            fmt.tool_error(name, content)

    after = run_hook(
        hooks,
        "afterToolCall",
        {"toolName": name, "args": parsed_args, "result": content},
        abort=abort,
        verbose=verbose,
        report=report,
        turn=turn,
    )
    if after is not None and after.warnings():
        warnings.append(after.warning_text().lstrip("\n"))

    return (
        _tool_message(tool_call, content),
        {"name": name, "arguments": parsed_args, "elapsed": elapsed, "succeeded": succeeded},
        warnings,
    )


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


def run_agent_loop(
    messages: list,
    tools: list,
    *,
    llm,
    gate,
    base_dir: str = ".",
    max_turns: int = 100,
    hooks=None,
    compact_llm=None,
    max_context_tokens: int | None = None,
    compress_threshold: int = DEFAULT_COMPRESS_THRESHOLD,
    tool_token_limit: int = DEFAULT_TOKEN_LIMIT,
    yolo: bool = False,
    verbose: bool = False,
    report=None,
    abort=None,
    ask_user=None,
    subagent_runner=None,
    on_complete=None,
    http_client=None,
    turn_offset: int = 0,
    label: str = "Turn",
) -> LoopResult:
    """Run the tool-calling loop until a final answer or max turns.

    Mutates *messages* in place: assistant and tool messages are appended
    and compression replaces the head. A batch that ends in rejection,
    abort or a hook hard stop is removed again before the error propagates,
    so *messages* never holds tool_calls without their results.

    *on_complete(content, usage, turn)* runs when a turn has no tool calls;
    any strings it returns become new user turns and the loop continues,
    at most MAX_HOOK_CONTINUATIONS times.
    """
    usage = TokenUsage()
    turns = 0
    continuations = 0
    offered = frozenset(t["function"]["name"] for t in tools)

    def _check_budget(turn_no: int) -> None:
        if compact_llm is not None and over_budget(
            messages, tools, max_context_tokens, compress_threshold
        ):
            usage.add(
                compress_history(
                    messages,
                    tools,
                    compact_llm=compact_llm,
                    hooks=hooks,
                    abort=abort,
                    verbose=verbose,
                    report=report,
                    turn=turn_no,
                )
            )
        elif verbose:
            fmt.context_stats(f"Context after turn {turns}", estimate_tokens(messages, tools))

    while turns < max_turns:
        check_abort(abort, "before request")
        turns += 1
        turn_no = turns + turn_offset
        token_est = estimate_tokens(messages, tools)
        if verbose:
            fmt.turn_header(turns, max_turns, token_est, label=label)

        t0 = time.monotonic()
        try:
            if verbose:
                with fmt.llm_spinner():
                    turn, retries = request_turn(llm, messages, tools, abort=abort, verbose=verbose)
            else:
                turn, retries = request_turn(llm, messages, tools, abort=abort)
        except AgentError:
            if report is not None:
                report.record_llm_call(turn_no, time.monotonic() - t0, token_est, "error")
            raise
        elapsed = time.monotonic() - t0
        usage.add(turn.usage)
        if verbose:
            fmt.llm_timing(elapsed, len(turn.tool_calls))
        if report is not None:
            outcome = "tool_calls" if turn.tool_calls else "stop"
            report.record_llm_call(turn_no, elapsed, token_est, outcome, retries=retries)

        if not turn.tool_calls:
            messages.append({"role": "assistant", "content": turn.content})
            follow_ups = on_complete(turn.content, usage, turn_no) if on_complete else []
            if follow_ups and continuations < MAX_HOOK_CONTINUATIONS:
                continuations += 1
                for text in follow_ups:
                    messages.append({"role": "user", "content": text})
                _check_budget(turn_no)
                continue
            if follow_ups:
                fmt.warning(
                    f"hook continuation limit ({MAX_HOOK_CONTINUATIONS}) reached, finishing"
                )
            if verbose:
                fmt.completion(turns, "completed")
            return LoopResult(turn.content, False, turns, usage, continuations)

        if turn.content and verbose:
            fmt.assistant_text(turn.content)
        messages.append(
            {"role": "assistant", "content": turn.content, "tool_calls": turn.tool_calls}
        )
        batch_start = len(messages) - 1
        warnings: list[str] = []
        try:
            for tool_call in turn.tool_calls:
                check_abort(abort, "before tool execution")
                tool_msg, meta, tool_warnings = handle_tool_call(
                    tool_call,
                    base_dir=base_dir,
                    gate=gate,
                    hooks=hooks,
                    abort=abort,
                    ask_user=ask_user,
                    subagent_runner=subagent_runner,
                    tool_token_limit=tool_token_limit,
                    yolo=yolo,
                    verbose=verbose,
                    http_client=http_client,
                    report=report,
                    turn=turn_no,
                    offered=offered,
                )
                messages.append(tool_msg)
                warnings.extend(tool_warnings)
                if report is not None:
                    report.record_tool_call(
                        turn_no,
                        meta["name"],
                        meta["arguments"],
                        meta["succeeded"],
                        meta["elapsed"],
                        len(tool_msg["content"]),
                        error=tool_msg["content"] if not meta["succeeded"] else None,
                    )
        except UserRejectedError as e:
            del messages[batch_start:]
            if verbose:
                fmt.rejected(e.tool_names)
            if report is not None:
                report.record_rejection(turn_no, e.tool_names)
            raise
        except BaseException:
            # KeyboardInterrupt from a prompt included
            del messages[batch_start:]
            raise

        if warnings:
            messages.append({"role": "user", "content": "\n\n".join(warnings)})

        _check_budget(turn_no)

    if verbose:
        fmt.completion(turns, "max_turns")
    last_text = next(
        (m.get("content") for m in reversed(messages) if m.get("role") == "assistant" and m.get("content")),
        None,
    )
    return LoopResult(last_text, True, turns, usage, continuations)
