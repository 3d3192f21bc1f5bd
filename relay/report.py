"""Error taxonomy and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class ProviderError(AgentError):
    """Raised when a provider stream fails for good (after retries)."""

    def __init__(self, message: str, status: int | None = None, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(message)


class UserRejectedError(AgentError):
    """The user rejected a tool call; the run ends."""

    def __init__(self, tool_names: list[str], reply: str | None = None):
        self.tool_names = list(tool_names)
        self.reply = reply
        super().__init__(f"User rejected tool execution: {', '.join(tool_names)}")


class HookFailedError(AgentError):
    """A hook action asked for a hard stop (exit code >= 2 or bad prompt reply)."""

    def __init__(
        self,
        hook: str,
        exit_code: int | None,
        command: str | None,
        output: str = "",
    ):
        self.hook = hook
        self.exit_code = exit_code
        self.command = command
        self.output = output
        if command is not None:
            detail = f"command {command!r} exited with code {exit_code}"
        else:
            detail = "prompt action failed"
        msg = f"{hook} hook failed: {detail}"
        if output:
            msg += f"\n{output}"
        super().__init__(msg)


class HookInterrupt(AgentError):
    """A prompt hook handed control back to the user."""

    def __init__(self, hook: str, message: str):
        self.hook = hook
        self.message = message
        super().__init__(f"{hook} hook: {message}")


class CompressionError(AgentError):
    """Context compression could not produce a summary."""


class AbortedError(AgentError):
    """The run was cancelled through its abort event."""


class ContentTooLargeError(Exception):
    """A tool result exceeds the token ceiling."""

    def __init__(self, tokens: int, limit: int):
        self.tokens = tokens
        self.limit = limit
        super().__init__(
            f"Content is too large: {tokens} tokens (exceeds {limit} token limit). "
            "Please narrow the request (smaller ranges, more specific patterns)."
        )


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.compactions = 0
        self.hook_runs = 0
        self.hook_failures = 0
        self.rejections = 0
        self.retries = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_turn_seen = 0

    def record_llm_call(
        self,
        turn: int,
        duration: float,
        token_est: int,
        outcome: str,
        *,
        retries: int = 0,
    ):
        self.llm_calls += 1
        self.retries += retries
        self.total_llm_time += duration
        if turn > self.max_turn_seen:
            self.max_turn_seen = turn
        event = {
            "turn": turn,
            "type": "llm_call",
            "duration_s": round(duration, 3),
            "prompt_tokens_est": token_est,
            "outcome": outcome,
        }
        if retries:
            event["retries"] = retries
        self.events.append(event)

    def record_tool_call(
        self,
        turn: int,
        name: str,
        arguments: dict | None,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "turn": turn,
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_compaction(self, turn: int, tokens_before: int, tokens_after: int):
        self.compactions += 1
        self.events.append(
            {
                "turn": turn,
                "type": "compaction",
                "tokens_before": tokens_before,
                "tokens_after": tokens_after,
            }
        )

    def record_hook(self, turn: int, point: str, executed: int, success: bool):
        self.hook_runs += 1
        if not success:
            self.hook_failures += 1
        self.events.append(
            {
                "turn": turn,
                "type": "hook",
                "point": point,
                "executed": executed,
                "success": success,
            }
        )

    def record_rejection(self, turn: int, tool_names: list[str]):
        self.rejections += 1
        self.events.append(
            {"turn": turn, "type": "rejection", "tools": list(tool_names)}
        )

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        turns: int,
        usage: dict | None = None,
        error_message: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "turns": turns,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "compactions": self.compactions,
                "hook_runs": self.hook_runs,
                "hook_failures": self.hook_failures,
                "rejections": self.rejections,
                "llm_calls": self.llm_calls,
                "llm_retries": self.retries,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
                **({"usage": usage} if usage else {}),
            },
            "timeline": self.events,
        }

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report
