"""Hooks engine: user-defined interception points around the agent loop.

Rules live in JSON files, one per interception point:

    <base_dir>/.relay/hooks/<point>.json      (project scope)
    <config_dir>/hooks/<point>.json           (global scope)

Project rules win; global rules are used only when the project defines
none for that point. A file holds either a list of rules or an object
``{"<point>": [rules]}``. A rule looks like::

    {
      "description": "block edits to lockfiles",
      "matcher": "toolName:filesystem-*, args:*lock*",
      "hooks": [{"type": "command", "command": "./check.sh", "timeout": 5000}]
    }

Command actions are classified by exit code: 0 passes, 1 is a warning
whose output is forwarded to the model, 2 or more (or a timeout) is a hard
stop. Prompt actions ask the basic model for a JSON verdict
``{"ask": "user"|"ai", "message": ..., "continue": bool}``.
"""

import json
import logging
import os
import re
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path

from .config import global_config_dir, project_dir, read_json_file
from .report import AgentError, HookFailedError, HookInterrupt
from .tools import _kill_process_tree

logger = logging.getLogger(__name__)

HOOK_POINTS = (
    "onUserMessage",
    "beforeToolCall",
    "afterToolCall",
    "onSubAgentComplete",
    "beforeCompress",
    "onSessionStart",
    "onStop",
)

DEFAULT_TIMEOUT_MS = 5000
MAX_OUTPUT_LENGTH = 10_000
TRUNCATION_MARKER = "\n...(output truncated)...\n"
PROMPT_MAX_TOKENS = 500

PROMPT_SYSTEM = """You are a hook execution assistant. You must respond ONLY with a valid JSON object in this exact format:
{
  "ask": "user" or "ai",
  "message": "your message content",
  "continue": true or false
}

Flow control:
- "ask": "ai" sends the message to the AI and the conversation continues ("continue": true)
- "ask": "user" shows the message to the user and the current flow ends ("continue": false)

Rules:
- All three fields are required
- "continue" must be a boolean: true with "ai", false with "user"
- Output ONLY the JSON object, with no other text"""


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@dataclass
class HookAction:
    type: str
    command: str | None = None
    prompt: str | None = None
    timeout: int = DEFAULT_TIMEOUT_MS
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "HookAction":
        timeout = data.get("timeout")
        return cls(
            type=data.get("type", ""),
            command=data.get("command"),
            prompt=data.get("prompt"),
            timeout=timeout if isinstance(timeout, int) and timeout > 0 else DEFAULT_TIMEOUT_MS,
            enabled=data.get("enabled", True) is not False,
        )


@dataclass
class HookRule:
    description: str = ""
    matcher: str | None = None
    actions: list[HookAction] = field(default_factory=list)

    def add_action(self, action: HookAction) -> None:
        """Append an action; a prompt action must be the rule's only action."""
        if action.type == "prompt" and self.actions:
            raise ValueError("a prompt action must be the only action in its rule")
        if any(a.type == "prompt" for a in self.actions):
            raise ValueError("cannot add actions to a rule that has a prompt action")
        self.actions.append(action)

    @classmethod
    def from_dict(cls, data: dict) -> "HookRule":
        rule = cls(
            description=str(data.get("description", "")),
            matcher=data.get("matcher") or None,
        )
        for raw in data.get("hooks") or []:
            if isinstance(raw, dict):
                rule.add_action(HookAction.from_dict(raw))
        return rule

    def matches(self, context: dict | None) -> bool:
        """Comma-separated matchers, any of which may match.

        ``key:pattern`` globs ``str(context[key])`` (anchored, case
        insensitive); a bare pattern is a substring of the JSON context.
        """
        if not self.matcher or not context:
            return True
        for matcher in (m.strip() for m in self.matcher.split(",")):
            if matcher and _test_matcher(matcher, context):
                return True
        return False


def _glob_regex(pattern: str) -> re.Pattern:
    body = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile(f"^{body}$", re.IGNORECASE)


def _context_value(value) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _test_matcher(matcher: str, context: dict) -> bool:
    if ":" in matcher:
        key, _, pattern = matcher.partition(":")
        key = key.strip()
        if key not in context or context[key] is None:
            return False
        return bool(_glob_regex(pattern.strip()).match(_context_value(context[key])))
    return matcher in json.dumps(context)


def _rules_from_file(path: Path, point: str) -> list[HookRule]:
    data = read_json_file(path, None)
    if data is None:
        return []
    if isinstance(data, dict):
        data = data.get(point, [])
    if not isinstance(data, list):
        logger.warning("%s: expected a list of hook rules", path)
        return []
    rules = []
    for i, raw in enumerate(data):
        if not isinstance(raw, dict):
            logger.warning("%s: rule %d is not an object, skipping", path, i)
            continue
        try:
            rules.append(HookRule.from_dict(raw))
        except ValueError as e:
            logger.warning("%s: rule %d skipped: %s", path, i, e)
    return rules


def load_rules(
    point: str, *, base_dir: str | Path = ".", config_dir: Path | None = None
) -> list[HookRule]:
    """Project rules for *point*, or global rules when the project has none."""
    if point not in HOOK_POINTS:
        raise ValueError(f"unknown hook point {point!r}")
    project_file = project_dir(base_dir) / "hooks" / f"{point}.json"
    rules = _rules_from_file(project_file, point)
    if rules:
        return rules
    global_file = (config_dir or global_config_dir()) / "hooks" / f"{point}.json"
    return _rules_from_file(global_file, point)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ActionResult:
    type: str
    success: bool
    exit_code: int | None = None
    command: str | None = None
    output: str = ""
    error: str = ""
    response: dict | None = None

    @property
    def hard_stop(self) -> bool:
        if self.type == "command":
            return self.exit_code is None or self.exit_code < 0 or self.exit_code >= 2
        return not self.success

    @property
    def is_warning(self) -> bool:
        return self.type == "command" and self.exit_code == 1

    def combined_output(self) -> str:
        return "\n\n".join(p for p in (self.output, self.error) if p) or "(no output)"


@dataclass
class HookResult:
    success: bool = True
    results: list[ActionResult] = field(default_factory=list)
    executed_count: int = 0
    skipped_count: int = 0

    def failure(self) -> ActionResult | None:
        return next((r for r in self.results if r.hard_stop), None)

    def warnings(self) -> list[ActionResult]:
        return [r for r in self.results if r.is_warning]

    def warning_text(self) -> str:
        return "".join(
            f"\n\n[Hook Command Warning]\nCommand: {r.command}\nOutput:\n{r.combined_output()}"
            for r in self.warnings()
        )

    def prompt_responses(self) -> list[dict]:
        return [r.response for r in self.results if r.type == "prompt" and r.response]

    def raise_for_stop(self, point: str) -> None:
        """Raise HookFailedError or HookInterrupt when the flow must halt."""
        failed = self.failure()
        if failed is not None:
            raise HookFailedError(
                point,
                failed.exit_code,
                failed.command,
                failed.combined_output() if failed.type == "command" else failed.error,
            )
        for response in self.prompt_responses():
            if response["ask"] == "user":
                raise HookInterrupt(point, response["message"])

    def ai_messages(self) -> list[str]:
        return [r["message"] for r in self.prompt_responses() if r["ask"] == "ai"]


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def truncate_output(text: str, limit: int = MAX_OUTPUT_LENGTH) -> str:
    """Cut the middle out of *text* when it exceeds *limit* characters."""
    if len(text) <= limit:
        return text
    half = limit // 2
    return text[:half] + TRUNCATION_MARKER + text[-half:]


def run_command_action(
    action: HookAction, context: dict | None, base_dir: str, point: str = ""
) -> ActionResult:
    """Run a shell command action and classify its exit code."""
    payload = json.dumps(context or {})
    env = os.environ.copy()
    env.update(
        {
            "LANG": "en_US.UTF-8",
            "LC_ALL": "en_US.UTF-8",
            "RELAY_HOOK_POINT": point,
            "RELAY_HOOK_CONTEXT": payload,
        }
    )
    timeout = action.timeout / 1000
    popen_kwargs: dict = dict(
        shell=True,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        cwd=base_dir,
        env=env,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(action.command, **popen_kwargs)
    except OSError as e:
        return ActionResult(
            type="command",
            success=False,
            exit_code=None,
            command=action.command,
            error=f"failed to start hook command: {e}",
        )

    try:
        out, err = proc.communicate(payload.encode(), timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_process_tree(proc)
        out, err = proc.communicate()
        return ActionResult(
            type="command",
            success=False,
            exit_code=None,
            command=action.command,
            output=truncate_output(out.decode("utf-8", errors="replace")),
            error=f"Command timed out after {action.timeout}ms: {action.command}",
        )

    return ActionResult(
        type="command",
        success=proc.returncode == 0,
        exit_code=proc.returncode,
        command=action.command,
        output=truncate_output(out.decode("utf-8", errors="replace")),
        error=truncate_output(err.decode("utf-8", errors="replace")),
    )


def _strip_fences(text: str) -> str:
    text = text.strip()
    m = re.match(r"^```(?:json)?\s*\n?(.*?)\n?```$", text, re.DOTALL)
    return m.group(1).strip() if m else text


def parse_prompt_response(text: str) -> tuple[dict | None, str | None]:
    """Validate a prompt-hook reply. Returns (response, error)."""
    if not text or not text.strip():
        return None, "Empty response from model"
    try:
        parsed = json.loads(_strip_fences(text))
    except json.JSONDecodeError:
        return None, f"Failed to parse JSON response: {text}"
    if not isinstance(parsed, dict):
        return None, f"Failed to parse JSON response: {text}"

    if not parsed.get("ask") or not parsed.get("message") or "continue" not in parsed:
        return None, "Invalid response format: missing required fields (ask, message, continue)"
    if parsed["ask"] not in ("user", "ai"):
        return None, 'Invalid "ask" value: must be "user" or "ai"'
    if not isinstance(parsed["continue"], bool):
        return None, 'Invalid "continue" value: must be boolean'
    if (parsed["ask"] == "ai") != parsed["continue"]:
        return None, (
            f'Inconsistent values: ask="{parsed["ask"]}" but '
            f'continue={str(parsed["continue"]).lower()}'
        )
    return parsed, None


def run_prompt_action(action: HookAction, context: dict | None, llm, abort=None) -> ActionResult:
    """Ask the basic model for a flow-control verdict."""
    if llm is None:
        return ActionResult(type="prompt", success=False, error="Basic model not configured")

    user = action.prompt or ""
    if context:
        user += "\n\nContext:\n" + json.dumps(context, indent=2)
    messages = [
        {"role": "system", "content": PROMPT_SYSTEM},
        {"role": "user", "content": user},
    ]
    try:
        text, _usage = llm.complete(messages, max_tokens=PROMPT_MAX_TOKENS, abort=abort)
    except AgentError as e:
        return ActionResult(type="prompt", success=False, error=str(e))

    response, error = parse_prompt_response(text)
    if error is not None:
        return ActionResult(type="prompt", success=False, error=error)
    return ActionResult(type="prompt", success=True, response=response)


class HooksEngine:
    """Loads rules per point and executes the matching actions in order.

    Rule files are re-read on every execute() call and never during one.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        config_dir: Path | None = None,
        basic_llm=None,
        enabled: bool = True,
    ):
        self.base_dir = base_dir
        self.config_dir = config_dir
        self.basic_llm = basic_llm
        self.enabled = enabled

    def rules(self, point: str) -> list[HookRule]:
        if not self.enabled:
            return []
        return load_rules(point, base_dir=self.base_dir, config_dir=self.config_dir)

    def execute(self, point: str, context: dict | None = None, abort=None) -> HookResult:
        result = HookResult()
        for rule in self.rules(point):
            if not rule.matches(context):
                result.skipped_count += len(rule.actions)
                continue
            for action in rule.actions:
                if not action.enabled:
                    result.skipped_count += 1
                    continue
                if action.type == "command" and action.command:
                    outcome = run_command_action(action, context, self.base_dir, point)
                elif action.type == "prompt" and action.prompt:
                    outcome = run_prompt_action(action, context, self.basic_llm, abort)
                else:
                    result.skipped_count += 1
                    continue

                result.executed_count += 1
                result.results.append(outcome)
                if not outcome.success:
                    result.success = False
                if outcome.hard_stop:
                    logger.info("%s hook stopped the flow: %s", point, outcome.error or outcome.command)
                    return result
        return result
