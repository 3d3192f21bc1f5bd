"""Sub-agents: restricted nested runs of the conversation engine.

Each agent is offered to the model as a ``subagent-<id>`` tool taking a
single ``prompt``. The nested run sees only that prompt (plus the agent's
role), a tool set filtered to the agent's allowed tools, and a child
approval gate whose approvals propagate to the parent.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from . import fmt
from .config import read_json_file
from .engine import run_agent_loop, show_hook_warnings
from .providers import TokenUsage
from .report import AbortedError, AgentError, HookFailedError, HookInterrupt, UserRejectedError
from .tools import SUBAGENT_PREFIX

logger = logging.getLogger(__name__)

_NO_HISTORY = (
    "\n\nIMPORTANT: You have NO access to the main conversation history. The "
    "prompt above contains all the context from the main session. Do not "
    "assume anything that is not in it."
)


@dataclass
class SubAgentSpec:
    id: str
    name: str
    allowed_tools: list[str] = field(default_factory=list)
    description: str = ""
    role: str | None = None
    builtin: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "SubAgentSpec":
        tools = data.get("tools", data.get("allowedTools", []))
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            allowed_tools=[t for t in tools if isinstance(t, str)],
            description=str(data.get("description", "")),
            role=data.get("role") or None,
        )


BUILTIN_AGENTS = [
    SubAgentSpec(
        id="agent_explore",
        name="Explore Agent",
        description=(
            "Explores and explains a codebase: finds files, definitions and "
            "usages. Read-only."
        ),
        role=(
            "You are a code exploration agent. Locate the relevant code, follow "
            "dependencies and report what you found with file paths and line "
            "numbers. Do not modify files or run commands." + _NO_HISTORY
        ),
        allowed_tools=["filesystem-read", "search", "websearch-fetch"],
        builtin=True,
    ),
    SubAgentSpec(
        id="agent_plan",
        name="Plan Agent",
        description=(
            "Analyzes a requirement against the existing code and produces a "
            "step-by-step implementation plan. Read-only."
        ),
        role=(
            "You are a planning agent. Explore the code that the task touches, "
            "ask the user when a requirement is ambiguous, then output a "
            "numbered plan naming the files to change and the approach for "
            "each. Do not make the changes yourself." + _NO_HISTORY
        ),
        allowed_tools=["filesystem-read", "search", "websearch-fetch", "askuser"],
        builtin=True,
    ),
    SubAgentSpec(
        id="agent_general",
        name="General Purpose Agent",
        description=(
            "Carries out multi-step tasks end to end: searches, edits files "
            "and runs commands."
        ),
        role=(
            "You are a general-purpose execution agent. Break the task into "
            "steps and carry them out with the tools available, verifying your "
            "work as you go. Finish with a short report of what changed." + _NO_HISTORY
        ),
        allowed_tools=["filesystem", "search", "terminal", "websearch", "askuser"],
        builtin=True,
    ),
]


def load_agents(path: Path | None = None) -> list[SubAgentSpec]:
    """Built-ins, overridden by id from *path*, then the remaining user agents."""
    user: list[SubAgentSpec] = []
    if path is not None:
        data = read_json_file(path, {})
        entries = data.get("agents", []) if isinstance(data, dict) else []
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("id"):
                logger.warning("%s: skipping malformed sub-agent %r", path, entry)
                continue
            user.append(SubAgentSpec.from_dict(entry))

    overrides = {a.id: a for a in user}
    agents = [overrides.pop(b.id, b) for b in BUILTIN_AGENTS]
    agents.extend(a for a in user if a.id in overrides)
    return agents


def find_agent(agents: list[SubAgentSpec], agent_id: str) -> SubAgentSpec | None:
    return next((a for a in agents if a.id == agent_id), None)


def _normalize(name: str) -> str:
    return name.replace("_", "-")


def tool_allowed(tool_name: str, allowed: list[str]) -> bool:
    """Exact or hyphen-prefix match, treating ``_`` and ``-`` alike."""
    name = _normalize(tool_name)
    for entry in allowed:
        entry = _normalize(entry)
        if name == entry or name.startswith(entry + "-"):
            return True
    return False


def filter_tools(tools: list[dict], allowed: list[str]) -> list[dict]:
    return [t for t in tools if tool_allowed(t["function"]["name"], allowed)]


def subagent_tools(agents: list[SubAgentSpec]) -> list[dict]:
    """Tool schemas exposing each agent as ``subagent-<id>``."""
    return [
        {
            "type": "function",
            "function": {
                "name": f"{SUBAGENT_PREFIX}{agent.id}",
                "description": (
                    f"{agent.name}: {agent.description} "
                    "The sub-agent cannot see this conversation; put every "
                    "detail it needs into the prompt."
                ).strip(),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "prompt": {
                            "type": "string",
                            "description": "Complete, self-contained task description.",
                        }
                    },
                    "required": ["prompt"],
                },
            },
        }
        for agent in agents
    ]


class SubAgentRunner:
    """Callable passed to the dispatcher as ``subagent_runner``.

    Runs one nested loop per call and returns the tool result text. Token
    usage of all nested runs accumulates in ``usage``.
    """

    def __init__(
        self,
        agents: list[SubAgentSpec],
        *,
        tools: list[dict],
        llm,
        gate,
        hooks=None,
        base_dir: str = ".",
        max_turns: int = 100,
        ask_user=None,
        abort=None,
        verbose: bool = False,
        report=None,
        **loop_kwargs,
    ):
        self.agents = agents
        self.tools = tools
        self.llm = llm
        self.gate = gate
        self.hooks = hooks
        self.base_dir = base_dir
        self.max_turns = max_turns
        self.ask_user = ask_user
        self.abort = abort
        self.verbose = verbose
        self.report = report
        self.loop_kwargs = loop_kwargs
        self.usage = TokenUsage()

    def _completion_handler(self, agent: SubAgentSpec):
        """onSubAgentComplete: errors and ``ask: "ai"`` replies continue the run."""

        def _on_complete(content: str, usage: TokenUsage, turn: int) -> list[str]:
            if self.hooks is None:
                return []
            context = {
                "agentId": agent.id,
                "agentName": agent.name,
                "content": content,
                "success": True,
                "usage": usage.to_dict(),
            }
            result = self.hooks.execute("onSubAgentComplete", context, self.abort)
            if self.report is not None and result.executed_count:
                self.report.record_hook(turn, "onSubAgentComplete", result.executed_count, result.success)
            show_hook_warnings("onSubAgentComplete", result, self.verbose)

            follow_ups = []
            for r in result.results:
                if r.type == "command" and r.hard_stop:
                    follow_ups.append(r.error or r.output or "Unknown error")
                elif r.type == "prompt" and r.response:
                    if r.response["ask"] == "ai" and r.response["continue"]:
                        follow_ups.append(r.response["message"])
                    elif self.verbose:
                        fmt.hook_message("onSubAgentComplete", r.response["message"])
                elif r.type == "prompt" and self.verbose:
                    fmt.warning(f"onSubAgentComplete prompt hook failed: {r.error}")
            if follow_ups and self.verbose:
                fmt.subagent_event(agent.id, "hook requested continuation")
            return follow_ups

        return _on_complete

    def __call__(self, agent_id: str, prompt: str) -> str:
        agent = find_agent(self.agents, agent_id)
        if agent is None:
            return f'error: Sub-agent with ID "{agent_id}" not found'
        tools = filter_tools(self.tools, agent.allowed_tools)
        if not tools:
            return f'error: Sub-agent "{agent.name}" has no valid tools configured'

        seed = f"{prompt}\n\n{agent.role}" if agent.role else prompt
        messages = [{"role": "user", "content": seed}]
        if self.verbose:
            fmt.subagent_event(agent.id, f"started with {len(tools)} tools")

        try:
            result = run_agent_loop(
                messages,
                tools,
                llm=self.llm,
                gate=self.gate.child(),
                base_dir=self.base_dir,
                max_turns=self.max_turns,
                hooks=self.hooks,
                ask_user=self.ask_user,
                abort=self.abort,
                verbose=self.verbose,
                report=self.report,
                on_complete=self._completion_handler(agent),
                label=f"{agent.id} turn",
                **self.loop_kwargs,
            )
        except (UserRejectedError, HookFailedError, HookInterrupt, AbortedError):
            raise
        except AgentError as e:
            if self.verbose:
                fmt.subagent_event(agent.id, f"failed: {e}")
            return f'error: Sub-agent "{agent.name}" failed: {e}'

        self.usage.add(result.usage)
        if self.verbose:
            fmt.subagent_event(agent.id, f"finished after {result.turns} turns")
        payload = {
            "success": True,
            "result": result.answer or "",
            "usage": result.usage.to_dict(),
        }
        if result.exhausted:
            payload["exhausted"] = True
        return json.dumps(payload, ensure_ascii=False)
