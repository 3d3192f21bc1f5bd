"""Public library API for relay: Session class and Result dataclass."""

import copy
import threading
from dataclasses import dataclass
from pathlib import Path

from . import fmt
from .approval import ApprovalGate, ApprovalStore, load_sensitive_commands
from .config import PROTOCOLS, default_base_url, global_config_dir, resolve_api_key
from .engine import (
    DEFAULT_COMPRESS_THRESHOLD,
    compress_history,
    run_agent_loop,
    run_hook,
    stop_hook_follow_ups,
)
from .guard import DEFAULT_TOKEN_LIMIT
from .hooks import HooksEngine
from .providers import DEFAULT_MAX_RETRIES, LLMClient, TokenUsage
from .report import ConfigError, ReportCollector
from .subagents import SubAgentRunner, load_agents, subagent_tools
from .tools import TOOLS

DEFAULT_SYSTEM_PROMPT = """You are a coding assistant working in the user's project directory.

Use the tools to inspect and change the project: read files before editing them, \
prefer small targeted edits, and run commands to verify your work. Ask the user \
(askuser-ask_question) only when a decision genuinely needs them.

Delegate self-contained work to sub-agents (subagent-*). They cannot see this \
conversation, so give them every detail they need in the prompt.

When the task is done, answer with a short summary of what you did."""


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str | None
    exhausted: bool
    messages: list[dict]
    usage: dict
    report: dict | None


class Session:
    """Programmatic interface to the relay agent loop.

    Stores configuration as plain attributes. Call .run() for single-shot
    questions or .ask() for multi-turn conversations.

    *confirm* and *ask_user* are the interactive surfaces (see
    ApprovalGate and answer_ask_user); without them, calls that need
    confirmation are rejected and questions fail. *llm* replaces the
    HTTP client built from provider/model/base_url.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str = "chat",
        model: str | None = None,
        basic_model: str | None = None,
        compact_model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_output_tokens: int | None = 8192,
        max_context_tokens: int | None = 128000,
        compress_threshold: int = DEFAULT_COMPRESS_THRESHOLD,
        temperature: float | None = None,
        max_turns: int = 100,
        system_prompt: str | None = None,
        no_system_prompt: bool = False,
        yolo: bool = False,
        tool_token_limit: int = DEFAULT_TOKEN_LIMIT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        verbose: bool = False,
        hooks: bool = True,
        config_dir: "Path | None" = None,
        confirm=None,
        ask_user=None,
        llm=None,
        http_client=None,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.basic_model = basic_model
        self.compact_model = compact_model
        self.api_key = api_key
        self.base_url = base_url
        self.max_output_tokens = max_output_tokens
        self.max_context_tokens = max_context_tokens
        self.compress_threshold = compress_threshold
        self.temperature = temperature
        self.max_turns = max_turns
        self.system_prompt = system_prompt
        self.no_system_prompt = no_system_prompt
        self.yolo = yolo
        self.tool_token_limit = tool_token_limit
        self.max_retries = max_retries
        self.verbose = verbose
        self.hooks_enabled = hooks
        self.config_dir = config_dir
        self.confirm = confirm
        self.ask_user = ask_user
        self.http_client = http_client

        self.abort_event = threading.Event()

        # Setup state (cached after first _setup())
        self._setup_done = False
        self._llm = llm
        self._basic_llm = None
        self._compact_llm = None
        self._store: ApprovalStore | None = None
        self._sensitive = None
        self._hooks: HooksEngine | None = None
        self._agents = []
        self._tools: list = []
        self._system_content: str | None = None

        # Per-conversation messages (for ask() mode)
        self._conv_messages: list[dict] | None = None

    def _setup(self) -> None:
        """One-time setup: LLM clients, approval state, hooks, tools."""
        if self._setup_done:
            return

        if self._llm is None:
            if self.provider not in PROTOCOLS:
                raise ConfigError(
                    f"unknown provider {self.provider!r}, expected one of {', '.join(PROTOCOLS)}"
                )
            if not self.model:
                raise ConfigError("no model configured (use --model or set 'model' in config)")
            self._llm = LLMClient(
                provider=self.provider,
                model=self.model,
                base_url=self.base_url or default_base_url(self.provider),
                api_key=resolve_api_key(self.provider, self.api_key),
                temperature=self.temperature,
                max_output_tokens=self.max_output_tokens,
                max_retries=self.max_retries,
            )
        self._basic_llm = self._llm.with_model(self.basic_model)
        self._compact_llm = self._llm.with_model(self.compact_model)

        config_dir = Path(self.config_dir) if self.config_dir else global_config_dir()
        self._store = ApprovalStore(config_dir / "permissions.json")
        self._sensitive = load_sensitive_commands(config_dir / "sensitive-commands.json")
        self._hooks = HooksEngine(
            base_dir=self.base_dir,
            config_dir=config_dir,
            basic_llm=self._basic_llm,
            enabled=self.hooks_enabled,
        )
        self._agents = load_agents(config_dir / "sub-agents.json")
        self._tools = TOOLS + subagent_tools(self._agents)

        if self.no_system_prompt:
            self._system_content = None
        else:
            self._system_content = self.system_prompt or DEFAULT_SYSTEM_PROMPT

        if self.verbose:
            fmt.model_info(f"{self.provider}: {getattr(self._llm, 'model', 'custom')}")

        self._setup_done = True
        run_hook(
            self._hooks,
            "onSessionStart",
            {"baseDir": str(Path(self.base_dir).resolve()), "yolo": self.yolo},
            abort=self.abort_event,
            verbose=self.verbose,
        )

    def _make_initial_messages(self) -> list[dict]:
        messages: list[dict] = []
        if self._system_content is not None:
            messages.append({"role": "system", "content": self._system_content})
        return messages

    def _make_gate(self) -> ApprovalGate:
        """Fresh session-approved set per run, shared persisted store."""
        return ApprovalGate(
            self._store,
            yolo=self.yolo,
            sensitive_commands=self._sensitive,
            confirm=self.confirm,
        )

    def _user_message(self, question: str, report: ReportCollector | None) -> dict:
        """Run onUserMessage; warnings are appended to the message text."""
        result = run_hook(
            self._hooks,
            "onUserMessage",
            {"message": question},
            abort=self.abort_event,
            verbose=self.verbose,
            report=report,
        )
        content = question
        if result is not None and result.warnings():
            content += result.warning_text()
        return {"role": "user", "content": content}

    def _run_loop(self, messages: list, report: ReportCollector | None):
        gate = self._make_gate()
        loop_kwargs = dict(
            base_dir=self.base_dir,
            max_turns=self.max_turns,
            compact_llm=self._compact_llm,
            max_context_tokens=self.max_context_tokens,
            compress_threshold=self.compress_threshold,
            tool_token_limit=self.tool_token_limit,
            yolo=self.yolo,
            http_client=self.http_client,
        )
        runner = SubAgentRunner(
            self._agents,
            tools=TOOLS,
            llm=self._llm,
            gate=gate,
            hooks=self._hooks,
            ask_user=self.ask_user,
            abort=self.abort_event,
            verbose=self.verbose,
            report=report,
            **loop_kwargs,
        )
        result = run_agent_loop(
            messages,
            self._tools,
            llm=self._llm,
            gate=gate,
            hooks=self._hooks,
            abort=self.abort_event,
            ask_user=self.ask_user,
            subagent_runner=runner,
            on_complete=stop_hook_follow_ups(
                self._hooks, abort=self.abort_event, verbose=self.verbose, report=report
            ),
            verbose=self.verbose,
            report=report,
            **loop_kwargs,
        )
        usage = TokenUsage().add(result.usage).add(runner.usage)
        return result, usage

    def run(self, question: str, *, report: bool = False) -> Result:
        """Single-shot: run a question with fresh state. Each call is independent."""
        self._setup()
        self.abort_event.clear()

        collector = ReportCollector() if report else None
        messages = self._make_initial_messages()
        messages.append(self._user_message(question, collector))

        result, usage = self._run_loop(messages, collector)

        report_dict = None
        if collector:
            report_dict = collector.finalize(
                task=question,
                model=getattr(self._llm, "model", "unknown"),
                provider=self.provider,
                settings={
                    "max_turns": self.max_turns,
                    "max_output_tokens": self.max_output_tokens,
                    "max_context_tokens": self.max_context_tokens,
                    "compress_threshold": self.compress_threshold,
                    "temperature": self.temperature,
                    "yolo": self.yolo,
                },
                outcome="exhausted" if result.exhausted else "success",
                answer=result.answer,
                exit_code=2 if result.exhausted else 0,
                turns=collector.max_turn_seen,
                usage=usage.to_dict(),
            )

        return Result(
            answer=result.answer,
            exhausted=result.exhausted,
            messages=copy.deepcopy(messages),
            usage=usage.to_dict(),
            report=report_dict,
        )

    def ask(self, question: str) -> Result:
        """Conversational: share context across questions (like the REPL)."""
        self._setup()
        self.abort_event.clear()

        if self._conv_messages is None:
            self._conv_messages = self._make_initial_messages()
        messages = self._conv_messages

        user_message = self._user_message(question, None)
        messages.append(user_message)
        try:
            result, usage = self._run_loop(messages, None)
        except BaseException:
            # Drop the failed question and everything the run added after it.
            for i in range(len(messages) - 1, -1, -1):
                if messages[i] is user_message:
                    del messages[i:]
                    break
            raise

        return Result(
            answer=result.answer,
            exhausted=result.exhausted,
            messages=copy.deepcopy(messages),
            usage=usage.to_dict(),
            report=None,
        )

    def compact(self) -> bool:
        """Compress the conversation of ask() mode now. Returns True if it shrank."""
        self._setup()
        if not self._conv_messages:
            return False
        usage = compress_history(
            self._conv_messages,
            self._tools,
            compact_llm=self._compact_llm,
            hooks=self._hooks,
            abort=self.abort_event,
            verbose=self.verbose,
        )
        return usage is not None

    def abort(self) -> None:
        """Ask the current run to stop before its next request or tool call."""
        self.abort_event.set()

    def reset(self) -> None:
        """Clear conversation state without invalidating setup. Next ask() starts fresh."""
        self._conv_messages = None

    @property
    def messages(self) -> list[dict]:
        return list(self._conv_messages or [])
