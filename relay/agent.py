"""Command-line entry point: one-shot questions and the interactive REPL."""

import argparse
import json
import os
import signal
import sys
from contextlib import contextmanager
from importlib import metadata
from pathlib import Path

from rich.prompt import Prompt

from . import fmt
from .approval import APPROVE_ALWAYS, APPROVE_ONCE, REJECT, REJECT_WITH_REPLY, Decision
from .config import (
    _UNSET,
    PROTOCOLS,
    apply_config_to_args,
    config_to_session_kwargs,
    generate_config,
    load_config,
    project_dir,
)
from .report import AgentError, HookFailedError, HookInterrupt, ReportCollector, UserRejectedError
from .session import Session

MAX_ARG_PREVIEW = 1000

_CHOICES = {"y": APPROVE_ONCE, "a": APPROVE_ALWAYS, "n": REJECT, "r": REJECT_WITH_REPLY}


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="relay",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="An agentic coding assistant with approval-gated tools, hooks, "
        "sub-agents and context compression.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config: template for <base-dir>/relay.toml.",
    )

    parser.add_argument(
        "--provider",
        choices=PROTOCOLS,
        default=_UNSET,
        help="Wire protocol: chat (OpenAI Chat Completions), responses (OpenAI Responses), "
        "gemini, anthropic. Default: chat.",
    )
    parser.add_argument("--model", default=_UNSET, help="Main model identifier.")
    parser.add_argument(
        "--basic-model", default=_UNSET, help="Model for hook prompt actions (default: --model)."
    )
    parser.add_argument(
        "--compact-model",
        default=_UNSET,
        help="Model for context compression (default: --model).",
    )
    parser.add_argument("--api-key", default=_UNSET, help="API key (overrides env vars).")
    parser.add_argument("--base-url", default=_UNSET, help="Provider base URL.")
    parser.add_argument(
        "--max-output-tokens", type=int, default=_UNSET, help="Maximum output tokens (default: 8192)."
    )
    parser.add_argument(
        "--max-context-tokens",
        type=int,
        default=_UNSET,
        help="Context budget used for auto-compression (default: 128000).",
    )
    parser.add_argument(
        "--compress-threshold",
        type=int,
        default=_UNSET,
        help="Compress when the context exceeds this percent of the budget (default: 80).",
    )
    parser.add_argument(
        "--temperature", type=float, default=_UNSET, help="Sampling temperature."
    )
    parser.add_argument(
        "--max-turns", type=int, default=_UNSET, help="Maximum agent loop iterations (default: 100)."
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=_UNSET,
        help="Retries for failed provider requests (default: 5).",
    )
    parser.add_argument(
        "--tool-token-limit",
        type=int,
        default=_UNSET,
        help="Token ceiling for a single tool result (default: 100000).",
    )

    prompt_group = parser.add_mutually_exclusive_group()
    prompt_group.add_argument("--system-prompt", default=_UNSET, help="System prompt to use.")
    prompt_group.add_argument(
        "--no-system-prompt",
        action="store_true",
        default=_UNSET,
        help="Omit the system message entirely.",
    )

    parser.add_argument(
        "--base-dir", default=".", help="Base directory for tools (default: current directory)."
    )
    parser.add_argument(
        "--yolo",
        action="store_true",
        default=_UNSET,
        help="Approve every tool call except sensitive commands, and lift the "
        "filesystem sandbox.",
    )
    parser.add_argument(
        "--no-hooks", action="store_true", default=_UNSET, help="Do not run any hooks."
    )
    parser.add_argument(
        "--report",
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Incompatible with --repl.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )
    return parser


# ---------------------------------------------------------------------------
# Interactive callbacks
# ---------------------------------------------------------------------------


def confirm_tool_call(tool_call: dict, sensitive) -> Decision:
    """Ask on the terminal whether *tool_call* may run."""
    name = tool_call["function"]["name"]
    raw = tool_call["function"].get("arguments") or ""
    try:
        pretty = json.dumps(json.loads(raw), indent=2)
    except (json.JSONDecodeError, TypeError):
        pretty = raw
    if len(pretty) > MAX_ARG_PREVIEW:
        pretty = pretty[:MAX_ARG_PREVIEW] + "\n... (truncated)"

    fmt.approval_request(name, pretty, sensitive.description if sensitive else None)
    choice = Prompt.ask(
        "    choice", choices=list(_CHOICES), default="n", console=fmt.console()
    )
    kind = _CHOICES[choice]
    if kind == REJECT_WITH_REPLY:
        reply = Prompt.ask("    reply", console=fmt.console())
        return Decision(kind, reply or None)
    return Decision(kind)


def ask_user_question(question: str, options: list[str]) -> str:
    """Show *question*; a number picks an option, anything else is free text."""
    fmt.ask_user(question, options)
    answer = Prompt.ask("    answer", console=fmt.console()).strip()
    if answer.isdigit() and 1 <= int(answer) <= len(options):
        return options[int(answer) - 1]
    return answer


@contextmanager
def abort_on_sigint(session: Session):
    """First Ctrl-C trips the session's abort event; a second one interrupts."""

    def _handler(signum, frame):
        if session.abort_event.is_set():
            raise KeyboardInterrupt
        session.abort()
        fmt.warning("interrupt received, stopping before the next step (Ctrl-C again to force)")

    try:
        previous = signal.signal(signal.SIGINT, _handler)
    except ValueError:  # not the main thread
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def report_error(e: AgentError) -> None:
    if isinstance(e, HookFailedError):
        fmt.hook_failed(e.hook, e.exit_code, e.command, e.output)
        fmt.error(f"{e.hook} hook stopped the run")
    elif isinstance(e, HookInterrupt):
        fmt.hook_message(e.hook, e.message)
    elif isinstance(e, UserRejectedError):
        fmt.error(str(e))
        if e.reply:
            fmt.info(f"reply: {e.reply}")
    else:
        fmt.error(str(e))


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("relay-agent")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project), end="")
        sys.exit(0)

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")
    if not Path(args.base_dir).is_dir():
        parser.error(f"--base-dir is not a directory: {args.base_dir}")

    try:
        config = load_config(Path(args.base_dir))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    config_dir = config.pop("config_dir")
    apply_config_to_args(args, config)
    args.verbose = not args.quiet
    fmt.init(color=args.color, no_color=args.no_color)

    interactive = sys.stdin.isatty()
    session_config = {
        key: getattr(args, key)
        for key in (
            "provider",
            "model",
            "basic_model",
            "compact_model",
            "api_key",
            "base_url",
            "max_output_tokens",
            "max_context_tokens",
            "compress_threshold",
            "temperature",
            "max_turns",
            "system_prompt",
            "no_system_prompt",
            "yolo",
            "tool_token_limit",
            "max_retries",
            "quiet",
            "no_hooks",
        )
    }
    session = Session(
        base_dir=args.base_dir,
        config_dir=config_dir,
        confirm=confirm_tool_call if interactive else None,
        ask_user=ask_user_question if interactive else None,
        **config_to_session_kwargs(session_config),
    )

    if args.repl:
        try:
            repl_loop(session, initial=args.question)
        except AgentError as e:
            report_error(e)
            sys.exit(1)
        return

    try:
        with abort_on_sigint(session):
            result = session.run(args.question, report=bool(args.report))
    except AgentError as e:
        report_error(e)
        if args.report:
            _write_error_report(args, str(e))
        sys.exit(1)

    if args.report and result.report is not None:
        _write_report(result.report, args.report, args.verbose)
    if args.verbose:
        fmt.usage_summary(_usage_line(result.usage))
    if result.answer is not None:
        print(result.answer)
    if result.exhausted:
        fmt.warning("max turns reached before a final answer.")
        sys.exit(2)


def _usage_line(usage: dict) -> str:
    return (
        f"tokens: {usage['input_tokens']} in, {usage['output_tokens']} out"
        f" ({usage['cache_read_input_tokens']} cached)"
    )


def _write_report(report: dict, path: str, verbose: bool) -> None:
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2)
            f.write("\n")
    except OSError as e:
        fmt.error(f"Failed to write report to {path}: {e}")
        return
    if verbose:
        fmt.info(f"Report written to {path}")


def _write_error_report(args, message: str) -> None:
    collector = ReportCollector()
    collector.finalize(
        task=args.question or "",
        model=args.model or "unknown",
        provider=args.provider,
        settings={"max_turns": args.max_turns, "yolo": args.yolo},
        outcome="error",
        answer=None,
        exit_code=1,
        turns=0,
        error_message=message,
    )
    try:
        collector.write(args.report)
    except OSError as e:
        fmt.error(f"Failed to write report to {args.report}: {e}")


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help     Show this help message\n"
        "  /clear    Reset the conversation\n"
        "  /compact  Summarize older messages now\n"
        "  /yolo     Toggle YOLO mode (sensitive commands still ask)\n"
        "  /exit     Exit the REPL"
    )


def _repl_ask(session: Session, line: str) -> None:
    try:
        with abort_on_sigint(session):
            result = session.ask(line)
    except KeyboardInterrupt:
        fmt.warning("interrupted, question aborted.")
        return
    except AgentError as e:
        report_error(e)
        return
    if result.answer is not None:
        print(result.answer)
    if result.exhausted:
        fmt.warning("max turns reached for this question.")


def repl_loop(session: Session, initial: str | None = None) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = project_dir(session.base_dir) / "repl_history"
    os.makedirs(history_path.parent, exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "relay> ")])

    if session.verbose:
        fmt.repl_banner()
    session._setup()

    if initial:
        _repl_ask(session, initial)

    while True:
        try:
            print(file=sys.stderr)
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd = line.split(None, 1)[0].lower()
        if cmd == "/help":
            _repl_help()
        elif cmd == "/clear":
            dropped = len(session.messages)
            session.reset()
            fmt.info(f"context cleared ({dropped} messages removed)")
        elif cmd == "/compact":
            try:
                shrunk = session.compact()
            except AgentError as e:
                report_error(e)
                continue
            if not shrunk:
                fmt.info("nothing to compact")
        elif cmd == "/yolo":
            session.yolo = not session.yolo
            fmt.info(f"YOLO mode {'on' if session.yolo else 'off'}")
        else:
            _repl_ask(session, line)


if __name__ == "__main__":
    main()
