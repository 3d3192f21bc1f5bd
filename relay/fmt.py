"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


def console() -> Console:
    return _console


# -- Turn structure ----------------------------------------------------------


def turn_header(n: int, max_n: int, token_est: int, label: str = "Turn") -> None:
    title = f"{label} {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, tool_calls: int) -> None:
    style = "green" if tool_calls == 0 else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  tool_calls={tool_calls}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Waiting for LLM"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def retry(attempt: int, delay: float, reason: str) -> None:
    line = Text()
    line.append(f"  \u21bb retry {attempt} in {delay:.0f}s", style="yellow")
    line.append(f"  {escape(reason)}", style="dim")
    _console.print(line)


def completion(turns: int, state: str) -> None:
    if state == "completed":
        _console.print(
            Text(f"  \u2713 Agent finished: {turns} turns", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Agent finished: {turns} turns, state={state}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  \u2713 {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Approval ----------------------------------------------------------------


def approval_request(name: str, args_json: str, sensitive: str | None) -> None:
    header = Text()
    header.append("  ? ", style="bold yellow")
    header.append(f"Allow {name}?", style="bold yellow")
    _console.print(header)
    if sensitive:
        _console.print(
            Text(f"    sensitive command matched: {sensitive}", style="bold red")
        )
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))
    _console.print(
        Text(
            "    [y] approve once  [a] approve always  [n] reject  [r] reject with reply",
            style="dim",
        )
    )


def rejected(names: list[str]) -> None:
    _console.print(
        Text(f"  \u2717 Tool call rejected: {', '.join(names)}", style="bold red")
    )


# -- Hooks -------------------------------------------------------------------


def hook_warning(point: str, command: str, output: str) -> None:
    header = Text()
    header.append(f"  \u26a0 {point} hook warning: ", style="yellow")
    header.append(command, style="bold yellow")
    _console.print(header)
    for line in output.splitlines():
        _console.print(Text(f"    {line}", style="yellow"))


def hook_failed(point: str, exit_code, command, output: str) -> None:
    header = Text()
    header.append(f"  \u2717 {point} hook failed", style="bold red")
    if command is not None:
        header.append(f"  exit={exit_code}  {command}", style="red")
    _console.print(header)
    for line in output.splitlines():
        _console.print(Text(f"    {line}", style="red"))


def hook_message(point: str, message: str) -> None:
    line = Text()
    line.append(f"  [{point}] ", style="bold magenta")
    line.append(message, style="magenta")
    _console.print(line)


# -- Sub-agents --------------------------------------------------------------


def subagent_event(agent_id: str, msg: str) -> None:
    line = Text()
    line.append(f"  [{agent_id}] ", style="bold blue")
    line.append(msg, style="dim")
    _console.print(line)


def ask_user(question: str, options: list[str]) -> None:
    _console.print(Text(f"  ? {question}", style="bold yellow"))
    for i, opt in enumerate(options, 1):
        _console.print(Text(f"    {i}. {opt}", style="yellow"))


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, tokens: int) -> None:
    _console.print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


def usage_summary(line: str) -> None:
    _console.print(Text(f"  {line}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(Text("Interactive mode. Type /exit or Ctrl-D to quit.", style="dim"))
