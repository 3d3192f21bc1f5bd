"""Tool definitions and implementations for the agent."""

import fnmatch
import html.parser
import json
import os
import re
import subprocess
import sys
import threading
from collections import OrderedDict
from pathlib import Path, PurePath, PurePosixPath, PureWindowsPath

import httpx

ASKUSER_PREFIX = "askuser-"
SUBAGENT_PREFIX = "subagent-"
ASK_USER_TOOL_NAME = "askuser-ask_question"
DEFAULT_QUESTION = "Please select an option:"
DEFAULT_OPTIONS = ("Yes", "No")


def _function(name: str, description: str, properties: dict, required: list[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


_PATH = {"type": "string", "description": "Path relative to the working directory."}

TOOLS = [
    _function(
        "filesystem-read",
        "Read a file or list a directory. Files are returned with line numbers. "
        "Use offset/limit to paginate; a continuation hint shows the next offset.",
        {
            "path": _PATH,
            "offset": {
                "type": "integer",
                "description": "1-based line to start from. Defaults to 1.",
                "default": 1,
            },
            "limit": {
                "type": "integer",
                "description": "Maximum number of lines. Defaults to 2000.",
                "default": 2000,
            },
        },
        ["path"],
    ),
    _function(
        "filesystem-create",
        "Create or overwrite a file, creating parent directories as needed.",
        {
            "path": _PATH,
            "content": {"type": "string", "description": "The full file content."},
        },
        ["path", "content"],
    ),
    _function(
        "filesystem-edit",
        "Replace old_string with new_string in an existing file. old_string must "
        "match exactly and be unique unless replace_all is set.",
        {
            "path": _PATH,
            "old_string": {"type": "string", "description": "Exact text to find."},
            "new_string": {"type": "string", "description": "Replacement text."},
            "replace_all": {
                "type": "boolean",
                "description": "Replace every occurrence.",
                "default": False,
            },
        },
        ["path", "old_string", "new_string"],
    ),
    _function(
        "search-files",
        "Find files whose path matches a glob pattern such as '**/*.py'. "
        "Newest files first.",
        {
            "pattern": {"type": "string", "description": "Relative glob pattern."},
            "path": {
                "type": "string",
                "description": "Directory to search from. Defaults to '.'.",
                "default": ".",
            },
        },
        ["pattern"],
    ),
    _function(
        "search-text",
        "Search file contents with a regular expression. Matches are grouped by "
        "file, newest files first.",
        {
            "pattern": {"type": "string", "description": "Python regular expression."},
            "path": {
                "type": "string",
                "description": "Directory to search. Defaults to '.'.",
                "default": ".",
            },
            "include": {
                "type": "string",
                "description": "Only search files whose name matches this glob, e.g. '*.py'.",
            },
        },
        ["pattern"],
    ),
    _function(
        "terminal-execute",
        "Run a shell command in the working directory and return its combined "
        "stdout and stderr.",
        {
            "command": {"type": "string", "description": "The shell command line."},
            "timeout": {
                "type": "integer",
                "description": "Timeout in seconds (1-120). Defaults to 30.",
                "default": 30,
            },
        },
        ["command"],
    ),
    _function(
        "websearch-fetch",
        "Fetch a web page over HTTP(S) and return it as plain text (or raw HTML).",
        {
            "url": {"type": "string", "description": "http:// or https:// URL."},
            "format": {
                "type": "string",
                "enum": ["text", "html"],
                "description": "Output format. Defaults to 'text'.",
                "default": "text",
            },
            "timeout": {
                "type": "integer",
                "description": "Timeout in seconds (1-120). Defaults to 30.",
                "default": 30,
            },
        },
        ["url"],
    ),
    _function(
        ASK_USER_TOOL_NAME,
        "Ask the user a question and wait for the answer. Offer options when "
        "the answer is a choice; the user may also type a custom answer.",
        {
            "question": {"type": "string", "description": "The question to ask."},
            "options": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Suggested answers.",
            },
        },
        ["question"],
    ),
]

# askuser-* calls fall back to a default question instead
_REQUIRED_ARGS = {
    t["function"]["name"]: t["function"]["parameters"].get("required", [])
    for t in TOOLS
    if not t["function"]["name"].startswith(ASKUSER_PREFIX)
}

MAX_OUTPUT_BYTES = 50 * 1024
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024
MAX_LIST_RESULTS = 100
MAX_GREP_MATCHES = 100


def safe_resolve(file_path: str, base_dir: str, unrestricted: bool = False) -> Path:
    """Resolve *file_path* against *base_dir*, refusing escapes.

    Symlinks are resolved before the containment check. In unrestricted
    mode any path is allowed except the filesystem root.

    Raises:
        ValueError: If the path escapes the base directory.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()

    if unrestricted:
        if resolved == Path(resolved.anchor):
            raise ValueError(f"Path {file_path!r} resolves to the filesystem root")
        return resolved

    if resolved.is_relative_to(base):
        return resolved
    raise ValueError(
        f"Path {file_path!r} resolves to {resolved}, "
        f"which is outside base directory {base}"
    )


def _check_pattern(pattern: str) -> str | None:
    """Reject patterns that are absolute or contain '..'."""
    if PurePosixPath(pattern).is_absolute() or PureWindowsPath(pattern).is_absolute():
        return f"error: pattern {pattern!r} must be relative, not absolute"
    if ".." in PurePosixPath(pattern).parts or ".." in PureWindowsPath(pattern).parts:
        return f"error: pattern {pattern!r} contains '..', which is not allowed"
    return None


def _relative(path: Path, base: Path) -> str:
    try:
        return str(path.relative_to(base))
    except ValueError:
        return str(path)


def _walk(root: Path):
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if d not in (".git", ".relay")]
        for filename in files:
            yield Path(dirpath) / filename


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


def _cap_lines(lines: list[str]) -> tuple[list[str], bool]:
    """Keep lines until MAX_OUTPUT_BYTES; report whether some were dropped."""
    kept: list[str] = []
    total = 0
    for line in lines:
        size = len(line.encode("utf-8")) + 1
        if total + size > MAX_OUTPUT_BYTES:
            return kept, True
        kept.append(line)
        total += size
    return kept, False


def _read(path: str, base_dir: str, offset: int = 1, limit: int = 2000, unrestricted: bool = False) -> str:
    try:
        resolved = safe_resolve(path, base_dir, unrestricted)
    except ValueError as exc:
        return f"error: {exc}"
    if not resolved.exists():
        return f"error: path does not exist: {path}"

    if resolved.is_dir():
        try:
            names = [
                c.name + ("/" if c.is_dir() else "") for c in sorted(resolved.iterdir())
            ]
        except PermissionError as exc:
            return f"error: {exc}"
        names, truncated = _cap_lines(names)
        result = "\n".join(names)
        return result + "\n[truncated at 50KB]" if truncated else result

    try:
        if _is_binary(resolved):
            return f"error: binary file detected: {path}"
        text = resolved.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        return f"error: failed to decode {path} as UTF-8: {exc}"
    except OSError as exc:
        return f"error: {exc}"

    lines = text.splitlines()
    start = max(int(offset) - 1, 0)
    selected = [
        f"{i}: {line[:MAX_LINE_LENGTH]}"
        for i, line in enumerate(lines[start : start + int(limit)], start=start + 1)
    ]
    numbered, _ = _cap_lines(selected)
    remaining = len(lines) - (start + len(numbered))
    result = "\n".join(numbered)
    if remaining > 0:
        result += f"\n[{remaining} more lines, use offset={start + len(numbered) + 1} to continue]"
    return result


def _create(path: str, content: str, base_dir: str, unrestricted: bool = False) -> str:
    try:
        resolved = safe_resolve(path, base_dir, unrestricted)
    except ValueError as exc:
        return f"error: {exc}"
    if resolved.is_dir():
        return f"error: path is a directory: {path}"
    resolved.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    resolved.write_bytes(data)
    return f"Wrote {len(data)} bytes to {path}"


def _edit(
    path: str,
    old_string: str,
    new_string: str,
    base_dir: str,
    replace_all: bool = False,
    unrestricted: bool = False,
) -> str:
    try:
        resolved = safe_resolve(path, base_dir, unrestricted)
    except ValueError as exc:
        return f"error: {exc}"
    if not resolved.is_file():
        return f"error: file does not exist: {path}"
    if not old_string:
        return "error: old_string must not be empty"
    if old_string == new_string:
        return "error: old_string and new_string are identical"

    try:
        content = resolved.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError) as exc:
        return f"error: {exc}"

    count = content.count(old_string)
    if count == 0:
        return f"error: old_string not found in {path}"
    if count > 1 and not replace_all:
        return (
            f"error: old_string occurs {count} times in {path}; "
            "add surrounding context or set replace_all"
        )
    new_content = content.replace(old_string, new_string, -1 if replace_all else 1)
    resolved.write_text(new_content, encoding="utf-8")
    replaced = count if replace_all else 1
    return f"Edited {path} ({replaced} replacement{'s' if replaced != 1 else ''})"


def _search_root(path: str, base_dir: str, unrestricted: bool) -> Path | str:
    try:
        root = safe_resolve(path, base_dir, unrestricted)
    except ValueError as exc:
        return f"error: {exc}"
    if not root.exists():
        return f"error: path does not exist: {path}"
    if not root.is_dir():
        return f"error: path is not a directory: {path}"
    return root


def _search_files(pattern: str, path: str, base_dir: str, unrestricted: bool = False) -> str:
    err = _check_pattern(pattern)
    if err:
        return err
    root = _search_root(path, base_dir, unrestricted)
    if isinstance(root, str):
        return root

    matched = [f for f in _walk(root) if PurePath(f.relative_to(root)).full_match(pattern)]
    if not matched:
        return "No files matched the pattern."

    matched.sort(key=lambda f: f.stat().st_mtime, reverse=True)
    base = Path(base_dir).resolve()
    lines, byte_truncated = _cap_lines(
        [_relative(f, base) for f in matched[:MAX_LIST_RESULTS]]
    )
    result = "\n".join(lines)
    if len(matched) > MAX_LIST_RESULTS or byte_truncated:
        result += (
            f"\n(Results truncated: showing first {len(lines)} of {len(matched)}. "
            "Use a more specific pattern or path.)"
        )
    return result


def _search_text(
    pattern: str,
    path: str,
    base_dir: str,
    include: str | None = None,
    unrestricted: bool = False,
) -> str:
    if include is not None:
        err = _check_pattern(include)
        if err:
            return err
    try:
        regex = re.compile(pattern)
    except re.error as exc:
        return f"error: invalid regex {pattern!r}: {exc}"
    root = _search_root(path, base_dir, unrestricted)
    if isinstance(root, str):
        return root

    # (file, line_no, text, mtime); sorted before capping so the newest win
    matches: list[tuple[Path, int, str, float]] = []
    for filepath in _walk(root):
        if include and not fnmatch.fnmatch(filepath.name, include):
            continue
        try:
            if _is_binary(filepath):
                continue
            text = filepath.read_text(encoding="utf-8")
            mtime = filepath.stat().st_mtime
        except (UnicodeDecodeError, OSError):
            continue
        for line_no, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                matches.append((filepath, line_no, line, mtime))

    if not matches:
        return "No matches found."

    matches.sort(key=lambda m: (-m[3], m[0], m[1]))
    total = len(matches)
    grouped: OrderedDict[Path, list[tuple[int, str]]] = OrderedDict()
    for filepath, line_no, line, _ in matches[:MAX_GREP_MATCHES]:
        grouped.setdefault(filepath, []).append((line_no, line))

    base = Path(base_dir).resolve()
    out = [f"Found {total} matches"]
    for filepath, file_matches in grouped.items():
        out.append(f"\n{_relative(filepath, base)}:")
        out.extend(f"  Line {n}: {text[:MAX_LINE_LENGTH]}" for n, text in file_matches)
    out, byte_truncated = _cap_lines(out)
    result = "\n".join(out)
    if total > MAX_GREP_MATCHES or byte_truncated:
        result += (
            f"\n(Results truncated: showing first {MAX_GREP_MATCHES} matches. "
            "Use a more specific pattern or path.)"
        )
    return result


# ---------------------------------------------------------------------------
# Shell commands
# ---------------------------------------------------------------------------

MAX_CAPTURE_BYTES = 1024 * 1024
MAX_TIMEOUT = 120
_KILL_WAIT_TIMEOUT = 5


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix the process must have been started with start_new_session=True
    so that its whole group can be signalled.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable


def _capture_process(proc: subprocess.Popen, timeout: int) -> str:
    """Drain combined output of *proc*, killing it after *timeout* seconds."""
    chunks: list[bytes] = []
    total = 0
    truncated = False

    def _reader():
        nonlocal total, truncated
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if truncated:
                    continue  # keep draining so the child never blocks on a full pipe
                chunks.append(chunk[: MAX_CAPTURE_BYTES - total])
                total += len(chunks[-1])
                truncated = total >= MAX_CAPTURE_BYTES
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader = threading.Thread(target=_reader, daemon=True)
    reader.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)
    reader.join(timeout=2)
    proc.stdout.close()

    output = b"".join(chunks).decode("utf-8", errors="replace")
    parts: list[str] = []
    if timed_out:
        parts.append(f"error: command timed out after {timeout}s")
    elif proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    if output:
        parts.append(output)
    if truncated:
        parts.append("[output truncated at 1MB]")
    return "\n".join(parts) if parts else "(no output)"


def _run_shell_command(command: str, base_dir: str, timeout: int = 30) -> str:
    """Execute a shell string via sh -c (Unix) or cmd.exe /c (Windows)."""
    if not isinstance(command, str) or not command.strip():
        return "error: command must be a non-empty string"
    if not Path(base_dir).is_dir():
        return f"error: base directory is not a directory: {base_dir}"

    timeout = max(1, min(int(timeout), MAX_TIMEOUT))
    shell_cmd = ["cmd.exe", "/c", command] if sys.platform == "win32" else ["/bin/sh", "-c", command]
    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True
    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        return f"error: failed to start shell command: {e}"
    return _capture_process(proc, timeout)


# ---------------------------------------------------------------------------
# Web fetch
# ---------------------------------------------------------------------------

MAX_RESPONSE_SIZE = 5 * 1024 * 1024
FETCH_HEADERS = {
    "User-Agent": "relay-agent (+https://pypi.org/project/relay-agent/)",
    "Accept": "text/html,text/plain,text/markdown,application/json,*/*;q=0.8",
}
_TEXT_MIMES = (
    "application/json",
    "application/xml",
    "application/xhtml+xml",
    "application/javascript",
    "application/rss+xml",
    "application/atom+xml",
)
_BLOCK_TAGS = frozenset(
    "p div br h1 h2 h3 h4 h5 h6 li tr blockquote pre hr dt dd section article "
    "header footer nav main table thead tbody tfoot figure figcaption".split()
)
_SKIP_TAGS = frozenset({"script", "style", "noscript", "svg"})


class _TextExtractor(html.parser.HTMLParser):
    """Readable text from HTML, skipping script/style/svg/noscript."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag, attrs):
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
        elif tag in _BLOCK_TAGS and self._skip_depth == 0:
            self._parts.append("\n")

    def handle_endtag(self, tag):
        if tag in _SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in _BLOCK_TAGS and self._skip_depth == 0:
            self._parts.append("\n")

    def handle_data(self, data):
        if self._skip_depth == 0:
            self._parts.append(data)

    def get_text(self) -> str:
        text = "".join(self._parts)
        text = re.sub(r"[^\S\n]+", " ", text)
        text = re.sub(r"\n\s*\n\s*\n+", "\n\n", text)
        return text.strip()


def html_to_text(body: str) -> str:
    parser = _TextExtractor()
    parser.feed(body)
    parser.close()
    return parser.get_text()


def _fetch(url: str, format: str = "text", timeout: int = 30, client: httpx.Client | None = None) -> str:
    if format not in ("text", "html"):
        return f"error: invalid format {format!r}, must be 'text' or 'html'"
    if not url or not isinstance(url, str):
        return "error: url must be a non-empty string"
    if httpx.URL(url).scheme not in ("http", "https"):
        return f"error: url scheme {httpx.URL(url).scheme!r} is not allowed, must be http or https"
    timeout = max(1, min(int(timeout), MAX_TIMEOUT))

    own_client = client is None
    if own_client:
        client = httpx.Client(follow_redirects=True, max_redirects=10, headers=FETCH_HEADERS)
    try:
        with client.stream("GET", url, timeout=timeout) as resp:
            if resp.status_code >= 400:
                return f"error: HTTP {resp.status_code} {resp.reason_phrase}"
            mime = resp.headers.get("content-type", "").split(";")[0].strip().lower()
            if mime and not mime.startswith("text/") and mime not in _TEXT_MIMES:
                return f"error: binary content (content-type: {mime}), cannot display as text"
            data = bytearray()
            for chunk in resp.iter_bytes():
                data.extend(chunk)
                if len(data) > MAX_RESPONSE_SIZE:
                    return "error: response too large (limit is 5MB)"
            encoding = resp.encoding or "utf-8"
    except httpx.TimeoutException:
        return f"error: request timed out after {timeout} seconds"
    except httpx.TooManyRedirects:
        return "error: too many redirects (limit is 10)"
    except httpx.HTTPError as e:
        return f"error: could not fetch {url}: {e}"
    finally:
        if own_client:
            client.close()

    if b"\x00" in data[:BINARY_CHECK_BYTES]:
        return "error: binary content detected (null bytes found), cannot display as text"
    try:
        body = bytes(data).decode(encoding)
    except (UnicodeDecodeError, LookupError):
        body = bytes(data).decode("utf-8", errors="replace")

    output = body if format == "html" or mime in ("text/plain", "text/markdown") else html_to_text(body)
    encoded = output.encode("utf-8")
    if len(encoded) > MAX_OUTPUT_BYTES:
        output = (
            encoded[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore")
            + f"\n[content truncated at {MAX_OUTPUT_BYTES} bytes, total was {len(encoded)} bytes]"
        )
    return output


# ---------------------------------------------------------------------------
# Ask-user and dispatch
# ---------------------------------------------------------------------------


def answer_ask_user(ask_user, args: dict) -> str:
    """Run the ask-user callback and encode its answer as a tool result.

    *ask_user(question, options)* returns the chosen option or free text.
    """
    if ask_user is None:
        return "error: no interactive user is available to answer questions"
    question = args.get("question") or DEFAULT_QUESTION
    options = args.get("options")
    if not isinstance(options, list) or not options:
        options = list(DEFAULT_OPTIONS)
    options = [str(o) for o in options]

    answer = ask_user(question, options)
    answer = "" if answer is None else str(answer)
    selected = answer if answer in options else None
    return json.dumps(
        {
            "answer": answer,
            "selected": selected,
            "customInput": None if selected is not None else answer,
        },
        ensure_ascii=False,
    )


def dispatch(name: str, args: dict, base_dir: str, **kwargs) -> str:
    """Route a tool call to the appropriate implementation.

    Args:
        name: The tool name to invoke.
        args: Dictionary of arguments for the tool.
        base_dir: Base directory for path resolution.
        **kwargs: ``yolo`` lifts the base-directory confinement,
            ``ask_user`` answers ``askuser-*`` calls, ``subagent_runner``
            runs ``subagent-*`` calls, ``http_client`` is used for fetches.

    Returns:
        String result from the tool.

    Raises:
        KeyError: If the tool name is not recognized.
    """
    yolo = kwargs.get("yolo", False)
    for key in _REQUIRED_ARGS.get(name, ()):
        if key not in args:
            return f"error: missing required argument {key!r}"

    if name == "filesystem-read":
        return _read(
            args["path"],
            base_dir,
            offset=args.get("offset", 1),
            limit=args.get("limit", 2000),
            unrestricted=yolo,
        )
    elif name == "filesystem-create":
        return _create(args["path"], args["content"], base_dir, unrestricted=yolo)
    elif name == "filesystem-edit":
        return _edit(
            args["path"],
            args["old_string"],
            args["new_string"],
            base_dir,
            replace_all=args.get("replace_all", False),
            unrestricted=yolo,
        )
    elif name == "search-files":
        return _search_files(args["pattern"], args.get("path", "."), base_dir, unrestricted=yolo)
    elif name == "search-text":
        return _search_text(
            args["pattern"],
            args.get("path", "."),
            base_dir,
            include=args.get("include"),
            unrestricted=yolo,
        )
    elif name == "terminal-execute":
        return _run_shell_command(args["command"], base_dir, args.get("timeout", 30))
    elif name == "websearch-fetch":
        return _fetch(
            args.get("url", ""),
            format=args.get("format", "text"),
            timeout=args.get("timeout", 30),
            client=kwargs.get("http_client"),
        )
    elif name.startswith(ASKUSER_PREFIX):
        return answer_ask_user(kwargs.get("ask_user"), args)
    elif name.startswith(SUBAGENT_PREFIX):
        runner = kwargs.get("subagent_runner")
        if runner is None:
            return "error: sub-agents are not available here"
        return runner(name[len(SUBAGENT_PREFIX) :], args.get("prompt", ""))
    else:
        raise KeyError(f"Unknown tool: {name!r}")
