"""Configuration file loading and merging for relay.

Reads TOML config from ~/.config/relay/config.toml (global) and
<base_dir>/relay.toml (project). Precedence: CLI > project > global > defaults.

The global config directory also holds the JSON stores that the runtime
reads at decision time: permissions.json, sensitive-commands.json,
sub-agents.json and the hooks/ directory.
"""

import argparse
import json
import logging
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError

logger = logging.getLogger(__name__)

_UNSET = object()  # Sentinel for "not set by CLI"

PROTOCOLS = ("chat", "responses", "gemini", "anthropic")


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "basic_model": str,
    "compact_model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "max_context_tokens": int,
    "compress_threshold": int,
    "temperature": (int, float),
    "max_turns": int,
    "system_prompt": str,
    "no_system_prompt": bool,
    "yolo": bool,
    "tool_token_limit": int,
    "max_retries": int,
    "no_hooks": bool,
    "color": bool,
    "quiet": bool,
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "chat",
    "model": None,
    "basic_model": None,
    "compact_model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 8192,
    "max_context_tokens": 128000,
    "compress_threshold": 80,
    "temperature": None,
    "max_turns": 100,
    "system_prompt": None,
    "no_system_prompt": False,
    "yolo": False,
    "tool_token_limit": 100000,
    "max_retries": 5,
    "no_hooks": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}

# key -> (predicate, message) checked after the type pass
_VALUE_RULES = {
    "provider": (
        lambda v: v in PROTOCOLS,
        f"'provider' must be one of {', '.join(PROTOCOLS)}",
    ),
    "compress_threshold": (
        lambda v: 1 <= v <= 100,
        "'compress_threshold' must be between 1 and 100",
    ),
    "max_turns": (lambda v: v > 0, "'max_turns' must be positive"),
    "max_output_tokens": (lambda v: v > 0, "'max_output_tokens' must be positive"),
    "max_context_tokens": (lambda v: v > 0, "'max_context_tokens' must be positive"),
    "tool_token_limit": (lambda v: v > 0, "'tool_token_limit' must be positive"),
    "max_retries": (lambda v: v >= 0, "'max_retries' must not be negative"),
}

_DEFAULT_BASE_URLS = {
    "chat": "https://api.openai.com/v1",
    "responses": "https://api.openai.com/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
    "anthropic": "https://api.anthropic.com/v1",
}

_API_KEY_ENV = {
    "chat": "OPENAI_API_KEY",
    "responses": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}

_PROJECT_FILE = "relay.toml"
_GLOBAL_FILE = "config.toml"


# --- Internal helpers ---


def global_config_dir() -> Path:
    """~/.config/relay, or $XDG_CONFIG_HOME/relay when that is set."""
    root = os.environ.get("XDG_CONFIG_HOME")
    return (Path(root) if root else Path.home() / ".config") / "relay"


def project_dir(base_dir: str | Path) -> Path:
    """Return the per-project state directory (<base_dir>/.relay)."""
    return Path(base_dir).resolve() / ".relay"


def _describe_type(expected: type | tuple[type, ...]) -> str:
    kinds = expected if isinstance(expected, tuple) else (expected,)
    return " or ".join(k.__name__ for k in kinds)


def _type_error(key: str, value: Any) -> str | None:
    expected = CONFIG_KEYS[key]
    # TOML booleans would otherwise pass as ints
    wrong_bool = isinstance(value, bool) and expected is not bool
    if wrong_bool or not isinstance(value, expected):
        return f"{key!r} expected {_describe_type(expected)}, got {type(value).__name__}"
    return None


def _validate_config(config: dict, source: str) -> dict:
    """Check one parsed file and return only the keys relay knows about.

    Unknown keys are reported on stderr and dropped; wrong types, out of
    range values and conflicting keys raise ConfigError.
    """
    known = {}
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r} ignored", file=sys.stderr)
            continue
        problem = _type_error(key, value)
        if problem is None and key in _VALUE_RULES:
            accept, message = _VALUE_RULES[key]
            if not accept(value):
                problem = f"{message}, got {value!r}"
        if problem:
            raise ConfigError(f"{source}: {problem}")
        known[key] = value
    _check_prompt_conflict(known, source)
    return known


def _check_prompt_conflict(config: dict, where: str) -> None:
    if config.get("system_prompt") and config.get("no_system_prompt"):
        raise ConfigError(
            f"{where}: 'system_prompt' and 'no_system_prompt' are mutually exclusive"
        )


def _inside_git_repo(path: Path) -> bool:
    return any((d / ".git").exists() for d in path.parents)


def _read_toml(path: Path) -> dict:
    if not path.is_file():
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: invalid TOML: {e}") from e


# --- JSON stores ---


def read_json_file(path: Path, default: Any) -> Any:
    """Read a JSON store. Missing files yield *default*; malformed ones are logged."""
    if not path.is_file():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("ignoring unreadable %s: %s", path, e)
        return default


def write_json_file(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    os.replace(tmp, path)


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Merge the global config file with the project's relay.toml.

    Only keys actually present in a file are returned; defaults are
    applied later by apply_config_to_args(). The project file wins over
    the global one. ``config_dir`` in the result is the global config
    directory, which also holds the JSON stores and global hooks.
    """
    config_dir = global_config_dir()
    sources = [
        (config_dir / _GLOBAL_FILE, False),
        (Path(base_dir).resolve() / _PROJECT_FILE, True),
    ]
    merged: dict = {}
    for path, is_project in sources:
        values = _validate_config(_read_toml(path), str(path))
        if is_project and "api_key" in values and _inside_git_repo(path):
            print(
                f"warning: {path}: 'api_key' in a git-tracked project config may be "
                "committed by mistake; prefer an environment variable.",
                file=sys.stderr,
            )
        merged.update(values)

    _check_prompt_conflict(merged, "global and project config")
    merged["config_dir"] = config_dir
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill every dest the command line left as _UNSET.

    Config values come first, then the hardcoded defaults. ``color`` in
    config maps onto the --color/--no-color pair, and only when neither
    flag was given.
    """
    unset = {
        dest for dest in _ARGPARSE_DEFAULTS if getattr(args, dest, _UNSET) is _UNSET
    }
    if "color" in config and {"color", "no_color"} <= unset:
        args.color = config["color"]
        args.no_color = not config["color"]
        unset -= {"color", "no_color"}

    for dest in unset:
        if dest != "color" and dest in config:
            setattr(args, dest, config[dest])
        else:
            setattr(args, dest, _ARGPARSE_DEFAULTS[dest])


def resolve_api_key(provider: str, api_key: str | None) -> str | None:
    """Explicit key, then RELAY_API_KEY, then the protocol's usual variable."""
    if api_key:
        return api_key
    return os.environ.get("RELAY_API_KEY") or os.environ.get(
        _API_KEY_ENV.get(provider, "")
    )


def default_base_url(provider: str) -> str:
    return _DEFAULT_BASE_URLS[provider]


_INVERTED = {"quiet": "verbose", "no_hooks": "hooks"}


def config_to_session_kwargs(config: dict) -> dict:
    """Map config keys onto Session keyword arguments.

    quiet and no_hooks flip into verbose and hooks; color is a CLI
    concern and is dropped.
    """
    kwargs = {}
    for key, value in config.items():
        if key == "color":
            continue
        if key in _INVERTED:
            kwargs[_INVERTED[key]] = not value
        else:
            kwargs[key] = value
    return kwargs


_TEMPLATE_SECTIONS = [
    (
        "Provider and model",
        [
            ('provider = "chat"', '"chat" | "responses" | "gemini" | "anthropic"'),
            ('model = "gpt-4.1"', None),
            ('basic_model = "gpt-4.1-mini"', "hook prompt actions"),
            ('compact_model = "gpt-4.1-mini"', "context compression"),
            ('api_key = "sk-..."', "prefer environment variables"),
            ('base_url = "https://..."', None),
            ("max_retries = 5", None),
        ],
    ),
    (
        "Budgets",
        [
            ("max_output_tokens = 8192", None),
            ("max_context_tokens = 128000", None),
            ("compress_threshold = 80", "percent of max_context_tokens"),
            ("temperature = 0.7", None),
            ("max_turns = 100", None),
            ("tool_token_limit = 100000", "per tool result"),
        ],
    ),
    (
        "Behaviour",
        [
            ('system_prompt = "You are a careful coding assistant."', None),
            ("no_system_prompt = false", None),
            ("yolo = false", "sensitive commands still ask"),
            ("no_hooks = false", None),
        ],
    ),
    (
        "Output",
        [
            ("color = true", "omit for auto-detection"),
            ("quiet = false", None),
        ],
    ),
]


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    if project:
        where = f"Project config: <project>/{_PROJECT_FILE}"
    else:
        where = f"Global config: ~/.config/relay/{_GLOBAL_FILE}"
    lines = [
        "# relay configuration file",
        f"# {where}",
        "# Command-line flags take precedence. Uncomment what you need.",
        "",
    ]
    for title, entries in _TEMPLATE_SECTIONS:
        lines.append(f"# [{title}]")
        for setting, note in entries:
            lines.append(f"# {setting:<32} # {note}" if note else f"# {setting}")
        lines.append("")
    return "\n".join(lines)
