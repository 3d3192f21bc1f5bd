"""Approval gate: decides which tool calls need interactive confirmation.

Three layers of approval state are consulted, in order:

- the sensitive-command list, which forces confirmation for matching
  ``terminal-execute`` commands even in YOLO mode;
- YOLO mode, which approves everything else;
- the session-approved set (in memory, one run) and the global
  always-approved set (persisted in permissions.json).
"""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from .config import read_json_file, write_json_file

logger = logging.getLogger(__name__)

APPROVE_ONCE = "approve_once"
APPROVE_ALWAYS = "approve_always"
REJECT = "reject"
REJECT_WITH_REPLY = "reject_with_reply"

DECISIONS = (APPROVE_ONCE, APPROVE_ALWAYS, REJECT, REJECT_WITH_REPLY)

TERMINAL_TOOL = "terminal-execute"

# Delegation needs no confirmation; the nested calls go through a child gate.
AUTO_APPROVED_PREFIXES = ("subagent-",)


@dataclass
class Decision:
    kind: str
    reply: str | None = None

    @property
    def approved(self) -> bool:
        return self.kind in (APPROVE_ONCE, APPROVE_ALWAYS)


# ---------------------------------------------------------------------------
# Always-approved store
# ---------------------------------------------------------------------------


class ApprovalStore:
    """Process-wide always-approved tool names.

    Backed by a JSON file ``{"alwaysApprovedTools": [...]}`` when *path* is
    given; purely in memory otherwise.
    """

    def __init__(self, path: Path | None = None, tools: set[str] | None = None):
        self.path = path
        self._tools: set[str] = set(tools or ())
        if path is not None:
            data = read_json_file(path, {})
            names = data.get("alwaysApprovedTools", []) if isinstance(data, dict) else []
            self._tools.update(n for n in names if isinstance(n, str))

    def get(self) -> set[str]:
        return set(self._tools)

    def is_approved(self, name: str) -> bool:
        return name in self._tools

    def add(self, name: str) -> None:
        if name not in self._tools:
            self._tools.add(name)
            self.persist()

    def remove(self, name: str) -> None:
        if name in self._tools:
            self._tools.discard(name)
            self.persist()

    def persist(self) -> None:
        if self.path is None:
            return
        write_json_file(self.path, {"alwaysApprovedTools": sorted(self._tools)})


# ---------------------------------------------------------------------------
# Sensitive commands
# ---------------------------------------------------------------------------


@dataclass
class SensitiveCommand:
    id: str
    pattern: str
    description: str
    enabled: bool = True
    is_preset: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pattern": self.pattern,
            "description": self.description,
            "enabled": self.enabled,
            "isPreset": self.is_preset,
        }


_PRESETS: list[tuple[str, str, str, bool]] = [
    ("rm", "rm*", "Delete files or directories", True),
    ("rmdir", "rmdir*", "Remove directories", True),
    ("mv-tmp", "mv * /tmp*", "Move files to /tmp", True),
    ("chmod", "chmod*", "Change file permissions", True),
    ("chown", "chown*", "Change file ownership", True),
    ("dd", "dd*", "Low-level disk copy", True),
    ("mkfs", "mkfs*", "Create a filesystem", True),
    ("fdisk", "fdisk*", "Partition disks", True),
    ("killall", "killall*", "Kill processes by name", True),
    ("pkill", "pkill*", "Kill processes by pattern", True),
    ("reboot", "reboot*", "Reboot the system", True),
    ("shutdown", "shutdown*", "Shut down the system", True),
    ("sudo", "sudo*", "Run as superuser", True),
    ("su", "su*", "Switch user", True),
    ("git-push-force", "git push*--force*", "Force push to a git remote", True),
    ("npm-publish", "npm publish*", "Publish an npm package", True),
    ("curl-post", "curl*-X POST*", "HTTP POST requests", False),
    ("wget", "wget*", "Download files", False),
    ("git-push", "git push*", "Push to a git remote", False),
    ("docker-rm", "docker rm*", "Remove docker containers", False),
    ("docker-rmi", "docker rmi*", "Remove docker images", False),
]

PRESET_SENSITIVE_COMMANDS = [
    SensitiveCommand(id=i, pattern=p, description=d, enabled=e, is_preset=True)
    for i, p, d, e in _PRESETS
]


def load_sensitive_commands(path: Path | None) -> list[SensitiveCommand]:
    """Load sensitive-commands.json, falling back to the preset list."""
    if path is None:
        return list(PRESET_SENSITIVE_COMMANDS)
    data = read_json_file(path, None)
    if not isinstance(data, dict) or not isinstance(data.get("commands"), list):
        return list(PRESET_SENSITIVE_COMMANDS)
    commands = []
    for entry in data["commands"]:
        if not isinstance(entry, dict) or not isinstance(entry.get("pattern"), str):
            logger.warning("%s: skipping malformed entry %r", path, entry)
            continue
        commands.append(
            SensitiveCommand(
                id=str(entry.get("id", entry["pattern"])),
                pattern=entry["pattern"],
                description=str(entry.get("description", "")),
                enabled=bool(entry.get("enabled", True)),
                is_preset=bool(entry.get("isPreset", False)),
            )
        )
    return commands


def save_sensitive_commands(path: Path, commands: list[SensitiveCommand]) -> None:
    write_json_file(path, {"commands": [c.to_dict() for c in commands]})


def _pattern_regex(pattern: str) -> re.Pattern:
    """Glob to regex: ``*`` matches anything, anchored at the start only."""
    body = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile("^" + body, re.IGNORECASE)


def match_sensitive_command(
    command: str, commands: list[SensitiveCommand]
) -> SensitiveCommand | None:
    """Return the first enabled entry whose pattern matches *command*."""
    normalized = " ".join(command.split())
    for entry in commands:
        if entry.enabled and _pattern_regex(entry.pattern).match(normalized):
            return entry
    return None


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


def _tool_args(tool_call: dict) -> dict:
    try:
        args = json.loads(tool_call["function"].get("arguments") or "{}")
    except (json.JSONDecodeError, TypeError):
        return {}
    return args if isinstance(args, dict) else {}


class ApprovalGate:
    """Per-run approval state plus the shared store and sensitive list.

    *confirm(tool_call, sensitive)* is the interactive surface: it returns
    a Decision and may block indefinitely. Without it, calls that need
    confirmation are rejected.
    """

    def __init__(
        self,
        store: ApprovalStore | None = None,
        *,
        yolo: bool = False,
        sensitive_commands: list[SensitiveCommand] | None = None,
        confirm=None,
        parent: "ApprovalGate | None" = None,
    ):
        self.store = store if store is not None else ApprovalStore()
        self.yolo = yolo
        self.sensitive_commands = (
            sensitive_commands
            if sensitive_commands is not None
            else list(PRESET_SENSITIVE_COMMANDS)
        )
        self.confirm = confirm
        self.parent = parent
        self.session_approved: set[str] = set()

    def child(self, confirm=None) -> "ApprovalGate":
        """Gate for a nested run: fresh session set, writes propagate upward."""
        return ApprovalGate(
            self.store,
            yolo=self.yolo,
            sensitive_commands=self.sensitive_commands,
            confirm=confirm or self.confirm,
            parent=self,
        )

    def _session_approved(self, name: str) -> bool:
        gate = self
        while gate is not None:
            if name in gate.session_approved:
                return True
            gate = gate.parent
        return False

    def sensitive_match(self, tool_call: dict) -> SensitiveCommand | None:
        if tool_call["function"]["name"] != TERMINAL_TOOL:
            return None
        command = _tool_args(tool_call).get("command")
        if not isinstance(command, str):
            return None
        return match_sensitive_command(command, self.sensitive_commands)

    def needs_confirmation(self, tool_call: dict) -> bool:
        name = tool_call["function"]["name"]
        if self.sensitive_match(tool_call) is not None:
            return True
        if self.yolo or name.startswith(AUTO_APPROVED_PREFIXES):
            return False
        return not (self._session_approved(name) or self.store.is_approved(name))

    def approve_always(self, name: str) -> None:
        gate = self
        while gate is not None:
            gate.session_approved.add(name)
            gate = gate.parent
        self.store.add(name)

    def decide(self, tool_call: dict) -> Decision:
        """Return the decision for one call, prompting only when needed."""
        if not self.needs_confirmation(tool_call):
            return Decision(APPROVE_ONCE)
        if self.confirm is None:
            return Decision(REJECT)
        decision = self.confirm(tool_call, self.sensitive_match(tool_call))
        if isinstance(decision, str):
            decision = Decision(decision)
        if decision.kind not in DECISIONS:
            raise ValueError(f"unknown approval decision {decision.kind!r}")
        if decision.kind == APPROVE_ALWAYS:
            self.approve_always(tool_call["function"]["name"])
        return decision
