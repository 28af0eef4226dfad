"""Permission rule strings: ``tool`` or ``tool(content)``.

For the shell tool the content is an exact command or a ``prefix:*``
pattern. For file tools it is a path glob.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from toolrun.permissions.validator import path_matches, resolve_path
from toolrun.shell.parser import strip_env_assignments, tokenize

SHELL_TOOL_NAME = "shell_command"

TOOL_ALIASES: dict[str, str] = {
    "Bash": "shell_command",
    "Shell": "shell_command",
    "Read": "read_file",
    "Write": "write_file",
    "Edit": "write_file",
    "LS": "list_dir",
    "Grep": "grep_files",
    "Skill": "use_skill",
    "ExitPlanMode": "exit_plan_mode",
}

# Tools whose first argument names an action worth keeping in a prefix rule.
_SUBCOMMAND_TOOLS = frozenset(
    {"git", "npm", "yarn", "pnpm", "cargo", "go", "uv", "pip", "pip3", "docker", "kubectl", "make", "npx"}
)

_RULE_RE = re.compile(r"^\s*([A-Za-z_][\w.-]*)\s*(?:\((.*)\))?\s*$", re.DOTALL)


@dataclass(frozen=True)
class ToolRule:
    tool_name: str
    content: Optional[str]
    raw: str

    @property
    def is_prefix(self) -> bool:
        return self.content is not None and self.content.endswith(":*")

    @property
    def prefix(self) -> str:
        return self.content[:-2].strip() if self.content and self.is_prefix else ""


def resolve_tool_name(name: str) -> str:
    return TOOL_ALIASES.get(name, name)


def parse_rule(raw: str) -> Optional[ToolRule]:
    match = _RULE_RE.match(raw)
    if match is None:
        return None
    content = match.group(2)
    if content is not None:
        content = content.strip() or None
    return ToolRule(tool_name=resolve_tool_name(match.group(1)), content=content, raw=raw)


def format_rule(tool_name: str, content: Optional[str] = None) -> str:
    return f"{tool_name}({content})" if content else tool_name


def shell_rule_matches(rule: ToolRule, command: str) -> bool:
    command = command.strip()
    if rule.content is None:
        return True
    if rule.is_prefix:
        prefix = rule.prefix
        return command == prefix or command.startswith(prefix + " ")
    return command == rule.content


def match_shell_rule(
    candidates: Iterable[str],
    rules: Iterable[str],
    tool_name: str = SHELL_TOOL_NAME,
    *,
    exact_only: bool = False,
) -> Optional[str]:
    """Return the first rule matching any candidate; exact rules win over prefixes."""
    candidates = [c.strip() for c in candidates if c and c.strip()]
    parsed = [r for r in (parse_rule(raw) for raw in rules) if r is not None and r.tool_name == tool_name]
    for rule in parsed:
        if rule.content is not None and not rule.is_prefix and any(c == rule.content for c in candidates):
            return rule.raw
    if exact_only:
        return None
    for rule in parsed:
        if rule.content is not None and not rule.is_prefix:
            continue
        if any(shell_rule_matches(rule, c) for c in candidates):
            return rule.raw
    return None


def match_tool_rule(
    tool_name: str,
    rules: Iterable[str],
    paths: Iterable[str],
    cwd: Path,
    home_dir: Optional[Path] = None,
    *,
    require_all: bool = True,
) -> Optional[str]:
    """Match a non-shell tool against rules.

    A bare ``tool`` rule matches every call. A ``tool(glob)`` rule matches
    when all (``require_all``) or any of the call's paths fall under the glob.
    """
    resolved = [resolve_path(p, cwd, home_dir) for p in paths]
    for raw in rules:
        rule = parse_rule(raw)
        if rule is None or rule.tool_name != tool_name:
            continue
        if rule.content is None:
            return rule.raw
        if not resolved:
            continue
        hits = [path_matches(p, rule.content, cwd, home_dir) for p in resolved]
        if (all(hits) if require_all else any(hits)):
            return rule.raw
    return None


def suggest_prefix(command: str) -> Optional[str]:
    """``git push origin main`` → ``git push``; ``ls -la`` → ``ls``."""
    tokens = strip_env_assignments(tokenize(command))
    if not tokens:
        return None
    head = tokens[0]
    if head.rsplit("/", 1)[-1] in _SUBCOMMAND_TOOLS and len(tokens) > 1 and not tokens[1].startswith("-"):
        return f"{head} {tokens[1]}"
    return head


def suggest_shell_rules(command: str, tool_name: str = SHELL_TOOL_NAME) -> tuple[str, ...]:
    """Rules a user could approve to stop being asked about ``command``."""
    command = command.strip()
    if not command:
        return ()
    prefix = suggest_prefix(command)
    suggestions = [format_rule(tool_name, command)]
    if prefix and prefix != command:
        suggestions.append(format_rule(tool_name, f"{prefix}:*"))
    return tuple(suggestions)
