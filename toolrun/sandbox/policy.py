"""Per-call sandbox policy, assembled from the execution context."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping, Optional

from toolrun.permissions.rules import parse_rule

if TYPE_CHECKING:
    from toolrun.core.context import ExecutionContext

logger = logging.getLogger(__name__)

# Always unreadable inside the sandbox, on top of configured entries.
DEFAULT_DENY_READ = ("~/.ssh", "~/.aws", "~/.gnupg")
# Writable roots that still must not be modified.
DEFAULT_DENY_WITHIN_ALLOW = (".git/hooks", ".toolrun/rules", ".toolrun/config.toml", "toolrun.toml")


@dataclass(frozen=True)
class ReadConfig:
    deny_only: tuple[str, ...] = ()


@dataclass(frozen=True)
class WriteConfig:
    allow_only: tuple[str, ...] = ()
    deny_within_allow: tuple[str, ...] = ()


@dataclass(frozen=True)
class SandboxPolicy:
    """What a single call may read, write and reach over the network.

    Attributes:
        read_config: Read restrictions (``None`` reads anything).
        write_config: Write restrictions (``None`` writes anywhere).
        needs_network_restriction: Isolate the network namespace.
        enable_weaker_nested_sandbox: Skip namespaces that fail inside containers.
        enabled: An isolation backend is available and selected.
        wrapper_path: Path of the isolation binary.
        require: Refuse to run when isolation is unavailable.
    """

    read_config: Optional[ReadConfig] = None
    write_config: Optional[WriteConfig] = None
    needs_network_restriction: bool = False
    enable_weaker_nested_sandbox: bool = False
    enabled: bool = False
    wrapper_path: Optional[str] = None
    require: bool = False


def resolve_wrapper_path(configured: str = "") -> Optional[str]:
    """Locate the bubblewrap binary, or ``None`` when it is unavailable."""
    if configured:
        found = shutil.which(configured)
        if found is None:
            logger.warning("Configured sandbox wrapper %s not found", configured)
        return found
    return shutil.which("bwrap")


def _rule_contents(rules: tuple[str, ...], tool_names: frozenset[str]) -> list[str]:
    contents: list[str] = []
    for raw in rules:
        rule = parse_rule(raw)
        if rule is not None and rule.tool_name in tool_names and rule.content:
            contents.append(rule.content)
    return contents


READ_TOOL_NAMES = frozenset({"read_file", "list_dir", "grep_files"})
WRITE_TOOL_NAMES = frozenset({"write_file"})


def build_sandbox_policy(
    context: "ExecutionContext",
    tool_input: Optional[Mapping[str, Any]] = None,
) -> SandboxPolicy:
    """Build the policy for one call from the turn's context.

    Write roots are the working directory, the session's additional
    directories and the configured writable roots. Deny rules written
    against the file tools become read denials and write carve-outs.
    """
    settings = context.sandbox
    permissions = context.permission_context

    deny_read = [*DEFAULT_DENY_READ, *settings.deny_read]
    deny_read.extend(_rule_contents(permissions.deny_rules, READ_TOOL_NAMES))

    allow_only = [
        str(context.cwd),
        str(context.session.temp_dir),
        *permissions.additional_directories,
        *settings.writable_roots,
    ]
    deny_within = [*DEFAULT_DENY_WITHIN_ALLOW, *settings.deny_write]
    deny_within.extend(_rule_contents(permissions.deny_rules, WRITE_TOOL_NAMES))

    disable_requested = bool(tool_input and tool_input.get("dangerously_disable_sandbox"))
    enabled = settings.enabled and context.sandbox_wrapper is not None and not disable_requested

    return SandboxPolicy(
        read_config=ReadConfig(deny_only=tuple(deny_read)),
        write_config=WriteConfig(allow_only=tuple(allow_only), deny_within_allow=tuple(deny_within)),
        needs_network_restriction=not settings.allow_network,
        enable_weaker_nested_sandbox=settings.weaker_nested,
        enabled=enabled,
        wrapper_path=context.sandbox_wrapper,
        require=settings.require and not disable_requested,
    )
