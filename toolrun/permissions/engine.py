"""Permission decisions for tool calls.

Shell commands are split into pipeline units and each unit walks the same
ladder: deny rules, classifier hard blocks, path checks, ask rules, allow
rules, classifier soft blocks, mode shortcuts, sandbox availability. The
unit decisions are then composed (deny > ask > passthrough > allow).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from toolrun.config.models import PermissionMode
from toolrun.core.context import ExecutionContext
from toolrun.permissions.bridge import PermissionBridge, PermissionRequest
from toolrun.permissions.rules import (
    SHELL_TOOL_NAME,
    format_rule,
    match_shell_rule,
    match_tool_rule,
    suggest_shell_rules,
)
from toolrun.permissions.types import (
    DecisionReason,
    PermissionDecision,
    PermissionUpdate,
    compose_decisions,
)
from toolrun.permissions.validator import (
    PathAccess,
    PathValidation,
    ViolationKind,
    resolve_path,
    validate_accesses,
)
from toolrun.sandbox.policy import SandboxPolicy, build_sandbox_policy
from toolrun.shell.classifier import CommandClassifier, is_read_only_command
from toolrun.shell.parser import SubcommandSpan, executable_name, group_pipelines, split_command
from toolrun.shell.paths import extract_path_accesses
from toolrun.tools.base import Tool

logger = logging.getLogger(__name__)

# Executables auto-approved in acceptEdits mode once their paths are in bounds.
ACCEPT_EDITS_EXECUTABLES = frozenset({"mkdir", "touch", "rm", "rmdir", "mv", "cp", "sed"})

PLAN_MODE_MESSAGE = (
    "{tool} is not available in plan mode: only read-only tools may run until the plan is approved"
)
NO_APPROVER_MESSAGE = "Permission required but no approver is available: {message}"


@dataclass(frozen=True)
class ApprovalResult:
    """Outcome of an approval prompt: the final decision plus any approved updates."""

    decision: PermissionDecision
    updates: tuple[PermissionUpdate, ...] = ()


def apply_mode(decision: PermissionDecision, mode: PermissionMode) -> PermissionDecision:
    """Resolve ``ask``/``passthrough`` for modes that never prompt."""
    if not decision.needs_approval:
        return decision
    if mode == PermissionMode.BYPASS:
        return PermissionDecision.allow(reason=decision.reason, message="allowed by bypassPermissions mode")
    if mode == PermissionMode.DONT_ASK:
        return PermissionDecision.deny(
            f"{decision.message} (dontAsk mode does not prompt)".strip(),
            reason=decision.reason,
            blocked_path=decision.blocked_path,
        )
    return decision


def _directory_suggestion(blocked_path: str) -> PermissionUpdate:
    path = Path(blocked_path)
    directory = path if path.is_dir() else path.parent
    return PermissionUpdate.add_directories([str(directory)])


def _path_decision(
    validation: PathValidation, subject: str, suggestions: tuple[PermissionUpdate, ...] = ()
) -> PermissionDecision:
    message = f"{subject}: {validation.reason}"
    reason = DecisionReason.other(validation.violation.value if validation.violation else "path")
    if validation.violation == ViolationKind.OUTSIDE_ALLOWED:
        return PermissionDecision.ask(
            message,
            reason=reason,
            suggestions=(_directory_suggestion(validation.blocked_path or ""), *suggestions),
            blocked_path=validation.blocked_path,
        )
    return PermissionDecision.deny(message, reason=reason, blocked_path=validation.blocked_path)


def _has_expansion(path: str) -> bool:
    return "$" in path or "`" in path


class PermissionEngine:
    """Decides whether tool calls may run.

    ``evaluate`` is synchronous and side-effect free so the scheduler can
    run it in worker threads. ``request_approval`` talks to the bridge.
    """

    def __init__(
        self,
        bridge: Optional[PermissionBridge] = None,
        classifier: Optional[CommandClassifier] = None,
    ) -> None:
        self.bridge = bridge
        self.classifier = classifier or CommandClassifier()

    def evaluate(
        self,
        tool: Tool,
        params: Any,
        context: ExecutionContext,
        policy: Optional[SandboxPolicy] = None,
        tool_input: Optional[Mapping[str, Any]] = None,
    ) -> PermissionDecision:
        """Decide on one call. Never raises: internal failures deny."""
        try:
            decision = self._evaluate(tool, params, context, policy, tool_input)
        except Exception as e:
            logger.warning("Permission check for %s failed closed: %s", tool.name, e)
            return PermissionDecision.deny(
                f"Permission check failed: {e}", reason=DecisionReason.other("evaluation_error")
            )
        logger.debug("%s -> %s (%s)", tool.name, decision.behavior.value, decision.message)
        return decision

    def _evaluate(
        self,
        tool: Tool,
        params: Any,
        context: ExecutionContext,
        policy: Optional[SandboxPolicy],
        tool_input: Optional[Mapping[str, Any]],
    ) -> PermissionDecision:
        if not tool.needs_permissions(params):
            return PermissionDecision.allow(reason=DecisionReason.other("no_permissions_needed"))

        if context.mode == PermissionMode.PLAN and not tool.is_read_only(params):
            return PermissionDecision.deny(
                PLAN_MODE_MESSAGE.format(tool=tool.name), reason=DecisionReason.other("plan_mode")
            )

        if policy is None:
            policy = build_sandbox_policy(context, tool_input)

        command = tool.shell_command(params)
        if command is not None:
            decision = self.evaluate_shell_command(command, context, policy, tool.name)
        else:
            decision = self._evaluate_tool(tool, params, context, policy)
        return apply_mode(decision, context.mode)

    # -------------------------------------------------------------------------
    # Shell commands
    # -------------------------------------------------------------------------

    def evaluate_shell_command(
        self,
        command: str,
        context: ExecutionContext,
        policy: Optional[SandboxPolicy] = None,
        tool_name: str = SHELL_TOOL_NAME,
    ) -> PermissionDecision:
        """Decide on a shell command before mode resolution.

        Raises:
            CommandParseError: If the command cannot be split.
        """
        command = command.strip()
        if not command:
            return PermissionDecision.deny("Empty command", reason=DecisionReason.other("empty"))
        if policy is None:
            policy = build_sandbox_policy(context)

        permissions = context.permission_context
        rule = match_shell_rule([command], permissions.deny_rules, tool_name)
        if rule is not None:
            return PermissionDecision.deny(
                f"Command denied by rule {rule}", reason=DecisionReason.from_rule(rule)
            )

        units = [unit for unit in group_pipelines(split_command(command)) if not unit.is_empty]
        if not units:
            return PermissionDecision.allow(reason=DecisionReason.other("no_commands"))

        classifier = self.classifier.widened(context.shell.allowed_executables)
        results: dict[str, PermissionDecision] = {}
        for unit in units:
            key = unit.text.strip()
            if key not in results:
                results[key] = self._evaluate_unit(unit, context, policy, tool_name, classifier)
        decision = compose_decisions(results)

        if decision.is_denied:
            return decision
        cd_units = [u for u in units if executable_name(u.command) == "cd"]
        if len(cd_units) > 1:
            return PermissionDecision.ask(
                "Multiple directory changes in one command require approval",
                reason=decision.reason,
                suggestions=decision.suggestions,
            )
        if cd_units and any(
            a.mode.is_write for u in units for a in extract_path_accesses(u)
        ):
            return PermissionDecision.ask(
                "Changing directory and writing files in one command requires approval",
                reason=decision.reason,
                suggestions=decision.suggestions,
            )
        return decision

    def _evaluate_unit(
        self,
        unit: SubcommandSpan,
        context: ExecutionContext,
        policy: SandboxPolicy,
        tool_name: str,
        classifier: CommandClassifier,
    ) -> PermissionDecision:
        text = unit.text.strip()
        candidates = [unit.command, text]
        permissions = context.permission_context

        rule = match_shell_rule(candidates, permissions.deny_rules, tool_name)
        if rule is not None:
            return PermissionDecision.deny(
                f"`{text}` denied by rule {rule}", reason=DecisionReason.from_rule(rule)
            )

        classification = classifier.classify(unit)
        if classification.is_hard_block:
            return PermissionDecision.deny(
                f"`{text}`: {classification.describe()}",
                reason=DecisionReason.other(classification.rule or "blocked"),
            )

        suggestions = (PermissionUpdate.add_rules(suggest_shell_rules(text, tool_name)),)

        accesses = extract_path_accesses(unit)
        for access in accesses:
            if _has_expansion(access.path):
                return PermissionDecision.ask(
                    f"`{text}`: path {access.path!r} depends on shell expansion",
                    reason=DecisionReason.other("path_expansion"),
                    suggestions=suggestions,
                )
        validation = validate_accesses(accesses, policy, context.cwd, context.home_dir)
        if not validation.ok:
            return _path_decision(validation, f"`{text}`", suggestions)

        rule = match_shell_rule(candidates, permissions.ask_rules, tool_name)
        if rule is not None:
            return PermissionDecision.ask(
                f"`{text}` requires approval by rule {rule}",
                reason=DecisionReason.from_rule(rule),
                suggestions=suggestions,
            )

        rule = match_shell_rule(candidates, permissions.allow_rules, tool_name)
        if rule is not None:
            return PermissionDecision.allow(reason=DecisionReason.from_rule(rule))

        if classification.blocked:
            return PermissionDecision.ask(
                f"`{text}`: {classification.describe()}",
                reason=DecisionReason.other(classification.rule or "unlisted"),
                suggestions=suggestions,
            )

        if context.mode == PermissionMode.ACCEPT_EDITS and all(
            executable_name(stage.command) in ACCEPT_EDITS_EXECUTABLES for stage in unit.stage_spans()
        ):
            return PermissionDecision.allow(reason=DecisionReason.other("accept_edits"))

        if not policy.enabled and not is_read_only_command(unit):
            return PermissionDecision.ask(
                f"`{text}` may modify files and no sandbox is available",
                reason=DecisionReason.other("unsandboxed"),
                suggestions=suggestions,
            )

        return PermissionDecision.allow(reason=DecisionReason.other("allow_listed"))

    # -------------------------------------------------------------------------
    # Other tools
    # -------------------------------------------------------------------------

    def _evaluate_tool(
        self,
        tool: Tool,
        params: Any,
        context: ExecutionContext,
        policy: SandboxPolicy,
    ) -> PermissionDecision:
        permissions = context.permission_context
        accesses: list[PathAccess] = tool.permission_paths(params, context)
        paths = [a.path for a in accesses]
        cwd, home = context.cwd, context.home_dir

        rule = match_tool_rule(tool.name, permissions.deny_rules, paths, cwd, home, require_all=False)
        if rule is not None:
            return PermissionDecision.deny(
                f"{tool.name} denied by rule {rule}", reason=DecisionReason.from_rule(rule)
            )

        if tool.requires_user_interaction(params):
            return PermissionDecision.ask(
                f"{tool.name} requires user confirmation",
                reason=DecisionReason.other("user_interaction"),
            )

        suggestions = (
            PermissionUpdate.add_rules(
                [format_rule(tool.name, str(resolve_path(p, cwd, home))) for p in paths] or [tool.name]
            ),
        )

        validation = validate_accesses(accesses, policy, cwd, home)
        if not validation.ok:
            return _path_decision(validation, tool.name)

        rule = match_tool_rule(tool.name, permissions.ask_rules, paths, cwd, home, require_all=False)
        if rule is not None:
            return PermissionDecision.ask(
                f"{tool.name} requires approval by rule {rule}",
                reason=DecisionReason.from_rule(rule),
                suggestions=suggestions,
            )

        rule = match_tool_rule(tool.name, permissions.allow_rules, paths, cwd, home)
        if rule is not None:
            return PermissionDecision.allow(reason=DecisionReason.from_rule(rule))

        if tool.is_read_only(params):
            return PermissionDecision.allow(reason=DecisionReason.other("read_only"))

        if context.mode == PermissionMode.ACCEPT_EDITS and accesses:
            return PermissionDecision.allow(reason=DecisionReason.other("accept_edits"))

        target = f" {', '.join(paths)}" if paths else ""
        return PermissionDecision.passthrough(
            f"{tool.name}{target} requires approval",
            reason=DecisionReason.other("default"),
            suggestions=suggestions,
        )

    # -------------------------------------------------------------------------
    # Approval
    # -------------------------------------------------------------------------

    async def request_approval(
        self,
        tool_name: str,
        tool_use_id: str,
        tool_input: Mapping[str, Any],
        decision: PermissionDecision,
        context: ExecutionContext,
    ) -> ApprovalResult:
        """Ask the bridge to resolve an ``ask``/``passthrough`` decision."""
        if not decision.needs_approval:
            return ApprovalResult(decision)
        if context.abort.cancelled:
            return ApprovalResult(
                PermissionDecision.deny("Interrupted before approval", reason=decision.reason)
            )
        if self.bridge is None:
            return ApprovalResult(
                PermissionDecision.deny(
                    NO_APPROVER_MESSAGE.format(message=decision.message),
                    reason=decision.reason,
                    blocked_path=decision.blocked_path,
                )
            )

        request = PermissionRequest(
            tool_name=tool_name,
            tool_use_id=tool_use_id,
            input=tool_input,
            decision=decision,
            delegated=context.mode == PermissionMode.DELEGATE,
        )
        response = await self.bridge.request_decision(request)
        if response.allow:
            logger.info("Approved %s (%s)", tool_name, tool_use_id)
            return ApprovalResult(
                PermissionDecision.allow(
                    updated_input=response.updated_input,
                    reason=decision.reason,
                    message=response.message,
                ),
                tuple(response.updates),
            )
        return ApprovalResult(
            PermissionDecision.deny(
                response.message or "User rejected the tool call",
                reason=decision.reason,
                blocked_path=decision.blocked_path,
            )
        )
