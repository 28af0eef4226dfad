"""Permission decisions, reasons, rule updates and the permission context."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from toolrun.config.models import PermissionMode


class Behavior(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"
    PASSTHROUGH = "passthrough"


# Higher wins when sub-decisions are combined.
BEHAVIOR_PRECEDENCE: dict[Behavior, int] = {
    Behavior.ALLOW: 0,
    Behavior.PASSTHROUGH: 1,
    Behavior.ASK: 2,
    Behavior.DENY: 3,
}


class ReasonType(str, Enum):
    RULE = "rule"
    OTHER = "other"
    SUBCOMMAND_RESULTS = "subcommand_results"


@dataclass(frozen=True)
class DecisionReason:
    type: ReasonType
    rule: Optional[str] = None
    text: Optional[str] = None
    subcommand_results: Optional[Mapping[str, "PermissionDecision"]] = None

    @classmethod
    def from_rule(cls, rule: str) -> "DecisionReason":
        return cls(type=ReasonType.RULE, rule=rule)

    @classmethod
    def other(cls, text: str) -> "DecisionReason":
        return cls(type=ReasonType.OTHER, text=text)

    @classmethod
    def subcommands(cls, results: Mapping[str, "PermissionDecision"]) -> "DecisionReason":
        return cls(type=ReasonType.SUBCOMMAND_RESULTS, subcommand_results=dict(results))

    def describe(self) -> str:
        if self.type == ReasonType.RULE:
            return f"rule: {self.rule}"
        if self.type == ReasonType.OTHER:
            return f"other: {self.text}"
        results = self.subcommand_results or {}
        return "subcommands: " + ", ".join(f"{cmd!r}={d.behavior.value}" for cmd, d in results.items())

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value}
        if self.rule is not None:
            data["rule"] = self.rule
        if self.text is not None:
            data["text"] = self.text
        if self.subcommand_results is not None:
            data["subcommand_results"] = {
                cmd: decision.to_dict() for cmd, decision in self.subcommand_results.items()
            }
        return data


class UpdateType(str, Enum):
    ADD_RULES = "add_rules"
    ADD_DIRECTORIES = "add_directories"
    SET_MODE = "set_mode"


class UpdateDestination(str, Enum):
    SESSION = "session"
    PROJECT = "project"
    USER = "user"


@dataclass(frozen=True)
class PermissionUpdate:
    """A change to the permission context proposed by the engine or the user."""

    type: UpdateType
    behavior: Behavior = Behavior.ALLOW
    rules: tuple[str, ...] = ()
    directories: tuple[str, ...] = ()
    mode: Optional[PermissionMode] = None
    destination: UpdateDestination = UpdateDestination.SESSION

    @classmethod
    def add_rules(
        cls,
        rules: Iterable[str],
        behavior: Behavior = Behavior.ALLOW,
        destination: UpdateDestination = UpdateDestination.SESSION,
    ) -> "PermissionUpdate":
        return cls(type=UpdateType.ADD_RULES, behavior=behavior, rules=tuple(rules), destination=destination)

    @classmethod
    def add_directories(
        cls, directories: Iterable[str], destination: UpdateDestination = UpdateDestination.SESSION
    ) -> "PermissionUpdate":
        return cls(type=UpdateType.ADD_DIRECTORIES, directories=tuple(directories), destination=destination)

    @classmethod
    def set_mode(cls, mode: PermissionMode) -> "PermissionUpdate":
        return cls(type=UpdateType.SET_MODE, mode=mode)

    def with_destination(self, destination: UpdateDestination) -> "PermissionUpdate":
        return replace(self, destination=destination)

    def describe(self) -> str:
        if self.type == UpdateType.ADD_RULES:
            return f"{self.behavior.value} {', '.join(self.rules)}"
        if self.type == UpdateType.ADD_DIRECTORIES:
            return f"add directories {', '.join(self.directories)}"
        return f"switch to {self.mode.value if self.mode else '?'} mode"


@dataclass(frozen=True)
class PermissionDecision:
    behavior: Behavior
    message: str = ""
    updated_input: Optional[Mapping[str, Any]] = None
    reason: Optional[DecisionReason] = None
    suggestions: tuple[PermissionUpdate, ...] = ()
    blocked_path: Optional[str] = None

    @classmethod
    def allow(
        cls,
        updated_input: Optional[Mapping[str, Any]] = None,
        reason: Optional[DecisionReason] = None,
        message: str = "",
    ) -> "PermissionDecision":
        return cls(Behavior.ALLOW, message=message, updated_input=updated_input, reason=reason)

    @classmethod
    def deny(
        cls,
        message: str,
        reason: Optional[DecisionReason] = None,
        blocked_path: Optional[str] = None,
    ) -> "PermissionDecision":
        return cls(Behavior.DENY, message=message, reason=reason, blocked_path=blocked_path)

    @classmethod
    def ask(
        cls,
        message: str,
        reason: Optional[DecisionReason] = None,
        suggestions: Iterable[PermissionUpdate] = (),
        blocked_path: Optional[str] = None,
    ) -> "PermissionDecision":
        return cls(
            Behavior.ASK,
            message=message,
            reason=reason,
            suggestions=tuple(suggestions),
            blocked_path=blocked_path,
        )

    @classmethod
    def passthrough(
        cls,
        message: str,
        reason: Optional[DecisionReason] = None,
        suggestions: Iterable[PermissionUpdate] = (),
    ) -> "PermissionDecision":
        return cls(Behavior.PASSTHROUGH, message=message, reason=reason, suggestions=tuple(suggestions))

    @property
    def is_allowed(self) -> bool:
        return self.behavior == Behavior.ALLOW

    @property
    def is_denied(self) -> bool:
        return self.behavior == Behavior.DENY

    @property
    def needs_approval(self) -> bool:
        return self.behavior in (Behavior.ASK, Behavior.PASSTHROUGH)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"behavior": self.behavior.value, "message": self.message}
        if self.reason is not None:
            data["reason"] = self.reason.to_dict()
        if self.blocked_path:
            data["blocked_path"] = self.blocked_path
        if self.suggestions:
            data["suggestions"] = [s.describe() for s in self.suggestions]
        return data


def compose_decisions(results: Mapping[str, PermissionDecision]) -> PermissionDecision:
    """Combine per-sub-command decisions.

    deny beats ask, ask beats passthrough, passthrough beats allow. The
    strongest sub-decision supplies the message; ask suggestions are merged.
    """
    reason = DecisionReason.subcommands(results)
    if not results:
        return PermissionDecision.allow(reason=reason)

    strongest = max(results.values(), key=lambda decision: BEHAVIOR_PRECEDENCE[decision.behavior])

    if strongest.behavior == Behavior.ALLOW:
        return PermissionDecision.allow(reason=reason)

    suggestions: list[PermissionUpdate] = []
    for decision in results.values():
        if decision.behavior in (Behavior.ASK, Behavior.PASSTHROUGH):
            for suggestion in decision.suggestions:
                if suggestion not in suggestions:
                    suggestions.append(suggestion)

    return PermissionDecision(
        behavior=strongest.behavior,
        message=strongest.message,
        reason=reason,
        suggestions=tuple(suggestions) if strongest.behavior != Behavior.DENY else (),
        blocked_path=strongest.blocked_path,
    )


@dataclass(frozen=True)
class PermissionContext:
    """Snapshot of the session's permission configuration."""

    mode: PermissionMode = PermissionMode.DEFAULT
    allow_rules: tuple[str, ...] = ()
    deny_rules: tuple[str, ...] = ()
    ask_rules: tuple[str, ...] = ()
    additional_directories: tuple[str, ...] = ()

    def rules_for(self, behavior: Behavior) -> tuple[str, ...]:
        if behavior == Behavior.ALLOW:
            return self.allow_rules
        if behavior == Behavior.DENY:
            return self.deny_rules
        if behavior == Behavior.ASK:
            return self.ask_rules
        return ()

    def apply(self, update: PermissionUpdate) -> "PermissionContext":
        if update.type == UpdateType.SET_MODE and update.mode is not None:
            return replace(self, mode=update.mode)
        if update.type == UpdateType.ADD_DIRECTORIES:
            merged = self.additional_directories + tuple(
                d for d in update.directories if d not in self.additional_directories
            )
            return replace(self, additional_directories=merged)
        if update.type == UpdateType.ADD_RULES:
            existing = self.rules_for(update.behavior)
            merged = existing + tuple(r for r in update.rules if r not in existing)
            field_name = {
                Behavior.ALLOW: "allow_rules",
                Behavior.DENY: "deny_rules",
                Behavior.ASK: "ask_rules",
            }.get(update.behavior)
            if field_name is None:
                return self
            return replace(self, **{field_name: merged})
        return self

    def apply_all(self, updates: Iterable[PermissionUpdate]) -> "PermissionContext":
        context = self
        for update in updates:
            context = context.apply(update)
        return context
