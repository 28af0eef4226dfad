"""Bridges between the permission engine and whoever answers approval prompts."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Protocol

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt

from toolrun.permissions.types import PermissionDecision, PermissionUpdate, UpdateDestination

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PermissionRequest:
    """One approval prompt."""

    tool_name: str
    tool_use_id: str
    input: Mapping[str, Any]
    decision: PermissionDecision
    delegated: bool = False

    def summary(self, limit: int = 200) -> str:
        text = json.dumps(dict(self.input), sort_keys=True, default=str)
        return text if len(text) <= limit else text[: limit - 3] + "..."


@dataclass(frozen=True)
class PermissionResponse:
    allow: bool
    updates: tuple[PermissionUpdate, ...] = ()
    message: str = ""
    updated_input: Optional[Mapping[str, Any]] = None

    @classmethod
    def approve(cls, updates: Iterable[PermissionUpdate] = (), message: str = "") -> "PermissionResponse":
        return cls(allow=True, updates=tuple(updates), message=message)

    @classmethod
    def reject(cls, message: str = "User rejected the tool call") -> "PermissionResponse":
        return cls(allow=False, message=message)


class PermissionBridge(Protocol):
    async def request_decision(self, request: PermissionRequest) -> PermissionResponse:
        ...


@dataclass
class StaticPermissionBridge:
    """Answers prompts from a script, for headless runs and tests.

    Scripted ``responses`` are consumed in order; once exhausted every prompt
    gets ``default``. With ``accept_suggestions`` an approval also applies
    the decision's suggested updates.
    """

    default: bool = False
    responses: list[PermissionResponse] = field(default_factory=list)
    accept_suggestions: bool = False
    requests: list[PermissionRequest] = field(default_factory=list)

    async def request_decision(self, request: PermissionRequest) -> PermissionResponse:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        if not self.default:
            return PermissionResponse.reject()
        updates = request.decision.suggestions if self.accept_suggestions else ()
        return PermissionResponse.approve(updates)


class ConsolePermissionBridge:
    """Prompts on the terminal with rich.

    Choices: ``y`` once, ``a`` always for this session (applies the
    suggestions), ``p`` always for this project (persists them), ``n`` reject.
    """

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(stderr=True)
        self._lock = asyncio.Lock()

    async def request_decision(self, request: PermissionRequest) -> PermissionResponse:
        async with self._lock:
            return await asyncio.to_thread(self._prompt, request)

    def _prompt(self, request: PermissionRequest) -> PermissionResponse:
        decision = request.decision
        lines = [f"[bold]{request.tool_name}[/bold] {request.summary()}"]
        if decision.message:
            lines.append(f"[yellow]{decision.message}[/yellow]")
        if decision.blocked_path:
            lines.append(f"[dim]path: {decision.blocked_path}[/dim]")
        for suggestion in decision.suggestions:
            lines.append(f"[dim]suggested: {suggestion.describe()}[/dim]")
        title = "Delegated permission request" if request.delegated else "Permission required"
        self.console.print(Panel("\n".join(lines), title=title, border_style="yellow"))

        choices = ["y", "n"]
        if decision.suggestions:
            choices[1:1] = ["a", "p"]
        answer = Prompt.ask("Allow?", choices=choices, default="n", console=self.console)
        if answer == "y":
            return PermissionResponse.approve()
        if answer == "a":
            return PermissionResponse.approve(decision.suggestions)
        if answer == "p":
            return PermissionResponse.approve(
                s.with_destination(UpdateDestination.PROJECT) for s in decision.suggestions
            )
        logger.info("User rejected %s (%s)", request.tool_name, request.tool_use_id)
        return PermissionResponse.reject()
