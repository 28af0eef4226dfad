"""Per-turn execution state shared by the scheduler, the permission engine and tools.

The context is immutable. Anything that changes it (context modifiers
returned by tools, approved permission updates) produces a new instance, so
a reference held by a running call is a stable snapshot.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional

from toolrun.config.models import PermissionMode, SandboxConfig, ShellConfig, ToolrunConfig
from toolrun.config.rules import RuleStore
from toolrun.permissions.types import PermissionContext, PermissionUpdate
from toolrun.sandbox.policy import resolve_wrapper_path
from toolrun.session import SessionPaths

logger = logging.getLogger(__name__)

USER_INTERRUPTED = "user_interrupted"


class CancellationToken:
    """Cooperative cancellation signal.

    Child tokens fire when their parent fires, so one turn-level token can
    fan out to every call without the calls sharing state.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._cancelled = False
        self._reason: Optional[str] = None
        self._callbacks: list[Callable[[], None]] = []
        if parent is not None:
            if parent.cancelled:
                self._cancelled = True
                self._reason = parent.reason
            else:
                parent.add_callback(lambda: self.cancel(parent.reason or USER_INTERRUPTED))

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = USER_INTERRUPTED) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation; returns a function that unregisters it."""
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    async def wait(self) -> None:
        if self._cancelled:
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def _wake() -> None:
            if not future.done():
                future.set_result(None)

        remove = self.add_callback(_wake)
        try:
            await future
        finally:
            remove()


@dataclass(frozen=True)
class ToolCallRequest:
    """One tool invocation requested by the model."""

    tool_use_id: str
    tool_name: str
    input: Mapping[str, Any]
    index: int = 0
    turn_id: str = ""

    @classmethod
    def create(cls, tool_name: str, tool_input: Mapping[str, Any], index: int = 0, turn_id: str = "") -> "ToolCallRequest":
        return cls(
            tool_use_id=f"toolu_{uuid.uuid4().hex[:16]}",
            tool_name=tool_name,
            input=dict(tool_input),
            index=index,
            turn_id=turn_id,
        )


@dataclass(frozen=True)
class ExecutionContext:
    """State of one conversational turn.

    Attributes:
        cwd: Working directory for tools and sandboxed commands.
        permission_context: Rules, extra directories and mode.
        sandbox: Sandbox settings chosen by the session.
        shell: Shell tool settings.
        session: Session scratch locations.
        abort: Turn-level cancellation token.
        home_dir: Home directory used to expand ``~``.
        sandbox_wrapper: Resolved isolation binary, ``None`` when unavailable.
        read_file_timestamps: File path to modification time at last read.
        allowed_tools: Narrowed tool set, ``None`` means every registered tool.
        messages: Conversation messages injected by tools.
        rule_store: Where approved rules with a persistent destination go.
        turn_id: Identifier of the parent turn.
    """

    cwd: Path
    permission_context: PermissionContext = field(default_factory=PermissionContext)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    shell: ShellConfig = field(default_factory=ShellConfig)
    session: SessionPaths = field(default_factory=SessionPaths.create)
    abort: CancellationToken = field(default_factory=CancellationToken)
    home_dir: Path = field(default_factory=Path.home)
    sandbox_wrapper: Optional[str] = None
    read_file_timestamps: Mapping[str, float] = field(default_factory=dict)
    allowed_tools: Optional[frozenset[str]] = None
    messages: tuple[Mapping[str, Any], ...] = ()
    rule_store: Optional[RuleStore] = None
    turn_id: str = ""

    @property
    def mode(self) -> PermissionMode:
        return self.permission_context.mode

    @property
    def shell_path(self) -> str:
        return self.shell.shell_path

    def with_permission_context(self, permission_context: PermissionContext) -> "ExecutionContext":
        return replace(self, permission_context=permission_context)

    def with_mode(self, mode: PermissionMode) -> "ExecutionContext":
        return replace(self, permission_context=replace(self.permission_context, mode=mode))

    def apply_permission_updates(self, updates: Iterable[PermissionUpdate]) -> "ExecutionContext":
        return replace(self, permission_context=self.permission_context.apply_all(updates))

    def with_read_timestamp(self, path: str, timestamp: float) -> "ExecutionContext":
        return replace(self, read_file_timestamps={**self.read_file_timestamps, path: timestamp})

    def with_messages(self, *messages: Mapping[str, Any]) -> "ExecutionContext":
        return replace(self, messages=self.messages + tuple(messages))

    def with_allowed_tools(self, names: Optional[Iterable[str]]) -> "ExecutionContext":
        return replace(self, allowed_tools=None if names is None else frozenset(names))

    def tool_allowed(self, name: str) -> bool:
        return self.allowed_tools is None or name in self.allowed_tools


ContextModifier = Callable[[ExecutionContext], ExecutionContext]


def build_execution_context(
    config: ToolrunConfig,
    *,
    cwd: Optional[Path] = None,
    mode: Optional[PermissionMode] = None,
    rule_store: Optional[RuleStore] = None,
    session: Optional[SessionPaths] = None,
    abort: Optional[CancellationToken] = None,
    sandbox_wrapper: Optional[str] = None,
    resolve_wrapper: bool = True,
) -> ExecutionContext:
    """Assemble a turn context from configuration and rule files.

    Sandbox availability is decided here: when isolation is enabled but no
    wrapper is found, the context carries ``sandbox_wrapper=None`` and the
    engine falls back to asking for every write.
    """
    cwd = (cwd or config.working_directory).resolve()
    rule_store = rule_store or RuleStore(cwd)
    stored = rule_store.load()
    permissions = config.permissions

    def merged(configured: list[str], persisted: list[str]) -> tuple[str, ...]:
        return tuple(dict.fromkeys([*configured, *persisted]))

    permission_context = PermissionContext(
        mode=mode or permissions.mode,
        allow_rules=merged(permissions.allow, stored.allow),
        deny_rules=merged(permissions.deny, stored.deny),
        ask_rules=merged(permissions.ask, stored.ask),
        additional_directories=tuple(permissions.additional_directories),
    )

    if sandbox_wrapper is None and resolve_wrapper and config.sandbox.enabled:
        sandbox_wrapper = resolve_wrapper_path(config.sandbox.wrapper)
        if sandbox_wrapper is None:
            logger.warning("Sandbox wrapper unavailable; writes will require approval")

    return ExecutionContext(
        cwd=cwd,
        permission_context=permission_context,
        sandbox=config.sandbox,
        shell=config.shell,
        session=session or SessionPaths.create(),
        abort=abort or CancellationToken(),
        sandbox_wrapper=sandbox_wrapper,
        rule_store=rule_store,
        turn_id=uuid.uuid4().hex[:12],
    )
