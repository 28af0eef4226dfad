import asyncio
from typing import Optional

import pytest
from pydantic import BaseModel

from toolrun.config.models import PermissionMode, SandboxConfig
from toolrun.config.rules import RuleStore
from toolrun.core.context import ExecutionContext
from toolrun.errors import Cancelled
from toolrun.permissions.types import PermissionContext
from toolrun.session import SessionPaths
from toolrun.tools.base import Tool, ToolOutput, ToolProgress, ValidationResult


class FakeInput(BaseModel):
    text: str = ""
    delay: float = 0.0
    progress: list[str] = []
    fail: Optional[str] = None
    block: bool = False
    modify: bool = False
    narrow: Optional[list[str]] = None
    bad_modifier: bool = False


class FakeTool(Tool):
    """Scriptable tool: sleeps, streams, fails or blocks as its input says.

    Every start/end is appended to ``log`` as ``(event, text, messages_seen)``.
    """

    description = "Test double"
    input_model = FakeInput

    def __init__(self, name: str, *, safe: bool, log: list):
        self.name = name
        self.safe = safe
        self.log = log

    def validate_input(self, params: FakeInput, context) -> ValidationResult:
        if params.text == "invalid":
            return ValidationResult.fail("text must not be 'invalid'", error_code=7)
        return ValidationResult.success()

    def is_read_only(self, params) -> bool:
        return self.safe

    async def execute(self, params: FakeInput, context):
        self.log.append(("start", params.text, len(context.execution.messages)))
        for item in params.progress:
            yield ToolProgress(item)
        if params.block:
            await context.abort.wait()
            raise Cancelled("interrupted")
        if params.delay:
            try:
                await asyncio.wait_for(context.abort.wait(), params.delay)
            except asyncio.TimeoutError:
                pass
            else:
                raise Cancelled("interrupted")
        if params.fail:
            raise RuntimeError(params.fail)
        self.log.append(("end", params.text, len(context.execution.messages)))

        modifier = None
        if params.bad_modifier:
            def modifier(ctx):
                raise ValueError("broken modifier")
        elif params.modify or params.narrow is not None:
            def modifier(ctx):
                if params.modify:
                    ctx = ctx.with_messages({"role": "user", "content": params.text})
                if params.narrow is not None:
                    ctx = ctx.with_allowed_tools(params.narrow)
                return ctx
        yield ToolOutput(data={"text": params.text}, result_for_assistant=params.text, context_modifier=modifier)


@pytest.fixture
def workspace(tmp_path):
    project = tmp_path / "project"
    home = tmp_path / "home"
    project.mkdir()
    home.mkdir()
    return project.resolve(), home.resolve()


@pytest.fixture
def make_context(workspace, tmp_path):
    """Build an ExecutionContext rooted in a temporary project."""
    project, home = workspace

    def factory(
        *,
        mode: PermissionMode = PermissionMode.DEFAULT,
        allow: tuple = (),
        deny: tuple = (),
        ask: tuple = (),
        directories: tuple = (),
        sandbox: Optional[SandboxConfig] = None,
        wrapper: Optional[str] = "/usr/bin/bwrap",
    ) -> ExecutionContext:
        return ExecutionContext(
            cwd=project,
            permission_context=PermissionContext(
                mode=mode,
                allow_rules=tuple(allow),
                deny_rules=tuple(deny),
                ask_rules=tuple(ask),
                additional_directories=tuple(directories),
            ),
            sandbox=sandbox or SandboxConfig(),
            session=SessionPaths.create(base=tmp_path / "sessions"),
            home_dir=home,
            sandbox_wrapper=wrapper,
            rule_store=RuleStore(project, user_rules=home / ".toolrun" / "rules" / "default.rules"),
            turn_id="turn-test",
        )

    return factory


@pytest.fixture
def tool_log():
    return []


@pytest.fixture
def fake_tools(tool_log):
    """A concurrency-safe reader and two sequential writers sharing one log."""
    return (
        FakeTool("fake_read", safe=True, log=tool_log),
        FakeTool("fake_write", safe=False, log=tool_log),
        FakeTool("fake_other", safe=False, log=tool_log),
    )

