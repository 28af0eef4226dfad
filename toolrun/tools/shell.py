"""Shell command tool: sandboxed, streamed, cancellable."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional, Union

from pydantic import BaseModel, Field

from toolrun.core.context import ExecutionContext
from toolrun.errors import Cancelled, CommandParseError, ExecutionFailure, SandboxConstructionError
from toolrun.exec.runner import ExecOptions, ExecOutput, OutputChunk, execute_command_streaming
from toolrun.sandbox.builder import (
    SANDBOX_FALLBACK_NOTICE,
    SANDBOX_INIT_FAILURE_NOTICE,
    SANDBOX_UNAVAILABLE_MESSAGE,
    build_sandbox_command,
    is_sandbox_init_failure,
)
from toolrun.sandbox.policy import SandboxPolicy, build_sandbox_policy
from toolrun.shell.classifier import is_read_only_command
from toolrun.shell.parser import group_pipelines, split_command
from toolrun.tools.base import Tool, ToolEvent, ToolOutput, ToolProgress, ToolUseContext, ValidationResult

logger = logging.getLogger(__name__)


class ShellInput(BaseModel):
    command: str = Field(description="The shell command to run")
    timeout: Optional[float] = Field(default=None, gt=0, description="Timeout in seconds")
    description: Optional[str] = Field(default=None, description="What the command does, in a few words")
    dangerously_disable_sandbox: bool = Field(
        default=False, description="Run without isolation (always requires approval)"
    )


class ShellCommandTool(Tool):
    """Runs a shell command, isolated with bubblewrap when available."""

    name = "shell_command"
    description = "Runs a shell command and returns its output."
    input_model = ShellInput
    aliases = ("Bash", "Shell")

    def validate_input(self, params: ShellInput, context: ExecutionContext) -> ValidationResult:
        if not params.command.strip():
            return ValidationResult.fail("Command must not be empty", error_code=2)
        if params.timeout is not None and params.timeout > context.shell.max_timeout:
            return ValidationResult.fail(
                f"Timeout {params.timeout:g}s exceeds the maximum of {context.shell.max_timeout:g}s",
                error_code=3,
            )
        return ValidationResult.success()

    def is_read_only(self, params: ShellInput) -> bool:
        try:
            units = [u for u in group_pipelines(split_command(params.command)) if not u.is_empty]
        except CommandParseError:
            return False
        return bool(units) and all(is_read_only_command(u) for u in units)

    def shell_command(self, params: ShellInput) -> Optional[str]:
        return params.command

    async def execute(self, params: ShellInput, context: ToolUseContext) -> AsyncIterator[ToolEvent]:
        execution = context.execution
        policy = context.sandbox_policy or build_sandbox_policy(execution, params.model_dump())
        timeout = min(params.timeout or execution.shell.timeout, execution.shell.max_timeout)
        options = ExecOptions(cwd=execution.cwd, timeout=timeout)

        notice: Optional[str] = None
        sandboxed = False
        if policy.enabled:
            argv = self._sandbox_argv(params.command, policy, execution)
            sandboxed = True
        elif policy.require:
            raise SandboxConstructionError(SANDBOX_UNAVAILABLE_MESSAGE)
        else:
            argv = [execution.shell_path, "-c", params.command]
            if execution.sandbox.enabled and not params.dangerously_disable_sandbox:
                notice = SANDBOX_FALLBACK_NOTICE

        output: Optional[ExecOutput] = None
        async for item in self._stream(argv, options, context):
            if isinstance(item, ExecOutput):
                output = item
            else:
                yield item
        if output is None:
            raise ExecutionFailure("Command ended without a result")

        # A run stopped by interrupt or timeout is never repeated outside the sandbox.
        if (
            sandboxed
            and output.exit_code != 0
            and not output.interrupted
            and not output.timed_out
            and is_sandbox_init_failure(output.stderr)
        ):
            if policy.require:
                raise SandboxConstructionError(f"Sandbox failed to start: {output.stderr.strip()}")
            logger.warning("Sandbox failed to start, rerunning without isolation: %s", output.stderr.strip())
            notice = SANDBOX_INIT_FAILURE_NOTICE
            sandboxed = False
            async for item in self._stream([execution.shell_path, "-c", params.command], options, context):
                if isinstance(item, ExecOutput):
                    output = item
                else:
                    yield item

        if output.interrupted:
            raise Cancelled("Command interrupted")

        data = {
            "command": params.command,
            "stdout": output.stdout,
            "stderr": output.stderr,
            "exit_code": output.exit_code,
            "timed_out": output.timed_out,
            "duration": round(output.duration, 3),
            "sandboxed": sandboxed,
            "notice": notice,
        }
        yield ToolOutput(
            data=data,
            result_for_assistant=self.render_result(data),
            is_error=output.exit_code != 0,
        )

    @staticmethod
    def _sandbox_argv(command: str, policy: SandboxPolicy, execution: ExecutionContext) -> list[str]:
        tmp_dir = execution.session.ensure()
        return build_sandbox_command(
            command,
            policy,
            execution.cwd,
            execution.shell_path,
            tmp_dir,
            execution.home_dir,
        )

    @staticmethod
    async def _stream(
        argv: list[str], options: ExecOptions, context: ToolUseContext
    ) -> AsyncIterator[Union[ToolProgress, ExecOutput]]:
        """Run ``argv``, yielding each output line as progress and the ExecOutput last."""
        lines: asyncio.Queue[Optional[OutputChunk]] = asyncio.Queue()

        async def run() -> ExecOutput:
            try:
                return await execute_command_streaming(argv, options, lines.put_nowait, context.abort)
            finally:
                lines.put_nowait(None)

        task = asyncio.ensure_future(run())
        try:
            while True:
                chunk = await lines.get()
                if chunk is None:
                    break
                yield ToolProgress(chunk.data.rstrip("\n"), {"stream": chunk.stream.value})
            yield await task
        finally:
            if not task.done():
                task.cancel()

    def render_result(self, data: dict) -> str:
        parts = []
        if data.get("stdout"):
            parts.append(data["stdout"].rstrip())
        if data.get("stderr"):
            stderr = data["stderr"].rstrip()
            parts.append(f"stderr:\n{stderr}" if parts else stderr)
        output = "\n".join(parts).strip()
        if data.get("timed_out"):
            output = f"{output}\n\nCommand timed out".strip()
        elif data.get("exit_code", 0) != 0:
            output = f"{output}\n\nExit code: {data['exit_code']}".strip()
        if not output:
            output = "(no output)"
        if data.get("notice"):
            output = f"{output}\n{data['notice']}"
        return output
