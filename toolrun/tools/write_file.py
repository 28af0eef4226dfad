"""Write file tool with stale-write detection."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import AsyncIterator

from pydantic import BaseModel, Field

from toolrun.core.context import ExecutionContext
from toolrun.errors import ExecutionFailure
from toolrun.permissions.validator import AccessMode, PathAccess, resolve_path
from toolrun.tools.base import Tool, ToolEvent, ToolOutput, ToolUseContext, ValidationResult

NOT_READ_MESSAGE = "File has not been read yet. Read it first before writing to it."
STALE_MESSAGE = "File has been modified since it was read. Read it again before writing to it."


class WriteFileInput(BaseModel):
    file_path: str = Field(description="Path to the file to write")
    content: str = Field(description="Content to write to the file")


def _write_text(path: Path, content: str) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path.stat().st_size


class WriteFileTool(Tool):
    """Creates or overwrites a file.

    Existing files must have been read in this session and must not have
    changed on disk since that read.
    """

    name = "write_file"
    description = "Write content to a file, creating parent directories if needed"
    input_model = WriteFileInput
    aliases = ("Write", "Edit")

    def validate_input(self, params: WriteFileInput, context: ExecutionContext) -> ValidationResult:
        path = resolve_path(params.file_path, context.cwd, context.home_dir)
        if not path.exists():
            return ValidationResult.success()
        if path.is_dir():
            return ValidationResult.fail(f"Is a directory: {params.file_path}", error_code=4)
        read_at = context.read_file_timestamps.get(str(path))
        if read_at is None:
            return ValidationResult.fail(NOT_READ_MESSAGE, error_code=2)
        if path.stat().st_mtime > read_at:
            return ValidationResult.fail(STALE_MESSAGE, error_code=3)
        return ValidationResult.success()

    def permission_paths(self, params: WriteFileInput, context: ExecutionContext) -> list[PathAccess]:
        path = resolve_path(params.file_path, context.cwd, context.home_dir)
        mode = AccessMode.WRITE if path.exists() else AccessMode.CREATE
        return [PathAccess(params.file_path, mode, self.name)]

    async def execute(self, params: WriteFileInput, context: ToolUseContext) -> AsyncIterator[ToolEvent]:
        execution = context.execution
        path = resolve_path(params.file_path, execution.cwd, execution.home_dir)
        created = not path.exists()
        try:
            size = await asyncio.to_thread(_write_text, path, params.content)
            mtime = path.stat().st_mtime
        except PermissionError as e:
            raise ExecutionFailure(f"Permission denied: {params.file_path}") from e
        except OSError as e:
            raise ExecutionFailure(f"Error writing file: {e}") from e

        key = str(path)
        data = {"path": key, "size": size, "created": created}
        yield ToolOutput(
            data=data,
            result_for_assistant=self.render_result(data),
            context_modifier=lambda ctx: ctx.with_read_timestamp(key, mtime),
        )

    def render_result(self, data: dict) -> str:
        verb = "Created" if data["created"] else "Updated"
        return f"{verb} {data['path']} ({data['size']} bytes)"
