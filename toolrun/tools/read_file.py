"""Read file tool."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from pydantic import BaseModel, Field

from toolrun.core.context import ExecutionContext
from toolrun.errors import ExecutionFailure
from toolrun.permissions.validator import AccessMode, PathAccess, resolve_path
from toolrun.tools.base import Tool, ToolEvent, ToolOutput, ToolUseContext, ValidationResult


class ReadFileInput(BaseModel):
    file_path: str = Field(description="Path to the file to read")
    offset: int = Field(default=0, ge=0, description="Line offset to start from (0-based)")
    limit: Optional[int] = Field(default=None, ge=1, description="Maximum number of lines to read")


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return path.read_bytes().decode("latin-1")


class ReadFileTool(Tool):
    """Reads a file with line numbers and records when it was read."""

    name = "read_file"
    description = "Read the contents of a file with line numbers"
    input_model = ReadFileInput
    aliases = ("Read",)

    def validate_input(self, params: ReadFileInput, context: ExecutionContext) -> ValidationResult:
        path = resolve_path(params.file_path, context.cwd, context.home_dir)
        if not path.exists():
            return ValidationResult.fail(f"File not found: {params.file_path}", error_code=2)
        if not path.is_file():
            return ValidationResult.fail(f"Not a file: {params.file_path}", error_code=3)
        return ValidationResult.success()

    def is_read_only(self, params: Any) -> bool:
        return True

    def permission_paths(self, params: ReadFileInput, context: ExecutionContext) -> list[PathAccess]:
        return [PathAccess(params.file_path, AccessMode.READ, self.name)]

    async def execute(self, params: ReadFileInput, context: ToolUseContext) -> AsyncIterator[ToolEvent]:
        execution = context.execution
        path = resolve_path(params.file_path, execution.cwd, execution.home_dir)
        try:
            content = await asyncio.to_thread(_read_text, path)
            mtime = path.stat().st_mtime
        except OSError as e:
            raise ExecutionFailure(f"Error reading file: {e}") from e

        lines = content.splitlines()
        total = len(lines)
        if total and params.offset >= total:
            raise ExecutionFailure(f"Offset {params.offset} exceeds total lines {total}")

        end = total if params.limit is None else min(params.offset + params.limit, total)
        selected = lines[params.offset:end]
        data = {
            "path": str(path),
            "content": "\n".join(f"L{i}: {line}" for i, line in enumerate(selected, start=params.offset + 1)),
            "total_lines": total,
            "shown_lines": len(selected),
            "offset": params.offset,
            "truncated": end < total,
        }
        key = str(path)
        yield ToolOutput(
            data=data,
            result_for_assistant=self.render_result(data),
            context_modifier=lambda ctx: ctx.with_read_timestamp(key, mtime),
        )

    def render_result(self, data: dict) -> str:
        if not data["total_lines"]:
            return "(empty file)"
        text = data["content"]
        if data["truncated"]:
            text += f"\n\n[showing {data['shown_lines']} of {data['total_lines']} lines]"
        return text
