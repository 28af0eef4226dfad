"""List directory tool."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, AsyncIterator

from pydantic import BaseModel, Field

from toolrun.core.context import ExecutionContext
from toolrun.errors import ExecutionFailure
from toolrun.permissions.validator import AccessMode, PathAccess, resolve_path
from toolrun.tools.base import Tool, ToolEvent, ToolOutput, ToolUseContext, ValidationResult


class ListDirInput(BaseModel):
    path: str = Field(default=".", description="Directory to list")
    depth: int = Field(default=1, ge=1, le=5, description="How many levels to descend")
    include_hidden: bool = Field(default=False, description="Include dotfiles")
    limit: int = Field(default=200, ge=1, le=2000, description="Maximum number of entries")


def _walk(root: Path, depth: int, include_hidden: bool, limit: int) -> tuple[list[dict[str, Any]], bool]:
    entries: list[dict[str, Any]] = []

    def visit(directory: Path, level: int) -> bool:
        children = sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
        for child in children:
            if not include_hidden and child.name.startswith("."):
                continue
            if len(entries) >= limit:
                return False
            is_dir = child.is_dir() and not child.is_symlink()
            entries.append(
                {
                    "name": str(child.relative_to(root)),
                    "type": "dir" if is_dir else "file",
                    "depth": level,
                }
            )
            if is_dir and level < depth:
                try:
                    if not visit(child, level + 1):
                        return False
                except PermissionError:
                    continue
        return True

    complete = visit(root, 1)
    return entries, not complete


class ListDirTool(Tool):
    """Lists a directory, optionally a few levels deep."""

    name = "list_dir"
    description = "List the contents of a directory"
    input_model = ListDirInput
    aliases = ("LS",)

    def validate_input(self, params: ListDirInput, context: ExecutionContext) -> ValidationResult:
        path = resolve_path(params.path, context.cwd, context.home_dir)
        if not path.exists():
            return ValidationResult.fail(f"Directory not found: {params.path}", error_code=2)
        if not path.is_dir():
            return ValidationResult.fail(f"Not a directory: {params.path}", error_code=3)
        return ValidationResult.success()

    def is_read_only(self, params: Any) -> bool:
        return True

    def permission_paths(self, params: ListDirInput, context: ExecutionContext) -> list[PathAccess]:
        return [PathAccess(params.path, AccessMode.READ, self.name)]

    async def execute(self, params: ListDirInput, context: ToolUseContext) -> AsyncIterator[ToolEvent]:
        execution = context.execution
        root = resolve_path(params.path, execution.cwd, execution.home_dir)
        try:
            entries, truncated = await asyncio.to_thread(
                _walk, root, params.depth, params.include_hidden, params.limit
            )
        except OSError as e:
            raise ExecutionFailure(f"Cannot list {params.path}: {e}") from e

        data = {"path": str(root), "entries": entries, "truncated": truncated}
        yield ToolOutput(data=data, result_for_assistant=self.render_result(data))

    def render_result(self, data: dict) -> str:
        if not data["entries"]:
            return f"Directory '{data['path']}' is empty."
        lines = [
            "  " * (entry["depth"] - 1) + entry["name"].rsplit("/", 1)[-1] + ("/" if entry["type"] == "dir" else "")
            for entry in data["entries"]
        ]
        if data["truncated"]:
            lines.append(f"[... listing truncated at {len(data['entries'])} entries ...]")
        return "\n".join(lines)
