"""Grep files tool: ripgrep when installed, a Python scan otherwise."""

from __future__ import annotations

import asyncio
import fnmatch
import re
import shutil
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from pydantic import BaseModel, Field

from toolrun.core.context import ExecutionContext
from toolrun.errors import ExecutionFailure
from toolrun.exec.runner import ExecOptions, execute_command
from toolrun.permissions.validator import AccessMode, PathAccess, resolve_path
from toolrun.tools.base import Tool, ToolEvent, ToolOutput, ToolUseContext, ValidationResult

TIMEOUT_SECONDS = 30.0


class GrepInput(BaseModel):
    pattern: str = Field(description="Regular expression to search for")
    path: Optional[str] = Field(default=None, description="File or directory to search")
    include: Optional[str] = Field(default=None, description="Glob filter for file names, e.g. *.py")
    limit: int = Field(default=100, ge=1, le=2000, description="Maximum number of matching lines")


def _scan(root: Path, regex: re.Pattern[str], include: Optional[str], limit: int) -> list[str]:
    matches: list[str] = []

    def search_file(file_path: Path) -> None:
        if include and not fnmatch.fnmatch(file_path.name, include):
            return
        try:
            lines = file_path.read_text(encoding="utf-8", errors="ignore").splitlines()
        except OSError:
            return
        for number, line in enumerate(lines, start=1):
            if len(matches) >= limit:
                return
            if regex.search(line):
                matches.append(f"{file_path}:{number}:{line}")

    def search_dir(directory: Path) -> None:
        try:
            children = sorted(directory.iterdir())
        except PermissionError:
            return
        for child in children:
            if len(matches) >= limit:
                return
            if child.is_file():
                search_file(child)
            elif child.is_dir() and not child.is_symlink() and not child.name.startswith("."):
                search_dir(child)

    if root.is_file():
        search_file(root)
    else:
        search_dir(root)
    return matches


class GrepFilesTool(Tool):
    """Finds lines matching a regular expression."""

    name = "grep_files"
    description = "Finds files whose contents match the pattern."
    input_model = GrepInput
    aliases = ("Grep",)

    def validate_input(self, params: GrepInput, context: ExecutionContext) -> ValidationResult:
        try:
            re.compile(params.pattern)
        except re.error as e:
            return ValidationResult.fail(f"Invalid regex pattern: {e}", error_code=2)
        root = resolve_path(params.path or ".", context.cwd, context.home_dir)
        if not root.exists():
            return ValidationResult.fail(f"Path not found: {params.path}", error_code=3)
        return ValidationResult.success()

    def is_read_only(self, params: Any) -> bool:
        return True

    def permission_paths(self, params: GrepInput, context: ExecutionContext) -> list[PathAccess]:
        return [PathAccess(params.path or ".", AccessMode.READ, self.name)]

    async def execute(self, params: GrepInput, context: ToolUseContext) -> AsyncIterator[ToolEvent]:
        execution = context.execution
        root = resolve_path(params.path or ".", execution.cwd, execution.home_dir)

        matches = await self._ripgrep(params, root, context)
        if matches is None:
            regex = re.compile(params.pattern)
            matches = await asyncio.to_thread(_scan, root, regex, params.include, params.limit)

        data = {"pattern": params.pattern, "matches": matches[: params.limit], "limit": params.limit}
        yield ToolOutput(data=data, result_for_assistant=self.render_result(data))

    @staticmethod
    async def _ripgrep(params: GrepInput, root: Path, context: ToolUseContext) -> Optional[list[str]]:
        """Search with rg; ``None`` means rg is not installed."""
        rg = shutil.which("rg")
        if rg is None:
            return None
        argv = [rg, "-n", "--color=never", "--max-count", str(params.limit)]
        if params.include:
            argv.extend(["--glob", params.include])
        argv.extend(["-e", params.pattern, str(root)])
        output = await execute_command(
            argv, ExecOptions(cwd=context.execution.cwd, timeout=TIMEOUT_SECONDS), context.abort
        )
        if output.timed_out:
            raise ExecutionFailure(f"Search timed out after {TIMEOUT_SECONDS:g}s")
        if output.exit_code == 1:
            return []
        if output.exit_code != 0:
            raise ExecutionFailure(f"Search error: {output.stderr.strip()}")
        return [line for line in output.stdout.splitlines() if line]

    def render_result(self, data: dict) -> str:
        matches = data["matches"]
        if not matches:
            return "No matches found."
        text = "\n".join(matches)
        if len(matches) >= data["limit"]:
            text += f"\n\n[... reached limit of {data['limit']} matches ...]"
        return text
