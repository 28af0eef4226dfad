"""Skill tool: loads ``SKILL.md`` instructions into the conversation.

Skills live in ``.toolrun/skills/<name>/SKILL.md`` (project) or
``~/.toolrun/skills/<name>/SKILL.md`` (user). An optional front matter
block may restrict the tools available while the skill is active::

    ---
    description: Release checklist
    allowed-tools: Bash(git:*), Read
    ---
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from pydantic import BaseModel, Field

from toolrun.core.context import ExecutionContext
from toolrun.errors import ExecutionFailure
from toolrun.permissions.rules import parse_rule
from toolrun.permissions.validator import AccessMode, PathAccess
from toolrun.tools.base import Tool, ToolEvent, ToolOutput, ToolUseContext, ValidationResult

SKILL_DIR = Path(".toolrun") / "skills"
SKILL_FILE = "SKILL.md"
_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class SkillInput(BaseModel):
    skill: str = Field(description="Name of the skill to load")
    args: Optional[str] = Field(default=None, description="Optional arguments for the skill")


def parse_front_matter(text: str) -> tuple[dict[str, Any], str]:
    """Split ``---`` front matter (flat ``key: value`` and ``- item`` lists) from the body."""
    lines = text.splitlines()
    if not lines or lines[0].strip() != "---":
        return {}, text
    meta: dict[str, Any] = {}
    key: Optional[str] = None
    for index, line in enumerate(lines[1:], start=1):
        stripped = line.strip()
        if stripped == "---":
            return meta, "\n".join(lines[index + 1:]).lstrip("\n")
        if stripped.startswith("- ") and key is not None:
            current = meta.get(key)
            items = current if isinstance(current, list) else []
            items.append(stripped[2:].strip())
            meta[key] = items
            continue
        if ":" in stripped:
            key, value = (part.strip() for part in stripped.split(":", 1))
            meta[key] = value.strip("'\"")
    return {}, text


def _split_tools(value: Any) -> list[str]:
    if isinstance(value, list):
        raw = value
    elif isinstance(value, str):
        raw = re.split(r",(?![^()]*\))", value)
    else:
        return []
    names: list[str] = []
    for item in raw:
        rule = parse_rule(item.strip()) if item.strip() else None
        if rule is not None and rule.tool_name not in names:
            names.append(rule.tool_name)
    return names


class SkillTool(Tool):
    """Loads a skill's instructions and applies its tool restrictions."""

    name = "use_skill"
    description = "Load a skill's instructions into the conversation"
    input_model = SkillInput
    aliases = ("Skill",)

    def find_skill(self, name: str, context: ExecutionContext) -> Optional[Path]:
        for base in (context.cwd / SKILL_DIR, context.home_dir / SKILL_DIR):
            candidate = base / name / SKILL_FILE
            if candidate.is_file():
                return candidate
        return None

    def validate_input(self, params: SkillInput, context: ExecutionContext) -> ValidationResult:
        if not _NAME_RE.match(params.skill):
            return ValidationResult.fail(f"Invalid skill name: {params.skill}", error_code=2)
        if self.find_skill(params.skill, context) is None:
            return ValidationResult.fail(f"Unknown skill: {params.skill}", error_code=3)
        return ValidationResult.success()

    def is_read_only(self, params: Any) -> bool:
        return True

    def is_concurrency_safe(self, params: Any) -> bool:
        # Narrowing allowed_tools must be ordered against later calls.
        return False

    def permission_paths(self, params: SkillInput, context: ExecutionContext) -> list[PathAccess]:
        path = self.find_skill(params.skill, context)
        return [PathAccess(str(path), AccessMode.READ, self.name)] if path else []

    async def execute(self, params: SkillInput, context: ToolUseContext) -> AsyncIterator[ToolEvent]:
        path = self.find_skill(params.skill, context.execution)
        if path is None:
            raise ExecutionFailure(f"Unknown skill: {params.skill}")
        meta, body = parse_front_matter(path.read_text(encoding="utf-8"))
        allowed = _split_tools(meta.get("allowed-tools"))
        content = body.strip()
        if params.args:
            content = f"{content}\n\nARGUMENTS: {params.args}"
        message = {"role": "user", "content": f'<skill name="{params.skill}">\n{content}\n</skill>'}

        def modifier(ctx: ExecutionContext) -> ExecutionContext:
            ctx = ctx.with_messages(message)
            if allowed:
                ctx = ctx.with_allowed_tools([*allowed, self.name])
            return ctx

        data = {"skill": params.skill, "path": str(path), "allowed_tools": allowed}
        yield ToolOutput(data=data, result_for_assistant=self.render_result(data), context_modifier=modifier)

    def render_result(self, data: dict) -> str:
        text = f"Loaded skill {data['skill']}"
        if data["allowed_tools"]:
            text += f" (tools limited to: {', '.join(data['allowed_tools'])})"
        return text
