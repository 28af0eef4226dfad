"""Exit plan mode tool: presents a plan and, once approved, leaves plan mode."""

from __future__ import annotations

from typing import Any, AsyncIterator

from pydantic import BaseModel, Field

from toolrun.config.models import PermissionMode
from toolrun.core.context import ExecutionContext
from toolrun.tools.base import Tool, ToolEvent, ToolOutput, ToolUseContext, ValidationResult


class ExitPlanModeInput(BaseModel):
    plan: str = Field(description="The plan to present for approval")


class ExitPlanModeTool(Tool):
    name = "exit_plan_mode"
    description = "Present the plan for approval and leave plan mode"
    input_model = ExitPlanModeInput
    aliases = ("ExitPlanMode",)

    def validate_input(self, params: ExitPlanModeInput, context: ExecutionContext) -> ValidationResult:
        if context.mode != PermissionMode.PLAN:
            return ValidationResult.fail("Not in plan mode", error_code=2)
        if not params.plan.strip():
            return ValidationResult.fail("Plan must not be empty", error_code=3)
        return ValidationResult.success()

    def is_read_only(self, params: Any) -> bool:
        return True

    def is_concurrency_safe(self, params: Any) -> bool:
        return False

    def requires_user_interaction(self, params: Any) -> bool:
        return True

    async def execute(self, params: ExitPlanModeInput, context: ToolUseContext) -> AsyncIterator[ToolEvent]:
        data = {"plan": params.plan}
        yield ToolOutput(
            data=data,
            result_for_assistant=self.render_result(data),
            context_modifier=lambda ctx: ctx.with_mode(PermissionMode.DEFAULT),
        )

    def render_result(self, data: dict) -> str:
        return f"User approved the plan. Plan mode is off; you can start implementing.\n\n{data['plan']}"
