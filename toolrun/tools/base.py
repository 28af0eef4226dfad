"""Base tool contract: validation, permission capabilities, streamed execution."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, ClassVar, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from toolrun.errors import ValidationError
from toolrun.permissions.validator import PathAccess

if TYPE_CHECKING:
    from toolrun.core.context import (
        CancellationToken,
        ContextModifier,
        ExecutionContext,
        ToolCallRequest,
    )
    from toolrun.sandbox.policy import SandboxPolicy


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of ``Tool.validate_input``."""

    ok: bool
    message: str = ""
    error_code: int = 0

    @classmethod
    def success(cls) -> "ValidationResult":
        return cls(ok=True)

    @classmethod
    def fail(cls, message: str, error_code: int = 1) -> "ValidationResult":
        return cls(ok=False, message=message, error_code=error_code)


@dataclass(frozen=True)
class ToolProgress:
    """An intermediate update streamed while a tool runs."""

    content: str
    data: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class ToolOutput:
    """The final result of a tool call.

    Attributes:
        data: Structured result, rendered by ``Tool.render_result``.
        result_for_assistant: Text handed back to the model.
        context_modifier: Applied to the turn context when the result is delivered.
        is_error: The tool ran but reports a failure (non-zero exit and similar).
    """

    data: Any
    result_for_assistant: str
    context_modifier: Optional["ContextModifier"] = None
    is_error: bool = False


ToolEvent = Union[ToolProgress, ToolOutput]


@dataclass
class ToolUseContext:
    """What a running call sees: its snapshot, its token, its sandbox policy."""

    execution: "ExecutionContext"
    tool_use_id: str
    abort: "CancellationToken"
    sandbox_policy: Optional["SandboxPolicy"] = None
    request: Optional["ToolCallRequest"] = None
    extras: dict[str, Any] = field(default_factory=dict)


class Tool(ABC):
    """Base class for all tools.

    Subclasses declare ``name``, ``description`` and a pydantic
    ``input_model``, and implement ``execute`` as an async generator that
    yields any number of ``ToolProgress`` items followed by exactly one
    ``ToolOutput``. Capability predicates are pure functions of the input.
    """

    name: ClassVar[str]
    description: ClassVar[str]
    input_model: ClassVar[type[BaseModel]]
    aliases: ClassVar[tuple[str, ...]] = ()

    def parse_input(self, raw: Any) -> BaseModel:
        """Validate raw model arguments against ``input_model``.

        Raises:
            ValidationError: If the arguments do not match the schema.
        """
        try:
            return self.input_model.model_validate(raw)
        except PydanticValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in e.errors()
            )
            raise ValidationError(f"Invalid input for {self.name}: {problems}") from e

    def validate_input(self, params: Any, context: "ExecutionContext") -> ValidationResult:
        return ValidationResult.success()

    def is_read_only(self, params: Any) -> bool:
        return False

    def is_concurrency_safe(self, params: Any) -> bool:
        return self.is_read_only(params)

    def needs_permissions(self, params: Any) -> bool:
        return True

    def requires_user_interaction(self, params: Any) -> bool:
        return False

    def permission_paths(self, params: Any, context: "ExecutionContext") -> list[PathAccess]:
        """Paths the call touches, checked against the sandbox policy."""
        return []

    def shell_command(self, params: Any) -> Optional[str]:
        """Shell text for command tools; ``None`` for everything else."""
        return None

    @abstractmethod
    def execute(self, params: Any, context: ToolUseContext) -> AsyncIterator[ToolEvent]:
        """Run the tool.

        Args:
            params: Parsed ``input_model`` instance.
            context: Snapshot, cancellation token and sandbox policy of this call.

        Yields:
            ``ToolProgress`` updates, then one ``ToolOutput``.
        """

    def render_result(self, data: Any) -> str:
        return data if isinstance(data, str) else repr(data)

    @classmethod
    def get_spec(cls) -> dict[str, Any]:
        """Get the tool specification for the LLM."""
        return {
            "name": cls.name,
            "description": cls.description,
            "parameters": cls.input_model.model_json_schema(),
        }
