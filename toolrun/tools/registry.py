"""Registry of available tools, keyed by name and alias."""

from __future__ import annotations

from typing import Iterable, Iterator, Optional

from toolrun.tools.base import Tool
from toolrun.tools.grep_files import GrepFilesTool
from toolrun.tools.list_dir import ListDirTool
from toolrun.tools.plan_mode import ExitPlanModeTool
from toolrun.tools.read_file import ReadFileTool
from toolrun.tools.shell import ShellCommandTool
from toolrun.tools.skill import SkillTool
from toolrun.tools.write_file import WriteFileTool


class ToolRegistry:
    """Holds tool instances and resolves names (including aliases) to them."""

    def __init__(self, tools: Optional[Iterable[Tool]] = None):
        self._tools: dict[str, Tool] = {}
        self._aliases: dict[str, str] = {}
        for tool in tools or ():
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Raises:
            ValueError: If the name or one of its aliases is already taken.
        """
        names = (tool.name, *tool.aliases)
        for name in names:
            if name in self._tools or name in self._aliases:
                raise ValueError(f"Tool name already registered: {name}")
        self._tools[tool.name] = tool
        for alias in tool.aliases:
            self._aliases[alias] = tool.name

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(self._aliases.get(name, name))

    def canonical_name(self, name: str) -> str:
        return self._aliases.get(name, name)

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def get_tools_for_llm(self, allowed: Optional[Iterable[str]] = None) -> list[dict]:
        """Tool specifications for the model, optionally narrowed to ``allowed``."""
        allowed_set = None if allowed is None else {self.canonical_name(n) for n in allowed}
        return [
            tool.get_spec() for tool in self._tools.values() if allowed_set is None or tool.name in allowed_set
        ]


def default_registry() -> ToolRegistry:
    return ToolRegistry(
        [
            ShellCommandTool(),
            ReadFileTool(),
            WriteFileTool(),
            ListDirTool(),
            GrepFilesTool(),
            ExitPlanModeTool(),
            SkillTool(),
        ]
    )
