"""Pydantic models for toolrun configuration."""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class PermissionMode(str, Enum):
    """How the permission engine resolves calls that are not auto-approved."""

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    PLAN = "plan"
    BYPASS = "bypassPermissions"
    DONT_ASK = "dontAsk"
    DELEGATE = "delegate"


class OutputMode(str, Enum):
    """Output mode for the CLI."""

    HUMAN = "human"
    JSON = "json"


class PermissionsConfig(BaseModel):
    """Rules and mode for the permission engine."""

    mode: PermissionMode = Field(default=PermissionMode.DEFAULT, description="Permission mode")
    allow: list[str] = Field(default=[], description="Rules that auto-approve calls")
    deny: list[str] = Field(default=[], description="Rules that always refuse calls")
    ask: list[str] = Field(default=[], description="Rules that always prompt")
    additional_directories: list[str] = Field(
        default=[], description="Extra directories writable besides the working directory"
    )

    @field_validator("allow", "deny", "ask")
    @classmethod
    def strip_rules(cls, v: list[str]) -> list[str]:
        """Drop blank rule strings."""
        return [rule.strip() for rule in v if rule and rule.strip()]


class SandboxConfig(BaseModel):
    """Configuration for command isolation."""

    enabled: bool = Field(default=True, description="Run shell commands inside bubblewrap")
    require: bool = Field(default=False, description="Refuse to run when bubblewrap is unavailable")
    allow_network: bool = Field(default=False, description="Keep network access inside the sandbox")
    wrapper: str = Field(default="", description="Path or name of the bwrap binary")
    weaker_nested: bool = Field(
        default=False, description="Skip pid/cgroup namespaces (for nested containers)"
    )
    deny_read: list[str] = Field(default=[], description="Paths hidden from sandboxed commands")
    deny_write: list[str] = Field(default=[], description="Read-only carve-outs in writable roots")
    writable_roots: list[str] = Field(default=[], description="Additional writable directories")


class ShellConfig(BaseModel):
    """Configuration for the shell tool."""

    shell: str = Field(default="", description="Shell binary (defaults to $SHELL or /bin/bash)")
    timeout: float = Field(default=120.0, description="Default command timeout in seconds")
    max_timeout: float = Field(default=600.0, description="Upper bound for per-call timeouts")
    allowed_executables: list[str] = Field(
        default=[], description="Executables added to the default allow-list"
    )

    @property
    def shell_path(self) -> str:
        return self.shell or os.environ.get("SHELL") or "/bin/bash"


class SchedulerConfig(BaseModel):
    """Configuration for the tool-use scheduler."""

    max_concurrency: int = Field(default=0, description="Parallel call limit (0 = unbounded)")
    channel_size: int = Field(default=64, description="Buffered chunks per batch")

    @field_validator("max_concurrency", "channel_size")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v


class OutputConfig(BaseModel):
    """Configuration for output formatting."""

    mode: OutputMode = Field(default=OutputMode.HUMAN, description="Output mode")
    log_level: str = Field(default="WARNING", description="Logging level")
    log_file: Optional[str] = Field(default=None, description="Optional log file")


class PathsConfig(BaseModel):
    """Configuration for file paths."""

    cwd: str = Field(default="", description="Working directory")

    @field_validator("cwd", mode="before")
    @classmethod
    def resolve_cwd(cls, v: str) -> str:
        """Resolve empty cwd to current directory."""
        if not v:
            return os.getcwd()
        return str(Path(v).expanduser().resolve())


class ToolrunConfig(BaseModel):
    """Main configuration for toolrun."""

    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    shell: ShellConfig = Field(default_factory=ShellConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)

    @property
    def working_directory(self) -> Path:
        """Get the working directory as a Path object."""
        return Path(self.paths.cwd or os.getcwd())
