import asyncio
import os
import sys
from dataclasses import replace

import pytest

from toolrun.config.models import PermissionMode, SandboxConfig, ShellConfig
from toolrun.core.context import ToolCallRequest
from toolrun.core.queue import ChunkKind, run_tool_batch
from toolrun.errors import ErrorKind
from toolrun.exec.runner import ExecOutput
from toolrun.permissions.bridge import StaticPermissionBridge
from toolrun.permissions.engine import PermissionEngine
from toolrun.sandbox.builder import SANDBOX_INIT_FAILURE_NOTICE
from toolrun.tools.read_file import ReadFileTool
from toolrun.tools.registry import ToolRegistry, default_registry
from toolrun.tools.skill import parse_front_matter
from toolrun.tools.write_file import NOT_READ_MESSAGE, STALE_MESSAGE


def run(ctx, *calls, bridge=None):
    """Run ``(tool, input)`` pairs as one batch; returns terminal chunks and the new context."""
    requests = [ToolCallRequest.create(name, tool_input, index=i) for i, (name, tool_input) in enumerate(calls)]
    chunks, updated = asyncio.run(run_tool_batch(requests, default_registry(), PermissionEngine(bridge), ctx))
    return [c for c in chunks if c.is_terminal], chunks, updated


def run_one(ctx, name, bridge=None, **tool_input):
    done, chunks, updated = run(ctx, (name, tool_input), bridge=bridge)
    return done[0], chunks, updated


# =============================================================================
# read_file / write_file
# =============================================================================


@pytest.fixture
def notes(workspace):
    project, _ = workspace
    path = project / "notes.txt"
    path.write_text("one\ntwo\nthree\n")
    return path


def test_read_file_window_and_timestamp(make_context, notes):
    result, _, ctx = run_one(make_context(), "read_file", file_path="notes.txt", offset=1, limit=1)

    assert result.kind == ChunkKind.RESULT
    assert result.content == "L2: two\n\n[showing 1 of 3 lines]"
    assert ctx.read_file_timestamps[str(notes)] == notes.stat().st_mtime


def test_read_file_whole_and_empty(make_context, notes, workspace):
    project, _ = workspace
    (project / "empty.txt").write_text("")

    done, _, _ = run(make_context(), ("Read", {"file_path": "notes.txt"}), ("read_file", {"file_path": "empty.txt"}))

    assert done[0].content == "L1: one\nL2: two\nL3: three"
    assert done[1].content == "(empty file)"


def test_read_file_validation(make_context, workspace):
    project, _ = workspace
    (project / "dir").mkdir()

    missing, _, _ = run_one(make_context(), "read_file", file_path="nope.txt")
    directory, _, _ = run_one(make_context(), "read_file", file_path="dir")

    assert (missing.error_kind, missing.error_code) == (ErrorKind.VALIDATION, 2)
    assert missing.content == "File not found: nope.txt"
    assert (directory.error_kind, directory.error_code) == (ErrorKind.VALIDATION, 3)


def test_read_file_offset_past_end(make_context, notes):
    result, _, _ = run_one(make_context(), "read_file", file_path="notes.txt", offset=10)

    assert result.error_kind == ErrorKind.EXECUTION
    assert result.content == "Offset 10 exceeds total lines 3"


def test_read_file_schema_error(make_context):
    result, _, _ = run_one(make_context(), "read_file", file_path="notes.txt", offset=-1)

    assert result.error_kind == ErrorKind.VALIDATION
    assert result.content.startswith("Invalid input for read_file: offset")


def test_write_new_file(make_context, workspace):
    project, _ = workspace
    ctx = make_context(mode=PermissionMode.ACCEPT_EDITS)

    result, _, updated = run_one(ctx, "write_file", file_path="pkg/mod.py", content="x = 1")

    target = project / "pkg" / "mod.py"
    assert result.content == f"Created {target} (5 bytes)"
    assert target.read_text() == "x = 1"
    assert str(target) in updated.read_file_timestamps


def test_write_requires_prior_read(make_context, notes):
    ctx = make_context(mode=PermissionMode.ACCEPT_EDITS)

    result, _, _ = run_one(ctx, "write_file", file_path="notes.txt", content="new")

    assert (result.error_kind, result.error_code) == (ErrorKind.VALIDATION, 2)
    assert result.content == NOT_READ_MESSAGE
    assert notes.read_text() == "one\ntwo\nthree\n"


def test_read_then_write_across_batches(make_context, notes):
    _, _, ctx = run_one(make_context(mode=PermissionMode.ACCEPT_EDITS), "read_file", file_path="notes.txt")

    result, _, _ = run_one(ctx, "write_file", file_path="notes.txt", content="rewritten")

    assert result.content.startswith("Updated ")
    assert notes.read_text() == "rewritten"


def test_read_and_write_in_one_batch_validates_against_batch_start(make_context, notes):
    done, _, _ = run(
        make_context(mode=PermissionMode.ACCEPT_EDITS),
        ("read_file", {"file_path": "notes.txt"}),
        ("write_file", {"file_path": "notes.txt", "content": "too early"}),
    )

    assert done[0].kind == ChunkKind.RESULT
    assert done[1].error_code == 2


def test_stale_write_is_rejected(make_context, notes):
    _, _, ctx = run_one(make_context(mode=PermissionMode.ACCEPT_EDITS), "read_file", file_path="notes.txt")
    later = notes.stat().st_mtime + 10
    os.utime(notes, (later, later))

    result, _, _ = run_one(ctx, "write_file", file_path="notes.txt", content="stale")

    assert (result.error_kind, result.error_code) == (ErrorKind.VALIDATION, 3)
    assert result.content == STALE_MESSAGE


def test_write_to_directory(make_context, workspace):
    project, _ = workspace
    (project / "adir").mkdir()

    result, _, _ = run_one(make_context(mode=PermissionMode.ACCEPT_EDITS), "write_file", file_path="adir", content="")

    assert result.error_code == 4


def test_write_needs_approval_by_default(make_context, workspace):
    project, _ = workspace
    bridge = StaticPermissionBridge(default=True)

    denied, _, _ = run_one(make_context(), "write_file", file_path="a.txt", content="a")
    approved, _, _ = run_one(make_context(), "write_file", bridge=bridge, file_path="b.txt", content="b")

    assert denied.error_kind == ErrorKind.PERMISSION_DENIED
    assert not (project / "a.txt").exists()
    assert approved.kind == ChunkKind.RESULT
    assert bridge.requests[0].tool_name == "write_file"


# =============================================================================
# list_dir / grep_files
# =============================================================================


@pytest.fixture
def tree(workspace):
    project, _ = workspace
    (project / "src" / "b").mkdir(parents=True)
    (project / "src" / "a.py").write_text("def main():\n    pass\n")
    (project / "README.md").write_text("nothing to see\n")
    (project / ".hidden").write_text("secret\n")
    return project


def test_list_dir(make_context, tree):
    result, _, _ = run_one(make_context(), "list_dir", depth=2)

    assert result.content == "src/\n  b/\n  a.py\nREADME.md"


def test_list_dir_hidden_and_empty(make_context, tree):
    hidden, _, _ = run_one(make_context(), "LS", include_hidden=True)
    empty, _, _ = run_one(make_context(), "list_dir", path="src/b")

    assert ".hidden" in hidden.content.splitlines()
    assert empty.content == f"Directory '{tree / 'src' / 'b'}' is empty."


def test_list_dir_validation(make_context, tree):
    missing, _, _ = run_one(make_context(), "list_dir", path="nope")
    not_dir, _, _ = run_one(make_context(), "list_dir", path="README.md")

    assert missing.error_code == 2
    assert not_dir.error_code == 3


def test_grep_files(make_context, tree):
    found, _, _ = run_one(make_context(), "grep_files", pattern=r"def \w+\(")
    nothing, _, _ = run_one(make_context(), "grep_files", pattern="zzz_absent")
    filtered, _, _ = run_one(make_context(), "grep_files", pattern="n", include="*.md")

    assert "a.py:1:def main():" in found.content
    assert nothing.content == "No matches found."
    assert "README.md:1:nothing to see" in filtered.content
    assert "a.py" not in filtered.content


def test_grep_files_validation(make_context, tree):
    bad_regex, _, _ = run_one(make_context(), "grep_files", pattern="(")
    missing, _, _ = run_one(make_context(), "grep_files", pattern="x", path="nope")

    assert bad_regex.error_code == 2
    assert bad_regex.content.startswith("Invalid regex pattern")
    assert missing.error_code == 3


# =============================================================================
# use_skill / exit_plan_mode
# =============================================================================


SKILL = """---
description: Release checklist
allowed-tools: Bash(git:*), Read
---
Run the release checklist.
"""


@pytest.fixture
def skill(workspace):
    project, _ = workspace
    path = project / ".toolrun" / "skills" / "release" / "SKILL.md"
    path.parent.mkdir(parents=True)
    path.write_text(SKILL)
    return path


def test_parse_front_matter():
    meta, body = parse_front_matter(SKILL)

    assert meta == {"description": "Release checklist", "allowed-tools": "Bash(git:*), Read"}
    assert body == "Run the release checklist."
    assert parse_front_matter("no front matter") == ({}, "no front matter")


def test_skill_injects_instructions_and_narrows_tools(make_context, skill):
    result, _, ctx = run_one(make_context(), "use_skill", skill="release", args="v1.2")

    assert result.content == "Loaded skill release (tools limited to: shell_command, read_file)"
    assert "Run the release checklist." in ctx.messages[-1]["content"]
    assert "ARGUMENTS: v1.2" in ctx.messages[-1]["content"]
    assert ctx.allowed_tools == frozenset({"shell_command", "read_file", "use_skill"})

    blocked, _, _ = run_one(ctx, "write_file", file_path="x.txt", content="")
    assert blocked.error_kind == ErrorKind.PERMISSION_DENIED


def test_skill_validation(make_context, skill):
    unknown, _, _ = run_one(make_context(), "use_skill", skill="deploy")
    invalid, _, _ = run_one(make_context(), "use_skill", skill="../etc")

    assert unknown.error_code == 3
    assert invalid.error_code == 2


def test_exit_plan_mode_after_approval(make_context):
    bridge = StaticPermissionBridge(default=True)

    result, _, ctx = run_one(make_context(mode=PermissionMode.PLAN), "exit_plan_mode", bridge=bridge, plan="1. Fix it")

    assert result.kind == ChunkKind.RESULT
    assert result.content.endswith("1. Fix it")
    assert ctx.mode == PermissionMode.DEFAULT


def test_exit_plan_mode_validation_and_rejection(make_context):
    outside, _, _ = run_one(make_context(), "exit_plan_mode", plan="x")
    rejected, _, ctx = run_one(make_context(mode=PermissionMode.PLAN), "exit_plan_mode", plan="x")

    assert outside.error_code == 2
    assert rejected.error_kind == ErrorKind.PERMISSION_DENIED
    assert ctx.mode == PermissionMode.PLAN


# =============================================================================
# shell_command
# =============================================================================


posix_only = pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")


@pytest.fixture
def shell_context(make_context):
    """Unsandboxed contexts running commands with /bin/sh."""

    def factory(**kwargs):
        kwargs.setdefault("sandbox", SandboxConfig(enabled=False))
        return replace(make_context(**kwargs), shell=ShellConfig(shell="/bin/sh"))

    return factory


@posix_only
def test_shell_streams_output(shell_context):
    result, chunks, _ = run_one(shell_context(), "shell_command", command="echo hello")

    progress = [c for c in chunks if c.kind == ChunkKind.PROGRESS]
    assert [(c.content, c.data) for c in progress] == [("hello", {"stream": "stdout"})]
    assert result.content == "hello"
    assert result.data["exit_code"] == 0
    assert not result.data["sandboxed"]
    assert not result.is_error


@posix_only
def test_shell_stderr_and_exit_code(shell_context):
    stderr, _, _ = run_one(shell_context(), "Bash", command="echo oops >&2")
    failing, _, _ = run_one(shell_context(), "shell_command", command="false")

    assert stderr.content == "oops"
    assert failing.kind == ChunkKind.RESULT
    assert failing.is_error
    assert failing.content == "Exit code: 1"


@posix_only
def test_unsandboxed_write_needs_approval(shell_context, workspace):
    project, _ = workspace

    denied, _, _ = run_one(shell_context(), "shell_command", command="touch made.txt")
    assert denied.error_kind == ErrorKind.PERMISSION_DENIED
    assert "no approver" in denied.content
    assert not (project / "made.txt").exists()

    allowed, _, _ = run_one(shell_context(mode=PermissionMode.ACCEPT_EDITS), "shell_command", command="touch made.txt")
    assert allowed.kind == ChunkKind.RESULT
    assert (project / "made.txt").exists()


@posix_only
def test_required_sandbox_without_wrapper(shell_context):
    ctx = shell_context(wrapper=None, sandbox=SandboxConfig(require=True))

    result, _, _ = run_one(ctx, "shell_command", command="echo hi")

    assert result.error_kind == ErrorKind.SANDBOX
    assert "unavailable" in result.content


@posix_only
def test_shell_timeout(shell_context):
    ctx = shell_context(mode=PermissionMode.BYPASS)

    result, _, _ = run_one(ctx, "shell_command", command="sleep 5", timeout=0.3)

    assert result.is_error
    assert result.data["timed_out"]
    assert result.content == "Command timed out"


BWRAP_FAILURE = "bwrap: setting up uid map: Permission denied\n"


@pytest.fixture
def scripted_runs(monkeypatch):
    """Replace the process runner with canned outputs; returns the argv of every run."""
    calls = []
    outputs = []

    async def execute(argv, options=None, callback=None, token=None):
        calls.append(argv)
        return outputs.pop(0)

    monkeypatch.setattr("toolrun.tools.shell.execute_command_streaming", execute)
    return calls, outputs


@pytest.fixture
def sandboxed_context(make_context):
    return replace(make_context(mode=PermissionMode.BYPASS), shell=ShellConfig(shell="/bin/sh"))


def test_sandbox_start_failure_reruns_without_isolation(sandboxed_context, scripted_runs):
    calls, outputs = scripted_runs
    outputs.extend([ExecOutput("", BWRAP_FAILURE, 1, 0.1), ExecOutput("hi\n", "", 0, 0.1)])

    result, _, _ = run_one(sandboxed_context, "shell_command", command="echo hi")

    assert calls[0][0] == "/usr/bin/bwrap"
    assert calls[1] == ["/bin/sh", "-c", "echo hi"]
    assert not result.data["sandboxed"]
    assert result.content == f"hi\n{SANDBOX_INIT_FAILURE_NOTICE}"


def test_interrupted_sandbox_run_is_not_retried(sandboxed_context, scripted_runs):
    calls, outputs = scripted_runs
    outputs.append(ExecOutput("", BWRAP_FAILURE, -1, 0.1, interrupted=True))

    result, _, _ = run_one(sandboxed_context, "shell_command", command="echo hi")

    assert len(calls) == 1
    assert result.kind == ChunkKind.CANCELLED


def test_timed_out_sandbox_run_is_not_retried(sandboxed_context, scripted_runs):
    calls, outputs = scripted_runs
    outputs.append(ExecOutput("", BWRAP_FAILURE, -1, 0.1, timed_out=True))

    result, _, _ = run_one(sandboxed_context, "shell_command", command="echo hi")

    assert len(calls) == 1
    assert result.data["sandboxed"]
    assert result.data["timed_out"]


def test_shell_input_validation(shell_context):
    empty, _, _ = run_one(shell_context(), "shell_command", command="  ")
    too_long, _, _ = run_one(shell_context(), "shell_command", command="ls", timeout=10_000)

    assert empty.error_code == 2
    assert too_long.error_code == 3


# =============================================================================
# Registry
# =============================================================================


def test_registry_resolves_aliases():
    registry = default_registry()

    assert registry.get("Bash").name == "shell_command"
    assert registry.canonical_name("Edit") == "write_file"
    assert "Read" in registry
    assert len(registry) == 7
    assert [spec["name"] for spec in registry.get_tools_for_llm(["Read", "LS"])] == ["read_file", "list_dir"]


def test_registry_rejects_duplicates():
    with pytest.raises(ValueError, match="already registered"):
        ToolRegistry([ReadFileTool(), ReadFileTool()])
