from dataclasses import replace
from pathlib import Path

import pytest

from toolrun.config.models import SandboxConfig
from toolrun.errors import SandboxConstructionError
from toolrun.sandbox.builder import (
    SANDBOX_UNAVAILABLE_MESSAGE,
    build_sandbox_command,
    is_sandbox_init_failure,
)
from toolrun.sandbox.policy import (
    DEFAULT_DENY_READ,
    DEFAULT_DENY_WITHIN_ALLOW,
    ReadConfig,
    SandboxPolicy,
    WriteConfig,
    build_sandbox_policy,
)

CWD = Path("/work/project")
HOME = Path("/work/home")
TMP = Path("/work/session/tmp")

EXISTING = {
    "/work/project",
    "/work/project/.git/hooks",
    "/work/home/.ssh",
    "/work/home/.netrc",
    "/work/session/tmp",
}
DIRECTORIES = {"/work/project", "/work/project/.git/hooks", "/work/home/.ssh", "/work/session/tmp"}


@pytest.fixture
def policy():
    return SandboxPolicy(
        read_config=ReadConfig(deny_only=("~/.ssh", "~/.netrc", "**/*.secret")),
        write_config=WriteConfig(
            allow_only=(str(CWD), "/work/missing"),
            deny_within_allow=(".git/hooks", "toolrun.toml"),
        ),
        needs_network_restriction=True,
        enabled=True,
        wrapper_path="/usr/bin/bwrap",
    )


def build(policy, command="ls -la"):
    return build_sandbox_command(
        command,
        policy,
        CWD,
        "/bin/bash",
        TMP,
        HOME,
        path_exists=lambda p: p in EXISTING,
        is_dir=lambda p: p in DIRECTORIES,
    )


def test_full_argv(policy):
    assert build(policy) == [
        "/usr/bin/bwrap", "--die-with-parent", "--new-session",
        "--unshare-pid", "--unshare-uts", "--unshare-ipc", "--unshare-cgroup", "--unshare-net",
        "--ro-bind", "/", "/",
        "--bind", "/work/project", "/work/project",
        "--bind", "/work/session/tmp", "/work/session/tmp",
        "--ro-bind", "/work/project/.git/hooks", "/work/project/.git/hooks",
        "--tmpfs", "/work/home/.ssh",
        "--ro-bind", "/dev/null", "/work/home/.netrc",
        "--dev", "/dev",
        "--setenv", "SANDBOX_RUNTIME", "1", "--setenv", "TMPDIR", "/work/session/tmp",
        "--proc", "/proc",
        "--chdir", "/work/project", "--", "/bin/bash", "-c", "ls -la",
    ]


def test_weaker_nested_sandbox(policy):
    argv = build(replace(policy, enable_weaker_nested_sandbox=True, needs_network_restriction=False))

    assert argv[:5] == ["/usr/bin/bwrap", "--die-with-parent", "--new-session", "--unshare-uts", "--unshare-ipc"]
    assert "--unshare-pid" not in argv
    assert "--unshare-cgroup" not in argv
    assert "--unshare-net" not in argv
    assert "--dev-bind" in argv
    assert "--proc" not in argv
    assert argv[argv.index("/proc") - 1] == "--bind"


def test_temp_dir_inside_writable_root_is_not_bound_twice(policy):
    argv = build_sandbox_command(
        "true",
        replace(policy, write_config=WriteConfig(allow_only=(str(CWD),))),
        CWD,
        "/bin/sh",
        CWD / ".tmp",
        HOME,
        path_exists=lambda p: True,
        is_dir=lambda p: True,
    )

    assert argv.count("--bind") == 1
    assert argv[argv.index("TMPDIR") + 1] == "/work/project/.tmp"


def test_missing_protected_path_freezes_its_parent(policy):
    existing = {"/work/project", "/work/project/.toolrun", "/work/session/tmp"}
    protected = WriteConfig(
        allow_only=(str(CWD),),
        deny_within_allow=(".toolrun/rules", ".toolrun/config.toml", "toolrun.toml"),
    )

    argv = build_sandbox_command(
        "true",
        replace(policy, read_config=None, write_config=protected),
        CWD,
        "/bin/sh",
        TMP,
        HOME,
        path_exists=lambda p: p in existing,
        is_dir=lambda p: p in existing,
    )

    frozen = [argv[i + 1] for i, arg in enumerate(argv) if arg == "--ro-bind" and argv[i + 1] != "/"]
    assert frozen == ["/work/project/.toolrun"]
    assert "/work/project/toolrun.toml" not in argv


def test_missing_protected_path_directly_under_root_is_skipped(policy):
    argv = build(replace(policy, write_config=WriteConfig(allow_only=(str(CWD),), deny_within_allow=(".toolrun/rules",))))

    assert argv.count("--ro-bind") == 2
    assert "/work/project/.toolrun" not in argv


def test_unrestricted_writes_bind_root_read_write(policy):
    argv = build(replace(policy, write_config=None))

    assert argv[argv.index("/") - 1] == "--bind"
    assert "--ro-bind" in argv


def test_missing_wrapper_raises(policy):
    with pytest.raises(SandboxConstructionError, match=SANDBOX_UNAVAILABLE_MESSAGE):
        build(replace(policy, wrapper_path=None))


def test_writable_and_protected_conflict(policy):
    conflicting = replace(
        policy,
        write_config=WriteConfig(allow_only=(str(CWD),), deny_within_allow=(str(CWD),)),
    )

    with pytest.raises(SandboxConstructionError, match="both a writable root and a protected path"):
        build(conflicting)


def test_writable_and_hidden_conflict(policy):
    conflicting = replace(policy, read_config=ReadConfig(deny_only=(str(CWD),)))

    with pytest.raises(SandboxConstructionError):
        build(conflicting)


def test_command_is_passed_verbatim(policy):
    command = "echo 'a b' && cat <<EOF\nx\nEOF"

    assert build(policy, command)[-3:] == ["/bin/bash", "-c", command]


@pytest.mark.parametrize(
    "stderr, expected",
    [
        ("bwrap: Creating new namespace failed: Operation not permitted", True),
        ("setting up uid map: namespace creation failed", True),
        ("ls: cannot access 'x': No such file or directory", False),
        ("", False),
    ],
)
def test_is_sandbox_init_failure(stderr, expected):
    assert is_sandbox_init_failure(stderr) is expected


def test_policy_from_context(make_context, workspace):
    project, _ = workspace
    ctx = make_context(directories=("/data/shared",))

    policy = build_sandbox_policy(ctx)

    assert policy.enabled
    assert policy.wrapper_path == "/usr/bin/bwrap"
    assert policy.needs_network_restriction
    assert policy.write_config.allow_only[:3] == (str(project), str(ctx.session.temp_dir), "/data/shared")
    assert policy.write_config.deny_within_allow[: len(DEFAULT_DENY_WITHIN_ALLOW)] == DEFAULT_DENY_WITHIN_ALLOW
    assert policy.read_config.deny_only[: len(DEFAULT_DENY_READ)] == DEFAULT_DENY_READ


def test_deny_rules_become_policy_entries(make_context):
    ctx = make_context(deny=("read_file(secrets/**)", "write_file(dist)", "shell_command(rm:*)"))

    policy = build_sandbox_policy(ctx)

    assert "secrets/**" in policy.read_config.deny_only
    assert "dist" in policy.write_config.deny_within_allow
    assert "rm:*" not in policy.read_config.deny_only


def test_policy_disabled_by_input_flag(make_context):
    ctx = make_context(sandbox=SandboxConfig(require=True))

    policy = build_sandbox_policy(ctx, {"command": "ls", "dangerously_disable_sandbox": True})

    assert not policy.enabled
    assert not policy.require


def test_policy_disabled_without_wrapper(make_context):
    assert not build_sandbox_policy(make_context(wrapper=None)).enabled
    assert not build_sandbox_policy(make_context(sandbox=SandboxConfig(enabled=False))).enabled


def test_network_and_nesting_settings(make_context):
    ctx = make_context(sandbox=SandboxConfig(allow_network=True, weaker_nested=True))

    policy = build_sandbox_policy(ctx)

    assert not policy.needs_network_restriction
    assert policy.enable_weaker_nested_sandbox
