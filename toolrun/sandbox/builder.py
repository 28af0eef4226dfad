"""Translate a sandbox policy into a bubblewrap (``bwrap``) argv."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Optional

from toolrun.errors import SandboxConstructionError
from toolrun.permissions.validator import expand_home, has_glob
from toolrun.sandbox.policy import SandboxPolicy

logger = logging.getLogger(__name__)

SANDBOX_UNAVAILABLE_MESSAGE = "System sandbox is required but unavailable"
SANDBOX_FALLBACK_NOTICE = "[sandbox] unavailable, ran without isolation."
SANDBOX_INIT_FAILURE_NOTICE = "[sandbox] failed to start, ran without isolation."


def normalize_sandbox_path(path: str, cwd: Path, home_dir: Optional[Path] = None) -> str:
    """Absolute, symlink-resolved form of a policy path.

    Globs keep their pattern part; only the literal prefix is resolved.
    """
    expanded = expand_home(path, home_dir)
    if not expanded.is_absolute():
        expanded = cwd / expanded
    text = str(expanded)
    if not has_glob(text):
        return os.path.realpath(text)
    parts = text.split("/")
    for idx, part in enumerate(parts):
        if has_glob(part):
            prefix = "/".join(parts[:idx]) or "/"
            rest = "/".join(parts[idx:])
            return f"{os.path.realpath(prefix).rstrip('/')}/{rest}"
    return text


def _within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip("/") + "/")


def _closest_existing_parent(path: str, path_exists: Callable[[str], bool]) -> str:
    parent = os.path.dirname(path)
    while parent != "/" and not path_exists(parent):
        parent = os.path.dirname(parent)
    return parent


def build_sandbox_command(
    command: str,
    policy: SandboxPolicy,
    cwd: Path,
    shell_path: str,
    tmp_dir: Path,
    home_dir: Optional[Path] = None,
    *,
    path_exists: Callable[[str], bool] = os.path.exists,
    is_dir: Callable[[str], bool] = os.path.isdir,
) -> list[str]:
    """Build the argv that runs ``command`` inside bubblewrap.

    Args:
        command: Shell text to run with ``shell_path -c``.
        policy: Filesystem and network policy for this call.
        cwd: Working directory inside the sandbox.
        shell_path: Shell binary used to interpret ``command``.
        tmp_dir: Session temporary directory, writable and exported as TMPDIR.
        home_dir: Home directory used to expand ``~`` entries.
        path_exists: Filesystem probe; missing writable roots and hidden paths are
            skipped, missing protected paths freeze their closest existing parent.
        is_dir: Filesystem probe choosing ``--tmpfs`` over a ``/dev/null`` bind.

    Returns:
        The full argv, wrapper binary first.

    Raises:
        SandboxConstructionError: If no wrapper is available or the policy
            both allows and protects the same path.
    """
    if not policy.wrapper_path:
        raise SandboxConstructionError(SANDBOX_UNAVAILABLE_MESSAGE)

    weaker = policy.enable_weaker_nested_sandbox
    argv = [policy.wrapper_path, "--die-with-parent", "--new-session"]
    if not weaker:
        argv.append("--unshare-pid")
    argv.extend(["--unshare-uts", "--unshare-ipc"])
    if not weaker:
        argv.append("--unshare-cgroup")
    if policy.needs_network_restriction:
        argv.append("--unshare-net")

    tmp = str(tmp_dir)
    write_config = policy.write_config
    writable_roots: list[str] = []
    if write_config is None:
        argv.extend(["--bind", "/", "/"])
    else:
        argv.extend(["--ro-bind", "/", "/"])
        for entry in write_config.allow_only:
            if has_glob(entry):
                logger.debug("Skipping glob write root %s", entry)
                continue
            root = normalize_sandbox_path(entry, cwd, home_dir)
            if root.startswith("/dev/") or not path_exists(root) or root in writable_roots:
                continue
            writable_roots.append(root)
            argv.extend(["--bind", root, root])
        if path_exists(tmp) and not any(_within(tmp, r) for r in writable_roots):
            argv.extend(["--bind", tmp, tmp])
        frozen: list[str] = []
        for entry in write_config.deny_within_allow:
            if has_glob(entry):
                continue
            protected = normalize_sandbox_path(entry, cwd, home_dir)
            if protected in writable_roots:
                raise SandboxConstructionError(
                    f"{protected} is both a writable root and a protected path"
                )
            if not any(_within(protected, r) for r in writable_roots):
                continue
            if not path_exists(protected):
                # Freeze the closest existing parent so the path cannot be created.
                # A parent that holds a writable root or TMPDIR is left alone, so a
                # missing entry directly under a root (toolrun.toml) stays creatable.
                parent = _closest_existing_parent(protected, path_exists)
                if any(_within(r, parent) for r in writable_roots) or _within(tmp, parent):
                    logger.debug("Cannot protect missing %s without freezing %s", protected, parent)
                    continue
                protected = parent
            if protected in frozen:
                continue
            frozen.append(protected)
            argv.extend(["--ro-bind", protected, protected])

    if policy.read_config is not None:
        for entry in policy.read_config.deny_only:
            if has_glob(entry):
                continue
            hidden = normalize_sandbox_path(entry, cwd, home_dir)
            if hidden in writable_roots:
                raise SandboxConstructionError(f"{hidden} is both writable and unreadable")
            if not path_exists(hidden):
                continue
            if is_dir(hidden):
                argv.extend(["--tmpfs", hidden])
            else:
                argv.extend(["--ro-bind", "/dev/null", hidden])

    if weaker:
        argv.extend(["--dev-bind", "/dev", "/dev"])
    else:
        argv.extend(["--dev", "/dev"])
    argv.extend(["--setenv", "SANDBOX_RUNTIME", "1", "--setenv", "TMPDIR", tmp])
    if weaker:
        argv.extend(["--bind", "/proc", "/proc"])
    else:
        argv.extend(["--proc", "/proc"])
    argv.extend(["--chdir", str(cwd), "--", shell_path, "-c", command])
    return argv


def is_sandbox_init_failure(stderr: str) -> bool:
    """Heuristic: did the wrapper itself fail before running the command?"""
    lowered = stderr.lower()
    if "bwrap:" in lowered or "bubblewrap" in lowered:
        return True
    return "namespace" in lowered and "failed" in lowered
