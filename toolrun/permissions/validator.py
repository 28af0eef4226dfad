"""Path access checks against a sandbox policy's read/write configuration."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from toolrun.sandbox.policy import SandboxPolicy

GLOB_CHARS = "*?["


class AccessMode(str, Enum):
    READ = "read"
    WRITE = "write"
    CREATE = "create"

    @property
    def is_write(self) -> bool:
        return self is not AccessMode.READ


class ViolationKind(str, Enum):
    READ_DENIED = "read_denied"
    WRITE_DENIED = "write_denied"
    OUTSIDE_ALLOWED = "outside_allowed"


@dataclass(frozen=True)
class PathAccess:
    """A path a tool call is about to touch."""

    path: str
    mode: AccessMode
    source: str = ""


@dataclass(frozen=True)
class PathValidation:
    ok: bool
    blocked_path: Optional[str] = None
    reason: Optional[str] = None
    matched: Optional[str] = None
    violation: Optional[ViolationKind] = None

    @classmethod
    def allowed(cls) -> "PathValidation":
        return cls(ok=True)

    @classmethod
    def blocked(
        cls, path: str, reason: str, violation: ViolationKind, matched: Optional[str] = None
    ) -> "PathValidation":
        return cls(ok=False, blocked_path=path, reason=reason, matched=matched, violation=violation)


def has_glob(path: str) -> bool:
    return any(ch in path for ch in GLOB_CHARS)


def expand_home(path: str, home_dir: Optional[Path] = None) -> Path:
    if home_dir is not None and (path == "~" or path.startswith("~/")):
        return home_dir / path[2:] if len(path) > 1 else home_dir
    return Path(path).expanduser()


def resolve_path(path: str, cwd: Path, home_dir: Optional[Path] = None) -> Path:
    """Absolute, symlink-resolved form of ``path`` relative to ``cwd``."""
    p = expand_home(path, home_dir)
    if not p.is_absolute():
        p = cwd / p
    return p.resolve()


def _split_glob(pattern: str) -> tuple[str, str]:
    """Split ``/a/b/*.py`` into the literal directory prefix and the glob rest."""
    parts = pattern.split("/")
    for idx, part in enumerate(parts):
        if has_glob(part):
            return "/".join(parts[:idx]) or "/", "/".join(parts[idx:])
    return pattern, ""


@lru_cache(maxsize=512)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a path glob into a regex.

    ``*`` and ``?`` never cross a ``/``; ``**`` spans any number of segments.
    Anything below a matched path also matches.
    """
    out: list[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        ch = pattern[i]
        if ch == "*":
            if pattern.startswith("**", i):
                i += 2
                if i < n and pattern[i] == "/":
                    i += 1
                    out.append("(?:.*/)?")
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        elif ch == "[":
            close = pattern.find("]", i + 1)
            if close == -1:
                out.append(re.escape(ch))
            else:
                body = pattern[i + 1 : close]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append("[" + body.replace("\\", "\\\\") + "]")
                i = close + 1
                continue
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out) + r"(?:/.*)?\Z")


def normalize_entry(entry: str, cwd: Path, home_dir: Optional[Path] = None) -> str:
    """Absolute form of a policy entry; the literal prefix of globs is resolved."""
    prefix, rest = _split_glob(entry)
    base = resolve_path(prefix, cwd, home_dir)
    if not rest:
        return str(base)
    return f"{str(base).rstrip('/')}/{rest}"


def is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def path_matches(path: Path, entry: str, cwd: Path, home_dir: Optional[Path] = None) -> bool:
    """True when ``path`` equals or lies inside ``entry`` (segment-aware)."""
    normalized = normalize_entry(entry, cwd, home_dir)
    if has_glob(normalized):
        return glob_to_regex(normalized).match(str(path)) is not None
    return is_within(path, Path(normalized))


def first_match(
    path: Path, entries: Iterable[str], cwd: Path, home_dir: Optional[Path] = None
) -> Optional[str]:
    for entry in entries:
        if path_matches(path, entry, cwd, home_dir):
            return entry
    return None


def _validate_one(
    raw: str,
    policy: "SandboxPolicy",
    mode: AccessMode,
    cwd: Path,
    home_dir: Optional[Path],
) -> PathValidation:
    resolved = resolve_path(raw, cwd, home_dir)
    shown = str(resolved)

    if not mode.is_write:
        read_config = policy.read_config
        if read_config is None:
            return PathValidation.allowed()
        hit = first_match(resolved, read_config.deny_only, cwd, home_dir)
        if hit is not None:
            return PathValidation.blocked(
                shown, f"read access to {shown} is denied ({hit})", ViolationKind.READ_DENIED, hit
            )
        return PathValidation.allowed()

    write_config = policy.write_config
    if write_config is None:
        return PathValidation.allowed()
    if first_match(resolved, write_config.allow_only, cwd, home_dir) is None:
        return PathValidation.blocked(
            shown,
            f"write access to {shown} is outside the allowed working directories",
            ViolationKind.OUTSIDE_ALLOWED,
        )
    hit = first_match(resolved, write_config.deny_within_allow, cwd, home_dir)
    if hit is not None:
        return PathValidation.blocked(
            shown, f"write access to {shown} is denied ({hit})", ViolationKind.WRITE_DENIED, hit
        )
    return PathValidation.allowed()


def validate_paths(
    paths: Iterable[str],
    policy: "SandboxPolicy",
    mode: AccessMode,
    cwd: Path,
    home_dir: Optional[Path] = None,
) -> PathValidation:
    """Check every path for the given access mode.

    Reads are allowed unless a ``deny_only`` entry matches. Writes must fall
    inside an ``allow_only`` entry and outside every ``deny_within_allow``
    entry. The first failing path is reported.
    """
    for raw in paths:
        result = _validate_one(os.fspath(raw), policy, mode, cwd, home_dir)
        if not result.ok:
            return result
    return PathValidation.allowed()


def validate_accesses(
    accesses: Iterable[PathAccess],
    policy: "SandboxPolicy",
    cwd: Path,
    home_dir: Optional[Path] = None,
) -> PathValidation:
    for access in accesses:
        result = _validate_one(access.path, policy, access.mode, cwd, home_dir)
        if not result.ok:
            return result
    return PathValidation.allowed()
