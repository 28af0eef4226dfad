"""Extract the filesystem paths a shell sub-command will touch."""

from __future__ import annotations

from typing import Callable

from toolrun.permissions.validator import AccessMode, PathAccess
from toolrun.shell.parser import SubcommandSpan, strip_env_assignments, tokenize

# Targets that are never treated as file writes.
SPECIAL_REDIRECT_TARGETS = frozenset({"/dev/null", "/dev/stdout", "/dev/stderr", "/dev/tty", "-"})

# Options that consume the following argument, per command.
_VALUE_FLAGS: dict[str, frozenset[str]] = {
    "head": frozenset({"-n", "-c"}),
    "tail": frozenset({"-n", "-c"}),
    "grep": frozenset({"-e", "-f", "-m", "-A", "-B", "-C", "--include", "--exclude", "--exclude-dir"}),
    "rg": frozenset({"-e", "-f", "-g", "-t", "-T", "-m", "-A", "-B", "-C", "--glob", "--type"}),
    "sort": frozenset({"-o", "-k", "-t"}),
    "cut": frozenset({"-d", "-f", "-c", "-b"}),
    "mkdir": frozenset({"-m"}),
    "touch": frozenset({"-d", "-t", "-r"}),
    "cp": frozenset({"-t", "-S"}),
    "mv": frozenset({"-t", "-S"}),
    "ln": frozenset({"-t", "-S"}),
    "sed": frozenset({"-e", "-f"}),
    "awk": frozenset({"-F", "-v", "-f"}),
    "jq": frozenset({"--arg", "--argjson", "-L"}),
    "du": frozenset({"-d", "--max-depth"}),
    "tree": frozenset({"-L", "-I", "-P"}),
}


def _positional(name: str, args: list[str]) -> list[str]:
    takes_value = _VALUE_FLAGS.get(name, frozenset())
    out: list[str] = []
    skip = False
    after_dashdash = False
    for arg in args:
        if skip:
            skip = False
            continue
        if after_dashdash:
            out.append(arg)
            continue
        if arg == "--":
            after_dashdash = True
            continue
        if arg.startswith("-") and arg != "-":
            if arg in takes_value:
                skip = True
            continue
        out.append(arg)
    return out


def _has_flag(args: list[str], *flags: str) -> bool:
    long_forms = tuple(f"{f}=" for f in flags if f.startswith("--"))
    return any(a in flags or (bool(long_forms) and a.startswith(long_forms)) for a in args)


def _read_all(name: str, args: list[str]) -> list[PathAccess]:
    return [PathAccess(p, AccessMode.READ, name) for p in _positional(name, args)]


def _read_all_default_cwd(name: str, args: list[str]) -> list[PathAccess]:
    return _read_all(name, args) or [PathAccess(".", AccessMode.READ, name)]


def _write_all(name: str, args: list[str]) -> list[PathAccess]:
    return [PathAccess(p, AccessMode.WRITE, name) for p in _positional(name, args)]


def _create_all(name: str, args: list[str]) -> list[PathAccess]:
    return [PathAccess(p, AccessMode.CREATE, name) for p in _positional(name, args)]


def _pattern_then_paths(name: str, args: list[str]) -> list[PathAccess]:
    # grep PATTERN [FILE...] unless the pattern came from -e/-f.
    positional = _positional(name, args)
    if not _has_flag(args, "-e", "-f", "--regexp", "--file"):
        positional = positional[1:]
    if not positional and name == "rg":
        positional = ["."]
    return [PathAccess(p, AccessMode.READ, name) for p in positional]


def _program_then_files(name: str, args: list[str]) -> list[PathAccess]:
    # sed/awk/jq SCRIPT [FILE...]; sed -i edits the files in place.
    positional = _positional(name, args)
    if not _has_flag(args, "-e", "-f", "--expression", "--file"):
        positional = positional[1:]
    mode = AccessMode.READ
    if name == "sed" and any(a.startswith(("-i", "--in-place")) for a in args):
        mode = AccessMode.WRITE
    return [PathAccess(p, mode, name) for p in positional]


def _copy_like(name: str, args: list[str]) -> list[PathAccess]:
    positional = _positional(name, args)
    if len(positional) < 2:
        return [PathAccess(p, AccessMode.WRITE, name) for p in positional]
    *sources, destination = positional
    source_mode = AccessMode.WRITE if name == "mv" else AccessMode.READ
    accesses = [PathAccess(src, source_mode, name) for src in sources]
    accesses.append(PathAccess(destination, AccessMode.WRITE, name))
    return accesses


def _mode_then_paths(name: str, args: list[str]) -> list[PathAccess]:
    positional = _positional(name, args)
    return [PathAccess(p, AccessMode.WRITE, name) for p in positional[1:]]


def _find_roots(name: str, args: list[str]) -> list[PathAccess]:
    roots: list[str] = []
    for arg in args:
        if arg.startswith(("-", "(", "!")):
            break
        roots.append(arg)
    return [PathAccess(p, AccessMode.READ, name) for p in roots or ["."]]


def _cd_target(name: str, args: list[str]) -> list[PathAccess]:
    positional = _positional(name, args)
    if not positional or positional[0] == "-":
        return []
    return [PathAccess(positional[0], AccessMode.READ, name)]


def _tee_targets(name: str, args: list[str]) -> list[PathAccess]:
    return [
        PathAccess(p, AccessMode.WRITE, name)
        for p in _positional(name, args)
        if p not in SPECIAL_REDIRECT_TARGETS
    ]


PATH_EXTRACTORS: dict[str, Callable[[str, list[str]], list[PathAccess]]] = {
    "ls": _read_all_default_cwd,
    "tree": _read_all_default_cwd,
    "du": _read_all_default_cwd,
    "cat": _read_all,
    "head": _read_all,
    "tail": _read_all,
    "wc": _read_all,
    "stat": _read_all,
    "file": _read_all,
    "diff": _read_all,
    "cmp": _read_all,
    "nl": _read_all,
    "sort": _read_all,
    "uniq": _read_all,
    "grep": _pattern_then_paths,
    "egrep": _pattern_then_paths,
    "fgrep": _pattern_then_paths,
    "rg": _pattern_then_paths,
    "sed": _program_then_files,
    "awk": _program_then_files,
    "jq": _program_then_files,
    "find": _find_roots,
    "cd": _cd_target,
    "rm": _write_all,
    "rmdir": _write_all,
    "unlink": _write_all,
    "touch": _create_all,
    "mkdir": _create_all,
    "cp": _copy_like,
    "mv": _copy_like,
    "ln": _copy_like,
    "chmod": _mode_then_paths,
    "chown": _mode_then_paths,
    "chgrp": _mode_then_paths,
    "tee": _tee_targets,
}


def command_path_accesses(command: str) -> list[PathAccess]:
    """Paths referenced by one simple command (no pipes, no redirections)."""
    tokens = strip_env_assignments(tokenize(command))
    if not tokens:
        return []
    name = tokens[0].rsplit("/", 1)[-1]
    extractor = PATH_EXTRACTORS.get(name)
    if extractor is None:
        return []
    return extractor(name, tokens[1:])


def extract_path_accesses(span: SubcommandSpan) -> list[PathAccess]:
    """All path accesses of a span: every pipeline stage plus redirection targets."""
    accesses: list[PathAccess] = []
    for stage in span.stage_spans():
        accesses.extend(command_path_accesses(stage.command))
    for redirection in span.redirections:
        if redirection.is_fd_duplication or redirection.target in SPECIAL_REDIRECT_TARGETS:
            continue
        accesses.append(PathAccess(redirection.target, AccessMode.WRITE, redirection.operator))
    return accesses


def writes_anything(span: SubcommandSpan) -> bool:
    return any(access.mode.is_write for access in extract_path_accesses(span))
