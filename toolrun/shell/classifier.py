"""Dangerous-pattern and allow-list classification of shell sub-commands.

Every check is a row in an ordered rule table, so new detectors are added as
data and each row can be unit tested on its own. Rules with ``deny`` severity
are hard blocks that no permission mode can override; ``ask`` rows only
remove the command from the auto-approved set.
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from toolrun.shell.parser import SubcommandSpan, executable_name, strip_env_assignments, tokenize


class Severity(str, Enum):
    DENY = "deny"
    ASK = "ask"


class TextView(str, Enum):
    """Which rendering of the span a rule's regex is matched against."""

    RAW = "raw"
    # Quote characters removed, content kept: `rm -rf "/"` reads as `rm -rf /`.
    UNQUOTED = "unquoted"
    # Single-quoted literals removed; double quotes still expand.
    LIVE = "live"
    # All quoted content removed; only shell syntax is left.
    BARE = "bare"
    # UNQUOTED with absolute operands normalized: `//`, `/./` and `/usr/..` read as `/`.
    PATHS = "paths"


@dataclass(frozen=True)
class DangerRule:
    name: str
    pattern: re.Pattern[str]
    reason: str
    severity: Severity = Severity.DENY
    view: TextView = TextView.UNQUOTED

    def search(self, views: dict[TextView, str]) -> Optional[str]:
        match = self.pattern.search(views[self.view])
        if match is None:
            return None
        return match.group(0).strip()


@dataclass(frozen=True)
class Classification:
    """Outcome of classifying one span.

    ``blocked`` with ``severity == DENY`` is a hard denial; ``ASK`` means the
    command needs explicit approval.
    """

    span: SubcommandSpan
    blocked: bool = False
    rule: Optional[str] = None
    reason: Optional[str] = None
    matched: Optional[str] = None
    severity: Optional[Severity] = None
    executable: Optional[str] = None

    @property
    def safe(self) -> bool:
        return not self.blocked

    @property
    def is_hard_block(self) -> bool:
        return self.blocked and self.severity == Severity.DENY

    def describe(self) -> str:
        if not self.blocked:
            return f"`{self.span.command}` is allow-listed"
        return f"{self.reason} (matched `{self.matched}`)"


# =============================================================================
# Rule table
# =============================================================================

_ROOT_TARGET = (
    r"(?:/|/\*|~/?|~/\*|\$HOME/?|\$\{HOME\}/?"
    r"|/(?:bin|boot|dev|etc|home|lib|lib32|lib64|opt|proc|root|sbin|srv|sys|usr|var)/?\*?)"
)
_SYSTEM_DIRS = r"/(?:etc|bin|sbin|usr|boot|lib|lib32|lib64|proc|sys|root)(?:/|\s|$)"
_SHELLS = r"(?:\S*/)?(?:ba|da|k|z|fi|tc)?sh"


def _rule(
    name: str,
    pattern: str,
    reason: str,
    severity: Severity = Severity.DENY,
    view: TextView = TextView.UNQUOTED,
    flags: int = 0,
) -> DangerRule:
    return DangerRule(name, re.compile(pattern, flags), reason, severity, view)


DEFAULT_RULES: tuple[DangerRule, ...] = (
    _rule(
        "recursive-force-delete-root",
        r"\brm\s+"
        r"(?=(?:\S+\s+)*?(?:-[a-zA-Z]*[rR][a-zA-Z]*|--recursive)(?:\s|$))"
        r"(?=(?:\S+\s+)*?(?:-[a-zA-Z]*f[a-zA-Z]*|--force)(?:\s|$))"
        rf"(?:\S+\s+)*?{_ROOT_TARGET}(?=\s|$)",
        "recursive forced deletion of a root-level path",
        view=TextView.PATHS,
    ),
    _rule(
        "recursive-permission-change-root",
        rf"\bch(?:mod|own|grp)\s+(?:\S+\s+)*?-[a-zA-Z]*R[a-zA-Z]*\s+(?:\S+\s+)*?{_ROOT_TARGET}(?=\s|$)",
        "recursive ownership or permission change of a root-level path",
        view=TextView.PATHS,
    ),
    _rule(
        "command-substitution",
        r"\$\((?!\()|`",
        "command substitution",
        view=TextView.LIVE,
    ),
    _rule(
        "pipe-to-shell",
        rf"\|&?\s*(?:sudo\s+(?:-\S+\s+)*)?(?:env\s+)?(?:{_SHELLS}(?=\s|$)"
        r"|(?:\S*/)?(?:python[\d.]*|perl|ruby|node|php)(?:\s+-)?\s*$)",
        "output piped into a shell or interpreter",
        view=TextView.BARE,
    ),
    _rule(
        "eval",
        r"(?:^|\s)(?:eval|exec)(?:\s|$)",
        "eval/exec of constructed code",
        view=TextView.BARE,
    ),
    _rule(
        "shell-dash-c",
        rf"(?:^|\s){_SHELLS}\s+(?:-\S+\s+)*?-[a-zA-Z]*c(?:\s|$)",
        "nested shell invocation",
        view=TextView.BARE,
    ),
    _rule(
        "xargs-shell",
        rf"\bxargs\s+(?:\S+\s+)*?{_SHELLS}(?=\s|$)",
        "xargs feeding a shell",
        view=TextView.BARE,
    ),
    _rule(
        "system-dir-redirect",
        rf"(?:(?:\d|&)?>>?\|?\s*{_SYSTEM_DIRS}"
        rf"|\btee\s+(?:-\S+\s+)*{_SYSTEM_DIRS}"
        r"|>>?\s*/dev/(?!null\b|stdout\b|stderr\b|tty\b|zero\b|fd/)\w)",
        "redirection into a system directory",
    ),
    _rule(
        "raw-disk-write",
        r"\bdd\s+(?:\S+\s+)*?of=/dev/(?!null\b)|(?:^|\s)mkfs(?:\.\w+)?(?:\s|$)",
        "raw disk write or filesystem creation",
    ),
    _rule(
        "fork-bomb",
        r":\s*\(\s*\)\s*\{[^}]*:\s*\|\s*:",
        "fork bomb",
        view=TextView.RAW,
    ),
    # Soft rules: never auto-approved, but a user may approve them.
    _rule(
        "process-substitution",
        r"[<>]\(",
        "process substitution",
        Severity.ASK,
        TextView.BARE,
    ),
    _rule(
        "ifs-injection",
        r"\$IFS\b|\$\{[^}]*IFS",
        "use of $IFS",
        Severity.ASK,
        TextView.LIVE,
    ),
    _rule(
        "parameter-expansion",
        r"\$\{",
        "parameter expansion",
        Severity.ASK,
        TextView.LIVE,
    ),
    _rule(
        "obfuscated-flag",
        r"(?:^|\s)(?:\$'|['\"]-)",
        "quoted or ANSI-C quoted flag",
        Severity.ASK,
        TextView.RAW,
    ),
    _rule(
        "jq-system",
        r"\bjq\b.*(?:\bsystem\s*\(|\s(?:-f|--from-file|--rawfile|--slurpfile)(?:\s|$))",
        "jq program able to run commands or read arbitrary files",
        Severity.ASK,
    ),
    _rule(
        "awk-system",
        r"\b[gmn]?awk\b.*\bsystem\s*\(",
        "awk program calling system()",
        Severity.ASK,
    ),
    _rule(
        "find-exec",
        r"\bfind\b.*\s-(?:exec|execdir|ok|okdir|delete)(?:\s|$)",
        "find running commands or deleting files",
        Severity.ASK,
    ),
    _rule(
        "privilege-escalation",
        r"(?:^|\s)(?:sudo|su|doas|pkexec)(?:\s|$)",
        "privilege escalation",
        Severity.ASK,
        TextView.BARE,
    ),
)


READ_ONLY_EXECUTABLES: frozenset[str] = frozenset(
    {
        "ls", "pwd", "cat", "head", "tail", "wc", "sort", "uniq", "cut", "tr",
        "diff", "cmp", "file", "stat", "du", "df", "echo", "printf", "true",
        "false", "test", "[", "which", "whereis", "type", "date", "grep",
        "egrep", "fgrep", "rg", "find", "tree", "basename", "dirname",
        "realpath", "readlink", "jq", "sed", "awk", "nl", "column", "uname",
        "whoami", "id", "hostname", "cd", "git",
    }
)

DEFAULT_ALLOWED_EXECUTABLES: frozenset[str] = READ_ONLY_EXECUTABLES | frozenset(
    {
        "mkdir", "touch", "cp", "mv", "rm", "rmdir", "ln", "chmod", "tar",
        "gzip", "gunzip", "zip", "unzip", "python", "python3", "pip", "pip3",
        "pytest", "uv", "node", "npm", "npx", "yarn", "pnpm", "make", "cargo",
        "go", "tee",
    }
)

READ_ONLY_GIT_SUBCOMMANDS = frozenset(
    {"status", "log", "diff", "show", "blame", "rev-parse", "ls-files", "describe", "grep", "shortlog"}
)


# =============================================================================
# Views
# =============================================================================

_SAFE_HEREDOC_SUBSTITUTION_RE = re.compile(
    r"\$\(\s*cat\s*<<-?\s*(['\"])(\w+)\1\s*\n.*?\n\s*\2\s*\)", re.DOTALL
)


def _render(text: str, *, keep_single: bool, keep_double: bool, keep_escaped: bool) -> str:
    out: list[str] = []
    quote: Optional[str] = None
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if quote == "'":
            if ch == "'":
                quote = None
            elif keep_single:
                out.append(ch)
            i += 1
            continue
        if ch == "\\" and i + 1 < n:
            if quote is None or keep_double:
                out.append(text[i + 1] if keep_escaped else " ")
            i += 2
            continue
        if quote == '"':
            if ch == '"':
                quote = None
            elif keep_double:
                out.append(ch)
            i += 1
            continue
        if ch in "'\"":
            quote = ch
        else:
            out.append(ch)
        i += 1
    return "".join(out)


def _collapse(text: str) -> str:
    return re.sub(r"[ \t]+", " ", text).strip()


_REPEATED_SLASHES_RE = re.compile(r"/{2,}")


def normalize_operand(word: str) -> str:
    """Lexically normalize an absolute or home-relative path; other words pass through."""
    if not word.startswith(("/", "~/")):
        return word
    return posixpath.normpath(_REPEATED_SLASHES_RE.sub("/", word))


def build_views(text: str) -> dict[TextView, str]:
    """Render a span's text once per :class:`TextView`."""
    text = _SAFE_HEREDOC_SUBSTITUTION_RE.sub("HEREDOC", text)
    unquoted = _collapse(_render(text, keep_single=True, keep_double=True, keep_escaped=True))
    return {
        TextView.RAW: text,
        TextView.UNQUOTED: unquoted,
        TextView.PATHS: " ".join(normalize_operand(word) for word in unquoted.split(" ")),
        TextView.LIVE: _collapse(_render(text, keep_single=False, keep_double=True, keep_escaped=False)),
        TextView.BARE: _collapse(_render(text, keep_single=False, keep_double=False, keep_escaped=False)),
    }


# =============================================================================
# Classifier
# =============================================================================


class CommandClassifier:
    """Applies the rule table, then the executable allow-list."""

    def __init__(
        self,
        rules: Iterable[DangerRule] = DEFAULT_RULES,
        allowed_executables: Iterable[str] = DEFAULT_ALLOWED_EXECUTABLES,
    ) -> None:
        self.rules = tuple(rules)
        self.allowed_executables = frozenset(allowed_executables)

    def widened(self, extra: Iterable[str]) -> "CommandClassifier":
        extra = frozenset(e for e in extra if e)
        if not extra or extra <= self.allowed_executables:
            return self
        return CommandClassifier(self.rules, self.allowed_executables | extra)

    def match_rules(self, span: SubcommandSpan) -> Optional[Classification]:
        views = build_views(span.text)
        for rule in self.rules:
            matched = rule.search(views)
            if matched is not None:
                return Classification(
                    span=span,
                    blocked=True,
                    rule=rule.name,
                    reason=rule.reason,
                    matched=matched,
                    severity=rule.severity,
                )
        return None

    def classify(self, span: SubcommandSpan) -> Classification:
        hit = self.match_rules(span)
        if hit is not None:
            return hit
        executable = None
        for stage in span.stage_spans():
            executable = executable_name(stage.command)
            if not executable:
                continue
            if executable not in self.allowed_executables:
                return Classification(
                    span=span,
                    blocked=True,
                    rule="unlisted-executable",
                    reason=f"`{executable}` is not an allow-listed executable",
                    matched=executable,
                    severity=Severity.ASK,
                    executable=executable,
                )
        return Classification(span=span, executable=executable)


def classify(
    span: SubcommandSpan,
    allowed_executables: Optional[Iterable[str]] = None,
) -> Classification:
    """Classify one span with the default rule table.

    ``allowed_executables`` widens the default allow-list.
    """
    classifier = CommandClassifier()
    if allowed_executables:
        classifier = classifier.widened(allowed_executables)
    return classifier.classify(span)


def is_read_only_command(span: SubcommandSpan) -> bool:
    """True when every stage only reads: known readers, no writing redirections."""
    for redirection in span.redirections:
        if redirection.is_fd_duplication or redirection.target == "/dev/null":
            continue
        return False
    if CommandClassifier(DEFAULT_RULES, ()).match_rules(span) is not None:
        return False
    for stage in span.stage_spans():
        tokens = strip_env_assignments(tokenize(stage.command))
        if not tokens:
            continue
        name = tokens[0].rsplit("/", 1)[-1]
        if name not in READ_ONLY_EXECUTABLES:
            return False
        if name == "git":
            sub = next((t for t in tokens[1:] if not t.startswith("-")), "")
            if sub not in READ_ONLY_GIT_SUBCOMMANDS:
                return False
        if name == "sed" and any(t.startswith(("-i", "--in-place")) for t in tokens[1:]):
            return False
    return True
