"""Shell command splitting and redirection stripping.

The parser is deliberately conservative: it does not try to be a full POSIX
shell grammar, it only needs to find top-level command boundaries so each
sub-command can be classified on its own.

- Separators are ``;``, ``&&``, ``||``, ``|``, ``|&``, ``&`` and newlines.
- Single/double quotes, backslash escapes, ``$(...)``, ``(...)`` and
  backticks are tracked so separators inside them are ignored.
- Here-document bodies stay inside the span that opened them.
- ``split_command`` is total over well-formed input: joining every span's
  text and separator reproduces the original string exactly.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from typing import Iterable, Optional

from toolrun.errors import CommandParseError

PIPE_SEPARATORS = ("|", "|&")

_ENV_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_OUTPUT_REDIRECT_RE = re.compile(r"(?:(\d+)|(&))?(>>|>\||>&|>)")
_INPUT_REDIRECT_RE = re.compile(r"\d*(<<<|<<-|<<|<&|<>|<)")
_WORD_BREAK_CHARS = "<>;|"


@dataclass(frozen=True)
class Redirection:
    """One output redirection removed from a sub-command."""

    operator: str
    target: str
    fd: Optional[str] = None

    @property
    def is_fd_duplication(self) -> bool:
        """``2>&1`` style redirections point at a descriptor, not a file."""
        return self.operator == ">&" and (self.target.isdigit() or self.target == "-")


@dataclass(frozen=True)
class RedirectionParseResult:
    command: str
    redirections: tuple[Redirection, ...] = ()


@dataclass(frozen=True)
class SubcommandSpan:
    """A contiguous slice of a compound command.

    Attributes:
        text: Raw slice of the original string, whitespace included.
        start: Offset of the slice in the original string.
        end: Offset one past the slice (the separator starts here).
        separator: Operator that terminated the slice, ``""`` for the last one.
        command: Slice with output redirections removed, trimmed.
        redirections: Output redirections removed from ``command``.
        stages: Member spans when this span is a grouped pipeline.
    """

    text: str
    start: int
    end: int
    separator: str = ""
    command: str = ""
    redirections: tuple[Redirection, ...] = ()
    stages: tuple["SubcommandSpan", ...] = field(default=(), compare=False)

    @property
    def is_empty(self) -> bool:
        return not self.command.strip()

    @property
    def is_pipeline(self) -> bool:
        return len(self.stages) > 1

    def stage_spans(self) -> tuple["SubcommandSpan", ...]:
        return self.stages or (self,)


# =============================================================================
# Splitting
# =============================================================================


def _is_word_start(command: str, i: int) -> bool:
    return i == 0 or command[i - 1].isspace() or command[i - 1] in ";&|()<>"


def _read_heredoc_delimiter(command: str, i: int) -> tuple[Optional[str], bool, int]:
    """Parse the delimiter after ``<<``; returns (delimiter, strip_tabs, next index)."""
    n = len(command)
    strip_tabs = False
    if i < n and command[i] == "-":
        strip_tabs = True
        i += 1
    while i < n and command[i] in " \t":
        i += 1
    start = i
    quote: Optional[str] = None
    while i < n:
        ch = command[i]
        if quote:
            if ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch.isspace() or ch in ";&|<>()":
            break
        i += 1
    raw = command[start:i]
    if not raw:
        return None, strip_tabs, i
    delimiter = raw.replace("'", "").replace('"', "").replace("\\", "")
    return delimiter, strip_tabs, i


def _skip_heredoc_bodies(command: str, i: int, pending: list[tuple[str, bool]]) -> int:
    """Skip from the newline at ``i`` past every pending here-document body.

    Returns the index of the newline that ends the last delimiter line (or the
    end of the string when a body is unterminated).
    """
    n = len(command)
    pos = i
    for delimiter, strip_tabs in pending:
        while pos < n:
            line_start = pos + 1
            line_end = command.find("\n", line_start)
            if line_end == -1:
                line_end = n
            line = command[line_start:line_end]
            if strip_tabs:
                line = line.lstrip("\t")
            pos = line_end
            if line == delimiter:
                break
    pending.clear()
    return pos


def _match_separator(command: str, i: int) -> Optional[str]:
    ch = command[i]
    nxt = command[i + 1] if i + 1 < len(command) else ""
    prev = command[i - 1] if i > 0 else ""
    if ch == "\n" or ch == ";":
        return ch
    if ch == "&":
        if nxt == "&":
            return "&&"
        if nxt == ">" or prev in "<>":
            return None
        return "&"
    if ch == "|":
        if nxt == "|":
            return "||"
        if prev == ">":
            return None
        if nxt == "&":
            return "|&"
        return "|"
    return None


def split_command(command: str) -> list[SubcommandSpan]:
    """Split a compound shell command into sub-command spans.

    Args:
        command: Raw shell text.

    Returns:
        Spans in source order. An empty string yields an empty list.

    Raises:
        CommandParseError: On unterminated quotes or substitutions.
    """
    if not command:
        return []

    spans: list[SubcommandSpan] = []
    stack: list[str] = []
    pending_heredocs: list[tuple[str, bool]] = []
    n = len(command)
    start = 0
    i = 0

    while i < n:
        ch = command[i]
        top = stack[-1] if stack else None

        if top == "'":
            if ch == "'":
                stack.pop()
            i += 1
            continue
        if ch == "\\":
            i += 2
            continue
        if top == '"':
            if ch == '"':
                stack.pop()
            elif ch == "`":
                stack.append("`")
            elif command.startswith("$(", i):
                stack.append("(")
                i += 2
                continue
            i += 1
            continue
        if top == "`":
            if ch == "`":
                stack.pop()
            i += 1
            continue

        # Unquoted context: top level or inside $( ... ) / ( ... ).
        if ch in "'\"`":
            stack.append(ch)
            i += 1
            continue
        if command.startswith("$(", i):
            stack.append("(")
            i += 2
            continue
        if ch == "(":
            stack.append("(")
            i += 1
            continue
        if ch == ")":
            if top != "(":
                raise CommandParseError(f"unexpected ')' at offset {i}")
            stack.pop()
            i += 1
            continue
        if ch == "#" and _is_word_start(command, i):
            newline = command.find("\n", i)
            i = n if newline == -1 else newline
            continue
        if command.startswith("<<<", i):
            i += 3
            continue
        if command.startswith("<<", i):
            delimiter, strip_tabs, i = _read_heredoc_delimiter(command, i + 2)
            if delimiter:
                pending_heredocs.append((delimiter, strip_tabs))
            continue
        if ch == "\n" and pending_heredocs:
            i = _skip_heredoc_bodies(command, i, pending_heredocs)
            continue

        if stack:
            i += 1
            continue

        separator = _match_separator(command, i)
        if separator is None:
            i += 1
            continue
        spans.append(_make_span(command[start:i], start, i, separator))
        i += len(separator)
        start = i

    if stack:
        opener = {"'": "single quote", '"': "double quote", "`": "backtick", "(": "parenthesis"}
        raise CommandParseError(f"unterminated {opener[stack[-1]]} in command")

    spans.append(_make_span(command[start:], start, n, ""))
    return spans


def rejoin(spans: Iterable[SubcommandSpan]) -> str:
    """Inverse of :func:`split_command`."""
    return "".join(span.text + span.separator for span in spans)


def group_pipelines(spans: list[SubcommandSpan]) -> list[SubcommandSpan]:
    """Merge spans joined by ``|`` into single pipeline spans."""
    grouped: list[SubcommandSpan] = []
    members: list[SubcommandSpan] = []
    for span in spans:
        members.append(span)
        if span.separator in PIPE_SEPARATORS:
            continue
        grouped.append(_merge_pipeline(members))
        members = []
    if members:
        grouped.append(_merge_pipeline(members))
    return grouped


def _merge_pipeline(members: list[SubcommandSpan]) -> SubcommandSpan:
    if len(members) == 1:
        return members[0]
    text = "".join(m.text + m.separator for m in members[:-1]) + members[-1].text
    command = " | ".join(m.command for m in members)
    redirections = tuple(r for m in members for r in m.redirections)
    return SubcommandSpan(
        text=text,
        start=members[0].start,
        end=members[-1].end,
        separator=members[-1].separator,
        command=command,
        redirections=redirections,
        stages=tuple(members),
    )


def _make_span(text: str, start: int, end: int, separator: str) -> SubcommandSpan:
    stripped = strip_output_redirections(text)
    return SubcommandSpan(
        text=text,
        start=start,
        end=end,
        separator=separator,
        command=stripped.command,
        redirections=stripped.redirections,
    )


# =============================================================================
# Word lexing and redirections
# =============================================================================


@dataclass(frozen=True)
class _Word:
    text: str
    start: int
    end: int
    operator: Optional[str] = None


def _skip_word(text: str, i: int) -> int:
    n = len(text)
    stack: list[str] = []
    while i < n:
        ch = text[i]
        top = stack[-1] if stack else None
        if top == "'":
            if ch == "'":
                stack.pop()
            i += 1
            continue
        if ch == "\\":
            i += 2
            continue
        if top == '"':
            if ch == '"':
                stack.pop()
            elif ch == "`":
                stack.append("`")
            elif text.startswith("$(", i):
                stack.append("(")
                i += 2
                continue
            i += 1
            continue
        if top == "`":
            if ch == "`":
                stack.pop()
            i += 1
            continue
        if ch in "'\"`":
            stack.append(ch)
        elif text.startswith("$(", i) or text.startswith("<(", i) or text.startswith(">(", i):
            stack.append("(")
            i += 2
            continue
        elif ch == "(":
            stack.append("(")
        elif ch == ")" and top == "(":
            stack.pop()
        elif not stack:
            if ch.isspace() or ch in _WORD_BREAK_CHARS:
                break
            if ch == "&" and text.startswith("&>", i):
                break
        i += 1
    return min(i, n)


def _lex_words(text: str) -> tuple[list[_Word], int]:
    """Lex the first logical line of ``text``.

    Returns the words and the offset where lexing stopped (a top-level
    newline introducing here-document bodies, or the end of the text).
    """
    words: list[_Word] = []
    n = len(text)
    i = 0
    while i < n:
        ch = text[i]
        if ch == "\n":
            return words, i
        if ch.isspace():
            i += 1
            continue
        if not (text.startswith("<(", i) or text.startswith(">(", i)):
            match = _OUTPUT_REDIRECT_RE.match(text, i)
            if match and (match.group(1) is None or _is_word_start(text, i)):
                words.append(_Word(match.group(0), i, match.end(), operator="output"))
                i = match.end()
                continue
            match = _INPUT_REDIRECT_RE.match(text, i)
            if match:
                words.append(_Word(match.group(0), i, match.end(), operator="input"))
                i = match.end()
                continue
        end = _skip_word(text, i)
        if end == i:
            end = i + 1
        words.append(_Word(text[i:end], i, end))
        i = end
    return words, n


def unquote(word: str) -> str:
    """Remove shell quoting from a single word."""
    try:
        parts = shlex.split(word)
    except ValueError:
        return word
    return " ".join(parts) if parts else ""


def strip_output_redirections(text: str) -> RedirectionParseResult:
    """Remove output redirections (and their targets) from a sub-command.

    Input redirections and here-documents are left in place. Text after the
    first top-level newline (here-document bodies) is kept verbatim.
    """
    words, stop = _lex_words(text)
    kept: list[str] = []
    redirections: list[Redirection] = []
    idx = 0
    while idx < len(words):
        word = words[idx]
        if word.operator == "output":
            target = words[idx + 1] if idx + 1 < len(words) else None
            if target is not None and target.operator is None:
                match = _OUTPUT_REDIRECT_RE.fullmatch(word.text)
                fd = None
                operator = word.text
                if match:
                    fd = match.group(1) or match.group(2)
                    operator = match.group(3)
                    if fd == "&":
                        operator = "&" + operator
                redirections.append(Redirection(operator=operator, target=unquote(target.text), fd=fd))
                idx += 2
                continue
        kept.append(word.text)
        idx += 1

    command = " ".join(kept)
    rest = text[stop:]
    if rest.strip():
        command = f"{command}{rest}"
    return RedirectionParseResult(command=command.strip(), redirections=tuple(redirections))


def tokenize(command: str) -> list[str]:
    """Split a single command into argv-like tokens."""
    try:
        return shlex.split(command)
    except ValueError:
        return command.strip().split()


def strip_env_assignments(tokens: list[str]) -> list[str]:
    idx = 0
    while idx < len(tokens) and _ENV_ASSIGNMENT_RE.match(tokens[idx]):
        idx += 1
    return tokens[idx:]


def executable_name(command: str) -> str:
    """Leading executable of a command, following a final ``/``."""
    tokens = strip_env_assignments(tokenize(command))
    if not tokens:
        return ""
    return tokens[0].rsplit("/", 1)[-1]
