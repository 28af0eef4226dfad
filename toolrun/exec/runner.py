"""Async subprocess runner used by the shell and search tools.

Children run in their own process group with a scrubbed, non-interactive
environment. Output is read line by line and handed to an optional
callback as it arrives. A run ends in one of four ways: normal exit,
timeout, cancellation through a ``CancellationToken``, or a spawn failure
reported with a shell-style exit code (127 not found, 126 not executable).
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Mapping, Optional

if TYPE_CHECKING:
    from toolrun.core.context import CancellationToken

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT: float = 120.0
MAX_STREAM_CHARS: int = 100_000
KILL_GRACE: float = 2.0

# Matched against variable names, case-insensitively.
_SENSITIVE_NAME_RE = re.compile(r"KEY|SECRET|TOKEN|PASSWORD|PASSWD|CREDENTIAL|PRIVATE|COOKIE")

NON_INTERACTIVE_ENV: Dict[str, str] = {
    "CI": "true",
    "TERM": "dumb",
    "NO_COLOR": "1",
    "PAGER": "cat",
    "GIT_PAGER": "cat",
    "GIT_TERMINAL_PROMPT": "0",
    "DEBIAN_FRONTEND": "noninteractive",
}


class Stream(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True)
class OutputChunk:
    """One line read from the child, trailing newline included."""

    stream: Stream
    data: str


@dataclass
class ExecOptions:
    """How to run a child process.

    Attributes:
        cwd: Working directory of the child.
        timeout: Seconds before the process group is killed.
        env: Variables layered over the scrubbed environment.
        kill_grace: Seconds between SIGTERM and SIGKILL.
    """

    cwd: Path = field(default_factory=Path.cwd)
    timeout: float = DEFAULT_TIMEOUT
    env: Dict[str, str] = field(default_factory=dict)
    kill_grace: float = KILL_GRACE

    def __post_init__(self):
        self.cwd = Path(self.cwd)


@dataclass
class ExecOutput:
    """Collected result of one run. ``exit_code`` is -1 after a timeout or interrupt."""

    stdout: str
    stderr: str
    exit_code: int
    duration: float
    timed_out: bool = False
    interrupted: bool = False

    @classmethod
    def spawn_failure(cls, message: str, exit_code: int, started: float) -> "ExecOutput":
        return cls(stdout="", stderr=message, exit_code=exit_code, duration=time.monotonic() - started)


def is_sensitive_variable(name: str) -> bool:
    return _SENSITIVE_NAME_RE.search(name.upper()) is not None


def build_safe_environment(
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Environment for a child: ``base`` (default ``os.environ``) without
    credentials, forced non-interactive, then ``overrides`` on top."""
    source = os.environ if base is None else base
    env = {name: value for name, value in source.items() if not is_sensitive_variable(name)}
    env.update(NON_INTERACTIVE_ENV)
    if overrides:
        env.update(overrides)
    return env


def clip_stream(text: str, limit: int = MAX_STREAM_CHARS) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}...\n[Output truncated, {len(text)} characters total]"


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        process.send_signal(sig)


async def terminate(process: asyncio.subprocess.Process, grace: float = KILL_GRACE) -> None:
    """SIGTERM the child's process group, then SIGKILL it if it lingers."""
    if process.returncode is not None:
        return
    _signal_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), grace)
    except asyncio.TimeoutError:
        logger.debug("Process %s ignored SIGTERM, killing", process.pid)
        _signal_group(process, signal.SIGKILL)
        await process.wait()


async def _read_lines(
    reader: Optional[asyncio.StreamReader],
    stream: Stream,
    sink: List[str],
    callback: Optional[Callable[[OutputChunk], None]],
) -> None:
    if reader is None:
        return
    async for raw in reader:
        line = raw.decode("utf-8", errors="replace")
        sink.append(line)
        if callback is not None:
            callback(OutputChunk(stream, line))


async def execute_command_streaming(
    command: List[str],
    options: Optional[ExecOptions] = None,
    callback: Optional[Callable[[OutputChunk], None]] = None,
    token: Optional["CancellationToken"] = None,
) -> ExecOutput:
    """Run ``command`` (an argv list), reporting each output line to ``callback``.

    Cancelling ``token`` terminates the process group and returns what was
    read so far with ``interrupted`` set. A token that is already cancelled
    returns ``interrupted`` without spawning anything.
    """
    options = options or ExecOptions()
    started = time.monotonic()
    if not command:
        return ExecOutput.spawn_failure("Empty command", 1, started)
    if token is not None and token.cancelled:
        return ExecOutput(stdout="", stderr="", exit_code=-1, duration=0.0, interrupted=True)

    program = command[0]
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=options.cwd,
            env=build_safe_environment(options.env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except FileNotFoundError:
        return ExecOutput.spawn_failure(f"Command not found: {program}", 127, started)
    except PermissionError:
        return ExecOutput.spawn_failure(f"Permission denied: {program}", 126, started)
    except OSError as e:
        return ExecOutput.spawn_failure(f"Failed to spawn {program}: {e}", -1, started)

    out: List[str] = []
    err: List[str] = []
    finished = asyncio.ensure_future(
        asyncio.gather(
            _read_lines(process.stdout, Stream.STDOUT, out, callback),
            _read_lines(process.stderr, Stream.STDERR, err, callback),
            process.wait(),
        )
    )
    cancelled = asyncio.ensure_future(token.wait()) if token is not None else None

    timed_out = interrupted = False
    try:
        done, _ = await asyncio.wait(
            {finished} if cancelled is None else {finished, cancelled},
            timeout=options.timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if finished in done:
            finished.result()
        else:
            interrupted = cancelled is not None and cancelled in done
            timed_out = not interrupted
            logger.debug("Stopping %s (%s)", program, "interrupted" if interrupted else "timed out")
            await terminate(process, options.kill_grace)
            finished.cancel()
            await asyncio.gather(finished, return_exceptions=True)
    finally:
        if cancelled is not None and not cancelled.done():
            cancelled.cancel()
        if process.returncode is None:
            await terminate(process, options.kill_grace)

    exit_code = -1 if timed_out or interrupted or process.returncode is None else process.returncode
    return ExecOutput(
        stdout=clip_stream("".join(out)),
        stderr=clip_stream("".join(err)),
        exit_code=exit_code,
        duration=time.monotonic() - started,
        timed_out=timed_out,
        interrupted=interrupted,
    )


async def execute_command(
    command: List[str],
    options: Optional[ExecOptions] = None,
    token: Optional["CancellationToken"] = None,
) -> ExecOutput:
    """Run ``command`` and collect its output without streaming."""
    return await execute_command_streaming(command, options, None, token)
