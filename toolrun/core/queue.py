"""Tool-use scheduler: validates, authorizes and runs one batch of tool calls.

Ordering model:

- the batch is split into runs: each maximal stretch of consecutive
  concurrency-safe calls is one run, every other call is a run of its own;
- a run starts once every earlier call has been delivered, so it sees their
  context modifiers;
- calls inside a run start together on one context snapshot, bounded by
  ``max_concurrency``;
- progress chunks are relayed as they arrive, terminal chunks strictly in
  request order.

The queue is the only writer of the turn context while a batch runs.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Iterable, Optional

from toolrun.core.context import ContextModifier, ExecutionContext, ToolCallRequest
from toolrun.errors import (
    ErrorKind,
    SchedulerError,
    ToolrunError,
    ValidationError,
    format_exception,
)
from toolrun.output.events import (
    BatchCompletedEvent,
    BatchStartedEvent,
    EventSink,
    NullEventSink,
    ToolCompletedEvent,
    ToolDecisionEvent,
    ToolProgressEvent,
    ToolStartedEvent,
)
from toolrun.permissions.engine import PermissionEngine
from toolrun.permissions.types import PermissionDecision, PermissionUpdate, UpdateDestination
from toolrun.sandbox.policy import SandboxPolicy, build_sandbox_policy
from toolrun.tools.base import Tool, ToolOutput, ToolProgress, ToolUseContext
from toolrun.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

WAITING_MESSAGE = "Waiting…"


class EntryState(str, Enum):
    QUEUED = "queued"
    VALIDATING = "validating"
    AWAITING_PERMISSION = "awaiting_permission"
    RUNNING = "running"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (EntryState.DONE, EntryState.FAILED, EntryState.CANCELLED)


class ChunkKind(str, Enum):
    PROGRESS = "progress"
    RESULT = "result"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ToolChunk:
    """One element of the batch's output stream."""

    kind: ChunkKind
    request: ToolCallRequest
    content: str = ""
    data: Any = None
    error_kind: Optional[ErrorKind] = None
    error_code: Optional[int] = None
    decision: Optional[PermissionDecision] = None
    is_error: bool = False

    @property
    def tool_use_id(self) -> str:
        return self.request.tool_use_id

    @property
    def is_terminal(self) -> bool:
        return self.kind != ChunkKind.PROGRESS

    @classmethod
    def progress(cls, request: ToolCallRequest, content: str, data: Any = None) -> "ToolChunk":
        return cls(ChunkKind.PROGRESS, request, content=content, data=data)

    @classmethod
    def failed(
        cls,
        request: ToolCallRequest,
        message: str,
        error_kind: ErrorKind,
        error_code: Optional[int] = None,
        decision: Optional[PermissionDecision] = None,
    ) -> "ToolChunk":
        return cls(
            ChunkKind.FAILED,
            request,
            content=message,
            error_kind=error_kind,
            error_code=error_code,
            decision=decision,
            is_error=True,
        )

    @classmethod
    def cancelled(cls, request: ToolCallRequest, reason: Optional[str] = None) -> "ToolChunk":
        message = "Interrupted by user" if not reason or reason == "user_interrupted" else f"Cancelled: {reason}"
        return cls(ChunkKind.CANCELLED, request, content=message, error_kind=ErrorKind.CANCELLED, is_error=True)


@dataclass
class ToolUseQueueEntry:
    request: ToolCallRequest
    position: int
    item_id: str = ""
    tool: Optional[Tool] = None
    params: Any = None
    decision: Optional[PermissionDecision] = None
    policy: Optional[SandboxPolicy] = None
    concurrency_safe: bool = False
    state: EntryState = EntryState.QUEUED
    chunks: list[ToolChunk] = field(default_factory=list)
    terminal: Optional[ToolChunk] = None
    modifiers: list[ContextModifier] = field(default_factory=list)
    delivered: asyncio.Event = field(default_factory=asyncio.Event)

    def finish(self, chunk: ToolChunk) -> bool:
        """Record the terminal chunk; later ones are ignored."""
        if self.terminal is not None:
            return False
        self.terminal = chunk
        self.chunks.append(chunk)
        return True

    @property
    def resolved_tool(self) -> Tool:
        if self.tool is None:
            raise SchedulerError(f"{self.request.tool_use_id} has no resolved tool")
        return self.tool


class ToolUseQueue:
    """Runs one batch of tool calls for a turn.

    Args:
        registry: Tools available to the batch.
        engine: Permission engine (and its approval bridge).
        context: Turn context at batch start.
        max_concurrency: Limit for parallel calls, 0 for unbounded.
        channel_size: Capacity of the chunk channel between calls and the consumer.
        events: Sink for lifecycle events.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        context: ExecutionContext,
        *,
        max_concurrency: int = 0,
        channel_size: int = 64,
        events: Optional[EventSink] = None,
    ) -> None:
        self.registry = registry
        self.engine = engine
        self.max_concurrency = max_concurrency
        self.channel_size = channel_size
        self.events = events or NullEventSink()
        self._context = context
        self._entries: list[ToolUseQueueEntry] = []
        self._started = False

    @property
    def entries(self) -> list[ToolUseQueueEntry]:
        return list(self._entries)

    def updated_context(self) -> ExecutionContext:
        """The turn context after every delivered modifier and approved update."""
        return self._context

    # -------------------------------------------------------------------------
    # Batch loop
    # -------------------------------------------------------------------------

    async def run(self, requests: Iterable[ToolCallRequest]) -> AsyncIterator[ToolChunk]:
        """Process the batch, yielding progress and terminal chunks.

        Raises:
            SchedulerError: On faults outside any single call.
        """
        if self._started:
            raise SchedulerError("A ToolUseQueue runs a single batch")
        self._started = True

        entries = [
            ToolUseQueueEntry(request=request, position=i, item_id=self.events.next_item_id())
            for i, request in enumerate(requests)
        ]
        self._entries = entries
        abort = self._context.abort
        self.events.emit(BatchStartedEvent(turn_id=self._context.turn_id, calls=len(entries)))

        outbox: asyncio.Queue[tuple[ToolUseQueueEntry, ToolChunk]] = asyncio.Queue(maxsize=self.channel_size)
        lane: Optional[asyncio.Task] = None
        getter: Optional[asyncio.Future] = None
        abort_waiter = asyncio.ensure_future(abort.wait())

        try:
            for entry in entries:
                self._validate(entry)
            await self._authorize([e for e in entries if e.terminal is None])
            if not abort.cancelled:
                lane = self._launch(entries, outbox)

            next_index = 0
            while True:
                while next_index < len(entries) and entries[next_index].terminal is not None:
                    yield self._deliver(entries[next_index])
                    next_index += 1
                if next_index >= len(entries):
                    break
                if abort.cancelled:
                    self._cancel_pending(entries, abort.reason)
                    continue

                if getter is None:
                    getter = asyncio.ensure_future(outbox.get())
                waiters = {getter, abort_waiter}
                if lane is not None and not lane.done():
                    waiters.add(lane)
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                self._check_lane(lane)

                if getter.done():
                    entry, chunk = getter.result()
                    getter = None
                    if chunk.is_terminal:
                        entry.finish(chunk)
                    elif entry.terminal is None:
                        entry.chunks.append(chunk)
                        self.events.emit(
                            ToolProgressEvent(item_id=entry.item_id, call_id=entry.request.tool_use_id, content=chunk.content)
                        )
                        yield chunk

            await self._drain(outbox, lane, getter)
            getter = None
            self._check_lane(lane)
            self.events.emit(
                BatchCompletedEvent(
                    turn_id=self._context.turn_id,
                    completed=sum(1 for e in entries if e.state == EntryState.DONE),
                    failed=sum(1 for e in entries if e.state == EntryState.FAILED),
                    cancelled=sum(1 for e in entries if e.state == EntryState.CANCELLED),
                )
            )
        finally:
            for pending in (getter, abort_waiter, lane):
                if pending is not None and not pending.done():
                    pending.cancel()

    @staticmethod
    def _check_lane(lane: Optional[asyncio.Task]) -> None:
        if lane is None or not lane.done() or lane.cancelled():
            return
        error = lane.exception()
        if error is not None:
            raise SchedulerError(f"Tool execution failed: {error}") from error

    async def _drain(
        self,
        outbox: asyncio.Queue,
        lane: Optional[asyncio.Task],
        getter: Optional[asyncio.Future],
    ) -> None:
        """Wait for interrupted calls to exit, discarding their late chunks."""
        pending = {lane} if lane is not None and not lane.done() else set()
        try:
            while pending:
                if getter is None:
                    getter = asyncio.ensure_future(outbox.get())
                await asyncio.wait(pending | {getter}, return_when=asyncio.FIRST_COMPLETED)
                if getter.done():
                    entry, chunk = getter.result()
                    getter = None
                    logger.debug("Dropping late %s chunk for %s", chunk.kind.value, entry.request.tool_use_id)
                pending = {t for t in pending if not t.done()}
        finally:
            if getter is not None and not getter.done():
                getter.cancel()

    # -------------------------------------------------------------------------
    # Phase 1: validation
    # -------------------------------------------------------------------------

    def _validate(self, entry: ToolUseQueueEntry) -> None:
        entry.state = EntryState.VALIDATING
        request = entry.request
        context = self._context

        tool = self.registry.get(request.tool_name)
        if tool is None:
            self._fail(entry, f"No such tool available: {request.tool_name}", ErrorKind.VALIDATION, 1)
            return
        if not context.tool_allowed(tool.name):
            self._fail(entry, f"Tool {tool.name} is not available in this context", ErrorKind.PERMISSION_DENIED)
            return

        try:
            params = tool.parse_input(request.input)
            result = tool.validate_input(params, context)
            concurrency_safe = tool.is_concurrency_safe(params)
        except ValidationError as e:
            self._fail(entry, e.message, ErrorKind.VALIDATION, e.error_code)
            return
        except Exception as e:
            logger.warning("Validation of %s raised: %s", request.tool_use_id, e)
            self._fail(entry, format_exception(e), ErrorKind.VALIDATION, 1)
            return
        if not result.ok:
            self._fail(entry, result.message, ErrorKind.VALIDATION, result.error_code)
            return

        entry.tool = tool
        entry.params = params
        entry.concurrency_safe = concurrency_safe
        entry.policy = build_sandbox_policy(context, request.input)

    # -------------------------------------------------------------------------
    # Phase 2: permissions
    # -------------------------------------------------------------------------

    async def _evaluate(self, entry: ToolUseQueueEntry, context: ExecutionContext) -> PermissionDecision:
        return await asyncio.to_thread(
            self.engine.evaluate, entry.resolved_tool, entry.params, context, entry.policy, entry.request.input
        )

    async def _authorize(self, pending: list[ToolUseQueueEntry]) -> None:
        if not pending:
            return
        abort = self._context.abort
        snapshot = self._context
        decisions = await asyncio.gather(*(self._evaluate(entry, snapshot) for entry in pending))

        for entry, decision in zip(pending, decisions):
            if abort.cancelled:
                return
            tool = entry.resolved_tool
            prompted = False
            if decision.needs_approval and self._context.permission_context != snapshot.permission_context:
                entry.policy = build_sandbox_policy(self._context, entry.request.input)
                decision = await self._evaluate(entry, self._context)
            if decision.needs_approval:
                entry.state = EntryState.AWAITING_PERMISSION
                prompted = True
                approval = await self.engine.request_approval(
                    tool.name, entry.request.tool_use_id, entry.request.input, decision, self._context
                )
                if abort.cancelled:
                    return
                decision = approval.decision
                if approval.updates:
                    self._apply_updates(approval.updates)

            entry.decision = decision
            self.events.emit(
                ToolDecisionEvent(
                    item_id=entry.item_id,
                    tool_name=tool.name,
                    call_id=entry.request.tool_use_id,
                    decision=decision.behavior.value,
                    reason=decision.reason.to_dict() if decision.reason else None,
                    message=decision.message,
                    prompted=prompted,
                )
            )
            if decision.is_denied:
                self._fail(entry, decision.message, ErrorKind.PERMISSION_DENIED, decision=decision)
            elif decision.updated_input is not None:
                try:
                    entry.params = tool.parse_input(decision.updated_input)
                except ValidationError as e:
                    self._fail(entry, e.message, ErrorKind.VALIDATION, e.error_code)

    def _apply_updates(self, updates: Iterable[PermissionUpdate]) -> None:
        updates = list(updates)
        self._context = self._context.apply_permission_updates(updates)
        store = self._context.rule_store
        for update in updates:
            if update.destination == UpdateDestination.SESSION or store is None:
                continue
            try:
                store.append(update)
            except OSError as e:
                logger.warning("Could not persist %s: %s", update.describe(), e)

    # -------------------------------------------------------------------------
    # Phase 3: execution
    # -------------------------------------------------------------------------

    def _launch(self, entries: list[ToolUseQueueEntry], outbox: asyncio.Queue) -> Optional[asyncio.Task]:
        runs = self._plan_runs(e for e in entries if e.terminal is None)
        if not runs:
            return None
        return asyncio.ensure_future(self._run_lane(runs, outbox))

    @staticmethod
    def _plan_runs(runnable: Iterable[ToolUseQueueEntry]) -> list[list[ToolUseQueueEntry]]:
        """Consecutive concurrency-safe calls share a run; any other call is a run of its own."""
        runs: list[list[ToolUseQueueEntry]] = []
        for entry in runnable:
            if entry.concurrency_safe and runs and runs[-1][0].concurrency_safe:
                runs[-1].append(entry)
            else:
                runs.append([entry])
        return runs

    async def _run_lane(self, runs: list[list[ToolUseQueueEntry]], outbox: asyncio.Queue) -> None:
        abort = self._context.abort
        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency > 0 else None
        for run in runs[1:]:
            for entry in run:
                await outbox.put((entry, ToolChunk.progress(entry.request, WAITING_MESSAGE)))

        for index, run in enumerate(runs):
            if index:
                # Delivery is in request order, so this covers every earlier call.
                await self._wait_delivered(self._entries[run[0].position - 1], abort)
            if abort.cancelled:
                return

            context = self._context
            ready = []
            for entry in run:
                rejection = self._recheck(entry, context) if index else None
                if rejection is not None:
                    await outbox.put((entry, rejection))
                    continue
                entry.policy = build_sandbox_policy(context, entry.request.input)
                ready.append(entry)
            await asyncio.gather(*(self._run_entry(entry, context, outbox, semaphore) for entry in ready))

    @staticmethod
    def _recheck(entry: ToolUseQueueEntry, context: ExecutionContext) -> Optional[ToolChunk]:
        """Validate a call again against the context left by earlier runs."""
        tool = entry.resolved_tool
        if not context.tool_allowed(tool.name):
            return ToolChunk.failed(
                entry.request, f"Tool {tool.name} is not available in this context", ErrorKind.PERMISSION_DENIED
            )
        result = tool.validate_input(entry.params, context)
        if not result.ok:
            return ToolChunk.failed(entry.request, result.message, ErrorKind.VALIDATION, result.error_code)
        return None

    @staticmethod
    async def _wait_delivered(entry: ToolUseQueueEntry, abort) -> None:
        delivered = asyncio.ensure_future(entry.delivered.wait())
        aborted = asyncio.ensure_future(abort.wait())
        try:
            await asyncio.wait({delivered, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            delivered.cancel()
            aborted.cancel()

    async def _run_entry(
        self,
        entry: ToolUseQueueEntry,
        context: ExecutionContext,
        outbox: asyncio.Queue,
        semaphore: Optional[asyncio.Semaphore],
    ) -> None:
        async with semaphore if semaphore is not None else contextlib.nullcontext():
            if context.abort.cancelled:
                return
            await outbox.put((entry, await self._execute(entry, context, outbox)))

    async def _execute(
        self, entry: ToolUseQueueEntry, context: ExecutionContext, outbox: asyncio.Queue
    ) -> ToolChunk:
        tool = entry.resolved_tool
        request = entry.request
        token = context.abort.child()
        entry.state = EntryState.RUNNING
        self.events.emit(
            ToolStartedEvent(
                item_id=entry.item_id,
                tool_name=tool.name,
                call_id=request.tool_use_id,
                concurrency_safe=entry.concurrency_safe,
            )
        )
        use_context = ToolUseContext(
            execution=context,
            tool_use_id=request.tool_use_id,
            abort=token,
            sandbox_policy=entry.policy,
            request=request,
        )

        output: Optional[ToolOutput] = None
        stream = tool.execute(entry.params, use_context)
        try:
            async for event in stream:
                if isinstance(event, ToolProgress):
                    entry.state = EntryState.STREAMING
                    await outbox.put((entry, ToolChunk.progress(request, event.content, event.data)))
                elif isinstance(event, ToolOutput):
                    output = event
                    break
        except asyncio.CancelledError:
            raise
        except ToolrunError as e:
            if e.kind == ErrorKind.CANCELLED:
                return ToolChunk.cancelled(request, token.reason)
            return ToolChunk.failed(
                request, format_exception(e), e.kind, getattr(e, "error_code", None), entry.decision
            )
        except Exception as e:
            logger.exception("Tool %s (%s) raised", tool.name, request.tool_use_id)
            return ToolChunk.failed(request, format_exception(e), ErrorKind.EXECUTION, decision=entry.decision)
        finally:
            await stream.aclose()

        if output is None:
            if token.cancelled:
                return ToolChunk.cancelled(request, token.reason)
            return ToolChunk.failed(request, f"{tool.name} produced no result", ErrorKind.EXECUTION)
        if output.context_modifier is not None:
            entry.modifiers.append(output.context_modifier)
        return ToolChunk(
            ChunkKind.RESULT,
            request,
            content=output.result_for_assistant,
            data=output.data,
            decision=entry.decision,
            is_error=output.is_error,
        )

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    def _deliver(self, entry: ToolUseQueueEntry) -> ToolChunk:
        """Apply a finished call to the turn context and release its waiters."""
        chunk = entry.terminal
        if chunk is None:
            raise SchedulerError(f"{entry.request.tool_use_id} delivered before it finished")
        if chunk.kind == ChunkKind.RESULT:
            for modifier in entry.modifiers:
                try:
                    self._context = modifier(self._context)
                except Exception as e:
                    raise SchedulerError(
                        f"Context modifier of {entry.request.tool_use_id} failed: {e}"
                    ) from e
            entry.state = EntryState.DONE
        elif chunk.kind == ChunkKind.CANCELLED:
            entry.state = EntryState.CANCELLED
        else:
            entry.state = EntryState.FAILED
        entry.delivered.set()
        self.events.emit(
            ToolCompletedEvent(
                item_id=entry.item_id,
                tool_name=entry.tool.name if entry.tool else entry.request.tool_name,
                call_id=entry.request.tool_use_id,
                status=entry.state.value,
                error_kind=chunk.error_kind.value if chunk.error_kind else None,
                message=chunk.content if chunk.is_error else "",
            )
        )
        return chunk

    def _fail(
        self,
        entry: ToolUseQueueEntry,
        message: str,
        kind: ErrorKind,
        error_code: Optional[int] = None,
        decision: Optional[PermissionDecision] = None,
    ) -> None:
        entry.finish(ToolChunk.failed(entry.request, message, kind, error_code, decision))

    @staticmethod
    def _cancel_pending(entries: list[ToolUseQueueEntry], reason: Optional[str]) -> None:
        for entry in entries:
            if entry.terminal is None:
                entry.finish(ToolChunk.cancelled(entry.request, reason))


async def run_tool_batch(
    requests: Iterable[ToolCallRequest],
    registry: ToolRegistry,
    engine: PermissionEngine,
    context: ExecutionContext,
    **options: Any,
) -> tuple[list[ToolChunk], ExecutionContext]:
    """Run a batch to completion; returns every chunk and the updated context."""
    queue = ToolUseQueue(registry, engine, context, **options)
    chunks = [chunk async for chunk in queue.run(requests)]
    return chunks, queue.updated_context()
