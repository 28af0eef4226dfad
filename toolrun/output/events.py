"""
Lifecycle events for tool batches, emitted as JSONL.

Event Types:
- batch.started: A batch of tool calls was accepted
- tool.started: A call passed validation and permission checks and began running
- tool.decision: Permission decision for a call (after any prompt)
- tool.progress: A progress chunk was relayed
- tool.completed: A call reached a terminal state
- batch.completed: Every call of the batch was delivered
- error: Fatal scheduler error
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Optional, TextIO

logger = logging.getLogger(__name__)


# =============================================================================
# Batch Events
# =============================================================================


@dataclass
class BatchStartedEvent:
    turn_id: str
    calls: int
    type: str = field(default="batch.started", init=False)


@dataclass
class BatchCompletedEvent:
    """Emitted once every call of a batch was delivered."""

    turn_id: str
    completed: int
    failed: int
    cancelled: int
    type: str = field(default="batch.completed", init=False)


# =============================================================================
# Tool Events
# =============================================================================


@dataclass
class ToolStartedEvent:
    item_id: str
    tool_name: str
    call_id: str
    concurrency_safe: bool
    type: str = field(default="tool.started", init=False)


@dataclass
class ToolDecisionEvent:
    """Emitted after the permission decision for a call is final."""

    item_id: str
    tool_name: str
    call_id: str
    decision: str
    reason: Optional[Dict[str, Any]] = None
    message: str = ""
    prompted: bool = False
    type: str = field(default="tool.decision", init=False)


@dataclass
class ToolProgressEvent:
    item_id: str
    call_id: str
    content: str
    type: str = field(default="tool.progress", init=False)


@dataclass
class ToolCompletedEvent:
    item_id: str
    tool_name: str
    call_id: str
    status: str
    error_kind: Optional[str] = None
    message: str = ""
    type: str = field(default="tool.completed", init=False)


@dataclass
class ErrorEvent:
    """Emitted for fatal errors."""

    message: str
    type: str = field(default="error", init=False)


# =============================================================================
# Sink
# =============================================================================


class EventSink:
    """Routes events to a callback, or writes them as JSON lines to a stream.

    Each sink owns its item counter, so concurrent batches never share ids.
    """

    def __init__(
        self,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        stream: Optional[TextIO] = None,
        include_progress: bool = True,
    ):
        self.callback = callback
        self.stream = stream
        self.include_progress = include_progress
        self._item_counter = 0

    @classmethod
    def stdout(cls, include_progress: bool = True) -> "EventSink":
        return cls(stream=sys.stdout, include_progress=include_progress)

    def next_item_id(self) -> str:
        self._item_counter += 1
        return f"item_{self._item_counter}"

    def emit(self, event: Any) -> None:
        """Emit a single dataclass event."""
        if isinstance(event, ToolProgressEvent) and not self.include_progress:
            return
        try:
            self.emit_raw(asdict(event))
        except (TypeError, ValueError) as e:
            logger.warning("Failed to emit %s: %s", type(event).__name__, e)
            self.emit_raw({"type": "error", "message": f"Failed to emit event: {e}"})

    def emit_raw(self, data: Dict[str, Any]) -> None:
        if self.callback is not None:
            self.callback(data)
        if self.stream is not None:
            print(json.dumps(data, ensure_ascii=False, default=str), file=self.stream, flush=True)


class NullEventSink(EventSink):
    """Discards everything."""

    def emit_raw(self, data: Dict[str, Any]) -> None:
        pass
