"""Event type definitions for streamed agent output.

This module defines the events decoded from a streaming agent response and
the per-tool state they drive. Every record on the wire is a JSON object with
a ``type`` discriminator; the remaining keys are the event payload.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StreamEventType(StrEnum):
    """Known stream event types.

    Events are categorized by:
    - Session lifecycle: Start, completion, and error states
    - Free text: Chunks appended to the session's accumulated text
    - Reasoning steps: Thought/action/observation records of a ReAct loop
    - Tool lifecycle: Events scoped to one tool call by its id

    Unknown types are still decoded and logged; they just have no effect on
    session state.
    """

    # Session lifecycle
    START = "start"
    COMPLETE = "complete"
    DONE = "done"
    ERROR = "error"
    # Synthesized locally when the consumer aborts the stream
    ABORTED = "aborted"
    # Synthesized locally when the body ends without a terminal event
    CLOSED = "closed"

    # Free text
    CHUNK = "chunk"
    CONTENT_CHUNK = "content_chunk"
    THINKING_CHUNK = "thinking_chunk"

    # Reasoning steps
    THOUGHT = "thought"
    ACTION = "action"
    OBSERVATION = "observation"

    # Tool lifecycle
    TOOL_START = "tool_start"
    TOOL_INPUT = "tool_input"
    TOOL_PROGRESS = "tool_progress"
    TOOL_CHUNK = "tool_chunk"
    TOOL_END = "tool_end"

    # Context
    CONTEXT_UPDATE = "context_update"


# Payload key carrying the text of each free-text event type
TEXT_EVENT_FIELDS: dict[str, str] = {
    StreamEventType.CHUNK: "chunk",
    StreamEventType.CONTENT_CHUNK: "content",
    StreamEventType.THINKING_CHUNK: "chunk",
}

TERMINAL_EVENT_TYPES = frozenset(
    {
        StreamEventType.COMPLETE,
        StreamEventType.DONE,
        StreamEventType.ERROR,
        StreamEventType.ABORTED,
        StreamEventType.CLOSED,
    }
)


class StreamEvent(BaseModel):
    """One decoded stream record.

    Each event includes:
    - type: The ``type`` discriminator from the wire record
    - data: The remaining keys of the record
    - sequence: 1-based position in the stream it was decoded from
    - timestamp: Unix timestamp when the event was decoded

    Payload schemas by event type:

    CONTENT_CHUNK:
        - content: str - Text to append to the session buffer

    THINKING_CHUNK / CHUNK:
        - chunk: str - Text to append to the session buffer

    TOOL_START:
        - toolId: str - Tool call id
        - name: str - Tool name
        - input: dict - Initial tool input

    TOOL_INPUT:
        - toolId: str
        - input: dict - Replacement tool input

    TOOL_PROGRESS:
        - toolId: str
        - elapsed: int - Milliseconds since the tool started
        - status: str - Progress description

    TOOL_CHUNK:
        - toolId: str
        - chunk: str - Streamed tool output fragment

    TOOL_END:
        - toolId: str
        - output: dict - Tool result, ``success`` false marks an error
        - duration: int - Total milliseconds

    COMPLETE:
        - result: Any - Structured session result

    DONE:
        - messageId: str - Id of the finished assistant message

    ERROR:
        - error or message: str - Error description

    ABORTED / CLOSED:
        - reason: str - Why the session ended locally
    """

    model_config = ConfigDict(frozen=True)

    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    sequence: int = 0
    timestamp: float = Field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        """Whether this event ends its session."""
        return self.type in TERMINAL_EVENT_TYPES

    def to_wire(self) -> dict[str, Any]:
        """Return the record as it appeared on the wire (``type`` plus payload)."""
        return {"type": self.type, **self.data}


class ToolCallStatus(StrEnum):
    """Lifecycle state of one tool call."""

    RUNNING = "running"
    COMPLETED = "completed"
    ERRORED = "errored"


class ToolCallState(BaseModel):
    """Accumulated state of one tool call within a stream session.

    Attributes:
        tool_id: Tool call id from the stream
        name: Tool name
        status: Running until a ``tool_end`` arrives
        input: Latest tool input
        streamed_text: Concatenated ``tool_chunk`` fragments
        progress_text: Latest ``tool_progress`` status text
        elapsed_ms: Latest reported elapsed time
        output: Final tool output
        duration_ms: Total tool duration
    """

    tool_id: str
    name: str = ""
    status: ToolCallStatus = ToolCallStatus.RUNNING
    input: dict[str, Any] = Field(default_factory=dict)
    streamed_text: str = ""
    progress_text: str | None = None
    elapsed_ms: float | None = None
    output: Any = None
    duration_ms: float | None = None

    @property
    def is_finished(self) -> bool:
        return self.status != ToolCallStatus.RUNNING


class StreamSessionStatus(StrEnum):
    """Overall state of a stream session."""

    ACTIVE = "active"
    COMPLETED = "completed"
    ERRORED = "errored"
    ABORTED = "aborted"
    # Stream ended without a terminal event
    CLOSED = "closed"
