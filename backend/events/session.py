"""Per-session state machine for decoded stream events.

A StreamSession is created when a streaming request starts and discarded by
the same initiator once the stream completes, errors, is aborted, or closes.
It keeps the ordered event log, the accumulated free text, and one
ToolCallState per tool call id.
"""

import time
from collections.abc import Callable
from typing import Any

import structlog

from events.types import (
    TEXT_EVENT_FIELDS,
    StreamEvent,
    StreamEventType,
    StreamSessionStatus,
    ToolCallState,
    ToolCallStatus,
)

logger = structlog.get_logger(__name__)

# Keys the backends have used for a tool call id, in lookup order
_TOOL_ID_KEYS = ("toolId", "tool_id", "id")


def _tool_id(data: dict[str, Any]) -> str | None:
    for key in _TOOL_ID_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


class StreamSession:
    """State accumulated while consuming one streaming response.

    Events are applied in stream order. Once the session is terminal
    (completed, errored, aborted or closed) further events are ignored.

    Attributes:
        session_id: Identifier used to route events to subscribers
        status: Overall session status
        events: Ordered log of every accepted event
        tool_calls: Tool call id mapped to its accumulated state
        text: Concatenated free-text chunks
        result: Structured result from the ``complete`` event
        message_id: Message id from the ``done`` event
        error: Error message once errored or aborted
        created_at: Unix timestamp when the session was created
        finished_at: Unix timestamp when it became terminal
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.status = StreamSessionStatus.ACTIVE
        self.events: list[StreamEvent] = []
        self.tool_calls: dict[str, ToolCallState] = {}
        self.text = ""
        self.result: Any = None
        self.message_id: str | None = None
        self.error: str | None = None
        self.created_at = time.time()
        self.finished_at: float | None = None

        self._handlers: dict[str, Callable[[StreamEvent], None]] = {
            StreamEventType.TOOL_START: self._on_tool_start,
            StreamEventType.TOOL_INPUT: self._on_tool_input,
            StreamEventType.TOOL_PROGRESS: self._on_tool_progress,
            StreamEventType.TOOL_CHUNK: self._on_tool_chunk,
            StreamEventType.TOOL_END: self._on_tool_end,
            StreamEventType.COMPLETE: self._on_complete,
            StreamEventType.DONE: self._on_done,
            StreamEventType.ERROR: self._on_error,
            StreamEventType.ABORTED: self._on_aborted,
            StreamEventType.CLOSED: self._on_closed,
        }

    @property
    def is_terminal(self) -> bool:
        return self.status != StreamSessionStatus.ACTIVE

    def apply(self, event: StreamEvent) -> bool:
        """Apply one event to the session.

        Args:
            event: The next decoded event.

        Returns:
            True if the event was accepted, False if the session was already
            terminal and the event was dropped.
        """
        if self.is_terminal:
            logger.debug(
                "stream_event_after_terminal",
                session_id=self.session_id,
                event_type=event.type,
                status=self.status.value,
            )
            return False

        self.events.append(event)

        text_field = TEXT_EVENT_FIELDS.get(event.type)
        if text_field is not None:
            chunk = event.data.get(text_field)
            if isinstance(chunk, str):
                self.text += chunk
            return True

        handler = self._handlers.get(event.type)
        if handler is not None:
            handler(event)
        return True

    # -------------------------------------------------------------------------
    # Tool lifecycle
    # -------------------------------------------------------------------------

    def _on_tool_start(self, event: StreamEvent) -> None:
        tool_id = _tool_id(event.data)
        if tool_id is None:
            logger.warning("tool_start_missing_id", session_id=self.session_id)
            return

        existing = self.tool_calls.get(tool_id)
        if existing is not None and existing.is_finished:
            logger.debug(
                "tool_start_after_end_ignored",
                session_id=self.session_id,
                tool_id=tool_id,
            )
            return

        # A repeated start re-initializes the same entry
        self.tool_calls[tool_id] = ToolCallState(
            tool_id=tool_id,
            name=str(event.data.get("name") or event.data.get("tool") or ""),
            input=_as_dict(event.data.get("input")),
        )

    def _running_tool(self, event: StreamEvent) -> ToolCallState | None:
        tool_id = _tool_id(event.data)
        state = self.tool_calls.get(tool_id) if tool_id else None
        if state is None:
            logger.debug(
                "tool_event_unknown_id",
                session_id=self.session_id,
                event_type=event.type,
                tool_id=tool_id,
            )
            return None
        if state.is_finished:
            logger.debug(
                "tool_event_after_end_ignored",
                session_id=self.session_id,
                event_type=event.type,
                tool_id=tool_id,
            )
            return None
        return state

    def _on_tool_input(self, event: StreamEvent) -> None:
        state = self._running_tool(event)
        if state is not None:
            state.input = _as_dict(event.data.get("input"))

    def _on_tool_progress(self, event: StreamEvent) -> None:
        state = self._running_tool(event)
        if state is None:
            return
        elapsed = event.data.get("elapsed")
        if isinstance(elapsed, (int, float)):
            state.elapsed_ms = float(elapsed)
        status_text = event.data.get("status")
        if isinstance(status_text, str):
            state.progress_text = status_text

    def _on_tool_chunk(self, event: StreamEvent) -> None:
        state = self._running_tool(event)
        chunk = event.data.get("chunk")
        if state is not None and isinstance(chunk, str):
            state.streamed_text += chunk

    def _on_tool_end(self, event: StreamEvent) -> None:
        state = self._running_tool(event)
        if state is None:
            return
        output = event.data.get("output")
        failed = isinstance(output, dict) and output.get("success") is False
        state.output = output
        state.status = ToolCallStatus.ERRORED if failed else ToolCallStatus.COMPLETED
        duration = event.data.get("duration")
        if isinstance(duration, (int, float)):
            state.duration_ms = float(duration)

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    def _finish(self, status: StreamSessionStatus) -> None:
        self.status = status
        self.finished_at = time.time()
        logger.info(
            "stream_session_finished",
            session_id=self.session_id,
            status=status.value,
            event_count=len(self.events),
            tool_calls=len(self.tool_calls),
            error=self.error,
        )

    def _on_complete(self, event: StreamEvent) -> None:
        self.result = event.data.get("result")
        self._finish(StreamSessionStatus.COMPLETED)

    def _on_done(self, event: StreamEvent) -> None:
        message_id = event.data.get("messageId") or event.data.get("message_id")
        if isinstance(message_id, str):
            self.message_id = message_id
        self._finish(StreamSessionStatus.COMPLETED)

    def _on_error(self, event: StreamEvent) -> None:
        message = event.data.get("error") or event.data.get("message")
        self.error = str(message) if message else "Unknown stream error"
        self._finish(StreamSessionStatus.ERRORED)

    def _on_aborted(self, event: StreamEvent) -> None:
        self.error = str(event.data.get("reason") or "aborted")
        self._finish(StreamSessionStatus.ABORTED)

    def _on_closed(self, event: StreamEvent) -> None:
        self._finish(StreamSessionStatus.CLOSED)

    def close(self) -> bool:
        """Mark the session closed if the stream ended without a terminal event.

        Returns:
            True if the status changed.
        """
        if self.is_terminal:
            return False
        self._finish(StreamSessionStatus.CLOSED)
        return True

    def snapshot(self) -> dict[str, Any]:
        """Return a JSON-serializable summary of the session."""
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "text": self.text,
            "result": self.result,
            "message_id": self.message_id,
            "error": self.error,
            "event_count": len(self.events),
            "tool_calls": [
                state.model_dump(mode="json") for state in self.tool_calls.values()
            ],
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }
