"""Streaming event pipeline for agent responses.

This package turns a chunked ``data: <json>`` response body into typed
events, folds them into per-session state, and fans them out to whoever is
watching the session.

Key Components:
    - StreamEventType: Enum of the known event types
    - StreamEvent: Pydantic model for one decoded record
    - StreamDecoder: Reassembles records across chunk boundaries
    - StreamSession: Per-session state machine (text buffer, tool calls)
    - SessionDispatcher: Session-scoped publish/subscribe
    - StreamClient: httpx streaming driver tying the above together

Usage:
    >>> from events import SessionDispatcher, StreamClient
    >>>
    >>> dispatcher = SessionDispatcher()
    >>> dispatcher.subscribe("session_123", lambda event: print(event.type))
    >>>
    >>> client = StreamClient(dispatcher)
    >>> session = await client.run("session_123", url, {"message": "hi"})
    >>> print(session.status.value, session.text)

Event Flow:
    1. StreamClient reads the response body chunk by chunk
    2. StreamDecoder yields each complete record as a StreamEvent
    3. StreamSession applies the event and rejects it once terminal
    4. SessionDispatcher forwards accepted events to observers and releases
       them after the terminal event
"""

from events.bus import Observer, SessionDispatcher
from events.client import StreamAlreadyRunningError, StreamClient
from events.decoder import StreamDecoder, decode_stream
from events.session import StreamSession
from events.types import (
    StreamEvent,
    StreamEventType,
    StreamSessionStatus,
    ToolCallState,
    ToolCallStatus,
)

__all__ = [
    # Event types
    "StreamEventType",
    "StreamEvent",
    "ToolCallState",
    "ToolCallStatus",
    "StreamSessionStatus",
    # Decoding
    "StreamDecoder",
    "decode_stream",
    # Session state
    "StreamSession",
    # Dispatch
    "Observer",
    "SessionDispatcher",
    # Transport
    "StreamClient",
    "StreamAlreadyRunningError",
]
