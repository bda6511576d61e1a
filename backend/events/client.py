"""HTTP client for streaming agent endpoints.

This module connects the pieces of the streaming pipeline: it opens a
streaming HTTP request with httpx, feeds each body chunk to a StreamDecoder,
applies the decoded events to a StreamSession, and publishes them through a
SessionDispatcher.

Aborting a run cancels its consuming task. Leaving the ``client.stream()``
context closes the response, which closes the connection and tells the
upstream backend to stop generating.
"""

import asyncio
from collections.abc import AsyncIterable
from typing import Any

import httpx
import structlog

from config import settings
from events.bus import SessionDispatcher
from events.decoder import StreamDecoder
from events.session import StreamSession
from events.types import StreamEvent, StreamEventType

logger = structlog.get_logger(__name__)


class StreamAlreadyRunningError(Exception):
    """Raised when a stream is started for a session that is already streaming."""


class StreamClient:
    """Runs streaming requests and drives their sessions.

    Attributes:
        dispatcher: Where decoded events are published
    """

    def __init__(
        self,
        dispatcher: SessionDispatcher,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the stream client.

        Args:
            dispatcher: Dispatcher that fans events out to observers.
            http_client: Client to stream with. When omitted one is created
                on first use with the configured timeouts, and closed by
                ``aclose()``.
        """
        self.dispatcher = dispatcher
        self._http_client = http_client
        self._owns_client = http_client is None
        self._sessions: dict[str, StreamSession] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    settings.stream_read_timeout_seconds,
                    connect=settings.stream_connect_timeout_seconds,
                )
            )
        return self._http_client

    async def _dispatch(self, session: StreamSession, event: StreamEvent) -> None:
        if session.apply(event):
            await self.dispatcher.publish(session.session_id, event)

    async def _dispatch_local(
        self,
        session: StreamSession,
        event_type: StreamEventType,
        data: dict[str, Any],
    ) -> None:
        """Publish an event synthesized by this client rather than decoded."""
        event = StreamEvent(type=event_type, data=data, sequence=len(session.events) + 1)
        await self._dispatch(session, event)

    async def consume(
        self,
        session: StreamSession,
        chunks: AsyncIterable[bytes | str],
    ) -> StreamSession:
        """Decode a chunked body into the session until it ends or terminates.

        Reading stops as soon as the session reaches a terminal event. A
        record left unterminated at the end of the body is still decoded.

        Args:
            session: The session to drive.
            chunks: The response body, chunk by chunk.

        Returns:
            The same session.
        """
        decoder = StreamDecoder()
        async for chunk in chunks:
            for event in decoder.feed(chunk):
                await self._dispatch(session, event)
            if session.is_terminal:
                break
        else:
            for event in decoder.flush():
                await self._dispatch(session, event)

        if decoder.malformed_count:
            logger.info(
                "stream_malformed_records_skipped",
                session_id=session.session_id,
                skipped=decoder.malformed_count,
            )
        return session

    async def _stream(
        self,
        session: StreamSession,
        method: str,
        url: str,
        payload: Any,
        headers: dict[str, str] | None,
    ) -> None:
        client = self._get_http_client()
        try:
            async with client.stream(method, url, json=payload, headers=headers) as response:
                if response.status_code >= 400:
                    await response.aread()
                    logger.warning(
                        "stream_request_rejected",
                        session_id=session.session_id,
                        status_code=response.status_code,
                    )
                    await self._dispatch_local(
                        session,
                        StreamEventType.ERROR,
                        {"error": f"HTTP {response.status_code}", "source": "transport"},
                    )
                    return
                await self.consume(session, response.aiter_bytes())
        except httpx.HTTPError as e:
            logger.warning(
                "stream_transport_error",
                session_id=session.session_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._dispatch_local(
                session,
                StreamEventType.ERROR,
                {"error": str(e) or type(e).__name__, "source": "transport"},
            )

    def start(
        self,
        session_id: str,
        url: str,
        payload: Any = None,
        *,
        method: str = "POST",
        headers: dict[str, str] | None = None,
    ) -> "asyncio.Task[StreamSession]":
        """Open a streaming request and consume it in the background.

        The session is registered before this returns, so a second start for
        the same id is rejected even if the first has not run yet. The
        session is released (observers dropped, registry entry removed) when
        the returned task finishes, whatever the outcome.

        Args:
            session_id: Identifier observers subscribe with.
            url: Streaming endpoint.
            payload: JSON request body.
            method: HTTP method.
            headers: Extra request headers.

        Returns:
            A task resolving to the finished session: completed, errored,
            aborted, or closed.

        Raises:
            StreamAlreadyRunningError: If ``session_id`` is already streaming.
        """
        if session_id in self._tasks:
            raise StreamAlreadyRunningError(f"Session '{session_id}' is already streaming")

        session = StreamSession(session_id)
        task = asyncio.create_task(
            self._stream(session, method, url, payload, headers),
            name=f"stream_{session_id}",
        )
        self._sessions[session_id] = session
        self._tasks[session_id] = task
        logger.info("stream_started", session_id=session_id, url=url)
        return asyncio.create_task(
            self._drive(session, task), name=f"stream_run_{session_id}"
        )

    async def run(
        self,
        session_id: str,
        url: str,
        payload: Any = None,
        *,
        method: str = "POST",
        headers: dict[str, str] | None = None,
    ) -> StreamSession:
        """Open a streaming request and consume it to the end.

        Same arguments as ``start()``.

        Raises:
            StreamAlreadyRunningError: If ``session_id`` is already streaming.
        """
        return await self.start(session_id, url, payload, method=method, headers=headers)

    async def _drive(self, session: StreamSession, task: "asyncio.Task[None]") -> StreamSession:
        session_id = session.session_id
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            await self._dispatch_local(
                session, StreamEventType.ABORTED, {"reason": "aborted"}
            )
            if current is not None and current.cancelling():
                raise
        finally:
            self._tasks.pop(session_id, None)
            self._sessions.pop(session_id, None)
            if not session.is_terminal:
                # Body ended without a terminal event
                await self._dispatch_local(
                    session, StreamEventType.CLOSED, {"reason": "end_of_stream"}
                )
            self.dispatcher.close_session(session_id)

        return session

    def abort(self, session_id: str) -> bool:
        """Stop a running stream and close its connection.

        Args:
            session_id: The session to abort.

        Returns:
            True if a running stream was found and cancelled.
        """
        task = self._tasks.get(session_id)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("stream_abort_requested", session_id=session_id)
        return True

    def get_session(self, session_id: str) -> StreamSession | None:
        """Get a session that is currently streaming."""
        return self._sessions.get(session_id)

    def get_open_sessions(self) -> list[StreamSession]:
        """Get every session that is currently streaming."""
        return list(self._sessions.values())

    async def abort_all(self) -> None:
        """Abort every running stream and wait for them to wind down."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def aclose(self) -> None:
        """Abort running streams and close the HTTP client if this instance owns it."""
        await self.abort_all()
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
