"""Session-scoped publish/subscribe for decoded stream events.

This module provides a SessionDispatcher that forwards every event of a
stream session to the observers currently subscribed to that session.

The dispatcher supports:
- Multiple observers per session, sync or async
- Error isolation (a failing or stalled observer never blocks the others)
- Session lifecycle management (observer references are dropped as soon as
  the session reaches a terminal event, is closed, or loses its last
  observer)
"""

import asyncio
import inspect
import threading
from collections.abc import Awaitable, Callable

import structlog

from config import settings
from events.types import StreamEvent

logger = structlog.get_logger(__name__)

Observer = Callable[[StreamEvent], Awaitable[None] | None]


class SessionDispatcher:
    """Fan-out of stream events to per-session observers.

    Observers are plain callables taking one StreamEvent. A coroutine
    function observer is awaited with a timeout so a stalled consumer cannot
    hold up the stream.

    No observer reference outlives its session: publishing a terminal event
    (``complete``, ``done``, ``error``, ``aborted``) delivers it and then
    drops every observer for that session.

    Thread Safety:
        The subscription registry is guarded by a threading.Lock so observers
        may subscribe or unsubscribe from other threads.

    Usage:
        >>> dispatcher = SessionDispatcher()
        >>> dispatcher.subscribe("sess_123", print)
        >>> await dispatcher.publish("sess_123", event)
        >>> dispatcher.unsubscribe("sess_123", print)

    Attributes:
        observer_timeout: Seconds an async observer may take per event.
    """

    def __init__(self, observer_timeout: float | None = None) -> None:
        """Initialize an empty dispatcher.

        Args:
            observer_timeout: Per-event timeout for async observers. Defaults
                to ``settings.observer_timeout_seconds``.
        """
        self.observer_timeout = (
            settings.observer_timeout_seconds if observer_timeout is None else observer_timeout
        )
        self._observers: dict[str, list[Observer]] = {}
        self._lock = threading.Lock()
        logger.info("session_dispatcher_initialized")

    def subscribe(self, session_id: str, observer: Observer) -> None:
        """Register an observer for a session's events.

        Subscribing the same observer twice is a no-op.

        Args:
            session_id: The session to observe
            observer: Callable receiving each StreamEvent
        """
        with self._lock:
            observers = self._observers.setdefault(session_id, [])
            if observer in observers:
                return
            observers.append(observer)
            subscriber_count = len(observers)

        logger.info(
            "subscriber_added",
            session_id=session_id,
            subscriber_count=subscriber_count,
        )

    def unsubscribe(self, session_id: str, observer: Observer) -> None:
        """Remove an observer from a session.

        When the last observer leaves, the session's entry is dropped. If the
        observer is not registered this is a no-op.

        Args:
            session_id: The session to unsubscribe from
            observer: The observer to remove
        """
        with self._lock:
            observers = self._observers.get(session_id)
            if observers is None:
                return
            try:
                observers.remove(observer)
            except ValueError:
                logger.warning("unsubscribe_observer_not_found", session_id=session_id)
                return
            subscriber_count = len(observers)
            if not observers:
                del self._observers[session_id]

        logger.info(
            "subscriber_removed",
            session_id=session_id,
            subscriber_count=subscriber_count,
        )

    async def publish(self, session_id: str, event: StreamEvent) -> None:
        """Deliver an event to every current observer of a session.

        Observers are called in subscription order. An observer that raises
        or times out is logged and skipped. A terminal event closes the
        session after delivery.

        Args:
            session_id: The session the event belongs to
            event: The decoded event
        """
        with self._lock:
            observers = list(self._observers.get(session_id, []))

        for observer in observers:
            try:
                outcome = observer(event)
                if inspect.isawaitable(outcome):
                    await asyncio.wait_for(outcome, timeout=self.observer_timeout)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    session_id=session_id,
                    event_type=event.type,
                )
            except Exception as e:
                logger.warning(
                    "event_delivery_failed",
                    session_id=session_id,
                    event_type=event.type,
                    error=str(e),
                )

        logger.debug(
            "event_published",
            session_id=session_id,
            event_type=event.type,
            sequence=event.sequence,
            subscriber_count=len(observers),
        )

        if event.is_terminal:
            self.close_session(session_id)

    def close_session(self, session_id: str) -> int:
        """Drop every observer of a session.

        Args:
            session_id: The session to close

        Returns:
            The number of observers released.
        """
        with self._lock:
            observers = self._observers.pop(session_id, [])

        if observers:
            logger.info(
                "session_observers_released",
                session_id=session_id,
                subscribers_removed=len(observers),
            )
        else:
            logger.debug("close_session_not_found", session_id=session_id)
        return len(observers)

    def get_subscriber_count(self, session_id: str) -> int:
        """Get the number of observers for a session."""
        with self._lock:
            return len(self._observers.get(session_id, []))

    def get_active_sessions(self) -> list[str]:
        """Get the sessions that have at least one observer."""
        with self._lock:
            return list(self._observers.keys())
