"""Tests for events/bus.py -- session-scoped publish/subscribe.

Covers delivery to sync and async observers, session isolation, error and
timeout isolation between observers, and release of observer references on
terminal events, close_session and last unsubscribe.
"""

import asyncio
import threading

from events.bus import SessionDispatcher
from events.types import StreamEvent

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(event_type: str = "content_chunk", sequence: int = 1) -> StreamEvent:
    return StreamEvent(type=event_type, data={"content": "x"}, sequence=sequence)


class _Collector:
    def __init__(self) -> None:
        self.events: list[StreamEvent] = []

    def __call__(self, event: StreamEvent) -> None:
        self.events.append(event)


# =========================================================================
# Subscribe / Publish basics
# =========================================================================


class TestSubscribePublish:
    """Basic subscribe and publish."""

    async def test_publish_delivers_to_observer(self, dispatcher: SessionDispatcher) -> None:
        collector = _Collector()
        dispatcher.subscribe("sess_1", collector)

        await dispatcher.publish("sess_1", _make_event())

        assert [e.type for e in collector.events] == ["content_chunk"]

    async def test_publish_multiple_observers_in_order(
        self, dispatcher: SessionDispatcher
    ) -> None:
        calls: list[str] = []
        dispatcher.subscribe("sess_1", lambda e: calls.append("a"))
        dispatcher.subscribe("sess_1", lambda e: calls.append("b"))

        await dispatcher.publish("sess_1", _make_event())

        assert calls == ["a", "b"]

    async def test_async_observer_is_awaited(self, dispatcher: SessionDispatcher) -> None:
        received: asyncio.Queue[StreamEvent] = asyncio.Queue()

        async def observer(event: StreamEvent) -> None:
            await received.put(event)

        dispatcher.subscribe("sess_1", observer)
        await dispatcher.publish("sess_1", _make_event())

        event = await asyncio.wait_for(received.get(), timeout=1.0)
        assert event.type == "content_chunk"

    async def test_publish_does_not_cross_sessions(
        self, dispatcher: SessionDispatcher
    ) -> None:
        c1, c2 = _Collector(), _Collector()
        dispatcher.subscribe("sess_1", c1)
        dispatcher.subscribe("sess_2", c2)

        await dispatcher.publish("sess_1", _make_event())

        assert len(c1.events) == 1
        assert c2.events == []

    async def test_duplicate_subscribe_is_noop(self, dispatcher: SessionDispatcher) -> None:
        collector = _Collector()
        dispatcher.subscribe("sess_1", collector)
        dispatcher.subscribe("sess_1", collector)

        await dispatcher.publish("sess_1", _make_event())

        assert len(collector.events) == 1
        assert dispatcher.get_subscriber_count("sess_1") == 1

    async def test_publish_without_observers(self, dispatcher: SessionDispatcher) -> None:
        await dispatcher.publish("nobody", _make_event())
        assert dispatcher.get_active_sessions() == []


# =========================================================================
# Error isolation
# =========================================================================


class TestErrorIsolation:
    """A failing or stalled observer never blocks the others."""

    async def test_raising_observer_does_not_block_siblings(
        self, dispatcher: SessionDispatcher
    ) -> None:
        def broken(event: StreamEvent) -> None:
            raise RuntimeError("render failed")

        collector = _Collector()
        dispatcher.subscribe("sess_1", broken)
        dispatcher.subscribe("sess_1", collector)

        await dispatcher.publish("sess_1", _make_event())

        assert len(collector.events) == 1

    async def test_stalled_observer_times_out(self, dispatcher: SessionDispatcher) -> None:
        async def stalled(event: StreamEvent) -> None:
            await asyncio.sleep(10)

        collector = _Collector()
        dispatcher.subscribe("sess_1", stalled)
        dispatcher.subscribe("sess_1", collector)

        await asyncio.wait_for(dispatcher.publish("sess_1", _make_event()), timeout=2.0)

        assert len(collector.events) == 1


# =========================================================================
# Observer release
# =========================================================================


class TestObserverRelease:
    """No observer reference outlives its session."""

    async def test_terminal_event_releases_observers(
        self, dispatcher: SessionDispatcher
    ) -> None:
        collector = _Collector()
        dispatcher.subscribe("sess_1", collector)

        await dispatcher.publish("sess_1", _make_event("done"))
        await dispatcher.publish("sess_1", _make_event("content_chunk", sequence=2))

        # The terminal event itself is delivered, nothing after it
        assert [e.type for e in collector.events] == ["done"]
        assert dispatcher.get_subscriber_count("sess_1") == 0
        assert "sess_1" not in dispatcher.get_active_sessions()

    async def test_each_terminal_type_releases(self, dispatcher: SessionDispatcher) -> None:
        for index, event_type in enumerate(["complete", "done", "error", "aborted"]):
            session_id = f"sess_{index}"
            dispatcher.subscribe(session_id, _Collector())
            await dispatcher.publish(session_id, _make_event(event_type))
            assert dispatcher.get_subscriber_count(session_id) == 0

    def test_close_session_returns_released_count(
        self, dispatcher: SessionDispatcher
    ) -> None:
        dispatcher.subscribe("sess_1", _Collector())
        dispatcher.subscribe("sess_1", _Collector())

        assert dispatcher.close_session("sess_1") == 2
        assert dispatcher.close_session("sess_1") == 0

    def test_last_unsubscribe_drops_session(self, dispatcher: SessionDispatcher) -> None:
        a, b = _Collector(), _Collector()
        dispatcher.subscribe("sess_1", a)
        dispatcher.subscribe("sess_1", b)

        dispatcher.unsubscribe("sess_1", a)
        assert dispatcher.get_active_sessions() == ["sess_1"]

        dispatcher.unsubscribe("sess_1", b)
        assert dispatcher.get_active_sessions() == []

    def test_unsubscribe_unknown_is_noop(self, dispatcher: SessionDispatcher) -> None:
        dispatcher.unsubscribe("sess_1", _Collector())
        dispatcher.subscribe("sess_1", _Collector())
        dispatcher.unsubscribe("sess_1", _Collector())

        assert dispatcher.get_subscriber_count("sess_1") == 1


# =========================================================================
# Thread safety
# =========================================================================


class TestThreadSafety:
    """Subscriptions may be changed from other threads."""

    def test_concurrent_subscribe(self, dispatcher: SessionDispatcher) -> None:
        collectors = [_Collector() for _ in range(50)]

        threads = [
            threading.Thread(target=dispatcher.subscribe, args=("sess_1", c))
            for c in collectors
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert dispatcher.get_subscriber_count("sess_1") == 50
