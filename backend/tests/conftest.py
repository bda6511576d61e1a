"""Shared test fixtures for backend tests.

Provides fresh dispatchers and queues and a manually advanced clock.
HTTP adapters are tested against httpx.MockTransport so tests never touch
the network.
"""

import sys

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from events.decoder import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from events.bus import SessionDispatcher  # noqa: E402
from submission_queue import QueueManager, ResourceClassConfig  # noqa: E402

# ---------------------------------------------------------------------------
# Dispatcher / Queue
# ---------------------------------------------------------------------------


@pytest.fixture()
def dispatcher() -> SessionDispatcher:
    """Return a fresh SessionDispatcher with a short observer timeout."""
    return SessionDispatcher(observer_timeout=0.2)


@pytest.fixture()
def fast_queue() -> QueueManager:
    """A queue with one resource class "fast" limited to 2 concurrent jobs."""
    return QueueManager({"fast": ResourceClassConfig(max_concurrency=2)})


class FakeClock:
    """Manually advanced monotonic clock for rate-window tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


