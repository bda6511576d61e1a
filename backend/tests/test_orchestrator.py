"""Tests for orchestrator.py -- component wiring and teardown."""

import asyncio

import httpx
import pytest

from events import SessionDispatcher, StreamAlreadyRunningError, StreamClient
from models.schemas import TaskKind, TaskStatus
from orchestrator import Orchestrator, build_orchestrator
from polling import HttpTaskStatusClient, TaskTracker
from submission_queue import QueueManager, ResourceClassConfig


def _status_client(status: str, calls: list[str] | None = None) -> HttpTaskStatusClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request.url.params["taskId"])
        return httpx.Response(200, json={"status": status})

    return HttpTaskStatusClient(
        base_url="http://status.test",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def _orchestrator(status_client: HttpTaskStatusClient, stream_handler=None) -> Orchestrator:
    dispatcher = SessionDispatcher(observer_timeout=1.0)
    http_client = None
    if stream_handler is not None:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(stream_handler))
    return Orchestrator(
        queue=QueueManager({"fast": ResourceClassConfig(max_concurrency=2)}),
        tracker=TaskTracker(),
        status_client=status_client,
        dispatcher=dispatcher,
        stream_client=StreamClient(dispatcher, http_client=http_client),
    )


class TestBuild:
    """build_orchestrator() wires components from settings."""

    async def test_queue_classes_from_settings(self) -> None:
        orchestrator = build_orchestrator()

        assert set(orchestrator.queue.resource_classes) == {
            "nano-banana",
            "nano-banana-pro",
            "seedream-4.5",
            "glm-image",
        }
        assert orchestrator.stream_client.dispatcher is orchestrator.dispatcher
        await orchestrator.aclose()


class TestTaskOutcomes:
    """Terminal snapshots are kept until the owner is released."""

    async def test_outcome_recorded_and_released(self) -> None:
        orchestrator = build_orchestrator()
        await orchestrator.status_client.aclose()
        orchestrator.status_client = _status_client("completed")

        poller = orchestrator.track_task("node_1", "task_1", TaskKind.IMAGE)
        await asyncio.wait_for(poller.wait(), timeout=1.0)

        outcome = orchestrator.task_outcomes[("node_1", "task_1")]
        assert outcome.status == TaskStatus.COMPLETED

        orchestrator.release_owner("node_1")
        assert orchestrator.task_outcomes == {}
        await orchestrator.aclose()

    async def test_finished_task_is_not_polled_again(self) -> None:
        calls: list[str] = []
        orchestrator = _orchestrator(_status_client("completed", calls))

        first = orchestrator.track_task("node_1", "task_1", TaskKind.IMAGE)
        await asyncio.wait_for(first.wait(), timeout=1.0)
        await asyncio.sleep(0)

        second = orchestrator.track_task("node_1", "task_1", TaskKind.IMAGE)
        await asyncio.sleep(0.05)

        assert second is first
        assert calls == ["task_1"]
        assert orchestrator.task_outcomes[("node_1", "task_1")].status == TaskStatus.COMPLETED
        await orchestrator.aclose()

    async def test_release_allows_tracking_again(self) -> None:
        calls: list[str] = []
        orchestrator = _orchestrator(_status_client("completed", calls))

        first = orchestrator.track_task("node_1", "task_1", TaskKind.IMAGE)
        await asyncio.wait_for(first.wait(), timeout=1.0)
        await asyncio.sleep(0)
        orchestrator.release_owner("node_1")

        second = orchestrator.track_task("node_1", "task_1", TaskKind.IMAGE)
        await asyncio.wait_for(second.wait(), timeout=1.0)

        assert second is not first
        assert calls == ["task_1", "task_1"]
        await orchestrator.aclose()

    async def test_aclose_cancels_pollers(self) -> None:
        orchestrator = build_orchestrator()
        await orchestrator.status_client.aclose()
        orchestrator.status_client = _status_client("processing")

        poller = orchestrator.track_task("node_1", "task_1", TaskKind.VIDEO)
        await asyncio.sleep(0)
        await orchestrator.aclose()

        assert not poller.is_active
        assert len(orchestrator.tracker) == 0


class TestSubmitTask:
    """submit_task() creates tasks inside queue slots, then polls them."""

    async def test_five_tasks_on_limit_two(self) -> None:
        orchestrator = _orchestrator(_status_client("processing"))
        release = asyncio.Event()
        in_flight = 0
        peak = 0

        def creator(task_id: str):
            async def create() -> str:
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await release.wait()
                in_flight -= 1
                return task_id

            return create

        submissions = [
            asyncio.create_task(
                orchestrator.submit_task(
                    "node_1", "fast", TaskKind.IMAGE, creator(f"task_{i}")
                )
            )
            for i in range(5)
        ]
        await asyncio.sleep(0.01)

        assert orchestrator.queue.get_queue_status()["fast"] == {"active": 2, "waiting": 3}

        release.set()
        pollers = await asyncio.wait_for(asyncio.gather(*submissions), timeout=1.0)

        assert peak == 2
        assert [poller.task_id for poller in pollers] == [f"task_{i}" for i in range(5)]
        assert all(poller.is_active for poller in pollers)
        assert len(orchestrator.tracker) == 5
        assert orchestrator.queue.get_queue_status()["fast"] == {"active": 0, "waiting": 0}
        await orchestrator.aclose()

    async def test_creation_failure_starts_no_poller(self) -> None:
        orchestrator = _orchestrator(_status_client("processing"))

        async def create() -> str:
            raise RuntimeError("upstream rejected the prompt")

        with pytest.raises(RuntimeError, match="rejected"):
            await orchestrator.submit_task("node_1", "fast", TaskKind.IMAGE, create)

        assert len(orchestrator.tracker) == 0
        assert orchestrator.queue.get_queue_status()["fast"]["active"] == 0
        await orchestrator.aclose()


class TestStartStream:
    """start_stream() registers the session before returning."""

    async def test_back_to_back_starts(self) -> None:
        gate = asyncio.Event()

        async def body():
            yield b'data: {"type": "start"}\n\n'
            await gate.wait()
            yield b'data: {"type": "done"}\n\n'

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body())

        orchestrator = _orchestrator(_status_client("processing"), handler)

        first = orchestrator.start_stream("sess_1", "http://agent.test/chat")
        with pytest.raises(StreamAlreadyRunningError):
            orchestrator.start_stream("sess_1", "http://agent.test/chat")

        gate.set()
        session = await asyncio.wait_for(first, timeout=1.0)
        assert session.status == "completed"
        await orchestrator.aclose()
