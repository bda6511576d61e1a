"""Container wiring the orchestration components together.

The application lifespan builds one Orchestrator from settings and hands it
to the HTTP and WebSocket routes. Nothing in the core modules holds global
state; everything shared lives on this object.
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from config import settings
from events import SessionDispatcher, StreamClient, StreamSession
from models.schemas import TaskKind, TaskSnapshot
from polling import HttpTaskStatusClient, TaskPoller, TaskTracker
from submission_queue import QueueManager, build_resource_classes

logger = structlog.get_logger(__name__)


@dataclass(eq=False)
class Orchestrator:
    """The queue, tracker and stream pipeline of one process.

    Attributes:
        queue: Per-resource-class admission queue
        tracker: Active task pollers by owner
        status_client: HTTP adapter the tracker polls through
        dispatcher: Session-scoped event fan-out
        stream_client: Streaming request driver
        task_outcomes: Terminal snapshot per ``(owner, task_id)`` until the
            owner is released
    """

    queue: QueueManager
    tracker: TaskTracker
    status_client: HttpTaskStatusClient
    dispatcher: SessionDispatcher
    stream_client: StreamClient
    task_outcomes: dict[tuple[str, str], TaskSnapshot] = field(default_factory=dict)
    _stream_runs: set[asyncio.Task[StreamSession]] = field(default_factory=set)

    def track_task(self, owner: str, task_id: str, kind: TaskKind) -> TaskPoller:
        """Poll a task through the status service and record its outcome.

        A task that already reached a terminal status for this owner is not
        polled again; its finished poller is returned.
        """

        def on_update(snapshot: TaskSnapshot) -> None:
            if snapshot.is_terminal:
                self.task_outcomes[(owner, task_id)] = snapshot

        return self.tracker.track(
            owner,
            task_id,
            kind,
            self.status_client.for_kind(kind),
            on_update,
        )

    async def submit_task(
        self,
        owner: str,
        resource_class: str,
        kind: TaskKind,
        create: Callable[[], Awaitable[str]],
    ) -> TaskPoller:
        """Create a task inside a resource-class slot, then poll it.

        Only the creation call occupies the slot. Polling runs outside the
        queue until the task is terminal.

        Args:
            owner: The UI context requesting updates.
            resource_class: Class whose concurrency and rate limits apply.
            kind: Task kind, which selects the status route and interval.
            create: Coroutine function that submits the task and returns its id.

        Raises:
            UnknownResourceClassError: If the class is not configured.
            QueueFullError: If the class's wait queue is full.
            Exception: Whatever ``create`` raised.
        """
        task_id = await self.queue.enqueue(resource_class, create)
        logger.info(
            "task_submitted",
            owner=owner,
            resource_class=resource_class,
            task_id=task_id,
            kind=TaskKind(kind).value,
        )
        return self.track_task(owner, task_id, kind)

    def release_owner(self, owner: str) -> int:
        """Stop an owner's pollers and forget its recorded outcomes."""
        for key in [key for key in self.task_outcomes if key[0] == owner]:
            del self.task_outcomes[key]
        return self.tracker.release_owner(owner)

    def start_stream(
        self,
        session_id: str,
        url: str,
        payload: Any = None,
        headers: dict[str, str] | None = None,
    ) -> asyncio.Task[StreamSession]:
        """Run a streaming request in the background.

        Raises:
            StreamAlreadyRunningError: If ``session_id`` is already streaming.
        """
        task = self.stream_client.start(session_id, url, payload, headers=headers)
        self._stream_runs.add(task)
        task.add_done_callback(self._stream_runs.discard)
        return task

    async def aclose(self) -> None:
        """Cancel pollers and streams, then close HTTP clients."""
        self.tracker.cancel_all()
        self.queue.clear_queue()
        await self.stream_client.aclose()
        for task in list(self._stream_runs):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.status_client.aclose()
        logger.info("orchestrator_closed")


def build_orchestrator() -> Orchestrator:
    """Create an Orchestrator configured from settings."""
    dispatcher = SessionDispatcher()
    queue = QueueManager(
        build_resource_classes(
            settings.resource_class_concurrency,
            settings.resource_class_rpm,
            settings.queue_max_waiting,
        )
    )
    return Orchestrator(
        queue=queue,
        tracker=TaskTracker(),
        status_client=HttpTaskStatusClient(),
        dispatcher=dispatcher,
        stream_client=StreamClient(dispatcher),
    )
