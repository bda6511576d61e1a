"""Status poller for one externally-hosted task.

A TaskPoller queries a status operation for a single task on a fixed
interval until the task reaches a terminal state, the task turns out to be
unknown, or the owner cancels it. The first poll happens immediately.

Usage:
    >>> poller = TaskPoller("task_123", TaskKind.MUSIC, fetch_status, on_update)
    >>> poller.start()
    >>> final = await poller.wait()
"""

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum

import structlog

from config import settings
from models.schemas import (
    TASK_NOT_FOUND_CODE,
    TASK_NOT_FOUND_MESSAGE,
    TaskKind,
    TaskSnapshot,
    TaskStatus,
)

logger = structlog.get_logger(__name__)

StatusFetcher = Callable[[str], Awaitable[TaskSnapshot | None]]
UpdateObserver = Callable[[TaskSnapshot], Awaitable[None] | None]

DEFAULT_POLL_INTERVAL_SECONDS = 5.0


class TaskNotFoundError(Exception):
    """Raised by a status fetcher when the service does not know the task."""


class TaskStatusError(Exception):
    """Raised by a status fetcher for a failed status request.

    The poller treats it as transient and retries on the next tick.
    """


class PollerState(StrEnum):
    """Poller lifecycle state."""

    IDLE = "idle"
    ACTIVE = "active"
    STOPPED = "stopped"


def poll_interval_for(kind: TaskKind | str) -> float:
    """Return the configured poll interval for a task kind."""
    return float(settings.poll_interval_seconds.get(str(kind), DEFAULT_POLL_INTERVAL_SECONDS))


class TaskPoller:
    """Polls one task until it is terminal, missing, or cancelled.

    State transitions:
        IDLE -> ACTIVE on ``start()``
        ACTIVE -> STOPPED when a completed/failed snapshot arrives (delivered
            to ``on_update`` exactly once), when the task is not found (a
            failed snapshot with ``error_code="task_not_found"`` is
            delivered), or on ``cancel()`` (nothing is delivered)

    Any other error raised by ``fetch_status``, or a result that is not a
    TaskSnapshot, is logged and the next tick retries on the same interval.

    Attributes:
        task_id: The task being polled
        kind: Task kind, which selects the default interval
        interval_seconds: Seconds between the end of one poll and the next
        state: Current lifecycle state
        polls: Number of status requests issued
        last_status: Status from the most recent successful poll
        last_polled_at: Unix timestamp of the most recent poll
        outcome: The terminal snapshot, once there is one
    """

    def __init__(
        self,
        task_id: str,
        kind: TaskKind,
        fetch_status: StatusFetcher,
        on_update: UpdateObserver,
        interval_seconds: float | None = None,
    ) -> None:
        """Initialize the poller. Polling does not begin until ``start()``.

        Args:
            task_id: Server-assigned task id.
            kind: Task kind.
            fetch_status: Coroutine function returning the task's snapshot.
                It raises TaskNotFoundError (or returns None) when the task
                is unknown.
            on_update: Called with every snapshot, sync or async.
            interval_seconds: Override for the per-kind interval.
        """
        self.task_id = task_id
        self.kind = TaskKind(kind)
        self.interval_seconds = (
            poll_interval_for(self.kind) if interval_seconds is None else interval_seconds
        )
        self.state = PollerState.IDLE
        self.polls = 0
        self.last_status: TaskStatus | None = None
        self.last_polled_at: float | None = None
        self.outcome: TaskSnapshot | None = None

        self._fetch_status = fetch_status
        self._on_update = on_update
        self._task: asyncio.Task[None] | None = None

    @property
    def is_active(self) -> bool:
        return self.state == PollerState.ACTIVE

    def start(self) -> None:
        """Begin polling. Calling it again while active is a no-op.

        Raises:
            RuntimeError: If the poller has already stopped.
        """
        if self.state == PollerState.ACTIVE:
            return
        if self.state == PollerState.STOPPED:
            raise RuntimeError(f"Poller for task '{self.task_id}' has already stopped")

        self.state = PollerState.ACTIVE
        self._task = asyncio.create_task(self._run(), name=f"poll_{self.task_id}")
        logger.info(
            "task_polling_started",
            task_id=self.task_id,
            kind=self.kind.value,
            interval_seconds=self.interval_seconds,
        )

    def cancel(self) -> None:
        """Stop polling now. No further requests are issued and nothing is delivered."""
        if self.state == PollerState.STOPPED:
            return
        self.state = PollerState.STOPPED
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.info("task_polling_cancelled", task_id=self.task_id, polls=self.polls)

    async def wait(self) -> TaskSnapshot | None:
        """Wait for polling to end.

        Returns:
            The terminal snapshot, or None if the poller was cancelled.
        """
        if self._task is not None:
            try:
                await asyncio.shield(self._task)
            except asyncio.CancelledError:
                if not self._task.cancelled():
                    raise
        return self.outcome

    def add_done_callback(self, callback: Callable[["TaskPoller"], None]) -> None:
        """Call ``callback(self)`` once the polling loop has ended for any reason."""
        if self._task is None:
            raise RuntimeError("Poller has not been started")
        self._task.add_done_callback(lambda _task: callback(self))

    async def _run(self) -> None:
        try:
            while True:
                snapshot = await self._poll_once()
                if snapshot is not None and snapshot.is_terminal:
                    self.outcome = snapshot
                    self.state = PollerState.STOPPED
                    await self._deliver(snapshot)
                    logger.info(
                        "task_polling_finished",
                        task_id=self.task_id,
                        status=snapshot.status.value,
                        error_code=snapshot.error_code,
                        polls=self.polls,
                    )
                    return
                await asyncio.sleep(self.interval_seconds)
        finally:
            # A loop that dies for any reason is no longer active
            self.state = PollerState.STOPPED

    async def _poll_once(self) -> TaskSnapshot | None:
        """Issue one status request.

        Returns:
            The snapshot to act on, a synthetic failed snapshot if the task is
            unknown, or None if the poll failed transiently.
        """
        self.polls += 1
        self.last_polled_at = time.time()
        try:
            snapshot = await self._fetch_status(self.task_id)
            if snapshot is not None and not isinstance(snapshot, TaskSnapshot):
                raise TypeError(
                    f"Status fetcher returned {type(snapshot).__name__}, not TaskSnapshot"
                )
        except TaskNotFoundError:
            snapshot = None
        except Exception as e:
            logger.warning(
                "task_poll_failed",
                task_id=self.task_id,
                attempt=self.polls,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        if snapshot is None:
            logger.warning("task_not_found", task_id=self.task_id, attempt=self.polls)
            return TaskSnapshot(
                task_id=self.task_id,
                kind=self.kind,
                status=TaskStatus.FAILED,
                error=TASK_NOT_FOUND_MESSAGE,
                error_code=TASK_NOT_FOUND_CODE,
            )

        self.last_status = snapshot.status
        logger.debug(
            "task_polled",
            task_id=self.task_id,
            status=snapshot.status.value,
            progress=snapshot.progress,
        )
        if not snapshot.is_terminal:
            await self._deliver(snapshot)
        return snapshot

    async def _deliver(self, snapshot: TaskSnapshot) -> None:
        try:
            outcome = self._on_update(snapshot)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(
                "task_update_observer_failed",
                task_id=self.task_id,
                status=snapshot.status.value,
                error=str(e),
            )
