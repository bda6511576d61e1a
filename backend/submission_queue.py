"""Per-resource-class admission queue for generation jobs.

This module throttles how many jobs may be in flight against one upstream
resource (a model tier, a provider account) at once. Each resource class has
a concurrency ceiling and, optionally, a requests-per-minute ceiling enforced
with a sliding window. Jobs beyond the ceiling wait in FIFO order.

Usage:
    >>> from submission_queue import QueueManager, ResourceClassConfig
    >>> queue = QueueManager({"fast": ResourceClassConfig(max_concurrency=2)})
    >>> task_id = await queue.enqueue("fast", lambda: create_image_task(prompt))
    >>> queue.get_queue_status()
    {'fast': {'active': 0, 'waiting': 0}}
"""

import asyncio
import itertools
import math
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RATE_WINDOW_SECONDS = 60.0


class UnknownResourceClassError(KeyError):
    """Raised when a job is submitted to a resource class that is not configured."""


class QueueFullError(Exception):
    """Raised when a resource class's wait queue is at its configured depth."""


class QueueClearedError(Exception):
    """Set on waiting jobs that were discarded by ``clear_queue()``."""


@dataclass(frozen=True)
class ResourceClassConfig:
    """Limits for one resource class.

    Attributes:
        max_concurrency: Maximum jobs running at once. ``None`` means unlimited.
        requests_per_minute: Maximum job starts per 60s window. ``None``
            disables the window.
        max_waiting: Maximum jobs allowed to wait. ``None`` means unbounded.
    """

    max_concurrency: int | None = None
    requests_per_minute: int | None = None
    max_waiting: int | None = None

    def __post_init__(self) -> None:
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ValueError(
                f"max_concurrency must be at least 1 (got {self.max_concurrency}); "
                "use None for unlimited"
            )
        if self.requests_per_minute is not None and self.requests_per_minute < 1:
            raise ValueError(
                f"requests_per_minute must be at least 1 (got {self.requests_per_minute})"
            )
        if self.max_waiting is not None and self.max_waiting < 0:
            raise ValueError(f"max_waiting must not be negative (got {self.max_waiting})")


@dataclass(eq=False)
class _Job:
    job_id: int
    work: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]
    submitted_at: float
    task: asyncio.Task[None] | None = None


@dataclass(eq=False)
class ResourceClassState:
    """Mutable admission state of one resource class.

    Only ``QueueManager`` mutates this, and only from the event loop thread.
    """

    name: str
    config: ResourceClassConfig
    active: int = 0
    waiting: deque[_Job] = field(default_factory=deque)
    # Start timestamps inside the current rate window
    start_log: deque[float] = field(default_factory=deque)
    wake_handle: asyncio.TimerHandle | None = None

    @property
    def max_concurrency(self) -> float:
        if self.config.max_concurrency is None:
            return math.inf
        return self.config.max_concurrency

    def has_capacity(self) -> bool:
        return self.active < self.max_concurrency

    def _prune_old_entries(self, now: float) -> None:
        cutoff = now - RATE_WINDOW_SECONDS
        while self.start_log and self.start_log[0] <= cutoff:
            self.start_log.popleft()

    def rate_wait(self, now: float) -> float:
        """Seconds until the rate window admits another start (0 if it does now)."""
        limit = self.config.requests_per_minute
        if limit is None:
            return 0.0
        self._prune_old_entries(now)
        if len(self.start_log) < limit:
            return 0.0
        return max(self.start_log[0] + RATE_WINDOW_SECONDS - now, 0.001)

    def can_start_now(self, now: float) -> bool:
        return not self.waiting and self.has_capacity() and self.rate_wait(now) == 0.0


class QueueManager:
    """Bounded-concurrency FIFO admission control, one queue per resource class.

    A job is an async callable. ``submit()`` admits it synchronously: if its
    class has a free slot (and rate budget) it starts right away, otherwise it
    is appended to the class's wait queue. When any running job settles, the
    slot is handed to the head of the wait queue.

    A job's exception only fails that job's own future. Sibling jobs keep
    running and the freed slot is reassigned immediately.

    Attributes:
        resource_classes: Names of the configured resource classes.
    """

    def __init__(
        self,
        classes: Mapping[str, ResourceClassConfig | int | None],
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the queue manager.

        Args:
            classes: Resource class name mapped to its limits. A bare int is a
                concurrency ceiling; ``None`` means unlimited.
            clock: Monotonic clock used for the rate window.

        Raises:
            ValueError: If a limit is misconfigured (e.g. zero concurrency).
        """
        self._classes: dict[str, ResourceClassState] = {}
        for name, config in classes.items():
            if not isinstance(config, ResourceClassConfig):
                config = ResourceClassConfig(max_concurrency=config)
            self._classes[name] = ResourceClassState(name=name, config=config)
        self._clock = clock
        self._ids = itertools.count(1)
        self._running: set[asyncio.Task[None]] = set()

        logger.info(
            "queue_manager_initialized",
            resource_classes={
                name: state.config.max_concurrency for name, state in self._classes.items()
            },
        )

    @property
    def resource_classes(self) -> list[str]:
        return list(self._classes)

    def _get_state(self, resource_class: str) -> ResourceClassState:
        try:
            return self._classes[resource_class]
        except KeyError:
            raise UnknownResourceClassError(
                f"Unknown resource class '{resource_class}'"
            ) from None

    def submit(
        self,
        resource_class: str,
        work: Callable[[], Awaitable[T]],
    ) -> "asyncio.Future[T]":
        """Admit a unit of work and return a future for its outcome.

        Must be called from a running event loop. Admission order is call
        order, so two calls made back to back start in that order.

        Args:
            resource_class: The resource class whose slot the work occupies.
            work: Zero-argument callable returning an awaitable.

        Returns:
            A future resolved or rejected with exactly the outcome of ``work``.
            Cancelling the future withdraws a waiting job or cancels a
            running one.

        Raises:
            UnknownResourceClassError: If the class is not configured.
            QueueFullError: If the class's wait queue is at ``max_waiting``.
        """
        state = self._get_state(resource_class)
        loop = asyncio.get_running_loop()
        now = self._clock()

        max_waiting = state.config.max_waiting
        if (
            max_waiting is not None
            and len(state.waiting) >= max_waiting
            and not state.can_start_now(now)
        ):
            logger.warning(
                "queue_full",
                resource_class=resource_class,
                waiting=len(state.waiting),
                max_waiting=max_waiting,
            )
            raise QueueFullError(
                f"Resource class '{resource_class}' already has {len(state.waiting)} waiting jobs"
            )

        future: asyncio.Future[T] = loop.create_future()
        job = _Job(
            job_id=next(self._ids),
            work=work,
            future=future,
            submitted_at=now,
        )
        state.waiting.append(job)
        future.add_done_callback(
            lambda f, state=state, job=job: self._on_future_done(state, job, f)
        )

        logger.debug(
            "job_enqueued",
            resource_class=resource_class,
            job_id=job.job_id,
            active=state.active,
            waiting=len(state.waiting),
        )
        self._drain(state)
        return future

    async def enqueue(self, resource_class: str, work: Callable[[], Awaitable[T]]) -> T:
        """Run ``work`` inside a slot of ``resource_class`` and return its result.

        Raises:
            UnknownResourceClassError: If the class is not configured.
            QueueFullError: If the class's wait queue is full.
            Exception: Whatever ``work`` raised.
        """
        return await self.submit(resource_class, work)

    def _drain(self, state: ResourceClassState) -> None:
        """Start waiting jobs, head first, while the class has room."""
        while state.waiting and state.has_capacity():
            now = self._clock()
            wait = state.rate_wait(now)
            if wait > 0:
                self._schedule_wake(state, wait)
                return

            job = state.waiting.popleft()
            if job.future.done():
                continue
            self._start(state, job, now)

    def _start(self, state: ResourceClassState, job: _Job, now: float) -> None:
        state.active += 1
        if state.config.requests_per_minute is not None:
            state.start_log.append(now)

        task = asyncio.create_task(
            self._run(state, job), name=f"queue_{state.name}_{job.job_id}"
        )
        job.task = task
        self._running.add(task)
        task.add_done_callback(self._running.discard)

        logger.debug(
            "job_started",
            resource_class=state.name,
            job_id=job.job_id,
            active=state.active,
            waiting=len(state.waiting),
            waited_seconds=round(now - job.submitted_at, 3),
        )

    async def _run(self, state: ResourceClassState, job: _Job) -> None:
        try:
            result = await job.work()
        except asyncio.CancelledError:
            if not job.future.done():
                job.future.cancel()
            raise
        except Exception as e:
            logger.warning(
                "job_failed",
                resource_class=state.name,
                job_id=job.job_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            if not job.future.done():
                job.future.set_exception(e)
        else:
            if not job.future.done():
                job.future.set_result(result)
        finally:
            state.active -= 1
            logger.debug(
                "job_settled",
                resource_class=state.name,
                job_id=job.job_id,
                active=state.active,
                waiting=len(state.waiting),
            )
            self._drain(state)

    def _on_future_done(
        self,
        state: ResourceClassState,
        job: _Job,
        future: "asyncio.Future[Any]",
    ) -> None:
        if not future.cancelled():
            return
        if job.task is None:
            # Withdrawn before it ever started
            try:
                state.waiting.remove(job)
            except ValueError:
                pass
            logger.debug("job_withdrawn", resource_class=state.name, job_id=job.job_id)
        elif not job.task.done():
            job.task.cancel()
            logger.info("job_cancelled", resource_class=state.name, job_id=job.job_id)

    def _schedule_wake(self, state: ResourceClassState, delay: float) -> None:
        if state.wake_handle is not None:
            return
        loop = asyncio.get_running_loop()
        state.wake_handle = loop.call_later(delay, self._wake, state)
        logger.info(
            "rate_limit_waiting",
            resource_class=state.name,
            wait_seconds=round(delay, 2),
            waiting=len(state.waiting),
        )

    def _wake(self, state: ResourceClassState) -> None:
        state.wake_handle = None
        self._drain(state)

    def clear_queue(self, resource_class: str | None = None) -> int:
        """Reject every waiting job with ``QueueClearedError``.

        Running jobs are not affected.

        Args:
            resource_class: Clear only this class; all classes when omitted.

        Returns:
            The number of jobs discarded.
        """
        if resource_class is None:
            states = list(self._classes.values())
        else:
            states = [self._get_state(resource_class)]

        cleared = 0
        for state in states:
            while state.waiting:
                job = state.waiting.popleft()
                if not job.future.done():
                    job.future.set_exception(
                        QueueClearedError(f"Queue '{state.name}' was cleared")
                    )
                    cleared += 1
            if state.wake_handle is not None:
                state.wake_handle.cancel()
                state.wake_handle = None

        logger.info("queue_cleared", resource_class=resource_class, cleared=cleared)
        return cleared

    def get_queue_status(self) -> dict[str, dict[str, int]]:
        """Return current load per resource class.

        Returns:
            Mapping of class name to ``{"active": int, "waiting": int}``.
        """
        return {
            name: {"active": state.active, "waiting": len(state.waiting)}
            for name, state in self._classes.items()
        }


def build_resource_classes(
    concurrency: Mapping[str, int | None],
    rpm: Mapping[str, int | None] | None = None,
    max_waiting: int | None = None,
) -> dict[str, ResourceClassConfig]:
    """Combine the configured limit tables into per-class configs.

    A class named only in the RPM table gets unlimited concurrency.
    """
    rpm = rpm or {}
    return {
        name: ResourceClassConfig(
            max_concurrency=concurrency.get(name),
            requests_per_minute=rpm.get(name),
            max_waiting=max_waiting,
        )
        for name in {**concurrency, **rpm}
    }

