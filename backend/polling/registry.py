"""Registry of task pollers, grouped by owner.

An owner is whatever UI context requested the polling (typically a canvas
node id). The tracker guarantees at most one poller per ``(owner, task_id)``
and tears every poller of an owner down when that owner goes away, so no
poller outlives the context that started it.
"""

import structlog

from models.schemas import TaskKind, TrackedTaskInfo
from polling.poller import StatusFetcher, TaskPoller, UpdateObserver

logger = structlog.get_logger(__name__)


class TaskTracker:
    """Starts, deduplicates and cancels task pollers.

    Pollers that stop on their own (terminal status or unknown task) leave
    the active registry as soon as their loop ends. Their outcome is kept
    until the owner is released, and tracking the same task again returns
    the finished poller instead of polling a terminal task a second time.

    Usage:
        >>> tracker = TaskTracker()
        >>> tracker.track("node_1", "task_abc", TaskKind.VIDEO, fetch, on_update)
        >>> tracker.release_owner("node_1")
    """

    def __init__(self) -> None:
        self._pollers: dict[tuple[str, str], TaskPoller] = {}
        self._finished: dict[tuple[str, str], TaskPoller] = {}
        logger.info("task_tracker_initialized")

    def track(
        self,
        owner: str,
        task_id: str,
        kind: TaskKind,
        fetch_status: StatusFetcher,
        on_update: UpdateObserver,
        interval_seconds: float | None = None,
    ) -> TaskPoller:
        """Start polling a task for an owner.

        Calling this again for a task the owner is already polling returns
        the existing poller and starts nothing new. So does calling it for a
        task that already reached a terminal status for this owner.

        Args:
            owner: The UI context requesting updates.
            task_id: Server-assigned task id.
            kind: Task kind.
            fetch_status: Coroutine function returning the task's snapshot.
            on_update: Receives every snapshot.
            interval_seconds: Override for the per-kind interval.

        Returns:
            The poller for ``(owner, task_id)``.
        """
        key = (owner, task_id)
        finished = self._finished.get(key)
        if finished is not None:
            logger.debug("task_already_finished", owner=owner, task_id=task_id)
            return finished

        existing = self._pollers.get(key)
        if existing is not None:
            if existing.is_active:
                logger.debug("task_already_tracked", owner=owner, task_id=task_id)
                return existing
            if existing.outcome is not None:
                # Terminal, but its done-callback has not run yet
                return existing

        poller = TaskPoller(
            task_id,
            kind,
            fetch_status,
            on_update,
            interval_seconds=interval_seconds,
        )
        self._pollers[key] = poller
        poller.start()
        poller.add_done_callback(lambda p, key=key: self._forget(key, p))
        logger.info("task_tracked", owner=owner, task_id=task_id, kind=poller.kind.value)
        return poller

    def _forget(self, key: tuple[str, str], poller: TaskPoller) -> None:
        # A newer poller may have replaced this one under the same key
        if self._pollers.get(key) is poller:
            del self._pollers[key]
            if poller.outcome is not None:
                self._finished[key] = poller

    def get_poller(self, owner: str, task_id: str) -> TaskPoller | None:
        """Get the active poller for a task, if it is still polling."""
        return self._pollers.get((owner, task_id))

    def get_finished(self, owner: str, task_id: str) -> TaskPoller | None:
        """Get the poller that brought a task to a terminal status."""
        return self._finished.get((owner, task_id))

    def untrack(self, owner: str, task_id: str) -> bool:
        """Stop polling one task for one owner.

        Returns:
            True if an active poller was cancelled.
        """
        poller = self._pollers.pop((owner, task_id), None)
        if poller is None:
            return False
        was_active = poller.is_active
        poller.cancel()
        return was_active

    def release_owner(self, owner: str) -> int:
        """Cancel every poller started for an owner and forget its outcomes.

        Returns:
            The number of active pollers cancelled.
        """
        keys = [key for key in self._pollers if key[0] == owner]
        for key in keys:
            self._pollers.pop(key).cancel()
        for key in [key for key in self._finished if key[0] == owner]:
            del self._finished[key]
        if keys:
            logger.info("owner_released", owner=owner, pollers_cancelled=len(keys))
        return len(keys)

    def cancel_all(self) -> int:
        """Cancel every tracked poller. Used on shutdown."""
        pollers = list(self._pollers.values())
        self._pollers.clear()
        self._finished.clear()
        for poller in pollers:
            poller.cancel()
        logger.info("all_pollers_cancelled", count=len(pollers))
        return len(pollers)

    def get_status(self) -> list[TrackedTaskInfo]:
        """Describe every task currently being polled."""
        return [
            TrackedTaskInfo(
                owner=owner,
                task_id=task_id,
                kind=poller.kind,
                interval_seconds=poller.interval_seconds,
                polls=poller.polls,
                last_status=poller.last_status,
                last_polled_at=poller.last_polled_at,
            )
            for (owner, task_id), poller in self._pollers.items()
        ]

    def __len__(self) -> int:
        return len(self._pollers)
