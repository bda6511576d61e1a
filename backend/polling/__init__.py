"""Status polling for externally-hosted generation tasks.

Key Components:
    - TaskPoller: Polls one task until it is terminal, unknown, or cancelled
    - TaskTracker: One poller per (owner, task), with owner-wide teardown
    - HttpTaskStatusClient: httpx adapter for the status service
"""

from polling.http_status import HttpTaskStatusClient, TaskSubmissionError
from polling.poller import (
    PollerState,
    StatusFetcher,
    TaskNotFoundError,
    TaskPoller,
    TaskStatusError,
    UpdateObserver,
    poll_interval_for,
)
from polling.registry import TaskTracker

__all__ = [
    "HttpTaskStatusClient",
    "TaskSubmissionError",
    "PollerState",
    "StatusFetcher",
    "TaskNotFoundError",
    "TaskPoller",
    "TaskStatusError",
    "TaskTracker",
    "UpdateObserver",
    "poll_interval_for",
]
