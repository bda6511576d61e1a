"""Pydantic schemas for task snapshots and API response models.

This module defines the data models shared by the task poller, the HTTP
status adapter and the HTTP API. All models use Pydantic v2.
"""

from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class TaskKind(StrEnum):
    """Kinds of externally-hosted generation tasks."""

    IMAGE = "image"
    VIDEO = "video"
    MUSIC = "music"
    SPEECH = "speech"
    SLIDES = "slides"
    SPRITE = "sprite"


class TaskStatus(StrEnum):
    """Task lifecycle status as reported by the status service."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

# error_code attached to the synthetic snapshot delivered when a task is unknown
TASK_NOT_FOUND_CODE = "task_not_found"
TASK_NOT_FOUND_MESSAGE = "Task not found, the service may have restarted"


class TaskSnapshot(BaseModel):
    """One observation of an externally-hosted task.

    Snapshots are immutable. A snapshot whose status is completed or failed
    is terminal: its task is never polled again.

    The status service speaks camelCase (``taskId``); both spellings are
    accepted on input.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    task_id: str = Field(
        validation_alias=AliasChoices("task_id", "taskId", "id"),
        description="Opaque server-assigned task identifier",
    )
    kind: TaskKind | None = Field(default=None, description="Task kind")
    status: TaskStatus
    progress: float | None = Field(default=None, ge=0.0)
    result: Any = None
    error: str | None = None
    error_code: str | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition can occur."""
        return self.status in TERMINAL_TASK_STATUSES


class ResourceClassStatus(BaseModel):
    """Observed load of one resource class."""

    active: int = Field(ge=0, description="Jobs currently running")
    waiting: int = Field(ge=0, description="Jobs waiting for a slot")


class TrackedTaskInfo(BaseModel):
    """A task currently being polled."""

    owner: str
    task_id: str
    kind: TaskKind
    interval_seconds: float
    polls: int
    last_status: TaskStatus | None = None
    last_polled_at: float | None = None


class StreamSessionInfo(BaseModel):
    """Summary of an open stream session."""

    session_id: str
    status: str
    event_count: int
    tool_calls: int
    subscribers: int


class HealthResponse(BaseModel):
    """Response for health check endpoint."""

    status: str = Field(default="healthy")
    version: str = Field(default="0.1.0")
    active_jobs: int = Field(default=0, ge=0)
    waiting_jobs: int = Field(default=0, ge=0)
    tracked_tasks: int = Field(default=0, ge=0)
    open_streams: int = Field(default=0, ge=0)
