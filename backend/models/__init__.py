"""Data models for the orchestrator backend.

This package contains:
- schemas: Pydantic models for task snapshots and API responses
"""

from models.schemas import (
    TASK_NOT_FOUND_CODE,
    TASK_NOT_FOUND_MESSAGE,
    TERMINAL_TASK_STATUSES,
    HealthResponse,
    ResourceClassStatus,
    StreamSessionInfo,
    TaskKind,
    TaskSnapshot,
    TaskStatus,
    TrackedTaskInfo,
)

__all__ = [
    "TASK_NOT_FOUND_CODE",
    "TASK_NOT_FOUND_MESSAGE",
    "TERMINAL_TASK_STATUSES",
    "HealthResponse",
    "ResourceClassStatus",
    "StreamSessionInfo",
    "TaskKind",
    "TaskSnapshot",
    "TaskStatus",
    "TrackedTaskInfo",
]
