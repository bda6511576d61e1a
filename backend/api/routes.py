"""HTTP API routes for the orchestrator backend.

This module defines the endpoints for inspecting and controlling the
submission queue, task pollers and stream sessions, plus a health check.
Live stream events are delivered over WebSocket in websocket.py.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated, Any

import structlog
from fastapi import APIRouter, HTTPException, Path, status
from pydantic import BaseModel, Field

from events import StreamAlreadyRunningError
from models.schemas import (
    HealthResponse,
    ResourceClassStatus,
    StreamSessionInfo,
    TaskKind,
    TaskSnapshot,
    TrackedTaskInfo,
)
from polling import TaskSubmissionError
from submission_queue import QueueClearedError, QueueFullError, UnknownResourceClassError

if TYPE_CHECKING:
    from orchestrator import Orchestrator

logger = structlog.get_logger(__name__)

router = APIRouter()


# -----------------------------------------------------------------------------
# Request models
# -----------------------------------------------------------------------------


class TrackTaskRequest(BaseModel):
    """Request to start polling a task."""

    owner: str = Field(min_length=1, description="UI context that wants updates")
    task_id: str = Field(min_length=1)
    kind: TaskKind


class SubmitTaskRequest(BaseModel):
    """Request to create a task inside a resource-class slot and poll it."""

    owner: str = Field(min_length=1, description="UI context that wants updates")
    resource_class: str = Field(min_length=1, description="Class whose limits apply")
    kind: TaskKind
    create_url: str = Field(min_length=1, description="Endpoint that creates the task")
    payload: dict[str, Any] | None = None


class StartStreamRequest(BaseModel):
    """Request to open a streaming agent call."""

    session_id: str = Field(min_length=1)
    url: str = Field(min_length=1, description="Streaming endpoint to POST to")
    payload: dict[str, Any] | None = None
    headers: dict[str, str] | None = None


# Orchestrator dependency (set during application startup)
_orchestrator: Orchestrator | None = None


def set_orchestrator(orchestrator: Orchestrator) -> None:
    """Set the orchestrator instance for the routes.

    This should be called during application startup.

    Args:
        orchestrator: The Orchestrator instance to use for all routes.
    """
    global _orchestrator
    _orchestrator = orchestrator
    logger.info("orchestrator_configured")


def get_orchestrator() -> Orchestrator:
    """Get the orchestrator instance.

    Raises:
        RuntimeError: If the orchestrator has not been configured.
    """
    if _orchestrator is None:
        logger.error("orchestrator_not_configured")
        raise RuntimeError(
            "Orchestrator not configured. Call set_orchestrator() during startup."
        )
    return _orchestrator


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health_check() -> HealthResponse:
    """Report liveness and current load."""
    orchestrator = get_orchestrator()
    queue_status = orchestrator.queue.get_queue_status()
    return HealthResponse(
        status="healthy",
        active_jobs=sum(entry["active"] for entry in queue_status.values()),
        waiting_jobs=sum(entry["waiting"] for entry in queue_status.values()),
        tracked_tasks=len(orchestrator.tracker),
        open_streams=len(orchestrator.stream_client.get_open_sessions()),
    )


# -----------------------------------------------------------------------------
# Submission queue
# -----------------------------------------------------------------------------


@router.get(
    "/api/queue/status",
    response_model=dict[str, ResourceClassStatus],
    summary="Queue status per resource class",
)
async def get_queue_status() -> dict[str, ResourceClassStatus]:
    """Return active and waiting job counts for every resource class."""
    queue_status = get_orchestrator().queue.get_queue_status()
    return {name: ResourceClassStatus(**counts) for name, counts in queue_status.items()}


@router.delete(
    "/api/queue/{resource_class}",
    summary="Clear a resource class's wait queue",
    description="Reject every waiting job of the class. Running jobs are not affected.",
)
async def clear_queue(
    resource_class: Annotated[str, Path(description="Resource class name")],
) -> dict[str, object]:
    """Discard the waiting jobs of one resource class."""
    try:
        cleared = get_orchestrator().queue.clear_queue(resource_class)
    except UnknownResourceClassError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Resource class {resource_class} not found",
        ) from None
    return {"resource_class": resource_class, "cleared": cleared}


# -----------------------------------------------------------------------------
# Task polling
# -----------------------------------------------------------------------------


@router.get(
    "/api/tasks",
    response_model=list[TrackedTaskInfo],
    summary="List tasks being polled",
)
async def list_tracked_tasks() -> list[TrackedTaskInfo]:
    return get_orchestrator().tracker.get_status()


@router.post(
    "/api/tasks",
    response_model=TrackedTaskInfo,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start polling a task",
    description=(
        "Idempotent: tracking a task the owner already polls returns the running "
        "poller, and a task that already finished is not polled again."
    ),
)
async def track_task(request: TrackTaskRequest) -> TrackedTaskInfo:
    """Start (or join) polling of one task for one owner."""
    poller = get_orchestrator().track_task(request.owner, request.task_id, request.kind)
    return TrackedTaskInfo(
        owner=request.owner,
        task_id=request.task_id,
        kind=poller.kind,
        interval_seconds=poller.interval_seconds,
        polls=poller.polls,
        last_status=poller.last_status,
        last_polled_at=poller.last_polled_at,
    )


@router.post(
    "/api/tasks/submit",
    response_model=TrackedTaskInfo,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Create a task through the queue and poll it",
    description=(
        "Waits for a slot of the resource class, POSTs the creation request, "
        "then starts polling the returned task id."
    ),
)
async def submit_task(request: SubmitTaskRequest) -> TrackedTaskInfo:
    orchestrator = get_orchestrator()
    try:
        poller = await orchestrator.submit_task(
            request.owner,
            request.resource_class,
            request.kind,
            orchestrator.status_client.creator(request.create_url, request.payload),
        )
    except UnknownResourceClassError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Resource class {request.resource_class} not found",
        ) from None
    except QueueFullError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(e)
        ) from e
    except QueueClearedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except TaskSubmissionError as e:
        logger.warning("task_submission_failed", owner=request.owner, error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e

    return TrackedTaskInfo(
        owner=request.owner,
        task_id=poller.task_id,
        kind=poller.kind,
        interval_seconds=poller.interval_seconds,
        polls=poller.polls,
        last_status=poller.last_status,
        last_polled_at=poller.last_polled_at,
    )


@router.get(
    "/api/tasks/{owner}/{task_id}/outcome",
    response_model=TaskSnapshot,
    summary="Get a task's terminal snapshot",
)
async def get_task_outcome(
    owner: Annotated[str, Path(description="Owner that tracked the task")],
    task_id: Annotated[str, Path(description="The task ID")],
) -> TaskSnapshot:
    """Return the completed or failed snapshot recorded for a task."""
    outcome = get_orchestrator().task_outcomes.get((owner, task_id))
    if outcome is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No outcome recorded for task {task_id}",
        )
    return outcome


@router.delete(
    "/api/tasks/{owner}/{task_id}",
    summary="Stop polling one task",
)
async def untrack_task(
    owner: Annotated[str, Path(description="Owner that tracked the task")],
    task_id: Annotated[str, Path(description="The task ID")],
) -> dict[str, object]:
    cancelled = get_orchestrator().tracker.untrack(owner, task_id)
    if not cancelled:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task {task_id} is not being polled for {owner}",
        )
    logger.info("task_untracked", owner=owner, task_id=task_id)
    return {"owner": owner, "task_id": task_id, "cancelled": True}


@router.delete(
    "/api/tasks/{owner}",
    summary="Release an owner",
    description="Stop every poller the owner started, e.g. when its canvas node is removed.",
)
async def release_owner(
    owner: Annotated[str, Path(description="Owner to release")],
) -> dict[str, object]:
    cancelled = get_orchestrator().release_owner(owner)
    return {"owner": owner, "cancelled": cancelled}


# -----------------------------------------------------------------------------
# Stream sessions
# -----------------------------------------------------------------------------


@router.get(
    "/api/streams",
    response_model=list[StreamSessionInfo],
    summary="List open stream sessions",
)
async def list_streams() -> list[StreamSessionInfo]:
    orchestrator = get_orchestrator()
    return [
        StreamSessionInfo(
            session_id=session.session_id,
            status=session.status.value,
            event_count=len(session.events),
            tool_calls=len(session.tool_calls),
            subscribers=orchestrator.dispatcher.get_subscriber_count(session.session_id),
        )
        for session in orchestrator.stream_client.get_open_sessions()
    ]


@router.post(
    "/api/streams",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Open a stream session",
    description="Start a streaming request in the background. Subscribe via /ws/streams/{id}.",
)
async def start_stream(request: StartStreamRequest) -> dict[str, str]:
    try:
        get_orchestrator().start_stream(
            request.session_id,
            request.url,
            request.payload,
            headers=request.headers,
        )
    except StreamAlreadyRunningError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    logger.info("stream_requested", session_id=request.session_id)
    return {
        "session_id": request.session_id,
        "websocket_url": f"/ws/streams/{request.session_id}",
    }


@router.get(
    "/api/streams/{session_id}",
    summary="Get an open stream session",
)
async def get_stream(
    session_id: Annotated[str, Path(description="The session ID")],
) -> dict[str, Any]:
    session = get_orchestrator().stream_client.get_session(session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        )
    return session.snapshot()


@router.delete(
    "/api/streams/{session_id}",
    summary="Abort a stream session",
)
async def abort_stream(
    session_id: Annotated[str, Path(description="The session ID")],
) -> dict[str, object]:
    """Abort a running stream, closing its upstream connection."""
    if not get_orchestrator().stream_client.abort(session_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} is not streaming",
        )
    return {"session_id": session_id, "aborted": True}
