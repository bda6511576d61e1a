"""httpx adapter for the task status service.

The status service answers ``GET {base_url}{path}?{id_param}=...`` with a
JSON task object, where the path and id parameter depend on the task kind
(``/api/image-task?taskId=``, ``/api/ppt/task?id=``, ...). Some routes wrap
the task as ``{"success": true, "task": {...}}``. A 404 means the service no
longer knows the task, which usually means it restarted and lost its
in-memory task table.
"""

from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from config import settings
from models.schemas import TaskKind, TaskSnapshot
from polling.poller import TaskNotFoundError, TaskStatusError

logger = structlog.get_logger(__name__)

DEFAULT_ID_PARAM = "taskId"

# Keys a creation response has used for the new task's id, in lookup order
_CREATED_ID_KEYS = ("taskId", "task_id", "id")


class TaskSubmissionError(Exception):
    """Raised when a task creation request fails or returns no task id."""


class HttpTaskStatusClient:
    """Fetches task snapshots over HTTP.

    Attributes:
        base_url: Status service origin
        paths: Status route per task kind
        id_params: Query parameter carrying the task id, per kind; kinds not
            listed use ``taskId``
    """

    def __init__(
        self,
        base_url: str | None = None,
        paths: dict[str, str] | None = None,
        id_params: dict[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.task_status_base_url).rstrip("/")
        self.paths = dict(settings.task_status_paths if paths is None else paths)
        self.id_params = dict(
            settings.task_status_id_params if id_params is None else id_params
        )
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=settings.status_request_timeout_seconds
        )

    def url_for(self, kind: TaskKind) -> str:
        kind = TaskKind(kind)
        path = self.paths.get(kind.value, f"/api/{kind.value}-task")
        return self.base_url + path

    def id_param_for(self, kind: TaskKind) -> str:
        return self.id_params.get(TaskKind(kind).value, DEFAULT_ID_PARAM)

    async def fetch_status(self, task_id: str, kind: TaskKind) -> TaskSnapshot:
        """Fetch the current snapshot of one task.

        Raises:
            TaskNotFoundError: The service answered 404.
            TaskStatusError: Any other failed request or an unreadable body.
        """
        url = self.url_for(kind)
        try:
            response = await self._http_client.get(
                url, params={self.id_param_for(kind): task_id}
            )
        except httpx.HTTPError as e:
            raise TaskStatusError(f"Status request for '{task_id}' failed: {e}") from e

        if response.status_code == 404:
            raise TaskNotFoundError(task_id)
        if response.is_error:
            raise TaskStatusError(
                f"Status request for '{task_id}' returned HTTP {response.status_code}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise TaskStatusError(f"Status response for '{task_id}' is not JSON") from e
        if isinstance(body, dict) and "status" not in body and isinstance(body.get("task"), dict):
            body = body["task"]
        if not isinstance(body, dict):
            raise TaskStatusError(f"Status response for '{task_id}' is not an object")

        body.setdefault("taskId", task_id)
        body["kind"] = TaskKind(kind).value
        try:
            return TaskSnapshot.model_validate(body)
        except ValidationError as e:
            logger.warning(
                "task_status_invalid",
                task_id=task_id,
                kind=str(kind),
                error=str(e),
            )
            raise TaskStatusError(f"Status response for '{task_id}' is invalid") from e

    def for_kind(self, kind: TaskKind) -> Callable[[str], Awaitable[TaskSnapshot]]:
        """Bind ``kind`` so the result can be passed to a TaskPoller as ``fetch_status``."""

        async def fetch(task_id: str) -> TaskSnapshot:
            return await self.fetch_status(task_id, kind)

        return fetch

    async def create_task(self, url: str, payload: Any = None) -> str:
        """POST a task creation request and return the new task's id.

        Raises:
            TaskSubmissionError: The request failed or the body has no task id.
        """
        try:
            response = await self._http_client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise TaskSubmissionError(f"Task creation at '{url}' failed: {e}") from e
        if response.is_error:
            raise TaskSubmissionError(
                f"Task creation at '{url}' returned HTTP {response.status_code}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise TaskSubmissionError(f"Task creation at '{url}' returned no JSON") from e
        if isinstance(body, dict):
            for key in _CREATED_ID_KEYS:
                task_id = body.get(key)
                if isinstance(task_id, str) and task_id:
                    logger.info("task_created", url=url, task_id=task_id)
                    return task_id
        raise TaskSubmissionError(f"Task creation at '{url}' returned no task id")

    def creator(self, url: str, payload: Any = None) -> Callable[[], Awaitable[str]]:
        """Bind a creation request so it can be queued as zero-argument work."""

        async def create() -> str:
            return await self.create_task(url, payload)

        return create

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()
