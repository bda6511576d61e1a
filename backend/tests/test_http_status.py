"""Tests for polling/http_status.py -- the httpx status adapter."""

import json

import httpx
import pytest

from models.schemas import TaskKind, TaskStatus
from polling.http_status import HttpTaskStatusClient, TaskSubmissionError
from polling.poller import TaskNotFoundError, TaskStatusError


def _client(handler) -> HttpTaskStatusClient:
    return HttpTaskStatusClient(
        base_url="http://status.test/",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestFetchStatus:
    """Responses map onto snapshots or the poller's error types."""

    async def test_builds_url_and_parses_body(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"taskId": "task_1", "status": "processing", "progress": 30},
            )

        snapshot = await _client(handler).fetch_status("task_1", TaskKind.MUSIC)

        assert str(seen[0].url) == "http://status.test/api/music-task?taskId=task_1"
        assert snapshot.task_id == "task_1"
        assert snapshot.kind == TaskKind.MUSIC
        assert snapshot.status == TaskStatus.PROCESSING
        assert snapshot.progress == 30

    async def test_missing_task_id_in_body_is_filled_in(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={"status": "completed", "result": {"url": "https://cdn/v.mp4"}},
            )

        snapshot = await _client(handler).fetch_status("task_9", TaskKind.VIDEO)

        assert snapshot.task_id == "task_9"
        assert snapshot.is_terminal
        assert snapshot.result == {"url": "https://cdn/v.mp4"}

    async def test_404_raises_not_found(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"error": "Task not found"})

        with pytest.raises(TaskNotFoundError):
            await _client(handler).fetch_status("task_1", TaskKind.IMAGE)

    async def test_server_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502)

        with pytest.raises(TaskStatusError, match="502"):
            await _client(handler).fetch_status("task_1", TaskKind.IMAGE)

    async def test_transport_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TaskStatusError):
            await _client(handler).fetch_status("task_1", TaskKind.IMAGE)

    async def test_invalid_body_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "exploded"})

        with pytest.raises(TaskStatusError):
            await _client(handler).fetch_status("task_1", TaskKind.IMAGE)

    async def test_non_json_body_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>gateway</html>")

        with pytest.raises(TaskStatusError):
            await _client(handler).fetch_status("task_1", TaskKind.IMAGE)

    async def test_for_kind_binds_kind(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/ppt/task"
            assert request.url.params["id"] == "task_2"
            return httpx.Response(200, json={"status": "pending"})

        fetch = _client(handler).for_kind(TaskKind.SLIDES)
        snapshot = await fetch("task_2")

        assert snapshot.kind == TaskKind.SLIDES
        assert snapshot.status == TaskStatus.PENDING

    async def test_wrapped_task_body_is_unwrapped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={"success": True, "task": {"id": "task_3", "status": "processing"}},
            )

        snapshot = await _client(handler).fetch_status("task_3", TaskKind.SLIDES)

        assert snapshot.task_id == "task_3"
        assert snapshot.status == TaskStatus.PROCESSING


class TestRoutes:
    """Each task kind has its own status route."""

    @pytest.mark.parametrize(
        ("kind", "url"),
        [
            (TaskKind.IMAGE, "http://status.test/api/image-task"),
            (TaskKind.VIDEO, "http://status.test/api/video-task"),
            (TaskKind.SPRITE, "http://status.test/api/sprite-task"),
            (TaskKind.SLIDES, "http://status.test/api/ppt/task"),
            (TaskKind.SPEECH, "http://status.test/api/tts-task"),
        ],
    )
    def test_default_routes(self, kind: TaskKind, url: str) -> None:
        client = HttpTaskStatusClient(
            base_url="http://status.test", http_client=httpx.AsyncClient()
        )
        assert client.url_for(kind) == url

    def test_route_overrides(self) -> None:
        client = HttpTaskStatusClient(
            base_url="http://status.test",
            paths={"music": "/v2/music/status"},
            id_params={},
            http_client=httpx.AsyncClient(),
        )

        assert client.url_for(TaskKind.MUSIC) == "http://status.test/v2/music/status"
        # Kinds missing from the table fall back to /api/{kind}-task
        assert client.url_for(TaskKind.SLIDES) == "http://status.test/api/slides-task"
        assert client.id_param_for(TaskKind.SLIDES) == "taskId"


class TestCreateTask:
    """create_task() returns the id of the task it created."""

    async def test_returns_task_id(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True, "taskId": "task_new"})

        create = _client(handler).creator("http://status.test/api/generate-image", {"p": 1})
        task_id = await create()

        assert task_id == "task_new"
        assert seen[0].method == "POST"
        assert json.loads(seen[0].content) == {"p": 1}

    async def test_error_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={"error": "quota"})

        with pytest.raises(TaskSubmissionError, match="429"):
            await _client(handler).create_task("http://status.test/api/generate-image")

    async def test_missing_task_id(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": True})

        with pytest.raises(TaskSubmissionError, match="no task id"):
            await _client(handler).create_task("http://status.test/api/generate-image")
