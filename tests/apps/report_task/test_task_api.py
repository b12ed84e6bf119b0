"""Tests for apps/report_task/api.py: task HTTP endpoints.

任务 API 端点测试。

Run with: pytest tests/apps/report_task/test_task_api.py -v
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from apps.queue.queue import JobQueue
from apps.report.datasource import SqliteTransactionSource
from apps.report.generator import ReportGenerator
from apps.report.renderer import PdfRenderer
from apps.report_task.api import router
from apps.report_task.models import TaskStatus
from apps.report_task.progress import ProgressTracker

PAYLOAD = {
    "root_folder": "/data",
    "branch_id": 3,
    "gate_id": 1,
    "station_id": 2,
    "filter": {"date": "2024-02-05"},
    "settings": {},
}


@pytest.fixture
def api_app(session_factory, lifecycle, make_config, tmp_path):
    app = FastAPI()
    app.include_router(router, prefix="/api/v1/tasks")
    app.state.lifecycle = lifecycle
    app.state.tracker = ProgressTracker()
    app.state.generator = ReportGenerator(
        SqliteTransactionSource(), PdfRenderer(), make_config(), tmp_path
    )
    app.state.queue = JobQueue(session_factory, MagicMock())
    return app


@pytest_asyncio.fixture
async def client(api_app):
    transport = ASGITransport(app=api_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestCreateTask:
    """Test POST /api/v1/tasks.

    验证任务创建与同步参数校验。
    """

    @pytest.mark.asyncio
    async def test_create_and_enqueue(self, client, api_app, lifecycle):
        response = await client.post("/api/v1/tasks", json=PAYLOAD)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == TaskStatus.QUEUED.value
        assert body["queue_position"] == 1
        assert body["queue_size"] == 1
        assert await api_app.state.queue.pending_task_ids() == {body["task_id"]}
        assert (await lifecycle.get_task(body["task_id"])) is not None

    @pytest.mark.asyncio
    async def test_out_of_range_id_rejected(self, client, lifecycle):
        response = await client.post("/api/v1/tasks", json={**PAYLOAD, "gate_id": 101})
        assert response.status_code == 422
        assert (await lifecycle.list_tasks())[1] == 0

    @pytest.mark.asyncio
    async def test_inverted_range_rejected(self, client, lifecycle):
        payload = {**PAYLOAD, "filter": {"range_start": "2024-02-05", "range_end": "2024-02-03"}}
        response = await client.post("/api/v1/tasks", json=payload)
        assert response.status_code == 422
        assert "invalid date range" in response.json()["detail"]
        assert (await lifecycle.list_tasks())[1] == 0

    @pytest.mark.asyncio
    async def test_unparsable_date_rejected(self, client):
        response = await client.post("/api/v1/tasks", json={**PAYLOAD, "filter": {"date": "05/02/2024"}})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_enqueue_failure_marks_task_failed(self, client, api_app, lifecycle):
        api_app.state.queue = MagicMock()
        api_app.state.queue.enqueue = AsyncMock(side_effect=RuntimeError("disk full"))

        response = await client.post("/api/v1/tasks", json=PAYLOAD)

        assert response.status_code == 500
        tasks, total = await lifecycle.list_tasks()
        assert total == 1
        assert tasks[0].status == TaskStatus.FAILED.value


class TestQueryAndCancel:
    """Test list, get, cancel, progress and download endpoints.

    验证查询、取消、进度与下载端点。
    """

    @pytest.mark.asyncio
    async def test_get_and_list(self, client):
        task_id = (await client.post("/api/v1/tasks", json=PAYLOAD)).json()["task_id"]

        response = await client.get(f"/api/v1/tasks/{task_id}")
        assert response.status_code == 200
        assert response.json()["filter"] == {"date": "2024-02-05", "origin_gate_ids": [], "limit": 0}

        listing = (await client.get("/api/v1/tasks", params={"status": "queued"})).json()
        assert listing["pagination"]["total"] == 1
        assert listing["pagination"]["total_pages"] == 1
        assert listing["items"][0]["id"] == task_id

    @pytest.mark.asyncio
    async def test_get_missing(self, client):
        assert (await client.get("/api/v1/tasks/missing")).status_code == 404

    @pytest.mark.asyncio
    async def test_cancel_queued_then_conflict(self, client):
        task_id = (await client.post("/api/v1/tasks", json=PAYLOAD)).json()["task_id"]

        response = await client.delete(f"/api/v1/tasks/{task_id}")
        assert response.status_code == 200
        assert response.json() == {"id": task_id, "status": "cancelled"}

        assert (await client.delete(f"/api/v1/tasks/{task_id}")).status_code == 409
        assert (await client.delete("/api/v1/tasks/missing")).status_code == 404

    @pytest.mark.asyncio
    async def test_progress_prefers_live_record(self, client, api_app, lifecycle):
        task_id = (await client.post("/api/v1/tasks", json=PAYLOAD)).json()["task_id"]
        await lifecycle.claim(task_id)
        await lifecycle.update_progress(task_id, "Loading transactions", 0, 0)

        durable = (await client.get(f"/api/v1/tasks/{task_id}/progress")).json()
        assert durable["live"] is False
        assert durable["stage"] == "Loading transactions"

        api_app.state.tracker.set_progress(task_id, "Appending transaction 3 of 9", 3, 9)
        live = (await client.get(f"/api/v1/tasks/{task_id}/progress")).json()
        assert live == {
            "task_id": task_id,
            "status": "running",
            "stage": "Appending transaction 3 of 9",
            "current": 3,
            "total": 9,
            "live": True,
        }

    @pytest.mark.asyncio
    async def test_download(self, client, lifecycle, tmp_path):
        task_id = (await client.post("/api/v1/tasks", json=PAYLOAD)).json()["task_id"]
        assert (await client.get(f"/api/v1/tasks/{task_id}/download")).status_code == 409

        output = tmp_path / "03_01_20240205.pdf"
        output.write_bytes(b"%PDF-1.4 test")
        await lifecycle.claim(task_id)
        await lifecycle.complete(task_id, [str(output)], output.stat().st_size)

        response = await client.get(f"/api/v1/tasks/{task_id}/download")
        assert response.status_code == 200
        assert response.content == b"%PDF-1.4 test"
        assert (await client.get(f"/api/v1/tasks/{task_id}/download", params={"index": 1})).status_code == 404
