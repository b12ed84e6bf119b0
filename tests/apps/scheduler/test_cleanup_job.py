"""Tests for apps/scheduler/jobs/cleanup_job.py: output retention.

输出文件保留期清理测试。

Run with: pytest tests/apps/scheduler/test_cleanup_job.py -v
"""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock

import pytest

from apps.report_task.models import TaskStatus
from apps.scheduler.jobs.cleanup_job import run_cleanup_job


async def _completed_task(lifecycle, make_metadata, paths, size=10):
    task = await lifecycle.create_task(make_metadata())
    await lifecycle.claim(task.id)
    await lifecycle.complete(task.id, [str(p) for p in paths], size)
    return task


class TestCleanupJob:
    """Test removal of expired outputs.

    验证过期输出文件的删除与任务状态。
    """

    @pytest.mark.asyncio
    async def test_removes_expired_outputs(self, lifecycle, clock, make_metadata, make_config, tmp_path):
        first, second = tmp_path / "a.pdf", tmp_path / "b.pdf"
        first.write_bytes(b"%PDF")
        second.write_bytes(b"%PDF")
        old = await _completed_task(lifecycle, make_metadata, [first, second])

        clock.advance(days=6)
        fresh_file = tmp_path / "fresh.pdf"
        fresh_file.write_bytes(b"%PDF")
        fresh = await _completed_task(lifecycle, make_metadata, [fresh_file])

        clock.advance(days=2)
        queue = AsyncMock()
        queue.purge_finished.return_value = 4

        results = await run_cleanup_job(lifecycle, queue, make_config(max_output_age_days="7"))

        assert results["removed"] == 1
        assert results["files_deleted"] == 2
        assert results["jobs_purged"] == 4
        assert not first.exists() and not second.exists()
        assert fresh_file.exists()

        removed = await lifecycle.get_task(old.id)
        assert removed.status == TaskStatus.REMOVED.value
        assert removed.output_file_path == ""
        assert (await lifecycle.get_task(fresh.id)).status == TaskStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_missing_file_still_marks_removed(
        self, lifecycle, clock, make_metadata, make_config, tmp_path, caplog
    ):
        task = await _completed_task(lifecycle, make_metadata, [tmp_path / "gone.pdf"])
        clock.advance(days=8)

        with caplog.at_level(logging.WARNING, logger="apps.scheduler.jobs.cleanup_job"):
            results = await run_cleanup_job(lifecycle, None, make_config())

        assert results["file_errors"] == 1
        assert results["removed"] == 1
        assert "already gone" in caplog.text
        assert (await lifecycle.get_task(task.id)).status == TaskStatus.REMOVED.value

    @pytest.mark.asyncio
    async def test_invalid_age_uses_default(self, lifecycle, clock, make_metadata, make_config, tmp_path):
        await _completed_task(lifecycle, make_metadata, [tmp_path / "x.pdf"])
        clock.advance(days=5)

        results = await run_cleanup_job(lifecycle, None, make_config(max_output_age_days="abc"))

        assert results["removed"] == 0
