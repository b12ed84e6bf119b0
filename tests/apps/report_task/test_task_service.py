"""Tests for apps/report_task/service.py: task lifecycle.

报告任务生命周期测试。

Run with: pytest tests/apps/report_task/test_task_service.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from apps.report_task.exceptions import TaskNotFoundError, TaskStateError
from apps.report_task.models import TaskStatus
from apps.report_task.service import TaskLifecycleManager


class TestCreateAndQuery:
    """Test task creation and queries.

    验证任务创建与查询。
    """

    @pytest.mark.asyncio
    async def test_create_task_is_queued(self, lifecycle, make_metadata):
        task = await lifecycle.create_task(make_metadata(date="2024-02-05", settings={"page_size": "A3"}))

        stored = await lifecycle.get_task(task.id)
        assert stored.status == TaskStatus.QUEUED.value
        assert stored.output_file_path == ""
        assert stored.output_file_size == 0
        metadata = stored.to_metadata()
        assert metadata.filter.date == "2024-02-05"
        assert metadata.settings == {"page_size": "A3"}

    @pytest.mark.asyncio
    async def test_queue_position(self, lifecycle, clock, make_metadata):
        first = await lifecycle.create_task(make_metadata())
        clock.advance(seconds=1)
        second = await lifecycle.create_task(make_metadata())

        assert await lifecycle.queue_position(first.id) == 1
        assert await lifecycle.queue_position(second.id) == 2
        assert await lifecycle.count_by_status(TaskStatus.QUEUED.value) == 2

        await lifecycle.claim(first.id)
        assert await lifecycle.queue_position(first.id) == 0
        assert await lifecycle.queue_position(second.id) == 1

    @pytest.mark.asyncio
    async def test_list_tasks_paginates_newest_first(self, lifecycle, clock, make_metadata):
        ids = []
        for _ in range(3):
            ids.append((await lifecycle.create_task(make_metadata())).id)
            clock.advance(seconds=1)

        page, total = await lifecycle.list_tasks(page=1, limit=2)
        assert total == 3
        assert [t.id for t in page] == [ids[2], ids[1]]

        await lifecycle.cancel(ids[0])
        cancelled, total = await lifecycle.list_tasks(status=TaskStatus.CANCELLED.value)
        assert total == 1 and cancelled[0].id == ids[0]

    @pytest.mark.asyncio
    async def test_find_queued_without_job(self, lifecycle, make_metadata):
        a = await lifecycle.create_task(make_metadata())
        b = await lifecycle.create_task(make_metadata())
        orphans = await lifecycle.find_queued_without_job({a.id})
        assert [t.id for t in orphans] == [b.id]


class TestTransitions:
    """Test compare-and-set status transitions.

    验证带状态条件的状态转换。
    """

    @pytest.mark.asyncio
    async def test_claim_complete(self, lifecycle, make_metadata):
        task = await lifecycle.create_task(make_metadata())

        claimed = await lifecycle.claim(task.id)
        assert claimed.status == TaskStatus.RUNNING.value

        assert await lifecycle.complete(task.id, ["/out/a.pdf", "/out/b.pdf"], 300)
        done = await lifecycle.get_task(task.id)
        assert done.status == TaskStatus.COMPLETED.value
        assert done.output_file_path == "/out/a.pdf,/out/b.pdf"
        assert done.output_paths == ["/out/a.pdf", "/out/b.pdf"]
        assert done.output_file_size == 300

    @pytest.mark.asyncio
    async def test_exclusive_claim(self, file_session_factory, clock, make_metadata):
        """Two concurrent claims: exactly one wins.

        并发领取同一任务时只有一个成功。
        """
        lifecycle = TaskLifecycleManager(file_session_factory, clock=clock)
        task = await lifecycle.create_task(make_metadata())
        results = await asyncio.gather(lifecycle.claim(task.id), lifecycle.claim(task.id))
        assert sum(1 for r in results if r is not None) == 1

    @pytest.mark.asyncio
    async def test_cancel_before_claim(self, lifecycle, make_metadata):
        task = await lifecycle.create_task(make_metadata())

        cancelled = await lifecycle.cancel(task.id)
        assert cancelled.status == TaskStatus.CANCELLED.value

        assert await lifecycle.claim(task.id) is None
        assert (await lifecycle.get_task(task.id)).status == TaskStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_cancel_while_running_is_rejected(self, lifecycle, make_metadata):
        task = await lifecycle.create_task(make_metadata())
        await lifecycle.claim(task.id)

        with pytest.raises(TaskStateError) as exc_info:
            await lifecycle.cancel(task.id)
        assert exc_info.value.status == TaskStatus.RUNNING.value

        assert await lifecycle.complete(task.id, ["/out/a.pdf"], 10)
        assert (await lifecycle.get_task(task.id)).status == TaskStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_cancel_unknown_task(self, lifecycle):
        with pytest.raises(TaskNotFoundError):
            await lifecycle.cancel("missing")

    @pytest.mark.asyncio
    async def test_fail_clears_output(self, lifecycle, make_metadata):
        task = await lifecycle.create_task(make_metadata())
        await lifecycle.claim(task.id)

        assert await lifecycle.fail(task.id, "data file not found")
        failed = await lifecycle.get_task(task.id)
        assert failed.status == TaskStatus.FAILED.value
        assert failed.error_message == "data file not found"
        assert failed.output_file_path == ""

    @pytest.mark.asyncio
    async def test_failed_task_reclaimed_for_retry(self, lifecycle, make_metadata):
        task = await lifecycle.create_task(make_metadata())
        await lifecycle.claim(task.id)
        await lifecycle.fail(task.id, "boom")

        retried = await lifecycle.claim(task.id)
        assert retried.status == TaskStatus.RUNNING.value
        assert retried.error_message == ""

    @pytest.mark.asyncio
    async def test_running_task_taken_over_only_when_allowed(self, lifecycle, make_metadata):
        task = await lifecycle.create_task(make_metadata())
        await lifecycle.claim(task.id)
        await lifecycle.update_progress(task.id, "Appending transaction 3 of 9", 3, 9)

        assert await lifecycle.claim(task.id) is None
        taken = await lifecycle.claim(task.id, allow_running=True)
        assert taken.status == TaskStatus.RUNNING.value
        assert (taken.progress_current, taken.progress_total) == (0, 0)

    @pytest.mark.asyncio
    async def test_complete_fills_progress_to_total(self, lifecycle, make_metadata):
        task = await lifecycle.create_task(make_metadata())
        await lifecycle.claim(task.id)
        await lifecycle.update_progress(task.id, "Appending transaction 4 of 9", 4, 9)

        await lifecycle.complete(task.id, ["/out/a.pdf"], 10)

        done = await lifecycle.get_task(task.id)
        assert (done.progress_stage, done.progress_current, done.progress_total) == ("completed", 9, 9)

    @pytest.mark.asyncio
    async def test_complete_requires_running(self, lifecycle, make_metadata):
        task = await lifecycle.create_task(make_metadata())
        assert not await lifecycle.complete(task.id, ["/out/a.pdf"], 1)
        assert (await lifecycle.get_task(task.id)).output_file_path == ""

    @pytest.mark.asyncio
    async def test_update_progress_only_while_running(self, lifecycle, make_metadata):
        task = await lifecycle.create_task(make_metadata())
        assert not await lifecycle.update_progress(task.id, "Loading", 1, 2)

        await lifecycle.claim(task.id)
        assert await lifecycle.update_progress(task.id, "Loading", 15, 10)
        stored = await lifecycle.get_task(task.id)
        assert (stored.progress_stage, stored.progress_current, stored.progress_total) == ("Loading", 10, 10)


class TestRetention:
    """Test expired output lookup and removal.

    验证保留期查询与移除。
    """

    @pytest.mark.asyncio
    async def test_find_expired_and_mark_removed(self, lifecycle, clock, make_metadata):
        old = await lifecycle.create_task(make_metadata())
        await lifecycle.claim(old.id)
        await lifecycle.complete(old.id, ["/out/old.pdf"], 10)

        clock.advance(days=5)
        fresh = await lifecycle.create_task(make_metadata())
        await lifecycle.claim(fresh.id)
        await lifecycle.complete(fresh.id, ["/out/fresh.pdf"], 10)

        clock.advance(days=3)
        expired = await lifecycle.find_expired_completed(7)
        assert [t.id for t in expired] == [old.id]

        assert await lifecycle.mark_removed(expired[0])
        removed = await lifecycle.get_task(old.id)
        assert removed.status == TaskStatus.REMOVED.value
        assert removed.output_file_path == ""
        assert removed.output_file_size == 0
