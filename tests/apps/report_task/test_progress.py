"""Tests for apps/report_task/progress.py: live progress.

实时进度表与节流持久化测试。

Run with: pytest tests/apps/report_task/test_progress.py -v
"""

from __future__ import annotations

import asyncio
import threading
from unittest.mock import AsyncMock

import pytest

from apps.report_task.progress import ProgressTracker, ThrottledProgressSink, clamp_progress


class TestClampProgress:
    """Test progress clamping.

    验证进度值的裁剪规则。
    """

    def test_current_clamped_to_total(self):
        assert clamp_progress(15, 10) == (10, 10)

    def test_negative_values(self):
        assert clamp_progress(-3, -1) == (0, 0)

    def test_unknown_total_keeps_current(self):
        assert clamp_progress(7, 0) == (7, 0)


class TestProgressTracker:
    """Test the in-memory progress table.

    验证进程内进度表。
    """

    def test_set_get_clear(self):
        tracker = ProgressTracker()
        record = tracker.set_progress("t1", "Loading", 15, 10)
        assert (record.current, record.total) == (10, 10)
        assert tracker.get_progress("t1") == record
        tracker.clear("t1")
        assert tracker.get_progress("t1") is None
        tracker.clear("t1")

    def test_concurrent_writers(self):
        tracker = ProgressTracker()

        def write(task_id):
            for i in range(200):
                tracker.set_progress(task_id, "step", i, 199)

        threads = [threading.Thread(target=write, args=(f"t{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        snapshot = tracker.snapshot()
        assert set(snapshot) == {"t0", "t1", "t2", "t3"}
        assert all(r.current == 199 for r in snapshot.values())

    def test_to_dict(self):
        record = ProgressTracker().set_progress("t1", "Rendering", 1, 2)
        assert record.to_dict() == {"stage": "Rendering", "current": 1, "total": 2}


class TestThrottledProgressSink:
    """Test throttled durable progress writes.

    验证持久化进度写入的节流。
    """

    @pytest.mark.asyncio
    async def test_throttles_durable_writes(self):
        tracker = ProgressTracker()
        writer = AsyncMock(return_value=True)
        now = [0.0]
        sink = ThrottledProgressSink(
            tracker, "t1", writer, asyncio.get_running_loop(), interval=1.0, clock=lambda: now[0]
        )

        sink("a", 1, 10)
        now[0] = 0.5
        sink("b", 2, 10)
        now[0] = 1.2
        sink("c", 3, 10)
        await sink.drain()

        assert tracker.get_progress("t1").stage == "c"
        assert [call.args for call in writer.await_args_list] == [("t1", "a", 1, 10), ("t1", "c", 3, 10)]

    @pytest.mark.asyncio
    async def test_callable_from_worker_thread(self):
        tracker = ProgressTracker()
        writer = AsyncMock(return_value=True)
        sink = ThrottledProgressSink(tracker, "t1", writer, asyncio.get_running_loop(), interval=0)

        await asyncio.to_thread(sink, "from thread", 5, 3)
        await sink.drain()

        assert tracker.get_progress("t1").current == 3
        writer.assert_awaited_once_with("t1", "from thread", 3, 3)

    @pytest.mark.asyncio
    async def test_writer_failure_is_logged_not_raised(self):
        tracker = ProgressTracker()
        writer = AsyncMock(side_effect=RuntimeError("database is locked"))
        sink = ThrottledProgressSink(tracker, "t1", writer, asyncio.get_running_loop())

        sink("a", 1, 2)
        await sink.drain()

        assert tracker.get_progress("t1").stage == "a"

    @pytest.mark.asyncio
    async def test_drain_persists_update_skipped_by_throttle(self):
        tracker = ProgressTracker()
        writer = AsyncMock(return_value=True)
        now = [0.0]
        sink = ThrottledProgressSink(
            tracker, "t1", writer, asyncio.get_running_loop(), interval=1.0, clock=lambda: now[0]
        )

        sink("a", 1, 10)
        now[0] = 0.3
        sink("b", 9, 10)
        await sink.drain()
        await sink.drain()

        assert [call.args for call in writer.await_args_list] == [("t1", "a", 1, 10), ("t1", "b", 9, 10)]

    @pytest.mark.asyncio
    async def test_closed_sink_ignores_late_updates(self):
        tracker = ProgressTracker()
        writer = AsyncMock(return_value=True)
        sink = ThrottledProgressSink(tracker, "t1", writer, asyncio.get_running_loop(), interval=0)

        sink("a", 1, 10)
        await sink.drain()
        sink.close()
        tracker.clear("t1")
        await asyncio.to_thread(sink, "Appending transaction 5 of 10", 5, 10)
        await sink.drain()

        assert sink.closed
        assert tracker.get_progress("t1") is None
        writer.assert_awaited_once_with("t1", "a", 1, 10)
