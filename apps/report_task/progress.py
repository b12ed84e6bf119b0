# =============================================================================
# 模块: apps/report_task/progress.py
# 功能: 任务实时进度
# 架构角色:
#   - ProgressTracker: 进程内进度表（task_id -> 阶段/当前/总数），
#     一把锁保护整张表，供 API 快速读取；任务结束时清除。
#   - ThrottledProgressSink: 交给报告生成器的进度回调。每次调用都更新
#     进度表，并按任务节流（默认每秒最多一次）把进度写入 tasks 表，
#     作为进程重启后仍可读取的持久镜像。可在工作线程中调用。
# =============================================================================

"""In-memory progress table and throttled durable mirror."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

ProgressWriter = Callable[[str, str, int, int], Awaitable[object]]


@dataclass(frozen=True)
class ProgressRecord:
    stage: str
    current: int
    total: int

    def to_dict(self) -> dict:
        return {"stage": self.stage, "current": self.current, "total": self.total}


def clamp_progress(current: int, total: int) -> tuple[int, int]:
    """Clamp negatives to 0 and ``current`` to ``total`` once total is set."""
    total = max(int(total), 0)
    current = max(int(current), 0)
    if total > 0 and current > total:
        current = total
    return current, total


class ProgressTracker:
    """Thread-safe task id -> progress record table."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, ProgressRecord] = {}

    def set_progress(self, task_id: str, stage: str, current: int, total: int) -> ProgressRecord:
        current, total = clamp_progress(current, total)
        record = ProgressRecord(stage=stage, current=current, total=total)
        with self._lock:
            self._records[task_id] = record
        return record

    def get_progress(self, task_id: str) -> Optional[ProgressRecord]:
        with self._lock:
            return self._records.get(task_id)

    def clear(self, task_id: str) -> None:
        with self._lock:
            self._records.pop(task_id, None)

    def snapshot(self) -> dict[str, ProgressRecord]:
        with self._lock:
            return dict(self._records)


class ThrottledProgressSink:
    """Progress callback for one task.

    Args:
        tracker: The in-memory progress table.
        task_id: Task the updates belong to.
        writer: Coroutine function ``(task_id, stage, current, total)``
            persisting the durable mirror.
        loop: Event loop the writer runs on.
        interval: Minimum seconds between durable writes.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        tracker: ProgressTracker,
        task_id: str,
        writer: ProgressWriter,
        loop: asyncio.AbstractEventLoop,
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._tracker = tracker
        self._task_id = task_id
        self._writer = writer
        self._loop = loop
        self._interval = interval
        self._clock = clock
        self._lock = threading.Lock()
        self._closed = False
        self._last_write: Optional[float] = None
        self._latest: Optional[ProgressRecord] = None
        self._flushed: Optional[ProgressRecord] = None
        self._pending: list[concurrent.futures.Future] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def __call__(self, stage: str, current: int, total: int) -> None:
        # 关闭后忽略迟到的回调 (例如超时后仍在运行的渲染线程)
        with self._lock:
            if self._closed:
                return
            record = self._tracker.set_progress(self._task_id, stage, current, total)
            self._latest = record
            now = self._clock()
            if self._last_write is not None and now - self._last_write < self._interval:
                return
            self._last_write = now
            self._flushed = record
            future = asyncio.run_coroutine_threadsafe(self._write(record), self._loop)
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)

    def close(self) -> None:
        """Stop accepting updates; later calls are ignored."""
        with self._lock:
            self._closed = True

    async def _write(self, record: ProgressRecord) -> None:
        try:
            await self._writer(self._task_id, record.stage, record.current, record.total)
        except Exception as e:
            logger.warning("Failed to persist progress for task %s: %s", self._task_id, e)

    async def drain(self) -> None:
        """Wait for scheduled durable writes, then persist the latest record.

        节流期内被跳过的最后一次进度会在这里补写, 保证持久镜像以最新值结束。
        """
        with self._lock:
            pending, self._pending = self._pending, []
            latest = self._latest
            stale = latest is not None and latest != self._flushed
            if stale:
                self._flushed = latest
        if pending:
            await asyncio.gather(*(asyncio.wrap_future(f) for f in pending))
        if stale:
            await self._write(latest)
