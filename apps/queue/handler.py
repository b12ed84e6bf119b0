"""Report job handler.

Bridges a claimed queue job to the report task it carries: claims the task
row, runs the generator with live progress, and records the outcome on the
task. Retry decisions stay with the queue; this handler only translates
errors into task status and tells the queue which errors are permanent.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from pydantic import ValidationError

from apps.queue.exceptions import PermanentJobError
from apps.queue.queue import JobEnvelope
from apps.report.exceptions import InvalidFilterError
from apps.report.generator import ReportGenerator
from apps.report.schemas import TaskMetadata
from apps.report_task.models import TaskStatus
from apps.report_task.progress import ProgressTracker, ThrottledProgressSink
from apps.report_task.service import TaskLifecycleManager

logger = logging.getLogger(__name__)

# 放弃任务时不应覆盖的终态
_FINAL_STATUSES = (
    TaskStatus.COMPLETED.value,
    TaskStatus.CANCELLED.value,
    TaskStatus.REMOVED.value,
)


class ReportJobHandler:
    """Runs one report task per job.

    Args:
        lifecycle: Task lifecycle manager.
        tracker: In-memory progress table.
        generator: Report generator.
        progress_interval: Minimum seconds between durable progress writes.
        clock: Monotonic time source for progress throttling.
    """

    def __init__(
        self,
        lifecycle: TaskLifecycleManager,
        tracker: ProgressTracker,
        generator: ReportGenerator,
        progress_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lifecycle = lifecycle
        self._tracker = tracker
        self._generator = generator
        self._progress_interval = progress_interval
        self._clock = clock

    async def __call__(self, envelope: JobEnvelope) -> None:
        task_id = envelope.task_id
        try:
            metadata = TaskMetadata.model_validate(envelope.payload)
        except ValidationError as e:
            message = f"malformed task payload: {e.error_count()} validation error(s)"
            await self._lifecycle.fail(task_id, message)
            raise PermanentJobError(message) from e

        # attempt > 1 且任务仍为 running: 原 worker 的租约已过期, 由本次投递接管
        task = await self._lifecycle.claim(task_id, allow_running=envelope.attempt > 1)
        if task is None:
            return

        sink = ThrottledProgressSink(
            self._tracker,
            task_id,
            self._lifecycle.update_progress,
            asyncio.get_running_loop(),
            interval=self._progress_interval,
            clock=self._clock,
        )
        sink("initializing", 0, 0)

        try:
            try:
                result = await self._generator.generate(metadata, sink)
            except InvalidFilterError as e:
                await self._record_failure(task_id, sink, str(e))
                raise PermanentJobError(str(e)) from e
            except asyncio.CancelledError:
                # 超时或停机: 任务标记为失败, 由队列决定是否重试
                await self._record_failure(task_id, sink, "report generation interrupted")
                raise
            except Exception as e:
                await self._record_failure(task_id, sink, str(e) or type(e).__name__)
                raise

            sink.close()
            await sink.drain()
            await self._lifecycle.complete(task_id, result.output_paths, result.total_size)
        finally:
            # 渲染线程在超时后可能仍在回调, 先关闭 sink 再清除进度记录
            sink.close()
            self._tracker.clear(task_id)

    async def _record_failure(self, task_id: str, sink: ThrottledProgressSink, message: str) -> None:
        sink.close()
        try:
            await sink.drain()
            await self._lifecycle.fail(task_id, message)
        except Exception as e:
            logger.error("Failed to record failure of task %s: %s", task_id, e, exc_info=True)

    async def on_abandoned(self, envelope: JobEnvelope, message: str) -> None:
        """Make sure the task ends failed once its job is given up."""
        task = await self._lifecycle.get_task(envelope.task_id)
        if task is None or task.status in _FINAL_STATUSES:
            return
        if task.status == TaskStatus.FAILED.value:
            logger.info(
                "Task %s stays failed after %d attempt(s): %s",
                task.id,
                envelope.attempt,
                task.error_message,
            )
            return
        await self._lifecycle.fail(task.id, message)
        self._tracker.clear(task.id)
