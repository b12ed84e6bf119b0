# =============================================================================
# 模块: apps/report_task/service.py
# 功能: 报告任务生命周期管理
# 架构角色: 业务逻辑层，tasks 表状态的唯一修改入口。
#   所有状态转换都使用带状态条件的 UPDATE（compare-and-set），
#   以 rowcount 判断是否成功，避免 worker 领取与外部取消之间的竞争。
# =============================================================================

"""Report task lifecycle manager."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apps.report.schemas import TaskMetadata
from apps.report_task.exceptions import TaskNotFoundError, TaskStateError
from apps.report_task.models import (
    ACTIVE_STATUSES,
    CANCELLABLE_STATUSES,
    CLAIMABLE_STATUSES,
    ReportTask,
    TaskStatus,
)
from apps.report_task.progress import clamp_progress
from common.utils import Clock, cutoff_before, utc_now

logger = logging.getLogger(__name__)


class TaskLifecycleManager:
    """Report task lifecycle manager.

    报告任务生命周期管理器，负责：
    1. 创建任务记录（queued）
    2. worker 领取任务（-> running）
    3. 完成 / 失败 / 取消 / 保留期移除
    4. 进度持久镜像与查询
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Clock = utc_now,
    ) -> None:
        if session_factory is None:
            from core.database import get_session_factory

            session_factory = get_session_factory()
        self._session_factory = session_factory
        self._clock = clock

    # ------------------------------------------------------------------
    # 创建与查询
    # ------------------------------------------------------------------

    async def create_task(
        self,
        metadata: TaskMetadata,
        schedule_id: Optional[str] = None,
    ) -> ReportTask:
        """Create a queued task carrying ``metadata``."""
        task = ReportTask.from_metadata(metadata, schedule_id=schedule_id)
        now = self._clock()
        task.created_at = now
        task.updated_at = now
        async with self._session_factory() as db:
            db.add(task)
            await db.commit()
        logger.info(
            "Created task %s (schedule=%s, branch=%d, gate=%d)",
            task.id,
            schedule_id,
            metadata.branch_id,
            metadata.gate_id,
        )
        return task

    async def get_task(self, task_id: str) -> Optional[ReportTask]:
        async with self._session_factory() as db:
            return await db.get(ReportTask, task_id)

    async def list_tasks(
        self,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[ReportTask], int]:
        """Return one page of tasks (newest first) and the total count."""
        page = max(page, 1)
        limit = max(limit, 1)
        async with self._session_factory() as db:
            query = select(ReportTask)
            count_query = select(func.count()).select_from(ReportTask)
            if status:
                query = query.where(ReportTask.status == status)
                count_query = count_query.where(ReportTask.status == status)
            total = (await db.execute(count_query)).scalar_one()
            query = (
                query.order_by(ReportTask.created_at.desc(), ReportTask.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            result = await db.execute(query)
            return list(result.scalars().all()), int(total)

    async def count_by_status(self, status: str) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.count()).select_from(ReportTask).where(ReportTask.status == status)
            )
            return int(result.scalar_one())

    async def queue_position(self, task_id: str) -> int:
        """1-based position among queued tasks by creation time, 0 if not queued."""
        async with self._session_factory() as db:
            task = await db.get(ReportTask, task_id)
            if task is None or task.status != TaskStatus.QUEUED.value:
                return 0
            result = await db.execute(
                select(func.count())
                .select_from(ReportTask)
                .where(
                    ReportTask.status == TaskStatus.QUEUED.value,
                    ReportTask.created_at < task.created_at,
                )
            )
            return int(result.scalar_one()) + 1

    async def find_by_schedule_active(self, schedule_id: str) -> list[ReportTask]:
        """Tasks of ``schedule_id`` that are still queued, pending or running."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(ReportTask).where(
                    ReportTask.schedule_id == schedule_id,
                    ReportTask.status.in_(ACTIVE_STATUSES),
                )
            )
            return list(result.scalars().all())

    async def find_queued_without_job(self, job_task_ids: Iterable[str]) -> list[ReportTask]:
        """Queued or pending tasks whose id is not in ``job_task_ids``."""
        known = set(job_task_ids)
        async with self._session_factory() as db:
            result = await db.execute(
                select(ReportTask)
                .where(ReportTask.status.in_(CANCELLABLE_STATUSES))
                .order_by(ReportTask.created_at)
            )
            return [task for task in result.scalars().all() if task.id not in known]

    # ------------------------------------------------------------------
    # 状态转换
    # ------------------------------------------------------------------

    async def _transition(self, task_id: str, allowed: Iterable[str], **values) -> bool:
        values["updated_at"] = self._clock()
        async with self._session_factory() as db:
            result = await db.execute(
                update(ReportTask)
                .where(ReportTask.id == task_id, ReportTask.status.in_(tuple(allowed)))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def claim(self, task_id: str, allow_running: bool = False) -> Optional[ReportTask]:
        """Move a task to running for the worker that dequeued it.

        Args:
            task_id: Task to claim.
            allow_running: Also take over a task already marked running.
                Used when an expired lease re-delivers the job of a worker
                that died mid-run.

        Returns:
            The running task, or None when it is missing, cancelled,
            completed or removed (the worker must skip it).
        """
        allowed = CLAIMABLE_STATUSES
        if allow_running:
            allowed += (TaskStatus.RUNNING.value,)
        claimed = await self._transition(
            task_id,
            allowed,
            status=TaskStatus.RUNNING.value,
            error_message="",
            progress_stage="",
            progress_current=0,
            progress_total=0,
        )
        if not claimed:
            task = await self.get_task(task_id)
            logger.info(
                "Task %s not claimable (status=%s), skipping",
                task_id,
                task.status if task else "missing",
            )
            return None
        logger.info("Task %s claimed", task_id)
        return await self.get_task(task_id)

    async def complete(self, task_id: str, output_paths: Iterable[str], size: int) -> bool:
        """running -> completed, setting output fields in the same update."""
        paths = ",".join(output_paths)
        done = await self._transition(
            task_id,
            (TaskStatus.RUNNING.value,),
            status=TaskStatus.COMPLETED.value,
            error_message="",
            output_file_path=paths,
            output_file_size=int(size),
            progress_stage="completed",
            progress_current=ReportTask.progress_total,
        )
        if done:
            logger.info("Task %s completed: %s (%d bytes)", task_id, paths, size)
        else:
            logger.warning("Task %s could not be completed from its current status", task_id)
        return done

    async def fail(self, task_id: str, message: str) -> bool:
        """running|queued|pending -> failed with ``message``; output cleared."""
        done = await self._transition(
            task_id,
            (TaskStatus.RUNNING.value,) + CANCELLABLE_STATUSES,
            status=TaskStatus.FAILED.value,
            error_message=message,
            output_file_path="",
            output_file_size=0,
        )
        if done:
            logger.error("Task %s failed: %s", task_id, message)
        return done

    async def cancel(self, task_id: str) -> ReportTask:
        """queued|pending -> cancelled.

        Raises:
            TaskNotFoundError: If the task does not exist.
            TaskStateError: If the task has already been claimed or finished.
        """
        task = await self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        done = await self._transition(
            task_id,
            CANCELLABLE_STATUSES,
            status=TaskStatus.CANCELLED.value,
        )
        if not done:
            current = await self.get_task(task_id)
            raise TaskStateError(task_id, current.status if current else task.status, "cancel")
        logger.info("Task %s cancelled", task_id)
        return await self.get_task(task_id)

    async def update_progress(self, task_id: str, stage: str, current: int, total: int) -> bool:
        """Durable progress mirror; applies only while the task is running."""
        current, total = clamp_progress(current, total)
        return await self._transition(
            task_id,
            (TaskStatus.RUNNING.value,),
            progress_stage=stage[:255],
            progress_current=current,
            progress_total=total,
        )

    # ------------------------------------------------------------------
    # 保留期清理
    # ------------------------------------------------------------------

    async def find_expired_completed(self, days: int) -> list[ReportTask]:
        """Completed tasks last updated more than ``days`` days ago."""
        cutoff = cutoff_before(days, self._clock)
        async with self._session_factory() as db:
            result = await db.execute(
                select(ReportTask).where(
                    ReportTask.status == TaskStatus.COMPLETED.value,
                    ReportTask.updated_at < cutoff,
                )
            )
            return list(result.scalars().all())

    async def mark_removed(self, task: ReportTask) -> bool:
        """completed -> removed, clearing the output fields."""
        return await self._transition(
            task.id,
            (TaskStatus.COMPLETED.value,),
            status=TaskStatus.REMOVED.value,
            output_file_path="",
            output_file_size=0,
        )
