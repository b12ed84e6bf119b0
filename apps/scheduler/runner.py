# ==============================================================================
# 模块: apps/scheduler/runner.py
# 功能: 定时报告计划的注册与触发
# 架构角色: 把 schedules 表中的每个激活计划注册为一个 APScheduler cron 任务
#   (job id 为 "schedule:<id>")。触发时重新读取计划, 解析任务模板,
#   创建一个 queued 报告任务并投递到任务队列。
#   另外注册每日维护任务 (保留期清理)。
# ==============================================================================

"""Cron-driven report schedules on top of APScheduler."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apps.queue.queue import JobQueue
from apps.report.schemas import TaskMetadata
from apps.report_task.service import TaskLifecycleManager
from apps.scheduler.models import Schedule
from common.utils import Clock, utc_now

logger = logging.getLogger(__name__)

OVERLAP_ALWAYS = "always"
OVERLAP_SKIP_IF_ACTIVE = "skip_if_active"
MAINTENANCE_JOB_ID = "maintenance_cleanup"


def schedule_job_id(schedule_id: str) -> str:
    return f"schedule:{schedule_id}"


class ReportScheduler:
    """Registers active schedules and turns each fire into a queued task.

    Args:
        scheduler: APScheduler instance the cron jobs are added to.
        session_factory: Async session factory for the schedules table.
        lifecycle: Task lifecycle manager used to create tasks.
        queue: Job queue new tasks are submitted to. Without one, tasks
            are only created.
        overlap_policy: ``always`` creates a task on every fire;
            ``skip_if_active`` skips the fire while an earlier task of the
            same schedule is still queued, pending or running.
        maintenance: Coroutine function run on ``maintenance_cron``.
        maintenance_cron: Crontab expression of the maintenance job.
        clock: UTC time source.
    """

    def __init__(
        self,
        scheduler: AsyncIOScheduler,
        session_factory: async_sessionmaker[AsyncSession],
        lifecycle: TaskLifecycleManager,
        queue: Optional[JobQueue] = None,
        overlap_policy: str = OVERLAP_ALWAYS,
        maintenance: Optional[Callable[[], Awaitable[Any]]] = None,
        maintenance_cron: str = "0 0 * * *",
        clock: Clock = utc_now,
    ) -> None:
        self._scheduler = scheduler
        self._session_factory = session_factory
        self._lifecycle = lifecycle
        self._queue = queue
        self._overlap_policy = overlap_policy
        self._maintenance = maintenance
        self._maintenance_cron = maintenance_cron
        self._clock = clock

    @property
    def scheduler(self) -> AsyncIOScheduler:
        return self._scheduler

    # ------------------------------------------------------------------
    # 注册
    # ------------------------------------------------------------------

    async def start(self) -> int:
        """Register every active schedule and start the scheduler.

        Schedules with an invalid cron expression are logged and skipped.

        Returns:
            int: Number of schedules registered.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                select(Schedule).where(Schedule.active.is_(True)).order_by(Schedule.created_at)
            )
            schedules = list(result.scalars().all())

        registered = 0
        for schedule in schedules:
            if await self.register(schedule):
                registered += 1

        if self._maintenance is not None:
            self._scheduler.add_job(
                self._maintenance,
                CronTrigger.from_crontab(self._maintenance_cron, timezone=self._scheduler.timezone),
                id=MAINTENANCE_JOB_ID,
                name="Output retention cleanup",
                replace_existing=True,
            )

        if not self._scheduler.running:
            self._scheduler.start()
        logger.info("Report scheduler started with %d schedule(s)", registered)
        return registered

    async def register(self, schedule: Schedule) -> bool:
        """Add or replace the cron job of ``schedule`` and stamp its next run."""
        try:
            trigger = CronTrigger.from_crontab(schedule.cron, timezone=self._scheduler.timezone)
        except ValueError as e:
            logger.error("Invalid cron %r for schedule %s: %s", schedule.cron, schedule.id, e)
            return False

        self._scheduler.add_job(
            self.fire,
            trigger,
            args=[schedule.id],
            id=schedule_job_id(schedule.id),
            name=f"Report schedule {schedule.id}",
            replace_existing=True,
            coalesce=True,
        )
        next_run = trigger.get_next_fire_time(None, self._clock())
        await self._stamp(schedule.id, next_run=next_run)
        logger.info("Registered schedule %s (%s), next run %s", schedule.id, schedule.cron, next_run)
        return True

    def unregister(self, schedule_id: str) -> None:
        """Remove the cron job of ``schedule_id``; unknown ids are ignored."""
        try:
            self._scheduler.remove_job(schedule_job_id(schedule_id))
        except JobLookupError:
            return
        logger.info("Unregistered schedule %s", schedule_id)

    def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Report scheduler stopped")

    # ------------------------------------------------------------------
    # 触发
    # ------------------------------------------------------------------

    async def fire(self, schedule_id: str) -> Optional[str]:
        """Create (and enqueue) one task from the schedule's template.

        Returns:
            The new task id, or None when nothing was created.
        """
        async with self._session_factory() as db:
            schedule = await db.get(Schedule, schedule_id)
        if schedule is None or not schedule.active:
            logger.info("Schedule %s is missing or inactive, skipping", schedule_id)
            return None

        try:
            metadata = TaskMetadata.model_validate_json(schedule.task_payload)
        except ValidationError as e:
            logger.error("Schedule %s has a malformed task payload: %s", schedule_id, e)
            return None

        if self._overlap_policy == OVERLAP_SKIP_IF_ACTIVE:
            active = await self._lifecycle.find_by_schedule_active(schedule_id)
            if active:
                logger.warning(
                    "Schedule %s skipped: task %s is still %s",
                    schedule_id,
                    active[0].id,
                    active[0].status,
                )
                return None

        task = await self._lifecycle.create_task(metadata, schedule_id=schedule_id)
        await self._stamp(schedule_id, last_run=self._clock(), next_run=self._next_fire(schedule_id))

        if self._queue is not None:
            try:
                await self._queue.enqueue(task.id, metadata)
            except Exception as e:
                logger.error("Failed to enqueue task %s of schedule %s: %s", task.id, schedule_id, e)
                await self._lifecycle.fail(task.id, f"failed to enqueue task: {e}")
        return task.id

    def _next_fire(self, schedule_id: str) -> Optional[datetime]:
        job = self._scheduler.get_job(schedule_job_id(schedule_id))
        if job is None:
            return None
        return getattr(job, "next_run_time", None)

    async def _stamp(self, schedule_id: str, **values) -> None:
        values["updated_at"] = self._clock()
        async with self._session_factory() as db:
            await db.execute(
                update(Schedule)
                .where(Schedule.id == schedule_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
