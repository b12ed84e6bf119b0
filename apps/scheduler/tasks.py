# ==============================================================================
# 模块: 调度任务注册与管理
# 作用: 创建和管理 APScheduler 调度器单例, 注册定时报告计划、
#       每日输出保留期清理任务和 WAL 检查点任务。
# 架构角色: 调度层的顶层编排器, 由应用生命周期 (main.lifespan) 启动和停止。
# ==============================================================================

"""Scheduler setup for DataLane."""

from __future__ import annotations

import logging
from functools import partial
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apps.queue.queue import JobQueue
from apps.report.generator import ConfigReader
from apps.report_task.service import TaskLifecycleManager
from apps.scheduler.runner import ReportScheduler
from settings import settings

logger = logging.getLogger(__name__)

WAL_CHECKPOINT_JOB_ID = "wal_checkpoint"

# 模块级别的调度器单例
_scheduler: Optional[AsyncIOScheduler] = None
_report_scheduler: Optional[ReportScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler singleton.

    获取或创建调度器单例实例, 使用配置中的时区初始化。

    Returns:
        AsyncIOScheduler: Scheduler singleton instance.
    """
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)
    return _scheduler


def get_report_scheduler() -> Optional[ReportScheduler]:
    return _report_scheduler


async def start_scheduler(
    lifecycle: TaskLifecycleManager,
    queue: Optional[JobQueue] = None,
    config: Optional[ConfigReader] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> ReportScheduler:
    """Start the scheduler and register all jobs.

    启动调度器: 注册所有激活的报告计划、每日保留期清理和 WAL 检查点任务。

    Args:
        lifecycle: Task lifecycle manager shared with the API and workers.
        queue: Job queue scheduled tasks are submitted to.
        config: Runtime configuration reader (defaults to the global one).
        session_factory: Async session factory (defaults to the global one).

    Returns:
        ReportScheduler: The running report scheduler.
    """
    global _report_scheduler

    from apps.scheduler.jobs.cleanup_job import run_cleanup_job
    from apps.scheduler.jobs.wal_checkpoint_job import WalCheckpointer
    from core.database import get_session_factory, get_sync_engine

    if config is None:
        from common.runtime_config import runtime_config

        config = runtime_config
    if session_factory is None:
        session_factory = get_session_factory()

    scheduler = get_scheduler()

    # ---- WAL 检查点: 每分钟检查一次, 是否真正执行由间隔和文件大小决定 ----
    checkpointer = WalCheckpointer(get_sync_engine(), settings.database_file, config)
    scheduler.add_job(
        checkpointer.run,
        IntervalTrigger(minutes=1),
        id=WAL_CHECKPOINT_JOB_ID,
        name="SQLite WAL checkpoint",
        replace_existing=True,
    )
    logger.info("Scheduled WAL checkpoint job: every 1 minute")

    # ---- 报告计划 + 每日保留期清理 ----
    report_scheduler = ReportScheduler(
        scheduler,
        session_factory,
        lifecycle,
        queue=queue,
        overlap_policy=settings.schedule_overlap_policy,
        maintenance=partial(run_cleanup_job, lifecycle, queue, config),
        maintenance_cron=settings.maintenance_cron,
    )
    await report_scheduler.start()
    _report_scheduler = report_scheduler
    logger.info("Scheduler started")
    return report_scheduler


async def stop_scheduler() -> None:
    """Stop the scheduler.

    停止调度器; 正在运行的协程任务不等待。
    """
    global _scheduler, _report_scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    _scheduler = None
    _report_scheduler = None
