# ==============================================================================
# 模块: 输出文件保留期清理任务
# 作用: 删除超过保留天数 (max_output_age_days, 默认 7 天) 的已完成任务的
#       PDF 文件, 并把任务标记为 removed、清空输出字段。
#       同时清除已结束 (completed / failed) 且超过保留期的队列作业记录。
# 执行方式: 由 APScheduler 的 CronTrigger 每天 00:00 触发。
# ==============================================================================

"""Output retention cleanup job."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from apps.queue.queue import JobQueue
from apps.report.generator import ConfigReader
from apps.report_task.service import TaskLifecycleManager

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_AGE_DAYS = 7


def _max_age_days(config: ConfigReader) -> int:
    raw = config.get("max_output_age_days")
    try:
        days = int(raw) if raw not in (None, "") else DEFAULT_MAX_OUTPUT_AGE_DAYS
    except (TypeError, ValueError):
        logger.warning("Invalid max_output_age_days %r, using %d", raw, DEFAULT_MAX_OUTPUT_AGE_DAYS)
        days = DEFAULT_MAX_OUTPUT_AGE_DAYS
    return max(days, 0)


async def run_cleanup_job(
    lifecycle: TaskLifecycleManager,
    queue: Optional[JobQueue],
    config: ConfigReader,
) -> dict:
    """Remove expired report outputs.

    扫描过期的已完成任务, 删除其输出文件并标记为 removed。
    文件已不存在或无法删除时只记录警告, 任务仍会被标记为 removed。

    Returns:
        dict: Cleanup summary with duration and counts.
    """
    logger.info("Starting cleanup job")
    start_time = datetime.now(timezone.utc)
    days = _max_age_days(config)

    results = {
        "removed": 0,
        "files_deleted": 0,
        "file_errors": 0,
        "jobs_purged": 0,
    }

    for task in await lifecycle.find_expired_completed(days):
        for path in task.output_paths:
            try:
                os.remove(path)
                results["files_deleted"] += 1
            except FileNotFoundError:
                logger.warning("Output file of task %s already gone: %s", task.id, path)
                results["file_errors"] += 1
            except OSError as e:
                logger.warning("Failed to delete output file %s of task %s: %s", path, task.id, e)
                results["file_errors"] += 1

        if await lifecycle.mark_removed(task):
            results["removed"] += 1
            logger.info("Task %s marked as removed", task.id)

    if queue is not None:
        results["jobs_purged"] = await queue.purge_finished(timedelta(days=days))

    duration = (datetime.now(timezone.utc) - start_time).total_seconds()
    results["duration_seconds"] = duration
    logger.info(
        "Cleanup job completed in %.2fs: %d task(s) removed, %d file(s) deleted, %d job(s) purged",
        duration,
        results["removed"],
        results["files_deleted"],
        results["jobs_purged"],
    )
    return results
