# =============================================================================
# 模块: apps/report_task/__init__.py
# 功能: 报告任务模块入口
# =============================================================================

"""Report task lifecycle, progress tracking and HTTP API."""

from .models import ReportTask, TaskStatus
from .progress import ProgressRecord, ProgressTracker
from .service import TaskLifecycleManager

__all__ = [
    "ProgressRecord",
    "ProgressTracker",
    "ReportTask",
    "TaskLifecycleManager",
    "TaskStatus",
]
