# =============================================================================
# 模块: apps/report_task/exceptions.py
# 功能: 任务生命周期异常
# =============================================================================
"""Task lifecycle exceptions."""

from __future__ import annotations


class TaskNotFoundError(LookupError):
    """Raised when a task id does not exist."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"task {task_id} not found")
        self.task_id = task_id


class TaskStateError(Exception):
    """Raised when a status transition is not allowed from the current state."""

    def __init__(self, task_id: str, status: str, action: str) -> None:
        super().__init__(f"cannot {action} task {task_id} in status {status}")
        self.task_id = task_id
        self.status = status
        self.action = action
