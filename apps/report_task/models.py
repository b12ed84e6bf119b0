# =============================================================================
# 模块: apps/report_task/models.py
# 功能: 报告生成任务模型
# 架构角色: 数据持久化层，tasks 表保存每个报告任务的参数、状态、
#   进度镜像（节流写入）和输出文件信息。
#
# 状态流转：
#   queued/pending -> running -> completed / failed
#   queued/pending -> cancelled
#   completed -> removed（保留期清理）
#   failed -> running 仅发生在任务队列重试时
# =============================================================================

"""Report task model."""

from __future__ import annotations

import enum
import json
import uuid
from typing import Optional

from sqlalchemy import BigInteger, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from apps.report.schemas import TaskFilter, TaskMetadata
from core.models.base import Base, TimestampMixin


class TaskStatus(str, enum.Enum):
    QUEUED = "queued"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REMOVED = "removed"


# 可被取消的状态（尚未被 worker 领取）
CANCELLABLE_STATUSES = (TaskStatus.QUEUED.value, TaskStatus.PENDING.value)
# worker 可以领取的状态（failed 仅用于队列重试）
CLAIMABLE_STATUSES = (
    TaskStatus.QUEUED.value,
    TaskStatus.PENDING.value,
    TaskStatus.FAILED.value,
)
# 计划任务重叠判断使用的未结束状态
ACTIVE_STATUSES = (
    TaskStatus.QUEUED.value,
    TaskStatus.PENDING.value,
    TaskStatus.RUNNING.value,
)


def new_task_id() -> str:
    return str(uuid.uuid4())


class ReportTask(Base, TimestampMixin):
    """Report generation task.

    报告生成任务，id 在创建时分配且不可修改。
    output_file_path 在多日任务中为逗号分隔的多个路径。
    """

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_task_id)
    schedule_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    status: Mapped[str] = mapped_column(
        String(20),
        default=TaskStatus.QUEUED.value,
        nullable=False,
        index=True,
    )
    error_message: Mapped[str] = mapped_column(Text, default="", nullable=False)

    # 任务参数
    root_folder: Mapped[str] = mapped_column(Text, default="", nullable=False)
    branch_id: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    gate_id: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    station_id: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    filter_json: Mapped[str] = mapped_column(Text, default="{}", nullable=False)
    settings_json: Mapped[str] = mapped_column(Text, default="{}", nullable=False)

    # 进度镜像
    progress_stage: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    progress_current: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    progress_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # 输出
    output_file_path: Mapped[str] = mapped_column(Text, default="", nullable=False)
    output_file_size: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<ReportTask(id={self.id}, status={self.status})>"

    @classmethod
    def from_metadata(cls, metadata: TaskMetadata, schedule_id: Optional[str] = None) -> "ReportTask":
        return cls(
            id=new_task_id(),
            schedule_id=schedule_id,
            status=TaskStatus.QUEUED.value,
            error_message="",
            root_folder=metadata.root_folder,
            branch_id=metadata.branch_id,
            gate_id=metadata.gate_id,
            station_id=metadata.station_id,
            filter_json=metadata.filter.model_dump_json(exclude_none=True),
            settings_json=json.dumps(metadata.settings),
            progress_stage="",
            progress_current=0,
            progress_total=0,
            output_file_path="",
            output_file_size=0,
        )

    def to_metadata(self) -> TaskMetadata:
        """Rebuild the parameter bundle stored on this row."""
        return TaskMetadata(
            root_folder=self.root_folder,
            branch_id=self.branch_id,
            gate_id=self.gate_id,
            station_id=self.station_id,
            filter=TaskFilter.model_validate_json(self.filter_json or "{}"),
            settings=json.loads(self.settings_json or "{}"),
        )

    @property
    def output_paths(self) -> list[str]:
        return [p for p in (self.output_file_path or "").split(",") if p]

    def to_dict(self) -> dict:
        """Convert task to dictionary for API response."""
        return {
            "id": self.id,
            "schedule_id": self.schedule_id,
            "status": self.status,
            "error_message": self.error_message,
            "root_folder": self.root_folder,
            "branch_id": self.branch_id,
            "gate_id": self.gate_id,
            "station_id": self.station_id,
            "filter": json.loads(self.filter_json or "{}"),
            "settings": json.loads(self.settings_json or "{}"),
            "progress_stage": self.progress_stage,
            "progress_current": self.progress_current,
            "progress_total": self.progress_total,
            "output_file_path": self.output_file_path,
            "output_file_size": self.output_file_size,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
