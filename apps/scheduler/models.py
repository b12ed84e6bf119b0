# ==============================================================================
# 模块: apps/scheduler/models.py
# 功能: 定时报告计划模型
# 架构角色: schedules 表保存 cron 表达式和任务模板 (TaskMetadata 的 JSON)。
#   计划的增删改由管理端负责; 调度器只在触发后写入 last_run / next_run。
# ==============================================================================

"""Recurring report schedule model."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.models.base import Base, TimestampMixin, UTCDateTime


class Schedule(Base, TimestampMixin):
    """A cron-driven report task template."""

    __tablename__ = "schedules"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # 标准 5 段 crontab 表达式, 例如 "0 6 * * *"
    cron: Mapped[str] = mapped_column(String(100), nullable=False)
    task_payload: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_run: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    next_run: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<Schedule(id={self.id}, cron={self.cron!r}, active={self.active})>"
