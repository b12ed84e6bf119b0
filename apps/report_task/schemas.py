# =============================================================================
# 模块: apps/report_task/schemas.py
# 功能: 任务 API 的响应模型
# =============================================================================

"""Task API response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class TaskSchema(BaseModel):
    """Task row as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    schedule_id: Optional[str] = None
    status: str
    error_message: str = ""
    root_folder: str = ""
    branch_id: int = 0
    gate_id: int = 0
    station_id: int = 0
    filter: dict[str, Any] = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=dict)
    progress_stage: str = ""
    progress_current: int = 0
    progress_total: int = 0
    output_file_path: str = ""
    output_file_size: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class TaskListResponse(BaseModel):
    items: list[TaskSchema]
    pagination: Pagination


class EnqueueResponse(BaseModel):
    task_id: str
    status: str
    queue_position: int
    queue_size: int
    created_at: Optional[datetime] = None


class CancelResponse(BaseModel):
    id: str
    status: str


class ProgressResponse(BaseModel):
    task_id: str
    status: str
    stage: str
    current: int
    total: int
    live: bool = Field(description="True when read from the in-memory progress table")
