# ==============================================================================
# 模块: report_task/api.py
# 功能: 报告任务的 RESTful API 端点
# 架构角色: 任务子系统的对外接口层。创建任务时同步校验参数
#   (编号范围、日期与区间), 校验失败返回 422 且不创建任何记录;
#   通过校验后写入任务并投递到任务队列。
#   依赖的组件 (生命周期管理器、队列、进度表、生成器) 在应用启动时
#   挂载到 app.state, 通过 Depends 注入。
# ==============================================================================
"""Report task API endpoints."""
from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import FileResponse

from apps.queue.queue import JobQueue
from apps.report.exceptions import InvalidFilterError
from apps.report.generator import ReportGenerator
from apps.report.schemas import TaskMetadata
from apps.report_task.exceptions import TaskNotFoundError, TaskStateError
from apps.report_task.models import ReportTask, TaskStatus
from apps.report_task.progress import ProgressTracker
from apps.report_task.schemas import (
    CancelResponse,
    EnqueueResponse,
    Pagination,
    ProgressResponse,
    TaskListResponse,
    TaskSchema,
)
from apps.report_task.service import TaskLifecycleManager
from settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Tasks"])


# --------------------------------------------------------------------------
# 依赖注入: 从 app.state 获取运行期组件
# --------------------------------------------------------------------------
def get_lifecycle(request: Request) -> TaskLifecycleManager:
    return request.app.state.lifecycle


def get_queue(request: Request) -> Optional[JobQueue]:
    return getattr(request.app.state, "queue", None)


def get_tracker(request: Request) -> ProgressTracker:
    return request.app.state.tracker


def get_generator(request: Request) -> ReportGenerator:
    return request.app.state.generator


async def _get_or_404(lifecycle: TaskLifecycleManager, task_id: str) -> ReportTask:
    task = await lifecycle.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


# --------------------------------------------------------------------------
# POST /tasks - 创建并投递报告任务
# 参数校验:
#   - branch_id / gate_id / station_id 超出 0..100 时由 pydantic 返回 422
#   - 日期格式错误或区间倒置时返回 422
# 投递失败时任务被标记为 failed 并返回 500
# --------------------------------------------------------------------------
@router.post("", response_model=EnqueueResponse, status_code=201)
async def create_task(
    metadata: TaskMetadata,
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
    queue: Optional[JobQueue] = Depends(get_queue),
    generator: ReportGenerator = Depends(get_generator),
):
    try:
        windows = generator.resolve(metadata)
    except InvalidFilterError as e:
        raise HTTPException(status_code=422, detail=str(e))

    for window in windows:
        source_path = generator.source_path(metadata, window.day)
        if Path(source_path).exists():
            logger.info("Datasource file found: %s", source_path)
        else:
            logger.warning("Datasource file not found: %s", source_path)

    task = await lifecycle.create_task(metadata)

    if queue is not None:
        try:
            await queue.enqueue(task.id, metadata)
        except Exception as e:
            logger.error("Failed to enqueue task %s: %s", task.id, e, exc_info=True)
            await lifecycle.fail(task.id, f"failed to enqueue task: {e}")
            raise HTTPException(status_code=500, detail=f"Failed to enqueue task: {e}")

    return EnqueueResponse(
        task_id=task.id,
        status=task.status,
        queue_position=await lifecycle.queue_position(task.id),
        queue_size=await lifecycle.count_by_status(TaskStatus.QUEUED.value),
        created_at=task.created_at,
    )


# --------------------------------------------------------------------------
# GET /tasks - 分页查询任务, 最新的在前
# --------------------------------------------------------------------------
@router.get("", response_model=TaskListResponse)
async def list_tasks(
    status: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1),
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    limit = min(limit, 100)
    tasks, total = await lifecycle.list_tasks(status=status, page=page, limit=limit)
    return TaskListResponse(
        items=[TaskSchema.model_validate(task.to_dict()) for task in tasks],
        pagination=Pagination(
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit),
        ),
    )


@router.get("/{task_id}", response_model=TaskSchema)
async def get_task(
    task_id: str,
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    task = await _get_or_404(lifecycle, task_id)
    return TaskSchema.model_validate(task.to_dict())


# --------------------------------------------------------------------------
# DELETE /tasks/{id} - 取消尚未被领取的任务
# 运行中或已结束的任务返回 409
# --------------------------------------------------------------------------
@router.delete("/{task_id}", response_model=CancelResponse)
async def cancel_task(
    task_id: str,
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    try:
        task = await lifecycle.cancel(task_id)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")
    except TaskStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return CancelResponse(id=task.id, status=task.status)


# --------------------------------------------------------------------------
# GET /tasks/{id}/progress - 实时进度
# 优先读取内存进度表, 不存在时回退到 tasks 表中的持久镜像
# --------------------------------------------------------------------------
@router.get("/{task_id}/progress", response_model=ProgressResponse)
async def get_progress(
    task_id: str,
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
    tracker: ProgressTracker = Depends(get_tracker),
):
    task = await _get_or_404(lifecycle, task_id)
    record = tracker.get_progress(task_id)
    if record is not None:
        return ProgressResponse(
            task_id=task_id,
            status=task.status,
            stage=record.stage,
            current=record.current,
            total=record.total,
            live=True,
        )
    return ProgressResponse(
        task_id=task_id,
        status=task.status,
        stage=task.progress_stage,
        current=task.progress_current,
        total=task.progress_total,
        live=False,
    )


# --------------------------------------------------------------------------
# GET /tasks/{id}/download - 下载生成的 PDF
# 多日任务通过 index 参数选择第几个文件 (从 0 开始)
# --------------------------------------------------------------------------
@router.get("/{task_id}/download")
async def download_output(
    task_id: str,
    index: int = Query(default=0, ge=0),
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    task = await _get_or_404(lifecycle, task_id)
    if task.status != TaskStatus.COMPLETED.value:
        raise HTTPException(status_code=409, detail="Task not ready for download")

    paths = task.output_paths
    if index >= len(paths):
        raise HTTPException(status_code=404, detail="Output file not found")

    file_path = Path(paths[index])
    if not file_path.is_absolute():
        file_path = settings.output_dir / file_path
    if not file_path.is_file():
        raise HTTPException(status_code=404, detail="Output file not found")

    return FileResponse(file_path, media_type="application/pdf", filename=file_path.name)
