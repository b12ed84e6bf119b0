# ==============================================================================
# 模块: main.py
# 功能: DataLane PDF 服务的 FastAPI 应用入口
# 架构角色: 应用生命周期编排:
#   1. 初始化数据库, 写入运行期配置默认值
#   2. 组装进度表、任务生命周期管理器、报告生成器、任务处理器和任务队列,
#      挂载到 app.state 供 API 依赖注入
#   3. 重新投递没有队列作业的 queued 任务 (例如投递前进程退出)
#   4. 启动 worker 池和调度器
#   关闭时依次停止调度器、任务队列并释放数据库连接。
# ==============================================================================

"""Main application entry point for DataLane PDF."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import partial

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from apps.queue import JobQueue, retry_delay
from apps.queue.handler import ReportJobHandler
from apps.report.datasource import SqliteTransactionSource
from apps.report.generator import ReportGenerator
from apps.report.renderer import PdfRenderer
from apps.report_task import ProgressTracker, TaskLifecycleManager
from apps.report_task.api import router as task_router
from apps.scheduler import start_scheduler, stop_scheduler
from common.logger import setup_logging
from common.runtime_config import runtime_config
from common.utils import today_in
from core.database import check_db_connection, close_db, get_session_factory, init_db
from settings import settings

setup_logging(settings.debug)
logger = logging.getLogger(__name__)


def build_components(app: FastAPI) -> JobQueue:
    """Wire the task pipeline and attach it to ``app.state``.

    Returns:
        JobQueue: The (not yet started) job queue.
    """
    session_factory = get_session_factory()
    tracker = ProgressTracker()
    lifecycle = TaskLifecycleManager(session_factory)
    generator = ReportGenerator(
        SqliteTransactionSource(),
        PdfRenderer(),
        runtime_config,
        settings.output_dir,
        today=partial(today_in, settings.scheduler_timezone),
    )
    handler = ReportJobHandler(
        lifecycle,
        tracker,
        generator,
        progress_interval=settings.progress_flush_interval_seconds,
    )
    queue = JobQueue(
        session_factory,
        handler,
        concurrency=max(runtime_config.get_int("queue_concurrency", 1), 1),
        max_attempts=settings.queue_max_attempts,
        timeout=settings.queue_job_timeout_seconds,
        release_after=settings.queue_release_after_seconds,
        wake_interval=settings.queue_wake_interval_seconds,
        poll_interval=settings.queue_poll_interval_seconds,
        backoff=partial(retry_delay, base=settings.queue_backoff_seconds),
    )

    app.state.tracker = tracker
    app.state.lifecycle = lifecycle
    app.state.generator = generator
    app.state.queue = queue
    return queue


async def resubmit_orphaned_tasks(lifecycle: TaskLifecycleManager, queue: JobQueue) -> int:
    """Enqueue queued or pending tasks that have no live queue job.

    服务重启后恢复: 任务已写入但作业未写入时重新投递。
    参数无法解析的任务直接标记为失败。
    """
    resubmitted = 0
    for task in await lifecycle.find_queued_without_job(await queue.pending_task_ids()):
        try:
            metadata = task.to_metadata()
        except ValidationError as e:
            await lifecycle.fail(task.id, f"malformed task parameters: {e.error_count()} validation error(s)")
            continue
        await queue.enqueue(task.id, metadata)
        resubmitted += 1
    if resubmitted:
        logger.info("Resubmitted %d queued task(s) without a job", resubmitted)
    return resubmitted


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting %s...", settings.app_name)

    await init_db()
    logger.info("Database initialized")

    await runtime_config.seed_defaults()
    await runtime_config.async_reload()
    logger.info("Runtime config defaults seeded")

    queue = build_components(app)
    await resubmit_orphaned_tasks(app.state.lifecycle, queue)

    queue.start()
    await start_scheduler(app.state.lifecycle, queue, runtime_config)
    logger.info("%s started successfully", settings.app_name)

    yield

    logger.info("Shutting down %s...", settings.app_name)
    await stop_scheduler()
    await queue.stop()
    await close_db()
    logger.info("%s shutdown complete", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    description="Scheduled and on-demand PDF transaction reports",
    version="1.0.0",
    lifespan=lifespan,
)

_cors_origins = settings.cors_origins.split(",") if settings.cors_origins != "*" else ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


app.include_router(task_router, prefix="/api/v1/tasks")


@app.get("/health")
async def health_check():
    """Health check endpoint with component status.

    检查数据库连接和任务队列 worker 是否在运行。
    """
    db_ok = await check_db_connection()
    queue = getattr(app.state, "queue", None)
    queue_ok = bool(queue is not None and queue.running)
    return {
        "status": "healthy" if db_ok else "unhealthy",
        "components": {
            "database": "connected" if db_ok else "disconnected",
            "queue": "running" if queue_ok else "stopped",
        },
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.app_host, port=settings.app_port, reload=settings.debug)
