"""Shared test fixtures for DataLane tests."""

from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Ensure the package root is on sys.path so bare imports work
_PROJECT_ROOT = os.path.join(os.path.dirname(__file__), os.pardir)
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, os.path.abspath(_PROJECT_ROOT))

# Use in-memory SQLite for tests (faster, no external dependencies)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeClock:
    """Settable UTC clock for deterministic timing tests.

    可手动推进的 UTC 时钟，注入到队列、生命周期管理器和调度器。
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 2, 5, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class StaticConfig:
    """In-memory stand-in for the runtime config service (``get`` only)."""

    def __init__(self, **values: str) -> None:
        self.values = dict(values)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.values.get(key, default)


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create an async in-memory engine with every table created.

    创建内存数据库引擎并建表；StaticPool 保证所有连接共享同一个库。

    Returns:
        AsyncGenerator[AsyncEngine, None]: Engine with initialized schema.
    """
    from core.models.base import Base
    import apps.queue.models  # noqa: F401
    import apps.report_task.models  # noqa: F401
    import apps.scheduler.models  # noqa: F401
    import core.models.system_config  # noqa: F401

    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Provide a session factory bound to the test engine."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def lifecycle(session_factory, clock):
    """Task lifecycle manager on the test database and fake clock."""
    from apps.report_task.service import TaskLifecycleManager

    return TaskLifecycleManager(session_factory, clock=clock)


@pytest.fixture
def config() -> StaticConfig:
    return StaticConfig(time_overlap="00:00")


@pytest.fixture
def make_metadata():
    """Factory for task parameter bundles.

    构造 TaskMetadata，filter 字段可通过关键字参数覆盖。
    """
    from apps.report.schemas import TaskFilter, TaskMetadata

    def _make(root_folder: str = "/data", gate_id: int = 1, station_id: int = 2, settings=None, **filter_fields):
        return TaskMetadata(
            root_folder=root_folder,
            branch_id=3,
            gate_id=gate_id,
            station_id=station_id,
            filter=TaskFilter(**filter_fields),
            settings=settings or {},
        )

    return _make


@pytest.fixture
def make_config():
    """Factory for ``StaticConfig`` instances."""
    return StaticConfig


@pytest_asyncio.fixture
async def file_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory on a file database (one connection per session).

    并发领取测试使用文件数据库, 每个会话独立连接, 与生产环境一致。
    """
    from core.models.base import Base
    import apps.queue.models  # noqa: F401
    import apps.report_task.models  # noqa: F401

    file_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tasks.db'}", echo=False)
    async with file_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)

    await file_engine.dispose()
