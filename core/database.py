# =============================================================================
# 数据库连接与会话管理模块
# =============================================================================
# 本模块负责项目的数据库连接管理，是整个后端系统的数据访问基础层。
# 主要职责：
#   1. 创建和管理 SQLAlchemy 异步数据库引擎（AsyncEngine，aiosqlite 驱动）
#   2. 提供异步会话工厂（async_sessionmaker），用于生成数据库会话
#   3. 为每个新连接设置 SQLite PRAGMA（WAL 日志模式、busy_timeout）
#   4. 提供同步引擎，供运行期配置缓存的同步刷新和 WAL 检查点使用
#   5. 提供数据库初始化（建表）、关闭和健康检查功能
#
# 架构设计说明：
#   - 使用模块级全局变量实现单例模式，整个应用共享同一连接池
#   - 延迟导入 settings 模块，避免循环依赖问题
# =============================================================================

"""Database connection and session management for DataLane PDF."""

from __future__ import annotations

import logging
from typing import AsyncGenerator

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from core.models.base import Base

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_sync_engine: Engine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _install_sqlite_pragmas(engine: Engine, busy_timeout_ms: int) -> None:
    """Apply WAL journal mode and busy timeout to every new connection."""

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.close()


def get_engine() -> AsyncEngine:
    """Get or create the async database engine.

    This function lazily constructs a singleton SQLAlchemy ``AsyncEngine``
    using configuration values from ``settings``. The database directory is
    created on first use.

    Returns:
        AsyncEngine: A shared asynchronous engine bound to ``settings.database_url``.

    Raises:
        sqlalchemy.exc.SQLAlchemyError: If the engine cannot be created due to
            invalid configuration or driver issues.
    """
    global _engine
    if _engine is None:
        from settings import settings

        settings.database_file.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_async_engine(
            settings.database_url,
            echo=settings.db_echo,
        )
        _install_sqlite_pragmas(_engine.sync_engine, settings.db_busy_timeout_ms)
        logger.info("Database engine created: %s", settings.database_file)
    return _engine


def get_sync_engine() -> Engine:
    """Get or create the synchronous engine bound to the same database file.

    Used where no event loop is available (runtime config cache refresh from
    worker threads) and for WAL checkpoints.
    """
    global _sync_engine
    if _sync_engine is None:
        from settings import settings

        settings.database_file.parent.mkdir(parents=True, exist_ok=True)
        _sync_engine = create_engine(settings.database_url_sync, echo=settings.db_echo)
        _install_sqlite_pragmas(_sync_engine, settings.db_busy_timeout_ms)
    return _sync_engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory.

    The returned factory is a singleton ``async_sessionmaker`` configured with
    ``expire_on_commit=False`` to avoid implicit lazy-loading after ``await``
    boundaries in async handlers.

    Returns:
        async_sessionmaker[AsyncSession]: A session factory bound to the shared engine.
    """
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for FastAPI dependencies.

    Commits on success and rolls back on exception.

    Yields:
        AsyncSession: An active async SQLAlchemy session.
    """
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Initialize database schema.

    Creates all tables registered on ``Base.metadata`` if they do not already
    exist.
    """
    # 导入所有模型，确保其表结构注册到 Base.metadata
    import apps.queue.models  # noqa: F401
    import apps.report_task.models  # noqa: F401
    import apps.scheduler.models  # noqa: F401
    import core.models.system_config  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created/verified")


async def close_db() -> None:
    """Dispose the database engines and clear the session factory."""
    global _engine, _sync_engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connections closed")
    if _sync_engine:
        _sync_engine.dispose()
        _sync_engine = None


async def check_db_connection() -> bool:
    """Check whether the database connection is healthy.

    Executes a lightweight ``SELECT 1`` query using a fresh connection.

    Returns:
        bool: ``True`` if the query succeeds, otherwise ``False``.
    """
    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
