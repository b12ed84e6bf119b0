# =============================================================================
# 模块: common/runtime_config.py
# 功能: 运行期配置服务，数据库驱动的键值配置
# 架构角色: 位于 settings.py（静态配置）之上，提供可在运行期修改的配置：
#   1. 数据库持久化：配置存储在 system_config 表中
#   2. 内存缓存：60 秒 TTL 的缓存层，减少数据库查询
#   3. 默认值种子：首次启动时从 DEFAULT_CONFIGS 写入数据库（不覆盖已有值）
#   4. 数据库未就绪时回退到内存中的默认值
#
# 报告生成、任务队列、保留期清理和 WAL 检查点都从这里读取参数。
# =============================================================================
"""Runtime configuration service for DataLane PDF.

Provides a database-backed key/value configuration layer with an
in-memory cache (TTL 60 s). Values are stored as strings; typed accessors
parse them and fall back to the supplied default on malformed input.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Optional

from sqlalchemy import Engine, select, text as sa_text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.models.system_config import SystemConfig

logger = logging.getLogger(__name__)

# =============================================================================
# 默认配置字典
# 值是元组 (默认值字符串, 配置项描述)
# =============================================================================
DEFAULT_CONFIGS: Dict[str, tuple[str, str]] = {
    # ---- 报告抬头 ----
    "branch_id": ("001", "Branch identifier printed on reports"),
    "branch_name": ("BRANCH", "Branch display name"),
    "management_company": ("PT Company", "Management company name"),
    "analyzer_operator_name": ("Analyzer Operator", "Operator printed on reports"),
    "page_size": ("A4", "PDF page size"),
    # ---- 路径模板 ----
    "output_filename_format": (
        "{BranchID}_{GateID}_{DATE}",
        "Output filename template (without extension)",
    ),
    "datasource_path_format": (
        "{MM}-{YYYY}/{StationID}/{DD}{MM}{YYYY}.db",
        "Per-date transaction file path relative to the task root folder",
    ),
    # ---- 日切时间 ----
    "time_overlap": ("00:00", "Business day start time (HH:MM)"),
    # ---- 数据保留 ----
    "max_output_age_days": ("7", "Days to keep generated reports"),
    # ---- 任务队列 ----
    "queue_concurrency": ("1", "Number of concurrent report workers"),
    # ---- SQLite WAL ----
    "wal_checkpoint_interval": ("30", "Minutes between WAL checkpoints"),
    "wal_max_size_mb": ("20", "WAL size in MB that forces a checkpoint"),
}

# 缓存存活时间（秒）
_CACHE_TTL = 60


class RuntimeConfigService:
    """Database-backed configuration service with in-memory cache.

    提供运行时动态配置能力，位于静态 settings 之上。

    Args:
        session_factory: Async session factory; defaults to the shared one.
        sync_engine: Sync engine for cache refreshes outside coroutines;
            defaults to the shared one.
        defaults: Default key/value pairs used for seeding and fallback.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        sync_engine: Optional[Engine] = None,
        defaults: Optional[Dict[str, tuple[str, str]]] = None,
    ) -> None:
        self._session_factory = session_factory
        self._sync_engine = sync_engine
        self._defaults = defaults if defaults is not None else DEFAULT_CONFIGS
        self._cache: Dict[str, str] = {}
        self._cache_ts: float = 0.0
        # 冻结标志：为 True 时跳过缓存刷新
        self._frozen: bool = False

    # ------------------------------------------------------------------
    # 公开读取方法
    # ------------------------------------------------------------------

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Return a config value (string).

        获取配置值。先检查内存缓存（必要时自动刷新），
        缓存中没有则回退到 DEFAULT_CONFIGS，再回退到 default。

        Args:
            key: Configuration key, e.g. "branch_name".
            default: Default value when key is missing.

        Returns:
            Optional[str]: Config value string or default.
        """
        self._maybe_refresh_cache()
        val = self._cache.get(key)
        if val is not None:
            return val
        if default is None and key in self._defaults:
            return self._defaults[key][0]
        return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Return a boolean config value ("true"/"1"/"yes"/"on" are True)."""
        val = self.get(key)
        if val is None:
            return default
        return val.lower() in ("true", "1", "yes", "on")

    def get_int(self, key: str, default: int = 0) -> int:
        """Return an integer config value, or default on parse failure."""
        val = self.get(key)
        if val is None:
            return default
        try:
            return int(val)
        except (ValueError, TypeError):
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        """Return a float config value, or default on parse failure."""
        val = self.get(key)
        if val is None:
            return default
        try:
            return float(val)
        except (ValueError, TypeError):
            return default

    def get_all(self, prefix: Optional[str] = None) -> Dict[str, str]:
        """Return all cached configs, optionally filtered by key prefix."""
        self._maybe_refresh_cache()
        merged = {k: v for k, (v, _) in self._defaults.items()}
        merged.update(self._cache)
        if prefix is None:
            return merged
        return {k: v for k, v in merged.items() if k.startswith(prefix)}

    # ------------------------------------------------------------------
    # 写入与刷新
    # ------------------------------------------------------------------

    async def async_set(
        self,
        key: str,
        value: str,
        description: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> None:
        """Upsert a single config row and update the cache.

        插入或更新单条配置记录，成功后立即更新内存缓存。
        """
        session_factory = self._get_session_factory()
        async with session_factory() as session:
            try:
                row = await session.get(SystemConfig, key)
                if row is None:
                    session.add(
                        SystemConfig(
                            config_key=key,
                            config_value=value,
                            description=description or "",
                            updated_by=updated_by,
                        )
                    )
                else:
                    row.config_value = value
                    if description is not None:
                        row.description = description
                    if updated_by is not None:
                        row.updated_by = updated_by
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        self._cache[key] = value

    async def async_reload(self) -> None:
        """Force-refresh the cache from the database."""
        self._cache_ts = 0.0
        await self._async_refresh_cache()

    def freeze(self) -> None:
        """Freeze the cache, preventing automatic refreshes."""
        self._frozen = True
        logger.debug("Runtime config cache frozen")

    def unfreeze(self) -> None:
        """Unfreeze the cache, allowing automatic refreshes again."""
        self._frozen = False
        logger.debug("Runtime config cache unfrozen")

    async def seed_defaults(
        self, defaults: Optional[Dict[str, tuple[str, str]]] = None
    ) -> int:
        """Insert default config rows into the database.

        Only inserts keys that do not yet exist (won't overwrite edited values).

        Args:
            defaults: Optional custom defaults dictionary.

        Returns:
            int: Number of rows inserted.
        """
        if defaults is None:
            defaults = self._defaults

        session_factory = self._get_session_factory()
        inserted = 0

        async with session_factory() as session:
            try:
                result = await session.execute(select(SystemConfig.config_key))
                existing = set(result.scalars().all())
                for key, (value, description) in defaults.items():
                    if key in existing:
                        continue
                    session.add(
                        SystemConfig(
                            config_key=key,
                            config_value=value,
                            description=description,
                        )
                    )
                    inserted += 1
                await session.commit()
                logger.info(
                    "Seeded %d default config rows (%d already existed)",
                    inserted,
                    len(defaults) - inserted,
                )
            except Exception:
                await session.rollback()
                raise

        await self._async_refresh_cache()
        return inserted

    # ------------------------------------------------------------------
    # 内部辅助方法
    # ------------------------------------------------------------------

    def _get_session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from core.database import get_session_factory

            self._session_factory = get_session_factory()
        return self._session_factory

    def _maybe_refresh_cache(self) -> None:
        """Refresh cache if stale (sync path).

        数据库尚未就绪时回退到硬编码的默认值，保证服务可用。
        """
        if self._frozen and self._cache:
            return

        if time.monotonic() - self._cache_ts < _CACHE_TTL and self._cache:
            return

        try:
            self._sync_refresh_cache()
        except Exception:
            if not self._cache:
                logger.debug("DB not ready, using in-memory defaults")
                self._cache = {k: v for k, (v, _) in self._defaults.items()}
                self._cache_ts = time.monotonic()

    def _sync_refresh_cache(self) -> None:
        """Load all config rows from DB using the sync engine."""
        engine = self._sync_engine
        if engine is None:
            from core.database import get_sync_engine

            engine = get_sync_engine()
        with engine.connect() as conn:
            result = conn.execute(
                sa_text("SELECT config_key, config_value FROM system_config")
            )
            rows = result.all()

        self._cache = {row[0]: row[1] for row in rows}
        self._cache_ts = time.monotonic()

    async def _async_refresh_cache(self) -> None:
        """Load all config rows from DB into the in-memory cache."""
        session_factory = self._get_session_factory()
        async with session_factory() as session:
            result = await session.execute(
                select(SystemConfig.config_key, SystemConfig.config_value)
            )
            rows = result.all()

        self._cache = {row[0]: row[1] for row in rows}
        self._cache_ts = time.monotonic()


# 模块级单例实例
# 整个应用通过 from common.runtime_config import runtime_config 共享此实例
runtime_config = RuntimeConfigService()
