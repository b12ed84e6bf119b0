# ==============================================================================
# 模块: SQLite WAL 检查点任务
# 作用: 每分钟检查一次任务库的 WAL 文件。距上次检查点超过
#       wal_checkpoint_interval 分钟, 或 WAL 文件达到 wal_max_size_mb 时,
#       执行 PRAGMA wal_checkpoint(TRUNCATE) 把 WAL 合并回主库并截断。
# ==============================================================================

"""WAL checkpoint job for the task database."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy import Engine

from apps.report.generator import ConfigReader

logger = logging.getLogger(__name__)


class WalCheckpointer:
    """Periodic ``wal_checkpoint(TRUNCATE)`` driven by age and WAL size.

    Args:
        engine: Synchronous engine bound to the task database.
        database_file: Path of the main database file.
        config: Reader for ``wal_checkpoint_interval`` (minutes) and
            ``wal_max_size_mb``.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        engine: Engine,
        database_file: Path,
        config: ConfigReader,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._engine = engine
        self._wal_file = Path(f"{database_file}-wal")
        self._config = config
        self._clock = clock
        self._last_checkpoint = clock()

    def _number(self, key: str, default: float) -> float:
        raw = self._config.get(key)
        try:
            return float(raw) if raw not in (None, "") else default
        except (TypeError, ValueError):
            return default

    def wal_size(self) -> int:
        try:
            return self._wal_file.stat().st_size
        except FileNotFoundError:
            return 0

    def due(self) -> Optional[str]:
        """Reason a checkpoint is due now, or None."""
        interval_minutes = self._number("wal_checkpoint_interval", 30)
        max_bytes = self._number("wal_max_size_mb", 20) * 1024 * 1024
        if max_bytes > 0 and self.wal_size() >= max_bytes:
            return "size"
        if interval_minutes > 0 and self._clock() - self._last_checkpoint >= interval_minutes * 60:
            return "interval"
        return None

    def checkpoint(self) -> tuple:
        """Run the checkpoint; returns ``(busy, log_frames, checkpointed_frames)``."""
        with self._engine.connect() as conn:
            row = conn.exec_driver_sql("PRAGMA wal_checkpoint(TRUNCATE)").fetchone()
        self._last_checkpoint = self._clock()
        return tuple(row) if row is not None else (0, 0, 0)

    async def run(self) -> bool:
        """Scheduler entry point; checkpoints only when due."""
        reason = self.due()
        if reason is None:
            return False
        size = self.wal_size()
        busy, log_frames, checkpointed = await asyncio.to_thread(self.checkpoint)
        if busy:
            logger.warning("WAL checkpoint (%s) was blocked by readers", reason)
        else:
            logger.info(
                "WAL checkpoint (%s): %d byte WAL, %d/%d frames checkpointed",
                reason,
                size,
                checkpointed,
                log_frames,
            )
        return True
