"""Tests for apps/scheduler/jobs/wal_checkpoint_job.py.

WAL 检查点任务测试。

Run with: pytest tests/apps/scheduler/test_wal_checkpoint_job.py -v
"""

from __future__ import annotations

import pytest
from sqlalchemy import create_engine, event, text

from apps.scheduler.jobs.wal_checkpoint_job import WalCheckpointer


@pytest.fixture
def wal_db(tmp_path):
    path = tmp_path / "app.db"
    engine = create_engine(f"sqlite:///{path}")

    @event.listens_for(engine, "connect")
    def _wal(dbapi_conn, _record):
        dbapi_conn.execute("PRAGMA journal_mode=WAL")

    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE t (id INTEGER PRIMARY KEY, v TEXT)"))
        conn.execute(text("INSERT INTO t (v) VALUES ('x')"))
    yield engine, path
    engine.dispose()


class TestWalCheckpointer:
    """Test checkpoint triggers.

    验证按间隔和文件大小触发检查点。
    """

    @pytest.mark.asyncio
    async def test_not_due_before_interval(self, wal_db, make_config):
        engine, path = wal_db
        now = [0.0]
        checkpointer = WalCheckpointer(
            engine, path, make_config(wal_checkpoint_interval="30", wal_max_size_mb="20"), clock=lambda: now[0]
        )
        now[0] = 60
        assert checkpointer.due() is None
        assert await checkpointer.run() is False

    @pytest.mark.asyncio
    async def test_interval_elapsed_truncates_wal(self, wal_db, make_config):
        engine, path = wal_db
        now = [0.0]
        checkpointer = WalCheckpointer(
            engine, path, make_config(wal_checkpoint_interval="30"), clock=lambda: now[0]
        )
        now[0] = 30 * 60

        assert checkpointer.due() == "interval"
        assert await checkpointer.run() is True
        assert checkpointer.wal_size() == 0
        assert checkpointer.due() is None

    def test_size_trigger(self, wal_db, make_config):
        engine, path = wal_db
        checkpointer = WalCheckpointer(
            engine, path, make_config(wal_checkpoint_interval="0", wal_max_size_mb="0.000001"), clock=lambda: 0.0
        )
        assert checkpointer.wal_size() > 0
        assert checkpointer.due() == "size"

    def test_missing_wal_file(self, tmp_path, make_config):
        checkpointer = WalCheckpointer(create_engine("sqlite://"), tmp_path / "none.db", make_config())
        assert checkpointer.wal_size() == 0
