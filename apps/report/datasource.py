# ==============================================================================
# 模块: report/datasource.py
# 功能: 每日交易数据文件读取
# 架构角色: 报告生成的数据来源。每个车道每天一个嵌入式数据库文件,
#   其中 CAPTURE 表保存交易记录 (可选的两张抓拍图片)。
#   - TransactionSource: 抽象接口, 便于测试替换
#   - SqliteTransactionSource: 使用同步 SQLAlchemy 引擎读取 SQLite 文件
#   该模块的调用均为阻塞 I/O, 由生成器通过 asyncio.to_thread 调度。
# ==============================================================================
"""Transaction source for per-gate, per-date data files."""
from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.pool import NullPool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from apps.report.exceptions import TransactionSourceError
from apps.report.schemas import TaskFilter
from apps.report.window import Window

logger = logging.getLogger(__name__)

CAPTURE_TABLE = "CAPTURE"
CAPTURE_COLUMNS = ("ID", "CB", "GB", "GD", "SHIFT", "WAKTU", "GOL", "SERI", "STATUS", "METODA", "AG")
IMAGE_COLUMNS = ("IMG1", "IMG2")
# WAKTU 以 "YYYY-MM-DD HH:MM:SS" 文本存储, 参数使用同样的格式以保证字典序比较
WAKTU_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class Transaction:
    """One row of the CAPTURE table."""

    id: int
    branch: str = ""
    gate: str = ""
    station: str = ""
    shift: str = ""
    timestamp: str = ""
    vehicle_class: str = ""
    serial: str = ""
    status: str = ""
    method: str = ""
    origin_gate: str = ""
    first_image: Optional[bytes] = field(default=None, repr=False)
    second_image: Optional[bytes] = field(default=None, repr=False)


@dataclass(frozen=True)
class TransactionQuery:
    """Window and filters applied to one data file."""

    start: datetime
    end: datetime
    status: Optional[str] = None
    gate_id: Optional[int] = None
    origin_gate_ids: tuple[int, ...] = ()
    limit: int = 0

    @classmethod
    def for_window(cls, window: Window, task_filter: TaskFilter) -> "TransactionQuery":
        return cls(
            start=window.start,
            end=window.end,
            status=task_filter.transaction_status or None,
            gate_id=task_filter.gate_id,
            origin_gate_ids=tuple(task_filter.origin_gate_ids),
            limit=task_filter.limit,
        )


def build_query(query: TransactionQuery, include_images: bool = False) -> tuple[str, dict[str, Any]]:
    """Build the CAPTURE select statement and its bound parameters.

    Args:
        query: Window and filters.
        include_images: Select the image blob columns too.

    Returns:
        tuple[str, dict]: SQL text with named parameters, and the parameters.
    """
    columns = CAPTURE_COLUMNS + (IMAGE_COLUMNS if include_images else ())
    select_list = ", ".join(f"[{name}]" for name in columns)
    sql = f"SELECT {select_list} FROM {CAPTURE_TABLE} WHERE 1=1"
    params: dict[str, Any] = {
        "start": query.start.strftime(WAKTU_FORMAT),
        "end": query.end.strftime(WAKTU_FORMAT),
    }
    sql += " AND [WAKTU] >= :start AND [WAKTU] < :end"

    if query.gate_id is not None:
        sql += " AND [GB] = :gate_id"
        params["gate_id"] = query.gate_id

    if query.origin_gate_ids:
        names = []
        for i, gate in enumerate(query.origin_gate_ids):
            names.append(f":ag_{i}")
            params[f"ag_{i}"] = gate
        sql += f" AND [AG] IN ({','.join(names)})"

    if query.status:
        sql += " AND [STATUS] = :status"
        params["status"] = query.status

    sql += " ORDER BY [ID]"

    if query.limit > 0:
        sql += " LIMIT :limit"
        params["limit"] = query.limit

    return sql, params


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime(WAKTU_FORMAT)
    return str(value)


class TransactionSource(abc.ABC):
    """Loads transactions from one per-date data file."""

    @abc.abstractmethod
    def load_transactions(self, path: str, query: TransactionQuery) -> list[Transaction]:
        """Return the rows of ``path`` matching ``query``, ordered by id.

        Raises:
            TransactionSourceError: If the file cannot be opened or queried.
        """


class SqliteTransactionSource(TransactionSource):
    """Reads the CAPTURE table from an SQLite data file.

    The gate software may still be writing the current day's file, so
    "database is locked" errors are retried briefly before giving up.
    """

    def load_transactions(self, path: str, query: TransactionQuery) -> list[Transaction]:
        file_path = Path(path)
        if not file_path.is_file():
            raise TransactionSourceError(f"data file not found: {path}")

        try:
            rows, include_images = self._read(file_path, query)
        except SQLAlchemyError as e:
            raise TransactionSourceError(f"failed to read {path}: {e}") from e

        return [
            Transaction(
                id=int(row["ID"]),
                branch=_as_text(row["CB"]),
                gate=_as_text(row["GB"]),
                station=_as_text(row["GD"]),
                shift=_as_text(row["SHIFT"]),
                timestamp=_as_text(row["WAKTU"]),
                vehicle_class=_as_text(row["GOL"]),
                serial=_as_text(row["SERI"]),
                status=_as_text(row["STATUS"]),
                method=_as_text(row["METODA"]),
                origin_gate=_as_text(row["AG"]),
                first_image=row["IMG1"] if include_images else None,
                second_image=row["IMG2"] if include_images else None,
            )
            for row in rows
        ]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        retry=retry_if_exception_type(OperationalError),
        reraise=True,
    )
    def _read(self, file_path: Path, query: TransactionQuery) -> tuple[list, bool]:
        engine = create_engine(f"sqlite:///{file_path}", poolclass=NullPool)
        try:
            with engine.connect() as conn:
                columns = {col["name"].upper() for col in inspect(conn).get_columns(CAPTURE_TABLE)}
                include_images = all(name in columns for name in IMAGE_COLUMNS)
                sql, params = build_query(query, include_images=include_images)
                logger.debug("Executing query on %s: %s", file_path, sql)
                rows = conn.execute(text(sql), params).mappings().all()
        finally:
            engine.dispose()
        return list(rows), include_images
