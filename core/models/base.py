# =============================================================================
# ORM 基础模型与通用混入类模块
# =============================================================================
# 本模块定义了所有 SQLAlchemy ORM 模型的基类和通用混入（Mixin）。
# 主要职责：
#   1. 提供所有 ORM 模型的声明式基类（Base），统一模型注册与元数据管理
#   2. 提供 UTC 日期时间列类型（UTCDateTime）：SQLite 不保存时区信息，
#      写入时统一转换为 UTC 并去掉 tzinfo，读出时重新附加 UTC
#   3. 提供时间戳混入类（TimestampMixin），自动管理创建时间和更新时间字段
# =============================================================================

"""Base models and mixins for DataLane PDF."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as naive UTC.

    SQLite has no native timezone support, so values are normalised to UTC
    on the way in and tagged as UTC on the way out. Bound parameters in
    comparisons go through the same conversion, which keeps lexical ordering
    of the stored strings consistent with chronological ordering.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for all ORM models.

    All models must inherit from this base so they are registered in
    ``Base.metadata`` for schema creation.
    """

    pass


class TimestampMixin:
    """Mixin providing ``created_at`` and ``updated_at`` timestamps.

    The timestamps are generated in UTC at the Python layer. ``updated_at`` is
    refreshed automatically on ORM update operations; bulk ``UPDATE``
    statements set it explicitly.
    """

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


# 带时区信息的日期时间类型别名
# 示例：last_run: Mapped[DateTimeTZ | None] = mapped_column(nullable=True)
DateTimeTZ = Annotated[datetime, mapped_column(UTCDateTime())]
