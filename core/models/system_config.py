# =============================================================================
# 模块: core/models/system_config.py
# 功能: 运行期键值配置的数据模型
# 架构角色: common/runtime_config.py 的持久化层。
#   分公司信息、文件名模板、日切时间、保留天数、队列并发数等
#   可在运行期修改的配置都以字符串形式存放在此表中。
# =============================================================================

"""Runtime key/value configuration model."""

from __future__ import annotations

from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.models.base import Base, TimestampMixin


class SystemConfig(Base, TimestampMixin):
    """Runtime configuration stored in database.

    运行期配置的数据库存储模型，以 config_key 为主键。
    """

    __tablename__ = "system_config"

    config_key: Mapped[str] = mapped_column(
        String(100),
        primary_key=True,
        comment="Configuration key",
    )
    config_value: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Configuration value",
    )
    description: Mapped[str] = mapped_column(
        String(255),
        default="",
        nullable=False,
    )
    is_sensitive: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    # 最后修改人（自由文本，系统写入时为空）
    updated_by: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<SystemConfig(key={self.config_key})>"
