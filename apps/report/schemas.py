# ==============================================================================
# 模块: report/schemas.py
# 功能: 报告生成参数的 Pydantic 模型
# 架构角色: TaskMetadata 是任务的完整参数包, 在以下位置流转:
#   1. API 请求体 (创建任务时校验)
#   2. 任务队列载荷 (queue_jobs.payload, JSON 序列化)
#   3. 定时计划模板 (schedules.task_payload)
#   TaskFilter 描述一个任务覆盖的数据时间窗口和交易过滤条件。
# ==============================================================================
"""Report generation parameter schemas."""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


# --------------------------------------------------------------------------
# TaskFilter - 数据窗口与过滤条件
# 字段说明:
#   - date: 单日模式, YYYY-MM-DD
#   - range_start / range_end: 多日模式, 两者都设置时每天生成一个文件
#   - day_start_time: 业务日起始时间 HH:MM, 为空时取运行期配置 time_overlap
#   - transaction_status: 按交易状态过滤
#   - gate_id: 按车道过滤 (None 表示不过滤, 0 是合法值)
#   - origin_gate_ids: 按来源收费站过滤
#   - limit: 最大行数, 0 表示不限
# --------------------------------------------------------------------------
class TaskFilter(BaseModel):
    date: Optional[str] = None
    range_start: Optional[str] = None
    range_end: Optional[str] = None
    day_start_time: Optional[str] = None
    transaction_status: Optional[str] = None
    gate_id: Optional[int] = None
    origin_gate_ids: list[int] = Field(default_factory=list)
    limit: int = Field(default=0, ge=0)

    @property
    def is_range(self) -> bool:
        """True when both range ends are set (one report per day)."""
        return bool(self.range_start) and bool(self.range_end)


# --------------------------------------------------------------------------
# TaskMetadata - 报告生成任务的参数包
# 字段说明:
#   - root_folder: 每日交易数据文件的根目录
#   - branch_id / gate_id / station_id: 0..100 的编号
#   - settings: 覆盖运行期配置的键值对 (branch_name, page_size 等)
# --------------------------------------------------------------------------
class TaskMetadata(BaseModel):
    root_folder: str = ""
    branch_id: int = Field(default=0, ge=0, le=100)
    gate_id: int = Field(default=0, ge=0, le=100)
    station_id: int = Field(default=0, ge=0, le=100)
    filter: TaskFilter = Field(default_factory=TaskFilter)
    settings: dict[str, Any] = Field(default_factory=dict)

    def setting(self, key: str) -> Optional[str]:
        """Return a non-empty override from ``settings`` as a string."""
        value = self.settings.get(key)
        if value is None or value == "":
            return None
        return str(value)
