# =============================================================================
# 模块: common/utils.py
# 功能: 通用日期时间工具函数集
# 架构角色: 作为基础工具层，提供时钟与日期计算函数。
#   被任务生命周期、任务队列、调度器和保留期清理共同使用。
#   所有需要"当前时间"的组件都接受一个 clock 参数，默认为 utc_now，
#   测试中可注入固定时钟。
# =============================================================================
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

# 时钟类型：无参数、返回带时区的当前时间
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current UTC time.

    返回带有 UTC 时区信息的 datetime 对象。
    建议使用该函数代替 ``datetime.utcnow()``。

    Returns:
        datetime: Current UTC datetime with timezone info.
    """
    return datetime.now(timezone.utc)


def today_in(timezone_name: str | None = None, clock: Clock = utc_now) -> date:
    """Return today's date in the given timezone.

    可指定时区名称获取该时区的当天日期，不指定时默认使用 UTC。

    Args:
        timezone_name: Optional timezone name (e.g. "Asia/Jakarta").
        clock: Source of the current instant.

    Returns:
        date: Calendar date of ``clock()`` in that timezone.
    """
    tz = ZoneInfo(timezone_name) if timezone_name else timezone.utc
    return clock().astimezone(tz).date()


def cutoff_before(days: int, clock: Clock = utc_now) -> datetime:
    """Return the instant ``days`` days before now (minimum 0 days)."""
    return clock() - timedelta(days=max(int(days), 0))
