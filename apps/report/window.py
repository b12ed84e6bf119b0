# ==============================================================================
# 模块: report/window.py
# 功能: 业务日时间窗口计算
# 架构角色: 纯函数模块, 将 TaskFilter 与业务日起始时间 (day start) 转换为
#   一个或多个半开区间 [date@day_start, (date+1)@day_start)。
#   - 单日 / 仅 range_start / 都未设置 → 一个窗口
#   - range_start 与 range_end 都设置 → 每个自然日一个窗口 (含两端)
#   - 无法解析的日期一律拒绝 (InvalidFilterError), 不会用当前日期替代
#   窗口时间为数据文件中的本地时间 (不带时区)。
# ==============================================================================
"""Business-day window resolution for report filters."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Mapping, Optional

from apps.report.exceptions import InvalidFilterError
from apps.report.schemas import TaskFilter

DEFAULT_DAY_START = time(0, 0)


@dataclass(frozen=True)
class Window:
    """Half-open timestamp range covering one logical day."""

    day: date
    start: datetime
    end: datetime

    @property
    def inclusive_end(self) -> datetime:
        """Last whole second inside the window."""
        return self.end - timedelta(seconds=1)

    @property
    def label(self) -> str:
        return self.day.isoformat()


def parse_day_start(value: Optional[str]) -> time:
    """Parse an ``HH:MM`` day start time; empty means midnight.

    Raises:
        InvalidFilterError: If the value is not a valid ``HH:MM`` time.
    """
    if value is None or not str(value).strip():
        return DEFAULT_DAY_START
    text = str(value).strip()
    try:
        parsed = datetime.strptime(text, "%H:%M")
    except ValueError:
        raise InvalidFilterError(f"invalid day start time {text!r}, expected HH:MM") from None
    return parsed.time()


def parse_filter_date(value: str, field: str = "date") -> date:
    """Parse a filter date.

    Accepts ``YYYY-MM-DD`` or an ISO 8601 datetime, in which case only the
    date part is used.

    Raises:
        InvalidFilterError: If the value cannot be parsed.
    """
    text = (value or "").strip()
    if not text:
        raise InvalidFilterError(f"{field} is empty")
    try:
        return datetime.strptime(text, "%Y-%m-%d").date()
    except ValueError:
        pass
    try:
        # Python < 3.11 的 fromisoformat 不接受 "Z" 后缀
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        raise InvalidFilterError(f"invalid {field} {text!r}, expected YYYY-MM-DD") from None


def resolve_window(day: date, day_start: time = DEFAULT_DAY_START) -> Window:
    """Return ``[day@day_start, (day+1)@day_start)``."""
    start = datetime.combine(day, day_start)
    return Window(day=day, start=start, end=start + timedelta(days=1))


def resolve_windows(
    task_filter: TaskFilter,
    day_start: Optional[time] = None,
    today: Optional[date] = None,
) -> list[Window]:
    """Resolve a filter into one window per logical day.

    Args:
        task_filter: The task's filter.
        day_start: Effective day start (see ``effective_day_start``).
        today: Date used when the filter names no date at all.

    Returns:
        list[Window]: Windows in day order. Never empty.

    Raises:
        InvalidFilterError: For unparsable dates or an inverted range.
    """
    day_start = day_start or DEFAULT_DAY_START

    if task_filter.is_range:
        first = parse_filter_date(task_filter.range_start, "range_start")
        last = parse_filter_date(task_filter.range_end, "range_end")
        days = (last - first).days + 1
        if days <= 0:
            raise InvalidFilterError(
                f"invalid date range: range_end {last.isoformat()} is before "
                f"range_start {first.isoformat()}"
            )
        return [resolve_window(first + timedelta(days=i), day_start) for i in range(days)]

    if task_filter.date:
        return [resolve_window(parse_filter_date(task_filter.date), day_start)]

    # 只设置了范围的一端时按单日处理
    if task_filter.range_start:
        return [resolve_window(parse_filter_date(task_filter.range_start, "range_start"), day_start)]
    if task_filter.range_end:
        return [resolve_window(parse_filter_date(task_filter.range_end, "range_end"), day_start)]

    return [resolve_window(today or date.today(), day_start)]


def effective_day_start(
    task_filter: TaskFilter,
    overrides: Optional[Mapping[str, Any]] = None,
    configured: Optional[str] = None,
) -> time:
    """Pick the day start: filter, then task settings, then runtime config.

    Falls back to midnight when none of them is set.
    """
    candidates = (
        task_filter.day_start_time,
        (overrides or {}).get("day_start_time"),
        configured,
    )
    for candidate in candidates:
        if candidate is not None and str(candidate).strip():
            return parse_day_start(str(candidate))
    return DEFAULT_DAY_START
