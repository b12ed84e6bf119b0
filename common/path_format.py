# =============================================================================
# 模块: common/path_format.py
# 功能: 路径/文件名模板展开
# 架构角色: 报告生成时用于计算每日交易数据文件路径和输出文件名。
#   支持的占位符：
#     {YYYY} {YY} {MM} {DD}   年/两位年/月/日
#     {Date} / {date} / {DATE} YYYYMMDD
#     {Time} / {time}          HHMMSS
#     {BranchID} {StationID} {GateID}  两位补零的编号，GateID 为 0 时使用 StationID
#     {branch_id} {station_id} {gate_id}  旧格式别名
# =============================================================================
"""Placeholder expansion for data file paths and report filenames."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class PathParams:
    """Values substituted into a path template."""

    moment: datetime
    branch_id: int = 0
    station_id: int = 0
    gate_id: int = 0


def pad_id(value: int) -> str:
    """Zero-pad an identifier to at least two digits."""
    return f"{int(value):02d}"


def format_path(template: str, params: PathParams) -> str:
    """Expand every supported placeholder in ``template``.

    Unknown placeholders are left untouched.

    Args:
        template: Template such as ``"{MM}-{YYYY}/{StationID}/{DD}{MM}{YYYY}.db"``.
        params: Timestamp and identifiers to substitute.

    Returns:
        str: The expanded path.
    """
    moment = params.moment
    date_str = moment.strftime("%Y%m%d")
    time_str = moment.strftime("%H%M%S")
    branch = pad_id(params.branch_id)
    station = pad_id(params.station_id)
    gate = pad_id(params.gate_id) if params.gate_id else station

    # {YYYY} 必须先于 {YY} 替换
    replacements = (
        ("{YYYY}", moment.strftime("%Y")),
        ("{YY}", moment.strftime("%y")),
        ("{MM}", moment.strftime("%m")),
        ("{DD}", moment.strftime("%d")),
        ("{Date}", date_str),
        ("{Time}", time_str),
        ("{BranchID}", branch),
        ("{StationID}", station),
        ("{GateID}", gate),
        ("{branch_id}", branch),
        ("{station_id}", station),
        ("{gate_id}", gate),
        ("{date}", date_str),
        ("{DATE}", date_str),
        ("{time}", time_str),
    )
    result = template
    for placeholder, value in replacements:
        result = result.replace(placeholder, value)
    return result
