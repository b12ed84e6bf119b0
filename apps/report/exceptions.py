# ==============================================================================
# 模块: report/exceptions.py
# 功能: 报告生成相关的异常类型
# 架构角色: 任务处理器根据异常类型决定是否重试:
#   - InvalidFilterError: 输入错误, 永不重试
#   - TransactionSourceError / RenderError: 暂时性 I/O 错误, 交由队列重试
#   - ReportGenerationError: 多日范围内所有日期都失败
# ==============================================================================
"""Report generation exceptions."""
from __future__ import annotations


class ReportError(Exception):
    """Base class for report generation errors."""


class InvalidFilterError(ReportError, ValueError):
    """Raised when a filter date, range or day start time cannot be used."""


class TransactionSourceError(ReportError):
    """Raised when the per-date transaction file cannot be read."""


class RenderError(ReportError):
    """Raised when the report document cannot be built or written."""


class ReportGenerationError(ReportError):
    """Raised when a report pass produced no output."""
