# =============================================================================
# 模块: common/logger.py
# 功能: 日志系统初始化入口
# 架构角色: 在 main.py 的模块级代码中调用一次。YAML 加载逻辑委托给
#   config_loader.setup_logging_from_yaml; 这里负责把 debug 开关或级别名
#   统一成日志级别, 并把 warnings 模块的告警 (如 APScheduler 的
#   misfire 告警) 转入 logging。
# =============================================================================
"""Logging setup for DataLane PDF."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

from common.config_loader import setup_logging_from_yaml

_configured = False


def resolve_level(level: Union[str, bool, None]) -> str:
    """Normalise a level name or a debug flag to a logging level name.

    ``True`` means DEBUG, ``False``/``None`` mean INFO; unknown names fall
    back to INFO.
    """
    if isinstance(level, bool) or level is None:
        return "DEBUG" if level else "INFO"
    name = str(level).strip().upper()
    return name if isinstance(logging.getLevelName(name), int) else "INFO"


def setup_logging(level: Union[str, bool, None] = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure logging from config/logging.yaml.

    重复调用时只调整根日志级别, 不会重新创建处理器。

    Args:
        level: Root level name, or the ``debug`` flag.
        log_file: Override for the rotating file handler's filename.
    """
    global _configured
    level_name = resolve_level(level)
    if _configured:
        logging.getLogger().setLevel(level_name)
        return
    setup_logging_from_yaml(log_level_override=level_name, log_file_override=log_file)
    logging.captureWarnings(True)
    _configured = True
