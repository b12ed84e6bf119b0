# ==============================================================================
# 模块: settings.py
# 功能: 全局静态配置 (pydantic-settings)
# 架构角色: 进程启动时读取一次的配置来源, 涵盖数据库位置、输出目录、
#   队列超时/重试参数、调度器时区等。运行期可修改的键值配置
#   (分公司名称、文件名模板、日切时间等) 见 common/runtime_config.py。
# ==============================================================================
"""Global application settings for the DataLane PDF service.

Configuration precedence (highest to lowest):
1. Environment variables (runtime override)
2. .env file (secrets)
3. config/defaults.yaml (non-sensitive defaults)
4. Hardcoded Python defaults (fallback)
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from common.config_loader import get_section

BASE_DIR = Path(__file__).resolve().parent

# 读取 config/defaults.yaml 中的各段默认值
_app_config = get_section("app")               # 应用基本配置
_db_config = get_section("database")           # 数据库配置
_queue_config = get_section("queue")           # 任务队列配置
_scheduler_config = get_section("scheduler")   # 定时调度配置
_report_config = get_section("report")         # 报告生成配置


def _resolve_dir(value: str) -> Path:
    """Resolve a possibly relative directory against BASE_DIR."""
    path = Path(value)
    if not path.is_absolute():
        return BASE_DIR / path
    return path


class Settings(BaseSettings):
    """Global application settings."""

    # ======================== 应用基本配置 ========================
    app_name: str = Field(
        default=_app_config.get("name", "DataLane PDF"),
        validation_alias="APP_NAME",
    )
    debug: bool = Field(
        default=_app_config.get("debug", False),
        validation_alias="DEBUG",
    )
    app_host: str = Field(
        default=_app_config.get("host", "0.0.0.0"),
        validation_alias="APP_HOST",
    )
    app_port: int = Field(
        default=_app_config.get("port", 8000),
        validation_alias="APP_PORT",
    )
    data_dir: Path = Field(
        default=_resolve_dir(_app_config.get("data_dir", "./data")),
        validation_alias="DATA_DIR",
    )
    cors_origins: str = Field(
        default=_app_config.get("cors_origins", "*"),
        validation_alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(
        default=_app_config.get("cors_allow_credentials", False),
        validation_alias="CORS_ALLOW_CREDENTIALS",
    )

    # ======================== 数据库配置 ========================
    # SQLite 文件路径，相对路径基于 data_dir
    db_path: str = Field(
        default=_db_config.get("path", "app.db"),
        validation_alias="DB_PATH",
    )
    db_echo: bool = Field(
        default=_db_config.get("echo", False),
        validation_alias="DB_ECHO",
    )
    db_busy_timeout_ms: int = Field(
        default=_db_config.get("busy_timeout_ms", 5000),
        validation_alias="DB_BUSY_TIMEOUT_MS",
    )

    # ======================== 任务队列配置 ========================
    # 单个任务的执行超时（秒）
    queue_job_timeout_seconds: int = Field(
        default=_queue_config.get("job_timeout_seconds", 600),
        validation_alias="QUEUE_JOB_TIMEOUT_SECONDS",
    )
    # 最大尝试次数（含首次执行）
    queue_max_attempts: int = Field(
        default=_queue_config.get("max_attempts", 3),
        validation_alias="QUEUE_MAX_ATTEMPTS",
    )
    # 重试退避基础间隔（秒），每次失败后翻倍
    queue_backoff_seconds: float = Field(
        default=_queue_config.get("backoff_seconds", 5.0),
        validation_alias="QUEUE_BACKOFF_SECONDS",
    )
    # 运行中任务的租约超时（秒），超过后可被其他 worker 重新领取
    queue_release_after_seconds: int = Field(
        default=_queue_config.get("release_after_seconds", 1800),
        validation_alias="QUEUE_RELEASE_AFTER_SECONDS",
    )
    queue_wake_interval_seconds: float = Field(
        default=_queue_config.get("wake_interval_seconds", 1.0),
        validation_alias="QUEUE_WAKE_INTERVAL_SECONDS",
    )
    queue_poll_interval_seconds: float = Field(
        default=_queue_config.get("poll_interval_seconds", 5.0),
        validation_alias="QUEUE_POLL_INTERVAL_SECONDS",
    )
    # 进度写库节流间隔（秒）
    progress_flush_interval_seconds: float = Field(
        default=_queue_config.get("progress_flush_interval_seconds", 1.0),
        validation_alias="PROGRESS_FLUSH_INTERVAL_SECONDS",
    )

    # ======================== 定时调度配置 ========================
    scheduler_timezone: str = Field(
        default=_scheduler_config.get("timezone", "UTC"),
        validation_alias="SCHEDULER_TIMEZONE",
    )
    # always: 每次触发都创建任务; skip_if_active: 上一次任务未结束时跳过
    schedule_overlap_policy: str = Field(
        default=_scheduler_config.get("overlap_policy", "always"),
        validation_alias="SCHEDULE_OVERLAP_POLICY",
    )
    maintenance_cron: str = Field(
        default=_scheduler_config.get("maintenance_cron", "0 0 * * *"),
        validation_alias="MAINTENANCE_CRON",
    )

    # ======================== 报告生成配置 ========================
    output_dir: Path = Field(
        default=_resolve_dir(_report_config.get("output_dir", "./output")),
        validation_alias="OUTPUT_DIR",
    )

    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("schedule_overlap_policy", mode="before")
    @classmethod
    def normalize_overlap_policy(cls, v: str) -> str:
        """Accept only the known overlap policies, defaulting to ``always``."""
        value = (v or "").strip().lower()
        if value not in ("always", "skip_if_active"):
            return "always"
        return value

    @property
    def database_file(self) -> Path:
        """Absolute path of the SQLite database file."""
        path = Path(self.db_path)
        if not path.is_absolute():
            path = self.data_dir / path
        return path

    @property
    def database_url(self) -> str:
        """Build async SQLite database URL (aiosqlite driver)."""
        return f"sqlite+aiosqlite:///{self.database_file}"

    @property
    def database_url_sync(self) -> str:
        """Build sync SQLite database URL (runtime config cache refresh)."""
        return f"sqlite:///{self.database_file}"


# 创建全局配置单例
# 整个应用通过 from settings import settings 引用此实例
settings = Settings()
