# ==============================================================================
# 模块: report/generator.py
# 功能: 报告生成编排 (单日 / 多日范围)
# 架构角色: 任务处理器调用的核心流程:
#   1. 计算业务日起始时间和时间窗口 (输入错误在访问数据前抛出)
#   2. 单日: 一次生成, 错误直接向上传播
#   3. 多日范围: 每天独立生成一次, 进度阶段加 "[YYYY-MM-DD] " 前缀;
#      某天失败只记录警告并跳过, 至少一天成功即视为成功
#   每次生成: 合并配置 (任务覆盖 > 运行期配置 > 默认值) → 计算数据文件路径
#   → 在线程中读取交易 → 在线程中渲染 PDF。
# ==============================================================================
"""Report generation orchestration."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Optional, Protocol

from apps.report.datasource import TransactionQuery, TransactionSource
from apps.report.exceptions import ReportGenerationError
from apps.report.renderer import ProgressCallback, RenderResult, Renderer, ReportSettings
from apps.report.schemas import TaskMetadata
from apps.report.window import Window, effective_day_start, resolve_windows
from common.path_format import PathParams, format_path

logger = logging.getLogger(__name__)

DEFAULT_DATASOURCE_PATH_FORMAT = "{MM}-{YYYY}/{StationID}/{DD}{MM}{YYYY}.db"


class ConfigReader(Protocol):
    def get(self, key: str, default: Optional[str] = None) -> Optional[str]: ...


@dataclass(frozen=True)
class GenerationResult:
    """Files produced by one task, in day order."""

    output_paths: tuple[str, ...]
    total_size: int


def data_file_path(metadata: TaskMetadata, day: date, path_format: str) -> str:
    """Location of the transaction file for ``day`` under the task's root folder."""
    relative = format_path(
        path_format,
        PathParams(
            moment=datetime.combine(day, datetime.min.time()),
            branch_id=metadata.branch_id,
            station_id=metadata.station_id or metadata.gate_id,
            gate_id=metadata.gate_id,
        ),
    )
    if not metadata.root_folder:
        return relative
    return str(Path(metadata.root_folder) / relative)


class ReportGenerator:
    """Produces one report file per logical day of a task's filter.

    Args:
        source: Transaction source for the per-date data files.
        renderer: Report renderer.
        config: Runtime configuration (``get(key, default)``).
        output_dir: Directory receiving the generated files.
        today: Returns the date used when a filter names no date.
        clock: Returns the local time stamped into ``{Time}`` placeholders.
    """

    def __init__(
        self,
        source: TransactionSource,
        renderer: Renderer,
        config: ConfigReader,
        output_dir: Path,
        today: Optional[Callable[[], date]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._source = source
        self._renderer = renderer
        self._config = config
        self._output_dir = Path(output_dir)
        self._today = today or date.today
        self._clock = clock or datetime.now

    def resolve(self, metadata: TaskMetadata) -> list[Window]:
        """Resolve the task's windows; raises ``InvalidFilterError`` on bad input."""
        day_start = effective_day_start(
            metadata.filter,
            metadata.settings,
            self._config.get("time_overlap"),
        )
        return resolve_windows(metadata.filter, day_start, today=self._today())

    def source_path(self, metadata: TaskMetadata, day: date) -> str:
        path_format = self._setting(metadata, "datasource_path_format", DEFAULT_DATASOURCE_PATH_FORMAT)
        return data_file_path(metadata, day, path_format)

    async def generate(
        self,
        metadata: TaskMetadata,
        on_progress: Optional[ProgressCallback] = None,
    ) -> GenerationResult:
        """Generate every report for ``metadata``.

        Raises:
            InvalidFilterError: Before any data access, for bad dates or ranges.
            ReportGenerationError: When no day of a range produced a report.
            TransactionSourceError, RenderError: Single-day failures.
        """
        windows = self.resolve(metadata)

        if not metadata.filter.is_range:
            result = await self._generate_day(metadata, windows[0], on_progress)
            return GenerationResult(output_paths=(result.path,), total_size=result.size)

        total_days = len(windows)
        logger.info(
            "Starting multi-date generation: %s..%s (%d days)",
            windows[0].label,
            windows[-1].label,
            total_days,
        )
        self._emit(on_progress, f"Processing date range: {total_days} days", 0, total_days)

        paths: list[str] = []
        total_size = 0
        for i, window in enumerate(windows):
            self._emit(
                on_progress,
                f"Processing date {i + 1} of {total_days}: {window.label}",
                i,
                total_days,
            )
            try:
                result = await self._generate_day(
                    metadata, window, self._prefixed(on_progress, window.label)
                )
            except Exception as e:
                logger.warning("Failed to generate report for %s, skipping: %s", window.label, e)
                continue
            paths.append(result.path)
            total_size += result.size
            logger.info("Generated report for %s: %s (%d bytes)", window.label, result.path, result.size)

        if not paths:
            raise ReportGenerationError("no reports were generated for the date range")

        self._emit(on_progress, f"Completed: {len(paths)} PDFs generated", total_days, total_days)
        return GenerationResult(output_paths=tuple(paths), total_size=total_size)

    # ------------------------------------------------------------------
    # 单日生成
    # ------------------------------------------------------------------

    async def _generate_day(
        self,
        metadata: TaskMetadata,
        window: Window,
        on_progress: Optional[ProgressCallback],
    ) -> RenderResult:
        source_path = self.source_path(metadata, window.day)
        if Path(source_path).exists():
            logger.info("Datasource file found: %s", source_path)
        else:
            logger.info("Datasource file not found: %s", source_path)

        self._emit(on_progress, "Loading transactions", 0, 0)
        query = TransactionQuery.for_window(window, metadata.filter)
        rows = await asyncio.to_thread(self._source.load_transactions, source_path, query)
        logger.info("Loaded %d transactions for %s", len(rows), window.label)

        settings = ReportSettings(
            output_path=str(self._output_dir / self._output_filename(metadata, window)),
            branch_name=self._setting(metadata, "branch_name", str(metadata.branch_id)),
            company=self._setting(metadata, "management_company", ""),
            operator_name=self._setting(metadata, "analyzer_operator_name", "Analyzer Operator"),
            gate_label=str(metadata.gate_id),
            date_label=(
                f"{window.start.strftime('%d/%m/%Y %H:%M:%S')} - "
                f"{window.inclusive_end.strftime('%d/%m/%Y %H:%M:%S')}"
            ),
            page_size=self._setting(metadata, "page_size", "A4"),
        )
        return await asyncio.to_thread(self._renderer.render, rows, settings, on_progress)

    def _output_filename(self, metadata: TaskMetadata, window: Window) -> str:
        template = self._setting(metadata, "output_filename_format", "{BranchID}_{GateID}_{DATE}")
        # 日期取自窗口, 时间取当前时间 (保证 {Time} 唯一)
        moment = datetime.combine(window.day, self._clock().time())
        name = format_path(
            template,
            PathParams(
                moment=moment,
                branch_id=metadata.branch_id,
                station_id=metadata.station_id or metadata.gate_id,
                gate_id=metadata.gate_id,
            ),
        )
        return f"{name}.pdf"

    def _setting(self, metadata: TaskMetadata, key: str, default: str) -> str:
        override = metadata.setting(key)
        if override is not None:
            return override
        value = self._config.get(key)
        if value:
            return value
        return default

    @staticmethod
    def _emit(on_progress: Optional[ProgressCallback], stage: str, current: int, total: int) -> None:
        if on_progress is not None:
            on_progress(stage, current, total)

    @staticmethod
    def _prefixed(on_progress: Optional[ProgressCallback], label: str) -> Optional[ProgressCallback]:
        if on_progress is None:
            return None

        def report(stage: str, current: int, total: int) -> None:
            on_progress(f"[{label}] {stage}", current, total)

        return report
