# ==============================================================================
# 模块: report/renderer.py
# 功能: PDF 报告渲染
# 架构角色: 报告生成的输出端。Renderer 是抽象接口, PdfRenderer 使用 fpdf2
#   生成文档: 抬头 (管理公司、分公司、车道、日期、分析员),
#   每笔交易一个区块 (字段 + 两张抓拍图片)。
#   渲染过程通过 on_progress 回调报告阶段和进度。
#   阻塞 I/O, 由生成器通过 asyncio.to_thread 调度。
# ==============================================================================
"""PDF rendering of transaction reports."""
from __future__ import annotations

import abc
import io
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Sequence

from fpdf import FPDF
from fpdf.errors import FPDFException

from apps.report.datasource import Transaction
from apps.report.exceptions import RenderError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]

PAGE_FORMATS = {
    "A3": "A3",
    "A4": "A4",
    "A5": "A5",
    "LETTER": "Letter",
}

FIELD_LABELS = (
    "GARDU",
    "SHF",
    "WAKTU",
    "GOL",
    "METODA",
    "SERI",
    "STATUS",
    "ASAL",
)


@dataclass(frozen=True)
class ReportSettings:
    """Resolved header values and destination for one report file."""

    output_path: str
    branch_name: str = ""
    company: str = ""
    operator_name: str = ""
    gate_label: str = ""
    date_label: str = ""
    page_size: str = "A4"


@dataclass(frozen=True)
class RenderResult:
    path: str
    size: int


def _pdf_safe(value: object) -> str:
    """Coerce text to what the core Helvetica font can encode."""
    return str(value).encode("latin-1", "replace").decode("latin-1")


def page_format(name: str) -> str:
    return PAGE_FORMATS.get((name or "").strip().upper(), "A4")


class Renderer(abc.ABC):
    """Turns loaded transactions into a report file."""

    @abc.abstractmethod
    def render(
        self,
        rows: Sequence[Transaction],
        settings: ReportSettings,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RenderResult:
        """Write the report and return its absolute path and byte size.

        Raises:
            RenderError: If the document cannot be built or written.
        """


class PdfRenderer(Renderer):
    """fpdf2-based renderer."""

    image_width = 60
    image_height = 40

    def render(
        self,
        rows: Sequence[Transaction],
        settings: ReportSettings,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RenderResult:
        def report(stage: str, current: int, total: int) -> None:
            if on_progress is not None:
                on_progress(stage, current, total)

        total = len(rows)
        report("Building PDF header", 0, total)

        output_path = Path(settings.output_path).resolve()
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RenderError(f"cannot create output directory {output_path.parent}: {e}") from e

        try:
            pdf = FPDF(format=page_format(settings.page_size))
            pdf.set_margins(5, 5, 5)
            pdf.set_auto_page_break(auto=True, margin=5)
            pdf.add_page()
            self._header(pdf, settings)

            for i, row in enumerate(rows, start=1):
                report(f"Appending transaction {i} of {total}", i, total)
                self._transaction(pdf, row)

            report("Rendering PDF document", total, total)
            data = bytes(pdf.output())
        except FPDFException as e:
            raise RenderError(f"failed to build report: {e}") from e

        report("Writing file to disk", total, total)
        # 先写同目录临时文件再原子替换, 失败时不留下不完整的 PDF
        tmp_path = output_path.with_name(f".{output_path.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp_path.write_bytes(data)
            os.replace(tmp_path, output_path)
            size = output_path.stat().st_size
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise RenderError(f"failed to write {output_path}: {e}") from e

        report("Completed", total, total)
        logger.info("PDF generated: %s (%d bytes, %d rows)", output_path, size, total)
        return RenderResult(path=str(output_path), size=size)

    # ------------------------------------------------------------------
    # 版面
    # ------------------------------------------------------------------

    def _header(self, pdf: FPDF, settings: ReportSettings) -> None:
        printed_at = datetime.now().strftime("%d/%m/%Y %H:%M:%S")
        pdf.set_font("Helvetica", "B", 11)
        pdf.cell(140, 6, _pdf_safe(settings.company), new_x="RIGHT")
        pdf.set_font("Helvetica", "", 10)
        pdf.cell(0, 6, printed_at, new_x="LMARGIN", new_y="NEXT")

        pdf.set_font("Helvetica", "B", 11)
        pdf.cell(140, 6, _pdf_safe(f"CABANG : {settings.branch_name}"), new_x="RIGHT")
        pdf.set_font("Helvetica", "", 10)
        pdf.cell(0, 6, "Kabang Tol/Analis", new_x="LMARGIN", new_y="NEXT")

        pdf.set_font("Helvetica", "B", 11)
        pdf.cell(140, 6, _pdf_safe(f"GERBANG : {settings.gate_label}"), new_x="RIGHT")
        pdf.set_font("Helvetica", "", 10)
        pdf.cell(0, 6, _pdf_safe(settings.operator_name), new_x="LMARGIN", new_y="NEXT")

        if settings.date_label:
            pdf.set_font("Helvetica", "", 10)
            pdf.cell(0, 6, _pdf_safe(f"TANGGAL : {settings.date_label}"), new_x="LMARGIN", new_y="NEXT")
        pdf.ln(2)

    def _transaction(self, pdf: FPDF, row: Transaction) -> None:
        values = (
            row.station,
            row.shift,
            row.timestamp,
            row.vehicle_class,
            row.method,
            row.serial,
            row.status,
            row.origin_gate,
        )
        block_height = max(len(FIELD_LABELS) * 5, self.image_height) + 2
        if pdf.will_page_break(block_height):
            pdf.add_page()

        top = pdf.get_y()
        pdf.line(pdf.l_margin, top, pdf.w - pdf.r_margin, top)
        pdf.set_y(top + 1)
        for label, value in zip(FIELD_LABELS, values):
            pdf.set_font("Helvetica", "B", 8)
            pdf.cell(20, 5, label, new_x="RIGHT")
            pdf.set_font("Helvetica", "", 8)
            pdf.cell(50, 5, _pdf_safe(f": {value}"), new_x="LMARGIN", new_y="NEXT")

        image_x = pdf.l_margin + 72
        for image in (row.first_image, row.second_image):
            self._capture(pdf, image, image_x, top + 1)
            image_x += self.image_width + 2

        pdf.set_y(top + block_height)

    def _capture(self, pdf: FPDF, image: Optional[bytes], x: float, y: float) -> None:
        if image:
            try:
                pdf.image(io.BytesIO(image), x=x, y=y, w=self.image_width, h=self.image_height)
                return
            except Exception as e:
                logger.warning("Skipping unreadable capture image: %s", e)
        saved_x, saved_y = pdf.get_x(), pdf.get_y()
        pdf.set_xy(x, y + self.image_height / 2)
        pdf.set_font("Helvetica", "B", 8)
        pdf.cell(self.image_width, 5, "[No Capture]", align="C")
        pdf.set_xy(saved_x, saved_y)
