"""Excel-отчёт по метрикам извлечения.

Лист «Документы»: одна строка на запись ProcessingMetrics с подсветкой
по качеству данных. Лист «Сводка» (первый): агрегаты за период и
диаграмма методов обработки.
"""
import logging
from dataclasses import asdict
from datetime import datetime
from pathlib import Path

import pandas as pd
from openpyxl import load_workbook
from openpyxl.chart import BarChart, Reference
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from ingest.models import AggregatedMetrics, ProcessingMetrics

logger = logging.getLogger(__name__)

COLUMNS = {
    "document_id": "Документ",
    "file_type": "Тип файла",
    "processing_method": "Метод",
    "parser_used": "Парсер",
    "fallback_attempts": "Fallback-попыток",
    "confidence": "Уверенность",
    "fields_extracted": "Полей извлечено",
    "fields_expected": "Полей ожидалось",
    "data_quality": "Качество данных",
    "processing_time_ms": "Время, мс",
    "categories_identified": "Категории",
    "errors": "Ошибки",
    "timestamp": "Время записи",
}

QUALITY_COLORS = {
    "high": "C6EFCE",    # Зелёный
    "medium": "FFEB9C",  # Жёлтый
    "low": "FFC7CE",     # Красный
}

_DOCUMENTS_SHEET = "Документы"


def generate_metrics_report(
    records: list[ProcessingMetrics], aggregated: AggregatedMetrics, output_dir: Path
) -> Path:
    """Пишет Реестр_метрик.xlsx в output_dir и возвращает путь к нему."""
    output_dir.mkdir(parents=True, exist_ok=True)
    output_path = output_dir / "Реестр_метрик.xlsx"

    df = _prepare_dataframe(records)
    with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name=_DOCUMENTS_SHEET, index=False)

    wb = load_workbook(output_path)
    _format_sheet(wb[_DOCUMENTS_SHEET])
    _create_summary_sheet(wb, aggregated)
    wb.save(output_path)

    logger.info("Excel-отчёт по метрикам создан: %s (%d записей)", output_path, len(df))
    return output_path


def _prepare_dataframe(records: list[ProcessingMetrics]) -> pd.DataFrame:
    if not records:
        return pd.DataFrame(columns=list(COLUMNS.values()))
    df = pd.DataFrame([asdict(r) for r in records])
    for col in ("categories_identified", "errors"):
        df[col] = df[col].apply(lambda v: "; ".join(v) if isinstance(v, list) else (v or ""))
    df["confidence"] = df["confidence"].round(3)
    df["processing_time_ms"] = df["processing_time_ms"].round(1)
    df = df.rename(columns=COLUMNS)
    return df[list(COLUMNS.values())]


def _format_sheet(ws) -> None:
    header_fill = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
    header_font = Font(bold=True, color="FFFFFF", size=11)
    for cell in ws[1]:
        cell.fill = header_fill
        cell.font = header_font
        cell.alignment = Alignment(horizontal="center", wrap_text=True)

    ws.auto_filter.ref = ws.dimensions
    ws.freeze_panes = "A2"

    quality_col = None
    for col_idx, cell in enumerate(ws[1], 1):
        if cell.value == COLUMNS["data_quality"]:
            quality_col = col_idx
            break

    if quality_col:
        for row in ws.iter_rows(min_row=2, max_row=ws.max_row):
            color = QUALITY_COLORS.get(row[quality_col - 1].value)
            if color:
                fill = PatternFill(start_color=color, end_color=color, fill_type="solid")
                for cell in row:
                    cell.fill = fill

    # Автоширина по первым 50 строкам
    for col_idx in range(1, ws.max_column + 1):
        max_length = 0
        for row in ws.iter_rows(min_row=1, max_row=min(ws.max_row, 50), min_col=col_idx, max_col=col_idx):
            for cell in row:
                if cell.value:
                    max_length = max(max_length, len(str(cell.value)))
        ws.column_dimensions[get_column_letter(col_idx)].width = min(max_length + 4, 50)


def _create_summary_sheet(wb, a: AggregatedMetrics) -> None:
    ws = wb.create_sheet("Сводка", 0)

    title_font = Font(bold=True, size=14, color="4472C4")
    header_font = Font(bold=True, size=11)
    label_font = Font(color="64748B", size=10)

    ws["A1"] = "Сводка по извлечению данных"
    ws["A1"].font = title_font
    ws.merge_cells("A1:D1")

    rows = [
        ("Период", f"{a.period_start[:10]} - {a.period_end[:10]}"),
        ("Всего документов", a.total_documents),
        ("Успешных извлечений", a.successful_extractions),
        ("Неудачных извлечений", a.failed_extractions),
        ("Коэффициент успеха", f"{a.extraction_success_rate * 100:.1f}%"),
        ("Среднее время, мс", round(a.avg_processing_time_ms)),
        ("Средняя уверенность", f"{a.avg_confidence * 100:.1f}%"),
        ("Топливо", f"{a.fuel_extraction_rate * 100:.1f}%"),
        ("Электроэнергия", f"{a.electricity_extraction_rate * 100:.1f}%"),
        ("Тепловая энергия", f"{a.thermal_extraction_rate * 100:.1f}%"),
        ("Транспорт", f"{a.transport_extraction_rate * 100:.1f}%"),
    ]
    for i, (label, value) in enumerate(rows, start=3):
        ws[f"A{i}"] = label
        ws[f"A{i}"].font = label_font
        ws[f"B{i}"] = value
        ws[f"B{i}"].font = header_font

    ws.column_dimensions["A"].width = 25
    ws.column_dimensions["B"].width = 25

    ws["F1"] = "Метод"
    ws["F1"].font = header_font
    ws["G1"] = "Документов"
    ws["G1"].font = header_font
    for i, (method, count) in enumerate(a.processing_methods.items(), start=2):
        ws[f"F{i}"] = method
        ws[f"G{i}"] = count

    if a.processing_methods:
        bar = BarChart()
        bar.title = "Методы обработки"
        bar.style = 10
        bar.type = "col"
        n = len(a.processing_methods)
        bar.add_data(Reference(ws, min_col=7, min_row=1, max_row=1 + n), titles_from_data=True)
        bar.set_categories(Reference(ws, min_col=6, min_row=2, max_row=1 + n))
        bar.width = 16
        bar.height = 10
        ws.add_chart(bar, "A16")

    ws["A38"] = "Отчёт сформирован:"
    ws["A38"].font = label_font
    ws["B38"] = datetime.now().strftime("%Y-%m-%d %H:%M")
