"""Парсер Excel: openpyxl для XLSX, xlrd для старого бинарного XLS.

Ни одна библиотека не покрывает оба формата, поэтому чтение идёт через
try_in_order: сначала openpyxl, при неудаче xlrd.
"""
import io
import logging
from datetime import date, datetime

import openpyxl
import xlrd

from ingest.fallback import try_in_order
from ingest.models import ParsedDocumentData, ParseOptions
from ingest.parsers.base import BaseParser, ParseError, looks_like_header, quality_bonus
from ingest.units import assess_data_quality

logger = logging.getLogger(__name__)

Sheets = list[tuple[str, list[list[str]]]]

DEFAULT_MAX_ROWS = 1000


class ExcelParser(BaseParser):
    name = "ExcelParser"
    document_type = "spreadsheet"
    supported_extensions = (".xlsx", ".xls", ".xlsm")
    supported_mime_types = (
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-excel",
    )

    def __init__(self, max_rows: int = DEFAULT_MAX_ROWS) -> None:
        self.max_rows = max_rows

    def _parse(self, data: bytes, options: ParseOptions) -> ParsedDocumentData:
        limit = min(self.max_rows, options.max_rows) if options.max_rows else self.max_rows
        outcome = try_in_order(
            [
                ("openpyxl", lambda: _read_with_openpyxl(data, limit, options.skip_empty_rows)),
                ("xlrd", lambda: _read_with_xlrd(data, limit, options.skip_empty_rows)),
            ],
            accept=lambda sheets: None if sheets else "нет листов",
        )
        if not outcome.success:
            raise ParseError("Не удалось прочитать Excel: " + "; ".join(outcome.errors))
        sheets: Sheets = outcome.value

        rows = [row for _, sheet_rows in sheets for row in sheet_rows]
        if not rows:
            raise ParseError("В книге нет непустых строк")

        headers: list[str] = []
        first_sheet_rows = sheets[0][1]
        if first_sheet_rows and looks_like_header(first_sheet_rows[0]):
            headers = first_sheet_rows[0]

        extraction = self._extract_units(rows, options)
        quality = assess_data_quality(len(extraction.units_found), len(rows))

        confidence = 0.7
        confidence += quality_bonus(quality, 0.25, 0.15, 0.05)
        confidence += min(len(extraction.units_found) * 0.01, 0.2)
        if len(rows) > 10:
            confidence += 0.05
        if len(rows) > 50:
            confidence += 0.05
        if len(sheets) > 1:
            confidence += 0.02
        confidence = min(confidence, 0.99)

        names = [name for name, _ in sheets]
        return self._build(
            confidence=confidence,
            extraction=extraction,
            rows=rows,
            headers=headers,
            encoding="binary",
            format_detected=f"Excel (листов: {len(names)}: {', '.join(names)})",
            data_quality=quality,
            extra={"sheets": names, "reader": outcome.succeeded_with},
        )


def _read_with_openpyxl(data: bytes, limit: int, skip_empty: bool) -> Sheets:
    workbook = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    sheets: Sheets = []
    total = 0
    try:
        for ws in workbook.worksheets:
            rows: list[list[str]] = []
            for values in ws.iter_rows(values_only=True):
                if total >= limit:
                    break
                row = [_cell_to_str(v) for v in values]
                if skip_empty and not any(row):
                    continue
                rows.append(row)
                total += 1
            sheets.append((ws.title, rows))
    finally:
        workbook.close()
    return sheets


def _read_with_xlrd(data: bytes, limit: int, skip_empty: bool) -> Sheets:
    book = xlrd.open_workbook(file_contents=data)
    sheets: Sheets = []
    total = 0
    for sheet in book.sheets():
        rows: list[list[str]] = []
        for r in range(sheet.nrows):
            if total >= limit:
                break
            row = []
            for cell in sheet.row(r):
                if cell.ctype == xlrd.XL_CELL_DATE:
                    row.append(_cell_to_str(xlrd.xldate_as_datetime(cell.value, book.datemode)))
                else:
                    row.append(_cell_to_str(cell.value))
            if skip_empty and not any(row):
                continue
            rows.append(row)
            total += 1
        sheets.append((sheet.name, rows))
    return sheets


def _cell_to_str(value: object) -> str:
    """Значение ячейки → строка: даты по-русски, целые без «.0»."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.hour or value.minute:
            return value.strftime("%d.%m.%Y %H:%M")
        return value.strftime("%d.%m.%Y")
    if isinstance(value, date):
        return value.strftime("%d.%m.%Y")
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()
