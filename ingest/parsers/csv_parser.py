"""Парсер CSV/TSV.

Кодировка и разделитель определяются автоматически; разделитель выбирается
той же функцией, что и в детекторе форматов, поэтому они не расходятся.
"""
import csv
import io
import logging

from ingest.encoding import decode_text, detect_encoding
from ingest.format_detector import score_delimiters
from ingest.models import ParsedDocumentData, ParseOptions
from ingest.parsers.base import (
    BaseParser,
    ParseError,
    apply_max_rows,
    looks_like_header,
    quality_bonus,
)
from ingest.units import assess_data_quality

logger = logging.getLogger(__name__)


class CsvTsvParser(BaseParser):
    name = "CsvTsvParser"
    document_type = "table"
    supported_extensions = (".csv", ".tsv")
    supported_mime_types = ("text/csv", "text/tab-separated-values")

    def _parse(self, data: bytes, options: ParseOptions) -> ParsedDocumentData:
        encoding = detect_encoding(data, options.encoding)
        text = decode_text(data, encoding)
        delimiter = self.detect_delimiter(text) if options.delimiter == "auto" else options.delimiter

        rows = self._read_rows(text, delimiter, options)
        if not rows:
            raise ParseError("Не найдено ни одной строки данных")

        headers: list[str] = []
        if looks_like_header(rows[0]):
            headers = rows[0]
            rows = rows[1:]
        rows = apply_max_rows(rows, options)
        if not rows:
            raise ParseError("Не найдено ни одной строки данных")

        extraction = self._extract_units(([headers] if headers else []) + rows, options)
        quality = assess_data_quality(len(extraction.units_found), len(rows))

        confidence = 0.5
        confidence += quality_bonus(quality, 0.4, 0.2, 0.1)
        confidence += min(len(extraction.units_found) * 0.02, 0.3)
        if len(rows) > 10:
            confidence += 0.1
        if len(rows) > 50:
            confidence += 0.1
        confidence = min(confidence, 0.99)

        logger.debug(
            "CSV: %d строк, разделитель %r, кодировка %s, единиц %d",
            len(rows), delimiter, encoding, len(extraction.units_found),
        )
        return self._build(
            confidence=confidence,
            extraction=extraction,
            rows=rows,
            headers=headers,
            encoding=encoding,
            format_detected="TSV" if delimiter == "\t" else "CSV",
            data_quality=quality,
            extra={"delimiter": delimiter},
        )

    @staticmethod
    def detect_delimiter(text: str) -> str:
        delimiter, _ = score_delimiters(text[:1000].split("\n")[:10])
        return delimiter

    @staticmethod
    def _read_rows(text: str, delimiter: str, options: ParseOptions) -> list[list[str]]:
        reader = csv.reader(io.StringIO(text), delimiter=delimiter, quotechar='"')
        rows: list[list[str]] = []
        for raw in reader:
            cells = [cell.strip() for cell in raw]
            if options.skip_empty_rows and not any(cells):
                continue
            rows.append(cells)
            # +1 строка про запас под заголовок
            if options.max_rows is not None and len(rows) > options.max_rows:
                break
        return rows
