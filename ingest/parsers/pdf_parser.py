"""Парсер PDF: только текстовый слой через pdfplumber.

Растеризация и распознавание сюда не входят. Если текстового слоя нет,
парсер возвращает ошибку, и фабрика передаёт файл в OCR.
"""
import io
import logging

import pdfplumber

from ingest.models import ParsedDocumentData, ParseOptions
from ingest.parsers.base import BaseParser, ParseError, apply_max_rows, quality_bonus
from ingest.units import assess_data_quality

logger = logging.getLogger(__name__)

# Меньше стольких символов на страницу в среднем: скорее всего скан
SCANNED_CHARS_PER_PAGE = 50


class PdfParser(BaseParser):
    name = "PdfParser"
    document_type = "pdf_document"
    supported_extensions = (".pdf",)
    supported_mime_types = ("application/pdf",)

    def _parse(self, data: bytes, options: ParseOptions) -> ParsedDocumentData:
        pages_text: list[str] = []
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            for page in pdf.pages:
                pages_text.append(page.extract_text() or "")

        full_text = "\n\n".join(pages_text).strip()
        page_count = len(pages_text)
        if not full_text:
            raise ParseError(f"В PDF нет текстового слоя (страниц: {page_count})")

        avg_chars = len(full_text) / max(page_count, 1)
        is_scanned = avg_chars < SCANNED_CHARS_PER_PAGE
        if is_scanned:
            logger.info("PDF похож на скан (в среднем %.0f символов/стр.)", avg_chars)

        lines = [" ".join(line.split()) for line in full_text.splitlines()]
        rows = apply_max_rows([[line] for line in lines if line], options)

        extraction = self._extract_units(rows, options)
        quality = assess_data_quality(len(extraction.units_found), len(rows))

        confidence = 0.4
        confidence += quality_bonus(quality, 0.4, 0.2, 0.1)
        confidence += min(len(extraction.units_found) * 0.02, 0.3)
        if len(rows) > 50:
            confidence += 0.1
        if page_count > 1:
            confidence += 0.05
        confidence = min(confidence, 0.95)

        return self._build(
            confidence=confidence,
            extraction=extraction,
            rows=rows,
            encoding="binary",
            format_detected=f"PDF ({page_count} стр.)",
            text=full_text,
            data_quality=quality,
            extra={"pages": page_count, "is_scanned": is_scanned},
        )
