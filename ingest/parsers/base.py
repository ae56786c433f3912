"""Общий контракт парсеров.

Каждый парсер реализует _parse(); публичный parse() замеряет время и
превращает любое исключение в ParserResult(success=False), чтобы фабрика
могла перейти к следующему парсеру цепочки.
"""
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from ingest.models import (
    ExtractedData,
    ParseMetadata,
    ParsedDocumentData,
    ParseOptions,
    ParserResult,
)
from ingest.units import UnitExtraction, assess_data_quality, extract_russian_units

logger = logging.getLogger(__name__)


class ParseError(Exception):
    """Вход не соответствует формату парсера (битый JSON, не-RTF и т.п.)."""


class BaseParser(ABC):
    name: str = "BaseParser"
    document_type: str = "document"
    supported_extensions: tuple[str, ...] = ()
    supported_mime_types: tuple[str, ...] = ()

    def can_parse(self, filename: str, mime_type: Optional[str] = None) -> bool:
        if mime_type and mime_type.split(";")[0].strip().lower() in self.supported_mime_types:
            return True
        return Path(filename).suffix.lower() in self.supported_extensions

    def parse(self, data: bytes, options: Optional[ParseOptions] = None) -> ParserResult:
        """Разбирает документ. Не выбрасывает исключений."""
        options = options or ParseOptions()
        start = time.perf_counter()
        try:
            parsed = self._parse(data, options)
        except ParseError as e:
            elapsed = (time.perf_counter() - start) * 1000
            logger.info("%s: %s", self.name, e)
            return ParserResult(success=False, error=str(e), processing_time_ms=elapsed)
        except Exception as e:
            elapsed = (time.perf_counter() - start) * 1000
            logger.warning("%s: ошибка разбора: %s", self.name, e)
            return ParserResult(
                success=False,
                error=f"{self.name}: {type(e).__name__}: {e}",
                processing_time_ms=elapsed,
            )

        elapsed = (time.perf_counter() - start) * 1000
        parsed.metadata.processing_time_ms = elapsed
        parsed.metadata.parser_used = self.name

        if parsed.confidence < options.min_confidence:
            return ParserResult(
                success=False,
                data=parsed,
                error=(
                    f"{self.name}: уверенность {parsed.confidence:.2f} "
                    f"ниже порога {options.min_confidence:.2f}"
                ),
                processing_time_ms=elapsed,
            )
        return ParserResult(success=True, data=parsed, processing_time_ms=elapsed)

    @abstractmethod
    def _parse(self, data: bytes, options: ParseOptions) -> ParsedDocumentData:
        ...

    # --- помощники для наследников ---

    def _extract_units(self, rows: list[list[str]], options: ParseOptions) -> UnitExtraction:
        if not options.search_russian_units:
            return UnitExtraction()
        return extract_russian_units(rows)

    def _build(
        self,
        *,
        confidence: float,
        extraction: UnitExtraction,
        rows: list[list[str]],
        encoding: str,
        format_detected: str,
        headers: Optional[list[str]] = None,
        text: str = "",
        data_quality: Optional[str] = None,
        extra: Optional[dict] = None,
    ) -> ParsedDocumentData:
        extracted: ExtractedData = extraction.data
        extracted.raw_rows = rows
        extracted.total_rows = len(rows)
        extracted.headers = headers or []
        quality = data_quality or assess_data_quality(len(extraction.units_found), len(rows))
        return ParsedDocumentData(
            document_type=self.document_type,
            confidence=round(min(max(confidence, 0.0), 1.0), 4),
            extracted_data=extracted,
            metadata=ParseMetadata(
                encoding=encoding,
                format_detected=format_detected,
                russian_units_found=extraction.units_found,
                data_quality=quality,
                extra=extra or {},
            ),
            text=text or "\n".join(" ".join(row) for row in rows),
        )


def quality_bonus(quality: str, high: float, medium: float, low: float) -> float:
    return {"high": high, "medium": medium}.get(quality, low)


def apply_max_rows(rows: list[list[str]], options: ParseOptions) -> list[list[str]]:
    if options.max_rows is not None and len(rows) > options.max_rows:
        return rows[: options.max_rows]
    return rows


def looks_like_header(row: list[str]) -> bool:
    """Строка считается заголовком, если больше половины ячеек это текст длиннее 2 символов."""
    if not row:
        return False
    textual = sum(1 for cell in row if len(cell) > 2 and not _is_number(cell))
    return textual > len(row) / 2


def _is_number(cell: str) -> bool:
    try:
        float(cell.replace(",", ".").replace(" ", ""))
        return True
    except ValueError:
        return False
