"""Фабрика парсеров: формат → парсер → запасные парсеры → OCR.

Реестр парсеров передаётся в фабрику явно. Новый формат подключается
через registry.register_parser() без правки фабрики.
"""
import logging
import mimetypes
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from config import Config
from ingest.fallback import try_in_order
from ingest.format_detector import OCR_FALLBACK, DetectionOptions, detect_format, log_detection_result
from ingest.models import (
    ExtractionQuality,
    FormatInfo,
    ParsedDocumentData,
    ParseMetadata,
    ParseOptions,
    ParserResult,
)
from ingest.ocr_service import HybridOcrService
from ingest.parsers.base import BaseParser
from ingest.parsers.csv_parser import CsvTsvParser
from ingest.parsers.excel_parser import ExcelParser
from ingest.parsers.html_parser import HtmlParser
from ingest.parsers.json_parser import JsonParser
from ingest.parsers.office_parser import OfficeParser
from ingest.parsers.pdf_parser import PdfParser
from ingest.parsers.rtf_parser import RtfParser
from ingest.parsers.txt_parser import TxtParser
from ingest.parsers.xml_parser import XmlParser
from ingest.units import assess_data_quality, extract_from_text

logger = logging.getLogger(__name__)

ParserFactoryFn = Callable[[], BaseParser]


class ParserRegistry:
    """Имя парсера → конструктор, плюс необязательная привязка форматов к имени."""

    def __init__(self) -> None:
        self._factories: dict[str, ParserFactoryFn] = {}
        self._formats: dict[str, str] = {}

    def register_parser(self, name: str, factory: ParserFactoryFn, formats: tuple[str, ...] = ()) -> None:
        self._factories[name] = factory
        for fmt in formats:
            self._formats[fmt] = name
        logger.debug("Зарегистрирован парсер %s (форматы: %s)", name, ", ".join(formats) or "-")

    def create_parser(self, name: str) -> Optional[BaseParser]:
        factory = self._factories.get(name)
        return factory() if factory else None

    def parser_name_for(self, format_info: FormatInfo) -> Optional[str]:
        """Явная привязка формата важнее рекомендации детектора."""
        name = self._formats.get(format_info.format, format_info.strategy.recommended_parser)
        return name if name in self._factories else None

    def create_parser_for_file(self, filename: str, mime_type: Optional[str] = None) -> Optional[BaseParser]:
        for factory in self._factories.values():
            parser = factory()
            if parser.can_parse(filename, mime_type):
                return parser
        return None

    def get_supported_formats(self) -> list[str]:
        """Расширения и форматы, которые может разобрать хотя бы один парсер."""
        extensions = set(self._formats)
        for factory in self._factories.values():
            extensions.update(ext.lstrip(".") for ext in factory().supported_extensions)
        return sorted(extensions)

    def is_format_supported(self, fmt: str) -> bool:
        return fmt.lower().lstrip(".") in self.get_supported_formats()

    def names(self) -> list[str]:
        return list(self._factories)


def default_registry(config: Optional[Config] = None) -> ParserRegistry:
    config = config or Config()
    registry = ParserRegistry()
    registry.register_parser("CsvTsvParser", CsvTsvParser, ("csv", "tsv"))
    registry.register_parser("ExcelParser", lambda: ExcelParser(max_rows=config.excel_max_rows), ("excel",))
    registry.register_parser("JsonParser", JsonParser, ("json",))
    registry.register_parser("XmlParser", XmlParser, ("xml",))
    registry.register_parser("HtmlParser", HtmlParser, ("html",))
    registry.register_parser("RtfParser", RtfParser, ("rtf",))
    registry.register_parser("PdfParser", PdfParser, ("pdf",))
    registry.register_parser("OfficeParser", OfficeParser, ("docx", "odt"))
    registry.register_parser("TxtParser", TxtParser, ("txt",))
    return registry


@dataclass
class ParseOutcome:
    result: ParserResult
    format_info: FormatInfo
    parser_used: Optional[str] = None
    fallback_attempts: int = 0
    errors: list[str] = field(default_factory=list)


class ParserFactory:
    def __init__(
        self,
        registry: Optional[ParserRegistry] = None,
        ocr_service: Optional[HybridOcrService] = None,
        config: Optional[Config] = None,
    ) -> None:
        self.config = config or Config()
        self.registry = registry or default_registry(self.config)
        self.ocr_service = ocr_service

    def parse_file(
        self,
        filename: str,
        data: bytes,
        mime_type: Optional[str] = None,
        options: Optional[ParseOptions] = None,
        user_mode: Optional[str] = None,
    ) -> ParseOutcome:
        """Определяет формат и разбирает файл. Не выбрасывает исключений."""
        options = options or ParseOptions(max_rows=self.config.max_rows)
        format_info = detect_format(
            filename,
            data,
            mime_type,
            DetectionOptions(
                sample_size=self.config.detector_sample_size,
                strict_mode=self.config.detector_strict_mode,
                timeout_ms=self.config.parse_timeout_ms,
            ),
        )
        log_detection_result(filename, format_info)

        strategies = self._build_chain(filename, data, format_info, options, user_mode)
        if not strategies:
            error = f"Нет парсера для формата: {format_info.format}"
            logger.warning("%s: %s", filename, error)
            return ParseOutcome(
                result=ParserResult(success=False, error=error),
                format_info=format_info,
                errors=[error],
            )

        start = time.perf_counter()
        outcome = try_in_order(
            strategies,
            accept=lambda r: None if r.success else (r.error or "неизвестная ошибка"),
        )
        if outcome.success:
            if outcome.fallback_count:
                logger.info("%s: разобран запасным парсером %s", filename, outcome.succeeded_with)
            result = outcome.value
        else:
            result = ParserResult(
                success=False,
                data=outcome.value.data if outcome.value else None,
                error="; ".join(outcome.errors),
                processing_time_ms=(time.perf_counter() - start) * 1000,
            )
            logger.warning("%s: не удалось разобрать: %s", filename, result.error)

        return ParseOutcome(
            result=result,
            format_info=format_info,
            parser_used=outcome.succeeded_with,
            fallback_attempts=outcome.fallback_count,
            errors=outcome.errors,
        )

    def _build_chain(
        self,
        filename: str,
        data: bytes,
        format_info: FormatInfo,
        options: ParseOptions,
        user_mode: Optional[str],
    ) -> list[tuple[str, Callable[[], ParserResult]]]:
        names: list[str] = []
        primary = self.registry.parser_name_for(format_info)
        if primary:
            names.append(primary)
        for name in format_info.strategy.fallback_parsers:
            if name not in names:
                names.append(name)

        timeout_ms = format_info.strategy.timeout_ms
        chain: list[tuple[str, Callable[[], ParserResult]]] = []
        for name in names:
            if name == OCR_FALLBACK:
                if self.ocr_service is not None and self.config.ocr_enabled:
                    chain.append((name, lambda: self._run_ocr(filename, data, format_info, user_mode)))
                else:
                    logger.debug("%s: OCR отключён, пропускаю", filename)
                continue
            parser = self.registry.create_parser(name)
            if parser is None:
                logger.debug("Парсер %s не зарегистрирован", name)
                continue
            chain.append((name, _bind(self._run_with_timeout, parser, data, options, timeout_ms)))
        return chain

    @staticmethod
    def _run_with_timeout(
        parser: BaseParser, data: bytes, options: ParseOptions, timeout_ms: int
    ) -> ParserResult:
        """Запускает парсер в отдельном потоке и не ждёт дольше timeout_ms.

        Зависший поток не убить, но результат его работы уже никто не ждёт.
        """
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=parser.name)
        future = executor.submit(parser.parse, data, options)
        try:
            return future.result(timeout=timeout_ms / 1000)
        except FutureTimeout:
            logger.warning("%s: превышен таймаут %d мс", parser.name, timeout_ms)
            raise TimeoutError(f"превышен таймаут {timeout_ms} мс")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _run_ocr(
        self, filename: str, data: bytes, format_info: FormatInfo, user_mode: Optional[str]
    ) -> ParserResult:
        start = time.perf_counter()
        if format_info.format == "pdf":
            ocr = self.ocr_service.recognize_pdf(data, user_mode=user_mode)
        else:
            mime = format_info.mime_type or mimetypes.guess_type(filename)[0] or "image/png"
            ocr = self.ocr_service.process_document(data, mime, user_mode=user_mode)
        elapsed = (time.perf_counter() - start) * 1000

        if ocr.kind == "stub":
            return ParserResult(success=False, error=ocr.warning, processing_time_ms=elapsed)
        if ocr.kind == "skipped":
            return ParserResult(success=False, error=ocr.reason, processing_time_ms=elapsed)
        if ocr.kind == "failed":
            return ParserResult(success=False, error=f"ошибка OCR: {ocr.error}", processing_time_ms=elapsed)
        if not ocr.text.strip():
            return ParserResult(success=False, error="OCR не распознал текст", processing_time_ms=elapsed)

        extraction = extract_from_text(ocr.text)
        rows = [[line] for line in ocr.text.splitlines() if line.strip()]
        extracted = extraction.data
        extracted.raw_rows = rows
        extracted.total_rows = len(rows)
        parsed = ParsedDocumentData(
            document_type="scanned_document",
            confidence=ocr.confidence,
            extracted_data=extracted,
            metadata=ParseMetadata(
                encoding="utf8",
                format_detected=f"OCR ({ocr.provider}, {Path(filename).suffix.lstrip('.') or 'image'})",
                processing_time_ms=elapsed,
                russian_units_found=extraction.units_found,
                data_quality=assess_data_quality(len(extraction.units_found), len(rows)),
                parser_used=OCR_FALLBACK,
                extra={"ocr_provider": ocr.provider, "word_count": ocr.word_count},
            ),
            text=ocr.text,
        )
        return ParserResult(success=True, data=parsed, processing_time_ms=elapsed)


def _bind(fn: Callable, *args) -> Callable[[], ParserResult]:
    return lambda: fn(*args)


def assess_extraction_quality(result: ParserResult) -> ExtractionQuality:
    """Оценка 0-100 для оператора: уверенность, единицы, качество, скорость."""
    if not result.success or result.data is None:
        return ExtractionQuality(
            score=0,
            quality="poor",
            recommendations=["Парсинг не удался, проверьте формат файла"],
        )

    data = result.data
    recommendations: list[str] = []
    score = data.confidence * 50

    units = len(data.metadata.russian_units_found)
    if units > 0:
        score += min(units * 5, 25)
    else:
        recommendations.append("Не найдены российские единицы измерения")

    tier = data.metadata.data_quality
    if tier == "high":
        score += 20
    elif tier == "medium":
        score += 10
    else:
        score += 5
        recommendations.append("Низкое качество данных, проверьте структуру файла")

    # Слишком быстрый разбор обычно означает пустой документ
    if data.metadata.processing_time_ms < 10:
        score -= 10
        recommendations.append("Подозрительно быстрая обработка, возможны ошибки")

    if score >= 80:
        quality = "excellent"
    elif score >= 60:
        quality = "good"
    elif score >= 40:
        quality = "fair"
        recommendations.append("Рассмотрите использование другого формата файла")
    else:
        quality = "poor"
        recommendations.append("Файл может быть повреждён или иметь неподдерживаемую структуру")

    return ExtractionQuality(
        score=int(round(min(max(score, 0), 100))),
        quality=quality,
        recommendations=recommendations,
    )


def extract_metrics(result: ParserResult) -> dict:
    """Ключевые числа результата для логов и метрик."""
    if not result.success or result.data is None:
        return {
            "total_rows": 0,
            "units_found": 0,
            "data_quality": "unknown",
            "processing_time_ms": result.processing_time_ms,
            "confidence": 0,
            "extracted_types": [],
        }
    data = result.data
    return {
        "total_rows": data.extracted_data.total_rows,
        "units_found": len(data.metadata.russian_units_found),
        "data_quality": data.metadata.data_quality,
        "processing_time_ms": data.metadata.processing_time_ms,
        "confidence": round(data.confidence * 100),
        "extracted_types": data.extracted_data.extracted_types(),
    }
