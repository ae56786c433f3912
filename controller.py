"""Контроллер пайплайна извлечения.

Оркестрирует модули: сканирование → определение формата и разбор
(с запасными парсерами и OCR) → контекстная проверка найденных единиц →
запись метрик → Excel-отчёт. Ошибка одного файла не останавливает
обработку остальных.
"""
import logging
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from config import Config, load_api_key
from ingest.ai_enhancer import OpenAIEntityEnhancer
from ingest.contextual_analysis import ContextualAnalysisService, EntityEnhancer, NullEnhancer
from ingest.format_detector import OCR_FALLBACK
from ingest.metrics import ExtractionMetricsCollector
from ingest.metrics_store import MetricsStore
from ingest.models import (
    ContextualMatch,
    DocumentProcessingResult,
    FileInfo,
    ParsedDocumentData,
    ProcessingMetrics,
)
from ingest.ocr_service import HybridOcrService
from ingest.parser_factory import ParseOutcome, ParserFactory
from ingest.reporter import generate_metrics_report
from ingest.scanner import compute_file_hash, scan_directory
from ingest.synonyms import SynonymDictionary

logger = logging.getLogger(__name__)

THERMAL_TARIFF = "тепловая энергия"


class Controller:
    """Оркестратор пайплайна. Сервисы можно подменить (тесты, другой провайдер)."""

    def __init__(
        self,
        config: Config,
        factory: Optional[ParserFactory] = None,
        analyzer: Optional[ContextualAnalysisService] = None,
        collector: Optional[ExtractionMetricsCollector] = None,
        enhancer: Optional[EntityEnhancer] = None,
    ) -> None:
        self.config = config
        self.dictionary = SynonymDictionary()
        self.ocr_service = HybridOcrService(config=config)
        self.factory = factory or ParserFactory(ocr_service=self.ocr_service, config=config)
        self.analyzer = analyzer or ContextualAnalysisService(
            dictionary=self.dictionary,
            enhancer=enhancer or _default_enhancer(config),
            config=config,
        )
        self.collector = collector or ExtractionMetricsCollector(MetricsStore(config.metrics_db_path), config)

    def init(self) -> None:
        self.analyzer.init()

    def shutdown(self) -> None:
        self.analyzer.shutdown()
        self.ocr_service.shutdown()
        self.collector.store.close()

    def __enter__(self) -> "Controller":
        self.init()
        return self

    def __exit__(self, *args) -> None:
        self.shutdown()

    def process_file(
        self, path: Path, user_mode: Optional[str] = None, file_info: Optional[FileInfo] = None
    ) -> DocumentProcessingResult:
        """Полный прогон одного файла. Исключения не пробрасываются, только status="error"."""
        if file_info is None:
            file_info = FileInfo(
                path=path,
                filename=path.name,
                extension=path.suffix.lower(),
                size_bytes=path.stat().st_size if path.exists() else 0,
                file_hash=compute_file_hash(path) if path.exists() else "",
            )
        result = DocumentProcessingResult(file_info=file_info)
        start_ms = time.time() * 1000
        outcome: Optional[ParseOutcome] = None

        try:
            data = path.read_bytes()
            outcome = self.factory.parse_file(
                file_info.filename, data, user_mode=user_mode or self.config.default_user_mode,
            )
            result.format_info = outcome.format_info
            result.parser_result = outcome.result
            result.parser_used = outcome.parser_used

            if outcome.result.success and outcome.result.data is not None:
                result.unit_matches = self._refine_units(outcome.result.data)
                result.status = "done"
            else:
                result.status = "error"
                result.error_message = outcome.result.error or "Не удалось разобрать файл"
        except Exception as e:
            logger.error("Ошибка обработки: %s - %s", file_info.filename, e, exc_info=True)
            result.status = "error"
            result.error_message = str(e)

        result.processed_at = datetime.now()
        result.metrics = self._build_metrics(result, outcome, start_ms)
        self.collector.record_processing(result.metrics)
        return result

    def process_directory(
        self,
        source_dir: Path,
        user_mode: Optional[str] = None,
        on_progress: Optional[Callable[[int, int, str], None]] = None,
        on_file_done: Optional[Callable[[DocumentProcessingResult], None]] = None,
        output_dir: Optional[Path] = None,
    ) -> dict:
        """Обрабатывает все документы папки.

        Returns:
            dict: {total, done, errors, output_dir, report_path}
        """
        output_dir = output_dir or source_dir.parent / self.config.output_folder_name
        output_dir.mkdir(parents=True, exist_ok=True)

        _notify(on_progress, 0, 0, "Сканирование файлов...")
        files = scan_directory(source_dir, self.config)
        total = len(files)
        _notify(on_progress, 0, total, f"Найдено {total} файлов")

        done = 0
        errors = 0
        results: list[DocumentProcessingResult] = []
        for i, file_info in enumerate(files, 1):
            result = self.process_file(file_info.path, user_mode, file_info)
            results.append(result)
            if result.status == "done":
                done += 1
            else:
                errors += 1
            if on_file_done:
                on_file_done(result)
            _notify(on_progress, i, total, f"Обработка: {file_info.filename}")

        report_path = None
        if results:
            _notify(on_progress, total, total, "Генерация Excel-отчёта...")
            records = [r.metrics for r in results if r.metrics is not None]
            aggregated = self.collector.calculate_aggregated_metrics()
            report_path = generate_metrics_report(records, aggregated, output_dir)

        _notify(on_progress, total, total, f"Готово! Обработано: {done}, ошибок: {errors}")
        return {
            "total": total,
            "done": done,
            "errors": errors,
            "output_dir": output_dir,
            "report_path": report_path,
        }

    def _refine_units(self, parsed: ParsedDocumentData) -> list[ContextualMatch]:
        """Каждая найденная единица (без повторов) проверяется по контексту документа."""
        text = parsed.text or "\n".join(
            " ".join(str(c) for c in row) for row in parsed.extracted_data.raw_rows
        )
        units = list(dict.fromkeys(parsed.metadata.russian_units_found))
        if not units:
            return []
        return self.analyzer.analyze_batch(units, text)

    def _build_metrics(
        self,
        result: DocumentProcessingResult,
        outcome: Optional[ParseOutcome],
        start_ms: float,
    ) -> ProcessingMetrics:
        end_ms = time.time() * 1000
        info = result.file_info
        metrics = ProcessingMetrics(
            document_id=info.file_hash[:16] or uuid.uuid4().hex[:16],
            file_path=str(info.path),
            file_size=info.size_bytes,
            file_type=result.format_info.format if result.format_info else info.extension.lstrip("."),
            processing_method=_processing_method(result, outcome),
            start_time=start_ms,
            end_time=end_ms,
            processing_time_ms=end_ms - start_ms,
            parser_used=result.parser_used,
            fallback_attempts=outcome.fallback_attempts if outcome else 0,
            fields_expected=self.config.fields_expected,
        )
        if outcome is not None and not outcome.result.success:
            metrics.errors = list(outcome.errors) or [result.error_message or ""]
            metrics.fallback_reason = result.error_message
        elif result.error_message:
            metrics.errors = [result.error_message]
        if outcome is not None and outcome.fallback_attempts and outcome.result.success:
            metrics.fallback_reason = "; ".join(outcome.errors)

        parsed = result.parser_result.data if result.parser_result and result.parser_result.success else None
        if parsed is None:
            return metrics

        extracted = parsed.extracted_data
        electricity = [e for e in extracted.electricity_data if e.tariff_type != THERMAL_TARIFF]
        thermal = [e for e in extracted.electricity_data if e.tariff_type == THERMAL_TARIFF]

        metrics.confidence = parsed.confidence
        metrics.data_quality = parsed.metadata.data_quality
        metrics.fuel_data_extracted = len(extracted.fuel_data)
        metrics.electricity_data_extracted = bool(electricity)
        metrics.thermal_data_extracted = bool(thermal)
        metrics.transport_data_extracted = bool(extracted.transport_data)
        metrics.fields_extracted = sum(1 for group in (
            extracted.fuel_data, extracted.electricity_data, extracted.gas_data, extracted.transport_data,
        ) if group)
        metrics.extraction_success = metrics.fields_extracted > 0

        categories = set()
        for match in result.unit_matches:
            if match.fuzzy_match is None or match.recommendation == "reject":
                continue
            metrics.fields_normalized += 1
            canonical = self.dictionary.find_canonical(match.fuzzy_match.match)
            if canonical != match.original_query:
                metrics.synonyms_applied += 1
            category = self.dictionary.get_category(match.fuzzy_match.match)
            if category:
                categories.add(category)
        metrics.categories_identified = sorted(categories)
        return metrics


def _processing_method(result: DocumentProcessingResult, outcome: Optional[ParseOutcome]) -> str:
    if outcome is None or result.status != "done":
        return "failed"
    if outcome.parser_used == OCR_FALLBACK:
        return "hybrid" if outcome.fallback_attempts else "ocr"
    return "parser"


def _default_enhancer(config: Config) -> EntityEnhancer:
    if config.use_external_model and load_api_key():
        return OpenAIEntityEnhancer(config)
    logger.info("FOUNDATION_MODELS_API_KEY не задан, контекстный анализ без AI")
    return NullEnhancer()


def _notify(
    callback: Optional[Callable], current: int, total: int, message: str,
) -> None:
    """Вызывает callback и логирует сообщение."""
    if callback:
        callback(current, total, message)
    logger.info(message)
