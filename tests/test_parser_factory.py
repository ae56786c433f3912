"""Тесты фабрики парсеров: цепочки запасных парсеров, OCR, таймауты, оценка качества."""
import io
import time

import pytest
from PIL import Image

from config import Config
from ingest.format_detector import OCR_FALLBACK
from ingest.models import (
    ElectricityDataEntry,
    ExtractedData,
    ParsedDocumentData,
    ParseMetadata,
    ParseOptions,
    ParserResult,
)
from ingest.ocr_service import HybridOcrService, OcrProvider, OcrProviderRegistry
from ingest.parser_factory import (
    ParserFactory,
    ParserRegistry,
    assess_extraction_quality,
    default_registry,
    extract_metrics,
)
from ingest.parsers.base import BaseParser, ParseError
from ingest.parsers.csv_parser import CsvTsvParser
from ingest.parsers.txt_parser import TxtParser
from ingest.units import UnitExtraction


class FakeParser(BaseParser):
    name = "FakeParser"
    supported_extensions = (".fake",)

    def _parse(self, data: bytes, options: ParseOptions) -> ParsedDocumentData:
        return self._build(
            confidence=0.9,
            extraction=UnitExtraction(),
            rows=[["fake"]],
            encoding="utf8",
            format_detected="FAKE",
        )


class SlowParser(BaseParser):
    name = "JsonParser"

    def _parse(self, data: bytes, options: ParseOptions) -> ParsedDocumentData:
        time.sleep(0.5)
        raise ParseError("слишком поздно")


class FakeBackend:
    def __init__(self, text: str) -> None:
        self.text = text
        self.calls = 0

    def recognize(self, image):
        self.calls += 1
        return self.text, 0.87, len(self.text.split())

    def close(self) -> None:
        pass


def png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (200, 100), "white").save(buffer, format="PNG")
    return buffer.getvalue()


def make_result(confidence: float, units: int, quality: str, time_ms: float) -> ParserResult:
    data = ParsedDocumentData(
        document_type="table",
        confidence=confidence,
        extracted_data=ExtractedData(
            electricity_data=[ElectricityDataEntry(value=1.0)],
            total_rows=10,
        ),
        metadata=ParseMetadata(
            encoding="utf8",
            format_detected="CSV",
            processing_time_ms=time_ms,
            russian_units_found=["кВт·ч"] * units,
            data_quality=quality,
        ),
    )
    return ParserResult(success=True, data=data, processing_time_ms=time_ms)


SEMICOLON_CSV = "\n".join(
    ["Ресурс;Количество;Единица"]
    + [f"Электроэнергия;{100 + i};кВт·ч" for i in range(5)]
).encode("utf-8")


class TestParserChain:

    def test_semicolon_csv(self):
        outcome = ParserFactory().parse_file("report.csv", SEMICOLON_CSV)
        assert outcome.result.success
        assert outcome.parser_used == "CsvTsvParser"
        assert outcome.fallback_attempts == 0
        assert outcome.result.data.metadata.extra["delimiter"] == ";"
        assert len(outcome.result.data.extracted_data.electricity_data) == 5

    def test_pdf_chain_exhausted_without_ocr(self):
        """Битый PDF и выключенный OCR: неуспех с ошибкой, без исключения."""
        factory = ParserFactory(config=Config(ocr_enabled=False))
        outcome = factory.parse_file("scan.pdf", b"%PDF-1.4 garbage")
        assert not outcome.result.success
        assert outcome.result.error
        assert outcome.fallback_attempts == 1
        assert outcome.parser_used is None

    def test_pdf_chain_exhausted_with_unavailable_ocr(self):
        ocr = HybridOcrService(registry=OcrProviderRegistry([]), config=Config())
        factory = ParserFactory(ocr_service=ocr, config=Config())
        outcome = factory.parse_file("scan.pdf", b"%PDF-1.4 garbage")
        assert not outcome.result.success
        assert outcome.fallback_attempts == 2
        assert any(e.startswith(f"{OCR_FALLBACK}:") for e in outcome.errors)
        assert "Нет доступных провайдеров OCR" in outcome.result.error

    def test_image_through_ocr(self):
        backend = FakeBackend("Электроэнергия 1500 кВт·ч")
        ocr = HybridOcrService(config=Config(), backend_factory=lambda: backend)
        factory = ParserFactory(ocr_service=ocr, config=Config())
        outcome = factory.parse_file("scan.png", png_bytes(), user_mode="DEMO")
        assert outcome.result.success
        assert outcome.parser_used == OCR_FALLBACK
        data = outcome.result.data
        assert data.document_type == "scanned_document"
        assert data.metadata.extra["ocr_provider"] == "tesseract"
        assert data.extracted_data.electricity_data[0].value == 1500
        assert backend.calls == 1

    def test_stub_provider_is_failed_attempt(self):
        """Облачный провайдер пока заглушка: OCR-попытка считается неуспешной."""
        ocr = HybridOcrService(config=Config())
        ocr.registry.mark_unavailable("tesseract")
        ocr.registry.register(OcrProvider(
            key="yandex_vision",
            name="Yandex Vision",
            priority=2,
            supported_mime_types=("image/png",),
            max_file_size=20 * 1024 * 1024,
            cost_per_page=0.01,
            available=True,
        ))
        factory = ParserFactory(ocr_service=ocr, config=Config())
        outcome = factory.parse_file("scan.png", png_bytes(), user_mode="PAID")
        assert not outcome.result.success
        assert "пока не реализован" in outcome.result.error

    def test_timeout_falls_back_to_txt(self):
        registry = ParserRegistry()
        registry.register_parser("JsonParser", SlowParser, ("json",))
        registry.register_parser("TxtParser", TxtParser, ("txt",))
        factory = ParserFactory(registry=registry, config=Config(parse_timeout_ms=50))

        outcome = factory.parse_file("data.json", '{"electricity": "1500 кВт·ч"}'.encode("utf-8"))
        assert outcome.result.success
        assert outcome.parser_used == "TxtParser"
        assert outcome.fallback_attempts == 1
        assert "таймаут" in outcome.errors[0]

    def test_no_parser_for_format(self):
        factory = ParserFactory(registry=ParserRegistry(), config=Config(ocr_enabled=False))
        outcome = factory.parse_file("notes.txt", "обычный текст".encode("utf-8"))
        assert not outcome.result.success
        assert outcome.result.error == "Нет парсера для формата: txt"

    def test_never_raises_on_garbage(self):
        factory = ParserFactory(config=Config(ocr_enabled=False))
        for filename in ("a.xlsx", "b.docx", "c.rtf", "d.json", "e.xml", "f.bin"):
            outcome = factory.parse_file(filename, b"\x00\xff\x13garbage\x00")
            assert isinstance(outcome.result, ParserResult)


class TestRegistry:

    def test_injected_parser_wins_for_format(self):
        registry = default_registry()
        registry.register_parser("FakeParser", FakeParser, ("json",))
        outcome = ParserFactory(registry=registry).parse_file("data.json", b'{"a": 1}')
        assert outcome.result.success
        assert outcome.parser_used == "FakeParser"
        assert outcome.result.data.metadata.parser_used == "FakeParser"

    def test_default_registry_names(self):
        assert default_registry().names() == [
            "CsvTsvParser", "ExcelParser", "JsonParser", "XmlParser", "HtmlParser",
            "RtfParser", "PdfParser", "OfficeParser", "TxtParser",
        ]

    def test_create_parser_for_file(self):
        registry = default_registry()
        assert isinstance(registry.create_parser_for_file("report.csv"), CsvTsvParser)
        assert registry.create_parser_for_file("archive.7z") is None
        assert registry.create_parser("Unknown") is None

    def test_supported_formats(self):
        registry = default_registry()
        formats = registry.get_supported_formats()
        assert "csv" in formats
        assert "xlsx" in formats
        assert registry.is_format_supported(".PDF")
        assert not registry.is_format_supported("7z")

    def test_excel_max_rows_from_config(self):
        registry = default_registry(Config(excel_max_rows=5))
        assert registry.create_parser("ExcelParser").max_rows == 5


class TestQualityAssessment:

    def test_failed_result(self):
        quality = assess_extraction_quality(ParserResult(success=False, error="x"))
        assert quality.score == 0
        assert quality.quality == "poor"
        assert quality.recommendations

    def test_excellent(self):
        quality = assess_extraction_quality(make_result(1.0, 5, "high", 50))
        assert quality.score == 95
        assert quality.quality == "excellent"
        assert quality.recommendations == []

    def test_poor_with_recommendations(self):
        quality = assess_extraction_quality(make_result(0.2, 0, "low", 1))
        assert quality.score == 5
        assert quality.quality == "poor"
        assert "Не найдены российские единицы измерения" in quality.recommendations
        assert "Подозрительно быстрая обработка, возможны ошибки" in quality.recommendations

    @pytest.mark.parametrize("confidence", [0.0, 0.5, 1.0])
    def test_score_bounds(self, confidence):
        quality = assess_extraction_quality(make_result(confidence, 10, "high", 100))
        assert 0 <= quality.score <= 100

    def test_extract_metrics(self):
        metrics = extract_metrics(make_result(0.8, 2, "medium", 20))
        assert metrics["units_found"] == 2
        assert metrics["confidence"] == 80
        assert metrics["extracted_types"] == ["electricity"]
        assert metrics["total_rows"] == 10

    def test_extract_metrics_failed(self):
        metrics = extract_metrics(ParserResult(success=False, processing_time_ms=3.0))
        assert metrics["data_quality"] == "unknown"
        assert metrics["processing_time_ms"] == 3.0
