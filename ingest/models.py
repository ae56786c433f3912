"""Модели данных, общие для всех модулей пайплайна."""
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Literal, Optional, Union


@dataclass
class FileInfo:
    """Информация о найденном файле."""
    path: Path
    filename: str
    extension: str  # ".pdf", ".csv", ...
    size_bytes: int
    file_hash: str  # SHA-256


# --- Детектор форматов ---


@dataclass(frozen=True)
class FormatCharacteristics:
    """Свойства формата, по которым выбирается маршрут обработки."""
    has_structure: bool
    is_text_based: bool
    requires_ocr: bool
    supported_by_parser: bool


@dataclass(frozen=True)
class ProcessingStrategy:
    """Рекомендация: какой парсер запускать и чем подстраховаться."""
    priority: str  # "structural" | "textual" | "ocr" | "hybrid"
    recommended_parser: Optional[str]
    fallback_parsers: tuple[str, ...] = ()
    min_confidence: float = 0.3
    timeout_ms: int = 30_000


@dataclass(frozen=True)
class FormatInfo:
    """Результат определения формата файла."""
    format: str  # csv|tsv|excel|json|txt|pdf|html|docx|odt|rtf|xml|image|unknown
    confidence: float
    encoding: str
    characteristics: FormatCharacteristics
    strategy: ProcessingStrategy
    mime_type: Optional[str] = None
    detected_by: str = "default"  # "mime" | "magic" | "extension" | "content" | "default"
    delimiter: Optional[str] = None  # только для csv/tsv


# --- Парсеры ---


@dataclass
class ParseOptions:
    """Параметры парсинга, общие для всех парсеров."""
    encoding: str = "auto"  # "auto" | "utf8" | "cp1251" | "cp866"
    delimiter: str = "auto"  # "auto" | "," | ";" | "\t" | "|"
    skip_empty_rows: bool = True
    max_rows: Optional[int] = None
    search_russian_units: bool = True
    extract_metadata: bool = True
    min_confidence: float = 0.0


@dataclass
class FuelDataEntry:
    fuel_type: str
    value: float
    unit: str = "л"
    period: Optional[str] = None
    supplier: Optional[str] = None
    confidence: float = 0.0


@dataclass
class ElectricityDataEntry:
    value: float  # всегда в кВт·ч
    unit: str = "кВт·ч"
    source_unit: Optional[str] = None  # единица в документе до пересчёта
    region: Optional[str] = None
    tariff_type: Optional[str] = None
    period: Optional[str] = None
    supplier: Optional[str] = None
    confidence: float = 0.0


@dataclass
class GasDataEntry:
    value: float
    unit: str = "м³"
    gas_type: str = "природный газ"
    period: Optional[str] = None
    supplier: Optional[str] = None
    confidence: float = 0.0


@dataclass
class TransportDataEntry:
    value: float  # км
    unit: str = "км"
    transport_type: str = "автомобиль"
    vehicle_class: Optional[str] = None
    cargo_weight: Optional[float] = None
    fuel_consumption: Optional[float] = None
    period: Optional[str] = None
    confidence: float = 0.0


@dataclass
class ExtractedData:
    """Извлечённые значения + исходные строки."""
    fuel_data: list[FuelDataEntry] = field(default_factory=list)
    electricity_data: list[ElectricityDataEntry] = field(default_factory=list)
    gas_data: list[GasDataEntry] = field(default_factory=list)
    transport_data: list[TransportDataEntry] = field(default_factory=list)
    raw_rows: list[list[str]] = field(default_factory=list)
    total_rows: int = 0
    headers: list[str] = field(default_factory=list)

    @property
    def entry_count(self) -> int:
        return (
            len(self.fuel_data) + len(self.electricity_data)
            + len(self.gas_data) + len(self.transport_data)
        )

    def extracted_types(self) -> list[str]:
        """Категории, по которым найдено хотя бы одно значение."""
        types = []
        if self.fuel_data:
            types.append("fuel")
        if self.electricity_data:
            types.append("electricity")
        if self.gas_data:
            types.append("gas")
        if self.transport_data:
            types.append("transport")
        return types

    def merge(self, other: "ExtractedData") -> None:
        self.fuel_data.extend(other.fuel_data)
        self.electricity_data.extend(other.electricity_data)
        self.gas_data.extend(other.gas_data)
        self.transport_data.extend(other.transport_data)


@dataclass
class ParseMetadata:
    encoding: str
    format_detected: str
    processing_time_ms: float = 0.0
    russian_units_found: list[str] = field(default_factory=list)
    data_quality: str = "low"  # "high" | "medium" | "low"
    parser_used: Optional[str] = None
    extra: dict = field(default_factory=dict)  # специфичное для формата (json_structure, sheets, ...)


@dataclass
class ParsedDocumentData:
    """Выход парсера."""
    document_type: str
    confidence: float  # 0..1
    extracted_data: ExtractedData
    metadata: ParseMetadata
    text: str = ""  # плоский текст документа для контекстного анализа


@dataclass
class ParserResult:
    success: bool
    data: Optional[ParsedDocumentData] = None
    error: Optional[str] = None
    processing_time_ms: float = 0.0


@dataclass
class ExtractionQuality:
    """Оценка результата парсинга для оператора."""
    score: int  # 0-100
    quality: str  # "excellent" | "good" | "fair" | "poor"
    recommendations: list[str] = field(default_factory=list)


# --- OCR: размеченное объединение результатов провайдеров ---


@dataclass(frozen=True)
class EngineOcrResult:
    """Текст, распознанный локальным движком."""
    text: str
    confidence: float  # 0..1
    provider: str
    processing_time_ms: float
    word_count: int = 0
    extracted_data: Optional[ExtractedData] = None
    kind: Literal["engine"] = "engine"


@dataclass(frozen=True)
class StubOcrResult:
    """Провайдер описан, но не подключён: пустой текст + предупреждение."""
    provider: str
    warning: str
    processing_time_ms: float = 0.0
    text: str = ""
    confidence: float = 0.0
    kind: Literal["stub"] = "stub"


@dataclass(frozen=True)
class SkippedOcrResult:
    """Формат не требует OCR."""
    reason: str
    provider: str = "none"
    text: str = ""
    confidence: float = 0.0
    processing_time_ms: float = 0.0
    kind: Literal["skipped"] = "skipped"


@dataclass(frozen=True)
class FailedOcrResult:
    """Ошибка во время распознавания."""
    error: str
    provider: str = "error"
    text: str = ""
    confidence: float = 0.0
    processing_time_ms: float = 0.0
    kind: Literal["failed"] = "failed"


OcrResult = Union[EngineOcrResult, StubOcrResult, SkippedOcrResult, FailedOcrResult]


# --- Нечёткий и контекстный поиск ---


@dataclass
class FuzzyMatchResult:
    match: str
    score: float  # 0..1
    confidence: float  # 0..100
    # Каскад по убыванию приоритета: "exact" (точное совпадение после нормализации),
    # "subsequence" (быстрый этап, в терминах fuzzysort), "similarity" (точный этап,
    # в терминах fuse), "levenshtein" (запасной этап по расстоянию правки)
    method: str
    normalized_query: str
    normalized_match: str


@dataclass
class ContextWindow:
    before: list[str] = field(default_factory=list)
    target: str = ""
    after: list[str] = field(default_factory=list)
    full_sentence: str = ""

    def joined(self) -> str:
        parts = [s for s in self.before if s] + ([self.target] if self.target else [])
        parts += [s for s in self.after if s]
        return " ".join(parts)


@dataclass
class UnitCoMention:
    unit: str
    distance: int  # в словах
    confidence: float  # 0..100
    category: str  # "energy" | "volume" | "weight" | "distance"


@dataclass
class ContextBonuses:
    unit_proximity: float = 0.0
    document_context: float = 0.0
    sentence_context: float = 0.0
    table_context: float = 0.0

    def total(self) -> float:
        return self.unit_proximity + self.document_context + self.sentence_context + self.table_context


@dataclass
class ContextPenalties:
    conflicting_units: float = 0.0
    low_confidence: float = 0.0

    def total(self) -> float:
        return self.conflicting_units + self.low_confidence


@dataclass
class ContextualMatch:
    original_query: str
    fuzzy_match: Optional[FuzzyMatchResult]
    context_window: ContextWindow
    unit_co_mentions: list[UnitCoMention]
    document_terms: list[str]
    base_score: float
    context_bonuses: ContextBonuses
    penalties: ContextPenalties
    final_score: float  # 0..100
    recommendation: str  # "high_confidence" | "medium_confidence" | "low_confidence" | "reject"
    foundation_models_enhanced: bool = False


@dataclass
class AiEntity:
    name: str
    category: Optional[str] = None
    confidence: float = 0.0  # 0..100
    normalized_value: Optional[str] = None
    units: Optional[str] = None


@dataclass
class Enhancement:
    """Ответ внешней модели на запрос уточнения сущности."""
    entities: list[AiEntity] = field(default_factory=list)
    document_type: Optional[str] = None
    context_confidence: float = 0.0  # 0..100
    relevant_sections: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


# --- Метрики ---


@dataclass
class ProcessingMetrics:
    """Одна запись о полном прогоне документа через пайплайн."""
    document_id: str
    file_path: str
    file_size: int
    file_type: str
    processing_method: str  # "parser" | "ocr" | "hybrid" | "failed"
    start_time: float  # epoch ms
    end_time: float
    processing_time_ms: float

    parser_used: Optional[str] = None
    fallback_attempts: int = 0
    confidence: float = 0.0  # 0..1

    fields_extracted: int = 0
    fields_expected: int = 0
    extraction_success: bool = False
    data_quality: str = "low"

    fuel_data_extracted: int = 0
    electricity_data_extracted: bool = False
    thermal_data_extracted: bool = False
    transport_data_extracted: bool = False
    fgas_data_extracted: bool = False
    industrial_processes_extracted: bool = False

    total_co2_calculated: Optional[float] = None
    base_emissions: Optional[float] = None
    fgas_emissions: Optional[float] = None
    industrial_emissions: Optional[float] = None
    emission_calculation_method: Optional[str] = None

    synonyms_applied: int = 0
    fields_normalized: int = 0
    categories_identified: list[str] = field(default_factory=list)

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    fallback_reason: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass
class QualityAssessment:
    score: int  # 0-100
    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


@dataclass
class AggregatedMetrics:
    total_documents: int = 0
    successful_extractions: int = 0
    failed_extractions: int = 0
    extraction_success_rate: float = 0.0

    avg_processing_time_ms: float = 0.0
    median_processing_time_ms: float = 0.0
    avg_confidence: float = 0.0
    avg_fields_extracted: float = 0.0
    avg_fields_expected: float = 0.0

    processing_methods: dict[str, int] = field(default_factory=dict)
    parsers_used: dict[str, int] = field(default_factory=dict)
    data_quality_distribution: dict[str, int] = field(default_factory=dict)

    fuel_extraction_rate: float = 0.0
    electricity_extraction_rate: float = 0.0
    thermal_extraction_rate: float = 0.0
    transport_extraction_rate: float = 0.0

    avg_total_co2: float = 0.0
    avg_base_emissions: float = 0.0
    documents_with_fgas: int = 0
    documents_with_industrial_processes: int = 0

    avg_synonyms_applied: float = 0.0
    avg_fields_normalized: float = 0.0

    period_start: str = ""
    period_end: str = ""


@dataclass
class DocumentProcessingResult:
    """Полный результат обработки одного файла контроллером."""
    file_info: FileInfo
    format_info: Optional[FormatInfo] = None
    parser_result: Optional[ParserResult] = None
    parser_used: Optional[str] = None
    unit_matches: list[ContextualMatch] = field(default_factory=list)
    metrics: Optional[ProcessingMetrics] = None
    status: str = "pending"  # "pending" | "done" | "error"
    error_message: Optional[str] = None
    processed_at: Optional[datetime] = None
