"""Централизованная конфигурация пайплайна извлечения данных."""
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional


@dataclass
class Config:
    """Все настройки пайплайна в одном месте."""

    # Поддерживаемые форматы
    supported_extensions: tuple[str, ...] = (
        ".csv", ".tsv", ".xlsx", ".xls", ".json", ".xml", ".html", ".htm",
        ".txt", ".rtf", ".pdf", ".docx", ".pptx", ".odt", ".odp", ".ods",
        ".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp",
    )
    max_file_size_mb: int = 50

    # Детектор форматов
    detector_sample_size: int = 2048
    detector_strict_mode: bool = False

    # Парсинг
    parse_timeout_ms: int = 30_000
    max_rows: int = 10_000
    excel_max_rows: int = 1000
    rtf_max_size_mb: int = 50

    # OCR
    ocr_enabled: bool = True
    ocr_languages: str = "rus+eng"
    ocr_psm: int = 6
    ocr_preprocess: bool = True
    ocr_pdf_resolution: int = 300
    default_user_mode: str = "DEMO"  # "DEMO" | "TRIAL" | "PAID" | "EXPIRED"
    trial_cost_ceiling: float = 0.01

    # Нечёткий поиск
    fuzzy_tolerance: int = 2
    fuzzy_min_length: int = 3
    fuzzy_similarity_threshold: float = 0.4
    fuzzy_normalization: bool = True

    # Контекстный анализ
    escalation_low_score: float = 70.0
    escalation_high_score: float = 85.0
    escalation_sample_rate: float = 0.3  # доля высоких скоров, уходящих на перепроверку AI
    use_external_model: bool = True

    # AI: OpenAI-совместимый провайдер (Foundation Models)
    ai_base_url: str = "https://foundation-models.api.cloud.ru/v1"
    ai_model: str = "GigaChat/GigaChat-2-Max"
    ai_max_retries: int = 2
    ai_temperature: float = 0.1
    ai_max_tokens: int = 1000
    ai_timeout_seconds: float = 20.0

    # Метрики
    metrics_db_path: Path = Path("debug_output") / "extraction_metrics.db"
    metrics_period_days: int = 7
    fields_expected: int = 4  # топливо, электричество, газ, транспорт

    # Справочник типов документов (подсказки для контекстного анализа)
    document_terms: list[str] = field(default_factory=lambda: [
        "счёт", "счет", "накладная", "акт", "справка", "отчёт", "отчет",
        "ведомость", "реестр", "документ", "форма", "бланк", "талон",
        "квитанция", "чек", "расписка", "уведомление", "счет-фактура",
    ])

    # Имя выходной папки
    output_folder_name: str = "Извлечение_Результат"

    @classmethod
    def from_env(cls, **overrides) -> "Config":
        """Собирает конфиг из дефолтов + переменных окружения + явных overrides."""
        config = cls(**overrides)
        for f in fields(cls):
            if f.name in overrides:
                continue
            raw = os.environ.get(_ENV_NAMES.get(f.name, ""), None)
            if raw is None:
                continue
            setattr(config, f.name, _coerce(raw, getattr(config, f.name)))
        return config

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


# Имена переменных окружения для полей, которые разрешено переопределять
_ENV_NAMES = {
    "fuzzy_tolerance": "FUZZY_TOLERANCE",
    "fuzzy_min_length": "FUZZY_MIN_LENGTH",
    "fuzzy_similarity_threshold": "FUZZY_SIMILARITY_THRESHOLD",
    "fuzzy_normalization": "FUZZY_NORMALIZATION",
    "escalation_sample_rate": "ESCALATION_SAMPLE_RATE",
    "ai_base_url": "FOUNDATION_MODELS_BASE_URL",
    "ai_model": "FOUNDATION_MODELS_DEFAULT_MODEL",
    "ocr_enabled": "OCR_ENABLED",
    "default_user_mode": "USER_MODE",
    "metrics_db_path": "METRICS_DB_PATH",
    "parse_timeout_ms": "PARSE_TIMEOUT_MS",
}


def _coerce(raw: str, current: object) -> object:
    """Приводит строку из окружения к типу текущего значения поля."""
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, Path):
        return Path(raw)
    return raw


def load_api_key() -> Optional[str]:
    """Ключ Foundation Models API из окружения (None если не задан)."""
    return os.environ.get("FOUNDATION_MODELS_API_KEY") or None
