"""Определение истинного формата файла.

Порядок проверок: MIME-тип → магические байты → расширение → анализ
содержимого → лучший из кандидатов. Результат: FormatInfo с рекомендацией,
каким парсером обрабатывать файл и чем подстраховаться.

Детектор никогда не бросает исключений: нераспознанный файл получает
формат txt с минимальной уверенностью.
"""
import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from ingest.encoding import detect_encoding
from ingest.models import FormatCharacteristics, FormatInfo, ProcessingStrategy

logger = logging.getLogger(__name__)

OCR_FALLBACK = "OcrService"

MIME_TYPES: dict[str, str] = {
    "application/pdf": "pdf",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "excel",
    "application/vnd.ms-excel": "excel",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.oasis.opendocument.text": "odt",
    "application/rtf": "rtf",
    "text/rtf": "rtf",
    "text/html": "html",
    "application/json": "json",
    "text/json": "json",
    "text/csv": "csv",
    "text/tab-separated-values": "tsv",
    "text/plain": "txt",
    "application/xml": "xml",
    "text/xml": "xml",
    "image/png": "image",
    "image/jpeg": "image",
    "image/tiff": "image",
    "image/bmp": "image",
}

EXTENSIONS: dict[str, tuple[str, float]] = {
    "csv": ("csv", 0.9),
    "tsv": ("tsv", 0.9),
    "xlsx": ("excel", 0.9),
    "xls": ("excel", 0.9),
    "json": ("json", 0.9),
    "pdf": ("pdf", 0.9),
    "html": ("html", 0.8),
    "htm": ("html", 0.8),
    "docx": ("docx", 0.8),
    "pptx": ("docx", 0.7),
    "odt": ("odt", 0.8),
    "odp": ("odt", 0.7),
    "ods": ("odt", 0.7),
    "rtf": ("rtf", 0.8),
    "xml": ("xml", 0.8),
    "txt": ("txt", 0.7),
    "png": ("image", 0.9),
    "jpg": ("image", 0.9),
    "jpeg": ("image", 0.9),
    "tif": ("image", 0.9),
    "tiff": ("image", 0.9),
    "bmp": ("image", 0.9),
}

CHARACTERISTICS: dict[str, FormatCharacteristics] = {
    "csv": FormatCharacteristics(True, True, False, True),
    "tsv": FormatCharacteristics(True, True, False, True),
    "json": FormatCharacteristics(True, True, False, True),
    "xml": FormatCharacteristics(True, True, False, True),
    "excel": FormatCharacteristics(True, False, False, True),
    "txt": FormatCharacteristics(False, True, False, True),
    "html": FormatCharacteristics(True, True, False, True),
    "docx": FormatCharacteristics(True, False, False, True),
    "odt": FormatCharacteristics(True, False, False, True),
    "rtf": FormatCharacteristics(False, True, False, True),
    "pdf": FormatCharacteristics(False, False, True, True),
    "image": FormatCharacteristics(False, False, True, False),
    "unknown": FormatCharacteristics(False, False, True, False),
}

PARSERS: dict[str, str] = {
    "csv": "CsvTsvParser",
    "tsv": "CsvTsvParser",
    "excel": "ExcelParser",
    "json": "JsonParser",
    "xml": "XmlParser",
    "txt": "TxtParser",
    "html": "HtmlParser",
    "docx": "OfficeParser",
    "odt": "OfficeParser",
    "rtf": "RtfParser",
    "pdf": "PdfParser",
}

CSV_DELIMITERS = (",", ";", "\t", "|")


@dataclass
class DetectionOptions:
    sample_size: int = 2048
    strict_mode: bool = False
    check_magic_bytes: bool = True
    analyze_content: bool = True
    timeout_ms: int = 30_000


def detect_format(
    filename: str,
    data: bytes,
    mime_type: Optional[str] = None,
    options: Optional[DetectionOptions] = None,
) -> FormatInfo:
    """Определяет формат файла. Чистая функция: одинаковый вход → одинаковый FormatInfo."""
    opts = options or DetectionOptions()
    extension = Path(filename).suffix.lower().lstrip(".")
    sample = data[: opts.sample_size]
    encoding = detect_encoding(sample)

    try:
        info = _detect(extension, sample, mime_type, opts, encoding)
    except Exception as e:
        logger.warning("Ошибка определения формата %s: %s", filename, e)
        info = _build_info("txt", 0.3, encoding, mime_type, "default", opts)

    if info.format in ("csv", "tsv"):
        text = sample.decode("utf-8", errors="replace")[:1000]
        delimiter, _ = score_delimiters(text.split("\n")[:10])
        info = replace(info, delimiter=delimiter)
    return info


def _detect(
    extension: str,
    sample: bytes,
    mime_type: Optional[str],
    opts: DetectionOptions,
    encoding: str,
) -> FormatInfo:
    # 1. MIME
    if mime_type:
        fmt = MIME_TYPES.get(mime_type.split(";")[0].strip().lower())
        if fmt:
            info = _build_info(fmt, 0.9, encoding, mime_type, "mime", opts)
            if opts.strict_mode or info.confidence > 0.8:
                return info

    # 2. Магические байты
    if opts.check_magic_bytes:
        magic = _check_magic_bytes(sample, extension)
        if magic:
            return _build_info(magic[0], magic[1], encoding, mime_type, "magic", opts)

    # 3. Расширение
    candidates: list[tuple[str, float, str]] = []
    if extension in EXTENSIONS:
        fmt, conf = EXTENSIONS[extension]
        candidates.append((fmt, conf, "extension"))

    # 4. Содержимое
    if opts.analyze_content:
        content = _analyze_content(sample)
        if content:
            candidates.append((content[0], content[1], "content"))

    # 5. Лучший кандидат (при равенстве побеждает расширение)
    if not candidates:
        return _build_info("txt", 0.3, encoding, mime_type, "default", opts)
    best = candidates[0]
    for candidate in candidates[1:]:
        if candidate[1] > best[1]:
            best = candidate
    return _build_info(best[0], best[1], encoding, mime_type, best[2], opts)


def _check_magic_bytes(sample: bytes, extension: str) -> Optional[tuple[str, float]]:
    if sample.startswith(b"%PDF"):
        return "pdf", 1.0
    if sample.startswith(b"{\\rtf"):
        return "rtf", 1.0
    if sample.startswith(b"\x89PNG") or sample.startswith(b"\xff\xd8\xff"):
        return "image", 1.0
    if sample.startswith((b"II*\x00", b"MM\x00*")) or (sample.startswith(b"BM") and extension == "bmp"):
        return "image", 1.0

    head = sample[:100].decode("utf-8", errors="ignore").lower()
    if "<html" in head or "<!doctype html" in head:
        return "html", 0.9
    if head.lstrip().startswith("<?xml"):
        return "xml", 0.9

    if sample.startswith(b"PK"):
        return _disambiguate_zip(sample, extension), 0.95
    return None


def _disambiguate_zip(sample: bytes, extension: str) -> str:
    """XLSX, DOCX и ODT внутри ZIP. Смотрим расширение, затем имена файлов в архиве."""
    if extension in ("xlsx", "xls", "xlsm"):
        return "excel"
    if extension in ("odt", "odp", "ods"):
        return "odt"
    if extension in ("docx", "pptx"):
        return "docx"
    if b"xl/" in sample:
        return "excel"
    if b"opendocument" in sample or b"mimetype" in sample:
        return "odt"
    return "docx"


def _analyze_content(sample: bytes) -> Optional[tuple[str, float]]:
    text = sample.decode("utf-8", errors="replace")[:1000]

    if _looks_like_json(text):
        return "json", 0.8

    delimiter, consistency = score_delimiters(text.split("\n")[:10])
    csv_score = min(consistency / 3, 0.9)
    if csv_score > 0.5:
        return ("tsv" if delimiter == "\t" else "csv"), csv_score

    lowered = text.lower()
    if "<html" in lowered or "<!doctype" in lowered:
        return "html", 0.8
    if text.strip().startswith("<?xml") or "<root>" in text or "</" in text:
        return "xml", 0.7
    return None


def _looks_like_json(text: str) -> bool:
    trimmed = text.strip()
    if not trimmed.startswith(("{", "[")):
        return False
    try:
        json.loads(trimmed)
        return True
    except ValueError:
        # Выборка могла обрезать документ, ищем характерные сочетания
        return any(ind in trimmed for ind in ('":', '",', '"}', '"]', '"[', '"{'))


def score_delimiters(lines: list[str]) -> tuple[str, float]:
    """Выбирает разделитель CSV по стабильности числа вхождений в строках.

    Для каждого кандидата: среднее и дисперсия числа вхождений по строкам,
    оценка = среднее / (1 + дисперсия). Побеждает максимальная оценка;
    при равенстве первый по порядку («,»). Используется и детектором,
    и CSV-парсером, чтобы они всегда сходились в выборе.
    """
    lines = [line.rstrip("\r") for line in lines if line.strip()]
    if len(lines) < 2:
        return ",", 0.0

    best_delimiter, best_score = ",", 0.0
    for delimiter in CSV_DELIMITERS:
        counts = [line.count(delimiter) for line in lines]
        mean = sum(counts) / len(counts)
        if mean == 0:
            continue
        variance = sum((c - mean) ** 2 for c in counts) / len(counts)
        score = mean / (1 + variance)
        if score > best_score:
            best_delimiter, best_score = delimiter, score
    return best_delimiter, best_score


def get_processing_strategy(
    format_info: FormatInfo, timeout_ms: Optional[int] = None
) -> ProcessingStrategy:
    """Приоритет обработки и цепочка запасных парсеров для формата."""
    return _strategy_for(
        format_info.format,
        format_info.characteristics,
        timeout_ms if timeout_ms is not None else format_info.strategy.timeout_ms,
    )


def _strategy_for(fmt: str, ch: FormatCharacteristics, timeout_ms: int) -> ProcessingStrategy:
    parser = PARSERS.get(fmt)
    if ch.has_structure and not ch.requires_ocr:
        # Бинарные контейнеры (xlsx, docx) бессмысленно читать как текст
        fallback = ("TxtParser",) if ch.is_text_based else ()
        return ProcessingStrategy("structural", parser, fallback, 0.3, timeout_ms)
    if ch.is_text_based and not ch.requires_ocr:
        fallback = () if parser == "TxtParser" else ("TxtParser",)
        return ProcessingStrategy("textual", parser, fallback, 0.3, timeout_ms)
    if fmt in ("pdf", "image"):
        return ProcessingStrategy("ocr", parser, (OCR_FALLBACK,), 0.3, timeout_ms)
    return ProcessingStrategy("hybrid", parser, ("TxtParser",), 0.3, timeout_ms)


def _build_info(
    fmt: str,
    confidence: float,
    encoding: str,
    mime_type: Optional[str],
    detected_by: str,
    opts: DetectionOptions,
) -> FormatInfo:
    characteristics = CHARACTERISTICS.get(fmt, CHARACTERISTICS["unknown"])
    return FormatInfo(
        format=fmt,
        confidence=min(confidence, 0.99),
        encoding=encoding,
        characteristics=characteristics,
        strategy=_strategy_for(fmt, characteristics, opts.timeout_ms),
        mime_type=mime_type,
        detected_by=detected_by,
    )


def get_supported_formats_stats() -> dict:
    """Сводка по известным форматам: сколько поддержано, сколько требует OCR."""
    formats = [f for f in CHARACTERISTICS if f != "unknown"]
    return {
        "total_formats": len(formats),
        "supported_by_parser": sum(1 for f in formats if CHARACTERISTICS[f].supported_by_parser),
        "structured": sum(1 for f in formats if CHARACTERISTICS[f].has_structure),
        "text_based": sum(1 for f in formats if CHARACTERISTICS[f].is_text_based),
        "requires_ocr": sum(1 for f in formats if CHARACTERISTICS[f].requires_ocr),
        "formats": sorted(formats),
    }


def log_detection_result(filename: str, info: FormatInfo) -> None:
    logger.info(
        "Формат %s: %s (уверенность %.0f%%, источник %s, кодировка %s, парсер %s, запасные: %s)",
        filename,
        info.format,
        info.confidence * 100,
        info.detected_by,
        info.encoding,
        info.strategy.recommended_parser or "нет",
        ", ".join(info.strategy.fallback_parsers) or "нет",
    )
