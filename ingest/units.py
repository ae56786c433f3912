"""Извлечение величин с русскими единицами измерения.

Общий проход для всех парсеров: строки документа склеиваются в текст,
по каждой категории (электроэнергия, жидкое топливо, газ, тепло, транспорт)
ищутся пары «число + единица». Найденное раскладывается в типизированные
записи ExtractedData, а сырые строки единиц идут в оценку качества.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from ingest.models import (
    ElectricityDataEntry,
    ExtractedData,
    FuelDataEntry,
    GasDataEntry,
    TransportDataEntry,
)

logger = logging.getLogger(__name__)

# Число: «1234,5», «1234.5» или с разделителями тысяч «1 234,5».
# Разделитель тысяч не бывает табуляцией: ею склеиваются ячейки строки.
_NUMBER = r"(?<![\d.,])(\d{1,3}(?:[ \u00a0\u202f]\d{3})+(?:[.,]\d+)?|\d+(?:[.,]\d+)?)"
_NOT_LETTER = r"(?![а-яёa-z])"
CELL_SEPARATOR = "\t"

UNIT_PATTERNS: dict[str, re.Pattern] = {
    "electricity": re.compile(_NUMBER + r"\s*(квт[*·\-]?ч|kwh|мвт[*·\-]?ч|mwh)", re.IGNORECASE),
    "fuel_liquid": re.compile(_NUMBER + r"\s*(литр(?:ов|а)?|л|liters?)" + _NOT_LETTER, re.IGNORECASE),
    "fuel_gas": re.compile(_NUMBER + r"\s*(м[3³]|куб\.?\s?м|cubic)" + _NOT_LETTER, re.IGNORECASE),
    "heat": re.compile(_NUMBER + r"\s*(гкал|gcal)" + _NOT_LETTER, re.IGNORECASE),
    "transport_km": re.compile(_NUMBER + r"\s*(км|километр(?:ов|а)?|km)" + _NOT_LETTER, re.IGNORECASE),
    "transport_tkm": re.compile(_NUMBER + r"\s*(ткм|т[*·]км|тонно-километр(?:ов|а)?)", re.IGNORECASE),
}

_PERIOD_RE = re.compile(
    r"(январ\w*|феврал\w*|март\w*|апрел\w*|ма[йя]\w*|июн\w*|июл\w*|август\w*|"
    r"сентябр\w*|октябр\w*|ноябр\w*|декабр\w*|[1-4]\s*квартал\w*)\s*(\d{4})?"
    r"|\b(0?[1-9]|1[0-2])\.(\d{4})\b",
    re.IGNORECASE,
)

GCAL_TO_KWH = 1163.0


@dataclass
class UnitExtraction:
    data: ExtractedData = field(default_factory=ExtractedData)
    units_found: list[str] = field(default_factory=list)


def normalize_number(raw: str) -> Optional[float]:
    """«1 234,5» → 1234.5. None если строка не число."""
    cleaned = re.sub(r"\s", "", raw).replace(",", ".")
    try:
        return float(cleaned)
    except ValueError:
        return None


def assess_data_quality(units_found: int, total_rows: int) -> str:
    """Качество по плотности единиц на строку и их количеству."""
    ratio = units_found / total_rows if total_rows > 0 else 0.0
    if ratio > 0.5 and units_found >= 3:
        return "high"
    if ratio > 0.2 and units_found >= 1:
        return "medium"
    return "low"


def guess_fuel_type(text: str) -> str:
    lowered = text.lower()
    if "бензин" in lowered or "аи-" in lowered:
        return "бензин"
    if "дизел" in lowered or "дт" in lowered.split() or "солярк" in lowered:
        return "дизельное топливо"
    if "газ" in lowered or "метан" in lowered or "пропан" in lowered:
        return "газ"
    return "топливо"


def find_period(text: str) -> Optional[str]:
    """Первый упомянутый отчётный период («январь 2024», «03.2024»)."""
    match = _PERIOD_RE.search(text)
    if not match:
        return None
    return match.group(0).strip()


def extract_russian_units(rows: list[list[str]]) -> UnitExtraction:
    """Ищет пары «число + единица» в каждой строке и раскладывает по категориям."""
    result = UnitExtraction()
    for row in rows:
        line = CELL_SEPARATOR.join(str(cell) for cell in row if cell is not None and str(cell) != "")
        if line:
            _extract_from_line(line, result)
    return result


def extract_from_text(text: str) -> UnitExtraction:
    """То же, что extract_russian_units, но по строкам сплошного текста."""
    return extract_russian_units([[line] for line in text.splitlines() if line.strip()])


def _extract_from_line(line: str, result: UnitExtraction) -> None:
    data = result.data
    period = find_period(line)

    for match in UNIT_PATTERNS["electricity"].finditer(line):
        value = normalize_number(match.group(1))
        if value is None:
            continue
        unit = match.group(2)
        if unit.lower().startswith(("мвт", "mwh")):
            value *= 1000
        data.electricity_data.append(ElectricityDataEntry(
            value=value,
            source_unit=unit,
            region="средняя РФ",
            period=period,
            confidence=0.8,
        ))
        result.units_found.append(unit)

    for match in UNIT_PATTERNS["fuel_liquid"].finditer(line):
        value = normalize_number(match.group(1))
        if value is None:
            continue
        data.fuel_data.append(FuelDataEntry(
            fuel_type=guess_fuel_type(line),
            value=value,
            unit="л",
            period=period,
            confidence=0.8,
        ))
        result.units_found.append(match.group(2))

    for match in UNIT_PATTERNS["fuel_gas"].finditer(line):
        value = normalize_number(match.group(1))
        if value is None:
            continue
        data.gas_data.append(GasDataEntry(value=value, period=period, confidence=0.8))
        result.units_found.append(match.group(2))

    # Тепло учитывается вместе с электроэнергией в пересчёте на кВт·ч
    for match in UNIT_PATTERNS["heat"].finditer(line):
        value = normalize_number(match.group(1))
        if value is None:
            continue
        data.electricity_data.append(ElectricityDataEntry(
            value=value * GCAL_TO_KWH,
            source_unit=match.group(2),
            tariff_type="тепловая энергия",
            period=period,
            confidence=0.7,
        ))
        result.units_found.append(match.group(2))

    for match in UNIT_PATTERNS["transport_km"].finditer(line):
        value = normalize_number(match.group(1))
        if value is None:
            continue
        data.transport_data.append(TransportDataEntry(value=value, period=period, confidence=0.7))
        result.units_found.append(match.group(2))

    for match in UNIT_PATTERNS["transport_tkm"].finditer(line):
        value = normalize_number(match.group(1))
        if value is None:
            continue
        data.transport_data.append(TransportDataEntry(
            value=value,
            unit="т·км",
            transport_type="грузовые перевозки",
            period=period,
            confidence=0.7,
        ))
        result.units_found.append(match.group(2))


# --- Упоминания энергоресурсов в сплошном тексте (офисные и TXT документы) ---


@dataclass
class EnergyMention:
    category: str  # "electricity" | "gas" | "fuel" | "heat" | "transport"
    text: str
    value: Optional[float]
    confidence: float
    context: str


_ENERGY_PATTERNS: dict[str, list[tuple[re.Pattern, float]]] = {
    "electricity": [
        (re.compile(_NUMBER + r"\s*квт[·*\-]?ч", re.IGNORECASE), 0.9),
        (re.compile(r"электроэнерги[яи]\s*:?\s*" + _NUMBER, re.IGNORECASE), 0.8),
        (re.compile(r"потреблени[ея]\s+электр\w*\D{0,30}" + _NUMBER, re.IGNORECASE), 0.85),
    ],
    "gas": [
        (re.compile(_NUMBER + r"\s*м[³3]" + _NOT_LETTER, re.IGNORECASE), 0.9),
        (re.compile(r"\bгаз\w*\D{0,30}" + _NUMBER, re.IGNORECASE), 0.8),
    ],
    "fuel": [
        (re.compile(_NUMBER + r"\s*л" + _NOT_LETTER, re.IGNORECASE), 0.9),
        (re.compile(r"(?:бензин|дизел|топлив|гсм)\w*\D{0,30}" + _NUMBER, re.IGNORECASE), 0.8),
    ],
    "heat": [
        (re.compile(_NUMBER + r"\s*гкал", re.IGNORECASE), 0.9),
        (re.compile(r"(?:тепл|отоплени)\w*\D{0,30}" + _NUMBER, re.IGNORECASE), 0.7),
    ],
    "transport": [
        (re.compile(_NUMBER + r"\s*км" + _NOT_LETTER, re.IGNORECASE), 0.9),
        (re.compile(r"(?:пробег|расстояни|дистанци)\w*\D{0,30}" + _NUMBER, re.IGNORECASE), 0.8),
    ],
}

_CONTEXT_CHARS = 50


def find_energy_mentions(text: str) -> list[EnergyMention]:
    """Все упоминания энергоресурсов с контекстом ±50 символов."""
    mentions: list[EnergyMention] = []
    for category, patterns in _ENERGY_PATTERNS.items():
        for pattern, confidence in patterns:
            for match in pattern.finditer(text):
                start = max(0, match.start() - _CONTEXT_CHARS)
                end = min(len(text), match.end() + _CONTEXT_CHARS)
                mentions.append(EnergyMention(
                    category=category,
                    text=match.group(0),
                    value=normalize_number(match.group(1)),
                    confidence=confidence,
                    context=text[start:end].strip(),
                ))
    return mentions
