"""Парсер XML.

Сначала структурный поиск: элементы, чьи имена похожи на топливо,
электроэнергию или газ, превращаются в записи напрямую. Если структура
ничего не дала по топливу и электроэнергии, работает общий поиск единиц
по плоскому тексту документа.
"""
import logging
import xml.etree.ElementTree as ET
from typing import Optional

from ingest.models import (
    ElectricityDataEntry,
    ExtractedData,
    FuelDataEntry,
    GasDataEntry,
    ParsedDocumentData,
    ParseOptions,
)
from ingest.parsers.base import BaseParser, ParseError
from ingest.units import UnitExtraction, normalize_number

logger = logging.getLogger(__name__)

FUEL_KEYS = ("fuel", "топливо", "бензин", "дизель", "gasoline", "diesel")
ELECTRICITY_KEYS = ("electricity", "электричество", "электроэнергия", "квтч", "kwh", "power")
GAS_KEYS = ("gas", "газ", "метан", "природный")

_VALUE_KEYS = ("value", "amount", "quantity", "consumption", "количество", "объем", "объём", "значение")
_UNIT_KEYS = ("unit", "units", "ед", "единица")
_TYPE_KEYS = ("type", "тип", "вид", "name", "название")

MAX_DEPTH = 50


class XmlParser(BaseParser):
    name = "XmlParser"
    document_type = "structured"
    supported_extensions = (".xml",)
    supported_mime_types = ("application/xml", "text/xml")

    def _parse(self, data: bytes, options: ParseOptions) -> ParsedDocumentData:
        if not data.strip():
            raise ParseError("Пустой XML")
        try:
            root = ET.fromstring(data)
        except ET.ParseError as e:
            raise ParseError(f"Некорректный XML: {e}") from e

        lines: list[str] = []
        element_count = _collect_text(root, lines, depth=0)
        text = "\n".join(lines)
        rows = [[line] for line in lines]
        if options.max_rows is not None:
            rows = rows[: options.max_rows]

        structural = ExtractedData()
        _search_energy_data(root, structural, depth=0)

        extraction = self._extract_units(rows, options)
        # Структурные записи точнее регулярок: текстовые берём, только если их нет
        if not (structural.fuel_data or structural.electricity_data):
            structural.merge(extraction.data)
        merged = UnitExtraction(data=structural, units_found=extraction.units_found)

        entries = merged.data.entry_count
        if entries > 5 and len(text) > 500:
            quality = "high"
        elif entries > 0 or len(text) > 200:
            quality = "medium"
        else:
            quality = "low"

        confidence = 0.5
        if merged.units_found:
            confidence += 0.2
        if merged.data.fuel_data:
            confidence += 0.15
        if merged.data.electricity_data:
            confidence += 0.15
        confidence = min(confidence, 1.0)

        return self._build(
            confidence=confidence,
            extraction=merged,
            rows=rows,
            encoding="utf8",
            format_detected="XML",
            text=text,
            data_quality=quality,
            extra={"xml_structure": f"Корень: {_local(root.tag)}, элементов: {element_count}"},
        )


def _local(tag: str) -> str:
    """Имя тега без пространства имён: {urn:x}fuel → fuel."""
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def _collect_text(element: ET.Element, lines: list[str], depth: int) -> int:
    """Строки «тег: текст» рекурсивно; возвращает число элементов."""
    if depth > MAX_DEPTH:
        return 0
    count = 1
    text = (element.text or "").strip()
    if text:
        lines.append(f"{_local(element.tag)}: {text}")
    for child in element:
        count += _collect_text(child, lines, depth + 1)
        tail = (child.tail or "").strip()
        if tail:
            lines.append(tail)
    return count


def _search_energy_data(element: ET.Element, result: ExtractedData, depth: int) -> None:
    if depth > 30:
        return
    tag = _local(element.tag).lower()
    if any(k in tag for k in FUEL_KEYS):
        fields = _element_fields(element)
        value = _find_value(element, fields)
        if value is not None:
            result.fuel_data.append(FuelDataEntry(
                fuel_type=_first(fields, _TYPE_KEYS) or _local(element.tag),
                value=value,
                unit=_first(fields, _UNIT_KEYS) or "л",
                confidence=0.85,
            ))
    elif any(k in tag for k in ELECTRICITY_KEYS):
        fields = _element_fields(element)
        value = _find_value(element, fields)
        if value is not None:
            unit = _first(fields, _UNIT_KEYS) or "кВт·ч"
            if unit.lower().startswith(("мвт", "mwh")):
                value *= 1000
            result.electricity_data.append(ElectricityDataEntry(
                value=value,
                source_unit=unit,
                confidence=0.85,
            ))
    elif any(k in tag for k in GAS_KEYS):
        fields = _element_fields(element)
        value = _find_value(element, fields)
        if value is not None:
            result.gas_data.append(GasDataEntry(
                value=value,
                unit=_first(fields, _UNIT_KEYS) or "м³",
                confidence=0.85,
            ))

    for child in element:
        _search_energy_data(child, result, depth + 1)


def _element_fields(element: ET.Element) -> dict[str, str]:
    """Атрибуты + тексты прямых потомков, ключи в нижнем регистре."""
    fields = {k.lower(): v for k, v in element.attrib.items()}
    for child in element:
        text = (child.text or "").strip()
        if text:
            fields.setdefault(_local(child.tag).lower(), text)
    return fields


def _find_value(element: ET.Element, fields: dict[str, str]) -> Optional[float]:
    for key in _VALUE_KEYS:
        if key in fields:
            value = normalize_number(fields[key])
            if value is not None:
                return value
    own = (element.text or "").strip()
    if own:
        return normalize_number(own)
    return None


def _first(fields: dict[str, str], keys: tuple[str, ...]) -> Optional[str]:
    for key in keys:
        if fields.get(key):
            return fields[key]
    return None
