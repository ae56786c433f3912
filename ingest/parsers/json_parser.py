"""Парсер JSON.

Произвольно вложенный JSON разворачивается в строки-кортежи, по которым
идёт общий поиск единиц. Сложность структуры влияет на уверенность:
чем глубже вложенность, тем труднее понять смысл значений.
"""
import json
import logging
from dataclasses import dataclass, field

from ingest.encoding import decode_text, detect_encoding
from ingest.models import ParsedDocumentData, ParseOptions
from ingest.parsers.base import BaseParser, ParseError, apply_max_rows, quality_bonus
from ingest.units import assess_data_quality

logger = logging.getLogger(__name__)


@dataclass
class JsonStructure:
    depth: int = 0
    arrays: int = 0
    objects: int = 0
    possible_headers: list[str] = field(default_factory=list)
    root_type: str = "object"  # "array" | "object" | "mixed"

    @property
    def complexity(self) -> str:
        count = self.arrays + self.objects
        if self.depth <= 1 and count <= 2:
            return "simple"
        if self.depth <= 3 and count <= 10:
            return "medium"
        return "complex"


class JsonParser(BaseParser):
    name = "JsonParser"
    document_type = "structured"
    supported_extensions = (".json",)
    supported_mime_types = ("application/json", "text/json")

    def _parse(self, data: bytes, options: ParseOptions) -> ParsedDocumentData:
        encoding = detect_encoding(data, options.encoding)
        text = decode_text(data, encoding).lstrip("\ufeff")
        try:
            document = json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseError(f"Некорректный JSON: {e}") from e

        structure = analyze_structure(document)
        rows = apply_max_rows(flatten_json(document), options)
        if options.skip_empty_rows:
            rows = [row for row in rows if any(cell for cell in row)]

        extraction = self._extract_units(rows, options)
        quality = assess_data_quality(len(extraction.units_found), len(rows))

        confidence = 0.6
        confidence += quality_bonus(quality, 0.3, 0.2, 0.1)
        confidence += {"simple": 0.1, "medium": 0.05, "complex": -0.05}[structure.complexity]
        confidence += min(len(extraction.units_found) * 0.02, 0.25)
        if len(rows) > 5:
            confidence += 0.05
        if len(rows) > 20:
            confidence += 0.05
        confidence = min(confidence, 0.99)

        return self._build(
            confidence=confidence,
            extraction=extraction,
            rows=rows,
            headers=structure.possible_headers,
            encoding=encoding,
            format_detected="JSON",
            data_quality=quality,
            extra={
                "json_structure": {
                    "depth": structure.depth,
                    "arrays": structure.arrays,
                    "objects": structure.objects,
                    "type": structure.root_type,
                    "complexity": structure.complexity,
                },
            },
        )


def flatten_json(document: object) -> list[list[str]]:
    """Разворачивает JSON в строки.

    Корневой массив: объект → строка «ключ значение ...», примитив → [значение].
    Корневой объект: массивы → по строке на элемент (с префиксом ключа),
    вложенные объекты → одна строка, примитивы → [ключ, значение].
    """
    rows: list[list[str]] = []
    if isinstance(document, list):
        for item in document:
            if isinstance(item, dict):
                rows.append(_object_to_row(item))
            else:
                rows.append([_to_str(item)])
    elif isinstance(document, dict):
        for key, value in document.items():
            if isinstance(value, list):
                for item in value:
                    if isinstance(item, dict):
                        rows.append([key] + _object_to_row(item))
                    else:
                        rows.append([key, _to_str(item)])
            elif isinstance(value, dict):
                rows.append(_object_to_row(value, prefix=key))
            else:
                rows.append([key, _to_str(value)])
    else:
        rows.append([_to_str(document)])
    return rows


_UNIT_KEYS = ("unit", "units", "ед", "единица", "ед_изм", "единица_измерения")


def _object_to_row(obj: dict, prefix: str = "") -> list[str]:
    row: list[str] = [prefix] if prefix else []
    for key, value in obj.items():
        if isinstance(value, (dict, list)):
            row.append(f"{key}: {json.dumps(value, ensure_ascii=False)}")
        else:
            row.extend([str(key), _to_str(value)])

    # {"value": 1500, "unit": "кВт·ч"} → отдельная ячейка «1500 кВт·ч»
    unit = next((obj[k] for k in obj if str(k).lower() in _UNIT_KEYS and isinstance(obj[k], str)), None)
    if unit:
        for key, value in obj.items():
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                row.append(f"{value} {unit}")
    return row


def _to_str(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "да" if value else "нет"
    return str(value)


def analyze_structure(document: object) -> JsonStructure:
    structure = JsonStructure()
    if isinstance(document, list):
        structure.root_type = "array"
        if document and isinstance(document[0], dict):
            structure.possible_headers = [str(k) for k in document[0].keys()]
    elif isinstance(document, dict):
        structure.root_type = "object"
        structure.possible_headers = [str(k) for k in document.keys()]
        if any(isinstance(v, list) for v in document.values()) and any(
            not isinstance(v, (list, dict)) for v in document.values()
        ):
            structure.root_type = "mixed"

    def walk(node: object, depth: int) -> None:
        structure.depth = max(structure.depth, depth)
        if isinstance(node, list):
            structure.arrays += 1
            for item in node:
                walk(item, depth + 1)
        elif isinstance(node, dict):
            structure.objects += 1
            for value in node.values():
                walk(value, depth + 1)

    walk(document, 0)
    return structure
