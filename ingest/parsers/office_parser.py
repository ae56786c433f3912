"""Парсер офисных документов: DOCX, PPTX, ODT/ODP/ODS.

DOCX читается через python-docx (параграфы и строки таблиц). Для PPTX и
OpenDocument текст достаётся из XML внутри ZIP-контейнера. Полученный текст
делится на секции по пустым строкам, каждой секции приписывается роль
(заголовок, таблица, список, абзац), после чего идёт общий поиск единиц.
"""
import io
import logging
import re
import xml.etree.ElementTree as ET
import zipfile
from collections import Counter

from docx import Document

from ingest.models import ParsedDocumentData, ParseOptions
from ingest.parsers.base import BaseParser, ParseError, apply_max_rows, quality_bonus
from ingest.units import assess_data_quality, find_energy_mentions

logger = logging.getLogger(__name__)

_OLE_MAGIC = b"\xd0\xcf\x11\xe0"

_NS_A = "{http://schemas.openxmlformats.org/drawingml/2006/main}"
_NS_TEXT = "{urn:oasis:names:tc:opendocument:xmlns:text:1.0}"
_NS_TABLE = "{urn:oasis:names:tc:opendocument:xmlns:table:1.0}"

_SLIDE_RE = re.compile(r"^ppt/slides/slide(\d+)\.xml$")
_LIST_RE = re.compile(r"^\s*(?:[-•*–]|\d+[.)]\s)")
_NUMBERED_HEADING_RE = re.compile(r"^(?:\d+(?:\.\d+)*\.?\s+|глава\s|раздел\s)", re.IGNORECASE)

# Надбавка к уверенности по типу контейнера: таблицы структурнее текста
FORMAT_BONUS = {"ods": 0.1, "docx": 0.05, "odt": 0.05, "pptx": 0.0, "odp": 0.0}

_ODF_MIMETYPES = {
    "application/vnd.oasis.opendocument.text": "odt",
    "application/vnd.oasis.opendocument.presentation": "odp",
    "application/vnd.oasis.opendocument.spreadsheet": "ods",
}


class OfficeParser(BaseParser):
    name = "OfficeParser"
    document_type = "office_document"
    supported_extensions = (".docx", ".pptx", ".odt", ".odp", ".ods")
    supported_mime_types = (
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "application/vnd.oasis.opendocument.text",
        "application/vnd.oasis.opendocument.presentation",
        "application/vnd.oasis.opendocument.spreadsheet",
    )

    def _parse(self, data: bytes, options: ParseOptions) -> ParsedDocumentData:
        if data.startswith(_OLE_MAGIC):
            raise ParseError("Старые форматы .doc/.ppt/.xls не поддерживаются, сохраните файл в DOCX")
        if not zipfile.is_zipfile(io.BytesIO(data)):
            raise ParseError("Файл не является офисным ZIP-контейнером")

        kind, blocks = _read_container(data)
        text = "\n\n".join(b for b in blocks if b.strip())
        sections = split_sections(text)
        if not sections:
            raise ParseError(f"В документе {kind.upper()} нет текста")

        rows = apply_max_rows([[section] for section in sections], options)
        section_types = Counter(detect_section_type(row[0]) for row in rows)

        extraction = self._extract_units(rows, options)
        quality = assess_data_quality(len(extraction.units_found), len(rows))
        mentions = find_energy_mentions(text)

        confidence = 0.5
        confidence += quality_bonus(quality, 0.3, 0.2, 0.1)
        confidence += min(len(extraction.units_found) * 0.02, 0.2)
        confidence += FORMAT_BONUS.get(kind, 0.0)
        confidence = min(confidence, 0.95)

        return self._build(
            confidence=confidence,
            extraction=extraction,
            rows=rows,
            encoding="utf8",
            format_detected=kind.upper(),
            text=text,
            data_quality=quality,
            extra={
                "container": kind,
                "sections": dict(section_types),
                "energy_mentions": len(mentions),
                "energy_categories": sorted({m.category for m in mentions}),
            },
        )


def _read_container(data: bytes) -> tuple[str, list[str]]:
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        names = archive.namelist()
        if "word/document.xml" in names:
            return "docx", _docx_blocks(data)
        if any(_SLIDE_RE.match(n) for n in names):
            return "pptx", _pptx_blocks(archive, names)
        if "content.xml" in names:
            mimetype = archive.read("mimetype").decode("ascii", "ignore").strip() if "mimetype" in names else ""
            kind = _ODF_MIMETYPES.get(mimetype, "odt")
            return kind, _odf_blocks(archive.read("content.xml"))
    raise ParseError("Неизвестный офисный контейнер")


def _docx_blocks(data: bytes) -> list[str]:
    """Параграфы, затем строки таблиц (ячейки через « | »)."""
    doc = Document(io.BytesIO(data))
    blocks = [p.text.strip() for p in doc.paragraphs if p.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            cells = []
            for cell in row.cells:
                value = cell.text.strip()
                # Объединённые ячейки python-docx отдаёт повторно
                if value and (not cells or cells[-1] != value):
                    cells.append(value)
            if cells:
                blocks.append(" | ".join(cells))
    return blocks


def _pptx_blocks(archive: zipfile.ZipFile, names: list[str]) -> list[str]:
    slides = []
    for name in names:
        match = _SLIDE_RE.match(name)
        if match:
            slides.append((int(match.group(1)), name))
    slides.sort()
    blocks = []
    for _, name in slides:
        root = ET.fromstring(archive.read(name))
        paragraphs = []
        for p in root.iter(f"{_NS_A}p"):
            line = "".join(t.text or "" for t in p.iter(f"{_NS_A}t")).strip()
            if line:
                paragraphs.append(line)
        if paragraphs:
            blocks.append("\n".join(paragraphs))
    return blocks


def _odf_blocks(content: bytes) -> list[str]:
    root = ET.fromstring(content)
    blocks: list[str] = []

    def walk(element: ET.Element) -> None:
        if element.tag == f"{_NS_TABLE}table-row":
            cells = [
                " ".join("".join(cell.itertext()).split())
                for cell in element
                if cell.tag == f"{_NS_TABLE}table-cell"
            ]
            cells = [c for c in cells if c]
            if cells:
                blocks.append(" | ".join(cells))
            return
        if element.tag in (f"{_NS_TEXT}p", f"{_NS_TEXT}h"):
            line = " ".join("".join(element.itertext()).split())
            if line:
                blocks.append(line)
            return
        for child in element:
            walk(child)

    walk(root)
    return blocks


def split_sections(text: str) -> list[str]:
    return [s.strip() for s in re.split(r"\n\s*\n", text) if s.strip()]


def detect_section_type(section: str) -> str:
    """Роль секции: heading | table | list | paragraph | fragment."""
    if "|" in section or "\t" in section:
        return "table"
    if _LIST_RE.match(section):
        return "list"
    first_line = section.split("\n", 1)[0]
    if len(section) < 80 and "\n" not in section and not section.endswith((".", ",", ";")):
        if _NUMBERED_HEADING_RE.match(first_line) or first_line.isupper() or first_line.istitle():
            return "heading"
    if len(section) >= 100 or section.endswith((".", "!", "?")):
        return "paragraph"
    return "fragment"
