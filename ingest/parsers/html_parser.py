"""Парсер HTML (BeautifulSoup).

Таблицы разбираются первыми (строка → ячейки через « | ») и удаляются из
дерева, чтобы их текст не посчитался второй раз при построчном проходе.
"""
import logging

from bs4 import BeautifulSoup

from ingest.encoding import decode_text, detect_encoding
from ingest.models import ParsedDocumentData, ParseOptions
from ingest.parsers.base import BaseParser, ParseError, apply_max_rows, quality_bonus
from ingest.units import assess_data_quality

logger = logging.getLogger(__name__)

MIN_LINE_LENGTH = 5


class HtmlParser(BaseParser):
    name = "HtmlParser"
    document_type = "web_page"
    supported_extensions = (".html", ".htm")
    supported_mime_types = ("text/html",)

    def _parse(self, data: bytes, options: ParseOptions) -> ParsedDocumentData:
        encoding = detect_encoding(data, options.encoding)
        soup = BeautifulSoup(decode_text(data, encoding), "html.parser")

        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()

        rows: list[list[str]] = []
        tables = soup.find_all("table")
        for table in tables:
            for tr in table.find_all("tr"):
                cells = [c.get_text(" ", strip=True) for c in tr.find_all(["td", "th"])]
                cells = [c for c in cells if c]
                if cells:
                    rows.append([" | ".join(cells)])
            table.decompose()
        table_rows = len(rows)

        body = soup.body or soup
        for line in body.get_text("\n").split("\n"):
            cleaned = " ".join(line.split())
            if len(cleaned) > MIN_LINE_LENGTH:
                rows.append([cleaned])

        if not rows:
            raise ParseError("В HTML нет текстового содержимого")
        rows = apply_max_rows(rows, options)

        extraction = self._extract_units(rows, options)
        quality = assess_data_quality(len(extraction.units_found), len(rows))

        confidence = 0.5
        confidence += quality_bonus(quality, 0.3, 0.2, 0.1)
        confidence += min(len(extraction.units_found) * 0.02, 0.2)
        if len(rows) > 20:
            confidence += 0.1
        if len(rows) > 100:
            confidence += 0.1
        confidence = min(confidence, 0.9)

        title = soup.title.get_text(strip=True) if soup.title else ""
        return self._build(
            confidence=confidence,
            extraction=extraction,
            rows=rows,
            encoding=encoding,
            format_detected="HTML",
            data_quality=quality,
            extra={"tables": len(tables), "table_rows": table_rows, "title": title},
        )
