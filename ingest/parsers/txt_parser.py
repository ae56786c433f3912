"""Парсер простого текста. Он же последний запасной вариант для текстовых форматов."""
import logging

from ingest.encoding import decode_text, detect_encoding
from ingest.models import ParsedDocumentData, ParseOptions
from ingest.parsers.base import BaseParser, ParseError, apply_max_rows, quality_bonus
from ingest.units import assess_data_quality, find_energy_mentions

logger = logging.getLogger(__name__)


class TxtParser(BaseParser):
    name = "TxtParser"
    document_type = "text_document"
    supported_extensions = (".txt", ".text", ".log", ".md")
    supported_mime_types = ("text/plain", "text/markdown")

    def _parse(self, data: bytes, options: ParseOptions) -> ParsedDocumentData:
        encoding = detect_encoding(data, options.encoding)
        text = decode_text(data, encoding).lstrip("\ufeff").replace("\r\n", "\n")
        if "\x00" in text[:1024]:
            raise ParseError("Файл похож на бинарный, а не на текст")

        lines = [" ".join(line.split()) for line in text.split("\n")]
        rows = [[line] for line in lines if line or not options.skip_empty_rows]
        rows = apply_max_rows(rows, options)
        if not any(row[0] for row in rows):
            raise ParseError("Пустой текстовый файл")

        extraction = self._extract_units(rows, options)
        quality = assess_data_quality(len(extraction.units_found), len(rows))
        mentions = find_energy_mentions(text) if options.search_russian_units else []

        confidence = 0.5
        confidence += quality_bonus(quality, 0.3, 0.2, 0.1)
        confidence += min(len(extraction.units_found) * 0.02, 0.2)
        confidence += min(len(mentions) * 0.01, 0.1)
        confidence = min(confidence, 0.95)

        return self._build(
            confidence=confidence,
            extraction=extraction,
            rows=rows,
            encoding=encoding,
            format_detected="TXT",
            text=text.strip(),
            data_quality=quality,
            extra={"energy_mentions": len(mentions)},
        )
