"""Парсер RTF.

Разметка снимается тремя способами по очереди:
1. собственный снятель управляющих слов (stripper);
2. библиотека striprtf;
3. внешняя утилита unrtf.

Собственный снятель стоит первым: на русских документах со смешанными
кодировками он давал более чистый текст, чем структурные разборщики.
Это наблюдение, а не доказанный факт (см. DESIGN.md).
"""
import codecs
import logging
import re
import shutil
import subprocess
import tempfile
from pathlib import Path

from striprtf.striprtf import rtf_to_text

from ingest.encoding import decode_text, detect_encoding
from ingest.fallback import try_in_order
from ingest.models import ParsedDocumentData, ParseOptions
from ingest.parsers.base import BaseParser, ParseError, apply_max_rows, quality_bonus
from ingest.units import assess_data_quality

logger = logging.getLogger(__name__)

MAX_SIZE_BYTES = 50 * 1024 * 1024

# Группы-«назначения», текст которых не является содержимым документа
_DESTINATIONS = (
    "fonttbl", "colortbl", "stylesheet", "info", "pict", "listtable",
    "listoverridetable", "rsidtbl", "generator", "xmlnstbl", "themedata",
    "colorschememapping", "latentstyles", "datastore", "filetbl", "revtbl",
)
_DEST_RE = re.compile(r"\{\\(?:\*|(?:%s)\b)" % "|".join(_DESTINATIONS))
_CODEPAGE_RE = re.compile(r"\\ansicpg(\d+)")
_UNICODE_RE = re.compile(r"\\u(-?\d+) ?(?:\\'[0-9a-fA-F]{2}|\?)?")
_HEX_RE = re.compile(r"\\'([0-9a-fA-F]{2})")
_BREAK_RE = re.compile(r"\\(?:par|line|row)\b ?")
_TAB_RE = re.compile(r"\\(?:tab|cell)\b ?")
_CONTROL_WORD_RE = re.compile(r"\\[a-zA-Z]+-?\d* ?")
_CONTROL_SYMBOL_RE = re.compile(r"\\(.)")

# Заглушки для экранированных символов на время снятия фигурных скобок
_BACKSLASH, _LBRACE, _RBRACE = "\x02", "\x00", "\x01"


class RtfParser(BaseParser):
    name = "RtfParser"
    document_type = "text_document"
    supported_extensions = (".rtf",)
    supported_mime_types = ("application/rtf", "text/rtf")

    def __init__(self, use_unrtf: bool = True) -> None:
        self.use_unrtf = use_unrtf

    def _parse(self, data: bytes, options: ParseOptions) -> ParsedDocumentData:
        if len(data) > MAX_SIZE_BYTES:
            raise ParseError(f"RTF больше {MAX_SIZE_BYTES // (1024 * 1024)} МБ")
        encoding = detect_encoding(data, options.encoding)
        raw = decode_text(data, encoding)
        if not raw.lstrip().startswith("{\\rtf"):
            raise ParseError("Файл не является RTF (нет заголовка {\\rtf1)")

        codepage = _codepage(raw)
        strategies = [
            ("stripper", lambda: strip_rtf(raw, codepage)),
            ("striprtf", lambda: rtf_to_text(raw, encoding=codepage, errors="replace")),
        ]
        if self.use_unrtf:
            strategies.append(("unrtf", lambda: _run_unrtf(data)))

        outcome = try_in_order(
            strategies,
            accept=lambda text: None if text and text.strip() else "пустой текст",
        )
        if not outcome.success:
            raise ParseError("Не удалось извлечь текст из RTF: " + "; ".join(outcome.errors))

        text = _clean_lines(outcome.value)
        rows = apply_max_rows([[line] for line in text.split("\n") if line], options)

        extraction = self._extract_units(rows, options)
        quality = assess_data_quality(len(extraction.units_found), len(rows))

        confidence = 0.5
        confidence += quality_bonus(quality, 0.3, 0.2, 0.1)
        confidence += min(len(extraction.units_found) * 0.02, 0.2)
        confidence = min(confidence, 0.95)

        logger.debug("RTF: текст извлечён методом %s", outcome.succeeded_with)
        return self._build(
            confidence=confidence,
            extraction=extraction,
            rows=rows,
            encoding=codepage,
            format_detected="RTF",
            text=text,
            data_quality=quality,
            extra={
                "rtf_method": outcome.succeeded_with,
                "rtf_attempts": [a.name for a in outcome.attempts],
            },
        )


def strip_rtf(rtf: str, codepage: str = "cp1251") -> str:
    """Снимает RTF-разметку регулярками, не строя дерево документа."""
    text = rtf.replace("\\\\", _BACKSLASH).replace("\\{", _LBRACE).replace("\\}", _RBRACE)
    text = _drop_destinations(text)

    def _unicode(match: re.Match) -> str:
        code = int(match.group(1))
        return chr(code + 65536 if code < 0 else code)

    def _hex(match: re.Match) -> str:
        return bytes([int(match.group(1), 16)]).decode(codepage, errors="replace")

    text = _UNICODE_RE.sub(_unicode, text)
    text = _HEX_RE.sub(_hex, text)
    text = _BREAK_RE.sub("\n", text)
    text = _TAB_RE.sub("\t", text)
    text = _CONTROL_WORD_RE.sub(" ", text)
    text = _CONTROL_SYMBOL_RE.sub(_control_symbol, text)
    text = text.replace("{", "").replace("}", "")
    text = text.replace(_BACKSLASH, "\\").replace(_LBRACE, "{").replace(_RBRACE, "}")
    return _clean_lines(text)


def _control_symbol(match: re.Match) -> str:
    symbol = match.group(1)
    if symbol == "~":
        return " "
    if symbol == "-":
        return ""
    if symbol == "_":
        return "-"
    if symbol in ("\n", "\r"):
        return "\n"
    return symbol


def _drop_destinations(text: str) -> str:
    """Удаляет группы {\\fonttbl ...}, {\\*\\...} и т.п. с учётом вложенности."""
    out: list[str] = []
    i, n = 0, len(text)
    while i < n:
        if text[i] == "{" and _DEST_RE.match(text, i):
            depth = 0
            j = i
            while j < n:
                if text[j] == "{":
                    depth += 1
                elif text[j] == "}":
                    depth -= 1
                    if depth == 0:
                        break
                j += 1
            i = j + 1
            continue
        out.append(text[i])
        i += 1
    return "".join(out)


def _codepage(raw: str) -> str:
    match = _CODEPAGE_RE.search(raw[:2048])
    name = f"cp{match.group(1)}" if match else "cp1251"
    try:
        codecs.lookup(name)
    except LookupError:
        return "cp1251"
    return name


def _clean_lines(text: str) -> str:
    lines = (" ".join(line.split()) for line in text.replace("\r", "").split("\n"))
    return "\n".join(line for line in lines if line)


def _run_unrtf(data: bytes) -> str:
    if shutil.which("unrtf") is None:
        raise RuntimeError("утилита unrtf не установлена")
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "document.rtf"
        path.write_bytes(data)
        res = subprocess.run(
            ["unrtf", "--text", "--nopict", str(path)],
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            timeout=30,
        )
    out = res.stdout.decode("utf-8", errors="replace")
    # unrtf печатает служебный заголовок строками «###»
    return "\n".join(line for line in out.splitlines() if not line.startswith("###"))
