"""Определение кодировки текстовых файлов.

Русские выгрузки из 1С и старых учётных систем часто приходят в cp1251
или cp866, поэтому после UTF-8 проверяются кириллические кодовые страницы.
"""
import codecs
import logging
import re

import chardet

logger = logging.getLogger(__name__)

# Метка кодировки → имя кодека Python
CODECS = {
    "utf8": "utf-8",
    "utf8-sig": "utf-8-sig",
    "utf16le": "utf-16-le",
    "utf16be": "utf-16-be",
    "cp1251": "cp1251",
    "cp866": "cp866",
}

# Ответы chardet → наши метки
_CHARDET_NAMES = {
    "utf-8": "utf8",
    "ascii": "utf8",
    "windows-1251": "cp1251",
    "ibm866": "cp866",
    "cp866": "cp866",
}

_CYRILLIC_RE = re.compile(r"[А-Яа-яЁё]")
# Частые строчные буквы русского текста: по их доле отличаем cp1251 от cp866
_COMMON_LOWER = set("оеаинтср")


def detect_encoding(data: bytes, hint: str = "auto") -> str:
    """Возвращает метку кодировки: utf8 | utf8-sig | utf16le | utf16be | cp1251 | cp866.

    hint != "auto" возвращается как есть (явный выбор пользователя).
    """
    if hint and hint != "auto":
        return hint
    if not data:
        return "utf8"

    if data.startswith(b"\xef\xbb\xbf"):
        return "utf8-sig"
    if data.startswith(b"\xff\xfe"):
        return "utf16le"
    if data.startswith(b"\xfe\xff"):
        return "utf16be"

    # final=False: выборка может обрываться посреди многобайтного символа
    try:
        codecs.getincrementaldecoder("utf-8")().decode(data, final=False)
        return "utf8"
    except UnicodeDecodeError:
        pass

    detected = chardet.detect(data[:10240])
    name = (detected.get("encoding") or "").lower()
    confidence = detected.get("confidence") or 0.0
    logger.debug("chardet: %s (%.2f)", name, confidence)
    if confidence >= 0.5 and name in _CHARDET_NAMES and _CHARDET_NAMES[name] != "utf8":
        return _CHARDET_NAMES[name]

    return _guess_cyrillic_codepage(data)


def _guess_cyrillic_codepage(data: bytes) -> str:
    """Выбирает между cp1251 и cp866 по доле частых русских букв."""
    best, best_score = "utf8", 0.0
    for label in ("cp1251", "cp866"):
        text = data.decode(CODECS[label], errors="replace")
        letters = _CYRILLIC_RE.findall(text)
        if not letters:
            continue
        common = sum(1 for ch in letters if ch in _COMMON_LOWER)
        score = common / len(letters)
        if score > best_score:
            best, best_score = label, score
    return best


def decode_text(data: bytes, encoding: str) -> str:
    """Декодирует байты по метке кодировки; битые байты заменяются."""
    codec = CODECS.get(encoding, encoding)
    try:
        return data.decode(codec, errors="replace")
    except LookupError:
        logger.warning("Неизвестная кодировка %s, читаю как UTF-8", encoding)
        return data.decode("utf-8", errors="replace")

