"""Отбор исходных документов в папке: поддерживаемые форматы, лимит размера, SHA-256."""
import hashlib
import logging
from collections import Counter
from pathlib import Path
from typing import Optional

from config import Config
from ingest.models import FileInfo

logger = logging.getLogger(__name__)

_HASH_CHUNK = 64 * 1024


def compute_file_hash(file_path: Path) -> str:
    digest = hashlib.sha256()
    with file_path.open("rb") as stream:
        for block in iter(lambda: stream.read(_HASH_CHUNK), b""):
            digest.update(block)
    return digest.hexdigest()


def scan_directory(directory: Path, config: Config) -> list[FileInfo]:
    """
    Собирает документы из папки и всех подпапок, сортирует по имени.

    Временные файлы офиса (~$...) и скрытые файлы не берутся. Слишком
    большие файлы пропускаются с предупреждением в логе.

    Raises:
        FileNotFoundError: папки нет или это не папка
    """
    if not directory.is_dir():
        reason = "Путь не является директорией" if directory.exists() else "Директория не найдена"
        raise FileNotFoundError(f"{reason}: {directory}")

    found = [
        info for info in (_to_file_info(p, config) for p in directory.rglob("*"))
        if info is not None
    ]
    found.sort(key=lambda info: info.filename)

    by_type = Counter(info.extension.lstrip(".").upper() for info in found)
    summary = ", ".join(f"{n} {ext}" for ext, n in sorted(by_type.items())) or "0"
    logger.info("К обработке %d файлов (%s)", len(found), summary)
    return found


def _to_file_info(path: Path, config: Config) -> Optional[FileInfo]:
    if not path.is_file() or path.name.startswith(("~$", ".")):
        return None
    extension = path.suffix.lower()
    if extension not in config.supported_extensions:
        return None

    size = path.stat().st_size
    if size > config.max_file_size_bytes:
        logger.warning(
            "Пропуск %s: %.1f МБ при лимите %d МБ",
            path.name, size / (1024 * 1024), config.max_file_size_mb,
        )
        return None

    return FileInfo(
        path=path,
        filename=path.name,
        extension=extension,
        size_bytes=size,
        file_hash=compute_file_hash(path),
    )
