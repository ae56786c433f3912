"""Хранилище метрик обработки в SQLite.

Одна запись на документ, только добавление. Полная запись лежит в JSON,
ключевые поля продублированы колонками для выборок по времени и статусу.
"""
import json
import logging
import sqlite3
import threading
from dataclasses import asdict, fields
from pathlib import Path
from typing import Optional

from ingest.models import ProcessingMetrics

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS processing_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id TEXT NOT NULL,
    file_type TEXT,
    processing_method TEXT,
    extraction_success INTEGER,
    start_time REAL NOT NULL,   -- epoch ms
    payload TEXT NOT NULL,      -- JSON ProcessingMetrics
    recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_metrics_start ON processing_metrics(start_time);
CREATE INDEX IF NOT EXISTS idx_metrics_document ON processing_metrics(document_id);
"""

_KNOWN_FIELDS = {f.name for f in fields(ProcessingMetrics)}


class MetricsStore:
    def __init__(self, db_path: Path) -> None:
        """Открывает (или создаёт) БД. Путь ":memory:" оставляет её в памяти."""
        self.db_path = db_path
        self._lock = threading.Lock()
        if str(db_path) != ":memory:":
            db_path.parent.mkdir(parents=True, exist_ok=True)

        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(_SCHEMA)
        logger.info("Хранилище метрик открыто: %s", db_path)

    def append(self, metrics: ProcessingMetrics) -> int:
        """Добавляет запись. Возвращает её id. Thread-safe."""
        payload = json.dumps(asdict(metrics), ensure_ascii=False)
        with self._lock:
            cursor = self.conn.execute(
                """
                INSERT INTO processing_metrics
                (document_id, file_type, processing_method, extraction_success, start_time, payload)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    metrics.document_id,
                    metrics.file_type,
                    metrics.processing_method,
                    int(metrics.extraction_success),
                    metrics.start_time,
                    payload,
                ),
            )
            self.conn.commit()
        logger.debug("Метрики сохранены: %s (%s)", metrics.document_id, metrics.processing_method)
        return cursor.lastrowid

    def fetch_since(self, start_ms: float, end_ms: Optional[float] = None) -> list[ProcessingMetrics]:
        """Записи с start_time в [start_ms, end_ms], по возрастанию времени."""
        query = "SELECT payload FROM processing_metrics WHERE start_time >= ?"
        params: list = [start_ms]
        if end_ms is not None:
            query += " AND start_time <= ?"
            params.append(end_ms)
        query += " ORDER BY start_time, id"

        with self._lock:
            rows = self.conn.execute(query, params).fetchall()

        records = []
        for row in rows:
            try:
                data = json.loads(row["payload"])
            except (json.JSONDecodeError, TypeError):
                data = None
            if not isinstance(data, dict):
                logger.warning("Повреждённая запись метрик пропущена")
                continue
            try:
                records.append(ProcessingMetrics(**{k: v for k, v in data.items() if k in _KNOWN_FIELDS}))
            except TypeError as e:
                logger.warning("Неполная запись метрик %s пропущена: %s", data.get("document_id"), e)
        return records

    def count(self) -> int:
        with self._lock:
            row = self.conn.execute("SELECT COUNT(*) AS n FROM processing_metrics").fetchone()
        return row["n"] or 0

    def close(self) -> None:
        self.conn.close()
        logger.info("Хранилище метрик закрыто")

    def __enter__(self) -> "MetricsStore":
        return self

    def __exit__(self, *args) -> None:
        self.close()
