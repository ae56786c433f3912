"""Сбор и анализ метрик извлечения.

Каждый обработанный документ даёт одну запись ProcessingMetrics в MetricsStore.
Отсюда же: оценка качества отдельного документа (0-100 с пояснениями),
агрегаты за период и Markdown-отчёт для оператора.
"""
import json
import logging
from dataclasses import asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import pandas as pd

from config import Config
from ingest.metrics_store import MetricsStore
from ingest.models import AggregatedMetrics, ProcessingMetrics, QualityAssessment

logger = logging.getLogger(__name__)

_QUALITY_TIERS = ("high", "medium", "low")
_CATEGORY_FLAGS = (
    "fuel_data_extracted",
    "electricity_data_extracted",
    "thermal_data_extracted",
    "transport_data_extracted",
    "fgas_data_extracted",
    "industrial_processes_extracted",
)


class ExtractionMetricsCollector:
    def __init__(self, store: MetricsStore, config: Optional[Config] = None) -> None:
        self.store = store
        self.config = config or Config.from_env()

    def record_processing(self, metrics: ProcessingMetrics) -> None:
        """Сохраняет запись. Сбой хранилища логируется и не роняет обработку."""
        try:
            self.store.append(metrics)
        except Exception as e:
            logger.warning("Не удалось сохранить метрики %s: %s", metrics.document_id, e)

    def analyze_extraction_quality(self, metrics: ProcessingMetrics) -> QualityAssessment:
        strengths: list[str] = []
        weaknesses: list[str] = []
        recommendations: list[str] = []
        score = 0.0

        # Уверенность: до 30
        if metrics.confidence >= 0.9:
            score += 30
            strengths.append("Высокая уверенность обработки")
        elif metrics.confidence >= 0.7:
            score += 20
            strengths.append("Средняя уверенность обработки")
        else:
            score += 10
            weaknesses.append("Низкая уверенность обработки")
            recommendations.append("Рассмотреть использование других методов обработки")

        # Полнота полей: до 25
        rate = metrics.fields_extracted / max(metrics.fields_expected, 1)
        if rate >= 0.8:
            score += 25
            strengths.append("Хорошее извлечение полей данных")
        elif rate >= 0.5:
            score += 15
        else:
            score += 5
            weaknesses.append("Неполное извлечение полей")
            recommendations.append("Улучшить паттерны извлечения данных")

        # Качество данных: до 20
        if metrics.data_quality == "high":
            score += 20
            strengths.append("Высокое качество извлеченных данных")
        elif metrics.data_quality == "medium":
            score += 12
        else:
            score += 4
            weaknesses.append("Низкое качество извлеченных данных")
            recommendations.append("Проверить точность извлечения")

        # Разнообразие категорий: до 15
        categories = sum(1 for flag in _CATEGORY_FLAGS if getattr(metrics, flag))
        score += categories / len(_CATEGORY_FLAGS) * 15
        if categories >= 4:
            strengths.append("Извлечены разнообразные типы данных")
        elif categories >= 2:
            strengths.append("Извлечены основные типы данных")
        else:
            weaknesses.append("Ограниченное разнообразие извлеченных данных")
            recommendations.append("Расширить паттерны для различных типов данных")

        # Скорость: до 10
        if metrics.processing_time_ms < 2000:
            score += 10
            strengths.append("Быстрая обработка документа")
        elif metrics.processing_time_ms < 5000:
            score += 7
        elif metrics.processing_time_ms < 10000:
            score += 4
        else:
            score += 1
            weaknesses.append("Медленная обработка документа")
            recommendations.append("Оптимизировать производительность обработки")

        if metrics.errors:
            score -= len(metrics.errors) * 2
            weaknesses.append(f"Обнаружены ошибки: {len(metrics.errors)}")
            recommendations.append("Устранить ошибки обработки")

        if metrics.fallback_attempts > 0:
            score -= metrics.fallback_attempts
            weaknesses.append("Потребовались попытки fallback")
            recommendations.append("Улучшить основной метод обработки")

        return QualityAssessment(
            score=int(round(max(0.0, min(100.0, score)))),
            strengths=strengths,
            weaknesses=weaknesses,
            recommendations=recommendations,
        )

    def calculate_aggregated_metrics(
        self, period_days: Optional[int] = None, now: Optional[datetime] = None
    ) -> AggregatedMetrics:
        """Агрегаты по записям с start_time в [now - period_days, now]."""
        period_days = period_days if period_days is not None else self.config.metrics_period_days
        now = now or datetime.now()
        start = now - timedelta(days=period_days)
        records = self.store.fetch_since(start.timestamp() * 1000, now.timestamp() * 1000)

        result = AggregatedMetrics(
            data_quality_distribution={tier: 0 for tier in _QUALITY_TIERS},
            period_start=start.isoformat(),
            period_end=now.isoformat(),
        )
        if not records:
            return result

        df = pd.DataFrame([asdict(r) for r in records])
        total = len(df)
        successes = int(df["extraction_success"].astype(bool).sum())

        result.total_documents = total
        result.successful_extractions = successes
        result.failed_extractions = total - successes
        result.extraction_success_rate = successes / total

        result.avg_processing_time_ms = float(df["processing_time_ms"].mean())
        result.median_processing_time_ms = float(df["processing_time_ms"].median())
        result.avg_confidence = float(df["confidence"].mean())
        result.avg_fields_extracted = float(df["fields_extracted"].mean())
        result.avg_fields_expected = float(df["fields_expected"].mean())

        result.processing_methods = _histogram(df["processing_method"])
        result.parsers_used = _histogram(df["parser_used"].fillna("none"))
        for tier, count in _histogram(df["data_quality"]).items():
            result.data_quality_distribution[tier] = count

        result.fuel_extraction_rate = float((df["fuel_data_extracted"] > 0).mean())
        result.electricity_extraction_rate = float(df["electricity_data_extracted"].astype(bool).mean())
        result.thermal_extraction_rate = float(df["thermal_data_extracted"].astype(bool).mean())
        result.transport_extraction_rate = float(df["transport_data_extracted"].astype(bool).mean())

        # Выбросы усредняются по документам, где они посчитаны
        result.avg_total_co2 = _mean_or_zero(df["total_co2_calculated"])
        result.avg_base_emissions = _mean_or_zero(df["base_emissions"])
        result.documents_with_fgas = int(df["fgas_data_extracted"].astype(bool).sum())
        result.documents_with_industrial_processes = int(df["industrial_processes_extracted"].astype(bool).sum())

        result.avg_synonyms_applied = float(df["synonyms_applied"].mean())
        result.avg_fields_normalized = float(df["fields_normalized"].mean())
        return result

    def save_aggregated_metrics(
        self, aggregated: AggregatedMetrics, output_dir: Path, filename: Optional[str] = None
    ) -> Path:
        output_dir.mkdir(parents=True, exist_ok=True)
        name = filename or f"aggregated_metrics_{datetime.now():%Y-%m-%d}.json"
        path = output_dir / name
        path.write_text(json.dumps(asdict(aggregated), ensure_ascii=False, indent=2), encoding="utf-8")
        logger.info("Агрегированные метрики сохранены: %s", path)
        return path

    def generate_quality_report(self, period_days: Optional[int] = None, now: Optional[datetime] = None) -> str:
        a = self.calculate_aggregated_metrics(period_days, now)
        start = datetime.fromisoformat(a.period_start)
        end = datetime.fromisoformat(a.period_end)

        lines = [
            "# Отчет о качестве извлечения данных",
            "",
            f"**Период:** {start:%d.%m.%Y} - {end:%d.%m.%Y}",
            "",
            "## Общая статистика",
            f"- **Всего документов:** {a.total_documents}",
            f"- **Успешных извлечений:** {a.successful_extractions}",
            f"- **Неудачных извлечений:** {a.failed_extractions}",
            f"- **Коэффициент успеха:** {a.extraction_success_rate * 100:.1f}%",
            "",
            "## Производительность",
            f"- **Среднее время обработки:** {a.avg_processing_time_ms:.0f}мс",
            f"- **Медианное время обработки:** {a.median_processing_time_ms:.0f}мс",
            f"- **Средняя уверенность:** {a.avg_confidence * 100:.1f}%",
            f"- **Среднее количество полей:** {a.avg_fields_extracted:.1f} из {a.avg_fields_expected:.1f}",
            "",
            "## Методы обработки",
        ]
        for method, count in a.processing_methods.items():
            lines.append(f"- **{method}:** {count} ({count / a.total_documents * 100:.1f}%)")
        lines += [
            "",
            "## Парсеры",
        ]
        for parser, count in a.parsers_used.items():
            lines.append(f"- **{parser}:** {count}")
        lines += [
            "",
            "## Качество данных",
            f"- **Высокое качество:** {a.data_quality_distribution.get('high', 0)} документов",
            f"- **Среднее качество:** {a.data_quality_distribution.get('medium', 0)} документов",
            f"- **Низкое качество:** {a.data_quality_distribution.get('low', 0)} документов",
            "",
            "## Извлечение по типам данных",
            f"- **Топливо:** {a.fuel_extraction_rate * 100:.1f}%",
            f"- **Электроэнергия:** {a.electricity_extraction_rate * 100:.1f}%",
            f"- **Тепловая энергия:** {a.thermal_extraction_rate * 100:.1f}%",
            f"- **Транспорт:** {a.transport_extraction_rate * 100:.1f}%",
            "",
            "## Выбросы",
            f"- **Среднее количество CO2:** {a.avg_total_co2:.2f} кг",
            f"- **Средние базовые выбросы:** {a.avg_base_emissions:.2f} кг",
            f"- **Документы с F-газами:** {a.documents_with_fgas}",
            f"- **Документы с промпроцессами:** {a.documents_with_industrial_processes}",
            "",
            "## Нормализация данных",
            f"- **Среднее количество синонимов:** {a.avg_synonyms_applied:.1f}",
            f"- **Нормализованных полей:** {a.avg_fields_normalized:.1f}",
            "",
        ]
        return "\n".join(lines)


def _histogram(series: pd.Series) -> dict[str, int]:
    return {str(k): int(v) for k, v in series.value_counts(sort=False).items()}


def _mean_or_zero(series: pd.Series) -> float:
    values = pd.to_numeric(series, errors="coerce").dropna()
    return float(values.mean()) if not values.empty else 0.0
