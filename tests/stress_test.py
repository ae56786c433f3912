"""
Стресс-тестирование пайплайна извлечения энергетических данных.

Покрывает:
- Парсеры (большие файлы, мусор на входе, смешанные кодировки)
- Нечёткий поиск (опечатки, OCR-замены, производительность)
- Контекстный анализ (пакеты терминов, границы скора)
- Нагрузку (конкурентная запись метрик, объём данных)
- Интеграцию (E2E прогон папки с десятками документов)

Запуск:
    pytest tests/stress_test.py -v -s
    pytest tests/stress_test.py -v -k "Fuzzy"
    pytest tests/stress_test.py -v -m "not slow"
"""

import random
import threading
import time
from datetime import datetime

import pytest

from config import Config
from controller import Controller
from ingest.contextual_analysis import ContextualAnalysisService
from ingest.fuzzy_matching import FuzzyConfig, FuzzyMatchingService
from ingest.metrics import ExtractionMetricsCollector
from ingest.metrics_store import MetricsStore
from ingest.models import ProcessingMetrics
from ingest.parser_factory import ParserFactory
from ingest.parsers.csv_parser import CsvTsvParser
from ingest.parsers.txt_parser import TxtParser
from ingest.synonyms import SynonymDictionary


# ============================================================
#  МАРКЕРЫ
# ============================================================

slow = pytest.mark.slow


# ============================================================
#  ФИКСТУРЫ И ГЕНЕРАТОРЫ
# ============================================================


@pytest.fixture
def offline_config(tmp_path):
    return Config(
        metrics_db_path=tmp_path / "metrics.db",
        use_external_model=False,
        ocr_enabled=False,
    )


def make_invoice(i: int) -> str:
    """Текст счёта с электроэнергией, топливом и газом."""
    return (
        f"Счёт № {i} за март 2024\n"
        f"Электроэнергия: {1000 + i} кВт·ч\n"
        f"Дизельное топливо {200 + i} л\n"
        f"Природный газ {50 + i} м3\n"
    )


def make_csv(rows: int) -> str:
    lines = ["Ресурс;Количество;Единица"]
    resources = [("Электроэнергия", "кВт·ч"), ("Бензин", "л"), ("Газ", "м3"), ("Пробег", "км")]
    for i in range(rows):
        name, unit = resources[i % len(resources)]
        lines.append(f"{name};{100 + i};{unit}")
    return "\n".join(lines) + "\n"


def make_metrics(i: int) -> ProcessingMetrics:
    start = datetime.now().timestamp() * 1000 - i
    return ProcessingMetrics(
        document_id=f"doc_{i:04d}",
        file_path=f"/tmp/doc_{i:04d}.txt",
        file_size=100 + i,
        file_type="txt",
        processing_method="parser",
        start_time=start,
        end_time=start + 10,
        processing_time_ms=10.0,
        parser_used="TxtParser",
        confidence=0.8,
        fields_extracted=2,
        extraction_success=True,
        data_quality="medium",
    )


# ============================================================
#  ТЕСТЫ ПАРСЕРОВ
# ============================================================


class TestParserStress:
    """Объём, мусор и кодировки."""

    def test_csv_10000_rows(self):
        """10 000 строк CSV → все строки прочитаны, единицы найдены."""
        result = CsvTsvParser().parse(make_csv(10_000).encode("utf-8"))
        assert result.success
        data = result.data.extracted_data
        assert data.total_rows == 10_000
        assert len(data.electricity_data) == 2500
        assert len(data.transport_data) == 2500

    def test_csv_max_rows_cap(self):
        """Лимит строк из конфига фабрики режет вход."""
        factory = ParserFactory(config=Config(max_rows=100, ocr_enabled=False))
        outcome = factory.parse_file("большой.csv", make_csv(5000).encode("utf-8"))
        assert outcome.result.success
        assert outcome.result.data.extracted_data.total_rows <= 100

    @pytest.mark.parametrize("encoding", ["utf-8", "cp1251"])
    def test_txt_encodings(self, encoding):
        """Один и тот же счёт в разных кодировках даёт одно и то же число."""
        result = TxtParser().parse(make_invoice(1).encode(encoding))
        assert result.success
        assert result.data.extracted_data.electricity_data[0].value == 1001

    def test_random_bytes_never_raise(self):
        """Случайные байты под всеми расширениями: без исключений."""
        rng = random.Random(42)
        factory = ParserFactory(config=Config(ocr_enabled=False))
        extensions = ["csv", "txt", "json", "xml", "html", "rtf", "pdf", "docx", "xlsx", "bin"]
        for i in range(100):
            data = bytes(rng.getrandbits(8) for _ in range(rng.randint(0, 2048)))
            outcome = factory.parse_file(f"file_{i}.{extensions[i % len(extensions)]}", data)
            assert outcome.result.success in (True, False)
            if not outcome.result.success:
                assert outcome.result.error

    def test_huge_single_line(self):
        """Текст в одну строку на 1 МБ не роняет парсер."""
        line = ("расход 12 кВт·ч; " * 60_000).encode("utf-8")
        result = TxtParser().parse(line)
        assert result.success
        assert len(result.data.extracted_data.electricity_data) == 60_000


# ============================================================
#  ТЕСТЫ НЕЧЁТКОГО ПОИСКА
# ============================================================


class TestFuzzyStress:
    """Опечатки и OCR-замены против полного словаря."""

    @pytest.fixture
    def fuzzy(self):
        return FuzzyMatchingService(FuzzyConfig())

    @pytest.fixture
    def vocabulary(self):
        return SynonymDictionary().all_terms()

    @pytest.mark.parametrize("query,expected", [
        ("КВТЧ", "кВт·ч"),
        ("квт*ч", "кВт·ч"),
        ("Гкaл", "Гкал"),
        ("дизeль", "дизель"),
        ("солярка", "солярка"),
    ])
    def test_known_spellings(self, fuzzy, vocabulary, query, expected):
        result = fuzzy.find_best_match(query, vocabulary)
        assert result is not None
        assert fuzzy.normalize_token(result.match) == fuzzy.normalize_token(expected)

    def test_never_out_of_bounds(self, fuzzy, vocabulary):
        """Любой запрос: confidence в [0, 100], score в [0, 1]."""
        rng = random.Random(7)
        alphabet = "абвгдеёжзийклмнопрстуфхцчшщъыьэюяabcxyz·*-/ 0123456789"
        for _ in range(300):
            query = "".join(rng.choice(alphabet) for _ in range(rng.randint(0, 15)))
            result = fuzzy.find_best_match(query, vocabulary)
            if result is not None:
                assert 0 <= result.confidence <= 100
                assert 0 <= result.score <= 1

    @slow
    def test_benchmark_full_vocabulary(self, fuzzy, vocabulary):
        """1000 запросов против всего словаря → среднее < 200 мс."""
        queries = ["электроэнергя", "бензн", "кубометр", "xyzqw", "Гкал"] * 200
        stats = fuzzy.benchmark(queries, vocabulary)
        print(f"\n  fuzzy benchmark: {stats['average_time_ms']:.2f} мс/запрос, {stats['performance']}")
        assert stats["matches_found"] >= 600
        assert stats["average_time_ms"] < 200


# ============================================================
#  ТЕСТЫ КОНТЕКСТНОГО АНАЛИЗА
# ============================================================


class TestContextualStress:

    @pytest.fixture
    def analyzer(self):
        service = ContextualAnalysisService(config=Config(use_external_model=False))
        service.init()
        yield service
        service.shutdown()

    def test_batch_over_all_units(self, analyzer):
        """Все единицы словаря в одном документе: порядок и границы скора."""
        units = SynonymDictionary().unit_terms()
        text = " ".join(f"Позиция {i}: 10 {u}." for i, u in enumerate(units))
        results = analyzer.analyze_batch(units, text)
        assert [r.original_query for r in results] == units
        for r in results:
            assert 0 <= r.final_score <= 100
            assert r.recommendation in ("high_confidence", "medium_confidence", "low_confidence", "reject")

    def test_long_document(self, analyzer):
        """Документ на 5000 предложений: окно остаётся ±2 предложения."""
        text = ". ".join(f"Строка {i}" for i in range(5000)) + ". Итого 1500 кВт·ч. Конец."
        result = analyzer.analyze_in_context("кВт·ч", text)
        assert len(result.context_window.before) == 2
        assert len(result.context_window.after) <= 2


# ============================================================
#  ТЕСТЫ НАГРУЗКИ
# ============================================================


class TestLoadStress:
    """Хранилище метрик: конкурентность и объём."""

    def test_metrics_concurrent_writes(self, tmp_path):
        """10 потоков x 20 записей → 200 записей без ошибок."""
        store = MetricsStore(tmp_path / "metrics.db")
        errors = []

        def write_batch(thread_id: int):
            for i in range(20):
                try:
                    store.append(make_metrics(thread_id * 100 + i))
                except Exception as e:
                    errors.append(f"Thread {thread_id}, record {i}: {e}")

        threads = [threading.Thread(target=write_batch, args=(t,)) for t in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        count = store.count()
        store.close()
        assert len(errors) == 0, f"Ошибки БД: {errors}"
        assert count == 200

    @slow
    def test_aggregate_5000_records(self, tmp_path):
        """Агрегация по 5000 записям → < 5 сек."""
        store = MetricsStore(tmp_path / "metrics.db")
        for i in range(5000):
            store.append(make_metrics(i))
        collector = ExtractionMetricsCollector(store, Config())

        start = time.time()
        aggregated = collector.calculate_aggregated_metrics()
        report = collector.generate_quality_report()
        elapsed = time.time() - start
        store.close()

        print(f"\n  aggregate(5000): {elapsed:.2f} сек")
        assert aggregated.total_documents == 5000
        assert "Всего документов:** 5000" in report
        assert elapsed < 5


# ============================================================
#  ИНТЕГРАЦИОННЫЕ ТЕСТЫ
# ============================================================


class TestIntegrationStress:

    @slow
    def test_directory_of_60_documents(self, offline_config, tmp_path):
        """60 документов трёх форматов + битые файлы → отчёт и счётчики сходятся."""
        source = tmp_path / "source"
        source.mkdir()
        for i in range(20):
            (source / f"счёт_{i:02d}.txt").write_text(make_invoice(i), encoding="utf-8")
            (source / f"реестр_{i:02d}.csv").write_text(make_csv(10), encoding="cp1251")
            (source / f"скан_{i:02d}.pdf").write_bytes(b"%PDF-1.4\n" + bytes(256))

        finished = []
        with Controller(offline_config) as controller:
            stats = controller.process_directory(source, on_file_done=finished.append)
            stored = controller.collector.store.count()

        assert stats["total"] == 60
        assert stats["done"] == 40
        assert stats["errors"] == 20
        assert stored == 60
        assert stats["report_path"].exists()
        assert all(r.metrics is not None for r in finished)
        assert {r.metrics.processing_method for r in finished} == {"parser", "failed"}

    def test_repeat_run_appends_metrics(self, offline_config, tmp_path):
        """Повторный прогон той же папки дописывает метрики, а не затирает."""
        source = tmp_path / "source"
        source.mkdir()
        (source / "счёт.txt").write_text(make_invoice(1), encoding="utf-8")

        with Controller(offline_config) as controller:
            controller.process_directory(source)
        with Controller(offline_config) as controller:
            controller.process_directory(source)
            assert controller.collector.store.count() == 2
