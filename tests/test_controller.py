"""Тесты оркестрации: сканирование, прогон файла и папки, отчёт, CLI."""
import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from openpyxl import load_workbook

from config import Config
from controller import Controller
from ingest.metrics import ExtractionMetricsCollector
from ingest.metrics_store import MetricsStore
from ingest.models import AggregatedMetrics
from ingest.reporter import generate_metrics_report
from ingest.scanner import compute_file_hash, scan_directory
from main import main

INVOICE_TEXT = (
    "Счёт за март 2024. Потреблено электроэнергии 1500 кВт·ч. "
    "Дизельное топливо 320 л для котельной."
)
CSV_TEXT = "Ресурс;Количество;Единица\nЭлектроэнергия;1500;кВт·ч\nГаз;210;м3\n"


@pytest.fixture
def offline_config(tmp_path):
    return Config(
        metrics_db_path=tmp_path / "metrics.db",
        use_external_model=False,
        ocr_enabled=False,
    )


@pytest.fixture
def source_dir(tmp_path):
    source = tmp_path / "документы"
    source.mkdir()
    (source / "счёт.txt").write_text(INVOICE_TEXT, encoding="utf-8")
    (source / "реестр.csv").write_text(CSV_TEXT, encoding="cp1251")
    (source / "скан.pdf").write_bytes(b"%PDF-1.4 not a real pdf")
    (source / "~$временный.docx").write_bytes(b"lock")
    (source / ".hidden.txt").write_text("скрытый", encoding="utf-8")
    (source / "архив.zip").write_bytes(b"PK")
    return source


class TestScanner:

    def test_filters_and_sorts(self, source_dir):
        files = scan_directory(source_dir, Config())
        assert [f.filename for f in files] == ["реестр.csv", "скан.pdf", "счёт.txt"]
        assert all(len(f.file_hash) == 64 for f in files)

    def test_size_limit(self, source_dir):
        (source_dir / "большой.txt").write_bytes(b"x" * (2 * 1024 * 1024))
        files = scan_directory(source_dir, Config(max_file_size_mb=1))
        assert "большой.txt" not in [f.filename for f in files]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            scan_directory(tmp_path / "нет", Config())

    def test_hash_stable(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_bytes(b"abc")
        assert compute_file_hash(path) == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )


class TestProcessFile:

    def test_text_document(self, offline_config, tmp_path):
        path = tmp_path / "счёт.txt"
        path.write_text(INVOICE_TEXT, encoding="utf-8")
        with Controller(offline_config) as controller:
            result = controller.process_file(path)
            stored = controller.collector.store.count()

        assert result.status == "done"
        assert result.parser_used == "TxtParser"
        assert result.format_info.format == "txt"
        assert {m.original_query for m in result.unit_matches} >= {"кВт·ч"}
        metrics = result.metrics
        assert metrics.processing_method == "parser"
        assert metrics.electricity_data_extracted is True
        assert metrics.fuel_data_extracted == 1
        assert metrics.fields_extracted == 2
        assert metrics.fields_expected == 4
        assert metrics.extraction_success is True
        assert metrics.document_id == result.file_info.file_hash[:16]
        assert stored == 1

    def test_failed_document(self, offline_config, tmp_path):
        path = tmp_path / "скан.pdf"
        path.write_bytes(b"%PDF-1.4 garbage")
        with Controller(offline_config) as controller:
            result = controller.process_file(path)

        assert result.status == "error"
        assert result.error_message
        assert result.metrics.processing_method == "failed"
        assert result.metrics.extraction_success is False
        assert result.metrics.errors

    def test_missing_file_does_not_raise(self, offline_config, tmp_path):
        with Controller(offline_config) as controller:
            result = controller.process_file(tmp_path / "пропал.txt")
        assert result.status == "error"
        assert result.metrics is not None

    def test_fallback_recorded(self, offline_config, tmp_path):
        path = tmp_path / "данные.json"
        path.write_text('{"electricity": 1500 кВт·ч', encoding="utf-8")
        with Controller(offline_config) as controller:
            result = controller.process_file(path)
        assert result.status == "done"
        assert result.parser_used == "TxtParser"
        assert result.metrics.fallback_attempts == 1
        assert "JsonParser" in result.metrics.fallback_reason

    def test_injected_analyzer(self, offline_config, tmp_path):
        path = tmp_path / "счёт.txt"
        path.write_text(INVOICE_TEXT, encoding="utf-8")
        analyzer = MagicMock()
        analyzer.analyze_batch.return_value = []
        with Controller(offline_config, analyzer=analyzer) as controller:
            controller.process_file(path)
        analyzer.init.assert_called_once()
        analyzer.shutdown.assert_called_once()
        units = analyzer.analyze_batch.call_args.args[0]
        assert len(units) == len(set(units))


class TestProcessDirectory:

    def test_full_run(self, offline_config, source_dir):
        progress = []
        finished = []
        with Controller(offline_config) as controller:
            stats = controller.process_directory(
                source_dir,
                on_progress=lambda i, total, message: progress.append((i, total, message)),
                on_file_done=finished.append,
            )

        assert stats["total"] == 3
        assert stats["done"] == 2
        assert stats["errors"] == 1
        assert stats["output_dir"] == source_dir.parent / offline_config.output_folder_name
        assert stats["report_path"].exists()
        assert len(finished) == 3
        assert progress[-1][2].startswith("Готово!")

        wb = load_workbook(stats["report_path"])
        assert wb.sheetnames == ["Сводка", "Документы"]
        assert wb["Документы"].max_row == 4

    def test_empty_directory(self, offline_config, tmp_path):
        empty = tmp_path / "пусто"
        empty.mkdir()
        with Controller(offline_config) as controller:
            stats = controller.process_directory(empty, output_dir=tmp_path / "out")
        assert stats["total"] == 0
        assert stats["report_path"] is None


class TestReporter:

    def test_empty_records(self, tmp_path):
        path = generate_metrics_report([], AggregatedMetrics(period_start="2026-03-01", period_end="2026-03-08"), tmp_path)
        wb = load_workbook(path)
        assert wb.sheetnames[0] == "Сводка"
        assert wb["Сводка"]["B7"].value == "0.0%"

    def test_rows_colored_by_quality(self, tmp_path):
        store = MetricsStore(Path(":memory:"))
        collector = ExtractionMetricsCollector(store, Config())
        controller_config = Config(metrics_db_path=tmp_path / "m.db", use_external_model=False, ocr_enabled=False)
        source = tmp_path / "src"
        source.mkdir()
        (source / "a.txt").write_text(INVOICE_TEXT, encoding="utf-8")
        with Controller(controller_config, collector=collector) as controller:
            result = controller.process_file(source / "a.txt")
            aggregated = collector.calculate_aggregated_metrics()

        path = generate_metrics_report([result.metrics], aggregated, tmp_path / "out")
        ws = load_workbook(path)["Документы"]
        headers = [c.value for c in ws[1]]
        quality = ws.cell(row=2, column=headers.index("Качество данных") + 1)
        assert quality.value == result.metrics.data_quality
        assert ws.cell(row=2, column=1).fill.start_color.rgb.endswith(
            {"high": "C6EFCE", "medium": "FFEB9C", "low": "FFC7CE"}[quality.value]
        )


class TestCli:

    def test_file_command(self, tmp_path, capsys, monkeypatch):
        monkeypatch.delenv("FOUNDATION_MODELS_API_KEY", raising=False)
        monkeypatch.setenv("OCR_ENABLED", "false")
        path = tmp_path / "счёт.txt"
        path.write_text(INVOICE_TEXT, encoding="utf-8")

        code = main(["--db", str(tmp_path / "cli.db"), "file", str(path)])
        payload = json.loads(capsys.readouterr().out)
        assert code == 0
        assert payload["status"] == "done"
        assert payload["parser_used"] == "TxtParser"
        assert payload["data"]["extracted_data"]["electricity_data"][0]["value"] == 1500

    def test_report_command(self, tmp_path, capsys, monkeypatch):
        monkeypatch.delenv("FOUNDATION_MODELS_API_KEY", raising=False)
        code = main(["--db", str(tmp_path / "cli.db"), "report", "--days", "1", "--save", str(tmp_path / "agg")])
        assert code == 0
        assert "# Отчет о качестве извлечения данных" in capsys.readouterr().out
        assert list((tmp_path / "agg").glob("aggregated_metrics_*.json"))
