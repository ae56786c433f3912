"""CLI пайплайна извлечения энергетических данных.

    python main.py process ./документы --mode TRIAL
    python main.py file ./счёт.pdf
    python main.py report --days 30
"""
import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from config import Config
from controller import Controller

logger = logging.getLogger(__name__)

USER_MODES = ("DEMO", "TRIAL", "PAID", "EXPIRED")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Извлечение энергетических данных из документов")
    parser.add_argument("-v", "--verbose", action="store_true", help="подробный лог (DEBUG)")
    parser.add_argument("--db", type=Path, help="путь к базе метрик")
    sub = parser.add_subparsers(dest="command", required=True)

    process = sub.add_parser("process", help="обработать папку с документами")
    process.add_argument("source", type=Path)
    process.add_argument("--mode", choices=USER_MODES, help="тариф пользователя для OCR")
    process.add_argument("--output", type=Path, help="папка для отчёта")

    single = sub.add_parser("file", help="обработать один файл и вывести JSON")
    single.add_argument("path", type=Path)
    single.add_argument("--mode", choices=USER_MODES)

    report = sub.add_parser("report", help="отчёт о качестве за период")
    report.add_argument("--days", type=int, default=None)
    report.add_argument("--save", type=Path, help="сохранить агрегаты в JSON в эту папку")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides = {"metrics_db_path": args.db} if args.db else {}
    config = Config.from_env(**overrides)

    with Controller(config) as controller:
        if args.command == "process":
            stats = controller.process_directory(args.source, user_mode=args.mode, output_dir=args.output)
            print(f"Обработано: {stats['done']} из {stats['total']}, ошибок: {stats['errors']}")
            if stats["report_path"]:
                print(f"Отчёт: {stats['report_path']}")
            return 0 if stats["errors"] == 0 else 1

        if args.command == "file":
            result = controller.process_file(args.path, user_mode=args.mode)
            payload = {
                "status": result.status,
                "error": result.error_message,
                "parser_used": result.parser_used,
                "format": result.format_info.format if result.format_info else None,
                "data": asdict(result.parser_result.data) if result.parser_result and result.parser_result.data else None,
                "unit_matches": [
                    {"unit": m.original_query, "score": m.final_score, "recommendation": m.recommendation}
                    for m in result.unit_matches
                ],
            }
            print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))
            return 0 if result.status == "done" else 1

        collector = controller.collector
        print(collector.generate_quality_report(args.days))
        if args.save:
            collector.save_aggregated_metrics(collector.calculate_aggregated_metrics(args.days), args.save)
        return 0


if __name__ == "__main__":
    sys.exit(main())
