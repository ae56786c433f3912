"""Конфигурация pytest: корень проекта в sys.path и общие фикстуры."""
import sys
from pathlib import Path

import pytest

# Добавляем корень в sys.path чтобы import config, ingest.* работали
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from config import Config  # noqa: E402


@pytest.fixture
def config(tmp_path):
    """Конфиг без внешней модели и с базой метрик во временной папке."""
    return Config(
        metrics_db_path=tmp_path / "metrics.db",
        use_external_model=False,
    )
