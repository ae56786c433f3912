"""Тесты нечёткого сопоставления терминов."""
import pytest

from ingest.fuzzy_matching import FuzzyConfig, FuzzyMatchingService, levenshtein, subsequence_confidence

UNITS = ["кВт·ч", "кВт*ч", "кВтч"]
VOCABULARY = ["электроэнергия", "бензин", "дизельное топливо", "газ", "кВт·ч", "литр", "тонна"]


@pytest.fixture
def service():
    return FuzzyMatchingService(FuzzyConfig())


class TestNormalization:

    @pytest.mark.parametrize("raw", ["кВт·ч", "кВт-ч", "КВТЧ", "кВт*ч", " кВт / ч "])
    def test_unit_spellings_collapse(self, service, raw):
        assert service.normalize_token(raw) == "квтч"

    @pytest.mark.parametrize("raw", ["кВт·ч", "Дизельное топливо", "м³", "Гкал\t", "ПРОПАН-БУТАН"])
    def test_idempotent(self, service, raw):
        once = service.normalize_token(raw)
        assert service.normalize_token(once) == once

    def test_latin_lookalikes(self, service):
        # «е», «р», «с» набраны латиницей
        assert service.normalize_token("бeнзин") == "бензин"
        assert service.normalize_token("pаcход") == "расход"

    def test_disabled_normalization(self):
        service = FuzzyMatchingService(FuzzyConfig(enable_normalization=False))
        assert service.normalize_token("КВТЧ") == "КВТЧ"


class TestFindBestMatch:

    def test_exact_takes_precedence(self, service):
        """«КВТЧ» совпадает со всеми тремя написаниями: берётся первое, метод exact."""
        result = service.find_best_match("КВТЧ", UNITS)
        assert result.match == "кВт·ч"
        assert result.method == "exact"
        assert result.confidence == 100.0
        assert result.score == 1.0

    def test_typo_in_substance(self, service):
        result = service.find_best_match("электроэнергя", VOCABULARY)
        assert result.match == "электроэнергия"
        assert result.method == "subsequence"
        assert result.confidence == pytest.approx(90.0)

    def test_short_query_uses_levenshtein(self, service):
        result = service.find_best_match("кн", ["кг", "км", "л"])
        assert result.method == "levenshtein"
        assert result.match == "кг"
        assert result.confidence == pytest.approx(50.0)

    def test_no_match(self, service):
        assert service.find_best_match("xyzqw", ["кВт·ч", "литр", "тонна"]) is None

    @pytest.mark.parametrize("query,candidates", [
        ("", VOCABULARY),
        ("бензин", []),
        ("···", VOCABULARY),
    ])
    def test_empty_inputs(self, service, query, candidates):
        assert service.find_best_match(query, candidates) is None

    def test_similarity_stage(self, service):
        result = service.find_best_match("бенезин", ["бензин", "газ"])
        assert result is not None
        assert result.match == "бензин"

    def test_confidence_bounds(self, service):
        for query in ("элктр", "газик", "литры", "тона", "zzz", "кВт·час"):
            result = service.find_best_match(query, VOCABULARY)
            if result is not None:
                assert 0 <= result.confidence <= 100
                assert 0 <= result.score <= 1

    def test_find_multiple_matches(self, service):
        results = service.find_multiple_matches(["КВТЧ", "xyzqw"], UNITS)
        assert results["КВТЧ"].match == "кВт·ч"
        assert results["xyzqw"] is None


class TestConfig:

    def test_update_and_get_config(self, service):
        service.update_config(tolerance=1, min_length=5)
        config = service.get_config()
        assert config.tolerance == 1
        assert config.min_length == 5

    def test_get_config_returns_copy(self, service):
        config = service.get_config()
        config.tolerance = 99
        assert service.get_config().tolerance == 2

    def test_strict_similarity_threshold(self):
        """При пороге 0 этап similarity ничего не принимает, остаётся Левенштейн."""
        strict = FuzzyMatchingService(FuzzyConfig(similarity_threshold=0.0))
        result = strict.find_best_match("бенезин", ["бензин"])
        assert result.method == "levenshtein"
        assert result.confidence == pytest.approx(85.71, abs=0.01)


class TestHelpers:

    def test_levenshtein(self):
        assert levenshtein("кот", "кот") == 0
        assert levenshtein("кот", "код") == 1
        assert levenshtein("", "abc") == 3
        assert levenshtein("бензин", "безин") == 1

    def test_subsequence_confidence(self):
        assert subsequence_confidence("квтч", "квтч") == 100.0
        assert subsequence_confidence("квт", "квтч") == 97.0
        assert subsequence_confidence("абв", "вба") == 0.0

    def test_benchmark(self, service):
        stats = service.benchmark(["КВТЧ", "электроэнергя", "xyzqw"] * 10, VOCABULARY)
        assert stats["matches_found"] == 20
        assert stats["average_time_ms"] >= 0
        assert stats["performance"] in ("excellent", "good", "poor")
