"""Тесты контекстного анализа: окно, бонусы и штрафы, эскалация во внешнюю модель."""
from unittest.mock import MagicMock

import pytest

from config import Config
from ingest.contextual_analysis import (
    AI_CONTEXT_BONUS,
    ContextualAnalysisService,
    EnhancementError,
    NullEnhancer,
    calculate_bonuses,
    calculate_final_score,
    calculate_penalties,
    categorize_unit,
    extract_context_window,
    find_unit_co_mentions,
    recommendation_for,
)
from ingest.fuzzy_matching import FuzzyConfig, FuzzyMatchingService
from ingest.models import (
    AiEntity,
    ContextBonuses,
    ContextPenalties,
    ContextWindow,
    Enhancement,
    FuzzyMatchResult,
    UnitCoMention,
)

TEXT = "Акт за март. Потреблено 1500 кВт·ч электроэнергии. Оплата до 10 числа."


def make_service(enhancer=None, rng_value: float = 0.0, **config_overrides) -> ContextualAnalysisService:
    config = Config(**{"use_external_model": True, **config_overrides})
    rng = MagicMock()
    rng.random.return_value = rng_value
    return ContextualAnalysisService(
        fuzzy=FuzzyMatchingService(FuzzyConfig()),
        enhancer=enhancer,
        config=config,
        rng=rng,
    )


def failing_enhancer(error: Exception) -> MagicMock:
    enhancer = MagicMock()
    enhancer.enhance.side_effect = error
    return enhancer


class TestEscalationFallback:

    @pytest.mark.parametrize("error", [
        ConnectionError("сеть недоступна"),
        TimeoutError("превышен таймаут"),
        EnhancementError("некорректный JSON"),
    ])
    @pytest.mark.parametrize("query", ["кВт·ч", "xyzqw"])
    def test_failure_keeps_rule_based_score(self, error, query):
        """Ошибка внешней модели: тот же итог, что без неё, и флаг enhanced=False."""
        enhancer = failing_enhancer(error)
        service = make_service(enhancer)

        baseline = service.analyze_in_context(query, TEXT, use_external_model=False)
        result = service.analyze_in_context(query, TEXT)

        enhancer.enhance.assert_called_once()
        assert result.final_score == baseline.final_score
        assert result.foundation_models_enhanced is False
        assert result == baseline
        assert service.export_metrics()["enhancement_failures"] == 1

    @pytest.mark.parametrize("entity", [
        AiEntity(name="э", confidence=95, normalized_value=1500),
        AiEntity(name="э", confidence=95, normalized_value="кВт·ч", units=["кВт·ч"]),
    ])
    def test_malformed_entity_keeps_rule_based_result(self, entity):
        """Поля сущности не того типа: сбой применения, итог правил не тронут."""
        enhancer = MagicMock()
        enhancer.enhance.return_value = Enhancement(entities=[entity], context_confidence=90)
        service = make_service(enhancer, escalation_low_score=101.0)

        baseline = service.analyze_in_context("кВт·ч", TEXT, use_external_model=False)
        result = service.analyze_in_context("кВт·ч", TEXT)

        enhancer.enhance.assert_called_once()
        assert result == baseline
        assert result.foundation_models_enhanced is False
        assert service.export_metrics()["enhancement_failures"] == 1
        assert service.export_metrics()["enhanced"] == 0

    def test_null_enhancer_is_fallback(self):
        service = make_service(NullEnhancer())
        result = service.analyze_in_context("кВт·ч", TEXT)
        assert result.foundation_models_enhanced is False
        assert 0 <= result.final_score <= 100


class TestEscalationPolicy:

    def test_high_score_sampled(self):
        enhancer = failing_enhancer(EnhancementError("нет"))
        make_service(enhancer, rng_value=0.1, escalation_sample_rate=0.3).analyze_in_context("кВт·ч", TEXT)
        enhancer.enhance.assert_called_once()

    def test_sample_rate_zero_never_escalates_high_score(self):
        enhancer = MagicMock()
        service = make_service(enhancer, rng_value=0.0, escalation_sample_rate=0.0)
        result = service.analyze_in_context("кВт·ч", TEXT)
        assert result.final_score >= 85
        enhancer.enhance.assert_not_called()

    def test_low_score_always_escalates(self):
        enhancer = failing_enhancer(EnhancementError("нет"))
        service = make_service(enhancer, rng_value=0.99, escalation_sample_rate=0.0)
        result = service.analyze_in_context("xyzqw", TEXT)
        assert result.final_score < 70
        enhancer.enhance.assert_called_once()

    def test_disabled_in_config(self):
        enhancer = MagicMock()
        service = make_service(enhancer, use_external_model=False)
        service.analyze_in_context("xyzqw", TEXT)
        enhancer.enhance.assert_not_called()

    def test_disabled_per_call(self):
        enhancer = MagicMock()
        make_service(enhancer).analyze_in_context("xyzqw", TEXT, use_external_model=False)
        enhancer.enhance.assert_not_called()


class TestEnhancement:

    def test_enhancement_applied(self):
        enhancer = MagicMock()
        enhancer.enhance.return_value = Enhancement(
            entities=[AiEntity(name="квтч", category="energy", confidence=95, normalized_value="кВт·ч", units="Гкал")],
            document_type="акт",
            context_confidence=90,
        )
        text = TEXT.replace("кВт·ч", "кВтч")
        service = make_service(enhancer, escalation_low_score=101.0)

        baseline = service.analyze_in_context("кВтч", text, use_external_model=False)
        result = service.analyze_in_context("кВтч", text)

        assert result.foundation_models_enhanced is True
        assert result.fuzzy_match.match == "кВт·ч"
        assert result.fuzzy_match.method == "exact"
        assert result.fuzzy_match.confidence == 95
        added = [m for m in result.unit_co_mentions if m.unit == "Гкал"]
        assert len(added) == 1
        assert added[0].distance == 3
        assert added[0].category == "energy"
        assert result.context_bonuses.document_context == (
            baseline.context_bonuses.document_context + AI_CONTEXT_BONUS
        )
        assert result.recommendation == "high_confidence"
        assert service.export_metrics()["enhanced"] == 1

    def test_low_confidence_entity_ignored(self):
        enhancer = MagicMock()
        enhancer.enhance.return_value = Enhancement(
            entities=[AiEntity(name="x", confidence=50, normalized_value="бензин")],
            context_confidence=10,
        )
        service = make_service(enhancer)
        result = service.analyze_in_context("xyzqw", TEXT)
        assert result.foundation_models_enhanced is True
        assert result.fuzzy_match is None
        assert result.context_bonuses.document_context == 0.0

    def test_batch_is_sequential(self):
        enhancer = failing_enhancer(EnhancementError("нет"))
        service = make_service(enhancer, escalation_low_score=101.0)
        results = service.analyze_batch(["кВт·ч", "литр", "xyzqw"], TEXT)
        assert [r.original_query for r in results] == ["кВт·ч", "литр", "xyzqw"]
        assert [c.args[0] for c in enhancer.enhance.call_args_list] == ["кВт·ч", "литр", "xyzqw"]


class TestContextWindow:

    def test_two_sentences_each_side(self):
        text = "Первое. Второе. Третье с кВт·ч. Четвёртое. Пятое. Шестое."
        window = extract_context_window("кВт·ч", text)
        assert window.target == "Третье с кВт·ч"
        assert window.before == ["Первое", "Второе"]
        assert window.after == ["Четвёртое", "Пятое"]
        assert window.full_sentence == "Третье с кВт·ч"

    def test_empty_text(self):
        window = extract_context_window("кВт·ч", "")
        assert window.target == "кВт·ч"
        assert window.full_sentence == "кВт·ч"

    def test_query_not_found(self):
        window = extract_context_window("Гкал", TEXT)
        assert window.target == "Гкал"
        assert window.full_sentence == ""
        assert window.before == []

    def test_case_insensitive(self):
        window = extract_context_window("КВТ·Ч", TEXT)
        assert "1500" in window.target


class TestCoMentions:

    def test_sorted_and_bounded(self):
        window = extract_context_window("кВт·ч", "Расход 320 л и 1500 кВт·ч за январь.")
        mentions = find_unit_co_mentions("кВт·ч", window)
        assert mentions
        confidences = [m.confidence for m in mentions]
        assert confidences == sorted(confidences, reverse=True)
        assert all(m.distance <= 10 for m in mentions)
        assert mentions[0].unit == "кВт·ч"

    def test_empty_window(self):
        assert find_unit_co_mentions("кВт·ч", ContextWindow()) == []

    def test_query_outside_window(self):
        window = ContextWindow(target="Расход 320 л")
        assert find_unit_co_mentions("Гкал", window) == []

    @pytest.mark.parametrize("unit,category", [
        ("Гкал", "energy"),
        ("литр", "volume"),
        ("кг", "weight"),
        ("км", "distance"),
        ("шт", "unknown"),
    ])
    def test_categorize_unit(self, unit, category):
        assert categorize_unit(unit) == category


class TestScoring:

    def test_bonuses(self):
        window = ContextWindow(target="Электроэнергия | 1500 | кВт·ч")
        co_mentions = [UnitCoMention(unit="кВт·ч", distance=1, confidence=90, category="energy")]
        bonuses = calculate_bonuses(co_mentions, ["счёт"], window)
        assert bonuses.unit_proximity == pytest.approx(18.0)
        assert bonuses.document_context == 15.0
        assert bonuses.sentence_context == 3.0
        assert bonuses.table_context == 10.0
        assert bonuses.total() == pytest.approx(46.0)

    def test_semicolon_is_table_marker(self):
        bonuses = calculate_bonuses([], [], ContextWindow(target="Газ;210;м3"))
        assert bonuses.table_context == 10.0

    def test_penalties(self):
        co_mentions = [
            UnitCoMention("кВт·ч", 1, 90, "energy"),
            UnitCoMention("л", 2, 80, "volume"),
            UnitCoMention("кг", 3, 70, "weight"),
        ]
        weak = FuzzyMatchResult("кВт·ч", 0.5, 50.0, "levenshtein", "кв", "квтч")
        penalties = calculate_penalties(co_mentions, weak)
        assert penalties.conflicting_units == 10.0
        assert penalties.low_confidence == 15.0

    def test_no_match_no_low_confidence_penalty(self):
        assert calculate_penalties([], None).low_confidence == 0.0

    @pytest.mark.parametrize("base,bonus,penalty,expected", [
        (100.0, 46.0, 0.0, 100.0),
        (0.0, 0.0, 25.0, 0.0),
        (60.0, 10.0, 15.0, 55.0),
    ])
    def test_final_score_clamped(self, base, bonus, penalty, expected):
        score = calculate_final_score(
            base, ContextBonuses(unit_proximity=bonus), ContextPenalties(low_confidence=penalty)
        )
        assert score == expected

    @pytest.mark.parametrize("score,enhanced,expected", [
        (85, False, "high_confidence"),
        (75, False, "medium_confidence"),
        (75, True, "high_confidence"),
        (65, True, "medium_confidence"),
        (45, False, "low_confidence"),
        (10, False, "reject"),
    ])
    def test_recommendation(self, score, enhanced, expected):
        assert recommendation_for(score, enhanced) == expected


class TestLifecycle:

    def test_init_loads_vocabulary(self):
        service = make_service()
        service.init()
        assert "кВт·ч" in service.vocabulary
        metrics = service.export_metrics()
        assert metrics["vocabulary_size"] == len(service.vocabulary)
        assert metrics["escalation_rate"] == 0.0
        service.shutdown()

    def test_final_score_bounds(self):
        service = make_service(use_external_model=False)
        for query in ("кВт·ч", "л", "Гкал", "электроэнергия", "xyzqw", ""):
            result = service.analyze_in_context(query, TEXT)
            assert 0 <= result.final_score <= 100
