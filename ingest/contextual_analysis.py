"""Контекстный анализ найденных единиц и веществ.

Нечёткое совпадение со словарём даёт базовый скор, окно из соседних
предложений добавляет бонусы и штрафы. Сложные случаи (низкий скор) и
часть уверенных (выборочная проверка) уходят во внешнюю модель через
EntityEnhancer. Если модель недоступна, остаётся результат правил.
"""
import copy
import logging
import random
import re
from typing import Optional, Protocol

from config import Config
from ingest.fuzzy_matching import FuzzyConfig, FuzzyMatchingService
from ingest.models import (
    ContextBonuses,
    ContextPenalties,
    ContextualMatch,
    ContextWindow,
    Enhancement,
    FuzzyMatchResult,
    UnitCoMention,
)
from ingest.synonyms import SynonymDictionary

logger = logging.getLogger(__name__)

ENERGY_UNITS = ("кВт·ч", "кВтч", "МВт·ч", "МВтч", "ГВт·ч", "Гкал", "ккал", "Дж", "кДж", "МДж")
VOLUME_UNITS = ("л", "мл", "м³", "м3", "куб.м", "см³", "дм³", "литр", "литры")
WEIGHT_UNITS = ("т", "кг", "г", "тонн", "тонны", "тонна", "килограмм", "грамм")
DISTANCE_UNITS = ("км", "м", "см", "мм", "километр", "метр", "миля", "ткм", "пкм")

_UNIT_CATEGORIES = (
    ("energy", ENERGY_UNITS),
    ("volume", VOLUME_UNITS),
    ("weight", WEIGHT_UNITS),
    ("distance", DISTANCE_UNITS),
)

MAX_WORD_DISTANCE = 10
WINDOW_SENTENCES = 2
AI_ENTITY_THRESHOLD = 80
AI_CONTEXT_THRESHOLD = 75
AI_CONTEXT_BONUS = 8
AI_UNIT_DISTANCE = 3

_SENTENCE_SPLIT = re.compile(r"[.!?]\s+")
_NUMBER = re.compile(r"\d+[.,]?\d*")
_TABLE_MARKERS = ("\t", "|", ";", "  ")


class EnhancementError(Exception):
    """Внешняя модель не ответила или ответ не разобран."""


class EntityEnhancer(Protocol):
    def enhance(self, query: str, context: ContextWindow) -> Enhancement:
        """Уточняет сущности запроса по контексту. Ошибки: EnhancementError."""
        ...


class NullEnhancer:
    """Заглушка: внешней модели нет, анализ только по правилам."""

    def enhance(self, query: str, context: ContextWindow) -> Enhancement:
        raise EnhancementError("Внешняя модель не подключена")


def categorize_unit(unit: str) -> str:
    for category, units in _UNIT_CATEGORIES:
        if unit in units:
            return category
    return "unknown"


class ContextualAnalysisService:
    def __init__(
        self,
        fuzzy: Optional[FuzzyMatchingService] = None,
        dictionary: Optional[SynonymDictionary] = None,
        enhancer: Optional[EntityEnhancer] = None,
        config: Optional[Config] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config or Config.from_env()
        self.fuzzy = fuzzy or FuzzyMatchingService(FuzzyConfig.from_config(self.config))
        self.dictionary = dictionary or SynonymDictionary()
        self.enhancer = enhancer or NullEnhancer()
        self.rng = rng or random.Random()
        self._vocabulary: list[str] = []
        self._stats = {"analyzed": 0, "escalated": 0, "enhanced": 0, "enhancement_failures": 0}

    def init(self) -> None:
        self.fuzzy.init()
        self._vocabulary = self.dictionary.all_terms()
        logger.info("Контекстный анализ готов: терминов в словаре %d", len(self._vocabulary))

    def shutdown(self) -> None:
        self.fuzzy.shutdown()
        self._vocabulary = []

    @property
    def vocabulary(self) -> list[str]:
        if not self._vocabulary:
            self._vocabulary = self.dictionary.all_terms()
        return self._vocabulary

    def analyze_in_context(
        self, query: str, full_text: str, use_external_model: bool = True
    ) -> ContextualMatch:
        self._stats["analyzed"] += 1
        fuzzy_match = self.fuzzy.find_best_match(query, self.vocabulary)
        base_score = fuzzy_match.confidence if fuzzy_match else 0.0

        window = extract_context_window(query, full_text)
        co_mentions = find_unit_co_mentions(query, window)
        terms = self._find_document_terms(window)

        bonuses = calculate_bonuses(co_mentions, terms, window)
        penalties = calculate_penalties(co_mentions, fuzzy_match)
        final_score = calculate_final_score(base_score, bonuses, penalties)

        result = ContextualMatch(
            original_query=query,
            fuzzy_match=fuzzy_match,
            context_window=window,
            unit_co_mentions=co_mentions,
            document_terms=terms,
            base_score=base_score,
            context_bonuses=bonuses,
            penalties=penalties,
            final_score=final_score,
            recommendation=recommendation_for(final_score, False),
        )

        if use_external_model and self.config.use_external_model and self._should_escalate(final_score):
            self._stats["escalated"] += 1
            try:
                enhancement = self.enhancer.enhance(query, window)
                # На копии: сбой посередине не портит результат правил
                enhanced = self._apply_enhancement(copy.deepcopy(result), enhancement)
            except Exception as e:
                self._stats["enhancement_failures"] += 1
                logger.warning("Внешняя модель не помогла для «%s»: %s", query, e)
            else:
                result = enhanced
                self._stats["enhanced"] += 1
        return result

    def analyze_batch(
        self, queries: list[str], full_text: str, use_external_model: bool = True
    ) -> list[ContextualMatch]:
        """Запросы обрабатываются по одному, чтобы не перегружать внешний API."""
        return [self.analyze_in_context(q, full_text, use_external_model) for q in queries]

    def export_metrics(self) -> dict:
        analyzed = self._stats["analyzed"]
        return {
            **self._stats,
            "escalation_rate": self._stats["escalated"] / analyzed if analyzed else 0.0,
            "vocabulary_size": len(self.vocabulary),
            "escalation_sample_rate": self.config.escalation_sample_rate,
        }

    def _should_escalate(self, score: float) -> bool:
        if score < self.config.escalation_low_score:
            return True
        return (
            score >= self.config.escalation_high_score
            and self.rng.random() < self.config.escalation_sample_rate
        )

    def _find_document_terms(self, window: ContextWindow) -> list[str]:
        text = window.joined().lower()
        return [term for term in self.config.document_terms if term.lower() in text]

    def _apply_enhancement(self, result: ContextualMatch, enhancement: Enhancement) -> ContextualMatch:
        if enhancement.entities:
            entity = enhancement.entities[0]
            if entity.confidence > AI_ENTITY_THRESHOLD and entity.normalized_value:
                normalized = entity.normalized_value
                result.fuzzy_match = FuzzyMatchResult(
                    match=normalized,
                    score=entity.confidence / 100,
                    confidence=entity.confidence,
                    method="exact",
                    normalized_query=result.original_query.lower(),
                    normalized_match=normalized.lower(),
                )
            known = {m.unit for m in result.unit_co_mentions}
            if entity.units and entity.units not in known:
                result.unit_co_mentions.append(UnitCoMention(
                    unit=entity.units,
                    distance=AI_UNIT_DISTANCE,
                    confidence=min(entity.confidence, 95),
                    category=categorize_unit(entity.units),
                ))

        if enhancement.context_confidence > AI_CONTEXT_THRESHOLD:
            result.context_bonuses.document_context += AI_CONTEXT_BONUS

        result.foundation_models_enhanced = True
        result.final_score = calculate_final_score(result.base_score, result.context_bonuses, result.penalties)
        result.recommendation = recommendation_for(result.final_score, True)
        return result


def extract_context_window(query: str, text: str) -> ContextWindow:
    """До двух предложений до и после того, где встретился запрос."""
    if not text:
        return ContextWindow(target=query, full_sentence=query)
    sentences = [s for s in _SENTENCE_SPLIT.split(text) if s.strip()]
    needle = query.lower()
    index = next((i for i, s in enumerate(sentences) if needle in s.lower()), None)
    if index is None:
        return ContextWindow(target=query, full_sentence="")
    return ContextWindow(
        before=sentences[max(0, index - WINDOW_SENTENCES):index],
        target=sentences[index],
        after=sentences[index + 1:index + 1 + WINDOW_SENTENCES],
        full_sentence=sentences[index],
    )


def find_unit_co_mentions(query: str, window: ContextWindow) -> list[UnitCoMention]:
    text = window.joined().lower()
    if not text:
        return []
    query_index = text.find(query.lower())
    if query_index < 0:
        return []

    found = []
    for category, units in _UNIT_CATEGORIES:
        for unit in units:
            unit_index = text.find(unit.lower())
            if unit_index < 0:
                continue
            lo, hi = sorted((unit_index, query_index))
            distance = len(re.split(r"\s+", text[lo:hi]))
            if distance > MAX_WORD_DISTANCE:
                continue
            found.append(UnitCoMention(
                unit=unit,
                distance=distance,
                confidence=max(0, 100 - distance * 10),
                category=category,
            ))
    found.sort(key=lambda m: m.confidence, reverse=True)
    return found


def calculate_bonuses(
    co_mentions: list[UnitCoMention], terms: list[str], window: ContextWindow
) -> ContextBonuses:
    target = window.target or ""
    return ContextBonuses(
        unit_proximity=min(20.0, co_mentions[0].confidence * 0.2) if co_mentions else 0.0,
        document_context=15.0 if terms else 0.0,
        sentence_context=float(min(10, len(_NUMBER.findall(target)) * 3)),
        table_context=10.0 if any(m in target for m in _TABLE_MARKERS) else 0.0,
    )


def calculate_penalties(
    co_mentions: list[UnitCoMention], fuzzy_match: Optional[FuzzyMatchResult]
) -> ContextPenalties:
    # Больше двух категорий рядом: контекст шумный
    categories = {m.category for m in co_mentions}
    return ContextPenalties(
        conflicting_units=10.0 if len(categories) > 2 else 0.0,
        low_confidence=15.0 if fuzzy_match and fuzzy_match.confidence < 70 else 0.0,
    )


def calculate_final_score(base: float, bonuses: ContextBonuses, penalties: ContextPenalties) -> float:
    return max(0.0, min(100.0, base + bonuses.total() - penalties.total()))


def recommendation_for(score: float, enhanced: bool) -> str:
    if enhanced and score >= 70:
        return "high_confidence"
    if score >= 80:
        return "high_confidence"
    if score >= 60:
        return "medium_confidence"
    if score >= 40:
        return "low_confidence"
    return "reject"
