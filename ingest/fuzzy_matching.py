"""Нечёткое сопоставление терминов (единицы, вещества) со словарём.

Каскад от дешёвого к дорогому:
1. точное совпадение после нормализации;
2. слишком короткий запрос сразу идёт на расстояние Левенштейна;
3. быстрый поиск подпоследовательности, принимается при уверенности > 70;
4. difflib.SequenceMatcher, принимается при уверенности > 60;
5. расстояние Левенштейна с допуском (≤2 правок, ≤1 для запросов до 4 символов).
Итог: лучший по уверенности из сработавших этапов или None.
"""
import logging
import time
import unicodedata
from dataclasses import asdict, dataclass, replace
from difflib import SequenceMatcher
from typing import Optional

from config import Config
from ingest.models import FuzzyMatchResult

logger = logging.getLogger(__name__)

SUBSEQUENCE_FLOOR = 30
SUBSEQUENCE_ACCEPT = 70
SIMILARITY_FLOOR = 40
SIMILARITY_ACCEPT = 60

_SEPARATORS = set("·-/\\. \t\n*")
_UKRAINIAN = {"і": "и", "ї": "и", "є": "е", "ґ": "г"}
# Латиница, похожая на кириллицу: частые ошибки OCR
_LATIN_LOOKALIKES = {"a": "а", "e": "е", "o": "о", "p": "р", "c": "с", "x": "х", "y": "у"}


@dataclass
class FuzzyConfig:
    tolerance: int = 2  # максимум правок по Левенштейну
    min_length: int = 3  # короче: только Левенштейн
    similarity_threshold: float = 0.4  # 0..1, меньше = строже
    enable_normalization: bool = True

    @classmethod
    def from_config(cls, config: Config) -> "FuzzyConfig":
        return cls(
            tolerance=config.fuzzy_tolerance,
            min_length=config.fuzzy_min_length,
            similarity_threshold=config.fuzzy_similarity_threshold,
            enable_normalization=config.fuzzy_normalization,
        )


class FuzzyMatchingService:
    def __init__(self, config: Optional[FuzzyConfig] = None) -> None:
        self.config = config or FuzzyConfig.from_config(Config.from_env())
        self._normalized_cache: dict[tuple[str, ...], list[str]] = {}

    def init(self) -> None:
        logger.info("Нечёткий поиск: %s", asdict(self.config))

    def shutdown(self) -> None:
        self._normalized_cache.clear()

    def get_config(self) -> FuzzyConfig:
        return replace(self.config)

    def update_config(self, **changes) -> None:
        self.config = replace(self.config, **changes)
        self._normalized_cache.clear()

    def normalize_token(self, text: str) -> str:
        """Нижний регистр, без диакритики и разделителей, кириллица вместо похожей латиницы.

        «кВт·ч», «кВт-ч» и «КВТЧ» дают одно и то же «квтч».
        Повторная нормализация ничего не меняет.
        """
        if not text:
            return ""
        if not self.config.enable_normalization:
            return text
        decomposed = unicodedata.normalize("NFD", text.lower().strip())
        out = []
        for ch in decomposed:
            if unicodedata.combining(ch) or ch in _SEPARATORS:
                continue
            ch = _UKRAINIAN.get(ch, ch)
            out.append(_LATIN_LOOKALIKES.get(ch, ch))
        return "".join(out)

    def find_best_match(self, query: str, candidates: list[str]) -> Optional[FuzzyMatchResult]:
        if not query or not candidates:
            return None
        originals = [c for c in candidates if isinstance(c, str) and c]
        normalized = self._normalize_all(originals)
        q = self.normalize_token(query)
        if not q:
            return None

        if q in normalized:
            i = normalized.index(q)
            return FuzzyMatchResult(originals[i], 1.0, 100.0, "exact", q, normalized[i])

        if len(q) < self.config.min_length:
            return self._levenshtein_match(q, originals, normalized)

        subsequence = self._subsequence_match(q, originals, normalized)
        if subsequence and subsequence.confidence > SUBSEQUENCE_ACCEPT:
            return subsequence

        similarity = self._similarity_match(q, originals, normalized)
        if similarity and similarity.confidence > SIMILARITY_ACCEPT:
            return similarity

        levenshtein = self._levenshtein_match(q, originals, normalized)
        found = [r for r in (subsequence, similarity, levenshtein) if r is not None]
        if not found:
            return None
        return max(found, key=lambda r: r.confidence)

    def find_multiple_matches(
        self, queries: list[str], candidates: list[str]
    ) -> dict[str, Optional[FuzzyMatchResult]]:
        return {query: self.find_best_match(query, candidates) for query in queries}

    def benchmark(self, queries: list[str], candidates: list[str]) -> dict:
        """Прогон до 1000 запросов: общее и среднее время, сколько нашлось."""
        sample = queries[:1000]
        start = time.perf_counter()
        found = sum(1 for q in sample if self.find_best_match(q, candidates) is not None)
        total_ms = (time.perf_counter() - start) * 1000
        if total_ms < 10:
            performance = "excellent"
        elif total_ms < 100:
            performance = "good"
        else:
            performance = "poor"
        return {
            "total_time_ms": total_ms,
            "average_time_ms": total_ms / len(sample) if sample else 0.0,
            "matches_found": found,
            "performance": performance,
        }

    # --- этапы каскада ---

    def _normalize_all(self, candidates: list[str]) -> list[str]:
        key = tuple(candidates)
        cached = self._normalized_cache.get(key)
        if cached is None:
            cached = [self.normalize_token(c) for c in candidates]
            self._normalized_cache[key] = cached
        return cached

    def _subsequence_match(
        self, q: str, originals: list[str], normalized: list[str]
    ) -> Optional[FuzzyMatchResult]:
        best_i, best_conf = -1, 0.0
        for i, target in enumerate(normalized):
            conf = subsequence_confidence(q, target)
            if conf > best_conf:
                best_i, best_conf = i, conf
        if best_i < 0 or best_conf < SUBSEQUENCE_FLOOR:
            return None
        return FuzzyMatchResult(
            originals[best_i], round(best_conf / 100, 4), best_conf, "subsequence", q, normalized[best_i],
        )

    def _similarity_match(
        self, q: str, originals: list[str], normalized: list[str]
    ) -> Optional[FuzzyMatchResult]:
        matcher = SequenceMatcher(None, "", q, autojunk=False)
        best_i, best_ratio = -1, 0.0
        for i, target in enumerate(normalized):
            matcher.set_seq1(target)
            if matcher.real_quick_ratio() <= best_ratio or matcher.quick_ratio() <= best_ratio:
                continue
            ratio = matcher.ratio()
            if ratio > best_ratio:
                best_i, best_ratio = i, ratio
        confidence = best_ratio * 100
        if best_i < 0 or confidence < SIMILARITY_FLOOR:
            return None
        if best_ratio < 1 - self.config.similarity_threshold:
            return None
        return FuzzyMatchResult(
            originals[best_i], round(best_ratio, 4), round(confidence, 2), "similarity", q, normalized[best_i],
        )

    def _levenshtein_match(
        self, q: str, originals: list[str], normalized: list[str]
    ) -> Optional[FuzzyMatchResult]:
        if not normalized:
            return None
        tolerance = 1 if len(q) <= 4 else self.config.tolerance
        tolerance = min(tolerance, self.config.tolerance)
        best_i, best_distance = -1, None
        for i, target in enumerate(normalized):
            # Разница длин уже даёт нижнюю границу расстояния
            if abs(len(target) - len(q)) > tolerance:
                continue
            distance = levenshtein(q, target)
            if best_distance is None or distance < best_distance:
                best_i, best_distance = i, distance
        if best_distance is None or best_distance > tolerance:
            return None
        match = normalized[best_i]
        score = 1 - best_distance / max(len(q), len(match))
        return FuzzyMatchResult(
            originals[best_i], round(score, 4), round(max(score, 0.0) * 100, 2), "levenshtein", q, match,
        )


def subsequence_confidence(query: str, target: str) -> float:
    """0..100: все символы запроса по порядку в цели, плотно и с начала.

    Штрафы: пропущенные внутри совпадения символы (10), сдвиг начала (5),
    хвост цели после совпадения (3).
    """
    if not query or not target:
        return 0.0
    positions = []
    start = 0
    for ch in query:
        idx = target.find(ch, start)
        if idx < 0:
            return 0.0
        positions.append(idx)
        start = idx + 1
    gaps = positions[-1] - positions[0] + 1 - len(query)
    tail = len(target) - positions[-1] - 1
    return float(max(0, 100 - gaps * 10 - positions[0] * 5 - tail * 3))


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]
