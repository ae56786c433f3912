"""Перебор стратегий по порядку до первой успешной.

Используется цепочкой парсеров фабрики, RTF-парсером (три способа
снять разметку) и Excel-парсером (openpyxl → xlrd).
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Generic, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Attempt:
    """Одна попытка: имя стратегии и причина неудачи (None если успех)."""
    name: str
    error: Optional[str] = None


@dataclass
class FallbackOutcome(Generic[T]):
    value: Optional[T] = None
    succeeded_with: Optional[str] = None
    attempts: list[Attempt] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.succeeded_with is not None

    @property
    def errors(self) -> list[str]:
        return [f"{a.name}: {a.error}" for a in self.attempts if a.error]

    @property
    def fallback_count(self) -> int:
        """Сколько стратегий провалилось до успешной (или всего, если успеха нет)."""
        return sum(1 for a in self.attempts if a.error)


def try_in_order(
    strategies: Sequence[tuple[str, Callable[[], T]]],
    accept: Optional[Callable[[T], Optional[str]]] = None,
) -> FallbackOutcome[T]:
    """Запускает стратегии последовательно, возвращает первый принятый результат.

    Args:
        strategies: пары (имя, функция без аргументов)
        accept: проверка результата; возвращает None если результат подходит,
            иначе строку с причиной отказа. По умолчанию подходит любой
            результат, кроме None.

    Исключения стратегий не пробрасываются: они записываются в attempts,
    и перебор продолжается.
    """
    outcome: FallbackOutcome[T] = FallbackOutcome()
    for name, run in strategies:
        try:
            value = run()
        except Exception as e:
            logger.debug("Стратегия %s упала: %s", name, e)
            outcome.attempts.append(Attempt(name, str(e) or type(e).__name__))
            continue

        if accept is not None:
            reason = accept(value)
        else:
            reason = None if value is not None else "пустой результат"

        if reason is None:
            outcome.value = value
            outcome.succeeded_with = name
            outcome.attempts.append(Attempt(name))
            return outcome

        logger.debug("Стратегия %s отклонена: %s", name, reason)
        outcome.attempts.append(Attempt(name, reason))
        outcome.value = value  # последний отклонённый результат для диагностики

    if outcome.attempts:
        logger.info(
            "Все стратегии исчерпаны (%d): %s",
            len(outcome.attempts), "; ".join(outcome.errors),
        )
    return outcome
