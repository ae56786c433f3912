"""Уточнение сущностей через OpenAI-совместимый API (Foundation Models).

Модель получает целевое предложение и соседний контекст, возвращает
JSON с сущностями, оценкой типа документа и рекомендациями.
Любой сбой (сеть, лимиты, невалидный JSON) превращается в EnhancementError,
и контекстный анализ остаётся на скоре правил.
"""
import json
import logging
import re
import time
from typing import Optional

from openai import OpenAI, APIError, APITimeoutError, RateLimitError

from config import Config, load_api_key
from ingest.contextual_analysis import EnhancementError
from ingest.models import AiEntity, ContextWindow, Enhancement

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """Ты аналитик энергетических данных в российских документах (счета, акты, отчёты).
Отвечай СТРОГО чистым JSON без текста до и после. Числа уверенности от 0 до 100."""

USER_PROMPT_TEMPLATE = """Проанализируй текст и извлеки энергетические данные.

Контекст: {context}
Целевое предложение: {target}
Сущности для поиска: {entities}

Формат ответа:
{{"entities": [{{"name": "найденная сущность", "category": "energy/fuel/transport/water/heat", "confidence": 0, "normalizedValue": "нормализованное значение", "units": "единица измерения"}}], "context_analysis": {{"document_type": "тип документа", "confidence": 0, "relevant_sections": ["раздел"]}}, "recommendations": ["рекомендация"]}}"""


def _create_client(config: Config) -> OpenAI:
    api_key = load_api_key()
    if not api_key:
        raise EnhancementError("API-ключ не найден (FOUNDATION_MODELS_API_KEY)")
    return OpenAI(
        base_url=config.ai_base_url,
        api_key=api_key,
        timeout=config.ai_timeout_seconds,
        max_retries=0,
    )


class OpenAIEntityEnhancer:
    """EntityEnhancer поверх chat.completions. Клиент создаётся при первом запросе."""

    def __init__(self, config: Optional[Config] = None, client: Optional[OpenAI] = None) -> None:
        self.config = config or Config.from_env()
        self._client = client

    def enhance(self, query: str, context: ContextWindow) -> Enhancement:
        if self._client is None:
            self._client = _create_client(self.config)

        prompt = USER_PROMPT_TEMPLATE.format(
            context=" ".join(context.before + context.after),
            target=context.target,
            entities=query,
        )
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

        last_error: Exception = EnhancementError("Нет попыток")
        attempts = max(1, self.config.ai_max_retries)
        for attempt in range(attempts):
            try:
                logger.info(
                    "AI-запрос: модель=%s, попытка %d/%d",
                    self.config.ai_model, attempt + 1, attempts,
                )
                response = self._client.chat.completions.create(
                    model=self.config.ai_model,
                    temperature=self.config.ai_temperature,
                    max_tokens=self.config.ai_max_tokens,
                    messages=messages,
                )
                raw_text = response.choices[0].message.content
                if not raw_text:
                    raise ValueError("Пустой ответ от модели")
                logger.debug("AI ответ (первые 500 символов): %s", raw_text[:500])
                return _json_to_enhancement(_parse_json_response(raw_text))

            except (json.JSONDecodeError, ValueError, KeyError, IndexError) as e:
                # Невалидный JSON не повторяем: ответ модели тот же по сути
                raise EnhancementError(f"Невалидный ответ модели: {e}") from e

            except RateLimitError as e:
                last_error = e
                logger.warning("Попытка %d/%d: лимит запросов - %s", attempt + 1, attempts, e)
                if attempt < attempts - 1:
                    time.sleep(min(2 ** (attempt + 1), 10))

            except (APIError, APITimeoutError) as e:
                last_error = e
                logger.warning("Попытка %d/%d: ошибка API - %s", attempt + 1, attempts, e)
                if attempt < attempts - 1:
                    time.sleep(2 ** attempt)

        raise EnhancementError(f"Все попытки исчерпаны: {last_error}")


def _parse_json_response(raw: str) -> dict:
    """Извлекает JSON из ответа модели (может быть обёрнут по-разному)."""
    cleaned = re.sub(r"<think>.*?</think>", "", raw, flags=re.DOTALL).strip()

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    match = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", cleaned, re.DOTALL)
    if match:
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            pass

    match = re.search(r"\{.*\}", cleaned, re.DOTALL)
    if match:
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            pass

    raise json.JSONDecodeError("Не найден JSON в ответе модели", raw, 0)


def _number(raw: object) -> float:
    try:
        value = float(raw) if raw is not None else 0.0
    except (ValueError, TypeError):
        return 0.0
    return max(0.0, min(100.0, value))


def _text(raw: object) -> Optional[str]:
    """Строковое поле сущности: число становится строкой, список даёт первый элемент."""
    if isinstance(raw, list):
        raw = next((item for item in raw if item not in (None, "")), None)
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, (str, int, float)):
        return str(raw).strip() or None
    return None


def _json_to_enhancement(data: dict) -> Enhancement:
    if not isinstance(data, dict):
        raise ValueError("Ответ модели не является JSON-объектом")

    entities = []
    for raw in data.get("entities") or []:
        if not isinstance(raw, dict) or not raw.get("name"):
            continue
        entities.append(AiEntity(
            name=str(raw["name"]),
            category=_text(raw.get("category")),
            confidence=_number(raw.get("confidence")),
            normalized_value=_text(raw.get("normalizedValue", raw.get("normalized_value"))),
            units=_text(raw.get("units")),
        ))

    analysis = data.get("context_analysis") or {}
    if not isinstance(analysis, dict):
        analysis = {}
    sections = analysis.get("relevant_sections") or []
    recommendations = data.get("recommendations") or []

    return Enhancement(
        entities=entities,
        document_type=_text(analysis.get("document_type")),
        context_confidence=_number(analysis.get("confidence")),
        relevant_sections=[str(s) for s in sections] if isinstance(sections, list) else [],
        recommendations=[str(r) for r in recommendations] if isinstance(recommendations, list) else [str(recommendations)],
    )
