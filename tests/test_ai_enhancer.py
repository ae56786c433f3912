"""Тесты AI-уточнения: разбор ответа модели, повторы, отказ без ключа."""
import json
from unittest.mock import MagicMock

import httpx
import pytest
from openai import APITimeoutError

from config import Config
from ingest.ai_enhancer import OpenAIEntityEnhancer, _json_to_enhancement, _parse_json_response
from ingest.contextual_analysis import EnhancementError
from ingest.models import ContextWindow

WINDOW = ContextWindow(
    before=["Акт за март"],
    target="Потреблено 1500 кВтч электроэнергии",
    after=["Оплата до 10 числа"],
    full_sentence="Потреблено 1500 кВтч электроэнергии",
)

ANSWER = {
    "entities": [
        {"name": "кВтч", "category": "energy", "confidence": 150,
         "normalizedValue": "кВт·ч", "units": "кВт·ч"},
        {"category": "energy"},
        "мусор",
    ],
    "context_analysis": {"document_type": "акт", "confidence": "85", "relevant_sections": ["потребление"]},
    "recommendations": ["проверить тариф"],
}


def fake_client(*contents) -> MagicMock:
    client = MagicMock()
    responses = []
    for content in contents:
        if isinstance(content, Exception):
            responses.append(content)
            continue
        response = MagicMock()
        response.choices[0].message.content = content
        responses.append(response)
    client.chat.completions.create.side_effect = responses
    return client


def timeout_error() -> APITimeoutError:
    return APITimeoutError(request=httpx.Request("POST", "https://example.invalid/v1/chat/completions"))


class TestParseResponse:

    def test_plain_json(self):
        assert _parse_json_response('{"a": 1}') == {"a": 1}

    def test_markdown_block(self):
        assert _parse_json_response('Вот ответ:\n```json\n{"a": 1}\n```') == {"a": 1}

    def test_thinking_stripped(self):
        raw = '<think>{"черновик": true}</think>{"a": 2}'
        assert _parse_json_response(raw) == {"a": 2}

    def test_json_inside_text(self):
        assert _parse_json_response('Результат: {"a": 3} конец') == {"a": 3}

    def test_no_json(self):
        with pytest.raises(json.JSONDecodeError):
            _parse_json_response("модель ответила словами")


class TestJsonToEnhancement:

    def test_fields_and_clamp(self):
        enhancement = _json_to_enhancement(ANSWER)
        assert len(enhancement.entities) == 1
        entity = enhancement.entities[0]
        assert entity.confidence == 100.0
        assert entity.normalized_value == "кВт·ч"
        assert enhancement.document_type == "акт"
        assert enhancement.context_confidence == 85.0
        assert enhancement.relevant_sections == ["потребление"]
        assert enhancement.recommendations == ["проверить тариф"]

    def test_confidence_as_word(self):
        enhancement = _json_to_enhancement({"entities": [{"name": "газ", "confidence": "высокая"}]})
        assert enhancement.entities[0].confidence == 0.0

    def test_nulls(self):
        enhancement = _json_to_enhancement({"entities": None, "context_analysis": None, "recommendations": None})
        assert enhancement.entities == []
        assert enhancement.context_confidence == 0.0
        assert enhancement.recommendations == []

    def test_non_string_fields_coerced(self):
        """Число в normalizedValue и список в units приводятся к строкам."""
        enhancement = _json_to_enhancement({"entities": [
            {"name": "э", "confidence": 95, "normalizedValue": 1500, "units": ["кВт·ч", "МВт·ч"]},
        ]})
        entity = enhancement.entities[0]
        assert entity.normalized_value == "1500"
        assert entity.units == "кВт·ч"

    @pytest.mark.parametrize("value", [{"v": 1}, [], True, "  "])
    def test_unusable_fields_dropped(self, value):
        enhancement = _json_to_enhancement({"entities": [
            {"name": "э", "normalizedValue": value, "units": value, "category": value},
        ]})
        entity = enhancement.entities[0]
        assert entity.normalized_value is None
        assert entity.units is None
        assert entity.category is None

    def test_not_an_object(self):
        with pytest.raises(ValueError):
            _json_to_enhancement(["список"])


class TestEnhance:

    def test_success(self):
        client = fake_client("```json\n" + json.dumps(ANSWER, ensure_ascii=False) + "\n```")
        enhancer = OpenAIEntityEnhancer(Config(), client=client)
        enhancement = enhancer.enhance("кВтч", WINDOW)

        assert enhancement.entities[0].name == "кВтч"
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == Config().ai_model
        prompt = kwargs["messages"][1]["content"]
        assert "Потреблено 1500 кВтч электроэнергии" in prompt
        assert "Акт за март Оплата до 10 числа" in prompt

    def test_invalid_json_not_retried(self):
        client = fake_client("не JSON", json.dumps(ANSWER))
        enhancer = OpenAIEntityEnhancer(Config(ai_max_retries=3), client=client)
        with pytest.raises(EnhancementError, match="Невалидный ответ"):
            enhancer.enhance("кВтч", WINDOW)
        assert client.chat.completions.create.call_count == 1

    def test_empty_answer(self):
        enhancer = OpenAIEntityEnhancer(Config(), client=fake_client(""))
        with pytest.raises(EnhancementError):
            enhancer.enhance("кВтч", WINDOW)

    def test_timeout_retried(self, monkeypatch):
        sleeps = []
        monkeypatch.setattr("ingest.ai_enhancer.time.sleep", sleeps.append)
        client = fake_client(timeout_error(), json.dumps(ANSWER))
        enhancer = OpenAIEntityEnhancer(Config(ai_max_retries=2), client=client)

        enhancement = enhancer.enhance("кВтч", WINDOW)
        assert enhancement.document_type == "акт"
        assert client.chat.completions.create.call_count == 2
        assert sleeps == [1]

    def test_retries_exhausted(self, monkeypatch):
        monkeypatch.setattr("ingest.ai_enhancer.time.sleep", lambda _: None)
        client = fake_client(timeout_error(), timeout_error())
        enhancer = OpenAIEntityEnhancer(Config(ai_max_retries=2), client=client)
        with pytest.raises(EnhancementError, match="Все попытки исчерпаны"):
            enhancer.enhance("кВтч", WINDOW)

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("FOUNDATION_MODELS_API_KEY", raising=False)
        with pytest.raises(EnhancementError, match="API-ключ"):
            OpenAIEntityEnhancer(Config()).enhance("кВтч", WINDOW)
