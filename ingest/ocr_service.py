"""Гибридный OCR: маршрутизация между провайдерами распознавания.

Локальный Tesseract (pytesseract) доступен всегда, облачные провайдеры
(Yandex Vision, GigaChat Vision) описаны в реестре, но пока не подключены:
для них возвращается StubOcrResult с предупреждением.

Провайдер выбирается по тарифу пользователя:
- DEMO и EXPIRED: только бесплатные;
- TRIAL: не дороже trial_cost_ceiling за страницу;
- PAID: выбранный пользователем провайдер, иначе лучший по приоритету.
"""
import io
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Optional, Protocol

import pdfplumber
import pytesseract
from PIL import Image, ImageFilter, ImageOps

from config import Config
from ingest.models import (
    EngineOcrResult,
    FailedOcrResult,
    OcrResult,
    SkippedOcrResult,
    StubOcrResult,
)
from ingest.units import extract_from_text

logger = logging.getLogger(__name__)

IMAGE_MIME_TYPES = ("image/jpeg", "image/png", "image/tiff", "image/bmp")

# Символы, которые Tesseract может вернуть. Пробелы и кавычки не включены:
# pytesseract разбирает строку конфигурации через shlex.
CHAR_WHITELIST = (
    "0123456789"
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
    "АБВГДЕЁЖЗИЙКЛМНОПРСТУФХЦЧШЩЪЫЬЭЮЯабвгдеёжзийклмнопрстуфхцчшщъыьэюя"
    ".,;:!?-()[]{}%/№*·"
)

MIN_OCR_WIDTH = 1200
MAX_OCR_WIDTH = 2400


class OcrInitError(Exception):
    """Движок OCR не удалось запустить (нет бинарника, нет языковых данных)."""


class OcrUnavailableError(Exception):
    """Ни один провайдер не подходит под формат, размер файла и тариф."""


@dataclass
class OcrProvider:
    key: str
    name: str
    priority: int  # 1 = высший
    supported_mime_types: tuple[str, ...]
    max_file_size: int  # байт
    cost_per_page: float  # руб.
    available: bool


class OcrProviderRegistry:
    """Таблица провайдеров. Передаётся в сервис явно, чтобы тесты могли подменять состав."""

    def __init__(self, providers: Iterable[OcrProvider] = ()) -> None:
        self._providers: dict[str, OcrProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: OcrProvider) -> None:
        self._providers[provider.key] = provider

    def get(self, key: str) -> Optional[OcrProvider]:
        return self._providers.get(key)

    def all(self) -> list[OcrProvider]:
        return list(self._providers.values())

    def mark_unavailable(self, key: str) -> None:
        provider = self._providers.get(key)
        if provider is not None:
            self._providers[key] = replace(provider, available=False)
            logger.warning("OCR-провайдер %s помечен недоступным", key)

    def eligible(self, mime_type: str, file_size: int) -> list[OcrProvider]:
        """Доступные провайдеры, принимающие этот MIME и размер, по приоритету."""
        found = [
            p for p in self._providers.values()
            if p.available and mime_type in p.supported_mime_types and file_size <= p.max_file_size
        ]
        return sorted(found, key=lambda p: p.priority)


def default_providers() -> OcrProviderRegistry:
    return OcrProviderRegistry([
        OcrProvider(
            key="tesseract",
            name="Tesseract",
            priority=3,
            supported_mime_types=IMAGE_MIME_TYPES,
            max_file_size=50 * 1024 * 1024,
            cost_per_page=0.0,
            available=True,
        ),
        OcrProvider(
            key="yandex_vision",
            name="Yandex Vision",
            priority=2,
            supported_mime_types=("image/jpeg", "image/png", "image/tiff", "application/pdf"),
            max_file_size=20 * 1024 * 1024,
            cost_per_page=0.01,
            available=False,
        ),
        OcrProvider(
            key="gigachat",
            name="GigaChat Vision",
            priority=1,
            supported_mime_types=("image/jpeg", "image/png", "application/pdf"),
            max_file_size=10 * 1024 * 1024,
            cost_per_page=0.05,
            available=False,
        ),
    ])


class OcrBackend(Protocol):
    def recognize(self, image: Image.Image) -> tuple[str, float, int]:
        """Возвращает (текст, уверенность 0..1, число слов)."""
        ...

    def close(self) -> None:
        ...


class TesseractBackend:
    """Обёртка над pytesseract с настройками под русские таблицы."""

    def __init__(self, languages: str = "rus+eng", psm: int = 6) -> None:
        try:
            version = pytesseract.get_tesseract_version()
        except Exception as e:
            raise OcrInitError(f"Tesseract не найден: {e}") from e
        self.languages = languages
        self.config = (
            f"--psm {psm} -c preserve_interword_spaces=1 "
            f"-c tessedit_char_whitelist={CHAR_WHITELIST}"
        )
        try:
            installed = set(pytesseract.get_languages(config=""))
            missing = [lang for lang in languages.split("+") if lang not in installed]
            if missing:
                logger.warning("Tesseract: нет языковых данных %s", ", ".join(missing))
        except Exception as e:
            logger.debug("Не удалось получить список языков Tesseract: %s", e)
        logger.info("Tesseract %s инициализирован (%s)", version, languages)

    def recognize(self, image: Image.Image) -> tuple[str, float, int]:
        data = pytesseract.image_to_data(
            image,
            lang=self.languages,
            config=self.config,
            output_type=pytesseract.Output.DICT,
        )
        lines: dict[tuple[int, int, int], list[str]] = {}
        confidences: list[float] = []
        for i, word in enumerate(data["text"]):
            word = (word or "").strip()
            if not word:
                continue
            key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
            lines.setdefault(key, []).append(word)
            conf = float(data["conf"][i])
            if conf >= 0:
                confidences.append(conf)

        text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
        confidence = sum(confidences) / len(confidences) / 100 if confidences else 0.0
        word_count = sum(len(words) for words in lines.values())
        return text, confidence, word_count

    def close(self) -> None:
        # pytesseract запускает процесс на каждый вызов, держать нечего
        pass


class HybridOcrService:
    """Один экземпляр на приложение: владеет движком Tesseract.

    Движок создаётся лениво (init() или первый документ) и закрывается в
    shutdown(). Доступ к нему сериализован блокировкой.
    """

    def __init__(
        self,
        registry: Optional[OcrProviderRegistry] = None,
        config: Optional[Config] = None,
        backend_factory: Optional[Callable[[], OcrBackend]] = None,
    ) -> None:
        self.config = config or Config()
        self.registry = registry or default_providers()
        self._backend_factory = backend_factory or (
            lambda: TesseractBackend(self.config.ocr_languages, self.config.ocr_psm)
        )
        self._backend: Optional[OcrBackend] = None
        self._lock = threading.Lock()

    # --- жизненный цикл ---

    def init(self) -> None:
        """Запускает движок. OcrInitError пробрасывается вызывающему."""
        with self._lock:
            self._ensure_backend()

    def shutdown(self) -> None:
        with self._lock:
            if self._backend is not None:
                try:
                    self._backend.close()
                except Exception as e:
                    logger.warning("Ошибка остановки OCR-движка: %s", e)
                self._backend = None
                logger.info("OCR-сервис остановлен")

    @property
    def is_initialized(self) -> bool:
        return self._backend is not None

    def _ensure_backend(self) -> OcrBackend:
        """Вызывать под self._lock."""
        if self._backend is not None:
            return self._backend
        provider = self.registry.get("tesseract")
        if provider is None or not provider.available:
            raise OcrInitError("Tesseract отключён в реестре провайдеров")
        try:
            self._backend = self._backend_factory()
        except Exception as e:
            # Повторно не пытаемся: провайдер выключен до конца жизни процесса
            self.registry.mark_unavailable("tesseract")
            logger.error("Ошибка инициализации Tesseract: %s", e)
            if isinstance(e, OcrInitError):
                raise
            raise OcrInitError(str(e)) from e
        return self._backend

    # --- выбор провайдера ---

    def select_provider(
        self,
        mime_type: str,
        file_size: int,
        user_mode: str = "DEMO",
        preferred: Optional[str] = None,
    ) -> Optional[str]:
        """Ключ провайдера или None, если подходящего нет."""
        candidates = self.registry.eligible(mime_type, file_size)
        if not candidates:
            logger.warning(
                "Нет доступных OCR-провайдеров: %s, %d байт, режим %s",
                mime_type, file_size, user_mode,
            )
            return None

        if user_mode in ("DEMO", "EXPIRED"):
            free = [p for p in candidates if p.cost_per_page == 0]
            return free[0].key if free else None
        if user_mode == "TRIAL":
            cheap = [p for p in candidates if p.cost_per_page <= self.config.trial_cost_ceiling]
            return cheap[0].key if cheap else None
        if user_mode == "PAID" and preferred and any(p.key == preferred for p in candidates):
            return preferred
        return candidates[0].key

    # --- распознавание ---

    def process_document(
        self,
        data: bytes,
        mime_type: str,
        user_mode: Optional[str] = None,
        preferred_provider: Optional[str] = None,
        extract_structured_data: bool = True,
    ) -> OcrResult:
        """Распознаёт изображение (или PDF через recognize_pdf).

        Raises:
            OcrUnavailableError: нет провайдера для файла и тарифа.
            OcrInitError: движок не запустился.
        """
        if mime_type == "application/pdf":
            return self.recognize_pdf(
                data, user_mode, preferred_provider, extract_structured_data=extract_structured_data,
            )
        if not mime_type.startswith("image/"):
            return SkippedOcrResult(reason=f"Формат {mime_type} не требует OCR")

        start = time.perf_counter()
        mode = user_mode or self.config.default_user_mode
        provider = self._require_provider(mime_type, len(data), mode, preferred_provider)
        if provider != "tesseract":
            return self._stub(provider, start)

        logger.info("OCR изображения (%s, %d байт) провайдером %s", mime_type, len(data), provider)
        try:
            text, confidence, words = self._recognize_bytes(data)
        except OcrInitError:
            raise
        except Exception as e:
            logger.error("Ошибка OCR: %s", e)
            return FailedOcrResult(error=str(e), processing_time_ms=_elapsed(start))
        return self._engine_result(text, confidence, words, provider, start, extract_structured_data)

    def recognize_pdf(
        self,
        data: bytes,
        user_mode: Optional[str] = None,
        preferred_provider: Optional[str] = None,
        max_pages: Optional[int] = None,
        extract_structured_data: bool = True,
    ) -> OcrResult:
        """Растеризует страницы PDF через pdfplumber и распознаёт каждую."""
        start = time.perf_counter()
        mode = user_mode or self.config.default_user_mode
        provider = self._require_provider("image/png", len(data), mode, preferred_provider)
        if provider != "tesseract":
            return self._stub(provider, start)

        pages_text: list[str] = []
        confidences: list[float] = []
        words = 0
        try:
            with pdfplumber.open(io.BytesIO(data)) as pdf:
                pages = pdf.pages if max_pages is None else pdf.pages[:max_pages]
                for page in pages:
                    image = page.to_image(resolution=self.config.ocr_pdf_resolution).original
                    text, confidence, count = self._recognize_bytes(_to_png(image))
                    pages_text.append(text)
                    confidences.append(confidence)
                    words += count
        except OcrInitError:
            raise
        except Exception as e:
            logger.error("Ошибка OCR PDF: %s", e)
            return FailedOcrResult(error=str(e), processing_time_ms=_elapsed(start))

        logger.info("OCR PDF: распознано страниц %d", len(pages_text))
        confidence = sum(confidences) / len(confidences) if confidences else 0.0
        return self._engine_result(
            "\n\n".join(pages_text).strip(), confidence, words, provider, start, extract_structured_data,
        )

    def preprocess_image(self, data: bytes) -> bytes:
        """Ширина в [1200, 2400], автоконтраст, лёгкая резкость, PNG.

        При любой ошибке возвращает исходные байты.
        """
        try:
            with Image.open(io.BytesIO(data)) as source:
                image = source.convert("L")
            width, height = image.size
            target = min(max(width, MIN_OCR_WIDTH), MAX_OCR_WIDTH)
            if target != width:
                image = image.resize(
                    (target, max(1, round(height * target / width))),
                    Image.Resampling.LANCZOS,
                )
                logger.debug("Изображение масштабировано: %dx%d → %dx%d", width, height, *image.size)
            image = ImageOps.autocontrast(image)
            image = image.filter(ImageFilter.UnsharpMask(radius=1, percent=80, threshold=2))
            return _to_png(image)
        except Exception as e:
            logger.warning("Ошибка предобработки изображения, используем оригинал: %s", e)
            return data

    def health_check(self) -> dict:
        """healthy: все провайдеры работают; degraded: часть; unhealthy: ни одного."""
        providers: dict[str, bool] = {}
        details: dict[str, dict] = {}
        for provider in self.registry.all():
            if provider.key == "tesseract":
                ok = provider.available and self.is_initialized
                error = None if ok else ("движок не инициализирован" if provider.available else "отключён")
            else:
                ok = provider.available
                error = None if ok else "не реализован"
            providers[provider.key] = ok
            details[provider.key] = {"available": ok, "error": error}

        working = sum(providers.values())
        if providers and working == len(providers):
            status = "healthy"
        elif working > 0:
            status = "degraded"
        else:
            status = "unhealthy"
        return {"status": status, "providers": providers, "details": details}

    # --- внутреннее ---

    def _require_provider(
        self, mime_type: str, size: int, user_mode: str, preferred: Optional[str]
    ) -> str:
        provider = self.select_provider(mime_type, size, user_mode, preferred)
        if provider is None:
            raise OcrUnavailableError(
                f"Нет доступных провайдеров OCR для {mime_type} ({size} байт, режим {user_mode})"
            )
        return provider

    def _recognize_bytes(self, data: bytes) -> tuple[str, float, int]:
        if self.config.ocr_preprocess:
            data = self.preprocess_image(data)
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            with self._lock:
                backend = self._ensure_backend()
                return backend.recognize(image)

    def _engine_result(
        self,
        text: str,
        confidence: float,
        words: int,
        provider: str,
        start: float,
        extract_structured_data: bool,
    ) -> EngineOcrResult:
        extracted = extract_from_text(text).data if extract_structured_data and text else None
        result = EngineOcrResult(
            text=text,
            confidence=round(min(max(confidence, 0.0), 1.0), 4),
            provider=provider,
            processing_time_ms=_elapsed(start),
            word_count=words,
            extracted_data=extracted,
        )
        logger.info(
            "OCR завершён: %s, уверенность %.2f, символов %d, %.0f мс",
            provider, result.confidence, len(text), result.processing_time_ms,
        )
        return result

    def _stub(self, provider: str, start: float) -> StubOcrResult:
        name = self.registry.get(provider).name if self.registry.get(provider) else provider
        warning = f"{name} OCR пока не реализован"
        logger.warning(warning)
        return StubOcrResult(provider=provider, warning=warning, processing_time_ms=_elapsed(start))


def _to_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def _elapsed(start: float) -> float:
    return (time.perf_counter() - start) * 1000
