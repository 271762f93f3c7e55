"""
Клиенты для работы с языковой моделью.

Модель: внешний коллаборатор RAG-движка. Требуется два метода:
- embed(text): вектор эмбединга
- generate(prompt, stop_sequences, max_tokens, temperature): поток текстовых чанков

Поддерживает:
- Локальные модели через Ollama (/api/generate со стримингом, /api/embeddings)
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Sequence, Tuple, Type

import requests


logger = logging.getLogger(__name__)


class BaseModelClient(ABC):
    """
    Базовый абстрактный класс для клиентов модели.

    Определяет общий интерфейс, на который опираются хранилище,
    оркестратор диалога и генератор синтетических данных.
    """

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        """
        Генерация эмбединга для текста.

        Args:
            text: Текст для преобразования

        Returns:
            Вектор фиксированной длины
        """
        pass

    @abstractmethod
    def generate(self, prompt: str, stop_sequences: Sequence[str],
                 max_tokens: int, temperature: float) -> Iterator[str]:
        """
        Потоковая генерация ответа.

        Args:
            prompt: Полный текст промпта
            stop_sequences: Анти-промпты, на которых генерация останавливается
            max_tokens: Бюджет токенов
            temperature: Температура генерации

        Yields:
            Текстовые чанки по мере генерации
        """
        pass


@dataclass
class OllamaConfig:
    """Конфигурация подключения к Ollama."""
    host: str
    port: int
    model_name: str
    embedding_model: Optional[str] = None
    timeout: int = 120
    retry_attempts: int = 3


class OllamaModelClient(BaseModelClient):
    """
    Клиент для локальной модели через Ollama.

    Обеспечивает:
    - Стриминг ответа через /api/generate (JSON lines)
    - Эмбединги через /api/embeddings с retry и backoff
    """

    def __init__(self, config: OllamaConfig) -> None:
        """
        Инициализация клиента.

        Args:
            config: Конфигурация подключения
        """
        self._config = config
        self._base_url = f"http://{config.host}:{config.port}"
        self._embedding_model = config.embedding_model or config.model_name

    def generate(self, prompt: str, stop_sequences: Sequence[str],
                 max_tokens: int, temperature: float) -> Iterator[str]:
        payload = {
            "model": self._config.model_name,
            "prompt": prompt,
            "stream": True,
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
                "stop": list(stop_sequences),
            }
        }

        try:
            response = requests.post(
                f"{self._base_url}/api/generate",
                json=payload,
                stream=True,
                timeout=self._config.timeout
            )
        except requests.exceptions.ConnectionError:
            raise ModelConnectionError(
                f"Не удалось подключиться к Ollama на {self._config.host}:{self._config.port}"
            )
        except requests.exceptions.Timeout:
            raise ModelConnectionError("Таймаут при генерации ответа")

        if response.status_code != 200:
            raise ModelError(
                f"Ошибка Ollama API: {response.status_code} - {response.text}"
            )

        with response:
            lines = iter(response.iter_lines())
            while True:
                try:
                    line = next(lines)
                except StopIteration:
                    break
                except requests.exceptions.RequestException as e:
                    raise ModelConnectionError(f"Поток ответа Ollama прерван: {e}")
                if not line:
                    continue
                chunk = self._parse_chunk(line)
                text = chunk.get("response", "")
                if text:
                    yield text
                if chunk.get("done"):
                    break

    def embed(self, text: str) -> List[float]:
        response = retry_with_backoff(
            self._send_embedding_request,
            self._config.retry_attempts,
            text
        )
        if "embedding" not in response:
            raise ModelResponseError("Отсутствует поле 'embedding' в ответе")
        return response["embedding"]

    def check_model_availability(self) -> bool:
        """
        Проверка доступности модели.

        Returns:
            True если Ollama отвечает и модель загружена
        """
        try:
            response = requests.post(
                f"{self._base_url}/api/show",
                json={"name": self._config.model_name},
                timeout=30
            )
            return response.status_code == 200
        except requests.exceptions.RequestException:
            return False

    def _send_embedding_request(self, text: str) -> dict:
        payload = {
            "model": self._embedding_model,
            "prompt": text
        }

        try:
            response = requests.post(
                f"{self._base_url}/api/embeddings",
                json=payload,
                timeout=self._config.timeout
            )
        except requests.exceptions.ConnectionError:
            raise ModelConnectionError("Не удалось подключиться к Ollama")
        except requests.exceptions.Timeout:
            raise ModelConnectionError("Таймаут подключения к Ollama")

        if response.status_code != 200:
            raise ModelError(f"Ошибка API эмбедингов: {response.status_code}")

        return response.json()

    def _parse_chunk(self, line: bytes) -> dict:
        try:
            chunk = json.loads(line)
        except json.JSONDecodeError as e:
            raise ModelResponseError(f"Некорректный чанк ответа Ollama: {e}")
        if "error" in chunk:
            raise ModelError(f"Ollama вернула ошибку: {chunk['error']}")
        return chunk


def require_model(model: Optional[BaseModelClient]) -> BaseModelClient:
    """
    Проверка, что модель загружена.

    Raises:
        ModelUnavailableError: Если модель ещё не загружена
    """
    if model is None:
        raise ModelUnavailableError("Модель не загружена. Сначала загрузите модель.")
    return model


def retry_with_backoff(func: Callable, max_attempts: int, *args,
                       retry_on: Tuple[Type[Exception], ...] = None,
                       sleep: Optional[Callable[[float], None]] = None, **kwargs):
    """
    Выполнение функции с retry и экспоненциальным backoff.

    Args:
        func: Функция для выполнения
        max_attempts: Максимум попыток (минимум 1)
        *args, **kwargs: Аргументы функции
        retry_on: Исключения, после которых делается повтор
        sleep: Функция ожидания (подменяется в тестах)

    Returns:
        Результат функции

    Raises:
        Последнее исключение после исчерпания попыток
    """
    retry_on = retry_on or (ModelConnectionError,)
    sleep = sleep or time.sleep
    max_attempts = max(1, max_attempts)
    for attempt in range(max_attempts):
        try:
            return func(*args, **kwargs)
        except retry_on as e:
            if attempt == max_attempts - 1:
                raise
            wait_time = 2 ** attempt  # 1, 2, 4 секунды
            logger.warning(
                "Попытка %d не удалась (%s). Ожидание %dс...", attempt + 1, e, wait_time
            )
            sleep(wait_time)


class ModelError(Exception):
    """Базовый класс ошибок клиента модели."""
    pass


class ModelUnavailableError(ModelError):
    """Модель не загружена или контекст не создан."""
    pass


class ModelConnectionError(ModelError):
    """Ошибка подключения к рантайму модели."""
    pass


class ModelResponseError(ModelError):
    """Неожиданный формат ответа модели."""
    pass
