"""
Модуль генерации синтетических инцидентов техподдержки.

Отвечает за:
- Последовательную генерацию инцидента в четыре зависимых этапа
  (описание проблемы -> ответ поддержки -> ответ пользователя -> решение)
- Эмбединг описания проблемы в слот активного семейства модели
- Добавление инцидентов в хранилище с продолжением нумерации
- Сохранение снапшота после каждой партии и после последнего инцидента
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from conversation import ConversationOrchestrator, OperationCancelled, OutputPort, console_output
from model_client import ModelConnectionError, ModelResponseError, retry_with_backoff
from prompts import templates
from rag.schema import (
    ISSUE_DESCRIPTION,
    SOLUTION,
    SUPPORT_RESPONSE,
    USER_FOLLOW_UP,
    Record,
)
from rag.vector_store import VectorStore


logger = logging.getLogger(__name__)


@dataclass
class GenerationJob:
    """Промежуточные результаты этапов для одного инцидента."""
    record_id: int
    theme: str
    issue_description: str = ""
    support_response: str = ""
    user_follow_up: str = ""
    solution: str = ""

    def to_record(self, embedding_field: str, embedding: list) -> Record:
        return Record(id=self.record_id, values={
            ISSUE_DESCRIPTION: self.issue_description,
            SUPPORT_RESPONSE: self.support_response,
            USER_FOLLOW_UP: self.user_follow_up,
            SOLUTION: self.solution,
            embedding_field: embedding,
        })


@dataclass
class GenerationReport:
    """Итог запуска генерации."""
    requested: int
    generated: int = 0
    first_id: Optional[int] = None
    last_id: Optional[int] = None
    checkpoints: int = 0
    cancelled: bool = False
    skipped: int = 0


class SyntheticDataGenerator:
    """
    Генератор синтетических инцидентов.

    Инциденты генерируются строго последовательно: каждый этап получает
    в промпте полный текст предыдущего. Нумерация продолжается с
    максимального id в хранилище, поэтому повторные запуски не создают
    дубликатов.
    """

    USER_TEMPERATURE = 0.8
    SUPPORT_TEMPERATURE = 0.5
    DEFAULT_BATCH_SIZE = 32

    def __init__(self, orchestrator: ConversationOrchestrator, store: VectorStore,
                 batch_size: int = DEFAULT_BATCH_SIZE,
                 stage_retry_attempts: int = 1,
                 rng: Optional[random.Random] = None,
                 output: OutputPort = console_output,
                 cancel_event: Optional[threading.Event] = None,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        """
        Инициализация генератора.

        Args:
            orchestrator: Оркестратор для внутренних вызовов модели
            store: Хранилище, в которое добавляются инциденты
            batch_size: Размер партии между сохранениями (минимум 1)
            stage_retry_attempts: Попыток на этап при ошибке подключения
            rng: Источник случайности для выбора темы
            output: Порт вывода прогресса
            cancel_event: Флаг отмены (по умолчанию флаг оркестратора)
            sleep: Функция ожидания между повторами
        """
        self._orchestrator = orchestrator
        self._store = store
        self._batch_size = max(1, batch_size)
        self._stage_retry_attempts = max(1, stage_retry_attempts)
        self._rng = rng or random.Random()
        self._output = output
        self._cancel_event = cancel_event or orchestrator.cancel_event
        self._sleep = sleep

    def select_random_theme(self) -> str:
        return self._rng.choice(templates.THEMES)

    def generate(self, count: int, batch_size: Optional[int] = None) -> GenerationReport:
        """
        Генерация инцидентов.

        Args:
            count: Количество инцидентов
            batch_size: Размер партии (по умолчанию из конструктора, минимум 1)

        Returns:
            GenerationReport со статистикой запуска

        Инцидент, на котором модель вернула ответ в неожиданном формате
        (ModelResponseError), пропускается; его id достаётся следующему.
        Ctrl+C во время генерации работает как отмена: уже готовые
        инциденты сохраняются, флаг отмены выставляется.

        Raises:
            ValueError: Если count отрицательный
            ModelError: Неустранимая ошибка модели. Уже сгенерированные
                        инциденты перед этим сохраняются.
        """
        if count < 0:
            raise ValueError("Количество инцидентов не может быть отрицательным")
        batch_size = max(1, batch_size if batch_size is not None else self._batch_size)

        report = GenerationReport(requested=count)
        current_id = self._store.max_id()
        unsaved = 0

        for i in range(count):
            if self._cancel_event.is_set():
                report.cancelled = True
                break

            next_id = current_id + 1
            self._output(f"Generating item {next_id}...\n")

            try:
                record = self.generate_item(next_id)
                self._store.append(record)
            except OperationCancelled:
                report.cancelled = True
                break
            except KeyboardInterrupt:
                logger.info("Генерация прервана пользователем на инциденте %d", next_id)
                self._cancel_event.set()
                report.cancelled = True
                break
            except ModelResponseError as e:
                logger.warning("Инцидент %d пропущен: %s", next_id, e)
                self._output(f"Item {next_id} skipped: {e}\n")
                report.skipped += 1
                continue
            except Exception:
                logger.error("Генерация инцидента %d прервана", next_id)
                if unsaved:
                    self._checkpoint(report)
                raise

            current_id = next_id
            unsaved += 1
            report.generated += 1
            report.last_id = current_id
            if report.first_id is None:
                report.first_id = current_id

            if unsaved >= batch_size or i == count - 1:
                self._checkpoint(report)
                unsaved = 0

        if unsaved:
            self._checkpoint(report)

        if report.cancelled:
            logger.info("Генерация отменена после %d инцидентов", report.generated)
        return report

    def generate_item(self, record_id: int) -> Record:
        """
        Генерация одного инцидента в четыре этапа.

        Бюджеты этапов растут вместе с ожидаемой длиной ответа:
        1/8, 1/4, 1/2 и весь бюджет.
        """
        job = GenerationJob(record_id=record_id, theme=self.select_random_theme())

        job.issue_description = self._run_stage(
            f"{templates.ISSUE_PROMPT}{job.theme}", 8, self.USER_TEMPERATURE,
        )
        job.support_response = self._run_stage(
            f"{templates.SUPPORT_PROMPT}{job.issue_description}", 4,
            self.SUPPORT_TEMPERATURE, job.issue_description,
        )
        job.user_follow_up = self._run_stage(
            f"{templates.FOLLOW_UP_PROMPT}{job.support_response}", 2,
            self.USER_TEMPERATURE, job.support_response,
        )
        job.solution = self._run_stage(
            templates.build_solution_prompt(
                job.issue_description, job.support_response, job.user_follow_up
            ),
            1, self.SUPPORT_TEMPERATURE, job.user_follow_up,
        )

        self._check_cancelled()
        embedding = self._store.embed(job.issue_description)
        return job.to_record(self._store.embedding_field, embedding)

    def _run_stage(self, prompt: str, divisor: int, temperature: float,
                   previous: str = "") -> str:
        self._check_cancelled()
        response = retry_with_backoff(
            self._orchestrator.interact,
            self._stage_retry_attempts,
            prompt,
            self._orchestrator.budget(divisor),
            temperature,
            True,
            retry_on=(ModelConnectionError,),
            sleep=self._sleep,
        )
        # Модель часто повторяет промпт и предыдущий этап
        return self._orchestrator.clean(response, prompt, previous)

    def _checkpoint(self, report: GenerationReport) -> None:
        self._store.save()
        report.checkpoints += 1
        logger.info("Снапшот сохранён: %d записей", len(self._store))

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise OperationCancelled("Генерация отменена")
