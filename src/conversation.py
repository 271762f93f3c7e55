"""
Модуль диалога с моделью.

Отвечает за:
- Вычисление бюджета токенов по семейству модели
- Очистку ответов модели (эхо промпта, ролевые метки, пробелы)
- Прямой режим: один вызов модели на запрос
- Режим с базой: поиск в хранилище, два внутренних черновика и финальный ответ
- Цикл сессии с кооперативной отменой и сигналами завершения
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from model_client import BaseModelClient, ModelUnavailableError, require_model
from prompts import DEFAULT_ANTI_PROMPTS, get_system_prompt
from prompts import templates
from rag.schema import ModelFamily, SchemaViolationError
from rag.vector_store import VectorStore


logger = logging.getLogger(__name__)

# Максимум токенов по семействам; 2048 - минимум для phi-подобных моделей
DEFAULT_MAX_TOKENS: Dict[ModelFamily, int] = {
    ModelFamily.PHI: 2048,
    ModelFamily.LLAMA: 4096,
    ModelFamily.MISTRAL: 4096,
    ModelFamily.MIXTRAL: 32768,
    ModelFamily.CODELLAMA: 65536,
}
MIN_MAX_TOKENS = 2048

ROLE_TAGS = ("Narrator:", "AI:", "User:", "Support:")

MAX_CHART_STARS = 75

OutputPort = Callable[[str], None]


def console_output(text: str) -> None:
    """Порт вывода по умолчанию: печать без перевода строки."""
    print(text, end="", flush=True)


def resolve_max_tokens(family: Optional[ModelFamily], override: Optional[int] = None) -> int:
    """
    Бюджет токенов для семейства модели.

    Args:
        family: Семейство модели (None - неизвестно)
        override: Явное значение из конфигурации; 0 или None - по семейству

    Returns:
        Положительный бюджет токенов
    """
    if override is not None and override > 0:
        return override
    return DEFAULT_MAX_TOKENS.get(family, MIN_MAX_TOKENS)


def clean_up(text: str, anti_prompts: Sequence[str] = (),
             echoes: Sequence[str] = ()) -> str:
    """
    Очистка ответа модели.

    Args:
        text: Сырой ответ
        anti_prompts: Стоп-последовательности, которые модель могла напечатать
        echoes: Тексты промптов, которые модель могла повторить

    Returns:
        Текст без эхо, ролевых меток и повторяющихся пробелов

    Проходы повторяются, пока текст меняется: удаление метки может
    склеить новую (например, 'UsUser:er:'), поэтому функция идемпотентна.
    """
    removals = [e for e in echoes if e and e.strip()]
    # Длинные эхо удаляем первыми, чтобы не разрезать их короткими
    removals.sort(key=len, reverse=True)
    removals.extend(a for a in anti_prompts if a)
    removals.extend(ROLE_TAGS)

    previous = None
    while text != previous:
        previous = text
        for item in removals:
            text = text.replace(item, "")
        text = text.replace("\r", " ")
        text = re.sub(r" {2,}", " ", text)
        text = text.strip()
    return text


def classify_input(user_input: Optional[str]) -> "SessionSignal":
    """
    Разбор ввода пользователя в цикле сессии.

    - пустой ввод или 'back' - завершить сессию
    - 'quit' или 'exit' - прервать работу приложения
    - остальное - обычный запрос
    """
    if user_input is None:
        return SessionSignal.END_SESSION
    command = user_input.strip().lower()
    if not command or command == "back":
        return SessionSignal.END_SESSION
    if command in ("quit", "exit"):
        return SessionSignal.ABORT
    return SessionSignal.CONTINUE


def format_score_chart(ids: Sequence[int], scores: Sequence[float],
                       width: int = MAX_CHART_STARS) -> str:
    """
    Горизонтальная диаграмма сходства найденных инцидентов.

    Формат строки:
    Incident 12: Similarity: 0.87 [*****-----]
    """
    lines = ["Most similar tickets:"]
    for record_id, score in zip(ids, scores):
        stars = int(round(max(0.0, score) * width))
        bar = ("*" * stars).ljust(width, "-")
        lines.append(f"Incident\t{record_id}: \tSimilarity: {score:.2f} [{bar}]")
    return "\n".join(lines) + "\n"


class SessionSignal(Enum):
    """Результат обработки ввода в цикле сессии."""
    CONTINUE = "continue"
    END_SESSION = "end_session"
    ABORT = "abort"


@dataclass
class TurnResult:
    """Результат одного хода диалога."""
    response: str
    used_retrieval: bool
    ids: List[int] = field(default_factory=list)
    scores: List[float] = field(default_factory=list)


class ConversationOrchestrator:
    """
    Оркестратор диалога с моделью.

    Обеспечивает:
    - Прямые ответы модели (потоком пользователю)
    - Ответы с учётом базы: факты из хранилища, черновик с фактами,
      черновик без контекста и финальный ответ, объединяющий оба
    - Внутренние вызовы (без вывода пользователю) для генератора данных

    Все вызовы модели последовательны: поток ответа читается до конца
    перед следующим этапом. Между этапами проверяется флаг отмены.
    """

    def __init__(self, model: Optional[BaseModelClient],
                 store: Optional[VectorStore],
                 family: Optional[ModelFamily],
                 max_tokens: Optional[int] = None,
                 temperature: float = 0.5,
                 anti_prompts: Optional[Sequence[str]] = None,
                 system_prompt: Optional[str] = None,
                 use_database: bool = False,
                 top_k_display: int = 5,
                 top_k_summary: int = 3,
                 output: OutputPort = console_output,
                 cancel_event: Optional[threading.Event] = None) -> None:
        """
        Инициализация оркестратора.

        Args:
            model: Клиент модели (None - модель ещё не загружена)
            store: Векторное хранилище для режима с базой
            family: Активное семейство модели
            max_tokens: Бюджет токенов; 0/None - по семейству
            temperature: Температура ответов в диалоге
            anti_prompts: Стоп-последовательности
            system_prompt: Преамбула (None - из system_prompt.txt)
            use_database: Режим с базой для всей сессии
            top_k_display: Сколько совпадений показать пользователю
            top_k_summary: Сколько совпадений передать модели как факты
            output: Порт вывода для потоковых ответов и уведомлений
            cancel_event: Флаг кооперативной отмены
        """
        self._model = model
        self._store = store
        self._family = family
        self._temperature = temperature
        self._anti_prompts = list(anti_prompts) if anti_prompts is not None else list(DEFAULT_ANTI_PROMPTS)
        self._preamble = get_system_prompt(system_prompt)
        self._use_database = use_database
        self._top_k_display = top_k_display
        self._top_k_summary = top_k_summary
        self._output = output
        self._cancel_event = cancel_event or threading.Event()
        self._transcript = ""

        self.max_tokens = resolve_max_tokens(family, max_tokens)
        family_name = family.value if family else "unknown"
        logger.info("Модель семейства %s, бюджет токенов: %d", family_name, self.max_tokens)

    @property
    def transcript(self) -> str:
        """Склеенная история ходов, только для отображения."""
        return self._transcript

    @property
    def use_database(self) -> bool:
        return self._use_database

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    def budget(self, divisor: int = 1) -> int:
        """Доля бюджета токенов, не меньше 1."""
        return max(1, self.max_tokens // divisor)

    def attach_model(self, model: Optional[BaseModelClient]) -> None:
        self._model = model

    def clean(self, text: str, *echoes: str) -> str:
        """clean_up с анти-промптами этого оркестратора."""
        return clean_up(text, self._anti_prompts, echoes)

    def interact(self, prompt: str, max_tokens: int,
                 temperature: Optional[float] = None,
                 internal: bool = True) -> str:
        """
        Один вызов модели.

        Args:
            prompt: Текст промпта (преамбула добавляется автоматически)
            max_tokens: Бюджет токенов вызова
            temperature: Температура (по умолчанию температура диалога)
            internal: True - не выводить ответ пользователю

        Returns:
            Склеенные чанки ответа (без очистки)

        Raises:
            ModelUnavailableError: Если модель не загружена
        """
        model = require_model(self._model)
        full_prompt = f"{self._preamble}{prompt}".strip()
        if temperature is None:
            temperature = self._temperature

        chunks: List[str] = []
        for text in model.generate(full_prompt, self._anti_prompts, max_tokens, temperature):
            if not internal:
                self._output(text)
            chunks.append(text)
        if not internal:
            self._output("\n")

        response = "".join(chunks)
        logger.debug("Ответ модели: %d символов (internal=%s)", len(response), internal)
        return response

    def respond_direct(self, query: str) -> TurnResult:
        """
        Ответ без базы: один потоковый вызов модели.
        """
        prompt = templates.build_direct_prompt(query)
        response = self.interact(prompt, self.budget(8), internal=False)
        return TurnResult(response=self.clean(response, prompt), used_retrieval=False)

    def respond_with_retrieval(self, query: str) -> TurnResult:
        """
        Ответ с учётом базы.

        Этапы:
        1. Поиск похожих записей в хранилище
        2. Черновик по найденным фактам (внутренний, 1/8 бюджета)
        3. Черновик без контекста (внутренний, 1/8 бюджета)
        4. Финальный ответ из лучших частей черновиков (потоком, весь бюджет)

        Если в базе ничего не нашлось или эмбединги базы несовместимы с
        текущей моделью, ответ строится в прямом режиме.
        """
        if self._store is None:
            raise ModelUnavailableError("Хранилище не загружено")

        self._check_cancelled()
        try:
            result = self._store.query(
                query,
                k=max(self._top_k_display, self._top_k_summary),
                context_k=self._top_k_summary,
            )
        except SchemaViolationError as e:
            logger.warning("Поиск по базе невозможен: %s", e)
            self._output(
                f"Embedding dimension mismatch ({e}). Using standard model response:\n"
            )
            return self.respond_direct(query)

        if result.is_empty:
            self._output("No matches found! Using standard model response:\n")
            return self.respond_direct(query)

        self._output(f"\nClosest ticket matches for: {query}\n\n")
        self._output(format_score_chart(
            result.ids[:self._top_k_display], result.scores[:self._top_k_display]
        ))

        self._check_cancelled()
        database_prompt = templates.build_database_prompt(query, result.context)
        database_draft = self.clean(
            self.interact(database_prompt, self.budget(8), internal=True),
            database_prompt
        )

        self._check_cancelled()
        plain_prompt = templates.build_direct_prompt(query)
        plain_draft = self.clean(
            self.interact(plain_prompt, self.budget(8), internal=True),
            plain_prompt
        )

        self._check_cancelled()
        merge_prompt = templates.build_merge_prompt(database_draft, plain_draft)
        response = self.clean(
            self.interact(merge_prompt, self.budget(), internal=False),
            merge_prompt
        )

        return TurnResult(
            response=response,
            used_retrieval=True,
            ids=list(result.ids),
            scores=list(result.scores),
        )

    def handle_turn(self, query: str) -> TurnResult:
        """
        Обработка одного запроса пользователя в режиме сессии.

        Raises:
            OperationCancelled: Если отмена запрошена между этапами
            ModelUnavailableError: Если модель не загружена
        """
        self._check_cancelled()
        if self._use_database:
            result = self.respond_with_retrieval(query)
        else:
            result = self.respond_direct(query)
        self._transcript += f"{query}\n{result.response}\n"
        return result

    def run_session(self, read_input: Callable[[], Optional[str]]) -> SessionSignal:
        """
        Цикл сессии: читает запросы, пока пользователь не завершит сессию.

        Args:
            read_input: Источник ввода (None или EOFError - конец ввода)

        Returns:
            END_SESSION - пользователь вернулся в меню (пустой ввод, 'back')
            ABORT - запрошен выход ('quit'/'exit') или отмена
        """
        mode = "с базой" if self._use_database else "без базы"
        self._output(f"\nЧат запущен ({mode}). Введите запрос (back - назад, quit - выход):\n")

        while True:
            if self._cancel_event.is_set():
                return SessionSignal.ABORT

            try:
                user_input = read_input()
            except EOFError:
                user_input = None

            signal = classify_input(user_input)
            if signal is SessionSignal.END_SESSION:
                self._output("Сессия чата завершена.\n")
                return signal
            if signal is SessionSignal.ABORT:
                return signal

            try:
                self.handle_turn(user_input.strip())
            except OperationCancelled:
                logger.info("Ход диалога отменён")
                return SessionSignal.ABORT
            except ModelUnavailableError as e:
                self._output(f"\nОшибка: {e}\n")
                return SessionSignal.END_SESSION

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise OperationCancelled("Операция отменена")


class ConversationError(Exception):
    """Базовый класс ошибок диалога."""
    pass


class OperationCancelled(ConversationError):
    """Отмена запрошена между этапами."""
    pass
