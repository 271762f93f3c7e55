"""
Главный модуль приложения EdgeRag.

Содержит точку входа и консольный интерфейс: чат с моделью (с базой
и без), генерацию синтетических инцидентов и обслуживание хранилища.
"""

import argparse
import logging
import os
import sys
import threading
from typing import Callable, List, Optional

from conversation import (
    ConversationOrchestrator,
    OutputPort,
    SessionSignal,
    console_output,
)
from model_client import BaseModelClient, ModelError, OllamaModelClient
from rag import VectorStore
from rag.schema import SchemaError
from rag.vector_store import VectorStoreError
from settings import AppConfig, ConfigError, ensure_directories, load_config
from synthetic_data import SyntheticDataGenerator


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'config', 'settings.yaml'
)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """
    Настройка логирования приложения.

    Args:
        level: Уровень логирования (DEBUG, INFO, WARNING, ...)
    """
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


class EdgeRagApp:
    """
    Основной класс приложения.

    Координирует работу всех компонентов:
    - Клиент модели для генерации и эмбедингов
    - Векторное хранилище инцидентов или фактов
    - Оркестратор диалога
    - Генератор синтетических данных
    """

    def __init__(self, config: AppConfig,
                 model: Optional[BaseModelClient] = None,
                 output: OutputPort = console_output,
                 read_input: Optional[Callable[[], Optional[str]]] = None) -> None:
        """
        Инициализация приложения.

        Args:
            config: Загруженная конфигурация
            model: Клиент модели (по умолчанию Ollama из конфигурации)
            output: Порт вывода
            read_input: Источник ввода пользователя (по умолчанию input())
        """
        self._config = config
        self._output = output
        self._read_input = read_input or self._console_input
        self._cancel_event = threading.Event()
        self._running = False

        for path in ensure_directories(config):
            self._output(f"Создана директория: {path}\n")

        self._family = config.resolve_family()
        self._model = model if model is not None else self._create_model_client()

        self._store = VectorStore.load(
            config.database_path,
            self._family,
            store_type=config.paths.store_type,
            model=self._model,
        )

        self._orchestrator = self._create_orchestrator(config.retrieval.use_database)
        self._generator = SyntheticDataGenerator(
            self._orchestrator,
            self._store,
            batch_size=config.generation.batch_size,
            stage_retry_attempts=config.generation.stage_retry_attempts,
            output=self._output,
            cancel_event=self._cancel_event,
        )

    @property
    def store(self) -> VectorStore:
        return self._store

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    def _create_model_client(self) -> OllamaModelClient:
        """
        Создание клиента Ollama из конфигурации.

        Недоступность модели не считается фатальной: операции, которым
        нужна модель, сообщат об ошибке сами.
        """
        model_settings = self._config.model
        self._output(
            f"[LLM] Модель: {model_settings.model_name} на "
            f"{model_settings.host}:{model_settings.port}\n"
        )
        client = OllamaModelClient(self._config.ollama_config())
        if not client.check_model_availability():
            self._output(f"[LLM] ПРЕДУПРЕЖДЕНИЕ: Модель {model_settings.model_name} недоступна!\n")
            self._output(f"[LLM]   ollama pull {model_settings.model_name}\n")
        return client

    def _create_orchestrator(self, use_database: bool) -> ConversationOrchestrator:
        model_settings = self._config.model
        return ConversationOrchestrator(
            self._model,
            self._store,
            self._family,
            max_tokens=model_settings.max_tokens,
            temperature=model_settings.temperature,
            anti_prompts=model_settings.anti_prompts,
            system_prompt=model_settings.system_prompt,
            use_database=use_database,
            top_k_display=self._config.retrieval.top_k_display,
            top_k_summary=self._config.retrieval.top_k_summary,
            output=self._output,
            cancel_event=self._cancel_event,
        )

    def start(self) -> None:
        """
        Запуск консольного интерфейса.

        Главный цикл читает команды, пока не будет введена /exit,
        не закончится ввод или не придёт Ctrl+C.
        """
        self.print_welcome()
        self._running = True

        while self._running:
            try:
                user_input = self._read_input()
                if user_input is None:
                    break
                user_input = user_input.strip()
                if not user_input:
                    continue

                response = self.process_input(user_input)
                if response:
                    self._output(f"{response}\n")

            except KeyboardInterrupt:
                self._cancel_event.set()
                self._output("\n\nВыход из программы...\n")
                break
            except ModelError as e:
                logger.error("Ошибка модели: %s", e)
                self._output(f"\nОшибка модели: {e}\n")
            except (SchemaError, VectorStoreError) as e:
                logger.error("Ошибка хранилища: %s", e)
                self._output(f"\nОшибка хранилища: {e}\n")

    def process_input(self, user_input: str) -> Optional[str]:
        """
        Обработка ввода пользователя.

        Команды начинаются с '/'. Любой другой ввод считается запросом
        к модели в режиме из конфигурации.

        Returns:
            Текст для пользователя или None
        """
        if user_input.startswith('/'):
            return self.handle_command(user_input)

        self._orchestrator.handle_turn(user_input)
        return None

    def handle_command(self, command: str) -> Optional[str]:
        """
        Обработка команд пользователя.

        Поддерживаемые команды:
        - /chat - сессия чата без базы
        - /rag - сессия чата с базой
        - /generate <N> - сгенерировать N инцидентов
        - /seed <file> - добавить факты из текстового файла (по одному на строку)
        - /backfill - сгенерировать недостающие эмбединги
        - /stats - статистика хранилища
        - /help - справка
        - /exit или /quit - выход
        """
        parts = command.split()
        cmd = parts[0].lower()
        args = parts[1:]

        if cmd == '/chat':
            return self._run_chat(use_database=False)
        elif cmd == '/rag':
            return self._run_chat(use_database=True)
        elif cmd == '/generate':
            return self._do_generate(args)
        elif cmd == '/seed':
            if not args:
                return "Использование: /seed <file>"
            return self._do_seed(args[0])
        elif cmd == '/backfill':
            filled = self._store.backfill_embeddings()
            if filled:
                self._store.save()
            return f"Сгенерировано эмбедингов: {filled}"
        elif cmd == '/stats':
            return self._format_stats()
        elif cmd == '/help':
            self.print_help()
            return None
        elif cmd in ['/exit', '/quit']:
            self._running = False
            return "До свидания!"
        else:
            return f"Неизвестная команда: {cmd}. Введите /help для справки."

    def _run_chat(self, use_database: bool) -> Optional[str]:
        orchestrator = self._create_orchestrator(use_database)
        signal = orchestrator.run_session(self._read_input)
        if signal is SessionSignal.ABORT:
            self._running = False
            return "До свидания!"
        return None

    def _do_generate(self, args: List[str]) -> str:
        try:
            count = int(args[0]) if args else 1
        except ValueError:
            return f"Некорректное количество: {args[0]}"
        if count < 0:
            return "Количество не может быть отрицательным"

        report = self._generator.generate(count)
        logger.info("Генерация завершена: %s", report)
        if report.cancelled:
            # Отмена касается только генерации, меню продолжает работать
            self._cancel_event.clear()
        status = " (отменено)" if report.cancelled else ""
        if report.generated == 0:
            return f"Инциденты не сгенерированы.{status}"
        message = (f"Сгенерировано инцидентов: {report.generated}{status}\n"
                   f"id: {report.first_id}-{report.last_id}\n"
                   f"Сохранений: {report.checkpoints}")
        if report.skipped:
            message += f"\nПропущено: {report.skipped}"
        return message

    def _do_seed(self, facts_path: str) -> str:
        try:
            with open(facts_path, 'r', encoding='utf-8') as f:
                facts = [line.strip() for line in f if line.strip()]
        except OSError as e:
            return f"Не удалось прочитать файл фактов: {e}"

        try:
            added = self._store.seed_facts(facts)
        except VectorStoreError as e:
            return f"Не удалось добавить факты: {e}"
        self._store.save()
        return f"Добавлено фактов: {added}"

    def _format_stats(self) -> str:
        stats = self._store.stats()
        dimensions = ", ".join(
            f"{name}={dim}" for name, dim in stats["dimensions"].items()
        ) or "нет"
        return (f"Хранилище: {stats['path']} ({stats['store_type']})\n"
                f"Записей: {stats['total_records']}\n"
                f"Максимальный id: {stats['max_id']}\n"
                f"Поля: {', '.join(stats['fields'])}\n"
                f"Размерности эмбедингов: {dimensions}")

    def _console_input(self) -> Optional[str]:
        try:
            return input("\n> ")
        except EOFError:
            return None

    def print_welcome(self) -> None:
        self._output("""
╔════════════════════════════════════════════════╗
║                 EDGE RAG v1.0                  ║
║     Локальный ассистент техподдержки           ║
╚════════════════════════════════════════════════╝

Доступные команды:
  /chat           - Чат без базы
  /rag            - Чат с базой инцидентов
  /generate <N>   - Сгенерировать N инцидентов
  /seed <file>    - Добавить факты из файла
  /backfill       - Сгенерировать недостающие эмбединги
  /stats          - Статистика хранилища
  /help           - Показать справку
  /exit           - Выход
""")

    def print_help(self) -> None:
        self._output("""
Справка по командам:

  /chat
    Сессия чата: ответы модели без поиска в базе

  /rag
    Сессия чата: поиск похожих инцидентов, два черновика и итоговый ответ
    В сессии: пустая строка или back - назад в меню, quit - выход

  /generate <N>
    Генерирует N синтетических инцидентов и добавляет их в базу
    Нумерация продолжается с последнего id

  /seed <file>
    Добавляет факты из текстового файла (по одному на строку)

  /backfill
    Генерирует эмбединги для записей, созданных другой моделью

  /stats
    Показывает статистику хранилища

  /help
    Показывает эту справку

  /exit или /quit
    Завершает работу программы

Любой другой ввод - запрос к модели в режиме из конфигурации.
""")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="EdgeRag: локальный RAG для техподдержки")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH,
                        help="Путь к settings.yaml")
    parser.add_argument("--log-level", default="INFO",
                        help="Уровень логирования")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    """
    Точка входа в приложение.

    Ошибки конфигурации фатальны и завершают процесс с кодом 1.
    """
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = load_config(args.config)
        app = EdgeRagApp(config)
    except FileNotFoundError as e:
        print(f"Ошибка: не найден файл конфигурации - {e}")
        sys.exit(1)
    except ConfigError as e:
        print(f"Ошибка конфигурации: {e}")
        sys.exit(1)

    app.start()


if __name__ == "__main__":
    main()
