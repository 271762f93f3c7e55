"""
Тесты для главного модуля main.py.

Включает unit-тесты команд и интеграционные тесты с фейковой моделью.
"""

import pytest
from unittest.mock import Mock, patch
import sys
import os
import json

import yaml

# Добавляем путь к src для импорта
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from main import EdgeRagApp, main, parse_args, setup_logging
from model_client import BaseModelClient, ModelError
from rag import ModelFamily, Record, VectorStore
from rag.schema import ISSUE_DESCRIPTION, SUPPORT_RESPONSE
from settings import AppConfig


class FakeModel(BaseModelClient):
    """Модель, отвечающая номером вызова."""

    def __init__(self, embedding=None):
        self.generate_calls = 0
        self.embedding = embedding or [1.0, 0.5, 0.0]

    def embed(self, text):
        return self.embedding

    def generate(self, prompt, stop_sequences, max_tokens, temperature):
        self.generate_calls += 1
        yield f"answer-{self.generate_calls}"


class InterruptingModel(FakeModel):
    """Модель, на заданном вызове generate имитирующая Ctrl+C."""

    def __init__(self, interrupt_on):
        super().__init__()
        self.interrupt_on = interrupt_on

    def generate(self, prompt, stop_sequences, max_tokens, temperature):
        self.generate_calls += 1
        if self.generate_calls == self.interrupt_on:
            raise KeyboardInterrupt
        yield f"answer-{self.generate_calls}"


# ============================================================================
# Фикстуры
# ============================================================================

@pytest.fixture
def config(tmp_path):
    """Конфигурация с путями во временной директории."""
    return AppConfig.from_dict({
        'model': {'model_name': 'mistral:7b-instruct', 'system_prompt': ''},
        'generation': {'batch_size': 2},
    }, base_dir=str(tmp_path))


@pytest.fixture
def output():
    return []


def make_app(config, output, inputs=(), model=None):
    """Приложение с фейковой моделью и заданным вводом."""
    feed = iter(inputs)
    return EdgeRagApp(
        config,
        model=model or FakeModel(),
        output=output.append,
        read_input=lambda: next(feed, None),
    )


# ============================================================================
# Инициализация
# ============================================================================

class TestEdgeRagAppInit:
    """Тесты инициализации приложения."""

    def test_directories_created(self, config, output):
        make_app(config, output)

        assert os.path.isdir(config.models_dir)
        assert os.path.isdir(config.datasets_dir)
        assert any("Создана директория" in text for text in output)

    def test_empty_store_when_no_snapshot(self, config, output):
        app = make_app(config, output)

        assert len(app.store) == 0
        assert app.store.path == config.database_path

    def test_existing_snapshot_loaded(self, config, output):
        app = make_app(config, output)
        app.handle_command('/generate 2')

        reloaded = make_app(config, [])
        assert reloaded.store.max_id() == 2

    @patch('main.OllamaModelClient')
    def test_default_model_client(self, mock_client_cls, config, output):
        mock_client_cls.return_value.check_model_availability.return_value = False

        EdgeRagApp(config, output=output.append)

        mock_client_cls.assert_called_once()
        assert mock_client_cls.call_args.args[0].model_name == "mistral:7b-instruct"
        assert any("недоступна" in text for text in output)


# ============================================================================
# Команды
# ============================================================================

class TestHandleCommand:
    """Тесты обработки команд."""

    def test_generate(self, config, output):
        app = make_app(config, output)

        result = app.handle_command('/generate 3')

        assert "Сгенерировано инцидентов: 3" in result
        assert "id: 1-3" in result
        assert "Сохранений: 2" in result
        with open(config.database_path, 'r', encoding='utf-8') as f:
            assert len(json.load(f)["records"]) == 3

    def test_generate_invalid_count(self, config, output):
        app = make_app(config, output)

        assert "Некорректное количество" in app.handle_command('/generate many')
        assert "отрицательным" in app.handle_command('/generate -1')
        assert "не сгенерированы" in app.handle_command('/generate 0')

    def test_stats(self, config, output):
        app = make_app(config, output)
        app.handle_command('/generate 1')

        result = app.handle_command('/stats')

        assert "Записей: 1" in result
        assert "mistralEmbedding=3" in result

    def test_seed(self, config, output, tmp_path):
        facts_config = AppConfig.from_dict({
            'model': {'family': 'phi', 'system_prompt': ''},
            'paths': {'store_type': 'facts', 'database_file': 'facts.json'},
        }, base_dir=str(tmp_path))
        facts_file = tmp_path / "facts.txt"
        facts_file.write_text("Restart the router\n\nCheck the cable\n", encoding='utf-8')
        app = make_app(facts_config, output)

        result = app.handle_command(f'/seed {facts_file}')

        assert result == "Добавлено фактов: 2"
        assert os.path.exists(facts_config.database_path)

    def test_seed_missing_file(self, config, output):
        app = make_app(config, output)
        assert "Не удалось прочитать" in app.handle_command('/seed /nonexistent/facts.txt')

    def test_seed_into_incident_store_is_reported(self, config, output, tmp_path):
        facts_file = tmp_path / "facts.txt"
        facts_file.write_text("Restart the router\n", encoding='utf-8')
        app = make_app(config, output, inputs=[f'/seed {facts_file}', '/exit'])

        app.start()

        assert any("Не удалось добавить факты" in text for text in output)
        assert "До свидания!\n" in output
        assert len(app.store) == 0

    def test_seed_without_argument(self, config, output):
        app = make_app(config, output)
        assert app.handle_command('/seed') == "Использование: /seed <file>"

    def test_generate_interrupted(self, config, output):
        """Ctrl+C во время генерации: готовое сохранено, меню работает дальше."""
        model = InterruptingModel(interrupt_on=6)
        app = make_app(config, output, model=model)

        result = app.handle_command('/generate 3')

        assert "Сгенерировано инцидентов: 1 (отменено)" in result
        assert not app.cancel_event.is_set()
        with open(config.database_path, 'r', encoding='utf-8') as f:
            assert [r["id"] for r in json.load(f)["records"]] == [1]

    def test_backfill_nothing_to_do(self, config, output):
        app = make_app(config, output)
        assert app.handle_command('/backfill') == "Сгенерировано эмбедингов: 0"

    def test_help(self, config, output):
        app = make_app(config, output)

        assert app.handle_command('/help') is None
        assert "Справка по командам" in "".join(output)

    def test_exit(self, config, output):
        app = make_app(config, output)
        assert app.handle_command('/EXIT') == "До свидания!"

    def test_unknown_command(self, config, output):
        app = make_app(config, output)
        assert "Неизвестная команда" in app.handle_command('/unknown')


# ============================================================================
# Главный цикл
# ============================================================================

class TestStart:
    """Тесты главного цикла."""

    def test_exit_stops_loop(self, config, output):
        app = make_app(config, output, inputs=['/exit', '/generate 1'])

        app.start()

        assert len(app.store) == 0
        assert "До свидания!\n" in output

    def test_plain_message_uses_configured_mode(self, config, output):
        model = FakeModel()
        app = make_app(config, output, inputs=['printer jam'], model=model)

        app.start()

        # База пуста: запрос уходит в прямой режим
        assert model.generate_calls == 1
        assert any("No matches found!" in text for text in output)

    def test_chat_session_then_menu(self, config, output):
        model = FakeModel()
        app = make_app(config, output, inputs=['/chat', 'wifi', 'back', '/exit'], model=model)

        app.start()

        assert model.generate_calls == 1
        assert "Сессия чата завершена.\n" in output

    def test_quit_inside_session_stops_app(self, config, output):
        app = make_app(config, output, inputs=['/rag', 'quit', '/generate 1'])

        app.start()

        assert len(app.store) == 0

    def test_keyboard_interrupt_sets_cancel(self, config, output):
        app = make_app(config, output)
        app._read_input = Mock(side_effect=KeyboardInterrupt)

        app.start()

        assert app.cancel_event.is_set()

    def test_welcome_lists_all_commands(self, config, output):
        app = make_app(config, output)

        app.start()

        welcome = output[-1] if output else ""
        for command in ('/chat', '/rag', '/generate', '/seed', '/backfill', '/stats', '/help', '/exit'):
            assert command in welcome

    def test_rag_with_other_dimension_falls_back(self, config, output):
        """База на 3 измерения, модель отдаёт 4: ответ без базы, цикл жив."""
        existing = VectorStore(config.database_path, ModelFamily.MISTRAL)
        existing.append(Record(1, {
            ISSUE_DESCRIPTION: "printer jam",
            SUPPORT_RESPONSE: "open the tray",
            "mistralEmbedding": [1.0, 0.0, 0.0],
        }))
        existing.save()
        model = FakeModel(embedding=[1.0, 0.0, 0.0, 0.0])
        app = make_app(config, output, inputs=['/rag', 'printer jam', 'back', '/exit'], model=model)

        app.start()

        assert model.generate_calls == 1
        assert any("Embedding dimension mismatch" in text for text in output)
        assert "До свидания!\n" in output

    def test_store_error_is_reported(self, config, output):
        existing = VectorStore(config.database_path, ModelFamily.MISTRAL)
        existing.append(Record(1, {ISSUE_DESCRIPTION: "a", "mistralEmbedding": [1.0, 0.0, 0.0]}))
        existing.append(Record(2, {ISSUE_DESCRIPTION: "b"}))
        existing.save()
        model = FakeModel(embedding=[1.0, 0.0, 0.0, 0.0])
        app = make_app(config, output, inputs=['/backfill', '/exit'], model=model)

        app.start()

        assert any("Ошибка хранилища" in text for text in output)
        assert "До свидания!\n" in output

    def test_model_error_is_reported(self, config, output):
        model = Mock(spec=BaseModelClient)
        model.embed.return_value = [1.0]
        model.generate.side_effect = ModelError("boom")
        app = make_app(config, output, inputs=['/generate 1', '/exit'], model=model)

        app.start()

        assert any("Ошибка модели: boom" in text for text in output)


# ============================================================================
# Точка входа
# ============================================================================

class TestMain:
    """Тесты функции main."""

    def test_parse_args_defaults(self):
        args = parse_args([])

        assert args.config.endswith(os.path.join('config', 'settings.yaml'))
        assert args.log_level == "INFO"

    def test_missing_config_exits(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(['--config', str(tmp_path / 'missing.yaml')])
        assert exc_info.value.code == 1

    def test_invalid_config_exits(self, tmp_path):
        config_dir = tmp_path / 'config'
        config_dir.mkdir()
        config_path = config_dir / 'settings.yaml'
        config_path.write_text(yaml.dump({'paths': {'store_type': 'logs'}}), encoding='utf-8')

        with pytest.raises(SystemExit) as exc_info:
            main(['--config', str(config_path)])
        assert exc_info.value.code == 1

    @patch('main.EdgeRagApp')
    def test_main_starts_app(self, mock_app, tmp_path):
        config_dir = tmp_path / 'config'
        config_dir.mkdir()
        config_path = config_dir / 'settings.yaml'
        config_path.write_text(yaml.dump({'model': {'family': 'phi'}}), encoding='utf-8')

        main(['--config', str(config_path), '--log-level', 'WARNING'])

        mock_app.return_value.start.assert_called_once()

    def test_setup_logging_accepts_unknown_level(self):
        setup_logging("nonsense")
