"""
Модуль конфигурации приложения.

Отвечает за:
- Загрузку YAML конфигурации
- Преобразование секций в типизированные dataclass'ы со значениями по умолчанию
- Определение активного семейства модели
- Создание директорий моделей и датасетов
"""

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml

from model_client import OllamaConfig
from prompts import DEFAULT_ANTI_PROMPTS
from rag.schema import STORE_TYPES, ModelFamily, UnknownModelFamilyError


logger = logging.getLogger(__name__)


def read_yaml(config_path: str) -> dict:
    """
    Загрузка конфигурации из YAML файла.

    Args:
        config_path: Путь к файлу конфигурации

    Returns:
        Словарь с конфигурацией (пустой для пустого файла)

    Raises:
        FileNotFoundError: Если файл не найден
        yaml.YAMLError: Если ошибка парсинга YAML
    """
    with open(config_path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


@dataclass
class ModelSettings:
    """Секция model: подключение к Ollama и параметры генерации."""
    host: str = "localhost"
    port: int = 11434
    model_name: str = "mistral"
    embedding_model: Optional[str] = None
    family: str = ""
    temperature: float = 0.5
    timeout: int = 120
    retry_attempts: int = 3
    max_tokens: int = 0  # 0 - максимум для семейства модели
    anti_prompts: List[str] = field(default_factory=lambda: list(DEFAULT_ANTI_PROMPTS))
    system_prompt: Optional[str] = None


@dataclass
class RetrievalSettings:
    """Секция retrieval."""
    use_database: bool = True
    top_k_display: int = 5
    top_k_summary: int = 3


@dataclass
class GenerationSettings:
    """Секция generation."""
    batch_size: int = 32
    stage_retry_attempts: int = 1


@dataclass
class PathsSettings:
    """Секция paths. Относительные пути считаются от базовой директории."""
    models_dir: str = "models"
    datasets_dir: str = "datasets"
    database_file: str = "tech_support.json"
    store_type: str = "tech_support"


@dataclass
class AppConfig:
    """Полная конфигурация приложения."""
    model: ModelSettings = field(default_factory=ModelSettings)
    retrieval: RetrievalSettings = field(default_factory=RetrievalSettings)
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    paths: PathsSettings = field(default_factory=PathsSettings)
    base_dir: str = "."

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: str = ".") -> "AppConfig":
        """
        Построение конфигурации из словаря.

        Args:
            data: Содержимое YAML
            base_dir: Директория, от которой считаются относительные пути

        Raises:
            ConfigError: Неизвестный ключ или некорректное значение
        """
        if not isinstance(data, dict):
            raise ConfigError("Конфигурация должна быть словарём")

        config = cls(
            model=_build_section(ModelSettings, data.get('model'), 'model'),
            retrieval=_build_section(RetrievalSettings, data.get('retrieval'), 'retrieval'),
            generation=_build_section(GenerationSettings, data.get('generation'), 'generation'),
            paths=_build_section(PathsSettings, data.get('paths'), 'paths'),
            base_dir=base_dir,
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.paths.store_type not in STORE_TYPES:
            raise ConfigError(f"Неизвестный тип хранилища: {self.paths.store_type}")
        if self.model.max_tokens < 0:
            raise ConfigError("model.max_tokens не может быть отрицательным")
        if self.retrieval.top_k_summary < 1 or self.retrieval.top_k_display < 1:
            raise ConfigError("retrieval.top_k_* должны быть не меньше 1")
        self.resolve_family()

    def resolve_family(self) -> ModelFamily:
        """
        Определение активного семейства модели.

        Явное значение model.family имеет приоритет. Если оно не задано,
        семейство определяется по префиксу имени модели.
        """
        try:
            if self.model.family:
                return ModelFamily.parse(self.model.family)
            family = ModelFamily.from_model_name(self.model.model_name)
        except UnknownModelFamilyError as e:
            raise ConfigError(f"{e}. Укажите model.family явно")
        logger.info("Семейство модели определено по имени: %s", family.value)
        return family

    def ollama_config(self) -> OllamaConfig:
        return OllamaConfig(
            host=self.model.host,
            port=self.model.port,
            model_name=self.model.model_name,
            embedding_model=self.model.embedding_model,
            timeout=self.model.timeout,
            retry_attempts=self.model.retry_attempts,
        )

    def resolve_path(self, path: str) -> str:
        if os.path.isabs(path):
            return path
        return os.path.join(self.base_dir, path)

    @property
    def models_dir(self) -> str:
        return self.resolve_path(self.paths.models_dir)

    @property
    def datasets_dir(self) -> str:
        return self.resolve_path(self.paths.datasets_dir)

    @property
    def database_path(self) -> str:
        return os.path.join(self.datasets_dir, self.paths.database_file)


def _build_section(section_cls: type, raw: Optional[Dict[str, Any]], name: str):
    if raw is None:
        return section_cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"Секция '{name}' должна быть словарём")
    known = {f.name for f in fields(section_cls)}
    unknown = set(raw) - known
    if unknown:
        raise ConfigError(f"Неизвестные ключи в секции '{name}': {', '.join(sorted(unknown))}")
    try:
        return section_cls(**raw)
    except TypeError as e:
        raise ConfigError(f"Некорректная секция '{name}': {e}")


def load_config(config_path: str, base_dir: Optional[str] = None) -> AppConfig:
    """
    Загрузка конфигурации приложения.

    Args:
        config_path: Путь к settings.yaml
        base_dir: Базовая директория для относительных путей
                  (по умолчанию родитель директории config/)

    Returns:
        AppConfig

    Raises:
        FileNotFoundError: Если файл не найден
        ConfigError: Если конфигурация некорректна
    """
    if base_dir is None:
        base_dir = os.path.dirname(os.path.dirname(os.path.abspath(config_path)))
    try:
        data = read_yaml(config_path)
    except yaml.YAMLError as e:
        raise ConfigError(f"Ошибка парсинга {config_path}: {e}")
    return AppConfig.from_dict(data, base_dir=base_dir)


def ensure_directories(config: AppConfig) -> List[str]:
    """
    Создание директорий моделей и датасетов, если их нет.

    Returns:
        Список созданных директорий
    """
    created = []
    for path in (config.models_dir, config.datasets_dir):
        if not os.path.exists(path):
            os.makedirs(path)
            logger.info("Создана директория: %s", path)
            created.append(path)
    return created


class ConfigError(Exception):
    """Ошибка конфигурации."""
    pass
