"""
Модуль векторного хранилища.

Отвечает за:
- Хранение записей (инцидентов или фактов) и схемы
- Генерацию эмбедингов запроса через модель
- Поиск топ-K похожих записей
- Загрузку и сохранение снапшота в JSON (целиком, атомарно)
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, NamedTuple, Optional

from model_client import BaseModelClient, require_model

from .schema import (
    ID_FIELD,
    ISSUE_DESCRIPTION,
    ORIGINAL_TEXT,
    FieldKind,
    ModelFamily,
    Record,
    Schema,
    SchemaError,
    build_schema,
    retrieval_text_field,
)
from .similarity import RankedMatch, rank

logger = logging.getLogger(__name__)


class QueryResult(NamedTuple):
    """
    Результат запроса к хранилищу.

    context: Блок найденных фактов ("Fact 1: ...") или исходный запрос,
             если ничего не найдено
    ids: id найденных записей в порядке ранжирования
    scores: Соответствующие значения сходства
    """
    context: str
    ids: List[int]
    scores: List[float]

    @property
    def is_empty(self) -> bool:
        return not self.ids


class VectorStore:
    """
    Векторное хранилище фактов и инцидентов.

    Обеспечивает:
    - Добавление записей с проверкой схемы и уникальности id
    - Поиск по косинусному сходству в слоте активного семейства модели
    - Снапшоты: загрузка с восстановлением и атомарное сохранение

    Хранилище рассчитано на одного писателя; синхронизации нет.
    """

    DEFAULT_TOP_K = 3

    def __init__(self, path: str, family: ModelFamily,
                 store_type: str = "tech_support",
                 schema: Optional[Schema] = None,
                 model: Optional[BaseModelClient] = None) -> None:
        """
        Инициализация пустого хранилища.

        Args:
            path: Путь к файлу снапшота
            family: Активное семейство модели (определяет слот эмбединга)
            store_type: 'tech_support' или 'facts'
            schema: Готовая схема (по умолчанию строится по store_type)
            model: Клиент модели для эмбедингов запросов
        """
        self._path = path
        self._family = family
        self._store_type = store_type
        self._schema = schema if schema is not None else build_schema(store_type, family)
        self._model = model
        self._records: List[Record] = []
        self._ids: set = set()
        self._schema.add_fields([(family.embedding_field, FieldKind.VECTOR)])

    @property
    def path(self) -> str:
        return self._path

    @property
    def schema(self) -> Schema:
        return self._schema

    @property
    def family(self) -> ModelFamily:
        return self._family

    @property
    def store_type(self) -> str:
        return self._store_type

    @property
    def embedding_field(self) -> str:
        return self._family.embedding_field

    @property
    def text_field(self) -> str:
        return retrieval_text_field(self._store_type)

    @property
    def records(self) -> List[Record]:
        return list(self._records)

    def attach_model(self, model: Optional[BaseModelClient]) -> None:
        """Подключение (или отключение) клиента модели после загрузки."""
        self._model = model

    def add_schema_fields(self, fields: Iterable) -> List[str]:
        """
        Добавление полей в схему. Существующие поля не меняются.

        Returns:
            Имена добавленных полей
        """
        added = self._schema.add_fields(fields)
        if added:
            logger.info("В схему добавлены поля: %s", ", ".join(added))
        return added

    def append(self, record: Record) -> None:
        """
        Добавление записи.

        Args:
            record: Запись с id, назначенным вызывающей стороной

        Raises:
            DuplicateIdError: Если запись с таким id уже есть
            SchemaViolationError: Если запись не соответствует схеме
        """
        if record.id in self._ids:
            raise DuplicateIdError(f"Запись с id {record.id} уже существует")
        self._schema.validate(record)
        self._records.append(record)
        self._ids.add(record.id)

    def get(self, record_id: int) -> Optional[Record]:
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    def embed(self, text: str) -> List[float]:
        """
        Эмбединг текста через подключённую модель.

        Raises:
            ModelUnavailableError: Если модель не подключена
        """
        model = require_model(self._model)
        return [float(x) for x in model.embed(text)]

    def max_id(self) -> int:
        """Наибольший id в хранилище или 0 для пустого."""
        return max(self._ids) if self._ids else 0

    def query(self, text: str, field: Optional[str] = None,
              k: int = DEFAULT_TOP_K, text_field: Optional[str] = None,
              context_k: Optional[int] = None) -> QueryResult:
        """
        Поиск записей, похожих на текст запроса.

        Args:
            text: Текст запроса
            field: Поле эмбединга (по умолчанию слот активного семейства)
            k: Количество результатов
            text_field: Текстовое поле для блока фактов
            context_k: Сколько первых совпадений попадёт в блок фактов
                       (по умолчанию все k)

        Returns:
            QueryResult. Если хранилище пусто или ни у одной записи нет
            нужного эмбединга, context содержит исходный запрос, а ids и
            scores пусты. Это не ошибка, а сигнал перейти к обычной генерации.

        Raises:
            ModelUnavailableError: Если модель не подключена
            SchemaViolationError: Если размерность эмбединга запроса не
                                  совпадает с размерностью в хранилище
        """
        if not self._records:
            logger.info("Хранилище пусто, поиск пропущен")
            return QueryResult(text, [], [])

        field = field or self.embedding_field
        text_field = text_field or self.text_field

        query_embedding = self.embed(text)
        matches = rank(query_embedding, self._records, field, k, text_field)

        if not matches:
            logger.info("Ни у одной записи нет эмбединга в поле '%s'", field)
            return QueryResult(text, [], [])

        return QueryResult(
            context=format_facts(matches[:context_k] if context_k else matches),
            ids=[m.record_id for m in matches],
            scores=[m.score for m in matches],
        )

    def seed_facts(self, facts: Iterable[str]) -> int:
        """
        Заполнение хранилища фактами с эмбедингами.

        Args:
            facts: Тексты фактов

        Returns:
            Количество добавленных записей

        Raises:
            VectorStoreError: Если хранилище не типа 'facts'
            ModelUnavailableError: Если модель не подключена
        """
        if self._store_type != "facts":
            raise VectorStoreError(
                f"Факты можно добавлять только в хранилище типа 'facts', "
                f"текущее: '{self._store_type}'"
            )
        require_model(self._model)

        next_id = self.max_id()
        added = 0
        for fact in facts:
            next_id += 1
            embedding = self.embed(fact)
            self.append(Record(id=next_id, values={
                ORIGINAL_TEXT: fact,
                self.embedding_field: embedding,
            }))
            added += 1
        logger.info("Добавлено фактов: %d", added)
        return added

    def backfill_embeddings(self, source_field: Optional[str] = None) -> int:
        """
        Генерация недостающих эмбедингов для активного семейства.

        Нужна, когда хранилище создано другой моделью: у старых записей
        слот текущего семейства пуст.

        Args:
            source_field: Текстовое поле-источник (по умолчанию описание
                          инцидента или текст факта)

        Returns:
            Количество записей, получивших эмбединг
        """
        require_model(self._model)

        if source_field is None:
            source_field = ORIGINAL_TEXT if self._store_type == "facts" else ISSUE_DESCRIPTION
        field = self.embedding_field

        filled = 0
        for record in self._records:
            if record.get_embedding(field) is not None:
                continue
            text = record.get_text(source_field)
            if not text:
                continue
            embedding = self.embed(text)
            self._schema.declare_dimension(field, len(embedding))
            record.values[field] = embedding
            filled += 1
        logger.info("Сгенерировано недостающих эмбедингов: %d", filled)
        return filled

    def stats(self) -> Dict[str, Any]:
        """
        Статистика по хранилищу.

        Returns:
            Словарь: total_records, max_id, fields, dimensions, path
        """
        return {
            "total_records": len(self._records),
            "max_id": self.max_id(),
            "store_type": self._store_type,
            "fields": self._schema.field_names,
            "dimensions": {
                name: self._schema.dimension_of(name)
                for name in self._schema.vector_fields
                if self._schema.dimension_of(name) is not None
            },
            "path": self._path,
        }

    def save(self, path: Optional[str] = None) -> str:
        """
        Сохранение полного снапшота в JSON.

        Файл перезаписывается целиком: данные пишутся во временный файл
        в той же директории, затем переименовываются поверх старого.

        Args:
            path: Путь к файлу (по умолчанию путь хранилища)

        Returns:
            Путь к сохранённому файлу
        """
        path = path or self._path
        data = {
            "saved_at": datetime.now().isoformat(),
            "store_type": self._store_type,
            "schema": self._schema.to_list(),
            "records": [record.to_dict() for record in self._records],
        }

        dir_path = os.path.dirname(os.path.abspath(path))
        os.makedirs(dir_path, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(prefix=".snapshot-", suffix=".tmp", dir=dir_path)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

        logger.debug("Снапшот сохранён: %s (%d записей)", path, len(self._records))
        return path

    @classmethod
    def load(cls, path: str, family: ModelFamily,
             store_type: str = "tech_support",
             model: Optional[BaseModelClient] = None) -> "VectorStore":
        """
        Загрузка хранилища из снапшота.

        Args:
            path: Путь к файлу снапшота
            family: Активное семейство модели
            store_type: Тип хранилища, если файла ещё нет
            model: Клиент модели

        Returns:
            Загруженное хранилище. Если файла нет или он повреждён,
            возвращается пустое хранилище (повреждение логируется отдельно).
        """
        if not os.path.exists(path):
            logger.info("Снапшот %s не найден, создано пустое хранилище", path)
            return cls(path, family, store_type=store_type, model=model)

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            store = cls._from_snapshot(path, family, data, model)
        except (ValueError, KeyError, TypeError, SchemaError, DuplicateIdError) as e:
            logger.warning(
                "Снапшот %s повреждён (%s), создано пустое хранилище", path, e
            )
            return cls(path, family, store_type=store_type, model=model)

        logger.info("Загружено записей: %d из %s", len(store), path)
        return store

    @classmethod
    def _from_snapshot(cls, path: str, family: ModelFamily, data: Dict[str, Any],
                       model: Optional[BaseModelClient]) -> "VectorStore":
        if not isinstance(data, dict):
            raise ValueError("корень снапшота должен быть объектом")
        store_type = data.get("store_type", "tech_support")
        schema = Schema.from_list(data["schema"])
        store = cls(path, family, store_type=store_type, schema=schema, model=model)
        for raw in data["records"]:
            if not isinstance(raw, dict) or ID_FIELD not in raw:
                raise ValueError("запись без id")
            store.append(Record.from_dict(raw))
        return store

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[Record]:
        return iter(list(self._records))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VectorStore):
            return NotImplemented
        return (self._store_type == other._store_type
                and self._schema == other._schema
                and self._records == other._records)


def format_facts(matches: List[RankedMatch]) -> str:
    """
    Форматирование найденных записей для промпта.

    Формат:
    Fact 1: <текст>
    Fact 2: <текст>
    """
    return "\n".join(
        f"Fact {i}: {match.text}" for i, match in enumerate(matches, 1)
    )


class VectorStoreError(Exception):
    """Базовый класс ошибок хранилища."""
    pass


class DuplicateIdError(VectorStoreError):
    """Запись с таким id уже существует."""
    pass
