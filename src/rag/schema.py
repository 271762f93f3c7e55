"""
Модуль схемы векторного хранилища.

Отвечает за:
- Описание семейств моделей и их слотов эмбедингов
- Упорядоченную схему полей (только добавление, без переименований)
- Запись хранилища (инцидент или факт)
- Проверку записей на соответствие схеме
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


class ModelFamily(Enum):
    """Семейство языковой модели. Определяет слот эмбединга в схеме."""
    PHI = "phi"
    LLAMA = "llama"
    MISTRAL = "mistral"
    MIXTRAL = "mixtral"
    CODELLAMA = "codellama"

    @property
    def embedding_slot(self) -> "ModelFamily":
        """codellama пишет эмбединги в слот llama."""
        if self is ModelFamily.CODELLAMA:
            return ModelFamily.LLAMA
        return self

    @property
    def embedding_field(self) -> str:
        """Имя поля эмбедингов, например 'mistralEmbedding'."""
        return f"{self.embedding_slot.value}Embedding"

    @classmethod
    def parse(cls, value: str) -> "ModelFamily":
        """
        Получение семейства по имени из конфигурации.

        Args:
            value: Имя семейства (регистр не важен)

        Raises:
            UnknownModelFamilyError: Если семейство не поддерживается
        """
        normalized = (value or "").strip().lower()
        for family in cls:
            if family.value == normalized:
                return family
        raise UnknownModelFamilyError(f"Неизвестное семейство модели: '{value}'")

    @classmethod
    def from_model_name(cls, model_name: str) -> "ModelFamily":
        """
        Определение семейства по префиксу имени файла модели.

        Используется только если семейство не задано в конфигурации.
        'mistral-7b-instruct-v0.2.Q4_K_M' -> MISTRAL
        """
        prefix = model_name.replace(":", "-").split("-")[0]
        return cls.parse(prefix)


class FieldKind(Enum):
    """Тип значения поля схемы."""
    INTEGER = "integer"
    TEXT = "text"
    VECTOR = "vector"


ID_FIELD = "id"


class Schema:
    """
    Упорядоченная схема хранилища: имя поля -> тип значения.

    Схема только расширяется: поля добавляются в конец, существующие
    поля не удаляются и не меняют тип. Размерность векторного поля
    фиксируется первым записанным вектором.
    """

    def __init__(self, fields: Iterable[Tuple[str, FieldKind]] = ()) -> None:
        self._fields: "OrderedDict[str, FieldKind]" = OrderedDict()
        self._dimensions: Dict[str, int] = {}
        self._fields[ID_FIELD] = FieldKind.INTEGER
        self.add_fields(fields)

    def add_fields(self, fields: Iterable[Tuple[str, FieldKind]]) -> List[str]:
        """
        Добавление полей, которых ещё нет в схеме.

        Args:
            fields: Пары (имя, тип)

        Returns:
            Список реально добавленных полей
        """
        added = []
        for name, kind in fields:
            if name in self._fields:
                continue
            self._fields[name] = FieldKind(kind)
            added.append(name)
        return added

    def kind_of(self, name: str) -> Optional[FieldKind]:
        return self._fields.get(name)

    def dimension_of(self, name: str) -> Optional[int]:
        return self._dimensions.get(name)

    def declare_dimension(self, name: str, dimension: int) -> None:
        if self._fields.get(name) is not FieldKind.VECTOR:
            raise SchemaViolationError(f"Поле '{name}' не является векторным")
        current = self._dimensions.get(name)
        if current is not None and current != dimension:
            raise SchemaViolationError(
                f"Размерность поля '{name}' уже задана: {current}, получено {dimension}"
            )
        self._dimensions[name] = dimension

    @property
    def field_names(self) -> List[str]:
        return list(self._fields.keys())

    @property
    def text_fields(self) -> List[str]:
        return [n for n, k in self._fields.items() if k is FieldKind.TEXT]

    @property
    def vector_fields(self) -> List[str]:
        return [n for n, k in self._fields.items() if k is FieldKind.VECTOR]

    def __contains__(self, name: str) -> bool:
        return name in self._fields

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Schema):
            return NotImplemented
        return (list(self._fields.items()) == list(other._fields.items())
                and self._dimensions == other._dimensions)

    def validate(self, record: "Record") -> None:
        """
        Проверка записи на соответствие схеме.

        Размерность векторов, впервые встреченных в поле, фиксируется
        только после успешной проверки всей записи.

        Raises:
            SchemaViolationError: Неизвестное поле, неверный тип или размерность
        """
        pending: Dict[str, int] = {}
        for name, value in record.values.items():
            kind = self._fields.get(name)
            if kind is None:
                raise SchemaViolationError(f"Поле '{name}' отсутствует в схеме")
            if value is None:
                continue
            if kind is FieldKind.TEXT and not isinstance(value, str):
                raise SchemaViolationError(f"Поле '{name}' должно быть строкой")
            if kind is FieldKind.VECTOR:
                if isinstance(value, str) or not isinstance(value, (list, tuple)):
                    raise SchemaViolationError(f"Поле '{name}' должно быть вектором")
                if not all(_is_number(x) for x in value):
                    raise SchemaViolationError(
                        f"Вектор в поле '{name}' должен состоять из чисел"
                    )
                expected = self._dimensions.get(name, pending.get(name))
                if expected is not None and expected != len(value):
                    raise SchemaViolationError(
                        f"Размерность вектора в поле '{name}': ожидалось {expected}, "
                        f"получено {len(value)}"
                    )
                pending[name] = len(value)
        for name, dimension in pending.items():
            self._dimensions.setdefault(name, dimension)

    def to_list(self) -> List[Dict[str, Any]]:
        """Сериализация схемы для снапшота."""
        result = []
        for name, kind in self._fields.items():
            entry: Dict[str, Any] = {"name": name, "kind": kind.value}
            if name in self._dimensions:
                entry["dimension"] = self._dimensions[name]
            result.append(entry)
        return result

    @classmethod
    def from_list(cls, entries: List[Dict[str, Any]]) -> "Schema":
        schema = cls()
        for entry in entries:
            name = entry["name"]
            schema.add_fields([(name, FieldKind(entry["kind"]))])
            if "dimension" in entry:
                schema.declare_dimension(name, int(entry["dimension"]))
        return schema


@dataclass
class Record:
    """Запись хранилища: id плюс значения полей схемы."""
    id: int
    values: Dict[str, Any] = field(default_factory=dict)

    def get_text(self, name: str) -> Optional[str]:
        value = self.values.get(name)
        return value if isinstance(value, str) else None

    def get_embedding(self, name: str) -> Optional[List[float]]:
        value = self.values.get(name)
        if value is None or isinstance(value, str):
            return None
        return list(value)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {ID_FIELD: self.id}
        data.update(self.values)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Record":
        values = {k: v for k, v in data.items() if k != ID_FIELD}
        return cls(id=int(data[ID_FIELD]), values=values)


# Поля инцидента в порядке стадий генерации
ISSUE_DESCRIPTION = "issueDescription"
SUPPORT_RESPONSE = "supportResponse"
USER_FOLLOW_UP = "userFollowUp"
SOLUTION = "solution"
ORIGINAL_TEXT = "originalText"

STORE_TYPES = ("tech_support", "facts")


def build_schema(store_type: str, family: ModelFamily) -> Schema:
    """
    Создание схемы для типа хранилища.

    Args:
        store_type: 'tech_support' (синтетические инциденты) или 'facts'
        family: Активное семейство модели

    Returns:
        Новая схема с текстовыми полями и слотом эмбединга
    """
    if store_type == "tech_support":
        text_fields = [ISSUE_DESCRIPTION, SUPPORT_RESPONSE, USER_FOLLOW_UP, SOLUTION]
    elif store_type == "facts":
        text_fields = [ORIGINAL_TEXT]
    else:
        raise SchemaError(f"Неизвестный тип хранилища: '{store_type}'")

    fields = [(name, FieldKind.TEXT) for name in text_fields]
    fields.append((family.embedding_field, FieldKind.VECTOR))
    return Schema(fields)


def retrieval_text_field(store_type: str) -> str:
    """Текстовое поле, которое подставляется в найденные факты."""
    return SUPPORT_RESPONSE if store_type == "tech_support" else ORIGINAL_TEXT


def _is_number(value: Any) -> bool:
    # bool наследуется от int, но компонентой вектора не является
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class SchemaError(Exception):
    """Базовый класс ошибок схемы."""
    pass


class SchemaViolationError(SchemaError):
    """Запись или вектор не соответствуют схеме."""
    pass


class UnknownModelFamilyError(SchemaError):
    """Семейство модели не поддерживается."""
    pass
