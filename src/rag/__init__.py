"""
RAG (Retrieval-Augmented Generation) модуль.

Компоненты:
    - schema: Схема записей, семейства моделей и слоты эмбедингов
    - similarity: Косинусное сходство и ранжирование записей
    - vector_store: Хранилище записей со снапшотами в JSON
"""

from .schema import ModelFamily, Record, Schema, FieldKind
from .similarity import RankedMatch, cosine_similarity, rank
from .vector_store import VectorStore, QueryResult

__all__ = [
    "ModelFamily",
    "Record",
    "Schema",
    "FieldKind",
    "RankedMatch",
    "cosine_similarity",
    "rank",
    "VectorStore",
    "QueryResult",
]
