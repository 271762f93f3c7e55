"""
Модуль ранжирования по косинусному сходству.

Отвечает за:
- Вычисление косинусного сходства между векторами
- Ранжирование записей хранилища относительно эмбединга запроса
"""

import math
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

import numpy as np

from .schema import Record, SchemaViolationError


@dataclass
class RankedMatch:
    """Запись, найденная по сходству."""
    record_id: int
    score: float
    text: str


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """
    Вычисление косинусного сходства между векторами.

    Args:
        vec1: Первый вектор
        vec2: Второй вектор

    Returns:
        Значение от -1 до 1, либо NaN если один из векторов нулевой

    Raises:
        SchemaViolationError: Если размерности векторов не совпадают

    Формула:
    cos(θ) = (A · B) / (||A|| * ||B||)
    """
    vec1_np = np.asarray(vec1, dtype=float)
    vec2_np = np.asarray(vec2, dtype=float)

    if vec1_np.shape != vec2_np.shape:
        raise SchemaViolationError(
            f"Размерности векторов не совпадают: {vec1_np.size} и {vec2_np.size}"
        )

    norm1 = np.linalg.norm(vec1_np)
    norm2 = np.linalg.norm(vec2_np)

    if norm1 == 0 or norm2 == 0:
        return float("nan")

    score = float(np.dot(vec1_np, vec2_np) / (norm1 * norm2))
    # Погрешность float может дать 1.0000000002
    return max(-1.0, min(1.0, score))


def rank(query_embedding: Sequence[float], records: Iterable[Record],
         field: str, k: int, text_field: str = "") -> List[RankedMatch]:
    """
    Ранжирование записей по сходству с эмбедингом запроса.

    Args:
        query_embedding: Эмбединг запроса
        records: Записи в порядке вставки
        field: Имя поля эмбединга (слот активного семейства)
        k: Количество результатов
        text_field: Текстовое поле, возвращаемое в результате

    Returns:
        До k результатов, по убыванию сходства

    Записи без поля пропускаются, а не получают ноль. При равных
    значениях выигрывает запись, вставленная раньше (сортировка стабильна).
    """
    if k <= 0:
        return []

    scored: List[Tuple[float, Record]] = []
    for record in records:
        embedding = record.get_embedding(field)
        if embedding is None:
            continue
        score = cosine_similarity(query_embedding, embedding)
        if math.isnan(score):
            continue
        scored.append((score, record))

    scored.sort(key=lambda item: item[0], reverse=True)

    return [
        RankedMatch(
            record_id=record.id,
            score=score,
            text=record.get_text(text_field) or "",
        )
        for score, record in scored[:k]
    ]
