"""
Шаблоны промптов для диалога и генерации синтетических инцидентов.
"""

from typing import List

# Темы синтетических инцидентов, выбираются случайно для каждого элемента
THEMES: List[str] = [
    "a specific Apple device",
    "a specific Android device",
    "a specific Windows device",
    "a specific printer or copier",
    "a specific networking device",
    "a specific piece of software",
    "a specific piece of tech hardware",
]

ISSUE_PROMPT = "Describe a specific tech issue about: "
SUPPORT_PROMPT = "Try to solve this tech issue: "
FOLLOW_UP_PROMPT = "As the user, reply to this support response with a follow-up question or detail: "
SOLUTION_PROMPT = "Choose the most likely solution and summarize it for this conversation: "


def build_direct_prompt(query: str) -> str:
    return f"Solve {query}"


def build_database_prompt(query: str, facts: str) -> str:
    """Промпт черновика с учётом найденных фактов."""
    return f"Solve {query} with: {facts}"


def build_merge_prompt(database_draft: str, plain_draft: str) -> str:
    """Промпт финального ответа: выбрать лучшее из двух черновиков."""
    return f"Pick the best solution(s) from {database_draft} and {plain_draft}"


def build_solution_prompt(issue: str, support: str, follow_up: str) -> str:
    # Решение строится по всему диалогу, последним идёт ответ пользователя
    return f"{SOLUTION_PROMPT}Issue: {issue} Suggested fix: {support} Follow-up: {follow_up}"
