"""
Модуль промптов для LLM.

Содержит:
    - SYSTEM_PROMPT: Преамбула для всех промптов
    - get_system_prompt(): Преамбула с учётом конфигурации
    - templates: Шаблоны промптов диалога и генерации инцидентов
"""

from .system_prompt import (
    SYSTEM_PROMPT,
    DEFAULT_ANTI_PROMPTS,
    get_system_prompt,
)
from . import templates

__all__ = [
    "SYSTEM_PROMPT",
    "DEFAULT_ANTI_PROMPTS",
    "get_system_prompt",
    "templates",
]
