"""
Тесты для преамбулы и шаблонов промптов.
"""

import sys
import os

# Добавляем путь к src для импорта
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from prompts import SYSTEM_PROMPT, DEFAULT_ANTI_PROMPTS, get_system_prompt, templates


def test_system_prompt_loaded_from_file():
    """Преамбула загружается из system_prompt.txt и не пустая."""
    assert SYSTEM_PROMPT
    assert SYSTEM_PROMPT == SYSTEM_PROMPT.strip()
    assert "<end>" in SYSTEM_PROMPT


def test_default_anti_prompts():
    assert DEFAULT_ANTI_PROMPTS == ["<end>"]


def test_get_system_prompt_default():
    assert get_system_prompt() == f"{SYSTEM_PROMPT} "


def test_get_system_prompt_override():
    assert get_system_prompt("  You are a helpdesk bot.  ") == "You are a helpdesk bot. "


def test_get_system_prompt_disabled():
    assert get_system_prompt("") == ""


def test_themes():
    assert len(templates.THEMES) == 7
    assert len(set(templates.THEMES)) == 7


def test_conversation_templates():
    assert templates.build_direct_prompt("wifi drops") == "Solve wifi drops"
    assert templates.build_database_prompt("wifi", "Fact 1: x") == "Solve wifi with: Fact 1: x"
    assert templates.build_merge_prompt("a", "b") == "Pick the best solution(s) from a and b"


def test_solution_prompt_contains_whole_dialogue():
    prompt = templates.build_solution_prompt("issue text", "support text", "follow-up text")

    assert prompt.startswith(templates.SOLUTION_PROMPT)
    assert prompt.index("issue text") < prompt.index("support text") < prompt.index("follow-up text")
