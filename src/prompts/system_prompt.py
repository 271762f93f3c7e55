"""
Системный промпт для локальной модели техподдержки.

Содержит:
- Преамбулу, которая ставится перед каждым промптом
- Анти-промпты (стоп-последовательности) по умолчанию

Преамбула загружается из файла system_prompt.txt
"""

import os
from typing import List, Optional


def _load_prompt_from_file(filename: str) -> str:
    """
    Загрузка системного промпта из текстового файла.
    
    Args:
        filename: Имя файла относительно директории prompts
        
    Returns:
        Содержимое файла как строка
        
    Raises:
        FileNotFoundError: Если файл не найден
        IOError: Если не удалось прочитать файл
    """
    prompts_dir = os.path.dirname(os.path.abspath(__file__))
    file_path = os.path.join(prompts_dir, filename)
    
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            return f.read().strip()
    except FileNotFoundError:
        raise FileNotFoundError(f"Файл системного промпта не найден: {file_path}")
    except IOError as e:
        raise IOError(f"Ошибка при чтении файла системного промпта: {e}")


SYSTEM_PROMPT = _load_prompt_from_file("system_prompt.txt")

# Модель печатает <end>, когда заканчивает ответ
DEFAULT_ANTI_PROMPTS: List[str] = ["<end>"]


def get_system_prompt(override: Optional[str] = None) -> str:
    """
    Получение преамбулы для промптов.
    
    Args:
        override: Преамбула из конфигурации. Пустая строка отключает
                  преамбулу, None оставляет преамбулу из файла.
        
    Returns:
        Преамбула, заканчивающаяся пробелом (или пустая строка)
    """
    prompt = SYSTEM_PROMPT if override is None else override.strip()
    return f"{prompt} " if prompt else ""
