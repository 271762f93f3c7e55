"""
EdgeRag - локальный RAG-движок для техподдержки.

Модули:
    - main: Точка входа и консольный интерфейс
    - settings: Загрузка конфигурации из YAML
    - model_client: Клиент локальной модели (Ollama)
    - conversation: Оркестратор диалога с моделью
    - synthetic_data: Генерация синтетических инцидентов
    - rag: Схема, поиск по сходству и векторное хранилище
    - prompts: Преамбула и шаблоны промптов
"""

__version__ = "1.0.0"
__author__ = "Support Team"
