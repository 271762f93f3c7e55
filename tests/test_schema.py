"""
Тесты для модуля схемы хранилища.
"""

import unittest
import sys
import os

# Добавляем путь к src для импорта
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from rag.schema import (
    ID_FIELD,
    ISSUE_DESCRIPTION,
    ORIGINAL_TEXT,
    SUPPORT_RESPONSE,
    FieldKind,
    ModelFamily,
    Record,
    Schema,
    SchemaError,
    SchemaViolationError,
    UnknownModelFamilyError,
    build_schema,
    retrieval_text_field,
)


class TestModelFamily(unittest.TestCase):
    """Тесты для ModelFamily."""

    def test_embedding_field(self):
        self.assertEqual(ModelFamily.MISTRAL.embedding_field, "mistralEmbedding")
        self.assertEqual(ModelFamily.PHI.embedding_field, "phiEmbedding")

    def test_codellama_uses_llama_slot(self):
        self.assertEqual(ModelFamily.CODELLAMA.embedding_slot, ModelFamily.LLAMA)
        self.assertEqual(ModelFamily.CODELLAMA.embedding_field, "llamaEmbedding")

    def test_parse_is_case_insensitive(self):
        self.assertEqual(ModelFamily.parse(" Mixtral "), ModelFamily.MIXTRAL)

    def test_parse_unknown(self):
        with self.assertRaises(UnknownModelFamilyError):
            ModelFamily.parse("gpt")

    def test_from_model_name(self):
        """Семейство по префиксу имени файла или тега Ollama."""
        self.assertEqual(
            ModelFamily.from_model_name("mistral-7b-instruct-v0.2.Q4_K_M"),
            ModelFamily.MISTRAL
        )
        self.assertEqual(ModelFamily.from_model_name("phi:latest"), ModelFamily.PHI)
        self.assertEqual(ModelFamily.from_model_name("codellama-13b"), ModelFamily.CODELLAMA)

    def test_from_model_name_unknown(self):
        with self.assertRaises(UnknownModelFamilyError):
            ModelFamily.from_model_name("qwen3:8b")


class TestSchema(unittest.TestCase):
    """Тесты для Schema."""

    def setUp(self):
        self.schema = Schema([
            ("text", FieldKind.TEXT),
            ("vec", FieldKind.VECTOR),
        ])

    def test_id_field_is_first(self):
        self.assertEqual(self.schema.field_names, [ID_FIELD, "text", "vec"])
        self.assertEqual(self.schema.kind_of(ID_FIELD), FieldKind.INTEGER)

    def test_add_fields_is_append_only(self):
        added = self.schema.add_fields([
            ("text", FieldKind.VECTOR),
            ("extra", FieldKind.TEXT),
        ])

        self.assertEqual(added, ["extra"])
        self.assertEqual(self.schema.kind_of("text"), FieldKind.TEXT)
        self.assertEqual(self.schema.field_names[-1], "extra")

    def test_text_and_vector_fields(self):
        self.assertEqual(self.schema.text_fields, ["text"])
        self.assertEqual(self.schema.vector_fields, ["vec"])
        self.assertIn("vec", self.schema)
        self.assertNotIn("missing", self.schema)

    def test_validate_fixes_dimension(self):
        """Размерность фиксируется первым вектором."""
        self.schema.validate(Record(1, {"vec": [0.1, 0.2, 0.3]}))
        self.assertEqual(self.schema.dimension_of("vec"), 3)

        with self.assertRaises(SchemaViolationError):
            self.schema.validate(Record(2, {"vec": [0.1, 0.2]}))

    def test_validate_unknown_field(self):
        with self.assertRaises(SchemaViolationError):
            self.schema.validate(Record(1, {"unknown": "x"}))

    def test_validate_wrong_types(self):
        with self.assertRaises(SchemaViolationError):
            self.schema.validate(Record(1, {"text": 42}))
        with self.assertRaises(SchemaViolationError):
            self.schema.validate(Record(1, {"vec": "not a vector"}))

    def test_validate_vector_components(self):
        """Компоненты вектора - только числа; bool и строки отвергаются."""
        with self.assertRaises(SchemaViolationError):
            self.schema.validate(Record(1, {"vec": ["a", "b"]}))
        with self.assertRaises(SchemaViolationError):
            self.schema.validate(Record(1, {"vec": [True, 0.5]}))
        with self.assertRaises(SchemaViolationError):
            self.schema.validate(Record(1, {"vec": [0.5, None]}))
        self.assertIsNone(self.schema.dimension_of("vec"))

        self.schema.validate(Record(1, {"vec": [1, 0.5]}))
        self.assertEqual(self.schema.dimension_of("vec"), 2)

    def test_failed_validation_does_not_fix_dimension(self):
        with self.assertRaises(SchemaViolationError):
            self.schema.validate(Record(1, {"vec": [1.0, 2.0], "text": 5}))
        self.assertIsNone(self.schema.dimension_of("vec"))

    def test_none_values_are_allowed(self):
        self.schema.validate(Record(1, {"text": None, "vec": None}))
        self.assertIsNone(self.schema.dimension_of("vec"))

    def test_declare_dimension(self):
        self.schema.declare_dimension("vec", 4)
        self.assertEqual(self.schema.dimension_of("vec"), 4)

        with self.assertRaises(SchemaViolationError):
            self.schema.declare_dimension("vec", 5)
        with self.assertRaises(SchemaViolationError):
            self.schema.declare_dimension("text", 4)

    def test_serialization(self):
        self.schema.declare_dimension("vec", 2)
        entries = self.schema.to_list()

        self.assertEqual(entries[0], {"name": "id", "kind": "integer"})
        self.assertEqual(entries[2], {"name": "vec", "kind": "vector", "dimension": 2})
        self.assertEqual(Schema.from_list(entries), self.schema)


class TestRecord(unittest.TestCase):
    """Тесты для Record."""

    def test_to_dict_puts_id_first(self):
        record = Record(7, {"text": "hello", "vec": [1.0]})
        data = record.to_dict()

        self.assertEqual(list(data.keys())[0], "id")
        self.assertEqual(Record.from_dict(data), record)

    def test_getters(self):
        record = Record(1, {"text": "hello", "vec": (1, 2)})

        self.assertEqual(record.get_text("text"), "hello")
        self.assertIsNone(record.get_text("vec"))
        self.assertEqual(record.get_embedding("vec"), [1, 2])
        self.assertIsNone(record.get_embedding("text"))
        self.assertIsNone(record.get_embedding("missing"))


class TestBuildSchema(unittest.TestCase):
    """Тесты для build_schema."""

    def test_tech_support_schema(self):
        schema = build_schema("tech_support", ModelFamily.LLAMA)

        self.assertEqual(schema.field_names, [
            "id", "issueDescription", "supportResponse", "userFollowUp",
            "solution", "llamaEmbedding",
        ])

    def test_facts_schema(self):
        schema = build_schema("facts", ModelFamily.PHI)
        self.assertEqual(schema.field_names, ["id", ORIGINAL_TEXT, "phiEmbedding"])

    def test_unknown_store_type(self):
        with self.assertRaises(SchemaError):
            build_schema("logs", ModelFamily.PHI)

    def test_retrieval_text_field(self):
        self.assertEqual(retrieval_text_field("tech_support"), SUPPORT_RESPONSE)
        self.assertEqual(retrieval_text_field("facts"), ORIGINAL_TEXT)
        self.assertNotEqual(retrieval_text_field("tech_support"), ISSUE_DESCRIPTION)


if __name__ == '__main__':
    unittest.main()
