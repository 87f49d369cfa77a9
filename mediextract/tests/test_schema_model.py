"""
Unit tests for the question schema model.

Tests:
- Building from the configuration shape (types, options, locked defaults)
- Canonical ordering, lookup and chunking
- Loading and validating schema files

Run with: python -m pytest mediextract/tests/test_schema_model.py -v
"""

import copy
import json

import pytest

from mediextract.models.schema import (
    QuestionSchema,
    QuestionType,
    SchemaError,
    load_default_schema,
    load_schema,
    parse_schema,
)
from mediextract.tests.conftest import SCHEMA_DATA


class TestQuestionType:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("text", QuestionType.TEXT),
            ("single_select", QuestionType.SINGLE_SELECT),
            ("multi_select", QuestionType.MULTI_SELECT),
            ("multiple_select", QuestionType.MULTI_SELECT),
            (" Multiple_Select ", QuestionType.MULTI_SELECT),
        ],
    )
    def test_parse(self, raw, expected):
        assert QuestionType.parse(raw) is expected

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            QuestionType.parse("date")


class TestFromDict:
    """Tests for QuestionSchema.from_dict()."""

    def test_structure(self, schema):
        assert schema.table_name == "trial_extraction"
        assert schema.block_numbers == [1, 2]
        assert schema.question_count == 7
        assert [s.name for s in schema.get_block(1).sections] == ["Groups"]

    def test_question_fields(self, schema):
        routes = schema.get_block(2).get_question("routes")
        assert routes.type is QuestionType.MULTI_SELECT
        assert routes.options == ("Oral", "IV", "N/A")
        assert routes.is_multi_select

        extractor = schema.get_block(2).get_question("extractor")
        assert extractor.locked is True
        assert extractor.default == "MJA"
        assert not extractor.has_options

    def test_prompt_dict_uses_canonical_type_names(self, schema):
        data = schema.to_prompt_dict()
        routes = data["blocks"][1]["sections"][0]["questions"][1]
        assert routes["type"] == "multi_select"
        assert data["table_name"] == "trial_extraction"


class TestOrdering:
    """Tests for canonical order and lookup."""

    def test_iter_questions_order(self, schema):
        keys = [q.key for _, _, q in schema.iter_questions()]
        assert keys == ["group_count", "group_2_name", "dose", "traceable", "outcome", "routes", "extractor"]

    def test_canonical_index(self, schema):
        assert schema.canonical_index(1, "group_count") == 0
        assert schema.canonical_index(2, "outcome") == 4
        assert schema.canonical_index(2, "dose") is None
        assert schema.canonical_index(9, "dose") is None

    def test_find_question_by_label_then_key(self, schema):
        assert schema.find_question(1, "  DOSE option ").key == "dose"
        assert schema.find_question(1, "group_2_name").key == "group_2_name"
        assert schema.find_question(1, "Primary outcome") is None
        assert schema.find_question(3, "Dose option") is None
        assert schema.find_question(1, "") is None

    def test_subset_keeps_order(self, schema):
        subset = schema.subset([2, 1])
        assert subset.block_numbers == [1, 2]
        assert schema.subset([2]).question_count == 3

    def test_chunk_blocks(self, schema):
        chunks = schema.chunk_blocks(1)
        assert [c.block_numbers for c in chunks] == [[1], [2]]
        assert [c.block_numbers for c in schema.chunk_blocks(5)] == [[1, 2]]
        assert chunks[1].canonical_index(2, "outcome") == 0

    def test_chunk_size_must_be_positive(self, schema):
        with pytest.raises(ValueError):
            schema.chunk_blocks(0)


class TestParseSchema:
    """Tests for validation of raw schema data."""

    def test_valid(self):
        schema = parse_schema(SCHEMA_DATA)
        assert isinstance(schema, QuestionSchema)

    def test_missing_blocks(self):
        with pytest.raises(SchemaError, match="failed validation"):
            parse_schema({"table_name": "x"})

    def test_question_without_label(self):
        data = copy.deepcopy(SCHEMA_DATA)
        del data["blocks"][0]["sections"][0]["questions"][0]["label"]
        with pytest.raises(SchemaError, match="label"):
            parse_schema(data)

    def test_duplicate_block_number(self):
        data = copy.deepcopy(SCHEMA_DATA)
        data["blocks"][1]["block_number"] = 1
        with pytest.raises(SchemaError, match="Duplicate block number 1"):
            parse_schema(data)

    def test_duplicate_key_in_block(self):
        data = copy.deepcopy(SCHEMA_DATA)
        data["blocks"][0]["sections"][0]["questions"][1]["key"] = "group_count"
        with pytest.raises(SchemaError, match="duplicate question key"):
            parse_schema(data)

    def test_duplicate_label_ignores_case(self):
        data = copy.deepcopy(SCHEMA_DATA)
        data["blocks"][0]["sections"][0]["questions"][1]["label"] = "DOSE OPTION"
        with pytest.raises(SchemaError, match="duplicate question label"):
            parse_schema(data)

    def test_same_label_in_different_blocks_allowed(self):
        data = copy.deepcopy(SCHEMA_DATA)
        data["blocks"][1]["sections"][0]["questions"][0]["label"] = "Dose option"
        assert parse_schema(data).question_count == 7

    def test_select_without_options(self):
        data = copy.deepcopy(SCHEMA_DATA)
        del data["blocks"][0]["sections"][0]["questions"][2]["options"]
        with pytest.raises(SchemaError, match="has no options"):
            parse_schema(data)

    def test_text_with_options(self):
        data = copy.deepcopy(SCHEMA_DATA)
        data["blocks"][0]["sections"][0]["questions"][1]["options"] = ["a"]
        with pytest.raises(SchemaError, match="declares options"):
            parse_schema(data)


class TestLoadSchema:
    """Tests for load_schema() and the bundled schema."""

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "schema.json"
        path.write_text(json.dumps(SCHEMA_DATA), encoding="utf-8")
        assert load_schema(path).question_count == 7

    def test_missing_file(self, tmp_path):
        with pytest.raises(SchemaError, match="not found"):
            load_schema(tmp_path / "nope.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "schema.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(SchemaError, match="not valid JSON"):
            load_schema(path)

    def test_bundled_schema(self):
        schema = load_default_schema()
        assert len(schema.blocks) == 26
        assert schema.question_count == 252
        assert schema.block_numbers[0] == 1

        extractor = schema.find_question(1, "Extractor")
        assert extractor.locked
        assert extractor.default == "MJA"
