"""Tests for parsing and repairing synthesis model JSON output."""

from __future__ import annotations

import json

import pytest

from intelligence.errors import ReportParseError
from intelligence.research.json_repair import parse_model_json, repair_truncated_json


class TestParseModelJson:
    def test_plain_json(self):
        assert parse_model_json('{"a": 1}') == {"a": 1}

    def test_fenced_json_with_prose(self):
        text = 'Here is the report:\n```json\n{"subject": {"full_name": "John Smith"}}\n```\nDone.'
        assert parse_model_json(text) == {"subject": {"full_name": "John Smith"}}

    def test_json_embedded_in_prose(self):
        text = 'Sure. {"a": [1, 2, 3]} Let me know if you need more.'
        assert parse_model_json(text) == {"a": [1, 2, 3]}

    def test_truncated_nested_structure(self):
        assert parse_model_json('{"a": {"b": [1, 2') == {"a": {"b": [1, 2]}}

    def test_truncated_inside_string(self):
        assert parse_model_json('{"a": "hel') == {"a": "hel"}

    def test_truncated_open_fence(self):
        text = '```json\n{"sections": [{"title": "Executive Summary"'
        assert parse_model_json(text) == {"sections": [{"title": "Executive Summary"}]}

    def test_empty_output_raises(self):
        with pytest.raises(ReportParseError):
            parse_model_json("   ")

    def test_unrecoverable_output_raises(self):
        with pytest.raises(ReportParseError):
            parse_model_json("I could not find enough information about this person.")


class TestRepairTruncatedJson:
    def test_brackets_inside_strings_are_ignored(self):
        repaired = repair_truncated_json('{"a": "x}]", "b": [')
        assert json.loads(repaired) == {"a": "x}]", "b": []}

    def test_escaped_quote_inside_string(self):
        repaired = repair_truncated_json('{"quote": "he said \\"hi\\"", "list": [{"k": 1')
        assert json.loads(repaired) == {"quote": 'he said "hi"', "list": [{"k": 1}]}

    def test_trailing_comma_removed(self):
        assert json.loads(repair_truncated_json('{"a": 1,')) == {"a": 1}

    def test_dangling_key_gets_null(self):
        assert json.loads(repair_truncated_json('{"a":')) == {"a": None}

    def test_closers_in_reverse_order(self):
        assert repair_truncated_json('[{"a": [') == '[{"a": []}]'

    def test_complete_json_unchanged(self):
        assert repair_truncated_json('{"a": 1}') == '{"a": 1}'
