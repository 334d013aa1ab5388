"""Tests for the small shared helpers: thresholds, dedup keys, metadata, prompts."""

import pytest

from prompts import build_system_prompt
from remote_store import flatten_metadata, unflatten_metadata
from utils import memory_id_for_upsert, normalize_threshold, parse_factor


class TestThresholds:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (0.8, 0.8),
            ("0.75", 0.75),
            ("85%", 0.85),
            (" 60% ", 0.6),
            ("1.7", 1.0),
            (-0.2, 0.0),
            ("abc", 0.75),
            (None, 0.75),
            (float("nan"), 0.75),
            (True, 0.75),
        ],
    )
    def test_normalize_threshold(self, value, expected):
        assert normalize_threshold(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value,expected", [("0.5", 0.5), (0.9, 0.9), ("abc", 0.7), (None, 0.7), ("0", 0.7)])
    def test_parse_factor(self, value, expected):
        assert parse_factor(value, 0.7) == pytest.approx(expected)


class TestDedupKey:
    def test_key_ignores_case_and_padding(self):
        assert memory_id_for_upsert("  Hello There ", "prompt") == memory_id_for_upsert("hello there", "prompt")

    def test_key_depends_on_type(self):
        assert memory_id_for_upsert("hello", "prompt") != memory_id_for_upsert("hello", "response")

    def test_key_format(self):
        key = memory_id_for_upsert("hello", "prompt")
        assert key.startswith("dedup_")
        assert len(key) == len("dedup_") + 16


class TestMetadataFlattening:
    def test_nested_values_become_json_strings(self):
        flat = flatten_metadata({"content": "x", "messageId": None, "metadata": {"topic": "cars"}, "ids": [1, 2]})
        assert flat == {"content": "x", "metadata_json": '{"topic": "cars"}', "ids_json": "[1, 2]"}

    def test_string_lists_are_kept(self):
        assert flatten_metadata({"tags": ["a", "b"]}) == {"tags": ["a", "b"]}

    def test_unflatten_restores_nested_values(self):
        flat = flatten_metadata({"content": "x", "metadata": {"topic": "cars"}})
        assert unflatten_metadata(flat) == {"content": "x", "metadata": {"topic": "cars"}}

    def test_unflatten_keeps_undecodable_strings(self):
        assert unflatten_metadata({"notes_json": "{broken"}) == {"notes_json": "{broken"}
        assert unflatten_metadata(None) == {}


class TestSystemPrompt:
    def test_context_is_included(self):
        prompt = build_system_prompt("[Memory 1] something", remote_available=True)
        assert "RELEVANT CONTEXT:\n[Memory 1] something" in prompt
        assert "not configured" not in prompt

    def test_remote_hint_without_context(self):
        prompt = build_system_prompt("", remote_available=True)
        assert "remote archive" in prompt
        assert "RELEVANT CONTEXT" not in prompt

    def test_specialization(self):
        prompt = build_system_prompt("ctx", use_case="customer_support")
        assert "customer support" in prompt
        assert "not configured" in prompt

    def test_unknown_use_case_is_general(self):
        assert build_system_prompt("ctx", use_case="pirate") == build_system_prompt("ctx")
