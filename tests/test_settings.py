"""Tests for configuration validation and text helpers."""

import pydantic
import pytest

from luna.config.prompt_templates import CONTINUATION_INSTRUCTION, FIRST_TURN_INSTRUCTION, build_system_instruction, format_context
from luna.config.settings import Settings, settings
from luna.src.utils.text_utils import clean_text, symptom_key

REQUIRED = {"GOOGLE_API_KEY": "key", "MONGO_URI": "mongodb://localhost"}


class TestSettings:

    def test_defaults(self):
        assert settings.CHUNK_SIZE == 500
        assert settings.EMBED_BATCH_SIZE == 16
        assert settings.INDEX_BATCH_SIZE == 50
        assert settings.PARTIAL_REPLY_POLICY == "discard"
        assert settings.DEFAULT_TITLE == "Health Query"

    def test_secrets_are_masked(self):
        assert "test-google-key" not in repr(settings)

    @pytest.mark.parametrize("field, value", [("CHUNK_SIZE", 10), ("MAX_WORKERS", 0), ("MAX_WORKERS", 64), ("RETRIEVAL_K", 0), ("INDEX_SAVE_RETRIES", 0)])
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(pydantic.ValidationError):
            Settings(**REQUIRED, **{field: value})

    def test_unknown_partial_policy_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(**REQUIRED, PARTIAL_REPLY_POLICY="keep_everything")


class TestPrompts:

    def test_first_turn_without_context(self):
        assert build_system_instruction(True) == FIRST_TURN_INSTRUCTION

    def test_continuation_with_context(self):
        instruction = build_system_instruction(False, format_context(["one", "two"]))
        assert instruction == CONTINUATION_INSTRUCTION + "\n\nContext:\none\n\ntwo"

    def test_empty_context_block(self):
        assert format_context([]) == ""


class TestTextUtils:

    def test_symptom_key_normalises_case_and_edges(self):
        assert symptom_key("  I Have A Headache\n") == "i have a headache"

    def test_clean_text_strips_invisible_characters(self):
        assert clean_text("\ufeffIron\u200b   deficiency\n\n\n\nanaemia ") == "Iron deficiency\n\nanaemia"
