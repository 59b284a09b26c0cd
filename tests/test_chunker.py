"""Tests for the greedy whitespace-token chunker."""

import pytest

from luna.src.core.chunker import chunk, chunk_document, split_text
from luna.src.core.models import Document


def _text_of_length(n_tokens: int) -> str:
    return " ".join(["abcd"] * n_tokens)


class TestSplitText:

    def test_1200_chars_at_500_gives_three_chunks(self):
        text = _text_of_length(240)  # 1199 chars
        chunks = split_text(text, 500)

        assert len(chunks) == 3
        assert [len(c) for c in chunks[:2]] == [504, 504]

    def test_chunk_closes_after_crossing_token(self):
        chunks = split_text("aaaa bbbb cccc", 6)
        assert chunks == ["aaaa bbbb", "cccc"]

    def test_join_reproduces_normalised_text(self):
        text = "  Cramps\n\nand   fatigue\tare common  during the\nfirst days.  " * 20
        chunks = split_text(text, 40)
        assert " ".join(chunks) == " ".join(text.split())

    def test_no_empty_chunks(self):
        chunks = split_text("one two  three   four five six", 7)
        assert chunks
        assert all(c.strip() for c in chunks)

    def test_oversized_token_is_its_own_chunk(self):
        token = "x" * 80
        assert split_text(f"a {token} b", 10) == [f"a {token}", "b"]

    @pytest.mark.parametrize("text", ["", "   ", "\n\t\n"])
    def test_blank_text_gives_no_chunks(self, text):
        assert split_text(text, 500) == []

    @pytest.mark.parametrize("size", [0, -5])
    def test_non_positive_target_rejected(self, size):
        with pytest.raises(ValueError):
            split_text("some text", size)


def test_chunk_carries_source_id():
    chunks = chunk("alpha beta gamma delta", 10, source_id="guide.txt")
    assert chunks
    assert {c.source_id for c in chunks} == {"guide.txt"}


def test_chunk_document_uses_document_source():
    document = Document(source_id="sub/leaflet.md", text=_text_of_length(30))
    chunks = chunk_document(document, 50)
    assert all(c.source_id == "sub/leaflet.md" for c in chunks)
    assert " ".join(c.text for c in chunks) == document.text
