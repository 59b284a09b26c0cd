"""Tests for SentenceEmbedder over a fake sentence-transformers model."""

import sys

import numpy as np
import pytest

from luna.src.core.embedder import EmbeddingFunction, SentenceEmbedder, l2_normalize
from luna.src.core.exceptions import EmbeddingModelError

from conftest import FAKE_DIM, FakeSentenceModel


def test_embedder_satisfies_protocol(embedder):
    assert isinstance(embedder, EmbeddingFunction)
    assert embedder.dimension == FAKE_DIM


def test_embed_is_deterministic(embedder):
    assert embedder.embed("lower back pain") == embedder.embed("lower back pain")
    assert embedder.embed("lower back pain") != embedder.embed("nausea")


def test_vectors_are_unit_norm(embedder):
    for vector in embedder.embed_batch(["cramps", "spotting between periods", "fatigue"]):
        assert len(vector) == FAKE_DIM
        assert abs(float(np.linalg.norm(vector)) - 1.0) < 1e-3


def test_batch_preserves_order(embedder):
    texts = ["a", "b", "c"]
    assert embedder.embed_batch(texts) == [embedder.embed(t) for t in texts]


def test_empty_batch_skips_model(embedder, fake_model):
    assert embedder.embed_batch([]) == []
    assert fake_model.calls == 0


def test_langchain_interface_aliases(embedder):
    assert embedder.embed_query("migraine") == embedder.embed("migraine")
    assert embedder.embed_documents(["x", "y"]) == embedder.embed_batch(["x", "y"])


def test_encode_failure_raises_embedding_error():
    embedder = SentenceEmbedder(model=FakeSentenceModel(fail=True))
    with pytest.raises(EmbeddingModelError):
        embedder.embed("anything")


def test_model_load_failure_raises_embedding_error(monkeypatch):
    monkeypatch.setitem(sys.modules, "sentence_transformers", None)
    embedder = SentenceEmbedder(model_name="missing/model")
    with pytest.raises(EmbeddingModelError):
        embedder.load()


def test_l2_normalize_leaves_zero_rows():
    result = l2_normalize(np.array([[3.0, 4.0], [0.0, 0.0]], dtype=np.float32))
    assert result[0].tolist() == pytest.approx([0.6, 0.8])
    assert result[1].tolist() == [0.0, 0.0]
