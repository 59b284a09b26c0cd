"""
Luna - Embedding Function
==========================
One shared embedding capability for corpus chunks *and* runtime queries.

``SentenceEmbedder`` wraps a local ``sentence-transformers`` model
(default ``all-MiniLM-L6-v2``: mean pooling, 384 dimensions).  Vectors are
re-normalised to unit L2 norm in numpy, so inner-product, cosine and L2
rankings over them coincide.

The same instance must be handed to ``IngestionPipeline`` and
``RetrievalService``; a query embedded by a differently configured model
still "works" but silently ranks garbage.

Concurrency
-----------
The model is loaded once, under a lock (double-checked).  Inference is
not serialised: ``SentenceTransformer.encode`` is safe to call from
several threads.

Usage:
    embedder = SentenceEmbedder(settings.EMBEDDING_MODEL)
    embedder.load()                      # fail fast at startup
    vector = embedder.embed("cramps and fatigue")
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

import numpy as np
from langchain_core.embeddings import Embeddings

from luna.src.core.exceptions import EmbeddingModelError
from luna.src.core.models import Vector
from luna.src.utils.logger import get_logger

logger = get_logger(__name__)

_DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
_DEFAULT_BATCH_SIZE = 16


@runtime_checkable
class EmbeddingFunction(Protocol):
    """Structural type consumed by ingestion and retrieval alike."""

    @property
    def dimension(self) -> int: ...

    def embed(self, text: str) -> Vector: ...

    def embed_batch(self, texts: Sequence[str]) -> list[Vector]: ...


def l2_normalize(matrix: np.ndarray) -> np.ndarray:
    """Row-wise L2 normalisation; all-zero rows are left as zeros."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    return np.divide(matrix, norms, out=np.zeros_like(matrix), where=norms > 0)


class SentenceEmbedder(Embeddings):
    """
    ``EmbeddingFunction`` backed by ``sentence-transformers``.

    Also implements LangChain's ``Embeddings`` interface
    (``embed_documents`` / ``embed_query``).

    Parameters
    ----------
    model_name
        HuggingFace model id.
    device
        Torch device (``"cpu"``, ``"cuda"``); ``None`` lets the library pick.
    batch_size
        Internal encode batch size.
    model
        Pre-built model object exposing ``encode``; skips loading.
    """

    def __init__(self, model_name: str = _DEFAULT_MODEL, device: str | None = None, batch_size: int = _DEFAULT_BATCH_SIZE, model: Any = None) -> None:
        self.model_name = model_name
        self._device = device
        self._batch_size = batch_size
        self._model: Any = model
        self._lock = threading.Lock()

    # ── Model lifecycle ───────────────────────────────────────────────

    def load(self) -> None:
        """Load the model now.  Raises ``EmbeddingModelError`` on failure."""
        self._ensure_model()

    def _ensure_model(self) -> Any:
        if self._model is None:
            with self._lock:
                if self._model is None:
                    self._model = self._load_model()
        return self._model

    def _load_model(self) -> Any:
        logger.info("Loading embedding model: %s", self.model_name)
        try:
            from sentence_transformers import SentenceTransformer

            model = SentenceTransformer(self.model_name, device=self._device)
        except Exception as exc:
            logger.error("Failed to load embedding model '%s': %s", self.model_name, exc)
            raise EmbeddingModelError(f"Failed to load embedding model '{self.model_name}': {exc}") from exc
        logger.info("Embedding model loaded: %s (dim=%d)", self.model_name, model.get_sentence_embedding_dimension())
        return model

    @property
    def dimension(self) -> int:
        return int(self._ensure_model().get_sentence_embedding_dimension())

    # ── Embedding ─────────────────────────────────────────────────────

    def embed_batch(self, texts: Sequence[str]) -> list[Vector]:
        """Embed *texts* in order; one unit-norm vector per input."""
        if not texts:
            return []
        model = self._ensure_model()

        try:
            raw = model.encode(list(texts), batch_size=self._batch_size, normalize_embeddings=True, convert_to_numpy=True, show_progress_bar=False)
        except Exception as exc:
            logger.error("Embedding %d text(s) failed: %s", len(texts), exc)
            raise EmbeddingModelError(f"Embedding failed: {exc}") from exc

        matrix = np.asarray(raw, dtype=np.float32)
        if matrix.ndim == 1:
            matrix = matrix.reshape(1, -1)
        if matrix.shape[0] != len(texts):
            raise EmbeddingModelError(f"Expected {len(texts)} vectors, got {matrix.shape[0]}")

        return l2_normalize(matrix).tolist()

    def embed(self, text: str) -> Vector:
        return self.embed_batch([text])[0]

    # ── LangChain Embeddings interface ────────────────────────────────

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return self.embed_batch(texts)

    def embed_query(self, text: str) -> list[float]:
        return self.embed(text)

    def __repr__(self) -> str:
        return f"SentenceEmbedder(model='{self.model_name}', loaded={self._model is not None})"
