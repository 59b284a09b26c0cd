"""
Luna - RetrievalService
========================
Request-time top-k retrieval over a persisted ``VectorIndex``.

The index is loaded once at startup and shared read-only across
concurrent turns.  Retrieval never fails a conversation turn: an
unavailable index or a failing query degrades to an empty result with a
warning, and the turn proceeds ungrounded.
"""

from __future__ import annotations

import time
from pathlib import Path

from luna.src.core.embedder import EmbeddingFunction
from luna.src.core.exceptions import IndexUnavailableError
from luna.src.database.vector_store import VectorIndex
from luna.src.utils.logger import get_logger

logger = get_logger(__name__)

_DEFAULT_K = 5


class RetrievalService:
    """
    Parameters
    ----------
    embedder
        The shared ``EmbeddingFunction`` used at ingestion time.
    index_path
        Directory of the persisted index; loaded by ``start()``.
    default_k
        Number of chunks returned when ``retrieve`` gets no *k*.
    """

    __slots__ = ("_embedder", "_index_path", "_index", "_default_k")

    def __init__(self, embedder: EmbeddingFunction, index_path: Path | None = None, default_k: int = _DEFAULT_K) -> None:
        self._embedder = embedder
        self._index_path = Path(index_path) if index_path is not None else None
        self._index: VectorIndex | None = None
        self._default_k = default_k

    @classmethod
    def from_index(cls, embedder: EmbeddingFunction, index: VectorIndex, default_k: int = _DEFAULT_K) -> RetrievalService:
        service = cls(embedder, index.path, default_k)
        service._index = index
        return service

    def start(self) -> bool:
        """
        Load the index.  Returns ``False`` (degraded mode) if unavailable.

        An index whose dimension differs from the embedder's was built by
        another model and is treated as unavailable.
        """
        if self._index_path is None:
            logger.warning("[RETRIEVAL] No index path configured — retrieval disabled.")
            return False
        try:
            index = VectorIndex.load(self._index_path)
            if index.dimension != self._embedder.dimension:
                raise IndexUnavailableError(
                    f"Index at {self._index_path} has {index.dimension}-dim vectors, embedder produces {self._embedder.dimension}; re-run ingestion.",
                    {"index_path": str(self._index_path)},
                )
            self._index = index
        except IndexUnavailableError as exc:
            self._index = None
            logger.warning("[RETRIEVAL] Index unavailable, serving ungrounded: %s", exc)
            return False
        return True

    @property
    def available(self) -> bool:
        return self._index is not None

    def retrieve(self, prompt: str, k: int | None = None) -> list[str]:
        """Ranked chunk texts for *prompt*; ``[]`` when nothing can be retrieved."""
        if self._index is None or not prompt.strip():
            return []

        k = self._default_k if k is None else k
        t_search = time.perf_counter()
        try:
            query_vector = self._embedder.embed(prompt)
            chunks = self._index.search_texts(query_vector, k)
        except Exception as exc:
            logger.warning("[RETRIEVAL] Query failed, returning no context: %s", exc)
            return []

        logger.info("[RETRIEVAL] %d chunk(s) in %.1fms (k=%d).", len(chunks), (time.perf_counter() - t_search) * 1000, k)
        return chunks
