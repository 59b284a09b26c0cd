"""
Luna - IngestionPipeline
=========================
Offline pipeline that turns source documents into a persisted
``VectorIndex``: extract → clean → chunk → embed → checkpoint → index →
save.

Key design decisions:
    • **Dependency Injection**: receives the shared ``EmbeddingFunction``
      and a ``DocumentSource``; nothing is constructed from globals.
    • **Two checkpoints**: a precomputed-embeddings JSON file and the
      persisted index directory.  Each is complete-or-absent: written to a
      ``.tmp`` path and published with ``os.replace``.  Re-runs skip every
      stage whose checkpoint already exists.
    • **One checkpoint per index**: unless given explicitly, the embeddings
      file sits next to the index directory (``<index>.embeddings.json``),
      so two indexes never share cached embeddings.
    • **Model-bound artifacts**: a checkpoint or index produced by a
      different embedding model or dimension is stale and is rebuilt.
    • **Embeddings first**: the embeddings checkpoint is on disk before
      index construction starts, so a failed index build never costs a
      re-embed.
    • **Concurrency**: embedding batches are computed on a
      ``ThreadPoolExecutor``; results are collected in submission order.
    • **Bounded memory**: index insertion happens in fixed-size batches,
      applied strictly in order, with ``gc.collect()`` and a short pause
      between batches.
    • **Retry on save**: persisting a fully built index is retried with
      exponential backoff (``tenacity``) before the run is aborted.

Usage:
    from luna.src.core.ingestor import DirectoryDocumentSource, IngestionPipeline
    pipeline = IngestionPipeline(embedder, DirectoryDocumentSource(settings.DATA_RAW_DIR))
    summary  = pipeline.run()
"""

from __future__ import annotations

import gc
import json
import os
import shutil
import time
from collections.abc import Iterable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from luna.config.settings import settings
from luna.src.core.chunker import chunk_document
from luna.src.core.embedder import EmbeddingFunction
from luna.src.core.exceptions import IndexUnavailableError, IngestionError
from luna.src.core.models import Chunk, Document, Vector
from luna.src.database.vector_store import IndexPair, VectorIndex
from luna.src.utils.logger import get_logger
from luna.src.utils.text_utils import clean_text

logger = get_logger(__name__)

# File extensions the directory source knows how to read
_SUPPORTED_EXTENSIONS = {".txt", ".md", ".pdf"}

_CHECKPOINT_VERSION = "1"

# Initial delay and cap (seconds) of the index save backoff
_SAVE_BACKOFF_SECONDS = 0.5
_SAVE_BACKOFF_MAX_SECONDS = 8.0


# ══════════════════════════════════════════════════════════════════════
#  DOCUMENT SOURCES
# ══════════════════════════════════════════════════════════════════════


class DocumentSource(Protocol):
    """Anything that yields extracted ``Document``s."""

    def __iter__(self) -> Iterator[Document]: ...


class InMemoryDocumentSource:
    """Wraps documents that are already extracted."""

    def __init__(self, documents: Iterable[Document]) -> None:
        self._documents = list(documents)

    def __iter__(self) -> Iterator[Document]:
        return iter(self._documents)


class DirectoryDocumentSource:
    """
    Reads ``.txt`` / ``.md`` / ``.pdf`` files from a directory (recursively)
    or a single file, in sorted order.

    ``source_id`` is the path relative to the root directory (the file
    name in single-file mode).  Empty files are skipped.
    """

    def __init__(self, root: Path, extensions: set[str] | None = None) -> None:
        self._root = Path(root)
        self._extensions = extensions or _SUPPORTED_EXTENSIONS

    def __iter__(self) -> Iterator[Document]:
        if not self._root.exists():
            raise FileNotFoundError(f"Source path not found: {self._root}")

        if self._root.is_file():
            files = [self._root]
            base = self._root.parent
        else:
            files = sorted(p for p in self._root.rglob("*") if p.is_file() and p.suffix.lower() in self._extensions)
            base = self._root

        for path in files:
            text = self._read_file(path)
            if not text.strip():
                logger.warning("Skipping empty file: %s", path.name)
                continue
            yield Document(source_id=path.relative_to(base).as_posix(), text=text)

    @staticmethod
    def _read_file(path: Path) -> str:
        """Plain text as UTF-8 (cp1252 fallback); PDFs page by page."""
        if path.suffix.lower() == ".pdf":
            return _extract_pdf_text(path)
        try:
            return path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            return path.read_text(encoding="cp1252")


def _extract_pdf_text(path: Path) -> str:
    import fitz  # PyMuPDF

    with fitz.open(path) as pdf:
        return " ".join(page.get_text() for page in pdf)


# ══════════════════════════════════════════════════════════════════════
#  EMBEDDINGS CHECKPOINT
# ══════════════════════════════════════════════════════════════════════


def embeddings_path_for(index_path: Path) -> Path:
    """Default embeddings checkpoint for the index at *index_path*."""
    index_path = Path(index_path)
    return index_path.with_name(index_path.name + ".embeddings.json")


def write_embeddings_checkpoint(path: Path, chunks: Sequence[Chunk], vectors: Sequence[Vector], model: str = "") -> None:
    """Write ``(chunk, vector)`` records to *path* atomically."""
    if len(chunks) != len(vectors):
        raise ValueError(f"Length mismatch: {len(chunks)} chunks vs {len(vectors)} vectors.")

    payload = {
        "version": _CHECKPOINT_VERSION,
        "model": model,
        "dimension": len(vectors[0]) if vectors else 0,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "records": [
            {"text": c.text, "source_id": c.source_id, "embedding": list(v)}
            for c, v in zip(chunks, vectors)
        ],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
    os.replace(tmp, path)


def read_embeddings_checkpoint(path: Path, model: str = "", dimension: int | None = None) -> list[IndexPair] | None:
    """
    Load a checkpoint written by ``write_embeddings_checkpoint``.

    Returns ``None`` when the file is absent or unreadable; an unreadable
    file is never treated as valid.  When *model* or *dimension* is given,
    a checkpoint recorded for a different model or vector size is
    rejected the same way.
    """
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        records = payload["records"]
        pairs = [
            ([float(x) for x in r["embedding"]], Chunk(text=str(r["text"]), source_id=str(r.get("source_id", ""))))
            for r in records
        ]
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError):
        logger.warning("Corrupt embeddings checkpoint at %s — recomputing.", path)
        return None
    if not pairs:
        logger.warning("Empty embeddings checkpoint at %s — recomputing.", path)
        return None

    stored_model = payload.get("model") or ""
    if model and stored_model and stored_model != model:
        logger.warning("Embeddings checkpoint at %s was built with '%s', not '%s' — recomputing.", path, stored_model, model)
        return None
    if dimension is not None and any(len(vector) != dimension for vector, _ in pairs):
        logger.warning("Embeddings checkpoint at %s has %d-dim vectors, embedder has %d — recomputing.", path, len(pairs[0][0]), dimension)
        return None
    return pairs


# ══════════════════════════════════════════════════════════════════════
#  PIPELINE
# ══════════════════════════════════════════════════════════════════════


class IngestionPipeline:
    """
    Checkpointed document → index pipeline.

    Parameters
    ----------
    embedder
        The shared ``EmbeddingFunction`` (same instance retrieval uses).
    source
        ``DocumentSource`` providing extracted documents.
    embeddings_path
        Embeddings checkpoint file.  Defaults to ``settings.EMBEDDINGS_PATH``
        for the default index, otherwise to ``embeddings_path_for(index_path)``.
    index_path
        Published index directory.  Defaults to ``settings.INDEX_PATH``.
    """

    def __init__(
        self,
        embedder: EmbeddingFunction,
        source: DocumentSource,
        embeddings_path: Path | None = None,
        index_path: Path | None = None,
        chunk_size: int | None = None,
        embed_batch_size: int | None = None,
        index_batch_size: int | None = None,
        batch_pause_seconds: float | None = None,
        save_retries: int | None = None,
        ann_min_rows: int | None = None,
        max_workers: int | None = None,
    ) -> None:
        self._embedder = embedder
        self._source = source
        self._index_path = Path(index_path or settings.INDEX_PATH)
        if embeddings_path is not None:
            self._embeddings_path = Path(embeddings_path)
        elif index_path is None:
            self._embeddings_path = Path(settings.EMBEDDINGS_PATH)
        else:
            self._embeddings_path = embeddings_path_for(self._index_path)
        self._chunk_size = chunk_size or settings.CHUNK_SIZE
        self._embed_batch_size = embed_batch_size or settings.EMBED_BATCH_SIZE
        self._index_batch_size = index_batch_size or settings.INDEX_BATCH_SIZE
        self._batch_pause = settings.INDEX_BATCH_PAUSE_SECONDS if batch_pause_seconds is None else batch_pause_seconds
        self._save_retries = save_retries or settings.INDEX_SAVE_RETRIES
        self._ann_min_rows = settings.ANN_MIN_ROWS if ann_min_rows is None else ann_min_rows
        self._max_workers = max_workers or settings.MAX_WORKERS

    @property
    def embeddings_path(self) -> Path:
        return self._embeddings_path

    # ══════════════════════════════════════════════════════════════════
    #  PUBLIC ENTRY POINT
    # ══════════════════════════════════════════════════════════════════

    def run(self) -> dict[str, Any]:
        """
        Execute the pipeline, skipping stages with valid checkpoints.

        Returns
        -------
        dict
            ``documents``, ``chunks``, ``embeddings_from_checkpoint``,
            ``index_built``, ``index_path``, ``elapsed_seconds``.

        Raises
        ------
        IngestionError
            Model loading, extraction, embedding or index persistence failed.
        """
        t_start = time.perf_counter()
        documents = 0
        model_name = getattr(self._embedder, "model_name", "")
        try:
            dimension = self._embedder.dimension
        except Exception as exc:
            logger.exception("[INGEST] Embedding model unavailable.")
            raise IngestionError(f"Embedding model unavailable: {exc}") from exc

        # ── 1. Embeddings checkpoint ───────────────────────────────────
        pairs = read_embeddings_checkpoint(self._embeddings_path, model=model_name, dimension=dimension)
        from_checkpoint = pairs is not None

        if pairs is not None:
            logger.info("[INGEST] CACHE_HIT — loaded %d embedding(s) from %s", len(pairs), self._embeddings_path)
        else:
            documents, chunks = self._extract_and_chunk()
            if not chunks:
                raise IngestionError("No chunks to index — the corpus is empty.")
            vectors = self._embed_chunks(chunks)
            write_embeddings_checkpoint(self._embeddings_path, chunks, vectors, model=model_name)
            logger.info("[INGEST] Embeddings checkpoint written: %s", self._embeddings_path)
            pairs = list(zip(vectors, chunks))

        # ── 2. Index checkpoint ────────────────────────────────────────
        index_built = False
        if self._index_is_valid(dimension):
            logger.info("[INGEST] CACHE_HIT — index already present at %s; skipping construction.", self._index_path)
        else:
            index = self._build_index(pairs)
            try:
                self._save_with_retry(index)
            finally:
                shutil.rmtree(index.path, ignore_errors=True)
            index_built = True

        elapsed = time.perf_counter() - t_start
        summary = self._summary(documents, len(pairs), from_checkpoint, index_built, elapsed)
        logger.info("[INGEST] Complete — %d chunk(s), index_built=%s in %.2fs.", len(pairs), index_built, elapsed)
        return summary

    # ══════════════════════════════════════════════════════════════════
    #  EXTRACTION + CHUNKING
    # ══════════════════════════════════════════════════════════════════

    def _extract_and_chunk(self) -> tuple[int, list[Chunk]]:
        t_extract = time.perf_counter()
        documents = 0
        chunks: list[Chunk] = []

        try:
            for document in self._source:
                cleaned = Document(source_id=document.source_id, text=clean_text(document.text))
                doc_chunks = chunk_document(cleaned, self._chunk_size)
                logger.info("File '%s' → %d chunk(s).", document.source_id, len(doc_chunks))
                chunks.extend(doc_chunks)
                documents += 1
        except Exception as exc:
            logger.exception("[INGEST] Extraction failed.")
            raise IngestionError(f"Extraction failed: {exc}") from exc

        logger.info("[INGEST] Extracted %d document(s) → %d chunk(s) in %.1fms.", documents, len(chunks), (time.perf_counter() - t_extract) * 1000)
        return documents, chunks

    # ══════════════════════════════════════════════════════════════════
    #  EMBEDDING
    # ══════════════════════════════════════════════════════════════════

    def _embed_chunks(self, chunks: list[Chunk]) -> list[Vector]:
        """Embed in batches on a thread pool; output order matches *chunks*."""
        if not chunks:
            return []

        t_embed = time.perf_counter()
        size = self._embed_batch_size
        batches = [[c.text for c in chunks[i : i + size]] for i in range(0, len(chunks), size)]
        logger.info("[INGEST] Embedding %d chunk(s) in %d batch(es) of %d …", len(chunks), len(batches), size)

        vectors: list[Vector] = []
        try:
            with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
                for number, batch_vectors in enumerate(pool.map(self._embedder.embed_batch, batches), 1):
                    vectors.extend(batch_vectors)
                    logger.debug("Embedding batch %d/%d done.", number, len(batches))
        except Exception as exc:
            logger.exception("[INGEST] Embedding failed.")
            raise IngestionError(f"Embedding failed: {exc}") from exc

        logger.info("[INGEST] Embedded %d chunk(s) in %.1fms.", len(vectors), (time.perf_counter() - t_embed) * 1000)
        return vectors

    # ══════════════════════════════════════════════════════════════════
    #  INDEX CONSTRUCTION + PERSISTENCE
    # ══════════════════════════════════════════════════════════════════

    def _index_is_valid(self, dimension: int) -> bool:
        if not self._index_path.exists():
            return False
        try:
            index = VectorIndex.load(self._index_path)
        except IndexUnavailableError as exc:
            logger.warning("[INGEST] Existing index unusable (%s) — rebuilding.", exc)
            return False
        if index.dimension != dimension:
            logger.warning("[INGEST] Existing index has %d-dim vectors, embedder has %d — rebuilding.", index.dimension, dimension)
            return False
        return True

    def _build_index(self, pairs: list[IndexPair]) -> VectorIndex:
        """Build from the first batch, then ``add`` the rest in order."""
        t_index = time.perf_counter()
        size = self._index_batch_size
        total = (len(pairs) + size - 1) // size
        workdir = self._index_path.with_name(self._index_path.name + ".build")

        try:
            index = VectorIndex.build(pairs[:size], workdir=workdir)
            for number, start in enumerate(range(size, len(pairs), size), 2):
                self._pause_between_batches()
                index.add(pairs[start : start + size])
                logger.debug("Index batch %d/%d inserted.", number, total)
            index.create_ann_index(self._ann_min_rows)
        except Exception as exc:
            logger.exception("[INGEST] Index construction failed.")
            shutil.rmtree(workdir, ignore_errors=True)
            raise IngestionError(f"Index construction failed: {exc}") from exc

        logger.info("[INGEST] Indexed %d pair(s) in %d batch(es) in %.1fms.", len(pairs), total, (time.perf_counter() - t_index) * 1000)
        return index

    def _pause_between_batches(self) -> None:
        gc.collect()
        if self._batch_pause > 0:
            time.sleep(self._batch_pause)

    def _save_with_retry(self, index: VectorIndex) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(self._save_retries),
            wait=wait_exponential(multiplier=_SAVE_BACKOFF_SECONDS, max=_SAVE_BACKOFF_MAX_SECONDS),
            retry=retry_if_exception_type(OSError),
            before_sleep=lambda state: logger.warning(
                "[INGEST] Index save attempt %d failed (%s); retrying in %.1fs",
                state.attempt_number,
                state.outcome.exception() if state.outcome else "unknown",
                state.next_action.sleep if state.next_action else 0.0,
            ),
            reraise=True,
        )
        try:
            retrying(index.save, self._index_path)
        except OSError as exc:
            logger.error("[INGEST] Index save failed after %d attempt(s): %s", self._save_retries, exc)
            raise IngestionError(f"Index save failed after {self._save_retries} attempt(s): {exc}", {"index_path": str(self._index_path)}) from exc

    # ── Summary helper ─────────────────────────────────────────────────

    def _summary(self, documents: int, chunks: int, from_checkpoint: bool, index_built: bool, elapsed: float) -> dict[str, Any]:
        return {
            "documents": documents,
            "chunks": chunks,
            "embeddings_from_checkpoint": from_checkpoint,
            "index_built": index_built,
            "index_path": str(self._index_path),
            "elapsed_seconds": round(elapsed, 2),
        }


def ingest(source: DocumentSource, index_path: Path, embedder: EmbeddingFunction, embeddings_path: Path | None = None, **options: Any) -> dict[str, Any]:
    """
    Offline entry point: run a pipeline for *source* into *index_path*.

    Without *embeddings_path* the checkpoint is ``embeddings_path_for(index_path)``.
    """
    pipeline = IngestionPipeline(embedder, source, embeddings_path=embeddings_path, index_path=index_path, **options)
    return pipeline.run()
