"""
Luna - VectorIndex
===================
Approximate similarity index over (embedding, chunk) pairs, backed by a
LanceDB table inside an index directory.

Directory layout::

    <index>/
        index.json              manifest (version, dimension, row_count, table)
        <table>.lance/          LanceDB table data

Design decisions:
  • **Strict PyArrow schema**: ``vector`` is a fixed-size float32 list
    so LanceDB can run vector search on it; ``seq`` records insertion
    order for deterministic tie-breaking.
  • **Incremental batches**: ``add`` writes only the new rows, so a
    large corpus can be inserted in bounded-memory batches.
  • **Atomic publish**: ``save`` copies the directory to ``<path>.tmp``
    and swaps it in with ``os.replace``; a serving process never sees a
    half-written index.
  • **Read-only after load**: ``load`` returns an index that refuses
    ``add``; re-ingestion builds a new directory instead.
  • **Flat scan by default**: an IVF-PQ index is only built when the
    table is large enough for it to pay off (``create_ann_index``).

Usage:
    index = VectorIndex.build(pairs[:50], workdir=scratch_dir)
    index.add(pairs[50:100])
    index.save(settings.INDEX_PATH)

    serving = VectorIndex.load(settings.INDEX_PATH)
    hits = serving.search(query_vector, k=5)
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path

import lancedb
import pyarrow as pa

from luna.config.settings import settings
from luna.src.core.exceptions import IndexUnavailableError
from luna.src.core.models import Chunk, SearchHit, Vector
from luna.src.utils.logger import get_logger

logger = get_logger(__name__)

# ── Type Aliases ──────────────────────────────────────────────────────
IndexPair = tuple[Vector, Chunk]

# ── Constants ──────────────────────────────────────────────────────────
MANIFEST_NAME = "index.json"
_MANIFEST_VERSION = "1"
_OVERFETCH_FACTOR = 2


def index_schema(dimension: int) -> pa.Schema:
    """LanceDB table schema for vectors of *dimension* floats."""
    return pa.schema([
        pa.field("vector", pa.list_(pa.float32(), dimension)),
        pa.field("text", pa.utf8()),
        pa.field("source_id", pa.utf8()),
        pa.field("seq", pa.int64()),
    ])


class VectorIndex:
    """
    LanceDB-backed vector index with insertion-order tie-breaking.

    Instances are created through ``build`` (writable) or ``load``
    (read-only); the constructor is internal.
    """

    __slots__ = ("_root", "_table_name", "_table", "_dimension", "_read_only", "_next_seq")

    def __init__(self, root: Path, table_name: str, table: lancedb.table.Table, dimension: int, read_only: bool) -> None:
        self._root = root
        self._table_name = table_name
        self._table = table
        self._dimension = dimension
        self._read_only = read_only
        self._next_seq = table.count_rows()

    # ══════════════════════════════════════════════════════════════════
    #  CONSTRUCTION
    # ══════════════════════════════════════════════════════════════════

    @classmethod
    def build(cls, pairs: Sequence[IndexPair], workdir: Path | None = None, table_name: str | None = None) -> VectorIndex:
        """
        Create a fresh index from an initial batch.

        Parameters
        ----------
        pairs
            Non-empty sequence of ``(vector, chunk)``; its first vector fixes
            the index dimension.
        workdir
            Directory to build in (created, and emptied if it exists).
            Defaults to a new temporary directory.
        table_name
            Defaults to ``settings.LANCEDB_TABLE_NAME``.
        """
        if not pairs:
            raise ValueError("Cannot build an index from an empty batch.")

        dimension = len(pairs[0][0])
        if dimension == 0:
            raise ValueError("Vectors must have at least one dimension.")

        if workdir is None:
            root = Path(tempfile.mkdtemp(prefix="luna-index-"))
        else:
            root = Path(workdir)
            if root.exists():
                shutil.rmtree(root)
            root.mkdir(parents=True)

        name = table_name or settings.LANCEDB_TABLE_NAME
        data = _to_arrow(pairs, dimension, start_seq=0)
        db = lancedb.connect(str(root))
        table = db.create_table(name, data=data)
        logger.info("Built index at %s with %d row(s), dim=%d.", root, len(pairs), dimension)
        return cls(root, name, table, dimension, read_only=False)

    def add(self, pairs: Sequence[IndexPair]) -> None:
        """Append a batch; only the new rows are written."""
        if self._read_only:
            raise RuntimeError("Index was loaded read-only; build a new index to re-ingest.")
        if not pairs:
            return

        data = _to_arrow(pairs, self._dimension, start_seq=self._next_seq)
        self._table.add(data)
        self._next_seq += len(pairs)
        logger.debug("Added %d row(s); index now has %d.", len(pairs), self._next_seq)

    def create_ann_index(self, min_rows: int) -> bool:
        """
        Build an IVF-PQ index if the table holds at least *min_rows* rows.

        Returns ``True`` when an ANN index was built.  Below the threshold
        LanceDB answers queries with an exact flat scan.
        """
        rows = self.count()
        if rows < min_rows:
            logger.debug("Skipping ANN index: %d row(s) < %d.", rows, min_rows)
            return False

        self._table.create_index(metric="l2", vector_column_name="vector")
        logger.info("Built IVF-PQ index over %d row(s).", rows)
        return True

    # ══════════════════════════════════════════════════════════════════
    #  QUERY
    # ══════════════════════════════════════════════════════════════════

    def search(self, query_vector: Vector, k: int) -> list[SearchHit]:
        """
        Return the *k* closest rows, nearest first.

        *k* is clamped to ``[0, count()]``.  Rows at equal distance are
        ordered by insertion (earliest first).  Candidates are over-fetched
        so the tie-break sees rows the engine would otherwise cut.
        """
        if len(query_vector) != self._dimension:
            raise ValueError(f"Query has {len(query_vector)} dims, index has {self._dimension}.")

        rows = self.count()
        k = max(0, min(k, rows))
        if k == 0:
            return []

        fetch = min(rows, k * _OVERFETCH_FACTOR)
        results = self._table.search([float(v) for v in query_vector]).limit(fetch).to_list()
        results.sort(key=lambda r: (float(r["_distance"]), int(r["seq"])))

        return [
            SearchHit(text=r["text"], source_id=r["source_id"], distance=float(r["_distance"]), seq=int(r["seq"]))
            for r in results[:k]
        ]

    def search_texts(self, query_vector: Vector, k: int) -> list[str]:
        """Ranked chunk texts only."""
        return [hit.text for hit in self.search(query_vector, k)]

    def count(self) -> int:
        return self._table.count_rows()

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def path(self) -> Path:
        return self._root

    # ══════════════════════════════════════════════════════════════════
    #  PERSISTENCE
    # ══════════════════════════════════════════════════════════════════

    def save(self, path: Path | str) -> Path:
        """
        Persist the index to *path* atomically and return it.

        The directory is copied to ``<path>.tmp`` first; an existing index
        at *path* is moved aside only once the copy is complete.
        """
        target = Path(path)
        self._write_manifest()

        if target.exists() and target.resolve() == self._root.resolve():
            return target

        tmp = target.with_name(target.name + ".tmp")
        backup = target.with_name(target.name + ".old")
        for leftover in (tmp, backup):
            if leftover.exists():
                shutil.rmtree(leftover)

        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(self._root, tmp)

        if target.exists():
            os.replace(target, backup)
        os.replace(tmp, target)
        if backup.exists():
            shutil.rmtree(backup)

        logger.info("Index saved to %s (%d rows).", target, self.count())
        return target

    @classmethod
    def load(cls, path: Path | str) -> VectorIndex:
        """
        Open a persisted index read-only.

        Raises
        ------
        IndexUnavailableError
            Path missing, manifest missing or corrupt, table unreadable,
            or row count disagreeing with the manifest.
        """
        root = Path(path)
        if not root.is_dir():
            raise IndexUnavailableError(f"Index path not found: {root}", {"path": str(root)})

        manifest_path = root / MANIFEST_NAME
        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
            table_name = str(manifest["table"])
            dimension = int(manifest["dimension"])
            expected_rows = int(manifest["row_count"])
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise IndexUnavailableError(f"Index manifest missing or corrupt: {manifest_path}", {"path": str(root)}) from exc

        try:
            db = lancedb.connect(str(root))
            table = db.open_table(table_name)
            rows = table.count_rows()
        except Exception as exc:
            raise IndexUnavailableError(f"Index table '{table_name}' unreadable at {root}: {exc}", {"path": str(root)}) from exc

        if rows != expected_rows:
            raise IndexUnavailableError(f"Index at {root} has {rows} rows, manifest says {expected_rows}.", {"path": str(root)})

        logger.info("Loaded index from %s (%d rows, dim=%d).", root, rows, dimension)
        return cls(root, table_name, table, dimension, read_only=True)

    def _write_manifest(self) -> None:
        manifest = {
            "version": _MANIFEST_VERSION,
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "dimension": self._dimension,
            "row_count": self.count(),
            "table": self._table_name,
        }
        manifest_path = self._root / MANIFEST_NAME
        tmp = manifest_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        os.replace(tmp, manifest_path)

    def __repr__(self) -> str:
        mode = "read-only" if self._read_only else "writable"
        return f"VectorIndex(path='{self._root}', table='{self._table_name}', rows={self.count()}, {mode})"


def _to_arrow(pairs: Sequence[IndexPair], dimension: int, start_seq: int) -> pa.Table:
    records = []
    for offset, (vector, chunk) in enumerate(pairs):
        if len(vector) != dimension:
            raise ValueError(f"Vector for chunk from '{chunk.source_id}' has {len(vector)} dims, expected {dimension}.")
        records.append({"vector": [float(v) for v in vector], "text": chunk.text, "source_id": chunk.source_id, "seq": start_seq + offset})
    return pa.Table.from_pylist(records, schema=index_schema(dimension))
