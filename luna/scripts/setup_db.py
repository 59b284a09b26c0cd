"""
Luna - Index Setup & Ingestion Script
======================================
CLI entry point that orchestrates:
    1. Load settings (fail-fast on a broken ``.env``).
    2. Load the sentence-transformers embedding model.
    3. Run the ``IngestionPipeline`` over the source documents.
    4. Print a structured execution summary with timing breakdown.

Flags:
    --source PATH  File or directory to ingest (default: ``DATA_RAW_DIR``).
    --rebuild      Delete the persisted index first (embeddings checkpoint kept).
    --purge        Delete the index AND the embeddings checkpoint (full re-ingestion).

Both checkpoints are reused when present, so re-running without flags is
cheap and leaves an existing index untouched.

Usage:
    python -m luna.scripts.setup_db                       # Normal ingestion
    python -m luna.scripts.setup_db --source data/raw/x.pdf
    python -m luna.scripts.setup_db --rebuild             # Re-index from cached embeddings
    python -m luna.scripts.setup_db --purge               # Re-extract, re-embed, re-index
"""

from __future__ import annotations

import argparse
import shutil
import sys
import time
from pathlib import Path

# ── Ensure project root is importable when run directly ────────────────
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))


# ── CLI Argument Parsing ───────────────────────────────────────────────

def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="setup_db", description="Luna — Build the retrieval index from the document corpus.")
    parser.add_argument("--source", type=Path, default=None, help="File or directory to ingest (default: DATA_RAW_DIR).")
    parser.add_argument("--rebuild", action="store_true", default=False, help="Delete the persisted index before ingesting (embeddings checkpoint kept).")
    parser.add_argument("--purge", action="store_true", default=False, help="Delete the index AND the embeddings checkpoint (full clean re-ingestion).")
    return parser.parse_args(argv)


# ── Main Orchestration ─────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    t_start = time.perf_counter()

    # ── 0. Load settings + .env (timed) ────────────────────────────────
    t_settings = time.perf_counter()
    try:
        from luna.config.settings import settings
    except Exception as exc:
        print("\n[FATAL] Configuration error — check your .env file:\n")
        print(f"  {exc}")
        print()
        return 1
    settings_ms = (time.perf_counter() - t_settings) * 1000

    from luna.src.core.exceptions import LunaError
    from luna.src.utils.logger import get_logger
    logger = get_logger(__name__)

    logger.info("Settings loaded in %.1fms", settings_ms)
    source_path = args.source or settings.DATA_RAW_DIR
    _print_header(settings, source_path)

    if args.rebuild or args.purge:
        _remove_index(settings.INDEX_PATH, logger)
        if args.purge:
            if settings.EMBEDDINGS_PATH.exists():
                settings.EMBEDDINGS_PATH.unlink()
                logger.warning("Embeddings checkpoint deleted: %s", settings.EMBEDDINGS_PATH)
            else:
                logger.info("No embeddings checkpoint to clear.")

    # ── 1. Load embedding model (timed) ────────────────────────────────
    from luna.src.core.services import create_embedder

    t_embedder = time.perf_counter()
    logger.info("Loading embedding model: %s", settings.EMBEDDING_MODEL)
    embedder = create_embedder(settings)
    try:
        embedder.load()
    except LunaError as exc:
        logger.error("Failed to load embedding model: %s", exc)
        return 1
    embedder_ms = (time.perf_counter() - t_embedder) * 1000
    logger.info("Embedder ready in %.1fms (dim=%d)", embedder_ms, embedder.dimension)

    # ── 2. Run IngestionPipeline ───────────────────────────────────────
    from luna.src.core.ingestor import DirectoryDocumentSource, IngestionPipeline

    pipeline = IngestionPipeline(embedder, DirectoryDocumentSource(source_path), embeddings_path=settings.EMBEDDINGS_PATH, index_path=settings.INDEX_PATH)
    try:
        summary = pipeline.run()
    except LunaError as exc:
        print(f"\n[FATAL] Ingestion failed:\n\n  {exc}\n")
        return 1

    # ── 3. Print execution summary ─────────────────────────────────────
    _print_footer(summary, time.perf_counter() - t_start, settings_ms, embedder_ms)
    return 0


def _remove_index(index_path: Path, logger: object) -> None:
    if index_path.exists():
        shutil.rmtree(index_path)
        logger.warning("Index deleted: %s", index_path)  # type: ignore[attr-defined]
    else:
        logger.info("No index to delete at %s.", index_path)  # type: ignore[attr-defined]


# ── Pretty-print helpers ──────────────────────────────────────────────

def _print_header(settings: object, source_path: Path) -> None:
    print()
    print("=" * 60)
    print("  LUNA — Retrieval Index Setup & Ingestion")
    print("=" * 60)
    print(f"  Environment  : {settings.ENV}")                   # type: ignore[attr-defined]
    print(f"  Embedding    : {settings.EMBEDDING_MODEL}")       # type: ignore[attr-defined]
    print(f"  Source       : {source_path}")
    print(f"  Checkpoint   : {settings.EMBEDDINGS_PATH}")       # type: ignore[attr-defined]
    print(f"  Index path   : {settings.INDEX_PATH}")            # type: ignore[attr-defined]
    print(f"  Chunk size   : {settings.CHUNK_SIZE} chars")      # type: ignore[attr-defined]
    print(f"  Batches      : embed={settings.EMBED_BATCH_SIZE}, index={settings.INDEX_BATCH_SIZE}")  # type: ignore[attr-defined]
    print(f"  Workers      : {settings.MAX_WORKERS}")           # type: ignore[attr-defined]
    print("=" * 60)
    print()


def _print_footer(summary: dict, elapsed: float, settings_ms: float, embedder_ms: float) -> None:
    startup_ms = settings_ms + embedder_ms
    print()
    print("=" * 60)
    print("  EXECUTION SUMMARY")
    print("-" * 60)
    print(f"  Documents extracted  : {summary['documents']}")
    print(f"  Chunks indexed       : {summary['chunks']}")
    print(f"  Embeddings cached    : {'yes' if summary['embeddings_from_checkpoint'] else 'no'}")
    print(f"  Index built          : {'yes' if summary['index_built'] else 'no (already present)'}")
    print(f"  Index path           : {summary['index_path']}")
    print("-" * 60)
    print("  TIMING BREAKDOWN")
    print("-" * 60)
    print(f"  Settings + .env load : {settings_ms:>8.1f}ms")
    print(f"  Embedder load        : {embedder_ms:>8.1f}ms")
    print(f"  Startup time (total) : {startup_ms:>8.1f}ms")
    print(f"  Pipeline time        : {summary['elapsed_seconds']:>8.2f}s")
    print(f"  Total elapsed        : {elapsed:>8.2f}s")
    print("=" * 60)
    print()


# ── Entry point ────────────────────────────────────────────────────────

if __name__ == "__main__":
    sys.exit(main())
