"""
Luna - Retrieval Verification
==============================
Loads the persisted index and prints the top hits for a query with their
source ids and distances.  Used to eyeball retrieval quality after an
ingestion run.

Usage:
    python -m luna.scripts.verify_retrieval "What causes irregular periods?"
    python -m luna.scripts.verify_retrieval "cramps" -k 3
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from luna.config.settings import settings
from luna.src.core.exceptions import LunaError
from luna.src.core.services import create_embedder
from luna.src.database.vector_store import VectorIndex


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="verify_retrieval", description="Query the Luna retrieval index.")
    parser.add_argument("query", help="Free-text query.")
    parser.add_argument("-k", type=int, default=settings.RETRIEVAL_K, help="Number of hits to show.")
    args = parser.parse_args(argv)

    try:
        index = VectorIndex.load(settings.INDEX_PATH)
        embedder = create_embedder(settings)
        hits = index.search(embedder.embed(args.query), args.k)
    except LunaError as exc:
        print(f"[ERROR] {exc}\nRun 'python -m luna.scripts.setup_db' first.")
        return 1

    print(f"Index has {index.count()} rows.\n")
    print(f"Query: {args.query}")
    print("=" * 60)

    for rank, hit in enumerate(hits, 1):
        print(f"\n--- Result {rank} ---")
        print(f"  Source:    {hit.source_id or 'N/A'}")
        print(f"  Distance:  {hit.distance:.4f}")
        print(f"  Row #:     {hit.seq}")
        print("  Text:")
        print(f"    {hit.text}")

    print("\n" + "=" * 60)
    print("SOURCES:")
    for source in sorted({hit.source_id for hit in hits}):
        print(f"  [{source}] {sum(1 for h in hits if h.source_id == source)} hit(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
