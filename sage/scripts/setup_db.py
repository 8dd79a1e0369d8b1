"""
Sage - Knowledge Base Setup & Ingestion Script
===============================================
CLI entry point that orchestrates:
    1. Load settings (fail-fast on validation errors).
    2. Initialise the ``EmbeddingService`` (hash fallback without a key).
    3. Initialise the ``VectorStoreClient`` (optionally drop the table).
    4. Run the ``IngestionPipeline``.
    5. Print a structured execution summary with timing breakdown.

Flags:
    --source DIR  Ingest from DIR instead of ``settings.DATA_RAW_DIR``.
    --drop        Drop the LanceDB table before ingesting (cache preserved).
    --purge       Drop table AND clear the hash cache (full re-ingestion).
    --drop-only   Drop the table and exit immediately (no ingestion).

Usage:
    python -m sage.scripts.setup_db
    python -m sage.scripts.setup_db --purge
    python -m sage.scripts.setup_db --source ./knowledge
"""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

from dotenv import load_dotenv

_PACKAGE_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PACKAGE_ROOT / ".env")


# ── CLI Argument Parsing ───────────────────────────────────────────────

def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="setup_db", description="Sage — Initialise the vector database and run knowledge ingestion.")
    parser.add_argument("--source", type=Path, default=None, help="Directory of .md/.txt/.json documents (default: settings.DATA_RAW_DIR).")
    parser.add_argument("--drop", action="store_true", default=False, help="Drop the LanceDB table before ingesting (hash cache preserved).")
    parser.add_argument("--purge", action="store_true", default=False, help="Drop the LanceDB table AND clear the hash cache (full clean re-ingestion).")
    parser.add_argument("--drop-only", action="store_true", default=False, help="Drop the LanceDB table and exit (no ingestion).")
    return parser.parse_args(argv)


# ── Main Orchestration ─────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    t_start = time.perf_counter()

    # ── 0. Load settings + .env (timed) ────────────────────────────────
    t_settings = time.perf_counter()
    try:
        from sage.config.settings import settings
    except Exception as exc:
        print("\n[FATAL] Configuration error — check your .env file:\n")
        print(f"  {exc}")
        print()
        return 1
    settings_ms = (time.perf_counter() - t_settings) * 1000

    # Settings are valid, so the logger can be imported safely
    from sage.src.utils.logger import get_logger
    logger = get_logger(__name__)

    _print_header(settings, args.source)

    # ── 1. Embeddings (timed) ──────────────────────────────────────────
    from sage.src.services.embeddings import EmbeddingService

    t_embedder = time.perf_counter()
    embeddings = EmbeddingService()
    embedder_ms = (time.perf_counter() - t_embedder) * 1000
    logger.info("Embedder initialised in %.1fms (remote=%s)", embedder_ms, embeddings.has_remote)

    # ── 2. Vector store (timed) ────────────────────────────────────────
    from sage.src.database.vector_store import VectorStoreClient

    t_lancedb = time.perf_counter()
    store = VectorStoreClient()
    existing = store.count()
    lancedb_ms = (time.perf_counter() - t_lancedb) * 1000
    logger.info("LanceDB ready in %.1fms — table '%s' (%d existing rows).", lancedb_ms, settings.LANCEDB_TABLE_NAME, existing)

    from sage.src.core.ingestor import IngestionPipeline

    pipeline = IngestionPipeline(vector_store=store, embedder=embeddings, source_dir=args.source)

    if args.drop or args.purge or args.drop_only:
        logger.warning("Dropping table '%s' as requested.", settings.LANCEDB_TABLE_NAME)
        store.drop_table()
        if args.purge:
            pipeline.reset_hash_cache()
            logger.warning("Hash cache cleared.")
        if args.drop_only:
            startup_ms = settings_ms + embedder_ms + lancedb_ms
            _print_footer({"total_files": 0, "files_skipped": 0, "total_chunks": 0, "errors": []}, time.perf_counter() - t_start, settings_ms, embedder_ms, lancedb_ms, startup_ms)
            return 0

    startup_ms = settings_ms + embedder_ms + lancedb_ms

    # ── 3. Run IngestionPipeline ───────────────────────────────────────
    summary = pipeline.run()

    # ── 4. Print execution summary ─────────────────────────────────────
    _print_footer(summary, time.perf_counter() - t_start, settings_ms, embedder_ms, lancedb_ms, startup_ms)
    return 1 if summary["errors"] else 0


# ── Pretty-print helpers ──────────────────────────────────────────────

def _print_header(settings: object, source: Path | None) -> None:
    print()
    print("=" * 60)
    print("  SAGE — Knowledge Base Setup & Ingestion")
    print("=" * 60)
    print(f"  Environment  : {settings.ENV}")                   # type: ignore[attr-defined]
    print(f"  Embedding    : {settings.EMBEDDING_MODEL} ({settings.EMBEDDING_DIMENSIONS} dims)")  # type: ignore[attr-defined]
    print(f"  LanceDB path : {settings.LANCEDB_PATH}")          # type: ignore[attr-defined]
    print(f"  Source dir   : {source or settings.DATA_RAW_DIR}")  # type: ignore[attr-defined]
    print(f"  Chunk size   : {settings.CHUNK_SIZE} tokens (overlap {settings.CHUNK_OVERLAP})")  # type: ignore[attr-defined]
    print(f"  Workers      : {settings.MAX_WORKERS}")           # type: ignore[attr-defined]
    print(f"  Embed key    : {'configured' if settings.embedding_key() else 'missing (hash fallback)'}")  # type: ignore[attr-defined]
    print("=" * 60)
    print()


def _print_footer(summary: dict, elapsed: float, settings_ms: float, embedder_ms: float, lancedb_ms: float, startup_ms: float) -> None:
    processing_s = elapsed - (startup_ms / 1000)

    print()
    print("=" * 60)
    print("  EXECUTION SUMMARY")
    print("-" * 60)
    print(f"  Total files scanned  : {summary['total_files']}")
    print(f"  Files ingested       : {summary['total_files'] - summary['files_skipped']}")
    print(f"  Files skipped (cache): {summary['files_skipped']}")
    print(f"  Total chunks stored  : {summary['total_chunks']}")
    print(f"  Errors               : {len(summary['errors'])}")
    for error in summary["errors"][:10]:
        print(f"    • {error}")
    print("-" * 60)
    print("  TIMING BREAKDOWN")
    print("-" * 60)
    print(f"  Settings + .env load : {settings_ms:>8.1f}ms")
    print(f"  Embedder init        : {embedder_ms:>8.1f}ms")
    print(f"  LanceDB connection   : {lancedb_ms:>8.1f}ms")
    print(f"  Startup time (total) : {startup_ms:>8.1f}ms")
    print(f"  Processing time      : {processing_s:>8.2f}s")
    print(f"  Total elapsed        : {elapsed:>8.2f}s")
    print("=" * 60)
    print()


# ── Entry point ────────────────────────────────────────────────────────

if __name__ == "__main__":
    sys.exit(main())
