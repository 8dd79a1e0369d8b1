"""
Sage - IngestionPipeline
=========================
Reads knowledge-base documents, cleans and chunks them, embeds the
chunks and writes them to the ``VectorStoreClient``.

Key design decisions:
    • **Dependency Injection** – receives the ``VectorStoreClient`` and
      an ``Embedder`` (normally the ``EmbeddingService``).
    • **Recursive splitting** – LangChain's
      ``RecursiveCharacterTextSplitter`` at ``CHUNK_SIZE × 4`` characters
      with ``CHUNK_OVERLAP × 4`` overlap (≈ 4 characters per token);
      fragments of 20 characters or fewer are dropped.
    • **Batched embedding** – 100 chunks per ``embed_documents`` call.
      A failing batch is recorded in ``errors`` and skipped; the rest
      of the document still lands.
    • **Best-effort storage** – the store never raises on ``add``.
    • **Concurrency** – files are processed in parallel via
      ``ThreadPoolExecutor`` (embedding calls are I/O-bound).
    • **Caching** – MD5 file hashes skip unchanged files on re-runs.

Usage:
    from sage.src.core.ingestor import IngestionPipeline
    pipeline = IngestionPipeline(store, embeddings)
    summary  = pipeline.run()
"""

from __future__ import annotations

import hashlib
import json
import time
import uuid
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from langchain_text_splitters import RecursiveCharacterTextSplitter

from sage.config.settings import settings
from sage.src.utils.logger import get_logger
from sage.src.utils.text_utils import clean_text, extract_metadata_from_filename

logger = get_logger(__name__)

_SUPPORTED_EXTENSIONS = {".md", ".txt", ".json"}

EMBED_BATCH_SIZE = 100
MIN_CHUNK_CHARS = 20
CHARS_PER_TOKEN = 4


@dataclass(slots=True)
class IngestionResult:
    chunks_created: int = 0
    documents_indexed: int = 0
    errors: list[str] = field(default_factory=list)


def chunk_text(text: str, chunk_size: int | None = None, chunk_overlap: int | None = None) -> list[str]:
    """Split *text* into overlapping chunks sized in approximate tokens."""
    chunk_size = chunk_size or settings.CHUNK_SIZE
    chunk_overlap = settings.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap
    splitter = RecursiveCharacterTextSplitter(chunk_size=chunk_size * CHARS_PER_TOKEN, chunk_overlap=chunk_overlap * CHARS_PER_TOKEN, separators=["\n\n", "\n", ". ", " ", ""])
    return [chunk.strip() for chunk in splitter.split_text(text) if len(chunk.strip()) > MIN_CHUNK_CHARS]


class IngestionPipeline:
    """
    End-to-end document ingestion: read → clean → chunk → embed → store.

    Parameters
    ----------
    vector_store
        A ``VectorStoreClient`` (anything exposing ``add``).
    embedder
        Exposes ``embed_documents`` (e.g. ``EmbeddingService``).
    source_dir
        Override the source directory.  Defaults to ``settings.DATA_RAW_DIR``.
    max_workers
        Number of parallel threads for file processing.
    hash_cache_path
        Where MD5 digests of ingested files are persisted.
    """

    def __init__(self, vector_store: Any, embedder: Any, source_dir: Path | None = None, max_workers: int | None = None, hash_cache_path: Path | None = None) -> None:
        self._store = vector_store
        self._embedder = embedder
        self._source_dir = Path(source_dir or settings.DATA_RAW_DIR)
        self._max_workers = max_workers or settings.MAX_WORKERS
        self._hash_cache_path: Path = hash_cache_path or settings.DATA_PROCESSED_DIR / "ingestion_hashes.json"
        self._hash_cache: dict[str, str] = self._load_hash_cache()

    # ══════════════════════════════════════════════════════════════════
    #  PUBLIC ENTRY POINTS
    # ══════════════════════════════════════════════════════════════════

    def ingest_text(self, content: str, metadata: Mapping[str, str] | None = None, chunk_size: int | None = None, chunk_overlap: int | None = None) -> IngestionResult:
        """
        Clean, chunk, embed and store one document.

        ``metadata`` may carry ``source``, ``title``, ``category`` and
        ``url``; missing values default to ``unknown`` / ``Untitled`` /
        ``general`` / empty.
        """
        metadata = metadata or {}
        cleaned = clean_text(content)
        if not cleaned:
            return IngestionResult(errors=["Empty content after cleaning"])

        chunks = chunk_text(cleaned, chunk_size, chunk_overlap)
        logger.info("[INGEST] Document '%s' → %d chunk(s).", metadata.get("source", "unknown"), len(chunks))

        ids: list[str] = []
        embeddings: list[list[float]] = []
        documents: list[str] = []
        metadatas: list[dict[str, str | int]] = []
        errors: list[str] = []

        for start in range(0, len(chunks), EMBED_BATCH_SIZE):
            batch = chunks[start : start + EMBED_BATCH_SIZE]
            try:
                vectors = self._embedder.embed_documents(batch)
            except Exception as exc:
                errors.append(f"Embedding batch {start}-{start + len(batch)} failed: {exc}")
                logger.error("[INGEST] Embedding batch %d–%d failed: %s", start, start + len(batch) - 1, exc)
                continue

            ingested_at = datetime.now(timezone.utc).isoformat()
            for offset, (chunk, vector) in enumerate(zip(batch, vectors)):
                ids.append(str(uuid.uuid4()))
                embeddings.append(vector)
                documents.append(chunk)
                metadatas.append({
                    "source": metadata.get("source") or "unknown",
                    "title": metadata.get("title") or "Untitled",
                    "category": metadata.get("category") or "general",
                    "url": metadata.get("url") or "",
                    "chunk_index": start + offset,
                    "total_chunks": len(chunks),
                    "ingested_at": ingested_at,
                })

        stored = 0
        if ids:
            stored = self._store.add(ids, embeddings, documents, metadatas)
            if stored == 0:
                errors.append("Vector store write failed")

        return IngestionResult(chunks_created=stored, documents_indexed=1 if stored else 0, errors=errors)


    def run(self) -> dict[str, Any]:
        """
        Ingest every supported file under the source directory.

        Returns
        -------
        dict
            ``total_files``, ``files_processed``, ``files_skipped``,
            ``total_chunks``, ``errors``, ``elapsed_seconds``.
        """
        t_start = time.perf_counter()
        source = self._source_dir

        if not source.exists():
            logger.warning("[INGEST] Source directory does not exist: %s", source)
            return self._summary(0, 0, 0, 0, [], time.perf_counter() - t_start)

        files = sorted(f for f in source.rglob("*") if f.is_file() and f.suffix.lower() in _SUPPORTED_EXTENSIONS)
        if not files:
            logger.warning("[INGEST] No supported files found in %s", source)
            return self._summary(0, 0, 0, 0, [], time.perf_counter() - t_start)

        logger.info("[INGEST] Starting ingestion — %d file(s) found in %s", len(files), source)

        total_chunks = 0
        files_processed = 0
        files_skipped = 0
        errors: list[str] = []

        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            future_to_path = {pool.submit(self._ingest_file, fp): fp for fp in files}

            for future in as_completed(future_to_path):
                filepath = future_to_path[future]
                try:
                    result = future.result()
                except Exception as exc:
                    logger.exception("[INGEST] Failed to ingest file: %s", filepath.name)
                    errors.append(f"{filepath.name}: {exc}")
                    continue
                if result is None:
                    files_skipped += 1
                    continue
                files_processed += 1
                total_chunks += result.chunks_created
                errors.extend(f"{filepath.name}: {err}" for err in result.errors)

        self._save_hash_cache()

        elapsed = time.perf_counter() - t_start
        logger.info("[INGEST] Ingestion complete — %d file(s) processed, %d skipped, %d chunk(s) stored in %.2fs.", files_processed, files_skipped, total_chunks, elapsed)
        return self._summary(len(files), files_processed, files_skipped, total_chunks, errors, elapsed)

    # ══════════════════════════════════════════════════════════════════
    #  PER-FILE PROCESSING
    # ══════════════════════════════════════════════════════════════════

    def _ingest_file(self, filepath: Path) -> IngestionResult | None:
        """Ingest one file.  ``None`` means skipped (unchanged since last run)."""
        key = filepath.relative_to(self._source_dir).as_posix()
        file_hash = self._compute_file_hash(filepath)
        if self._hash_cache.get(key) == file_hash:
            logger.info("[INGEST] CACHE_HIT — Skipping unchanged file: %s", key)
            return None

        raw_text = filepath.read_text(encoding="utf-8", errors="replace")
        meta = extract_metadata_from_filename(filepath.name)
        result = self.ingest_text(raw_text, {"source": key, **meta})

        if not result.errors:
            self._hash_cache[key] = file_hash
        return result

    # ══════════════════════════════════════════════════════════════════
    #  MD5 CACHING
    # ══════════════════════════════════════════════════════════════════

    @staticmethod
    def _compute_file_hash(filepath: Path) -> str:
        """Return the MD5 hex digest of a file's contents."""
        hasher = hashlib.md5()
        with open(filepath, "rb") as f:
            for block in iter(lambda: f.read(8192), b""):
                hasher.update(block)
        return hasher.hexdigest()


    def _load_hash_cache(self) -> dict[str, str]:
        if self._hash_cache_path.exists():
            try:
                return json.loads(self._hash_cache_path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError):
                logger.warning("[INGEST] Corrupt hash cache — starting fresh.")
        return {}


    def _save_hash_cache(self) -> None:
        self._hash_cache_path.parent.mkdir(parents=True, exist_ok=True)
        self._hash_cache_path.write_text(json.dumps(self._hash_cache, indent=2, ensure_ascii=False), encoding="utf-8")
        logger.debug("[INGEST] Hash cache saved to %s", self._hash_cache_path)


    def reset_hash_cache(self) -> None:
        """Forget every stored digest (used with ``--purge``)."""
        self._hash_cache = {}


    @staticmethod
    def _summary(total: int, processed: int, skipped: int, chunks: int, errors: list[str], elapsed: float) -> dict[str, Any]:
        return {"total_files": total, "files_processed": processed, "files_skipped": skipped, "total_chunks": chunks, "errors": errors, "elapsed_seconds": round(elapsed, 2)}
