"""
Sage - VectorStoreClient
=========================
Circuit-breaking wrapper around a LanceDB knowledge table.

  • ``query(embedding, k, filters)`` → ranked neighbour rows (possibly
    empty), each carrying LanceDB's cosine ``_distance``.
  • ``add(ids, embeddings, documents, metadatas)`` → best-effort insert;
    failures are logged, never raised.

Design decisions:
  • **Singleton DB connection** — ``_get_connection()`` caches the
    ``lancedb.DBConnection`` per path to avoid file-lock contention.
  • **Circuit breaker** — a connection or query failure marks the
    backend unavailable for ``settings.VECTOR_STORE_RETRY_SECONDS``
    (60s).  During that window every call returns an empty result
    without touching LanceDB; the first call after it reconnects.
  • **Empty ≠ irrelevant** — callers treat ``[]`` as "no retrieval
    available".  A missing table is not a failure and does not trip
    the breaker.
  • **Lazy schema** — the vector column is a fixed-size float32 list
    whose width is taken from the first inserted embedding, so remote
    and hash-fallback vectors share one table.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import lancedb
import pyarrow as pa

from sage.config.settings import settings
from sage.src.utils.logger import get_logger

logger = get_logger(__name__)

# ── Type Aliases ──────────────────────────────────────────────────────
ChunkMetadata = Mapping[str, str | int]
SearchResult = dict[str, Any]

# Metadata columns in table order; anything else in a metadata dict is dropped.
_STRING_COLUMNS = ("source", "title", "category", "url", "ingested_at")
_INT_COLUMNS = ("chunk_index", "total_chunks")
FILTERABLE_COLUMNS = frozenset(("id",) + _STRING_COLUMNS + _INT_COLUMNS)

_DB_LOCK = threading.Lock()
_db_connection_cache: dict[str, Any] = {}


def build_schema(dims: int) -> pa.Schema:
    """PyArrow schema for the knowledge table with a *dims*-wide vector column."""
    return pa.schema(
        [pa.field("id", pa.utf8()), pa.field("vector", pa.list_(pa.float32(), dims)), pa.field("text", pa.utf8())]
        + [pa.field(name, pa.utf8()) for name in _STRING_COLUMNS]
        + [pa.field(name, pa.int32()) for name in _INT_COLUMNS]
    )


def _get_connection(db_path: str) -> Any:
    """
    Return a **singleton** ``lancedb.DBConnection`` for *db_path*.

    Thread-safe via ``_DB_LOCK``.
    """
    if db_path not in _db_connection_cache:
        with _DB_LOCK:
            if db_path not in _db_connection_cache:
                logger.info("[VECTOR] Opening new LanceDB connection: %s", db_path)
                _db_connection_cache[db_path] = lancedb.connect(db_path)
    return _db_connection_cache[db_path]


def _forget_connection(db_path: str) -> None:
    with _DB_LOCK:
        _db_connection_cache.pop(db_path, None)


def _sql_literal(value: str | int | float) -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


def build_where_clause(filters: Mapping[str, str | int | float] | None) -> str | None:
    """``{"category": "web"}`` → ``"category = 'web'"``; unknown columns are ignored."""
    if not filters:
        return None
    clauses: list[str] = []
    for column, value in filters.items():
        if column not in FILTERABLE_COLUMNS:
            logger.warning("[VECTOR] Ignoring filter on unknown column: %s", column)
            continue
        clauses.append(f"{column} = {_sql_literal(value)}")
    return " AND ".join(clauses) or None


class VectorStoreClient:
    """
    LanceDB-backed knowledge table with a retry circuit.

    Parameters
    ----------
    db_path
        Database directory.  Defaults to ``settings.LANCEDB_PATH``.
    table_name
        Defaults to ``settings.LANCEDB_TABLE_NAME``.
    retry_interval
        Circuit-breaker cooldown in seconds.
    clock
        Monotonic time source for the breaker.
    connector
        ``path → DBConnection`` factory; defaults to the cached
        ``lancedb.connect``.
    """

    __slots__ = ("_db_path", "_table_name", "_retry_interval", "_clock", "_connector", "_lock", "_db", "_table", "_unavailable_until")

    def __init__(self, db_path: str | None = None, table_name: str | None = None, retry_interval: float | None = None, clock: Callable[[], float] = time.monotonic, connector: Callable[[str], Any] = _get_connection) -> None:
        self._db_path: str = str(db_path or settings.LANCEDB_PATH)
        self._table_name: str = table_name or settings.LANCEDB_TABLE_NAME
        self._retry_interval = retry_interval or settings.VECTOR_STORE_RETRY_SECONDS
        self._clock = clock
        self._connector = connector
        self._lock = threading.RLock()
        self._db: Any = None
        self._table: Any = None
        self._unavailable_until = 0.0

    # ── Circuit breaker ────────────────────────────────────────────────

    @property
    def is_available(self) -> bool:
        """``False`` while the breaker is open."""
        return self._unavailable_until == 0.0 or self._clock() >= self._unavailable_until


    def _trip(self, exc: BaseException) -> None:
        with self._lock:
            self._unavailable_until = self._clock() + self._retry_interval
            self._db = None
            self._table = None
        if self._connector is _get_connection:
            _forget_connection(self._db_path)
        logger.warning("[VECTOR] LanceDB unavailable, will retry in %.0fs: %s", self._retry_interval, exc)


    def _connection(self) -> Any | None:
        """Return a live connection, or ``None`` while the breaker is open or on failure."""
        with self._lock:
            if self._unavailable_until:
                if self._clock() < self._unavailable_until:
                    return None
                self._unavailable_until = 0.0
                logger.info("[VECTOR] Retrying LanceDB connection: %s", self._db_path)
            if self._db is not None:
                return self._db
            try:
                self._db = self._connector(self._db_path)
            except Exception as exc:
                self._trip(exc)
                return None
            return self._db


    def _open_table(self) -> Any | None:
        """Open the table if it exists.  ``None`` means missing *or* unavailable."""
        db = self._connection()
        if db is None:
            return None
        with self._lock:
            if self._table is not None:
                return self._table
            try:
                if self._table_name not in db.table_names():
                    return None
                self._table = db.open_table(self._table_name)
            except Exception as exc:
                self._trip(exc)
                return None
            logger.info("[VECTOR] Opened table '%s' (%d rows).", self._table_name, self._table.count_rows())
            return self._table

    # ── Queries ────────────────────────────────────────────────────────

    def query(self, embedding: Sequence[float], k: int | None = None, filters: Mapping[str, str | int | float] | None = None) -> list[SearchResult]:
        """
        Return up to *k* nearest rows by cosine distance.

        Never raises: an open breaker, a missing table, or a failing
        search all return ``[]`` (the last one also trips the breaker).
        """
        k = k or settings.RAG_TOP_K
        table = self._open_table()
        if table is None:
            return []

        try:
            search = table.search(list(embedding)).distance_type("cosine").limit(k)
            where = build_where_clause(filters)
            if where:
                search = search.where(where)
            results: list[SearchResult] = search.to_list()
        except Exception as exc:
            logger.error("[VECTOR] Query failed: %s", exc)
            self._trip(exc)
            return []

        logger.debug("[VECTOR] Query returned %d row(s) (k=%d, filters=%s).", len(results), k, filters)
        return results


    def add(self, ids: Sequence[str], embeddings: Sequence[Sequence[float]], documents: Sequence[str], metadatas: Sequence[ChunkMetadata]) -> int:
        """
        Insert chunk rows, creating the table on first use.

        Best-effort: returns the number of rows written, ``0`` when the
        backend is unavailable or the write fails.

        Raises
        ------
        ValueError
            If the four sequences have mismatched lengths.
        """
        if not (len(ids) == len(embeddings) == len(documents) == len(metadatas)):
            raise ValueError(f"Length mismatch: {len(ids)} ids, {len(embeddings)} embeddings, {len(documents)} documents, {len(metadatas)} metadatas.")
        if not ids:
            return 0

        db = self._connection()
        if db is None:
            logger.warning("[VECTOR] Skipping insert of %d row(s): LanceDB unavailable.", len(ids))
            return 0

        try:
            records = [
                {"id": doc_id, "vector": [float(v) for v in vector], "text": text, **{name: str(meta.get(name, "")) for name in _STRING_COLUMNS}, **{name: int(meta.get(name, 0)) for name in _INT_COLUMNS}}
                for doc_id, vector, text, meta in zip(ids, embeddings, documents, metadatas)
            ]
            with self._lock:
                table = self._open_table()
                if table is None:
                    self._table = db.create_table(self._table_name, data=records, schema=build_schema(len(records[0]["vector"])))
                    logger.info("[VECTOR] Created table '%s'.", self._table_name)
                else:
                    table.add(records)
        except Exception as exc:
            logger.error("[VECTOR] Failed to write %d row(s) to LanceDB: %s", len(ids), exc)
            return 0

        logger.info("[VECTOR] Added %d row(s) to '%s'.", len(records), self._table_name)
        return len(records)


    def count(self) -> int:
        """Total rows, or ``0`` if the table is missing or unavailable."""
        table = self._open_table()
        if table is None:
            return 0
        try:
            return table.count_rows()
        except Exception as exc:
            logger.error("[VECTOR] count_rows failed: %s", exc)
            return 0


    def drop_table(self) -> None:
        """Drop the knowledge table (used for re-ingestion)."""
        db = self._connection()
        if db is None:
            logger.warning("[VECTOR] No database connection; nothing to drop.")
            return
        with self._lock:
            if self._table_name not in db.table_names():
                logger.warning("[VECTOR] Table '%s' does not exist, nothing to drop.", self._table_name)
                return
            db.drop_table(self._table_name)
            self._table = None
        logger.info("[VECTOR] Dropped table '%s'.", self._table_name)


    def __repr__(self) -> str:
        return f"VectorStoreClient(db='{self._db_path}', table='{self._table_name}', available={self.is_available})"
