"""
Sage - Embedding Service
=========================
Gemini embeddings through LangChain's ``GoogleGenerativeAIEmbeddings``,
with a deterministic hash-based fallback.

The fallback kicks in when no embedding key is configured **or** when a
remote call fails for any reason (timeout, quota, network).  It yields a
unit-norm vector of the same width as the remote model, so the vector
store and the retrieval pipeline keep working, just with poor recall.

Both a synchronous ``Embedder`` surface (``embed_documents`` /
``embed_query``, used by the ingestion thread pool) and an async one
(``generate_embedding(s)``, used on the serving path and bounded by
``settings.REQUEST_TIMEOUT_SECONDS``) are exposed.
"""

from __future__ import annotations

import asyncio
import math
from typing import Protocol, runtime_checkable

from sage.config.settings import settings
from sage.src.utils.logger import get_logger

logger = get_logger(__name__)


@runtime_checkable
class Embedder(Protocol):
    """Structural type for any LangChain-compatible embedding model."""

    def embed_documents(self, texts: list[str]) -> list[list[float]]: ...

    def embed_query(self, text: str) -> list[float]: ...


class HashEmbedder:
    """
    Deterministic character-hash embedding.

    Each character's code point / 255 is accumulated at index
    ``i mod dims`` of the lower-cased, trimmed text; the result is
    L2-normalised.  Empty text yields the zero vector.
    """

    __slots__ = ("dims",)

    def __init__(self, dims: int | None = None) -> None:
        self.dims = dims or settings.EMBEDDING_DIMENSIONS


    def embed_query(self, text: str) -> list[float]:
        vector = [0.0] * self.dims
        for i, ch in enumerate(text.lower().strip()):
            vector[i % self.dims] += ord(ch) / 255
        magnitude = math.sqrt(sum(v * v for v in vector))
        if magnitude == 0:
            return vector
        return [v / magnitude for v in vector]


    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self.embed_query(text) for text in texts]


def _build_gemini_embedder() -> Embedder | None:
    key = settings.embedding_key()
    if key is None or not key.get_secret_value():
        return None
    from langchain_google_genai import GoogleGenerativeAIEmbeddings

    model = settings.EMBEDDING_MODEL if settings.EMBEDDING_MODEL.startswith("models/") else f"models/{settings.EMBEDDING_MODEL}"
    return GoogleGenerativeAIEmbeddings(model=model, google_api_key=key.get_secret_value())


class EmbeddingService:
    """
    Embedding facade with graceful degradation.

    Parameters
    ----------
    embedder
        Primary embedder.  When omitted, a Gemini embedder is built from
        settings if a key is configured; otherwise only the hash
        fallback is used.
    dims
        Width of fallback vectors.
    timeout
        Bound for each async embedding call.
    """

    __slots__ = ("_primary", "_fallback", "_timeout")

    def __init__(self, embedder: Embedder | None = None, dims: int | None = None, timeout: float | None = None, use_remote: bool = True) -> None:
        self._primary: Embedder | None = embedder if embedder is not None else (_build_gemini_embedder() if use_remote else None)
        self._fallback = HashEmbedder(dims)
        self._timeout = timeout or settings.REQUEST_TIMEOUT_SECONDS
        if self._primary is None:
            logger.warning("[EMBED] No embedding backend configured, using hash-based fallback.")


    @property
    def has_remote(self) -> bool:
        return self._primary is not None


    @property
    def dims(self) -> int:
        return self._fallback.dims

    # ── Sync surface (ingestion) ───────────────────────────────────────

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        if self._primary is None:
            return self._fallback.embed_documents(texts)
        try:
            return self._primary.embed_documents(texts)
        except Exception as exc:
            logger.error("[EMBED] Batch embedding failed, using hash fallback: %s", exc)
            return self._fallback.embed_documents(texts)


    def embed_query(self, text: str) -> list[float]:
        if self._primary is None:
            return self._fallback.embed_query(text)
        try:
            return self._primary.embed_query(text)
        except Exception as exc:
            logger.error("[EMBED] Query embedding failed, using hash fallback: %s", exc)
            return self._fallback.embed_query(text)

    # ── Async surface (serving path) ───────────────────────────────────

    async def generate_embeddings(self, texts: list[str]) -> list[list[float]]:
        if self._primary is None:
            return self._fallback.embed_documents(texts)
        try:
            return await asyncio.wait_for(asyncio.to_thread(self._primary.embed_documents, texts), timeout=self._timeout)
        except Exception as exc:
            logger.error("[EMBED] Embedding generation failed, using hash fallback: %s", exc)
            return self._fallback.embed_documents(texts)


    async def generate_embedding(self, text: str) -> list[float]:
        if self._primary is None:
            return self._fallback.embed_query(text)
        try:
            return await asyncio.wait_for(asyncio.to_thread(self._primary.embed_query, text), timeout=self._timeout)
        except Exception as exc:
            logger.error("[EMBED] Embedding generation failed, using hash fallback: %s", exc)
            return self._fallback.embed_query(text)
