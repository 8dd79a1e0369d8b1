"""Tests for the embedding service and its hash fallback."""

from __future__ import annotations

import asyncio
import math
import time

import pytest

from sage.src.services.embeddings import Embedder, EmbeddingService, HashEmbedder


class FailingEmbedder:
    def embed_documents(self, texts):
        raise RuntimeError("quota exceeded")

    def embed_query(self, text):
        raise RuntimeError("quota exceeded")


class ConstantEmbedder:
    def embed_documents(self, texts):
        return [[1.0, 0.0] for _ in texts]

    def embed_query(self, text):
        return [1.0, 0.0]


class SlowEmbedder(ConstantEmbedder):
    def embed_query(self, text):
        time.sleep(0.5)
        return [1.0, 0.0]


class TestHashEmbedder:
    def test_vectors_are_unit_norm_and_sized(self):
        vector = HashEmbedder(16).embed_query("Kerberoasting")
        assert len(vector) == 16
        assert math.isclose(math.sqrt(sum(v * v for v in vector)), 1.0)


    def test_deterministic_and_case_insensitive(self):
        embedder = HashEmbedder(16)
        assert embedder.embed_query("  SQL Injection ") == embedder.embed_query("sql injection")


    def test_empty_text_is_zero_vector(self):
        assert HashEmbedder(4).embed_query("   ") == [0.0, 0.0, 0.0, 0.0]


    def test_satisfies_embedder_protocol(self):
        assert isinstance(HashEmbedder(4), Embedder)


class TestEmbeddingService:
    def test_without_backend_uses_fallback(self):
        service = EmbeddingService(dims=8, use_remote=False)
        assert not service.has_remote
        assert service.dims == 8
        assert service.embed_query("xss") == HashEmbedder(8).embed_query("xss")


    def test_primary_is_used_when_healthy(self):
        service = EmbeddingService(ConstantEmbedder(), dims=8)
        assert service.has_remote
        assert service.embed_documents(["a", "b"]) == [[1.0, 0.0], [1.0, 0.0]]


    def test_sync_failure_falls_back(self):
        service = EmbeddingService(FailingEmbedder(), dims=8)
        assert service.embed_documents(["a"]) == HashEmbedder(8).embed_documents(["a"])
        assert service.embed_query("a") == HashEmbedder(8).embed_query("a")


    @pytest.mark.asyncio
    async def test_async_failure_falls_back(self):
        service = EmbeddingService(FailingEmbedder(), dims=8)
        assert await service.generate_embedding("a") == HashEmbedder(8).embed_query("a")
        assert await service.generate_embeddings(["a"]) == HashEmbedder(8).embed_documents(["a"])


    @pytest.mark.asyncio
    async def test_async_timeout_falls_back(self):
        service = EmbeddingService(SlowEmbedder(), dims=8, timeout=0.05)
        assert await service.generate_embedding("a") == HashEmbedder(8).embed_query("a")
        # Let the worker thread finish before the loop closes
        await asyncio.sleep(0.5)
