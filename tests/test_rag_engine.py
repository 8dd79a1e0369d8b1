"""Tests for retrieval scoring, confidence and the answer pipeline."""

from __future__ import annotations

import json

import pytest

from conftest import FakeClock, FakeStore, ScriptedBackend, StatusError, answer_json, make_registry
from sage.src.core.rag_engine import HistoryTurn, RAGEngine, RetrievedChunk, format_context, format_history, grounded_confidence, score_chunks
from sage.src.services.providers import FallbackChain
from sage.src.utils.errors import AllProvidersExhaustedError


def _no_resources(topic: str, level: str) -> list:
    return []


def _row(doc_id: str, text: str, distance: float, source: str | None = None) -> dict:
    return {"id": doc_id, "vector": [0.0], "text": text, "_distance": distance, "source": source or f"{doc_id}.md", "url": f"https://kb.example/{doc_id}", "category": "web"}


def _engine(backend: ScriptedBackend, store, embeddings, clock: FakeClock) -> RAGEngine:
    return RAGEngine(FallbackChain(make_registry(backend, clock=clock)), embeddings, store, labs_lookup=_no_resources, courses_lookup=_no_resources)


class RaisingStore(FakeStore):
    def query(self, embedding, k=None, filters=None):
        raise RuntimeError("lance exploded")


class TestScoring:
    def test_similarity_and_keyword_boost(self):
        rows = [_row("a", "SSRF lets attackers reach internal services", 0.4)]
        [chunk] = score_chunks(rows, "explain ssrf internal", threshold=0.3, top_n=5)
        # 1 - 0.4 plus two matching terms
        assert chunk.similarity == pytest.approx(0.7)
        assert chunk.metadata["source"] == "a.md"
        assert "vector" not in chunk.metadata


    def test_below_threshold_dropped_and_sorted(self):
        rows = [_row("low", "nothing", 0.9), _row("mid", "nothing", 0.5), _row("high", "nothing", 0.1)]
        chunks = score_chunks(rows, "zz", threshold=0.3, top_n=5)
        assert [c.id for c in chunks] == ["high", "mid"]


    def test_rerank_keeps_top_n(self):
        rows = [_row(str(i), "text", 0.1 * i) for i in range(6)]
        assert [c.id for c in score_chunks(rows, "zz", threshold=0.0, top_n=2)] == ["0", "1"]


    def test_grounded_confidence_is_clamped(self):
        chunk = RetrievedChunk(id="a", content="", metadata={}, distance=0.0, similarity=1.2)
        assert grounded_confidence([chunk]) == 1.0
        weak = RetrievedChunk(id="b", content="", metadata={}, distance=0.6, similarity=0.4)
        assert grounded_confidence([weak]) == pytest.approx(0.5)


class TestPromptHelpers:
    def test_history_takes_three_newest_rendered_oldest_first(self):
        history = [{"query": "q4", "response": "r4"}, HistoryTurn("q3", "r3"), {"query": "q2", "response": "r2"}, {"query": "q1", "response": "r1"}]
        rendered = format_history(history)
        assert rendered == "Q: q2\nA: r2...\n---\nQ: q3\nA: r3...\n---\nQ: q4\nA: r4..."


    def test_history_truncates_responses(self):
        rendered = format_history([HistoryTurn("q", "x" * 500)])
        assert rendered == "Q: q\nA: " + "x" * 100 + "..."


    def test_empty_history(self):
        assert format_history(None) == "No previous interactions."


    def test_context_enumerates_sources(self):
        chunks = [RetrievedChunk(id="a", content="alpha", metadata={"source": "a.md"}, distance=0, similarity=1), RetrievedChunk(id="b", content="beta", metadata={}, distance=0, similarity=1)]
        assert format_context(chunks) == "[1] Source: a.md\nalpha\n\n---\n\n[2] Source: Unknown\nbeta"


class TestAnswer:
    @pytest.mark.asyncio
    async def test_low_similarity_neighbours_yield_ungrounded_answer(self, embeddings, clock: FakeClock):
        backend = ScriptedBackend(answer_json("SSRF is ...", suggestedFollowups=["How to prevent SSRF?"]))
        store = FakeStore([_row("a", "unrelated text", 0.95), _row("b", "more unrelated", 0.9)])
        result = await _engine(backend, store, embeddings, clock).answer("What is SSRF?", "beginner")

        assert result.citations == []
        assert result.confidence < 0.6
        assert result.mode == "llm"
        assert not result.grounded
        assert "Source:" not in backend.requests[0].user_prompt
        assert result.followups == ["How to prevent SSRF?"]


    @pytest.mark.asyncio
    async def test_grounded_answer_is_more_confident_than_llm_only(self, embeddings, clock: FakeClock):
        query = "What is SSRF?"
        strong = FakeStore([_row("a", "SSRF forces the server to fetch attacker URLs", 0.1), _row("b", "Blind SSRF detection", 0.2)])
        grounded = await _engine(ScriptedBackend(answer_json("grounded")), strong, embeddings, clock).answer(query, "intermediate")
        ungrounded = await _engine(ScriptedBackend(answer_json("ungrounded")), FakeStore([]), embeddings, clock).answer(query, "intermediate")

        assert grounded.grounded and grounded.mode == "rag"
        assert 0.0 <= ungrounded.confidence < grounded.confidence <= 1.0
        assert [c.source for c in grounded.citations] == ["a.md", "b.md"]
        assert grounded.citations[0].url == "https://kb.example/a"
        assert grounded.citations[0].text.endswith("...")


    @pytest.mark.asyncio
    async def test_grounded_prompt_carries_context_and_history(self, embeddings, clock: FakeClock):
        backend = ScriptedBackend(answer_json("ok"))
        store = FakeStore([_row("a", "SSRF basics", 0.1)])
        await _engine(backend, store, embeddings, clock).answer("ssrf", "expert", [{"query": "earlier question", "response": "earlier answer"}])

        request = backend.requests[0]
        assert "[1] Source: a.md" in request.user_prompt
        assert "Q: earlier question" in request.user_prompt
        assert request.json_mode
        assert request.max_tokens > 4096


    @pytest.mark.asyncio
    async def test_unavailable_store_is_not_queried(self, embeddings, clock: FakeClock):
        store = FakeStore([_row("a", "SSRF", 0.0)], available=False)
        result = await _engine(ScriptedBackend(answer_json("ok")), store, embeddings, clock).answer("ssrf", "beginner")
        assert store.queries == []
        assert result.mode == "llm"


    @pytest.mark.asyncio
    async def test_store_exception_degrades_to_llm_only(self, embeddings, clock: FakeClock):
        result = await _engine(ScriptedBackend(answer_json("ok")), RaisingStore(), embeddings, clock).answer("ssrf", "beginner")
        assert result.answer == "ok"
        assert result.mode == "llm"


    @pytest.mark.asyncio
    async def test_filters_reach_the_store(self, embeddings, clock: FakeClock):
        store = FakeStore([])
        await _engine(ScriptedBackend(answer_json("ok")), store, embeddings, clock).answer("ssrf", "beginner", filters={"category": "web"})
        assert store.queries[0][2] == {"category": "web"}


    @pytest.mark.asyncio
    async def test_exhaustion_propagates(self, embeddings, clock: FakeClock):
        with pytest.raises(AllProvidersExhaustedError):
            await _engine(ScriptedBackend(StatusError(503)), FakeStore([]), embeddings, clock).answer("ssrf", "beginner")


    @pytest.mark.asyncio
    async def test_learning_resources_are_appended(self, embeddings, clock: FakeClock):
        engine = RAGEngine(FallbackChain(make_registry(ScriptedBackend(answer_json("XSS explained")), clock=clock)), embeddings, FakeStore([]))
        result = await engine.answer("xss", "beginner")
        assert result.labs
        assert result.answer.startswith("XSS explained")
        assert "Hands-On Labs" in result.answer


class TestFindRelated:
    @pytest.mark.asyncio
    async def test_related_topics_rendered(self, embeddings, clock: FakeClock):
        raw = json.dumps({"answer": "XSS sits among client-side attacks.", "relatedTopics": [{"name": "CSRF", "relationship": "abuses the same session trust", "category": "offensive"}, {"name": "CSP", "relationship": "mitigates XSS", "category": "defensive"}], "learningPath": "HTML → XSS → CSP"})
        result = await _engine(ScriptedBackend(raw), FakeStore([]), embeddings, clock).find_related("XSS", "beginner")

        assert result.mode == "related"
        assert result.confidence == pytest.approx(0.7)
        assert "**1. CSRF**" in result.answer
        assert "**2. CSP**" in result.answer
        assert "Recommended Learning Path" in result.answer
        assert result.followups == ["Explain XSS", "What are common XSS attack vectors?"]
        assert [t["name"] for t in result.related_topics] == ["CSRF", "CSP"]
