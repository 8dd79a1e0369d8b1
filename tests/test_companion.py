"""End-to-end tests for the ``Companion`` facade with scripted providers."""

from __future__ import annotations

import json

import pytest

from conftest import FakeClock, FakeStore, ScriptedBackend, StatusError, answer_json, make_registry
from sage.config.prompt_templates import GENERATION_FAILED_MESSAGE
from sage.src.core.companion import Companion
from sage.src.services.cache import ResponseCache, make_cache_key
from sage.src.services.gate import ConcurrencyGate
from sage.src.services.health import HealthMonitor
from sage.src.utils.errors import AllProvidersExhaustedError


def _companion(clock: FakeClock, embeddings, *backends, store=None) -> Companion:
    return Companion(
        registry=make_registry(*(backends or (ScriptedBackend(answer_json("ok")),)), clock=clock),
        gate=ConcurrencyGate(2),
        cache=ResponseCache(max_entries=10, default_ttl=300, clock=clock),
        embeddings=embeddings,
        store=store if store is not None else FakeStore(),
        health=HealthMonitor(clock),
        clock=clock,
    )


class TestAskQuestion:
    @pytest.mark.asyncio
    async def test_cache_hit_skips_generation(self, clock: FakeClock, embeddings):
        backend = ScriptedBackend(answer_json("XSS injects script."))
        sage = _companion(clock, embeddings, backend)

        first = await sage.ask_question("What is XSS?", "beginner")
        second = await sage.ask_question("  what is xss? ", "beginner")

        assert backend.calls == 1
        assert not first.cached
        assert second.cached
        assert second.answer == first.answer
        assert sage.gate.running == 0


    @pytest.mark.asyncio
    async def test_caller_edits_do_not_leak_into_cache(self, clock: FakeClock, embeddings):
        backend = ScriptedBackend(answer_json("XSS injects script.", suggestedFollowups=["How to prevent XSS?"]))
        sage = _companion(clock, embeddings, backend)

        first = await sage.ask_question("xss", "beginner")
        first.answer = "edited by the chat layer"
        first.followups.append("extra")

        second = await sage.ask_question("xss", "beginner")
        second.followups.clear()
        third = await sage.ask_question("xss", "beginner")

        assert second.cached
        assert second.answer.startswith("XSS injects script.")
        assert third.followups == ["How to prevent XSS?"]
        assert backend.calls == 1


    @pytest.mark.asyncio
    async def test_levels_are_cached_separately(self, clock: FakeClock, embeddings):
        backend = ScriptedBackend(answer_json("answer"))
        sage = _companion(clock, embeddings, backend)
        await sage.ask_question("xss", "beginner")
        await sage.ask_question("xss", "expert")
        assert backend.calls == 2


    @pytest.mark.asyncio
    async def test_cache_entry_expires(self, clock: FakeClock, embeddings):
        backend = ScriptedBackend(answer_json("answer"))
        sage = _companion(clock, embeddings, backend)
        await sage.ask_question("xss", "beginner")
        clock.advance(301)
        await sage.ask_question("xss", "beginner")
        assert backend.calls == 2


    @pytest.mark.asyncio
    async def test_exhaustion_returns_failure_and_is_not_cached(self, clock: FakeClock, embeddings):
        primary, backup = ScriptedBackend(StatusError(503)), ScriptedBackend(StatusError(500))
        sage = _companion(clock, embeddings, primary, backup)

        result = await sage.ask_question("xss", "beginner")
        assert result.failed
        assert result.answer == GENERATION_FAILED_MESSAGE
        assert result.confidence == 0.0
        assert len(sage.cache) == 0

        await sage.ask_question("xss", "beginner")
        assert (primary.calls, backup.calls) == (2, 2)
        assert sage.health.error_count == 2
        assert sage.gate.running == 0


    @pytest.mark.asyncio
    async def test_grounded_answer_through_facade(self, clock: FakeClock, embeddings):
        store = FakeStore([{"id": "a", "text": "SSRF abuses server fetches", "_distance": 0.1, "source": "ssrf.md", "url": ""}])
        sage = _companion(clock, embeddings, ScriptedBackend(answer_json("grounded")), store=store)
        result = await sage.ask_question("ssrf", "intermediate")
        assert result.grounded
        assert [c.source for c in result.citations] == ["ssrf.md"]
        assert result.citations[0].url is None


    @pytest.mark.asyncio
    async def test_unknown_level_falls_back_to_beginner(self, clock: FakeClock, embeddings):
        backend = ScriptedBackend(answer_json("answer"))
        sage = _companion(clock, embeddings, backend)
        await sage.ask_question("xss", "wizard")
        assert backend.requests[0].max_tokens == 4096
        assert make_cache_key("ask", "beginner", "xss") in sage.cache


class TestExplainConcept:
    @pytest.mark.asyncio
    async def test_cached_explanation_reports_higher_confidence(self, clock: FakeClock, embeddings):
        backend = ScriptedBackend(json.dumps({"explanation": "A forged request.", "relatedConcepts": ["XSS"]}))
        sage = _companion(clock, embeddings, backend)

        fresh = await sage.explain_concept("CSRF", "beginner")
        cached = await sage.explain_concept("csrf", "beginner")

        assert fresh.confidence == pytest.approx(0.75)
        assert cached.confidence == pytest.approx(0.9)
        assert cached.cached
        assert backend.calls == 1


    @pytest.mark.asyncio
    async def test_failure(self, clock: FakeClock, embeddings):
        sage = _companion(clock, embeddings, ScriptedBackend(StatusError(404)))
        result = await sage.explain_concept("CSRF", "expert")
        assert result.failed
        assert result.explanation == GENERATION_FAILED_MESSAGE
        assert result.level == "expert"


class TestRelatedConcepts:
    @pytest.mark.asyncio
    async def test_related_is_cached_under_its_own_kind(self, clock: FakeClock, embeddings):
        backend = ScriptedBackend(json.dumps({"relatedTopics": [{"name": "CSRF", "relationship": "r", "category": "offensive"}]}), answer_json("plain answer"))
        sage = _companion(clock, embeddings, backend)

        related = await sage.related_concepts("XSS", "beginner")
        answer = await sage.ask_question("XSS", "beginner")
        again = await sage.related_concepts("xss", "beginner")

        assert related.mode == "related"
        assert answer.mode == "llm"
        assert again.cached
        assert backend.calls == 2


class TestRawOperations:
    @pytest.mark.asyncio
    async def test_generate_completion(self, clock: FakeClock, embeddings):
        backend = ScriptedBackend("raw text")
        sage = _companion(clock, embeddings, backend)
        assert await sage.generate_completion("sys", "user", temperature=0.1, max_tokens=100, json_mode=True) == "raw text"
        request = backend.requests[0]
        assert (request.system_prompt, request.user_prompt, request.temperature, request.max_tokens, request.json_mode) == ("sys", "user", 0.1, 100, True)


    @pytest.mark.asyncio
    async def test_generate_completion_propagates_exhaustion(self, clock: FakeClock, embeddings):
        sage = _companion(clock, embeddings, ScriptedBackend(StatusError(429)))
        with pytest.raises(AllProvidersExhaustedError):
            await sage.generate_completion("sys", "user")


    @pytest.mark.asyncio
    async def test_generate_embedding(self, clock: FakeClock, embeddings):
        sage = _companion(clock, embeddings)
        assert len(await sage.generate_embedding("xss")) == 8


    @pytest.mark.asyncio
    async def test_lifecycle_and_health(self, clock: FakeClock, embeddings):
        async with _companion(clock, embeddings, ScriptedBackend(StatusError(404)), ScriptedBackend("ok")) as sage:
            await sage.generate_completion("sys", "user")
            snapshot = sage.health_snapshot()

        assert snapshot["providers"] == {"provider-1": "disabled", "provider-2": "available"}
        assert snapshot["vector_store"] == "available"
        assert snapshot["gate"] == {"running": 0, "queued": 0, "max": 2}
        assert snapshot["status"] == "healthy"
