"""
Sage - Companion Facade
========================
The single entry point the chat layer talks to.  Owns every piece of
process-wide serving state and wires them together:

    ConcurrencyGate ─┐
    HealthMonitor ───┼─▶ FallbackChain ─┬─▶ RAGEngine
    ProviderRegistry ┘                  └─▶ ConceptExplainer
    EmbeddingService ─▶ RAGEngine
    VectorStoreClient ─▶ RAGEngine
    ResponseCache  (consulted here, before any generation)

Exposed operations
------------------
``generate_completion``  raw text; the one surface that propagates
                         ``AllProvidersExhaustedError``.
``generate_embedding``   query vector (hash fallback, never raises).
``ask_question``         ``AskResult`` — grounded or LLM-only.
``explain_concept``      ``ExplainResult`` — level-specific explanation.
``related_concepts``     ``AskResult`` in related-concepts mode.

The three structured operations never raise for a generation failure:
they return a result with ``failed=True`` and a "please try again"
message.  Cache hits return without taking a gate slot, and every caller
gets its own copy of a cached result.

Usage:
    async with Companion() as sage:
        result = await sage.ask_question("What is SSRF?", "beginner")
"""

from __future__ import annotations

import copy
import dataclasses
import time
from collections.abc import Mapping, Sequence
from typing import Any

from sage.config.prompt_templates import CONFIDENCE_EXPLAIN_CACHED, DEFAULT_LEVEL, GENERATION_FAILED_MESSAGE, LEVELS
from sage.config.settings import settings
from sage.src.core.explainer import ConceptExplainer, ExplainResult
from sage.src.core.rag_engine import AskResult, HistoryTurn, RAGEngine
from sage.src.database.vector_store import VectorStoreClient
from sage.src.services.cache import ResponseCache, make_cache_key
from sage.src.services.embeddings import EmbeddingService
from sage.src.services.gate import ConcurrencyGate
from sage.src.services.health import HealthMonitor
from sage.src.services.providers import FallbackChain, GenerationRequest, ProviderRegistry
from sage.src.utils.errors import AllProvidersExhaustedError
from sage.src.utils.logger import get_logger

logger = get_logger(__name__)

History = Sequence[HistoryTurn | Mapping[str, Any]] | None


class Companion:
    """
    Owned serving state plus the exposed operations.

    Every collaborator can be injected (tests pass fakes); anything not
    given is built from ``settings``.
    """

    def __init__(self, *, registry: ProviderRegistry | None = None, gate: ConcurrencyGate | None = None, cache: ResponseCache | None = None, embeddings: EmbeddingService | None = None, store: Any = None, health: HealthMonitor | None = None, clock=time.monotonic) -> None:
        self.health = health if health is not None else HealthMonitor(clock)
        self.gate = gate if gate is not None else ConcurrencyGate()
        self.cache = cache if cache is not None else ResponseCache(clock=clock)
        self.registry = registry if registry is not None else ProviderRegistry.from_settings(clock)
        self.chain = FallbackChain(self.registry, gate=self.gate, health=self.health)
        self.embeddings = embeddings if embeddings is not None else EmbeddingService()
        self.store = store if store is not None else VectorStoreClient(clock=clock)
        self.rag = RAGEngine(self.chain, self.embeddings, self.store)
        self.explainer = ConceptExplainer(self.chain)

    # ── Lifecycle ──────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start background maintenance (cache sweep)."""
        self.cache.start_sweeper()


    async def aclose(self) -> None:
        await self.cache.stop_sweeper()


    async def __aenter__(self) -> Companion:
        await self.start()
        return self


    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ── Exposed operations ─────────────────────────────────────────────

    async def generate_completion(self, system_prompt: str, user_prompt: str, *, temperature: float | None = None, max_tokens: int | None = None, json_mode: bool = False) -> str:
        """
        One generation through the gate and the fallback chain.

        Raises
        ------
        AllProvidersExhaustedError
            No provider produced usable output.
        """
        request = GenerationRequest(system_prompt, user_prompt, temperature=settings.LLM_TEMPERATURE if temperature is None else temperature, max_tokens=max_tokens or settings.MAX_TOKENS, json_mode=json_mode)
        return await self.chain.generate(request)


    async def generate_embedding(self, text: str) -> list[float]:
        return await self.embeddings.generate_embedding(text)


    async def ask_question(self, query: str, level: str = DEFAULT_LEVEL, history: History = None) -> AskResult:
        level = self._level(level)
        key = make_cache_key("ask", level, query)
        if (hit := self.cache.get(key)) is not None:
            logger.info("[CACHE] HIT — skipping generation: %s", key)
            return dataclasses.replace(copy.deepcopy(hit), cached=True)

        try:
            result = await self.rag.answer(query, level, history)
        except AllProvidersExhaustedError as exc:
            logger.error("[RAG] Could not answer %r: %s", query, exc)
            return AskResult(answer=GENERATION_FAILED_MESSAGE, confidence=0.0, failed=True)

        self.cache.set(key, copy.deepcopy(result))
        return result


    async def explain_concept(self, concept: str, level: str = DEFAULT_LEVEL, history: History = None) -> ExplainResult:
        level = self._level(level)
        key = make_cache_key("explain", level, concept)
        if (hit := self.cache.get(key)) is not None:
            logger.info("[CACHE] HIT — skipping generation: %s", key)
            return dataclasses.replace(copy.deepcopy(hit), confidence=CONFIDENCE_EXPLAIN_CACHED, cached=True)

        try:
            result = await self.explainer.explain(concept, level, history)
        except AllProvidersExhaustedError as exc:
            logger.error("[EXPLAIN] Could not explain %r: %s", concept, exc)
            return ExplainResult(concept=concept, level=level, explanation=GENERATION_FAILED_MESSAGE, confidence=0.0, failed=True)

        self.cache.set(key, copy.deepcopy(result))
        return result


    async def related_concepts(self, concept: str, level: str = DEFAULT_LEVEL) -> AskResult:
        level = self._level(level)
        key = make_cache_key("related", level, concept)
        if (hit := self.cache.get(key)) is not None:
            logger.info("[CACHE] HIT — skipping generation: %s", key)
            return dataclasses.replace(copy.deepcopy(hit), cached=True)

        try:
            result = await self.rag.find_related(concept, level)
        except AllProvidersExhaustedError as exc:
            logger.error("[RAG] Could not map related concepts for %r: %s", concept, exc)
            return AskResult(answer=GENERATION_FAILED_MESSAGE, confidence=0.0, mode="related", failed=True)

        self.cache.set(key, copy.deepcopy(result))
        return result


    def health_snapshot(self) -> dict[str, Any]:
        snapshot = self.health.snapshot(gate=self.gate, cache=self.cache)
        snapshot["providers"] = {name: state.value for name, state in self.registry.states().items()}
        snapshot["vector_store"] = "available" if self.store.is_available else "unavailable"
        return snapshot


    @staticmethod
    def _level(level: str) -> str:
        if level in LEVELS:
            return level
        logger.warning("Unknown level %r, using %s.", level, DEFAULT_LEVEL)
        return DEFAULT_LEVEL
