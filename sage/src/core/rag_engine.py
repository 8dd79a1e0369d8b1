"""
Sage - RAG Engine
==================
Retrieval-augmented answering with graceful degradation.

Pipeline (``RAGEngine.answer``)
-------------------------------
    1.  Embed the query (hash fallback when no embedding backend).
    2.  Query the vector store for the top-K neighbours.
    3.  Score: ``similarity = 1 − distance`` plus ``+0.05`` for every
        query term (> 2 chars) found verbatim in the chunk text.
    4.  Drop chunks below ``SIMILARITY_THRESHOLD`` (0.3).  Nothing left,
        or the store is unavailable → LLM-only mode.
    5.  Keep the best ``RAG_RERANK_TOP`` (5) and enumerate them as
        ``[i] Source: …`` context blocks.
    6.  Build the prompt: context + last 3 turns + strict-JSON rules.
    7.  Generate through the ``FallbackChain``.
    8.  Parse with the multi-strategy output parser.
    9.  Confidence: grounded ``min(avg similarity + 0.1, 1.0)``,
        LLM-only 0.5, related-concepts 0.7.
    10. Enrich with deterministic lab / course matches.

Only ``AllProvidersExhaustedError`` escapes; every retrieval failure
silently degrades to LLM-only.

Usage:
    engine = RAGEngine(chain, embeddings, store)
    result = await engine.answer("What is Kerberoasting?", "intermediate", history)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from sage.config.prompt_templates import CONFIDENCE_GROUNDED_BONUS, CONFIDENCE_LLM_ONLY, CONFIDENCE_RELATED, FULL_SYSTEM_PROMPT, LLM_ANSWER_PROMPT, LLM_ONLY_TEMPERATURE, NO_HISTORY, RAG_ANSWER_PROMPT, RAG_TEMPERATURE, RELATED_PROMPT, RELATED_TEMPERATURE, max_tokens_for_level
from sage.config.settings import settings
from sage.src.core.output_parser import ParsedAnswer, parse_answer
from sage.src.core.registries import Course, Lab, append_learning_resources, get_courses_for_topic, get_labs_for_topic
from sage.src.services.providers import GenerationRequest
from sage.src.utils.errors import RetrievalUnavailableError
from sage.src.utils.logger import get_logger
from sage.src.utils.text_utils import query_terms

logger = get_logger(__name__)

KEYWORD_BOOST = 0.05
HISTORY_TURNS = 3
HISTORY_RESPONSE_CHARS = 100
CITATION_CHARS = 150

_RELATED_ICONS = {"offensive": "⚔️", "defensive": "🛡️", "foundational": "📖"}

# Row keys that are not chunk metadata.
_NON_METADATA_KEYS = frozenset({"vector", "text", "_distance", "id"})


# ── Data Model ────────────────────────────────────────────────────────

@dataclass(slots=True)
class HistoryTurn:
    """One previous question / answer pair."""

    query: str
    response: str


@dataclass(slots=True)
class RetrievedChunk:
    id: str
    content: str
    metadata: dict[str, Any]
    distance: float
    similarity: float


@dataclass(slots=True)
class Citation:
    text: str
    source: str
    url: str | None
    relevance: float


@dataclass(slots=True)
class AskResult:
    """What ``askQuestion`` (and related-concepts) hand back to the chat layer."""

    answer: str
    citations: list[Citation] = field(default_factory=list)
    confidence: float = 0.0
    followups: list[str] = field(default_factory=list)
    takeaways: list[str] = field(default_factory=list)
    labs: list[Lab] = field(default_factory=list)
    courses: list[Course] = field(default_factory=list)
    grounded: bool = False
    mode: str = "llm"
    related_topics: list[dict[str, str]] = field(default_factory=list)
    learning_path: str | None = None
    cached: bool = False
    failed: bool = False


# ── Prompt Helpers ────────────────────────────────────────────────────

def _as_turn(turn: HistoryTurn | Mapping[str, Any]) -> HistoryTurn:
    if isinstance(turn, HistoryTurn):
        return turn
    return HistoryTurn(query=str(turn.get("query", "")), response=str(turn.get("response") or ""))


def format_history(history: Sequence[HistoryTurn | Mapping[str, Any]] | None) -> str:
    """
    Render the most recent turns for the prompt.

    *history* is most-recent-first; the three newest turns are rendered
    oldest-first, each answer cut to 100 characters.
    """
    if not history:
        return NO_HISTORY
    turns = [_as_turn(turn) for turn in list(history)[:HISTORY_TURNS]]
    return "\n---\n".join(f"Q: {turn.query}\nA: {turn.response[:HISTORY_RESPONSE_CHARS]}..." for turn in reversed(turns))


def format_context(chunks: Sequence[RetrievedChunk]) -> str:
    return "\n\n---\n\n".join(f"[{i}] Source: {chunk.metadata.get('source') or 'Unknown'}\n{chunk.content}" for i, chunk in enumerate(chunks, start=1))


def score_chunks(rows: Sequence[Mapping[str, Any]], query: str, threshold: float | None = None, top_n: int | None = None) -> list[RetrievedChunk]:
    """
    Convert raw neighbour rows into filtered, reranked chunks.

    ``similarity = 1 − distance`` plus the keyword boost; chunks under
    *threshold* are dropped and the best *top_n* returned in descending
    similarity order.
    """
    threshold = settings.SIMILARITY_THRESHOLD if threshold is None else threshold
    top_n = top_n or settings.RAG_RERANK_TOP
    terms = query_terms(query)

    chunks: list[RetrievedChunk] = []
    for index, row in enumerate(rows):
        content = str(row.get("text") or "")
        distance = float(row.get("_distance", 1.0))
        similarity = 1.0 - distance
        lowered = content.lower()
        similarity += KEYWORD_BOOST * sum(1 for term in terms if term in lowered)
        metadata = {key: value for key, value in row.items() if key not in _NON_METADATA_KEYS}
        chunks.append(RetrievedChunk(id=str(row.get("id", index)), content=content, metadata=metadata, distance=distance, similarity=similarity))

    relevant = sorted((c for c in chunks if c.similarity >= threshold), key=lambda c: c.similarity, reverse=True)
    return relevant[:top_n]


def grounded_confidence(chunks: Sequence[RetrievedChunk]) -> float:
    """``min(mean similarity + 0.1, 1.0)``, clamped to [0, 1]."""
    if not chunks:
        return CONFIDENCE_LLM_ONLY
    average = sum(c.similarity for c in chunks) / len(chunks)
    return max(0.0, min(average + CONFIDENCE_GROUNDED_BONUS, 1.0))


def build_citations(chunks: Sequence[RetrievedChunk]) -> list[Citation]:
    return [Citation(text=chunk.content[:CITATION_CHARS] + "...", source=str(chunk.metadata.get("source") or "Unknown"), url=chunk.metadata.get("url") or None, relevance=chunk.similarity) for chunk in chunks]


# ── Engine ────────────────────────────────────────────────────────────

class RAGEngine:
    """
    Stateless pipeline orchestrator.

    Parameters
    ----------
    chain
        ``FallbackChain`` used for every generation call.
    embeddings
        ``EmbeddingService`` (or anything with ``generate_embedding``).
    store
        ``VectorStoreClient`` (or anything with ``query`` / ``is_available``).
    labs_lookup / courses_lookup
        Registry matchers; default to the bundled registries.
    """

    __slots__ = ("_chain", "_embeddings", "_store", "_labs_lookup", "_courses_lookup")

    def __init__(self, chain: Any, embeddings: Any, store: Any, labs_lookup: Callable[[str, str], list[Lab]] = get_labs_for_topic, courses_lookup: Callable[[str, str], list[Course]] = get_courses_for_topic) -> None:
        self._chain = chain
        self._embeddings = embeddings
        self._store = store
        self._labs_lookup = labs_lookup
        self._courses_lookup = courses_lookup


    async def retrieve(self, query: str, filters: Mapping[str, str] | None = None) -> list[RetrievedChunk]:
        """
        Steps 1–5: embed, search, score, filter, rerank.

        Raises
        ------
        RetrievalUnavailableError
            The store's circuit is open; the caller falls back to LLM-only.
        """
        if not self._store.is_available:
            raise RetrievalUnavailableError("vector store circuit is open")

        embedding = await self._embeddings.generate_embedding(query)
        rows = await asyncio.to_thread(self._store.query, embedding, settings.RAG_TOP_K, filters)
        chunks = score_chunks(rows, query)
        logger.info("[RAG] Retrieval: %d neighbour(s) → %d relevant chunk(s).", len(rows), len(chunks))
        return chunks


    async def answer(self, query: str, level: str, history: Sequence[HistoryTurn | Mapping[str, Any]] | None = None, filters: Mapping[str, str] | None = None) -> AskResult:
        """Answer *query* grounded in retrieved context when possible, LLM-only otherwise."""
        t_start = time.perf_counter()
        try:
            chunks = await self.retrieve(query, filters)
        except RetrievalUnavailableError as exc:
            logger.warning("[RAG] Retrieval unavailable, using LLM-only mode: %s", exc)
            chunks = []
        except Exception:
            logger.exception("[RAG] Retrieval failed, using LLM-only mode.")
            chunks = []

        history_str = format_history(history)
        max_tokens = max_tokens_for_level(settings.MAX_TOKENS, level)

        if chunks:
            prompt = RAG_ANSWER_PROMPT.format(question=query, level=level, context=format_context(chunks), recent_history=history_str)
            request = GenerationRequest(FULL_SYSTEM_PROMPT, prompt, temperature=RAG_TEMPERATURE, max_tokens=max_tokens, json_mode=True)
        else:
            logger.info("[RAG] No grounding for query, using LLM-only mode (level=%s).", level)
            prompt = LLM_ANSWER_PROMPT.format(question=query, level=level, recent_history=history_str)
            request = GenerationRequest(FULL_SYSTEM_PROMPT, prompt, temperature=LLM_ONLY_TEMPERATURE, max_tokens=max_tokens, json_mode=True)

        raw = await self._chain.generate(request)
        parsed = parse_answer(raw)

        if chunks:
            result = AskResult(answer=parsed.answer, citations=build_citations(chunks), confidence=grounded_confidence(chunks), followups=parsed.followups, takeaways=parsed.takeaways, grounded=True, mode="rag")
        else:
            result = AskResult(answer=parsed.answer, confidence=CONFIDENCE_LLM_ONLY, followups=parsed.followups, takeaways=parsed.takeaways, mode="llm")

        self._enrich(result, query, level)
        logger.info("[RAG] Answer ready: mode=%s confidence=%.2f citations=%d total_ms=%.0f", result.mode, result.confidence, len(result.citations), (time.perf_counter() - t_start) * 1000)
        return result


    async def find_related(self, concept: str, level: str) -> AskResult:
        """Knowledge-graph style related-concepts answer (no retrieval)."""
        prompt = RELATED_PROMPT.format(concept=concept, level=level)
        request = GenerationRequest(FULL_SYSTEM_PROMPT, prompt, temperature=RELATED_TEMPERATURE, max_tokens=max_tokens_for_level(settings.MAX_TOKENS, level), json_mode=True)
        raw = await self._chain.generate(request)
        parsed = parse_answer(raw, default_answer=f"Here are topics related to **{concept}**:")

        result = AskResult(
            answer=self._render_related(parsed),
            confidence=CONFIDENCE_RELATED,
            followups=parsed.followups or [f"Explain {concept}", f"What are common {concept} attack vectors?"],
            takeaways=parsed.takeaways,
            mode="related",
            related_topics=parsed.related_topics,
            learning_path=parsed.learning_path,
        )
        self._enrich(result, concept, level)
        return result


    @staticmethod
    def _render_related(parsed: ParsedAnswer) -> str:
        answer = parsed.answer
        if parsed.related_topics:
            rendered = [f"{_RELATED_ICONS.get(topic.get('category', ''), '📖')} **{i}. {topic['name']}**\n↳ {topic.get('relationship', '')}".rstrip() for i, topic in enumerate(parsed.related_topics, start=1)]
            answer += "\n\n" + "\n\n".join(rendered)
        if parsed.learning_path:
            answer += f"\n\n📚 **Recommended Learning Path:**\n{parsed.learning_path}"
        return answer


    def _enrich(self, result: AskResult, topic: str, level: str) -> None:
        """Attach deterministic lab / course matches and append them to the answer."""
        result.labs = list(self._labs_lookup(topic, level))
        result.courses = list(self._courses_lookup(topic, level))
        result.answer = append_learning_resources(result.answer, result.labs, result.courses)
