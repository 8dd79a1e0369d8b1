"""
Sage - Concept Explainer
=========================
Level-appropriate explanations of a single security concept.

  • **beginner** — JSON mode; the ``explanation`` field and its
    companions (analogies, related concepts, modules, tip) are recovered
    with the JSON strategies of the output parser.
  • **intermediate / expert** — plain Markdown, so code fences in the
    body survive untouched; ``RELATED_CONCEPTS:`` and ``PRACTICAL_TIP:``
    footer lines are lifted out.

Fresh explanations carry confidence 0.75; the facade re-labels cache
hits as 0.9.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from sage.config.prompt_templates import CONFIDENCE_EXPLAIN_FRESH, EXPLAIN_PROMPTS, FULL_SYSTEM_PROMPT, explain_temperature, max_tokens_for_level
from sage.config.settings import settings
from sage.src.core.output_parser import parse_explanation
from sage.src.core.rag_engine import HistoryTurn, format_history
from sage.src.core.registries import Course, Lab, get_courses_for_topic, get_labs_for_topic
from sage.src.services.providers import GenerationRequest
from sage.src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class ExplainResult:
    concept: str
    level: str
    explanation: str
    analogies: list[str] = field(default_factory=list)
    related_concepts: list[str] = field(default_factory=list)
    offsec_modules: list[str] = field(default_factory=list)
    practical_tip: str | None = None
    confidence: float = CONFIDENCE_EXPLAIN_FRESH
    labs: list[Lab] = field(default_factory=list)
    courses: list[Course] = field(default_factory=list)
    cached: bool = False
    failed: bool = False


class ConceptExplainer:
    """Builds the per-level prompt, generates, parses and enriches."""

    __slots__ = ("_chain", "_labs_lookup", "_courses_lookup")

    def __init__(self, chain: Any, labs_lookup: Callable[[str, str], list[Lab]] = get_labs_for_topic, courses_lookup: Callable[[str, str], list[Course]] = get_courses_for_topic) -> None:
        self._chain = chain
        self._labs_lookup = labs_lookup
        self._courses_lookup = courses_lookup


    async def explain(self, concept: str, level: str, history: Sequence[HistoryTurn | Mapping[str, Any]] | None = None) -> ExplainResult:
        json_mode = level == "beginner"
        template = EXPLAIN_PROMPTS.get(level, EXPLAIN_PROMPTS["beginner"])
        prompt = template.format(concept=concept, history=format_history(history))
        request = GenerationRequest(FULL_SYSTEM_PROMPT, prompt, temperature=explain_temperature(level), max_tokens=max_tokens_for_level(settings.MAX_TOKENS, level), json_mode=json_mode)

        raw = await self._chain.generate(request)
        parsed = parse_explanation(raw, json_mode=json_mode)
        logger.info("[EXPLAIN] Explanation ready: concept=%r level=%s chars=%d related=%d", concept, level, len(parsed.explanation), len(parsed.related_concepts))

        return ExplainResult(
            concept=concept,
            level=level,
            explanation=parsed.explanation,
            analogies=parsed.analogies,
            related_concepts=parsed.related_concepts,
            offsec_modules=parsed.offsec_modules,
            practical_tip=parsed.practical_tip,
            labs=list(self._labs_lookup(concept, level)),
            courses=list(self._courses_lookup(concept, level)),
        )
