"""
Sage - Output Parser
=====================
Recovers structured answers from nominally-JSON model output.

Models asked for "ONLY a JSON object" still wrap it in code fences,
prepend commentary, or emit invalid escapes.  ``parse_answer`` therefore
tries an ordered list of strategies and never raises:

    1. Strip exactly the outermost fence (anchored, greedy) → ``json.loads``
    2. First balanced ``{...}`` span → ``json.loads`` (must carry ``answer``)
    3. From the first line starting with ``{`` → ``json.loads`` (must carry ``answer``)
    4. Regex-extract the ``"answer"`` string and any recoverable lists
    5. The whole cleaned text is the answer

Every recovered answer is passed through ``sanitize_answer``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sage.src.utils.errors import ParseError
from sage.src.utils.logger import get_logger
from sage.src.utils.text_utils import extract_first_json_object, sanitize_answer, strip_outer_code_fence

logger = get_logger(__name__)

_ANSWER_FIELD_RE = re.compile(r'"answer"\s*:\s*"((?:[^"\\]|\\.)*?)"\s*[,}]')
_EXPLANATION_FIELD_RE = re.compile(r'"explanation"\s*:\s*"((?:[^"\\]|\\.)*)"\s*[,}]')
_QUOTED_RE = re.compile(r'"([^"]+)"')
_RELATED_FOOTER_RE = re.compile(r"RELATED_CONCEPTS:\s*(.+)", re.IGNORECASE)
_TIP_FOOTER_RE = re.compile(r"PRACTICAL_TIP:\s*(.+)", re.IGNORECASE)
_JSON_IN_FENCE_RE = re.compile(r"^```(?:json)?\s*\n(\{[\s\S]*\})\s*\n```$")
_BLANK_RUN_RE = re.compile(r"\n{3,}")

NO_EXPLANATION = "No explanation generated. Please try again."


@dataclass(slots=True)
class ParsedAnswer:
    """Structured answer recovered from model output."""

    answer: str
    followups: list[str] = field(default_factory=list)
    takeaways: list[str] = field(default_factory=list)
    citations: list[Any] = field(default_factory=list)
    confidence: float = 0.0
    related_topics: list[dict[str, str]] = field(default_factory=list)
    learning_path: str | None = None
    strategy: str = "raw"


@dataclass(slots=True)
class ParsedExplanation:
    explanation: str
    analogies: list[str] = field(default_factory=list)
    related_concepts: list[str] = field(default_factory=list)
    offsec_modules: list[str] = field(default_factory=list)
    practical_tip: str | None = None


def _str_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item if isinstance(item, str) else json.dumps(item) for item in value if item]


def _topic_list(value: object) -> list[dict[str, str]]:
    if not isinstance(value, list):
        return []
    topics: list[dict[str, str]] = []
    for item in value:
        if isinstance(item, dict) and item.get("name"):
            topics.append({key: str(val) for key, val in item.items() if val is not None})
        elif isinstance(item, str) and item:
            topics.append({"name": item})
    return topics


def _loads_object(text: str) -> dict[str, Any]:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ParseError(str(exc)) from exc
    if not isinstance(data, dict):
        raise ParseError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _from_mapping(data: dict[str, Any], strategy: str, default_answer: str) -> ParsedAnswer:
    answer = data.get("answer")
    learning_path = data.get("learningPath")
    return ParsedAnswer(
        answer=sanitize_answer(answer) if answer else default_answer,
        followups=_str_list(data.get("suggestedFollowups")),
        takeaways=_str_list(data.get("keyTakeaways")),
        related_topics=_topic_list(data.get("relatedTopics")),
        learning_path=sanitize_answer(learning_path, "learningPath") if learning_path else None,
        strategy=strategy,
    )


# ── Strategies ────────────────────────────────────────────────────────
# Each takes the fence-stripped text and returns a mapping or raises ParseError.

def _direct(cleaned: str) -> dict[str, Any]:
    return _loads_object(cleaned)


def _brace_span(cleaned: str) -> dict[str, Any]:
    span = extract_first_json_object(cleaned)
    if span is None:
        raise ParseError("no brace-delimited span")
    data = _loads_object(span)
    if not data.get("answer"):
        raise ParseError("span has no answer field")
    return data


def _first_brace_line(cleaned: str) -> dict[str, Any]:
    lines = cleaned.split("\n")
    start = next((i for i, line in enumerate(lines) if line.lstrip().startswith("{")), None)
    if start is None:
        raise ParseError("no line starts with '{'")
    data = _loads_object("\n".join(lines[start:]))
    if not data.get("answer"):
        raise ParseError("object has no answer field")
    return data


def _regex_fields(cleaned: str) -> dict[str, Any]:
    match = _ANSWER_FIELD_RE.search(cleaned)
    if match is None:
        raise ParseError("no answer field literal")
    data: dict[str, Any] = {"answer": match.group(1)}
    for key in ("suggestedFollowups", "keyTakeaways"):
        list_match = re.search(r'"' + key + r'"\s*:\s*\[([\s\S]*?)\]', cleaned)
        data[key] = _QUOTED_RE.findall(list_match.group(1)) if list_match else []
    return data


_STRATEGIES: tuple[tuple[str, Callable[[str], dict[str, Any]]], ...] = (
    ("direct", _direct),
    ("brace_span", _brace_span),
    ("first_brace_line", _first_brace_line),
    ("regex", _regex_fields),
)


def parse_answer(raw: str, default_answer: str | None = None) -> ParsedAnswer:
    """
    Recover a ``ParsedAnswer`` from raw model output.  Never raises.

    Parameters
    ----------
    raw
        The model's text.
    default_answer
        Used when a parsed object carries no ``answer`` field.  Defaults
        to the sanitised cleaned text.
    """
    cleaned = strip_outer_code_fence(raw)
    fallback = default_answer if default_answer is not None else sanitize_answer(cleaned)

    for name, strategy in _STRATEGIES:
        try:
            data = strategy(cleaned)
        except ParseError as exc:
            logger.debug("[PARSE] Strategy '%s' failed: %s", name, exc)
            continue
        if name != "direct":
            logger.info("[PARSE] Recovered answer with strategy '%s'.", name)
        return _from_mapping(data, name, fallback)

    logger.warning("[PARSE] Failed to parse JSON from model output, using raw text as answer.")
    return ParsedAnswer(answer=sanitize_answer(cleaned), strategy="raw")


# ── Explanations ──────────────────────────────────────────────────────

def _explanation_from_mapping(data: dict[str, Any], fallback: str) -> ParsedExplanation:
    tip = data.get("practicalTip")
    return ParsedExplanation(
        explanation=sanitize_answer(data.get("explanation") or fallback, "explanation"),
        analogies=_str_list(data.get("analogies")),
        related_concepts=_str_list(data.get("relatedConcepts")),
        offsec_modules=_str_list(data.get("offSecModules")),
        practical_tip=str(tip) if tip else None,
    )


def _parse_json_explanation(raw: str) -> ParsedExplanation:
    cleaned = strip_outer_code_fence(raw)
    for strategy in (_direct, lambda text: _loads_object(extract_first_json_object(text) or "")):
        try:
            return _explanation_from_mapping(strategy(cleaned), cleaned)
        except ParseError:
            continue

    match = _EXPLANATION_FIELD_RE.search(cleaned)
    if match:
        return ParsedExplanation(explanation=sanitize_answer(match.group(1), "explanation"))
    logger.warning("[PARSE] Failed to parse explanation JSON, using raw text.")
    return ParsedExplanation(explanation=sanitize_answer(cleaned, "explanation"))


def _parse_markdown_explanation(raw: str) -> ParsedExplanation:
    text = raw.strip()

    # JSON despite the markdown instruction, bare or fenced
    fenced = _JSON_IN_FENCE_RE.match(text)
    for candidate in (text if text.startswith("{") else None, fenced.group(1) if fenced else None):
        if candidate is None:
            continue
        try:
            data = _loads_object(candidate)
        except ParseError:
            continue
        if data.get("explanation"):
            return _explanation_from_mapping(data, candidate)

    related: list[str] = []
    tip: str | None = None

    related_match = _RELATED_FOOTER_RE.search(text)
    if related_match:
        related = [part.strip() for part in related_match.group(1).split(",") if part.strip()]
        text = _RELATED_FOOTER_RE.sub("", text, count=1).strip()

    tip_match = _TIP_FOOTER_RE.search(text)
    if tip_match:
        tip = tip_match.group(1).strip()
        text = _TIP_FOOTER_RE.sub("", text, count=1).strip()

    text = text.replace("\\n", "\n").replace('\\"', '"')
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return ParsedExplanation(explanation=text or NO_EXPLANATION, related_concepts=related, practical_tip=tip)


def parse_explanation(raw: str, json_mode: bool) -> ParsedExplanation:
    """
    Parse an explain-concept response.

    JSON-mode responses go through fence stripping and the JSON recovery
    strategies on the ``explanation`` field.  Markdown responses keep
    their code fences; only the ``RELATED_CONCEPTS:`` and
    ``PRACTICAL_TIP:`` footer lines are extracted.
    """
    if json_mode:
        return _parse_json_explanation(raw)
    return _parse_markdown_explanation(raw)
