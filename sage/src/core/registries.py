"""
Sage - Static Learning Registries
==================================
Keyword / level matching over curated hands-on labs and courses.

Registry data ships as JSON under ``sage/data/registry/`` and is
validated with pydantic on first load.  Matching is fully deterministic;
the model is told never to invent labs, and these matches are appended
to its answer instead.

Scoring (per entry at the requested level)
------------------------------------------
  +10  per registry topic contained in the query (or containing it)
  +2   per query word (> 2 chars) contained in a topic
  +1   (labs) / +3 (courses) per query word contained in the name
  +5   per query word contained in a course certification
  +1   free-course tie-break, only when something else matched

Labs need a score ≥ 3, courses > 0.  When nothing matches at the
requested level, adjacent levels are searched; expert users never get
beginner entries.
"""

from __future__ import annotations

from collections.abc import Sequence
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, TypeAdapter

from sage.config.prompt_templates import Level
from sage.config.settings import settings
from sage.src.utils.logger import get_logger
from sage.src.utils.text_utils import query_terms

logger = get_logger(__name__)

MAX_LABS = 5
MAX_COURSES = 3
MIN_LAB_SCORE = 3

# Adjacent levels searched when the requested level has no match.
FALLBACK_LEVELS: dict[str, tuple[str, ...]] = {
    "expert": ("intermediate",),
    "intermediate": ("expert", "beginner"),
    "beginner": ("intermediate",),
}

PLATFORM_EMOJI: dict[str, str] = {"PortSwigger": "🌐", "TryHackMe": "🎯", "HackTheBox": "📦", "OffSec": "🎓", "CyberDefenders": "🛡️", "PentesterLab": "🔬"}
LEVEL_BADGE: dict[str, str] = {"beginner": "🟢", "intermediate": "🟡", "expert": "🔴"}


class Lab(BaseModel):
    name: str
    url: str
    platform: str
    level: Level
    topics: list[str]


class Course(BaseModel):
    name: str
    url: str
    platform: str
    level: Level
    topics: list[str]
    certification: str | None = None
    duration: str | None = None
    free: bool = False


# ── Loading ───────────────────────────────────────────────────────────

@lru_cache(maxsize=4)
def load_labs(path: Path | None = None) -> tuple[Lab, ...]:
    path = path or settings.REGISTRY_DIR / "labs.json"
    labs = TypeAdapter(list[Lab]).validate_json(path.read_bytes())
    logger.debug("Loaded %d lab(s) from %s", len(labs), path)
    return tuple(labs)


@lru_cache(maxsize=4)
def load_courses(path: Path | None = None) -> tuple[Course, ...]:
    path = path or settings.REGISTRY_DIR / "courses.json"
    courses = TypeAdapter(list[Course]).validate_json(path.read_bytes())
    logger.debug("Loaded %d course(s) from %s", len(courses), path)
    return tuple(courses)


# ── Scoring ───────────────────────────────────────────────────────────

def _topic_score(query: str, words: list[str], topics: Sequence[str]) -> int:
    score = 0
    for topic in topics:
        if topic in query or query in topic:
            score += 10
    for word in words:
        for topic in topics:
            if word in topic:
                score += 2
    return score


def _score_lab(lab: Lab, query: str, words: list[str]) -> int:
    score = _topic_score(query, words, lab.topics)
    name = lab.name.lower()
    return score + sum(1 for word in words if word in name)


def _score_course(course: Course, query: str, words: list[str]) -> int:
    score = _topic_score(query, words, course.topics)
    name = course.name.lower()
    cert = (course.certification or "").lower()
    for word in words:
        if word in name:
            score += 3
        if cert and word in cert:
            score += 5
    if course.free and score > 0:
        score += 1
    return score


def _ranked(scored: list[tuple[int, object]], minimum: int, limit: int) -> list:
    # sorted() is stable, so equal scores keep registry order
    return [entry for score, entry in sorted((pair for pair in scored if pair[0] >= minimum), key=lambda pair: -pair[0])][:limit]


def get_labs_for_topic(topic: str, level: str, labs: Sequence[Lab] | None = None) -> list[Lab]:
    """Up to five labs for *topic* at *level*, falling back to adjacent levels."""
    labs = load_labs() if labs is None else labs
    query = topic.lower().strip()
    words = query_terms(query)

    matched = _ranked([(_score_lab(lab, query, words), lab) for lab in labs if lab.level == level], MIN_LAB_SCORE, MAX_LABS)
    if matched:
        return matched

    # Fallback scoring prefers harder labs and ignores names
    fallback_levels = FALLBACK_LEVELS.get(level, ())
    bonus = {"expert": 3, "intermediate": 1}
    return _ranked([(_topic_score(query, words, lab.topics) + bonus.get(lab.level, 0), lab) for lab in labs if lab.level in fallback_levels], MIN_LAB_SCORE, MAX_LABS)


def get_courses_for_topic(topic: str, level: str, courses: Sequence[Course] | None = None) -> list[Course]:
    """Up to three courses for *topic* at *level*, falling back to adjacent levels."""
    courses = load_courses() if courses is None else courses
    query = topic.lower().strip()
    words = query_terms(query)

    matched = _ranked([(_score_course(course, query, words), course) for course in courses if course.level == level], 1, MAX_COURSES)
    if matched:
        return matched

    fallback_levels = FALLBACK_LEVELS.get(level, ())
    return _ranked([(_topic_score(query, words, course.topics), course) for course in courses if course.level in fallback_levels], 1, MAX_COURSES)


# ── Formatting ────────────────────────────────────────────────────────

def format_labs(labs: Sequence[Lab]) -> str:
    """One Markdown line per lab: platform emoji, link, level badge."""
    return "\n".join(f"{PLATFORM_EMOJI.get(lab.platform, '🔗')} [{lab.name}]({lab.url}) {LEVEL_BADGE.get(lab.level, '')}".rstrip() for lab in labs)


def format_courses(courses: Sequence[Course]) -> str:
    lines = []
    for course in courses:
        cert = f" ({course.certification})" if course.certification else ""
        free = " 🆓" if course.free else ""
        duration = f" · {course.duration}" if course.duration else ""
        lines.append(f"📚 [{course.name}]({course.url}){cert}{free}{duration}")
    return "\n".join(lines)


def append_learning_resources(answer: str, labs: Sequence[Lab], courses: Sequence[Course]) -> str:
    """Append the labs and courses sections to *answer* (each only when non-empty)."""
    if labs:
        answer += "\n\n**🔬 Hands-On Labs:**\n" + format_labs(labs)
    if courses:
        answer += "\n\n**📚 Recommended Courses:**\n" + format_courses(courses)
    return answer
