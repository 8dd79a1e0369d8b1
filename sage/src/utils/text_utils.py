"""
Sage - Text Utilities
======================
Stateless helpers for text cleaning, query normalisation, and
repairing model output.

Consumers:
  • ``IngestionPipeline``  → ``clean_text``, ``extract_metadata_from_filename``
  • ``ResponseCache``      → ``normalize_query``
  • ``output_parser``      → fence stripping, answer sanitising,
                             balanced-brace JSON extraction
"""

from __future__ import annotations

import re
import unicodedata
from pathlib import Path

# Control characters (C0/C1) except \n, \r, \t, plus BOM, zero-width
# and soft-hyphen artifacts.
_NON_PRINTABLE_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f\ufeff\u200b\u200c\u200d\u200e\u200f\u00ad\u2060\ufffe]")

# Greedy + anchored: matches only the outermost fence, so fenced code
# inside JSON string values survives.
_OUTER_FENCE_RE = re.compile(r"^```(?:json|JSON|markdown|md)?\s*\n([\s\S]*)\n\s*```\s*$")
_LEADING_FENCE_RE = re.compile(r"^```(?:json|JSON|markdown|md)?\s*\n?")
_TRAILING_FENCE_RE = re.compile(r"\n?\s*```\s*$")
_BLANK_RUN_RE = re.compile(r"\n{3,}")

# JSON escapes left behind by regex recovery, undone in one left-to-right pass.
_RESIDUAL_ESCAPE_RE = re.compile(r'\\(["\\n])')
_UNESCAPED = {"n": "\n", '"': '"', "\\": "\\"}


# ── Ingestion ─────────────────────────────────────────────────────────

def clean_text(text: str) -> str:
    """
    Sanitise raw document text for embedding.

    Steps:
        1. Unicode NFC normalisation.
        2. Normalise line endings and strip non-printable characters.
        3. Tabs to two spaces, then collapse horizontal whitespace,
           *preserving* newlines.
        4. Strip every line.
        5. Collapse 3+ consecutive blank lines to 2.
    """
    text = unicodedata.normalize("NFC", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _NON_PRINTABLE_RE.sub("", text)
    text = text.replace("\t", "  ")
    text = re.sub(r"[^\S\n]+", " ", text)
    text = "\n".join(line.strip() for line in text.splitlines())
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip()


# Filename keyword → knowledge-base category.  First match wins.
_CATEGORY_KEYWORDS: list[tuple[str, str]] = [
    ("owasp", "web"),
    ("web", "web"),
    ("network", "network"),
    ("active-directory", "active_directory"),
    ("ad_", "active_directory"),
    ("malware", "malware"),
    ("forensic", "forensics"),
    ("crypto", "cryptography"),
    ("cloud", "cloud"),
    ("pen-", "offsec_course"),
    ("exploit", "exploitation"),
]

_DEFAULT_CATEGORY = "general"


def extract_metadata_from_filename(filename: str) -> dict[str, str]:
    """
    Derive ``title`` and ``category`` from a document filename.

    Examples::

        "owasp_top_10.md"         → title="owasp top 10",      category="web"
        "PEN-200-notes.txt"       → title="PEN 200 notes",     category="offsec_course"
        "random_document.txt"     → title="random document",   category="general"
    """
    stem = Path(filename).stem
    lowered = stem.lower()
    title = re.sub(r"[_\-]+", " ", stem).strip()

    for keyword, category in _CATEGORY_KEYWORDS:
        if keyword in lowered:
            return {"title": title, "category": category}

    return {"title": title, "category": _DEFAULT_CATEGORY}


# ── Queries ───────────────────────────────────────────────────────────

def normalize_query(text: str) -> str:
    """Case-fold and trim a user query for cache keying."""
    return text.casefold().strip()


def query_terms(text: str) -> list[str]:
    """Lower-cased whitespace tokens longer than two characters."""
    return [word for word in text.lower().split() if len(word) > 2]


# ── Model output repair ───────────────────────────────────────────────

def strip_outer_code_fence(text: str) -> str:
    """
    Strip only the outermost Markdown code fence from model output.

    Handles ```` ```json {...} ``` ````, bare ```` ``` ... ``` ```` and
    unfenced text.  If the fence is unbalanced, stray markers at the very
    start and end are removed instead.
    """
    cleaned = text.strip()
    match = _OUTER_FENCE_RE.match(cleaned)
    if match:
        return match.group(1).strip()
    cleaned = _LEADING_FENCE_RE.sub("", cleaned, count=1)
    cleaned = _TRAILING_FENCE_RE.sub("", cleaned, count=1)
    return cleaned.strip()


def sanitize_answer(value: object, field: str = "answer") -> str:
    """
    Normalise a recovered answer string.

    Objects and lists (a model that nested its answer) are flattened to
    Markdown first.  A residual ``{"<field>": "..."}`` wrapper is peeled,
    escaped ``\\n``, ``\\"`` and ``\\\\`` sequences are restored, blank-line
    runs are collapsed to one empty line, and the edges are trimmed.
    """
    if isinstance(value, (dict, list)):
        return flatten_to_markdown(value)

    text = str(value)

    wrapper = re.match(r'^\s*\{\s*"' + re.escape(field) + r'"\s*:\s*"([\s\S]*)"\s*[,}]', text)
    if wrapper:
        text = wrapper.group(1)

    text = _RESIDUAL_ESCAPE_RE.sub(lambda m: _UNESCAPED[m.group(1)], text)
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip()


def flatten_to_markdown(obj: object) -> str:
    """Render a nested JSON value as readable Markdown."""
    if isinstance(obj, str):
        return obj
    if isinstance(obj, list):
        rendered: list[str] = []
        for item in obj:
            if isinstance(item, str):
                rendered.append(f"• {item}")
            elif isinstance(item, dict) and (item.get("term") or item.get("name")):
                label = item.get("term") or item.get("name")
                desc = item.get("definition") or item.get("description") or item.get("explanation") or ""
                analogy = f"\n> _💡 {item['analogy']}_" if item.get("analogy") else ""
                rendered.append(f"**{label}:** {desc}{analogy}")
            else:
                rendered.append(flatten_to_markdown(item))
        return "\n\n".join(rendered)
    if isinstance(obj, dict):
        parts: list[str] = []
        for key, value in obj.items():
            if isinstance(value, (dict, list)):
                parts.append(f"**{key}**\n{flatten_to_markdown(value)}")
            else:
                parts.append(f"**{key}:** {value}")
        return "\n\n".join(parts)
    return "" if obj is None else str(obj)


def extract_first_json_object(text: str) -> str | None:
    """
    Return the first top-level ``{...}`` span in *text*, or ``None``.

    Braces inside JSON strings (including escaped quotes) do not count
    towards nesting depth.
    """
    depth = 0
    start = -1
    in_string = False
    escaped = False

    for idx, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"' and depth > 0:
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = idx
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]

    return None
