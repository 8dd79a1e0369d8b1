"""
Sage - One-shot Question CLI
=============================
Runs a single operation through the ``Companion`` facade and prints the
result.  Useful for smoke-testing provider keys and the knowledge base.

Usage:
    python -m sage.scripts.ask "What is Kerberoasting?" --level intermediate
    python -m sage.scripts.ask "SSRF" --explain --level beginner
    python -m sage.scripts.ask "XSS" --related
    python -m sage.scripts.ask --health
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

_PACKAGE_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PACKAGE_ROOT / ".env")

from sage.config.prompt_templates import DEFAULT_LEVEL, LEVELS, confidence_band


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="ask", description="Sage — ask a security question from the command line.")
    parser.add_argument("query", nargs="?", default="", help="Question or concept.")
    parser.add_argument("--level", choices=LEVELS, default=DEFAULT_LEVEL, help="Explanation level.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--explain", action="store_true", help="Explain a concept instead of answering a question.")
    mode.add_argument("--related", action="store_true", help="Map concepts related to the query.")
    mode.add_argument("--health", action="store_true", help="Print the health snapshot and exit.")
    args = parser.parse_args(argv)
    if not args.health and not args.query.strip():
        parser.error("a query is required unless --health is given")
    return args


async def _run(args: argparse.Namespace) -> int:
    from sage.src.core.companion import Companion

    async with Companion() as sage:
        if args.health:
            print(json.dumps(sage.health_snapshot(), indent=2, ensure_ascii=False))
            return 0

        if args.explain:
            result = await sage.explain_concept(args.query, args.level)
            print(result.explanation)
            if result.related_concepts:
                print(f"\nRelated: {', '.join(result.related_concepts)}")
            if result.practical_tip:
                print(f"Tip: {result.practical_tip}")
            print(f"\nConfidence: {result.confidence:.2f} ({confidence_band(result.confidence)})")
            return 1 if result.failed else 0

        result = await (sage.related_concepts(args.query, args.level) if args.related else sage.ask_question(args.query, args.level))
        print(result.answer)
        for i, citation in enumerate(result.citations, start=1):
            print(f"  [{i}] {citation.source} ({citation.relevance:.2f})")
        if result.followups:
            print("\nFollow-ups:")
            for followup in result.followups:
                print(f"  • {followup}")
        print(f"\nConfidence: {result.confidence:.2f} ({confidence_band(result.confidence)}, mode={result.mode})")
        return 1 if result.failed else 0


def main(argv: list[str] | None = None) -> int:
    return asyncio.run(_run(_parse_args(argv)))


if __name__ == "__main__":
    sys.exit(main())
