"""
Sage - Prompt Templates & Serving Constants
============================================
Centralised prompt management and per-level constants for the RAG engine
and the concept explainer.  All prompts live here so they can be
versioned, reviewed, and A/B-tested independently of application logic.

Placeholders use ``str.format`` syntax; literal JSON braces inside the
templates are doubled.

Exports
-------
LEVELS, DEFAULT_LEVEL, max_tokens_for_level,
SYSTEM_PROMPT, SAFETY_RULES, FULL_SYSTEM_PROMPT,
LLM_ANSWER_PROMPT, RAG_ANSWER_PROMPT, RELATED_PROMPT, EXPLAIN_PROMPTS,
NO_HISTORY, CONFIDENCE_*, GENERATION_FAILED_MESSAGE.
"""

from __future__ import annotations

from typing import Literal

# ══════════════════════════════════════════════════════════════════════
#  USER LEVELS
# ══════════════════════════════════════════════════════════════════════

Level = Literal["beginner", "intermediate", "expert"]

LEVELS: tuple[str, ...] = ("beginner", "intermediate", "expert")
DEFAULT_LEVEL: str = "beginner"

# Expert answers carry PoC code, CVEs and detection rules and need room.
_TOKEN_MULTIPLIER: dict[str, int] = {"beginner": 1, "intermediate": 2, "expert": 6}


def max_tokens_for_level(base_tokens: int, level: str) -> int:
    """Scale the base completion budget by the user's level."""
    return round(base_tokens * _TOKEN_MULTIPLIER.get(level, 1))


# ══════════════════════════════════════════════════════════════════════
#  SAMPLING TEMPERATURES
# ══════════════════════════════════════════════════════════════════════

RAG_TEMPERATURE: float = 0.5
LLM_ONLY_TEMPERATURE: float = 0.6
RELATED_TEMPERATURE: float = 0.5


def explain_temperature(level: str) -> float:
    return 0.8 if level == "beginner" else 0.6


# ══════════════════════════════════════════════════════════════════════
#  CONFIDENCE BANDS
# ══════════════════════════════════════════════════════════════════════
# Grounded answers score min(avg similarity + bonus, 1.0); every other
# mode is a fixed constant.

CONFIDENCE_GROUNDED_BONUS: float = 0.1
CONFIDENCE_LLM_ONLY: float = 0.5
CONFIDENCE_RELATED: float = 0.7
CONFIDENCE_EXPLAIN_CACHED: float = 0.9
CONFIDENCE_EXPLAIN_FRESH: float = 0.75
CONFIDENCE_HIGH: float = 0.6
CONFIDENCE_LOW: float = 0.3


def confidence_band(confidence: float) -> str:
    """``"high"`` at 0.6 and above, ``"low"`` under 0.3, ``"medium"`` otherwise."""
    if confidence >= CONFIDENCE_HIGH:
        return "high"
    if confidence < CONFIDENCE_LOW:
        return "low"
    return "medium"


# ══════════════════════════════════════════════════════════════════════
#  USER-FACING FALLBACKS
# ══════════════════════════════════════════════════════════════════════

GENERATION_FAILED_MESSAGE: str = "⚠️ I could not generate an answer right now — all AI providers are busy or unavailable. Please try again in a moment."
NO_HISTORY: str = "No previous interactions."


# ══════════════════════════════════════════════════════════════════════
#  SYSTEM PROMPT
# ══════════════════════════════════════════════════════════════════════

SYSTEM_PROMPT: str = """You are Sage, an elite cybersecurity educator for people studying offensive and defensive security. Your mission is to make complex security concepts accessible, accurate, and deeply informative.

Core Principles:
1. ACCURACY FIRST: Never fabricate vulnerabilities, CVEs, or tool behaviors. If unsure, say so explicitly.
2. COMPREHENSIVE: Cover every important aspect. Never give shallow answers.
3. STRUCTURED: Use bullet points, numbered lists, and clear sections. Never write long paragraphs.
4. EDUCATIONAL: Explain *why*, not just *what*.
5. ETHICAL: Never provide instructions for unauthorized access. Emphasize authorized testing and responsible disclosure.

Formatting Rules:
- Use **bold** for key terms and important concepts
- Use `code blocks` for commands, tools, protocols, and technical terms
- Use bullet points (•) for lists and numbered lists for sequential steps
- Use section headers with emojis for organizing content"""


SAFETY_RULES: str = """SAFETY RULES (applied to every response):
1. NEVER provide step-by-step instructions for unauthorized network penetration, malware creation, exploiting specific live systems, or social engineering attack execution.
2. ALWAYS emphasize legal permissions, authorized testing environments, and responsible disclosure.
3. When discussing offensive techniques, frame them as "how defenders detect this" and reference authorized labs (HackTheBox, TryHackMe, OffSec labs).
4. If a question requests help with unauthorized activities, redirect to legal alternatives and explain ethical considerations.
5. Include disclaimers when discussing powerful techniques."""

FULL_SYSTEM_PROMPT: str = f"{SYSTEM_PROMPT}\n\n{SAFETY_RULES}"


# ══════════════════════════════════════════════════════════════════════
#  ASK PROMPTS — LLM-only and RAG
# ══════════════════════════════════════════════════════════════════════

_ASK_INSTRUCTIONS: str = """Provide a focused, well-structured cybersecurity answer. Keep it detailed but concise, about 2000-3000 characters in the answer field.

Include these sections in your answer (use emoji headers):

**📖 Overview** — 2-3 sentence direct answer
**🔍 How It Works** — Numbered steps, clear mechanism explanation
**⚔️ Attack & Defense** — Attack techniques plus specific mitigations
**🔧 Tools** — Relevant offensive and defensive tools with brief descriptions
**🎓 Practice & Training** — Mention that hands-on labs exist for this topic (do NOT invent lab names or URLs; real labs are appended automatically)

FORMATTING:
- Bullet points (•) and numbered lists, no walls of text
- **Bold** key terms, `code blocks` for commands and tools
- Adjust depth for user level (beginner=analogies, intermediate=practical, expert=CVEs/internals)"""

_ASK_JSON_FORMAT: str = """You MUST respond with ONLY a valid JSON object. Do NOT include any text before or after the JSON.

JSON format:
{{
  "answer": "Your detailed answer using ALL sections listed above",
  "suggestedFollowups": ["follow-up question 1", "follow-up question 2", "follow-up question 3"],
  "keyTakeaways": ["takeaway 1", "takeaway 2", "takeaway 3"]
}}"""


LLM_ANSWER_PROMPT: str = f"""You are answering a cybersecurity question directly from your knowledge.

USER QUESTION: {{question}}
USER LEVEL: {{level}}

CONVERSATION HISTORY:
{{recent_history}}

{_ASK_INSTRUCTIONS}

NEVER provide instructions for unauthorized system access. Always emphasize authorized testing.

{_ASK_JSON_FORMAT}"""


RAG_ANSWER_PROMPT: str = f"""You are answering a cybersecurity question using retrieved knowledge and your expertise.

USER QUESTION: {{question}}
USER LEVEL: {{level}}

RETRIEVED CONTEXT:
{{context}}

CONVERSATION HISTORY:
{{recent_history}}

{_ASK_INSTRUCTIONS}

Additional retrieval rules:
- Use the retrieved context as your PRIMARY source
- Cite sources inline using [N] notation
- If the context does not fully cover the question, supplement with your knowledge and say so
- If sources conflict, note the discrepancy

{_ASK_JSON_FORMAT}"""


# ══════════════════════════════════════════════════════════════════════
#  RELATED CONCEPTS
# ══════════════════════════════════════════════════════════════════════

RELATED_PROMPT: str = """You are a cybersecurity knowledge graph expert. Given a concept, provide a comprehensive analysis of related topics.

CONCEPT: {concept}
USER LEVEL: {level}

Provide ALL of the following sections:

1. **📖 Overview** — What {concept} is and why it matters
2. **🔗 Related Topics** — 8-10 closely related concepts, each with how it relates and whether it is offensive (⚔️), defensive (🛡️) or foundational (📖)
3. **🗺️ Learning Path** — Recommended study order (numbered steps)
4. **⚔️ Attack Chain** — How these topics connect in a real attack scenario
5. **🛡️ Defense Stack** — How they connect in a defense-in-depth strategy
6. **💡 Key Takeaways** — Most important connections to understand

Do NOT invent lab names or URLs; real hands-on labs are appended automatically.

You MUST respond with ONLY a valid JSON object. Do NOT include any text before or after the JSON.

JSON format:
{{
  "answer": "Your detailed analysis using ALL sections above",
  "relatedTopics": [
    {{"name": "Topic Name", "relationship": "How it relates", "category": "offensive|defensive|foundational"}}
  ],
  "suggestedFollowups": ["What should I learn about X?", "How does Y connect to Z?"],
  "learningPath": "Recommended order to study these topics"
}}"""


# ══════════════════════════════════════════════════════════════════════
#  EXPLAIN PROMPTS — one per level
# ══════════════════════════════════════════════════════════════════════
# Beginner answers are JSON; intermediate and expert answers are plain
# Markdown ending with RELATED_CONCEPTS / PRACTICAL_TIP footer lines.

_EXPLAIN_SECTIONS: str = """Cover ALL of the following sections. Do NOT skip any section.

1. **📖 What Is It?** — Clear definition and overview
2. **🔍 How Does It Work?** — Step-by-step breakdown of the mechanism
3. **⚔️ Attack Perspective** — How attackers exploit this, with concrete examples
4. **🛡️ Defense & Prevention** — At least 4 specific defensive measures
5. **🌍 Real-World Examples** — At least 2 incidents or case studies
6. **🔧 Tools & Commands** — Relevant tools with actual command syntax
7. **💡 Key Takeaways** — Bullet summary of the most important facts
8. **📚 References** — Related standards and frameworks (OWASP, MITRE ATT&CK, NIST)"""

_MARKDOWN_ONLY: str = """IMPORTANT: Write your response as PLAIN MARKDOWN, NOT as JSON. Use headers, bullet points, code blocks and emojis."""

EXPLAIN_PROMPTS: dict[str, str] = {
    "beginner": f"""Explain {{concept}} for someone who is completely new to cybersecurity. Use simple everyday language and analogies from daily life (houses, locks, mail). Define every technical term in parentheses when first used.

{_EXPLAIN_SECTIONS}

Additional beginner guidelines:
- Replace jargon with simple words
- Include a "Think of it like..." section for the hardest ideas
- Add a "🎯 Beginner Tips" section with practical safety advice

Previous interactions for context:
{{history}}

Respond in this JSON format:
{{{{
  "explanation": "Your detailed explanation using ALL sections listed above",
  "analogies": ["analogy 1", "analogy 2", "analogy 3"],
  "relatedConcepts": ["concept 1", "concept 2", "concept 3", "concept 4", "concept 5"],
  "offSecModules": ["module name if applicable"],
  "practicalTip": "A beginner-friendly security tip"
}}}}""",

    "intermediate": f"""Explain {{concept}} for someone with solid cybersecurity fundamentals who understands networking, common attack types and basic tooling. Use proper technical terminology.

{_EXPLAIN_SECTIONS}

Additional intermediate guidelines:
- Include actual command examples (e.g. `nmap -sV target`, `sqlmap -u URL`)
- Show offensive and defensive perspectives with equal depth
- Reference MITRE ATT&CK technique IDs where applicable

Previous interactions for context:
{{history}}

{_MARKDOWN_ONLY}

At the very end of your response, add these lines:
RELATED_CONCEPTS: concept1, concept2, concept3, concept4, concept5
PRACTICAL_TIP: your hands-on tip here""",

    "expert": f"""Provide an authoritative deep-dive into {{concept}} for an experienced security researcher or red-teamer. Skip definitions and go straight to internals, implementation details and edge cases.

{_EXPLAIN_SECTIONS}

Expert-level requirements:
- NO analogies; every sentence technically precise
- Reference specific CVEs with their root cause
- Show protocol, packet or memory level detail where applicable
- Include proof-of-concept snippets for authorized lab environments
- Provide detection content (Sigma/YARA rules, Suricata signatures or log queries)
- For each defense, explain known bypasses; for each evasion, explain detection
- Cite MITRE ATT&CK technique and sub-technique IDs

Previous interactions for context:
{{history}}

{_MARKDOWN_ONLY}

At the very end of your response, add these lines:
RELATED_CONCEPTS: concept1, concept2, concept3, concept4, concept5, concept6
PRACTICAL_TIP: your expert-level tip here""",
}
