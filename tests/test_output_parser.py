"""Tests for structured-output recovery."""

from __future__ import annotations

import json

from sage.src.core.output_parser import NO_EXPLANATION, parse_answer, parse_explanation


class TestParseAnswer:
    def test_nested_fence_inside_answer_survives(self):
        raw = '```json\n{"answer":"uses a ```html\\n<img>\\n``` snippet"}\n```'
        parsed = parse_answer(raw)
        assert parsed.answer == "uses a ```html\n<img>\n``` snippet"
        assert parsed.strategy == "direct"


    def test_clean_json_fields(self):
        raw = json.dumps({"answer": "SSRF abuses server-side fetches.", "suggestedFollowups": ["How to detect SSRF?"], "keyTakeaways": ["Validate URLs"]})
        parsed = parse_answer(raw)
        assert parsed.answer == "SSRF abuses server-side fetches."
        assert parsed.followups == ["How to detect SSRF?"]
        assert parsed.takeaways == ["Validate URLs"]


    def test_prose_before_object_uses_brace_span(self):
        raw = 'Sure! Here is the answer:\n{"answer": "Use {curly} braces", "suggestedFollowups": ["next"]}\nHope that helps.'
        parsed = parse_answer(raw)
        assert parsed.answer == "Use {curly} braces"
        assert parsed.followups == ["next"]
        assert parsed.strategy == "brace_span"


    def test_broken_json_falls_back_to_regex(self):
        raw = '{"answer": "Line one\\nLine two", "keyTakeaways": ["k1", "k2"], "suggestedFollowups": ['
        parsed = parse_answer(raw)
        assert parsed.strategy == "regex"
        assert parsed.answer == "Line one\nLine two"
        assert parsed.takeaways == ["k1", "k2"]
        assert parsed.followups == []


    def test_plain_prose_becomes_the_answer(self):
        parsed = parse_answer("  Kerberoasting targets service accounts.  ")
        assert parsed.answer == "Kerberoasting targets service accounts."
        assert parsed.strategy == "raw"


    def test_nested_answer_object_is_flattened(self):
        raw = json.dumps({"answer": {"Overview": "Cross-site scripting", "Steps": ["inject", "execute"]}})
        parsed = parse_answer(raw)
        assert parsed.answer.startswith("**Overview:** Cross-site scripting")
        assert "• inject" in parsed.answer


    def test_default_answer_used_when_field_missing(self):
        raw = json.dumps({"relatedTopics": [{"name": "CSRF", "relationship": "also abuses trust", "category": "offensive"}, "Clickjacking"], "learningPath": "XSS → CSRF"})
        parsed = parse_answer(raw, default_answer="Related topics:")
        assert parsed.answer == "Related topics:"
        assert parsed.related_topics == [{"name": "CSRF", "relationship": "also abuses trust", "category": "offensive"}, {"name": "Clickjacking"}]
        assert parsed.learning_path == "XSS → CSRF"


    def test_never_raises_on_garbage(self):
        for raw in ("", "{", "}{", "```", "[1, 2, 3]", '{"answer": }'):
            parse_answer(raw)


class TestParseExplanation:
    def test_json_mode(self):
        raw = '```json\n' + json.dumps({"explanation": "Think of it\\nlike a mailbox.", "analogies": ["mailbox"], "relatedConcepts": ["CSRF"], "offSecModules": ["WEB-200"], "practicalTip": "Try PortSwigger."}) + '\n```'
        parsed = parse_explanation(raw, json_mode=True)
        assert parsed.explanation == "Think of it\nlike a mailbox."
        assert parsed.analogies == ["mailbox"]
        assert parsed.related_concepts == ["CSRF"]
        assert parsed.offsec_modules == ["WEB-200"]
        assert parsed.practical_tip == "Try PortSwigger."


    def test_json_mode_regex_recovery(self):
        parsed = parse_explanation('{"explanation": "Partial \\"quoted\\" text", "analogies": [', json_mode=True)
        assert parsed.explanation == 'Partial "quoted" text'


    def test_markdown_keeps_code_fences_and_lifts_footers(self):
        raw = "## SQL Injection\n\n```python\ncursor.execute(query, params)\n```\n\nRELATED_CONCEPTS: XSS, Command Injection\nPRACTICAL_TIP: Always use parameterised queries."
        parsed = parse_explanation(raw, json_mode=False)
        assert "```python\ncursor.execute(query, params)\n```" in parsed.explanation
        assert "RELATED_CONCEPTS" not in parsed.explanation
        assert "PRACTICAL_TIP" not in parsed.explanation
        assert parsed.related_concepts == ["XSS", "Command Injection"]
        assert parsed.practical_tip == "Always use parameterised queries."


    def test_markdown_mode_accepts_json_anyway(self):
        raw = json.dumps({"explanation": "JSON despite instructions", "relatedConcepts": ["A"]})
        parsed = parse_explanation(raw, json_mode=False)
        assert parsed.explanation == "JSON despite instructions"
        assert parsed.related_concepts == ["A"]


    def test_empty_markdown(self):
        assert parse_explanation("   ", json_mode=False).explanation == NO_EXPLANATION
