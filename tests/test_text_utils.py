"""Tests for the stateless text helpers."""

from __future__ import annotations

import pytest

from sage.src.utils.text_utils import clean_text, extract_first_json_object, extract_metadata_from_filename, flatten_to_markdown, normalize_query, query_terms, sanitize_answer, strip_outer_code_fence


class TestCleanText:
    def test_collapses_whitespace_but_keeps_newlines(self):
        assert clean_text("a\t\tb   c\r\nd") == "a b c\nd"


    def test_strips_control_and_zero_width_characters(self):
        assert clean_text("\ufeffzero\u200bwidth\x07") == "zerowidth"


    def test_collapses_blank_line_runs(self):
        assert clean_text("one\n\n\n\n\ntwo") == "one\n\ntwo"


    def test_unicode_is_nfc_normalised(self):
        assert clean_text("cafe\u0301") == "caf\u00e9"


class TestFilenameMetadata:
    @pytest.mark.parametrize(("filename", "title", "category"), [
        ("owasp_top_10.md", "owasp top 10", "web"),
        ("PEN-200-notes.txt", "PEN 200 notes", "offsec_course"),
        ("active-directory-attacks.md", "active directory attacks", "active_directory"),
        ("random_document.txt", "random document", "general"),
    ])
    def test_title_and_category(self, filename: str, title: str, category: str):
        assert extract_metadata_from_filename(filename) == {"title": title, "category": category}


class TestQueries:
    def test_normalize_query(self):
        assert normalize_query("  What Is XSS?\n") == "what is xss?"


    def test_query_terms_drop_short_words(self):
        assert query_terms("What is an XSS attack") == ["what", "xss", "attack"]


class TestOutputRepair:
    def test_strip_outer_fence_only(self):
        text = '```json\n{"a": "```inner```"}\n```'
        assert strip_outer_code_fence(text) == '{"a": "```inner```"}'


    def test_strip_unbalanced_fence(self):
        assert strip_outer_code_fence('```json\n{"a": 1}') == '{"a": 1}'


    def test_unfenced_text_is_untouched(self):
        assert strip_outer_code_fence('  {"a": 1}  ') == '{"a": 1}'


    def test_sanitize_peels_wrapper_and_unescapes(self):
        assert sanitize_answer('{"answer": "line\\nnext \\"quoted\\""}') == 'line\nnext "quoted"'


    def test_sanitize_keeps_escaped_backslash_before_n(self):
        assert sanitize_answer('printf(\\"\\\\n\\");') == 'printf("\\n");'
        assert sanitize_answer("C:\\\\\\\\new") == "C:\\\\new"


    def test_sanitize_collapses_blank_runs(self):
        assert sanitize_answer("a\n\n\n\nb") == "a\n\nb"


    def test_flatten_glossary_items(self):
        rendered = flatten_to_markdown([{"term": "XSS", "definition": "script injection", "analogy": "graffiti"}, "plain"])
        assert rendered == "**XSS:** script injection\n> _💡 graffiti_\n\n• plain"


    def test_first_json_object_ignores_braces_in_strings(self):
        text = 'prefix {"a": "}{", "b": {"c": 1}} suffix {"d": 2}'
        assert extract_first_json_object(text) == '{"a": "}{", "b": {"c": 1}}'


    def test_first_json_object_handles_escaped_quotes(self):
        text = '{"a": "say \\"}\\" now"} trailing'
        assert extract_first_json_object(text) == '{"a": "say \\"}\\" now"}'


    def test_no_object(self):
        assert extract_first_json_object("no braces here") is None
        assert extract_first_json_object("{ unbalanced") is None
