# tests/services/test_html_sanitizer.py
"""
Tests for the markup sanitizer.
"""

import pytest

from src.services.html_sanitizer import plain_text, sanitize_markup, strip_markup


class TestSanitizeMarkup:

    def test_allowed_tags_survive(self):
        raw = "<p>One</p><ol><li>a</li><li>b</li></ol><br><u>x</u>"

        assert sanitize_markup(raw) == raw

    def test_attributes_removed(self):
        assert sanitize_markup('<em style="color:red" onmouseover="x()">hi</em>') == "<em>hi</em>"

    @pytest.mark.parametrize("raw", [
        "<script>document.cookie</script>",
        "<style>body{display:none}</style>",
        "<iframe src='https://evil.example'>frame text</iframe>",
        "<svg><circle onload='x()'></circle>text</svg>",
        "<noscript>fallback</noscript>",
    ])
    def test_dangerous_elements_dropped_with_content(self, raw):
        assert sanitize_markup(raw) == ""

    def test_nested_drop_content(self):
        assert sanitize_markup("<div>keep<script>if (a < b) {}</script>me</div>") == "keepme"

    def test_self_closing_br(self):
        assert sanitize_markup("line<br/>next") == "line<br>next"

    def test_stray_end_tags_ignored(self):
        assert sanitize_markup("text</p></strong>") == "text"

    def test_misnested_tags_are_balanced(self):
        assert sanitize_markup("<strong><em>x</strong>y</em>") == "<strong><em>x</em></strong>y"

    def test_comments_removed(self):
        assert sanitize_markup("a<!-- secret -->b") == "ab"

    def test_entities_escaped(self):
        assert sanitize_markup("<p>5 &gt; 3 &amp; 2 &lt; 4</p>") == "<p>5 &gt; 3 &amp; 2 &lt; 4</p>"


class TestStripMarkup:

    def test_removes_every_tag(self):
        assert strip_markup("<p>Hello <strong>there</strong></p>") == "Hello there"

    def test_escapes_text(self):
        assert strip_markup("Tom & Jerry") == "Tom &amp; Jerry"

    def test_fixed_point(self):
        once = strip_markup("<b>a &amp; b</b> <script>x</script>")

        assert strip_markup(once) == once


class TestPlainText:

    def test_entities_unescaped(self):
        assert plain_text("<b>Lee &amp; Park</b>") == "Lee & Park"

    def test_bare_ampersand_kept(self):
        assert plain_text("Tom & Jerry") == "Tom & Jerry"

    def test_dangerous_content_still_dropped(self):
        assert plain_text("Lee<script>alert(1)</script>") == "Lee"
