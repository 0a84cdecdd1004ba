# src/services/html_sanitizer.py
"""
Markup sanitizer for untrusted strings.

Parses the input with the standard library HTML parser and re-serialises
only what is allowed. Text is always escaped on output, so the result is a
fixed point: sanitizing it again yields the same string.
"""

from html import escape, unescape
from html.parser import HTMLParser
from typing import FrozenSet, List

# Inert formatting tags allowed for rich text fields. No attributes survive.
MARKUP_ALLOWED_TAGS: FrozenSet[str] = frozenset({"p", "br", "strong", "em", "u", "ol", "ul", "li"})

_VOID_TAGS: FrozenSet[str] = frozenset({"br"})

# Elements whose content is dropped together with the tags
_DROP_CONTENT_TAGS: FrozenSet[str] = frozenset({
    "script", "style", "iframe", "frame", "frameset", "object", "embed",
    "noscript", "noembed", "noframes", "template", "title", "head",
    "xmp", "plaintext", "svg", "math", "audio", "video",
})

_HTML_VOID_ELEMENTS: FrozenSet[str] = frozenset({
    "area", "base", "br", "col", "embed", "hr", "img", "input", "link",
    "meta", "param", "source", "track", "wbr",
})


class _SanitizingParser(HTMLParser):
    """Collects allowed output while the document is fed through the parser"""

    def __init__(self, allowed_tags: FrozenSet[str]):
        super().__init__(convert_charrefs=True)
        self.allowed_tags = allowed_tags
        self.parts: List[str] = []
        self.open_tags: List[str] = []
        self.drop_depth = 0

    def handle_starttag(self, tag, attrs):
        if tag in _DROP_CONTENT_TAGS:
            if tag not in _HTML_VOID_ELEMENTS:
                self.drop_depth += 1
            return
        if self.drop_depth or tag not in self.allowed_tags:
            return
        if tag in _VOID_TAGS:
            self.parts.append(f"<{tag}>")
            return
        self.parts.append(f"<{tag}>")
        self.open_tags.append(tag)

    def handle_startendtag(self, tag, attrs):
        if tag in _DROP_CONTENT_TAGS or self.drop_depth or tag not in self.allowed_tags:
            return
        if tag in _VOID_TAGS:
            self.parts.append(f"<{tag}>")
        else:
            self.parts.append(f"<{tag}></{tag}>")

    def handle_endtag(self, tag):
        if tag in _DROP_CONTENT_TAGS:
            if self.drop_depth:
                self.drop_depth -= 1
            return
        if self.drop_depth or tag not in self.open_tags:
            return
        # Close everything opened after the matching tag, like a browser would
        while self.open_tags:
            current = self.open_tags.pop()
            self.parts.append(f"</{current}>")
            if current == tag:
                break

    def handle_data(self, data):
        if self.drop_depth:
            return
        self.parts.append(escape(data, quote=False))

    def result(self) -> str:
        while self.open_tags:
            self.parts.append(f"</{self.open_tags.pop()}>")
        return "".join(self.parts)


def _sanitize(value: str, allowed_tags: FrozenSet[str]) -> str:
    parser = _SanitizingParser(allowed_tags)
    parser.feed(value)
    parser.close()
    return parser.result()


def sanitize_markup(value: str) -> str:
    """Keep only the inert formatting tags, without attributes"""
    return _sanitize(value, MARKUP_ALLOWED_TAGS)


def strip_markup(value: str) -> str:
    """Remove every tag; keep escaped text content"""
    return _sanitize(value, frozenset())


def plain_text(value: str) -> str:
    """
    Remove every tag and return the bare text, unescaped.

    For values that never get rendered as HTML, such as search terms
    matched against stored data.
    """
    return unescape(strip_markup(value))
