"""
Text helpers shared by the parser, draft loop and artifact builders:
word counting and trimming, multilingual slugs, a tag/attribute allowlist
HTML sanitiser and plain-text to HTML conversion.
"""

from __future__ import annotations

import html
import re
from html.parser import HTMLParser
from typing import Dict, FrozenSet, List

from slugify import slugify
from text_unidecode import unidecode

_WS_RE = re.compile(r"\s+")


def count_words(text: str) -> int:
    """Count whitespace-separated words, ignoring HTML tags."""
    if not text:
        return 0
    clean = re.sub(r"<[^>]+>", " ", text)
    return len(clean.split())


def trim_words(text: str, max_words: int) -> str:
    """Return *text* cut to at most *max_words* words (whitespace collapsed when cut)."""
    if not text:
        return ""
    words = text.split()
    if len(words) <= max_words:
        return text.strip()
    return " ".join(words[:max_words])


def truncate_chars(text: str, max_chars: int) -> str:
    """Hard character cap with trailing whitespace stripped."""
    if not text:
        return ""
    text = text.strip()
    return text if len(text) <= max_chars else text[:max_chars].rstrip()


def normalize_text(text: str) -> str:
    """Unify line endings and strip non-breaking spaces."""
    if not text:
        return ""
    return text.replace("\r\n", "\n").replace("\r", "\n").replace("\u00a0", " ")


def transliterate(text: str) -> str:
    """ASCII transliteration for any script (Telugu, Hindi, accented Latin...)."""
    return unidecode(text or "")


def slug_from_any_language(text: str, max_length: int = 120) -> str:
    """Lower-case kebab slug from text in any script, cut on a word boundary."""
    if not text:
        return ""
    return slugify(text, max_length=max_length, word_boundary=True, save_order=True)


def unique_suffix_slug(base: str, attempt: int, max_length: int) -> str:
    """``base`` for attempt 0, else ``base-<attempt>`` kept within *max_length*."""
    if attempt == 0:
        return base[:max_length]
    suffix = f"-{attempt}"
    return base[: max_length - len(suffix)].rstrip("-") + suffix


# ---------------------------------------------------------------------------
# HTML
# ---------------------------------------------------------------------------

ALLOWED_TAGS: FrozenSet[str] = frozenset({
    "p", "h1", "h2", "h3", "ul", "ol", "li", "strong", "em",
    "a", "figure", "img", "figcaption", "br",
})

ALLOWED_ATTRS: Dict[str, FrozenSet[str]] = {
    "a": frozenset({"href"}),
    "img": frozenset({"src", "alt", "loading"}),
}

_DROP_WITH_CONTENT: FrozenSet[str] = frozenset({"script", "style"})
_BLOCKED_SCHEMES = {
    "href": ("javascript:", "vbscript:", "data:"),
    "src": ("javascript:", "vbscript:"),
}
_SCHEME_NOISE_RE = re.compile(r"[\x00-\x20\x7f]+")


def _is_blocked_url(name: str, value: str) -> bool:
    """Check a decoded attribute value against the blocked URL schemes.

    Browsers ignore whitespace and control characters inside a scheme, so
    ``java\\tscript:`` is compared as ``javascript:``.
    """
    schemes = _BLOCKED_SCHEMES.get(name)
    if not schemes:
        return False
    bare = _SCHEME_NOISE_RE.sub("", value or "").lower()
    return bare.startswith(schemes)


class _AllowlistSanitizer(HTMLParser):
    """Re-emit allow-listed tags and attributes from parsed markup."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self._pieces: List[str] = []
        self._skip_depth = 0

    def _open_tag(self, tag: str, attrs: list, self_closing: bool) -> str:
        allowed = ALLOWED_ATTRS.get(tag, frozenset())
        kept: List[str] = []
        for name, value in attrs:
            name = name.lower()
            if name not in allowed or value is None:
                continue
            if _is_blocked_url(name, value):
                continue
            kept.append(f'{name}="{html.escape(value, quote=True)}"')
        attr_text = (" " + " ".join(kept)) if kept else ""
        return f"<{tag}{attr_text}{'/' if self_closing else ''}>"

    def handle_starttag(self, tag: str, attrs: list) -> None:
        if tag in _DROP_WITH_CONTENT:
            self._skip_depth += 1
            return
        if self._skip_depth or tag not in ALLOWED_TAGS:
            return
        self._pieces.append(self._open_tag(tag, attrs, False))

    def handle_startendtag(self, tag: str, attrs: list) -> None:
        if self._skip_depth or tag not in ALLOWED_TAGS:
            return
        self._pieces.append(self._open_tag(tag, attrs, True))

    def handle_endtag(self, tag: str) -> None:
        if tag in _DROP_WITH_CONTENT:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        if self._skip_depth or tag not in ALLOWED_TAGS:
            return
        self._pieces.append(f"</{tag}>")

    def handle_data(self, data: str) -> None:
        if not self._skip_depth:
            self._pieces.append(html.escape(data, quote=False))

    def get_html(self) -> str:
        return "".join(self._pieces)


def sanitize_html_allowlist(markup: str) -> str:
    """Keep only allow-listed tags and attributes.

    Script and style blocks are removed with their contents; any other tag
    outside the allowlist is dropped while its inner text is kept.
    Attribute values are checked after entity decoding, so encoded
    ``javascript:`` links and image sources are removed as well as plain
    ones. ``data:`` links are removed too.
    """
    if not markup:
        return ""
    parser = _AllowlistSanitizer()
    parser.feed(str(markup))
    parser.close()
    return parser.get_html()


def build_simple_html_from_plain_text(plain: str) -> str:
    """Turn blank-line separated paragraphs into ``<h2>``/``<p>`` markup.

    A short single-line paragraph without trailing punctuation becomes a
    heading; other paragraphs become ``<p>`` with ``<br/>`` for inner line
    breaks.
    """
    text = normalize_text(plain).strip()
    if not text:
        return ""
    parts = [p.strip() for p in re.split(r"\n\s*\n", text) if p.strip()]
    blocks: List[str] = []
    for part in parts:
        if len(part) <= 80 and "\n" not in part and not re.search(r"[.!?,;:]$", part):
            blocks.append(f"<h2>{html.escape(part, quote=False)}</h2>")
            continue
        lines = [html.escape(x.strip(), quote=False) for x in part.split("\n") if x.strip()]
        blocks.append(f"<p>{'<br/>'.join(lines)}</p>")
    return sanitize_html_allowlist("".join(blocks))


def html_to_plain_text(markup: str) -> str:
    """Strip tags and collapse whitespace."""
    if not markup:
        return ""
    text = re.sub(r"<br\s*/?>", "\n", markup, flags=re.IGNORECASE)
    text = re.sub(r"</(p|h[1-6]|li)>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)
    paragraphs = [_WS_RE.sub(" ", p).strip() for p in re.split(r"\n\s*\n", text)]
    return "\n\n".join(p for p in paragraphs if p)
