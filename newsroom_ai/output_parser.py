"""
Output Parser

Two extraction strategies for provider output:

* label-delimited text, used by the combined single-call templates, where
  each block starts with a label such as ``SEO Title:`` and
  runs until the next recognised label;
* JSON objects, possibly wrapped in Markdown code fences.

Parsers never raise on malformed input; they return ``None``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from newsroom_ai.models import Mode
from newsroom_ai.text_utils import normalize_text, trim_words

logger = logging.getLogger("output_parser")

MAX_KEY_POINTS = 5
MAX_KEY_POINT_WORDS = 5
MAX_KEYWORDS = 10
MAX_SCHEMA_KEYWORDS = 5

FULL_LABELS: Sequence[str] = (
    "Title", "Subtitle", "Key Points", "Main Article",
    "SEO Title", "Meta Description", "Slug", "Keywords", "Article Content",
    "Short Title", "Short Article",
)

LIMITED_LABELS: Sequence[str] = (
    "Original Title", "SEO Title", "Meta Description", "Slug", "Keywords",
    "Schema Focus Keywords", "Short Title", "Short Article",
)

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_BULLET_RE = re.compile(r"^(?:[-*•]+|\d+[.)])\s*")


# ---------------------------------------------------------------------------
# Parsed shapes
# ---------------------------------------------------------------------------


@dataclass
class ParsedPrint:
    title: str = ""
    subtitle: str = ""
    key_points: List[str] = field(default_factory=list)
    content: str = ""


@dataclass
class ParsedWeb:
    seo_title: str = ""
    meta_description: str = ""
    slug: str = ""
    keywords: List[str] = field(default_factory=list)
    content: str = ""
    original_title: str = ""
    schema_focus_keywords: List[str] = field(default_factory=list)


@dataclass
class ParsedShort:
    title: str = ""
    content: str = ""


@dataclass
class ParsedOutput:
    """Blocks split out of one combined provider response."""
    mode: Mode
    web: ParsedWeb
    short: ParsedShort
    print: Optional[ParsedPrint] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data


# ---------------------------------------------------------------------------
# Label-delimited extraction
# ---------------------------------------------------------------------------


def _label_pattern(label: str) -> re.Pattern:
    # Label anywhere not glued to a preceding word, tolerating Markdown bullets, headings and bold
    words = r"\s+".join(re.escape(w) for w in label.split())
    return re.compile(
        rf"(?<!\w)(?:[#>*_\-]+[ \t]*)?{words}[ \t]*[*_]*[ \t]*:[ \t*_]*",
        re.IGNORECASE,
    )


def _label_matches(text: str, labels: Sequence[str]) -> List[Tuple[int, int, str]]:
    """First occurrence of every label, ordered by position.

    A match lying inside a longer label's match (``Title`` within
    ``SEO Title``) does not count as an occurrence.
    """
    candidates = [
        (m.start(), m.end(), label)
        for label in labels
        for m in _label_pattern(label).finditer(text)
    ]
    candidates.sort()

    def _shadowed(c: Tuple[int, int, str]) -> bool:
        return any(
            o[2] != c[2] and o[0] <= c[0] and c[1] <= o[1] and o[1] - o[0] > c[1] - c[0]
            for o in candidates
        )

    first: Dict[str, Tuple[int, int, str]] = {}
    for cand in candidates:
        if cand[2] not in first and not _shadowed(cand):
            first[cand[2]] = cand
    return sorted(first.values())


def extract_sections(text: str, labels: Sequence[str]) -> Dict[str, str]:
    """Split *text* into ``{label: body}`` for every label found.

    Labels may start a line or follow other text on the same line.  Each
    body runs from the end of its label to the start of the nearest
    following recognised label (or the end of the text).  Labels that do not
    occur map to ``""``.
    """
    t = normalize_text(text)
    found = _label_matches(t, labels)

    sections = {label: "" for label in labels}
    for idx, (_start, end, label) in enumerate(found):
        stop = found[idx + 1][0] if idx + 1 < len(found) else len(t)
        sections[label] = t[end:stop].strip()
    return sections


def extract_between(text: str, label: str, end_labels: Sequence[str]) -> str:
    """Text after *label* up to the nearest of *end_labels*."""
    return extract_sections(text, [label, *end_labels])[label]


def parse_lines_list(block: str) -> List[str]:
    """Split a block into non-empty lines with bullet/number markers stripped."""
    items: List[str] = []
    for line in normalize_text(block).split("\n"):
        cleaned = _BULLET_RE.sub("", line.strip()).strip()
        if cleaned:
            items.append(cleaned)
    return items


def parse_keyword_list(block: str, limit: int) -> List[str]:
    """Lines further split on ``,`` and ``|``, capped at *limit*."""
    keywords: List[str] = []
    for line in parse_lines_list(block):
        keywords.extend(part.strip() for part in re.split(r"[,|]", line) if part.strip())
    return keywords[:limit]


def parse_full_output(text: str) -> Optional[ParsedOutput]:
    """Parse a FULL-mode combined response; None if no title block exists."""
    s = extract_sections(text, FULL_LABELS)
    if not (s["Title"] or s["SEO Title"] or s["Short Title"]):
        return None

    key_points = [
        trim_words(point, MAX_KEY_POINT_WORDS)
        for point in parse_lines_list(s["Key Points"])[:MAX_KEY_POINTS]
    ]
    return ParsedOutput(
        mode=Mode.FULL,
        print=ParsedPrint(
            title=s["Title"],
            subtitle=s["Subtitle"],
            key_points=key_points,
            content=s["Main Article"],
        ),
        web=ParsedWeb(
            seo_title=s["SEO Title"],
            meta_description=s["Meta Description"],
            slug=s["Slug"],
            keywords=parse_keyword_list(s["Keywords"], MAX_KEYWORDS),
            content=s["Article Content"],
        ),
        short=ParsedShort(title=s["Short Title"], content=s["Short Article"]),
    )


def parse_limited_output(text: str) -> Optional[ParsedOutput]:
    """Parse a LIMITED-mode combined response; None without SEO or short title."""
    s = extract_sections(text, LIMITED_LABELS)
    if not (s["SEO Title"] or s["Short Title"]):
        return None
    return ParsedOutput(
        mode=Mode.LIMITED,
        web=ParsedWeb(
            original_title=s["Original Title"],
            seo_title=s["SEO Title"],
            meta_description=s["Meta Description"],
            slug=s["Slug"],
            keywords=parse_keyword_list(s["Keywords"], MAX_KEYWORDS),
            schema_focus_keywords=parse_keyword_list(s["Schema Focus Keywords"], MAX_SCHEMA_KEYWORDS),
        ),
        short=ParsedShort(title=s["Short Title"], content=s["Short Article"]),
    )


PARSERS_BY_MODE: Dict[Mode, Callable[[str], Optional[ParsedOutput]]] = {
    Mode.FULL: parse_full_output,
    Mode.LIMITED: parse_limited_output,
}


def parse_combined_output(mode: Mode, text: str) -> Optional[ParsedOutput]:
    return PARSERS_BY_MODE[mode](text)


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------


def strip_code_fences(text: str) -> str:
    """Remove a leading ```json / ``` fence and a trailing ``` fence."""
    if not text:
        return ""
    return _FENCE_RE.sub("", text.strip()).strip()


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Parse a JSON object out of provider text.

    Tries the fence-stripped text first, then the substring between the
    first ``{`` and the last ``}``.  Returns None when neither yields an
    object.
    """
    cleaned = strip_code_fences(text or "")
    if not cleaned:
        return None
    candidates = [cleaned]
    first, last = cleaned.find("{"), cleaned.rfind("}")
    if 0 <= first < last:
        candidates.append(cleaned[first:last + 1])

    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(value, dict):
            return value
    logger.debug("No JSON object found in %d chars of output", len(cleaned))
    return None


def string_field(data: Dict[str, Any], *keys: str) -> str:
    """First non-blank string value among *keys*."""
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def list_field(data: Dict[str, Any], key: str, limit: int) -> List[str]:
    """String list under *key*; a comma/pipe separated string is split."""
    value = data.get(key)
    if isinstance(value, str):
        return parse_keyword_list(value, limit)
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()][:limit]
    return []
