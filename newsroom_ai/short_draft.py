"""
Short-form draft generation with word-count validation and bounded retries.

The loop asks the provider for ``{"title", "content", "suggestedCategoryName"}``
JSON, retries with a corrective instruction while the body is under the
minimum word count, and falls back to a deterministic draft cut from the
source text when no attempt produced a usable object.  It performs no
storage writes; the orchestrator maps the suggested category and persists.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from newsroom_ai.output_parser import parse_json_object
from newsroom_ai.text_utils import count_words, trim_words

logger = logging.getLogger("short_draft")

DRAFT_TITLE_MAX_CHARS = 35
FALLBACK_TITLE_WORDS = 6
DEFAULT_CATEGORY_NAME = "Community"

GenerateFn = Callable[[str], Awaitable[str]]


@dataclass
class ShortDraft:
    title: str
    content: str
    suggested_category_name: str
    attempts: int
    fallback_used: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _correction(prompt: str, previous_words: Optional[int], min_words: int, max_words: int) -> str:
    had = previous_words if previous_words else "too few"
    return (
        f"{prompt}\n\nIMPORTANT: Previous attempt had only {had} words. "
        f"Regenerate with BETWEEN {min_words} and {max_words} WORDS EXACTLY "
        f"for the content body (not counting title)."
    )


def _valid_draft(data: Optional[Dict[str, Any]]) -> bool:
    return (
        data is not None
        and isinstance(data.get("title"), str)
        and isinstance(data.get("content"), str)
    )


def fallback_draft(source_text: str, max_words: int) -> Dict[str, str]:
    """Deterministic draft from the first words of *source_text*."""
    words = (source_text or "").split()
    title = " ".join(w[:1].upper() + w[1:] for w in words[:FALLBACK_TITLE_WORDS])
    return {
        "title": title[:DRAFT_TITLE_MAX_CHARS].strip(),
        "content": " ".join(words[:max_words]),
        "suggestedCategoryName": DEFAULT_CATEGORY_NAME,
    }


async def generate_short_draft(
    source_text: str,
    prompt: str,
    generate_fn: GenerateFn,
    min_words: int = 58,
    max_words: int = 60,
    max_attempts: int = 3,
) -> ShortDraft:
    """
    Produce a short-form draft within the word bounds.

    Parameters
    ----------
    source_text : str
        Original submission text, used only for the fallback draft.
    prompt : str
        Fully rendered prompt for the first attempt.
    generate_fn : callable
        ``async (prompt) -> str`` provider adapter; empty string on failure.
    min_words, max_words : int
        Acceptable body length.  Bodies over ``max_words`` are truncated.
    max_attempts : int
        Upper bound on provider calls.

    Returns
    -------
    ShortDraft
        ``attempts`` counts provider calls; ``fallback_used`` is True when
        no attempt yielded a valid object.
    """
    attempts = 0
    draft: Optional[Dict[str, Any]] = None
    previous_words: Optional[int] = None

    while attempts < max_attempts:
        attempts += 1
        attempt_prompt = (
            prompt if attempts == 1
            else _correction(prompt, previous_words, min_words, max_words)
        )
        raw = await generate_fn(attempt_prompt)
        if not raw or not raw.strip():
            logger.debug("Short draft attempt %d: empty response", attempts)
            continue

        parsed = parse_json_object(raw)
        if not _valid_draft(parsed):
            logger.debug("Short draft attempt %d: unusable JSON", attempts)
            continue

        draft = parsed
        previous_words = count_words(parsed["content"])
        if previous_words < min_words and attempts < max_attempts:
            logger.debug(
                "Short draft attempt %d: %d words (< %d), retrying",
                attempts, previous_words, min_words,
            )
            continue
        break

    fallback_used = False
    if draft is None:
        logger.info("Short draft: no valid response in %d attempts, using fallback", attempts)
        draft = fallback_draft(source_text, max_words)
        fallback_used = True

    title = draft["title"].strip()
    if len(title) > DRAFT_TITLE_MAX_CHARS:
        title = title[:DRAFT_TITLE_MAX_CHARS].strip()
    content = trim_words(draft["content"], max_words)
    category = draft.get("suggestedCategoryName")
    if not isinstance(category, str) or not category.strip():
        category = DEFAULT_CATEGORY_NAME

    return ShortDraft(
        title=title,
        content=content,
        suggested_category_name=category.strip(),
        attempts=attempts,
        fallback_used=fallback_used,
    )
