"""
Prompt Template Store

Resolves prompt templates by key and renders ``{{name}}`` placeholders.

Lookup precedence for ``get_template(key)``:
    1. Operator override from configuration.  The override is either the
       full template text or a reference to another key, written
       ``db:<key>`` or as the bare key itself.
    2. Persisted template row (read through a TTL cache).
    3. Built-in default constant.

The combined FULL/LIMITED rewrite templates have no built-in default, so
``get_template`` returns ``""`` for them until an operator configures one.

Usage:
    store = PromptStore(storage.prompts, TemplateCache(ttl_seconds=60))
    template = await store.get_template("shortnews_ai_article")
    prompt = store.render(template, {"RAW_TEXT": text})
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from newsroom_ai.models import Mode
from newsroom_ai.repositories import PromptRepository

logger = logging.getLogger("prompt_store")

# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

KEY_SHORT = "shortnews_ai_article"
KEY_WEB = "ai_web_article_json"
KEY_WEB_SEO = "ai_web_seo_json"
KEY_PRINT = "ai_newspaper_article_json"
KEY_CATEGORY_TRANSLATION = "category_translation"
KEY_CATEGORY_INFERENCE = "category_inference"

COMBINED_TEMPLATE_KEYS: Dict[Mode, str] = {
    Mode.FULL: "ai_rewrite_prompt_true",
    Mode.LIMITED: "ai_rewrite_prompt_false",
}

# Placeholder older operator templates use for the raw article text
LEGACY_PASTE_PLACEHOLDER = "{{PASTE ARTICLE HERE}}"

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


# ===================================================================
# DEFAULT PROMPT TEMPLATES
# ===================================================================

DEFAULT_PROMPTS: Dict[str, str] = {
    KEY_SHORT: (
        'Return ONLY JSON: {"title": string (<=35 chars), "content": string '
        '(60 words), "suggestedCategoryName": string}. Write in language '
        '"{{LANGUAGE_CODE}}". Use the following text as source, do not invent '
        "details. Text: {{RAW_TEXT}}"
    ),
    KEY_WEB: (
        "You are a production-ready article formatter and SEO assistant. "
        "Output must be a single valid JSON object only (no markdown, no "
        "commentary). Write the article in language \"{{LANGUAGE_CODE}}\". "
        "Preserve the reporter's facts; do not invent names, numbers or claims.\n\n"
        "Return JSON with fields:\n"
        '  "title": meaningful headline in the article language,\n'
        '  "slug": kebab-case slug from the title (<= 120 chars),\n'
        '  "plainText": the rewritten article, paragraphs separated by blank lines,\n'
        '  "contentHtml": the same article as HTML using only <p>, <h2>, <h3>, '
        "<ul>, <ol>, <li>, <strong>, <em>,\n"
        '  "seoTitle": <= 60 chars,\n'
        '  "metaDescription": 110-155 chars,\n'
        '  "keywords": 3-7 short tags.\n\n'
        "Images: {{IMAGE_URLS}}\n"
        "Raw report:\n{{RAW_TEXT}}"
    ),
    KEY_WEB_SEO: (
        "You are an SEO assistant. Do NOT rewrite the article. Produce SEO "
        "metadata only, as a single JSON object with fields: "
        '"seoTitle" (<= 60 chars), "metaDescription" (<= 160 chars), '
        '"slug" (kebab-case), "keywords" (5-10 strings), '
        '"schemaFocusKeywords" (up to 5 strings). '
        'Respond in language "{{LANGUAGE_CODE}}".\n\n'
        "Article:\n{{RAW_TEXT}}"
    ),
    KEY_PRINT: (
        "You are a professional newspaper editor.\n"
        "Input: a raw report.\n"
        'Task: write a print-ready newspaper article in language "{{LANGUAGE_CODE}}".\n'
        "Output: a single valid JSON object (no markdown).\n\n"
        "JSON schema:\n"
        "{\n"
        '  "title": "short punchy headline, max 6 words",\n'
        '  "subTitle": "optional kicker",\n'
        '  "heading": "formal news heading, max 10 words",\n'
        '  "dateline": "City, date",\n'
        '  "points": ["3-5 key highlights, max 5 words each"],\n'
        '  "content": "main body, 150-200 words, factual tone",\n'
        '  "placeName": "city or location"\n'
        "}\n\n"
        "Dateline hint: {{DATELINE}}\n"
        "Place hint: {{PLACE_NAME}}\n"
        "Raw report:\n{{RAW_TEXT}}"
    ),
    KEY_CATEGORY_TRANSLATION: (
        "You are a translator. Translate the news category name exactly into "
        "{{targetLanguage}}.\n"
        "Rules:\n"
        "- Respond with ONLY the translated category name.\n"
        "- No quotes, no extra words, no punctuation.\n"
        "- Use the native script of {{targetLanguage}}{{latinGuard}}.\n"
        "Category: {{text}}"
    ),
    KEY_CATEGORY_INFERENCE: (
        "Pick the best matching news category for this article.\n"
        'Return ONLY JSON: {"categoryId": string|null}.\n'
        'If nothing fits, return {"categoryId": null}.\n\n'
        "CATEGORIES (id::name::slug):\n{{categories}}\n\n"
        "ARTICLE:\n{{article}}"
    ),
}


# ---------------------------------------------------------------------------
# TTL cache
# ---------------------------------------------------------------------------


class TemplateCache:
    """Time-bounded cache for persisted template lookups.

    Misses are cached as well so an unconfigured key does not hit storage on
    every call.  ``clock`` is injectable for tests.
    """

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Optional[str]]] = {}

    def get(self, key: str) -> Tuple[bool, Optional[str]]:
        """Return ``(hit, value)``; expired entries count as misses."""
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return False, None
        return True, value

    def set(self, key: str, value: Optional[str]) -> None:
        self._entries[key] = (self._clock(), value)


# ===================================================================
# PROMPT STORE
# ===================================================================


class PromptStore:
    """Template lookup with operator overrides, persisted rows and defaults."""

    def __init__(
        self,
        repository: PromptRepository,
        cache: TemplateCache,
        overrides: Optional[Mapping[str, str]] = None,
        defaults: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._repo = repository
        self._cache = cache
        self._overrides = {k: v for k, v in (overrides or {}).items() if v and v.strip()}
        self._defaults = dict(DEFAULT_PROMPTS if defaults is None else defaults)

    @property
    def known_keys(self) -> set:
        return set(self._defaults) | set(COMBINED_TEMPLATE_KEYS.values())

    def _reference_in(self, override: str) -> Optional[str]:
        text = override.strip()
        if text.lower().startswith("db:"):
            return text[3:].strip() or None
        if text in self.known_keys:
            return text
        return None

    async def _persisted(self, key: str) -> Optional[str]:
        hit, value = self._cache.get(key)
        if hit:
            return value
        try:
            value = await self._repo.get_content(key)
        except Exception as exc:
            logger.warning("Prompt lookup for '%s' failed, using default: %s", key, exc)
            return None
        self._cache.set(key, value)
        return value

    async def _persisted_or_default(self, key: str) -> str:
        persisted = await self._persisted(key)
        if persisted and persisted.strip():
            return persisted.strip()
        return self._defaults.get(key, "")

    async def get_template(self, key: str) -> str:
        """Resolve the template text for *key* ("" when nothing is configured)."""
        override = self._overrides.get(key)
        if override:
            ref = self._reference_in(override)
            if ref is None:
                logger.debug("Using operator override for '%s'", key)
                return override.strip()
            logger.debug("Override for '%s' references '%s'", key, ref)
            return await self._persisted_or_default(ref)
        return await self._persisted_or_default(key)

    async def combined_template(self, mode: Mode) -> str:
        """Combined single-call template for *mode*, or "" if not configured."""
        return await self.get_template(COMBINED_TEMPLATE_KEYS[mode])

    @staticmethod
    def render(template: str, variables: Mapping[str, Any]) -> str:
        """Substitute ``{{name}}`` placeholders.

        Unknown or null values become ``""``; non-string values are
        JSON-encoded.  When ``RAW_TEXT`` is supplied the legacy
        ``{{PASTE ARTICLE HERE}}`` and ``{{ARTICLE}}`` placeholders map to it.
        """
        if not template:
            return ""
        values = dict(variables)
        raw_text = values.get("RAW_TEXT")
        if raw_text is not None:
            values.setdefault("ARTICLE", raw_text)

        def _sub(match: re.Match) -> str:
            value = values.get(match.group(1))
            if value is None:
                return ""
            if isinstance(value, str):
                return value
            return json.dumps(value, ensure_ascii=False)

        text = _PLACEHOLDER_RE.sub(_sub, template)
        if raw_text is not None:
            text = text.replace(LEGACY_PASTE_PLACEHOLDER, str(raw_text))
        return text

    async def render_key(self, key: str, variables: Mapping[str, Any]) -> str:
        return self.render(await self.get_template(key), variables)
