"""
Category Resolver

Maps a free-text category suggestion (in any language) to an existing
taxonomy entry by Sørensen-Dice similarity over character bigrams, or creates
a new entry when nothing is close enough and the name passes the guardrails.

New entries get placeholder translations for every active language at once;
the real translations are produced by a detached translation hook.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from newsroom_ai.models import CategoryEntry, GenerationResult, WorkItem
from newsroom_ai.output_parser import parse_json_object
from newsroom_ai.prompt_store import KEY_CATEGORY_INFERENCE, KEY_CATEGORY_TRANSLATION, PromptStore
from newsroom_ai.repositories import CategoryRepository
from newsroom_ai.tasks import DetachedTaskRunner
from newsroom_ai.text_utils import transliterate

logger = logging.getLogger("category_resolver")

TranslateHook = Callable[[str, str], Awaitable[None]]
GenerateText = Callable[[str], Awaitable[str]]

MAX_SLUG_LENGTH = 60
MAX_SLUG_ATTEMPTS = 50
INFERENCE_MAX_CATEGORIES = 120
INFERENCE_MAX_CHARS = 2500

FALLBACK_SLUGS = ("general", "news", "top-news", "breaking", "latest")
FALLBACK_NAMES = ("General", "News", "Top News", "Breaking", "Latest")

CORE_NEWS_CATEGORIES: List[Dict[str, str]] = [
    {"name": "Politics", "slug": "politics"},
    {"name": "State News", "slug": "state-news"},
    {"name": "Crime", "slug": "crime"},
    {"name": "Accident", "slug": "accident"},
    {"name": "Weather", "slug": "weather"},
    {"name": "Sports", "slug": "sports"},
    {"name": "Business", "slug": "business"},
    {"name": "Education", "slug": "education"},
    {"name": "Health", "slug": "health"},
    {"name": "Environment", "slug": "environment"},
    {"name": "Technology", "slug": "technology"},
    {"name": "Entertainment", "slug": "entertainment"},
    {"name": "Devotional", "slug": "devotional"},
    {"name": "Lifestyle", "slug": "lifestyle"},
    {"name": "Community", "slug": "community"},
    {"name": "Traffic", "slug": "traffic"},
    {"name": "Agriculture", "slug": "agriculture"},
    {"name": "National", "slug": "national"},
    {"name": "International", "slug": "international"},
]

LANGUAGE_NAMES: Dict[str, str] = {
    "en": "English", "te": "Telugu", "hi": "Hindi", "ta": "Tamil",
    "kn": "Kannada", "ml": "Malayalam", "mr": "Marathi", "bn": "Bengali",
    "gu": "Gujarati", "pa": "Punjabi", "or": "Odia", "ur": "Urdu",
}


# ---------------------------------------------------------------------------
# Matching primitives
# ---------------------------------------------------------------------------


def normalize_category_name(name: str) -> str:
    """Transliterate, lower-case, ``&`` -> ``and``, collapse non-alphanumerics."""
    text = (name or "").strip()
    if not text:
        return ""
    latin = transliterate(text).lower().replace("&", " and ")
    norm = re.sub(r"[^a-z0-9]+", " ", latin).strip()
    # Scripts with no transliteration still compare on their own letters
    return norm or " ".join(text.casefold().split())


def _bigrams(text: str) -> List[str]:
    return [text[i:i + 2] for i in range(len(text) - 1)]


def dice_similarity(a: str, b: str) -> float:
    """Sørensen-Dice coefficient over character bigram multisets (0..1)."""
    left = normalize_category_name(a)
    right = normalize_category_name(b)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    if len(left) < 3 or len(right) < 3:
        return 0.0
    left_bigrams, right_bigrams = _bigrams(left), _bigrams(right)
    overlap = sum((Counter(left_bigrams) & Counter(right_bigrams)).values())
    return (2.0 * overlap) / (len(left_bigrams) + len(right_bigrams))


def slugify_category(name: str) -> str:
    """ASCII kebab slug (max 60 chars), ``"category"`` when nothing survives."""
    base = re.sub(r"[^a-z0-9]+", "-", transliterate(name or "").lower()).strip("-")
    return base[:MAX_SLUG_LENGTH].strip("-") or "category"


@dataclass
class CategoryMatch:
    id: str
    name: str
    created: bool
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ===================================================================
# RESOLVER
# ===================================================================


class CategoryResolver:
    """Find-or-create taxonomy entries from free-text suggestions."""

    def __init__(
        self,
        categories: CategoryRepository,
        tasks: DetachedTaskRunner,
        translate_hook: Optional[TranslateHook] = None,
        prompt_store: Optional[PromptStore] = None,
        active_languages: Sequence[str] = (),
        similarity_threshold: float = 0.9,
        min_chars: int = 3,
        max_chars: int = 40,
        max_words: int = 4,
    ) -> None:
        self._categories = categories
        self._tasks = tasks
        self._translate_hook = translate_hook
        self._prompt_store = prompt_store
        self.active_languages = list(active_languages)
        self.similarity_threshold = similarity_threshold
        self.min_chars = min_chars
        self.max_chars = max_chars
        self.max_words = max_words

    def passes_guardrails(self, name: str) -> bool:
        norm = normalize_category_name(name)
        if not norm or len(norm) < self.min_chars or len(norm) > self.max_chars:
            return False
        return len(norm.split()) <= self.max_words

    @staticmethod
    def best_match(suggested_name: str, entries: Iterable[CategoryEntry]) -> Optional[CategoryMatch]:
        best: Optional[CategoryMatch] = None
        for entry in entries:
            for candidate in entry.display_names():
                score = dice_similarity(suggested_name, candidate)
                if best is None or score > best.score:
                    best = CategoryMatch(id=entry.id, name=candidate, created=False, score=score)
        return best

    @staticmethod
    def _unique_slug(name: str, taken: Iterable[str]) -> Optional[str]:
        """The base slug or its first free numeric suffix; None when all are taken."""
        base = slugify_category(name)
        existing = set(taken)
        if base not in existing:
            return base
        for attempt in range(1, MAX_SLUG_ATTEMPTS):
            slug = f"{base}-{attempt}"
            if slug not in existing:
                return slug
        return None

    async def resolve_or_create(
        self,
        suggested_name: str,
        language_code: str = "",
        similarity_threshold: Optional[float] = None,
        auto_create: bool = True,
        active_languages: Optional[Sequence[str]] = None,
    ) -> Optional[CategoryMatch]:
        """
        Resolve *suggested_name* to a category id.

        Returns an existing entry when the best similarity against any base
        name or translation reaches the threshold.  Otherwise creates a new
        entry (when ``auto_create`` and the guardrails pass) and spawns the
        translation hook.  Returns None when nothing matches and nothing
        was created.
        """
        name = (suggested_name or "").strip()
        if not name:
            return None
        threshold = self.similarity_threshold if similarity_threshold is None else similarity_threshold

        entries = await self._categories.list_active()
        best = self.best_match(name, entries)
        if best is not None and best.score >= threshold:
            logger.debug("Category '%s' matched '%s' (%.2f)", name, best.name, best.score)
            return best

        if not auto_create:
            return None
        if not self.passes_guardrails(name):
            logger.info("Category suggestion '%s' rejected by guardrails", name)
            return None

        all_entries = await self._categories.find_many()
        slug = self._unique_slug(name, (e.slug for e in all_entries))
        if slug is None:
            logger.warning("No free slug for category '%s' after %d attempts", name, MAX_SLUG_ATTEMPTS)
            return None

        languages = list(active_languages if active_languages is not None else self.active_languages)
        if language_code and language_code not in languages:
            languages.append(language_code)

        entry = CategoryEntry(
            name=name,
            slug=slug,
            translations={code: name for code in languages if code},
        )
        await self._categories.create(entry)
        logger.info("Created category '%s' (slug=%s, id=%s)", name, slug, entry.id[:8])

        if self._translate_hook is not None:
            self._tasks.spawn(
                self._translate_hook(entry.id, name),
                name=f"translate-category-{entry.id[:8]}",
            )
        return CategoryMatch(id=entry.id, name=entry.name, created=True, score=0.0)

    async def fallback_category_id(self) -> Optional[str]:
        """A generic category (General, News, ...) or, failing that, any category."""
        entries = await self._categories.list_active()
        for entry in entries:
            if entry.slug in FALLBACK_SLUGS or entry.name in FALLBACK_NAMES:
                return entry.id
        return entries[0].id if entries else None

    async def infer_category_id(self, item: WorkItem, generate: GenerateText) -> Optional[str]:
        """Ask the provider to pick one of the existing categories for *item*.

        Only ids that exist in the taxonomy are accepted.
        """
        text = item.raw_text()[:INFERENCE_MAX_CHARS]
        if not text:
            return None
        entries = (await self._categories.list_active())[:INFERENCE_MAX_CATEGORIES]
        if not entries:
            return None

        listing = "\n".join(f"{e.id}::{e.name}::{e.slug}" for e in entries)
        if self._prompt_store is None:
            return None
        prompt = await self._prompt_store.render_key(
            KEY_CATEGORY_INFERENCE, {"categories": listing, "article": text},
        )
        parsed = parse_json_object(await generate(prompt))
        if not parsed:
            return None
        candidate = str(parsed.get("categoryId") or "").strip()
        if candidate and any(e.id == candidate for e in entries):
            return candidate
        return None

    async def seed_core_categories(self, languages: Optional[Sequence[str]] = None) -> int:
        """Insert any missing core news categories in one batch; returns count added."""
        langs = list(languages if languages is not None else self.active_languages)
        existing = {e.slug for e in await self._categories.find_many()}
        missing = [
            CategoryEntry(name=c["name"], slug=c["slug"], translations={code: c["name"] for code in langs})
            for c in CORE_NEWS_CATEGORIES
            if c["slug"] not in existing
        ]
        if missing:
            await self._categories.upsert_many(missing)
        logger.info("Seeded %d core categories (%d already existed)", len(missing), len(CORE_NEWS_CATEGORIES) - len(missing))
        return len(missing)


# ---------------------------------------------------------------------------
# Translation hook
# ---------------------------------------------------------------------------


class AiCategoryTranslator:
    """Translates a category name into every language it carries a placeholder for."""

    def __init__(
        self,
        categories: CategoryRepository,
        prompt_store: PromptStore,
        generate: Callable[[str], Awaitable[GenerationResult]],
    ) -> None:
        self._categories = categories
        self._prompts = prompt_store
        self._generate = generate

    async def translate_one(self, text: str, language_code: str) -> str:
        target = LANGUAGE_NAMES.get(language_code, language_code)
        latin_guard = "" if language_code == "en" else " (do NOT use Latin/English letters)"
        prompt = await self._prompts.render_key(
            KEY_CATEGORY_TRANSLATION,
            {"text": text, "targetLanguage": target, "latinGuard": latin_guard},
        )
        result = await self._generate(prompt)
        translated = (result.text or "").strip().strip("\"'").strip()
        return translated.splitlines()[0].strip() if translated else text

    async def translate_and_upsert(self, entity_id: str, base_text: str) -> None:
        entry = await self._categories.find(entity_id)
        if entry is None:
            logger.warning("Translation skipped: category %s no longer exists", entity_id[:8])
            return

        translated: Dict[str, str] = {}
        for code in list(entry.translations):
            try:
                translated[code] = await self.translate_one(base_text, code)
            except Exception as exc:
                logger.warning("Translation of '%s' into %s failed: %s", base_text, code, exc)

        # Re-read so concurrent edits to other fields survive
        latest = await self._categories.find(entity_id)
        if latest is None:
            return
        latest.translations.update(translated)
        await self._categories.upsert(latest)
        logger.info("Saved %d translation(s) for category '%s'", len(translated), base_text)
