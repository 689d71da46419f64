"""
Derivation Pipeline Orchestrator

Takes one WorkItem at a time and derives the requested artifacts (short,
web, print) through the text-generation provider, driving the item's
ProcessingState through PENDING -> RUNNING -> DONE | FAILED | SKIPPED.

Two generation paths exist:

    combined   one provider call with an operator-configured template for
               the item's Mode; the label-delimited response is split by the
               parser for that mode.
    per-kind   used when no combined template is configured; web and print
               are generated from JSON templates and the short form goes
               through the word-count retry loop.

Artifacts are idempotent per item and kind: an existing artifact id on the
state means update in place.  Terminal states trigger a detached callback
and an ingestion mirror update, both best-effort.

Usage:
    from newsroom_ai.pipeline import get_pipeline

    pipeline = get_pipeline()
    processed = await pipeline.run_once()
"""

from __future__ import annotations

import logging
from datetime import datetime, time as dt_time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple
from zoneinfo import ZoneInfo

from newsroom_ai.callback_notifier import CallbackNotifier
from newsroom_ai.category_resolver import AiCategoryTranslator, CategoryResolver
from newsroom_ai.config import PipelineSettings
from newsroom_ai.errors import RepositoryError
from newsroom_ai.models import (
    AiStatus,
    DerivationKind,
    ErrorCode,
    GenerationResult,
    IngestionMirror,
    Mode,
    ModerationStatus,
    PrintArticle,
    PublishStatus,
    ShortFormArticle,
    TenantSettings,
    WebArticle,
    WorkItem,
)
from newsroom_ai.output_parser import (
    ParsedOutput,
    list_field,
    parse_combined_output,
    parse_json_object,
    string_field,
)
from newsroom_ai.prompt_store import KEY_PRINT, KEY_SHORT, KEY_WEB, KEY_WEB_SEO, PromptStore, TemplateCache
from newsroom_ai.repositories import JsonRepository, Storage
from newsroom_ai.seo import build_news_article_json_ld, canonical_url
from newsroom_ai.short_draft import generate_short_draft
from newsroom_ai.tasks import DetachedTaskRunner
from newsroom_ai.text_utils import (
    build_simple_html_from_plain_text,
    count_words,
    html_to_plain_text,
    normalize_text,
    sanitize_html_allowlist,
    slug_from_any_language,
    trim_words,
    truncate_chars,
    unique_suffix_slug,
)
from newsroom_ai.usage_meter import UsageMeter

logger = logging.getLogger("pipeline")

WEB_SLUG_MAX = 120
SHORT_SLUG_MAX = 80
META_DESCRIPTION_MAX = 160
META_FALLBACK_WORDS = 24
SHORT_TAGS_MAX = 7
SEO_TAGS_MAX = 10
PRINT_HEADLINE_WORDS = 6
PRINT_KEY_POINTS_MAX = 5
PRINT_KEY_POINT_WORDS = 5
MAX_SLUG_ATTEMPTS = 50
MIRROR_ERROR_MAX = 120

# Kinds whose per-kind failure reasons mean "the provider gave us nothing usable"
_GENERATION_FAILURES = frozenset({ErrorCode.EMPTY_AI_OUTPUT.value, ErrorCode.PARSE_FAILED.value})


class TextProvider(Protocol):
    async def generate(self, prompt: str, purpose: str = ..., timeout: Optional[float] = ...) -> GenerationResult:
        ...


def _short_id(item: WorkItem) -> str:
    return item.id[:8]


def _parse_mode(value: Optional[str]) -> Optional[Mode]:
    if not value:
        return None
    try:
        return Mode(str(value).strip().upper())
    except ValueError:
        logger.warning("Ignoring unknown mode override %r", value)
        return None


def _is_bad_title(title: str) -> bool:
    stripped = (title or "").strip()
    return not stripped or set(stripped) == {"-"}


# ===================================================================
# ORCHESTRATOR
# ===================================================================


class DerivationPipeline:
    """State machine and batch driver for AI content derivation."""

    def __init__(
        self,
        settings: PipelineSettings,
        storage: Storage,
        provider: TextProvider,
        prompt_store: PromptStore,
        resolver: CategoryResolver,
        meter: UsageMeter,
        notifier: CallbackNotifier,
        tasks: DetachedTaskRunner,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.provider = provider
        self.prompts = prompt_store
        self.resolver = resolver
        self.meter = meter
        self.notifier = notifier
        self.tasks = tasks
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return self._clock()

    def _now_iso(self) -> str:
        return self._now().isoformat()

    @staticmethod
    def select_mode(item: WorkItem, tenant: TenantSettings) -> Mode:
        """Explicit per-item override first, then the tenant rewrite flag."""
        override = _parse_mode(item.mode_override)
        if override is not None:
            return override
        return Mode.FULL if tenant.ai_rewrite_enabled else Mode.LIMITED

    @staticmethod
    def is_eligible(item: WorkItem) -> bool:
        """Not DONE and at least one requested kind still lacks an artifact."""
        return item.state.status != AiStatus.DONE.value and bool(item.pending_kinds())

    def _prompt_vars(self, item: WorkItem) -> Dict[str, Any]:
        location = item.location
        raw_text = item.raw_text()
        return {
            "RAW_TEXT": raw_text,
            "RAW_CONTENT": raw_text,
            "TITLE": item.title,
            "BODY": item.body,
            "LANGUAGE_CODE": item.language_code,
            "TENANT_ID": item.tenant_id,
            "AUTHOR_ID": item.author_id,
            "CATEGORY_IDS": item.category_ids,
            "IMAGE_URLS": item.media_urls,
            "IS_PUBLISHED": "true" if item.publish_intent else "false",
            "DATELINE": item.dateline,
            "PLACE_NAME": location.display_name if location else "",
        }

    async def _save(self, item: WorkItem) -> None:
        await self.storage.work_items.upsert(item)

    async def _generate(self, item: WorkItem, prompt: str, purpose: str) -> GenerationResult:
        """Provider call with usage metering and state bookkeeping."""
        result = await self.provider.generate(
            prompt, purpose=purpose, timeout=self.settings.ai_timeout_seconds,
        )
        await self.meter.record(item.tenant_id, item.id, purpose, prompt, result)
        if result.usage:
            item.state.usage_log.append(dict(result.usage))
        if result.text and result.text.strip():
            item.state.raw_output = result.text
        return result

    async def _save_artifact(self, repo: JsonRepository, item: WorkItem, kind: DerivationKind, artifact: Any) -> Any:
        """Insert, or update in place when the state already points at an artifact."""
        existing_id = item.state.artifact_id(kind)
        existing = await repo.find(existing_id) if existing_id else None
        if existing is not None:
            artifact.id = existing.id
            artifact.created_at = existing.created_at
            artifact.updated_at = self._now_iso()
            await repo.update(artifact)
            logger.debug("Updated %s artifact %s for item %s", kind.value, artifact.id[:8], _short_id(item))
        else:
            await repo.create(artifact)
            logger.debug("Created %s artifact %s for item %s", kind.value, artifact.id[:8], _short_id(item))
        item.state.artifact_ids[kind.value] = artifact.id
        return artifact

    async def _unique_slug(self, repo: Any, base: str, max_length: int, exclude_id: Optional[str]) -> str:
        """*base*, or *base* with the first free numeric suffix."""
        for attempt in range(MAX_SLUG_ATTEMPTS):
            slug = unique_suffix_slug(base, attempt, max_length)
            if not await repo.slug_exists(slug, exclude_id=exclude_id):
                return slug
        raise RepositoryError(f"No free slug for '{base}' after {MAX_SLUG_ATTEMPTS} attempts")

    def _local_day_bounds(self) -> Tuple[datetime, datetime]:
        zone = ZoneInfo(self.settings.timezone)
        local_now = self._now().astimezone(zone)
        start = datetime.combine(local_now.date(), dt_time.min, tzinfo=zone)
        return start.astimezone(timezone.utc), (start + timedelta(days=1)).astimezone(timezone.utc)

    # ------------------------------------------------------------------
    # Taxonomy
    # ------------------------------------------------------------------

    def _set_category(self, item: WorkItem, category_id: str, source: str, **extra: Any) -> None:
        item.category_ids = [category_id]
        item.state.category_inferred = {
            "category_id": category_id,
            "source": source,
            "at": self._now_iso(),
            **extra,
        }

    async def _infer_category(self, item: WorkItem) -> None:
        """Optional up-front AI pick among existing categories."""
        async def _text(prompt: str) -> str:
            return (await self._generate(item, prompt, "category_inference")).text

        try:
            inferred = await self.resolver.infer_category_id(item, _text)
        except Exception as exc:
            logger.warning("Category inference failed for item %s: %s", _short_id(item), exc)
            return
        if inferred:
            self._set_category(item, inferred, "ai")
            await self._save(item)
            logger.info("Inferred category %s for item %s", inferred[:8], _short_id(item))

    async def _short_category_id(
        self, item: WorkItem, tenant: TenantSettings, suggested_name: Optional[str] = None,
    ) -> Optional[str]:
        """Item category, else resolver match/creation, else the generic fallback."""
        if item.category_ids:
            return item.category_ids[0]
        if suggested_name:
            match = await self.resolver.resolve_or_create(
                suggested_name,
                item.language_code,
                active_languages=tenant.languages,
            )
            if match is not None:
                self._set_category(
                    item, match.id, "draft",
                    name=match.name, created=match.created, score=match.score,
                )
                return match.id
        fallback = await self.resolver.fallback_category_id()
        if fallback:
            self._set_category(item, fallback, "fallback")
        return fallback

    # ------------------------------------------------------------------
    # Artifact builders
    # ------------------------------------------------------------------

    async def _upsert_web(
        self,
        item: WorkItem,
        tenant: TenantSettings,
        title: str,
        plain_text: str,
        content_html: str = "",
        slug_source: str = "",
        seo_title: str = "",
        meta_description: str = "",
        keywords: Optional[List[str]] = None,
        schema_focus_keywords: Optional[List[str]] = None,
    ) -> WebArticle:
        now = self._now_iso()
        tags = list(keywords or [])[:SEO_TAGS_MAX]
        base_slug = slug_from_any_language(slug_source or title, WEB_SLUG_MAX) or f"article-{_short_id(item)}"
        slug = await self._unique_slug(
            self.storage.web_articles, base_slug, WEB_SLUG_MAX, item.state.artifact_id(DerivationKind.WEB),
        )
        html = sanitize_html_allowlist(content_html) if content_html else build_simple_html_from_plain_text(plain_text)
        plain = (plain_text or "").strip() or html_to_plain_text(html)
        meta = meta_description or truncate_chars(trim_words(plain, META_FALLBACK_WORDS), META_DESCRIPTION_MAX)
        url = canonical_url(slug, tenant.primary_domain)
        published_at = (item.published_at or now) if item.publish_intent else None

        json_ld = build_news_article_json_ld(
            headline=title,
            canonical=url,
            description=meta,
            image_urls=item.media_urls[:3],
            language_code=item.language_code or "en",
            date_published=published_at,
            date_modified=now,
            publisher_name=self.settings.publisher_name,
            publisher_logo_url=self.settings.publisher_logo_url,
            keywords=tags,
            article_section=item.category_ids[0] if item.category_ids else None,
            word_count=count_words(plain),
        )
        article = WebArticle(
            work_item_id=item.id,
            tenant_id=item.tenant_id,
            author_id=item.author_id,
            domain_id=item.domain_id,
            language_code=item.language_code,
            title=title,
            slug=slug,
            content_html=html,
            plain_text=plain,
            seo_title=seo_title or title,
            meta_description=meta,
            keywords=tags,
            schema_focus_keywords=list(schema_focus_keywords or []),
            canonical_url=url,
            json_ld=json_ld,
            category_ids=list(item.category_ids),
            cover_image=item.media_urls[0] if item.media_urls else None,
            status=PublishStatus.PUBLISHED.value if item.publish_intent else PublishStatus.DRAFT.value,
            published_at=published_at,
        )
        return await self._save_artifact(self.storage.web_articles, item, DerivationKind.WEB, article)

    async def _upsert_short(
        self,
        item: WorkItem,
        title: str,
        body: str,
        category_id: str,
        web: Optional[WebArticle] = None,
        keywords: Optional[List[str]] = None,
        seo_title: str = "",
        meta_description: str = "",
    ) -> ShortFormArticle:
        short_title = truncate_chars(title or item.title, self.settings.short_title_max_chars)
        tags = list(keywords if keywords is not None else (web.keywords if web else []))
        location = item.location
        base_slug = slug_from_any_language(short_title, SHORT_SLUG_MAX) or f"short-{_short_id(item)}"
        slug = await self._unique_slug(
            self.storage.short_articles, base_slug, SHORT_SLUG_MAX, item.state.artifact_id(DerivationKind.SHORT),
        )
        article = ShortFormArticle(
            work_item_id=item.id,
            tenant_id=item.tenant_id,
            author_id=item.author_id,
            title=short_title,
            slug=slug,
            body=trim_words((body or "").strip(), self.settings.short_max_words),
            language_code=item.language_code,
            category_id=category_id,
            tags=tags[:SHORT_TAGS_MAX],
            media_urls=list(item.media_urls),
            featured_image=(web.cover_image if web and web.cover_image else None)
            or (item.media_urls[0] if item.media_urls else None),
            moderation_status=(
                ModerationStatus.AI_APPROVED.value if item.publish_intent
                else ModerationStatus.DESK_PENDING.value
            ),
            seo={
                "metaTitle": seo_title or (web.seo_title if web else "") or short_title,
                "metaDescription": meta_description or (web.meta_description if web else ""),
                "tags": tags[:SEO_TAGS_MAX],
                "altTexts": {},
            },
            place_id=location.place_id if location else None,
            place_name=location.display_name if location else None,
            address=location.address if location else None,
        )
        return await self._save_artifact(self.storage.short_articles, item, DerivationKind.SHORT, article)

    async def _upsert_print(
        self,
        item: WorkItem,
        headline: str,
        body: str,
        kicker: Optional[str] = None,
        heading: str = "",
        key_points: Optional[List[str]] = None,
        dateline: str = "",
        place_name: Optional[str] = None,
    ) -> PrintArticle:
        points = [
            trim_words(str(p).strip(), PRINT_KEY_POINT_WORDS)
            for p in (key_points or [])[:PRINT_KEY_POINTS_MAX]
            if str(p).strip()
        ]
        location = item.location
        article = PrintArticle(
            work_item_id=item.id,
            tenant_id=item.tenant_id,
            author_id=item.author_id,
            language_code=item.language_code,
            headline=trim_words(headline or item.title, PRINT_HEADLINE_WORDS),
            kicker=kicker or None,
            heading=heading or kicker or headline or item.title,
            key_points=points,
            dateline=dateline or item.dateline,
            body=(body or item.body).strip(),
            place_name=place_name or (location.display_name if location else None),
            status=PublishStatus.DRAFT.value,
        )
        return await self._save_artifact(self.storage.print_articles, item, DerivationKind.PRINT, article)

    # ------------------------------------------------------------------
    # Combined path
    # ------------------------------------------------------------------

    async def _run_combined(
        self,
        item: WorkItem,
        tenant: TenantSettings,
        mode: Mode,
        kinds: List[DerivationKind],
        template: str,
    ) -> AiStatus:
        state = item.state
        prompt = self.prompts.render(template, self._prompt_vars(item))
        result = await self._generate(item, prompt, "rewrite")
        out = normalize_text(result.text).strip()
        if not out:
            state.error_code = ErrorCode.EMPTY_AI_OUTPUT.value
            return AiStatus.FAILED

        state.raw_output = out
        parsed = parse_combined_output(mode, out)
        if parsed is None:
            state.error_code = (
                ErrorCode.PARSE_FULL_FAILED.value if mode == Mode.FULL
                else ErrorCode.PARSE_LIMITED_FAILED.value
            )
            return AiStatus.FAILED

        web: Optional[WebArticle] = None
        if DerivationKind.WEB in kinds:
            try:
                web = await self._combined_web(item, tenant, parsed)
            except Exception as exc:
                state.kind_errors[DerivationKind.WEB.value] = str(exc)

        if DerivationKind.SHORT in kinds:
            try:
                category_id = await self._short_category_id(item, tenant)
                if category_id:
                    await self._upsert_short(
                        item,
                        title=parsed.short.title,
                        body=parsed.short.content,
                        category_id=category_id,
                        web=web,
                        keywords=parsed.web.keywords,
                        seo_title=parsed.web.seo_title,
                        meta_description=parsed.web.meta_description,
                    )
                else:
                    state.kind_errors[DerivationKind.SHORT.value] = ErrorCode.MISSING_CATEGORY_ID.value
            except Exception as exc:
                state.kind_errors[DerivationKind.SHORT.value] = str(exc)

        if DerivationKind.PRINT in kinds:
            if mode == Mode.LIMITED or parsed.print is None:
                state.kind_errors[DerivationKind.PRINT.value] = ErrorCode.DISABLED_IN_LIMITED_MODE.value
            else:
                try:
                    await self._upsert_print(
                        item,
                        headline=parsed.print.title,
                        body=parsed.print.content,
                        kicker=parsed.print.subtitle,
                        heading=parsed.print.subtitle,
                        key_points=parsed.print.key_points,
                    )
                except Exception as exc:
                    state.kind_errors[DerivationKind.PRINT.value] = str(exc)

        return AiStatus.DONE

    async def _combined_web(self, item: WorkItem, tenant: TenantSettings, parsed: ParsedOutput) -> WebArticle:
        blocks = parsed.web
        if parsed.mode == Mode.LIMITED:
            return await self._upsert_web(
                item, tenant,
                title=item.title.strip(),
                plain_text=item.body,
                slug_source=blocks.slug or item.title,
                seo_title=blocks.seo_title,
                meta_description=blocks.meta_description,
                keywords=blocks.keywords,
                schema_focus_keywords=blocks.schema_focus_keywords,
            )
        title = (blocks.seo_title or item.title or "Article").strip()
        return await self._upsert_web(
            item, tenant,
            title=title,
            plain_text=blocks.content or item.body,
            slug_source=blocks.slug or title,
            seo_title=blocks.seo_title,
            meta_description=blocks.meta_description,
            keywords=blocks.keywords,
        )

    # ------------------------------------------------------------------
    # Per-kind path
    # ------------------------------------------------------------------

    async def _per_kind_web(self, item: WorkItem, tenant: TenantSettings, mode: Mode) -> WebArticle:
        variables = self._prompt_vars(item)
        if mode == Mode.LIMITED:
            prompt = await self.prompts.render_key(KEY_WEB_SEO, variables)
            result = await self._generate(item, prompt, "seo")
            meta = parse_json_object(result.text) or {}
            if not meta:
                logger.warning("No SEO metadata for item %s, using derived values", _short_id(item))
            return await self._upsert_web(
                item, tenant,
                title=item.title.strip(),
                plain_text=item.body,
                slug_source=string_field(meta, "slug") or item.title,
                seo_title=string_field(meta, "seoTitle", "metaTitle"),
                meta_description=string_field(meta, "metaDescription"),
                keywords=list_field(meta, "keywords", SEO_TAGS_MAX) or list_field(meta, "tags", SEO_TAGS_MAX),
                schema_focus_keywords=list_field(meta, "schemaFocusKeywords", 5),
            )

        prompt = await self.prompts.render_key(KEY_WEB, variables)
        result = await self._generate(item, prompt, "web")
        if not result.text.strip():
            raise _KindFailure(ErrorCode.EMPTY_AI_OUTPUT)
        data = parse_json_object(result.text)
        if data is None:
            raise _KindFailure(ErrorCode.PARSE_FAILED)
        plain = string_field(data, "plainText", "content")
        html = string_field(data, "contentHtml")
        if not plain and not html:
            raise _KindFailure(ErrorCode.PARSE_FAILED)

        meta_block = data.get("meta") if isinstance(data.get("meta"), dict) else {}
        title = string_field(data, "title")
        if _is_bad_title(title):
            title = item.title.strip() or "Untitled Article"
        return await self._upsert_web(
            item, tenant,
            title=title,
            plain_text=plain,
            content_html=html,
            slug_source=string_field(data, "slug") or title,
            seo_title=string_field(data, "seoTitle") or string_field(meta_block, "seoTitle"),
            meta_description=string_field(data, "metaDescription") or string_field(meta_block, "metaDescription"),
            keywords=list_field(data, "keywords", SEO_TAGS_MAX) or list_field(data, "tags", SEO_TAGS_MAX),
        )

    async def _per_kind_short(self, item: WorkItem, tenant: TenantSettings, web: Optional[WebArticle]) -> None:
        state = item.state
        raw_text = item.raw_text()
        prompt = await self.prompts.render_key(KEY_SHORT, self._prompt_vars(item))

        async def _text(p: str) -> str:
            return (await self._generate(item, p, "shortnews_ai_article")).text

        draft = await generate_short_draft(
            raw_text,
            prompt,
            _text,
            min_words=self.settings.short_min_words,
            max_words=self.settings.short_max_words,
            max_attempts=self.settings.short_max_attempts,
        )
        state.short_attempts = draft.attempts
        state.short_fallback_used = draft.fallback_used

        category_id = await self._short_category_id(item, tenant, draft.suggested_category_name)
        if not category_id:
            raise _KindFailure(ErrorCode.MISSING_CATEGORY_ID)
        await self._upsert_short(item, title=draft.title, body=draft.content, category_id=category_id, web=web)

    async def _per_kind_print(self, item: WorkItem) -> None:
        if not item.state.artifact_id(DerivationKind.PRINT):
            start, end = self._local_day_bounds()
            today = await self.storage.print_articles.count_for_author_between(
                item.tenant_id, item.author_id, start, end,
            )
            if today >= self.settings.print_daily_limit:
                raise _KindFailure(ErrorCode.DAILY_LIMIT_REACHED)

        prompt = await self.prompts.render_key(KEY_PRINT, self._prompt_vars(item))
        result = await self._generate(item, prompt, "newspaper")
        if not result.text.strip():
            raise _KindFailure(ErrorCode.EMPTY_AI_OUTPUT)
        data = parse_json_object(result.text)
        if data is None or not string_field(data, "title", "headline"):
            raise _KindFailure(ErrorCode.PARSE_FAILED)

        points = data.get("points") or data.get("keyPoints") or []
        await self._upsert_print(
            item,
            headline=string_field(data, "title", "headline"),
            body=string_field(data, "content", "body"),
            kicker=string_field(data, "subTitle", "subtitle", "kicker") or None,
            heading=string_field(data, "heading"),
            key_points=points if isinstance(points, list) else [points],
            dateline=string_field(data, "dateline"),
            place_name=string_field(data, "placeName") or None,
        )

    async def _run_per_kind(
        self,
        item: WorkItem,
        tenant: TenantSettings,
        mode: Mode,
        kinds: List[DerivationKind],
    ) -> AiStatus:
        state = item.state
        produced: List[DerivationKind] = []
        web: Optional[WebArticle] = None

        async def _attempt(kind: DerivationKind, step) -> Any:
            try:
                value = await step()
            except _KindFailure as failure:
                state.kind_errors[kind.value] = failure.code
                logger.info("Item %s: %s not produced (%s)", _short_id(item), kind.value, failure.code)
                return None
            except Exception as exc:
                state.kind_errors[kind.value] = str(exc)
                logger.warning("Item %s: %s failed: %s", _short_id(item), kind.value, exc)
                return None
            produced.append(kind)
            return value

        if DerivationKind.WEB in kinds:
            web = await _attempt(DerivationKind.WEB, lambda: self._per_kind_web(item, tenant, mode))
        if DerivationKind.SHORT in kinds:
            await _attempt(DerivationKind.SHORT, lambda: self._per_kind_short(item, tenant, web))
        if DerivationKind.PRINT in kinds:
            if mode == Mode.LIMITED:
                state.kind_errors[DerivationKind.PRINT.value] = ErrorCode.DISABLED_IN_LIMITED_MODE.value
            else:
                await _attempt(DerivationKind.PRINT, lambda: self._per_kind_print(item))

        if not produced:
            generation_errors = [
                state.kind_errors[k.value] for k in kinds
                if state.kind_errors.get(k.value) in _GENERATION_FAILURES
            ]
            if generation_errors:
                state.error_code = generation_errors[0]
                return AiStatus.FAILED
        return AiStatus.DONE

    # ------------------------------------------------------------------
    # Terminal side effects
    # ------------------------------------------------------------------

    async def _update_mirror(self, item: WorkItem) -> None:
        if not item.raw_submission_id:
            return
        status = item.state.status
        mirror_status = status if status in (AiStatus.DONE.value, AiStatus.FAILED.value) else "PROCESSING"
        error = None
        if mirror_status == AiStatus.FAILED.value:
            error = (item.state.error_code or "AI_FAILED")[:MIRROR_ERROR_MAX]
        mirror = IngestionMirror(
            id=item.raw_submission_id,
            status=mirror_status,
            error_code=error,
            work_item_id=item.id,
            artifact_ids=dict(item.state.artifact_ids),
            updated_at=self._now_iso(),
        )
        try:
            await self.storage.mirror.upsert(mirror)
        except Exception as exc:
            logger.warning("Ingestion mirror update failed for item %s: %s", _short_id(item), exc)

    async def _finish(self, item: WorkItem, status: AiStatus) -> WorkItem:
        state = item.state
        state.finished_at = self._now_iso()
        state.transition(status, at=state.finished_at)
        await self._save(item)
        await self._update_mirror(item)

        snapshot = WorkItem.from_dict(item.to_dict())
        self.tasks.spawn(
            self.notifier.notify(snapshot, status.value, snapshot.state),
            name=f"callback-{_short_id(item)}",
        )
        logger.info(
            "Item %s -> %s (mode=%s, artifacts=%s%s)",
            _short_id(item), status.value, state.mode,
            ",".join(sorted(state.artifact_ids)) or "-",
            f", error={state.error_code}" if state.error_code else "",
        )
        return item

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def process_item(self, item: WorkItem) -> WorkItem:
        """
        Run one WorkItem to a terminal state.

        Parameters
        ----------
        item : WorkItem
            The item to process.  Its state is mutated and persisted.

        Returns
        -------
        WorkItem
            The same item, with ``state.status`` one of DONE, FAILED or
            SKIPPED.
        """
        tenant = await self.storage.tenants.get_or_default(item.tenant_id)
        mode = self.select_mode(item, tenant)
        state = item.state
        state.mode = mode.value
        state.started_at = self._now_iso()
        state.finished_at = None
        state.error_code = None
        state.skip_reason = None
        state.kind_errors = {}
        if not state.history:
            state.history.append({"status": state.status, "at": item.created_at})
        state.transition(AiStatus.RUNNING, at=state.started_at)
        await self._save(item)
        logger.info("Processing item %s (mode=%s, kinds=%s)", _short_id(item), mode.value, item.requested_kinds)

        try:
            if await self.meter.is_quota_exceeded(tenant, self._now()):
                state.skip_reason = ErrorCode.TOKEN_LIMIT_EXCEEDED.value
                return await self._finish(item, AiStatus.SKIPPED)

            kinds = item.pending_kinds() or [k for k in DerivationKind if item.wants(k)]
            if not kinds:
                return await self._finish(item, AiStatus.DONE)

            if (
                self.settings.infer_category_with_ai
                and DerivationKind.SHORT in kinds
                and not item.category_ids
            ):
                await self._infer_category(item)

            template = await self.prompts.combined_template(mode)
            if template:
                status = await self._run_combined(item, tenant, mode, kinds, template)
            else:
                status = await self._run_per_kind(item, tenant, mode, kinds)
            return await self._finish(item, status)
        except Exception as exc:
            logger.error("Item %s failed: %s", _short_id(item), exc)
            state.error_code = str(exc) or exc.__class__.__name__
            return await self._finish(item, AiStatus.FAILED)

    async def process_by_id(self, item_id: str) -> WorkItem:
        return await self.process_item(await self.storage.work_items.get(item_id))

    async def find_eligible(self) -> List[WorkItem]:
        since = self._now() - timedelta(days=self.settings.lookback_days)
        batch = await self.storage.work_items.find_created_since(since, self.settings.batch_size)
        return [item for item in batch if self.is_eligible(item)]

    async def run_once(self) -> int:
        """Process every eligible item sequentially; returns how many were picked up."""
        pending = await self.find_eligible()
        for item in pending:
            try:
                await self.process_item(item)
            except Exception as exc:
                logger.error("Unhandled error on item %s: %s", _short_id(item), exc)
                await self._mark_failed(item, str(exc) or exc.__class__.__name__)
        logger.info("Processed %d queued item(s).", len(pending))
        return len(pending)

    async def _mark_failed(self, item: WorkItem, error: str) -> None:
        item.state.error_code = error
        try:
            await self._finish(item, AiStatus.FAILED)
        except Exception as exc:
            logger.error("Could not record failure for item %s: %s", _short_id(item), exc)

    async def item_status(self, item_id: str) -> Dict[str, Any]:
        item = await self.storage.work_items.get(item_id)
        return {"id": item.id, "requested_kinds": item.requested_kinds, **item.state.to_dict()}

    async def diagnose(self) -> Dict[str, Any]:
        """Provider round-trip plus storage and prompt configuration summary."""
        ping = getattr(self.provider, "ping", None)
        provider_info = await ping() if ping else {"ok": None}
        prompts = {}
        for key in (KEY_SHORT, KEY_WEB, KEY_WEB_SEO, KEY_PRINT):
            prompts[key] = bool(await self.prompts.get_template(key))
        for mode in Mode:
            prompts[f"combined_{mode.value.lower()}"] = bool(await self.prompts.combined_template(mode))
        return {
            "provider": provider_info,
            "prompts": prompts,
            "work_items": await self.storage.work_items.count(),
            "eligible": len(await self.find_eligible()),
            "categories": await self.storage.categories.count(),
            "data_dir": str(self.settings.data_dir),
        }


class _KindFailure(Exception):
    """A requested kind could not be produced for a known reason."""

    def __init__(self, code: ErrorCode) -> None:
        super().__init__(code.value)
        self.code = code.value


# ---------------------------------------------------------------------------
# Composition root
# ---------------------------------------------------------------------------

_pipeline: Optional[DerivationPipeline] = None


def build_pipeline(settings: PipelineSettings, provider: Optional[TextProvider] = None) -> DerivationPipeline:
    """Wire every component from *settings*; *provider* overrides the Anthropic one."""
    from newsroom_ai.ai_provider import AnthropicProvider

    storage = Storage.open(settings.data_dir)
    tasks = DetachedTaskRunner()
    cache = TemplateCache(ttl_seconds=settings.prompt_cache_ttl_seconds)
    prompt_store = PromptStore(storage.prompts, cache, overrides=settings.prompt_overrides)
    meter = UsageMeter(storage.usage)
    text_provider = provider if provider is not None else AnthropicProvider(settings)

    async def _translation_generate(prompt: str) -> GenerationResult:
        result = await text_provider.generate(prompt, purpose="translation")
        await meter.record("", "", "translation", prompt, result)
        return result

    translator = AiCategoryTranslator(storage.categories, prompt_store, _translation_generate)
    resolver = CategoryResolver(
        storage.categories,
        tasks,
        translate_hook=translator.translate_and_upsert,
        prompt_store=prompt_store,
        similarity_threshold=settings.category_similarity_threshold,
        min_chars=settings.category_min_chars,
        max_chars=settings.category_max_chars,
        max_words=settings.category_max_words,
    )
    notifier = CallbackNotifier(
        secret=settings.callback_secret,
        timeout=settings.callback_timeout_seconds,
        max_retries=settings.callback_max_retries,
    )
    return DerivationPipeline(
        settings=settings,
        storage=storage,
        provider=text_provider,
        prompt_store=prompt_store,
        resolver=resolver,
        meter=meter,
        notifier=notifier,
        tasks=tasks,
    )


def get_pipeline(settings: Optional[PipelineSettings] = None) -> DerivationPipeline:
    """Return the process-wide pipeline, building it on first use."""
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline(settings or PipelineSettings.from_env())
    return _pipeline
