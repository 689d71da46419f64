"""
Tests for the derivation pipeline orchestrator.

Covers the per-kind and combined generation paths, the processing state
machine, quota gating, idempotent artifact writes and the batch driver.
The text provider is scripted; storage is a temp JSON directory.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from conftest import FIXED_NOW, short_json
from newsroom_ai.models import (
    AiStatus,
    CategoryEntry,
    PrintArticle,
    PromptRow,
    UsageRecord,
    WebArticle,
)
from newsroom_ai.pipeline import build_pipeline
from newsroom_ai.text_utils import count_words


FULL_COMBINED_OUTPUT = """Title: Rain floods city roads
Subtitle: Residents stranded overnight
Key Points:
- Roads flooded across the old city today
- Schools shut
Main Article:
Print body about the rain.
SEO Title: Hyderabad rain floods roads
Meta Description: Heavy rain flooded roads across Hyderabad.
Slug: hyderabad-rain-floods
Keywords: rain, hyderabad, flood
Article Content:
First paragraph of the web story.

Second paragraph of the web story.
Short Title: Rain floods Hyderabad
Short Article:
Short body about the rain in the city.
"""

LIMITED_COMBINED_OUTPUT = """Original Title: Heavy rain in Hyderabad
SEO Title: Hyderabad rain update
Meta Description: Rain across the city.
Slug: hyderabad-rain-update
Keywords: rain, city
Schema Focus Keywords: rain
Short Title: Rain update
Short Article: Rain continues in the city.
"""


def statuses(item):
    return [entry["status"] for entry in item.state.history]


# ===================================================================
# Short-form end to end
# ===================================================================

class TestShortFormEndToEnd:
    """Short-only item through the retry loop and the resolver."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_then_weather_category(self, pipeline, provider, storage, tasks, notifier, translate_hook, make_item):
        item = make_item(["short"])
        await storage.work_items.create(item)
        provider.script = [short_json(40), short_json(60, title="Heavy rain lashes city")]

        await pipeline.process_item(item)
        await tasks.drain()

        assert provider.generate.await_count == 2
        assert statuses(item) == ["PENDING", "RUNNING", "DONE"]
        assert item.state.short_attempts == 2
        assert item.state.short_fallback_used is False

        short_id = item.state.artifact_ids["short"]
        short = await storage.short_articles.get(short_id)
        assert short.title == "Heavy rain lashes city"
        assert count_words(short.body) == 60

        category = await storage.categories.get(short.category_id)
        assert category.name == "Weather"
        assert item.category_ids == [category.id]
        assert item.state.category_inferred["created"] is True
        translate_hook.assert_awaited_once_with(category.id, "Weather")

        notifier.notify.assert_awaited_once()
        assert notifier.notify.await_args.args[1] == "DONE"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_existing_category_is_reused(self, pipeline, provider, storage, resolver, make_item):
        await resolver.seed_core_categories()
        weather = await storage.categories.find_by_slug("weather")
        item = make_item(["short"])
        provider.script = [short_json(60)]

        await pipeline.process_item(item)

        short = await storage.short_articles.get(item.state.artifact_ids["short"])
        assert short.category_id == weather.id
        assert item.state.category_inferred["created"] is False
        assert await storage.categories.count() == 19

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_item_category_takes_precedence(self, pipeline, provider, storage, make_item):
        await storage.categories.create(CategoryEntry(id="cat-local", name="Local", slug="local"))
        item = make_item(["short"], category_ids=["cat-local"])
        provider.script = [short_json(60, category="Weather")]

        await pipeline.process_item(item)

        short = await storage.short_articles.get(item.state.artifact_ids["short"])
        assert short.category_id == "cat-local"
        assert await storage.categories.find_by_slug("weather") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_usage_recorded_for_every_call(self, pipeline, provider, storage, make_item):
        item = make_item(["short"])
        provider.script = [short_json(40), short_json(60)]

        await pipeline.process_item(item)

        assert await storage.usage.count() == 2
        assert len(item.state.usage_log) == 2
        purposes = {call["purpose"] for call in provider.calls}
        assert purposes == {"shortnews_ai_article"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_short_artifact_shape(self, pipeline, provider, storage, make_item):
        item = make_item(["short"], publish_intent=True)
        provider.script = [short_json(60, title="Rain")]

        await pipeline.process_item(item)

        short = await storage.short_articles.get(item.state.artifact_ids["short"])
        assert short.moderation_status == "AI_APPROVED"
        assert short.slug == "rain"
        assert short.place_name == "Hyderabad"
        assert short.featured_image == "https://cdn.example.com/rain.jpg"
        assert short.work_item_id == item.id


# ===================================================================
# State machine
# ===================================================================

class TestStateMachine:
    """Terminal states and their side effects."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_quota_exceeded_skips_before_provider(self, pipeline, provider, storage, tenant, make_item):
        await tenant(ai_billing_enabled=True, ai_monthly_token_limit=1000)
        await storage.usage.create(UsageRecord(
            tenant_id="tenant-1", total_tokens=1500, created_at="2026-03-05T00:00:00+00:00",
        ))
        item = make_item(["short", "web"])

        await pipeline.process_item(item)

        assert item.state.status == AiStatus.SKIPPED.value
        assert item.state.skip_reason == "TOKEN_LIMIT_EXCEEDED"
        assert item.state.artifact_ids == {}
        provider.generate.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_usage_from_previous_month_not_counted(self, pipeline, provider, storage, tenant, make_item):
        await tenant(ai_billing_enabled=True, ai_monthly_token_limit=1000)
        await storage.usage.create(UsageRecord(
            tenant_id="tenant-1", total_tokens=5000, created_at="2026-02-20T00:00:00+00:00",
        ))
        provider.script = [short_json(60)]

        item = make_item(["short"])
        await pipeline.process_item(item)

        assert item.state.status == AiStatus.DONE.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_output_fails_and_stays_eligible(self, pipeline, provider, make_item):
        item = make_item(["web"])
        provider.script = [""]

        await pipeline.process_item(item)

        assert item.state.status == AiStatus.FAILED.value
        assert item.state.error_code == "EMPTY_AI_OUTPUT"
        assert item.state.artifact_ids == {}
        assert pipeline.is_eligible(item)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_error_marks_failed(self, pipeline, make_item):
        item = make_item(["short"])
        with patch.object(pipeline.meter, "is_quota_exceeded", AsyncMock(side_effect=RuntimeError("db down"))):
            await pipeline.process_item(item)

        assert item.state.status == AiStatus.FAILED.value
        assert item.state.error_code == "db down"
        assert statuses(item)[-2:] == ["RUNNING", "FAILED"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mirror_updated_on_terminal_state(self, pipeline, provider, storage, make_item):
        item = make_item(["web"])
        provider.script = [""]

        await pipeline.process_item(item)

        mirror = await storage.mirror.get("raw-1")
        assert mirror.status == "FAILED"
        assert mirror.error_code == "EMPTY_AI_OUTPUT"
        assert mirror.work_item_id == item.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mirror_failure_does_not_fail_item(self, pipeline, provider, storage, make_item):
        item = make_item(["short"])
        provider.script = [short_json(60)]
        with patch.object(storage.mirror, "upsert", AsyncMock(side_effect=OSError("disk full"))):
            await pipeline.process_item(item)
        assert item.state.status == AiStatus.DONE.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_callback_receives_terminal_status(self, pipeline, provider, tasks, notifier, make_item):
        item = make_item(["web"])
        provider.script = [""]

        await pipeline.process_item(item)
        await tasks.drain()

        sent_item, sent_status, context = notifier.notify.await_args.args
        assert sent_status == "FAILED"
        assert sent_item.id == item.id
        assert context is sent_item.state
        assert context.error_code == "EMPTY_AI_OUTPUT"
        assert context.status == "FAILED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_state_persisted(self, pipeline, provider, storage, make_item):
        item = make_item(["short"])
        provider.script = [short_json(60)]

        await pipeline.process_item(item)

        stored = await storage.work_items.get(item.id)
        assert stored.state.status == "DONE"
        assert stored.state.finished_at == FIXED_NOW.isoformat()
        assert stored.state.mode == "FULL"


# ===================================================================
# Mode selection
# ===================================================================

class TestModeSelection:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tenant_flag_selects_limited(self, pipeline, provider, tenant, make_item):
        await tenant(ai_rewrite_enabled=False)
        item = make_item(["print"])

        await pipeline.process_item(item)

        assert item.state.mode == "LIMITED"
        assert item.state.kind_errors == {"print": "DISABLED_IN_LIMITED_MODE"}
        assert item.state.status == AiStatus.DONE.value
        provider.generate.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_item_override_wins(self, pipeline, tenant, make_item):
        await tenant(ai_rewrite_enabled=True)
        item = make_item(["print"], mode_override="limited")

        await pipeline.process_item(item)

        assert item.state.mode == "LIMITED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_limited_web_keeps_original_text(self, pipeline, provider, storage, tenant, make_item):
        await tenant(ai_rewrite_enabled=False)
        item = make_item(["web"], body="Original paragraph one.\n\nOriginal paragraph two.")
        provider.script = [json.dumps({
            "seoTitle": "Rain update",
            "metaDescription": "Rain across the city.",
            "slug": "rain-update",
            "keywords": ["rain", "city"],
            "schemaFocusKeywords": ["rain"],
        })]

        await pipeline.process_item(item)

        web = await storage.web_articles.get(item.state.artifact_ids["web"])
        assert web.title == "Heavy rain in Hyderabad"
        assert web.plain_text == "Original paragraph one.\n\nOriginal paragraph two."
        assert web.seo_title == "Rain update"
        assert web.slug == "rain-update"
        assert web.schema_focus_keywords == ["rain"]
        assert provider.calls[0]["purpose"] == "seo"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_limited_web_survives_missing_seo(self, pipeline, provider, storage, tenant, make_item):
        await tenant(ai_rewrite_enabled=False)
        item = make_item(["web"])
        provider.script = [""]

        await pipeline.process_item(item)

        assert item.state.status == AiStatus.DONE.value
        web = await storage.web_articles.get(item.state.artifact_ids["web"])
        assert web.slug == "heavy-rain-in-hyderabad"
        assert web.meta_description


# ===================================================================
# Per-kind web and print
# ===================================================================

class TestPerKindArtifacts:

    WEB_JSON = json.dumps({
        "title": "Rain update for the city",
        "slug": "rain-update",
        "plainText": "Para one.\n\nPara two.",
        "seoTitle": "Rain update",
        "metaDescription": "Latest on the rain.",
        "keywords": ["rain", "city"],
    })

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_web_article_fields(self, pipeline, provider, storage, tenant, make_item):
        await tenant(primary_domain="news.example.com")
        item = make_item(["web"])
        provider.script = [self.WEB_JSON]

        await pipeline.process_item(item)

        web = await storage.web_articles.get(item.state.artifact_ids["web"])
        assert web.title == "Rain update for the city"
        assert web.content_html == "<p>Para one.</p><p>Para two.</p>"
        assert web.canonical_url == "https://news.example.com/articles/rain-update"
        assert web.json_ld["@type"] == "NewsArticle"
        assert web.json_ld["publisher"]["name"] == "Test Daily"
        assert web.status == "DRAFT"
        assert web.published_at is None
        assert web.keywords == ["rain", "city"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_web_slug_made_unique(self, pipeline, provider, storage, make_item):
        first, second = make_item(["web"]), make_item(["web"])
        provider.script = [self.WEB_JSON, self.WEB_JSON]

        await pipeline.process_item(first)
        await pipeline.process_item(second)

        slugs = {a.slug for a in await storage.web_articles.find_many()}
        assert slugs == {"rain-update", "rain-update-1"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_web_html_sanitised(self, pipeline, provider, storage, make_item):
        item = make_item(["web"], publish_intent=True)
        provider.script = [json.dumps({
            "title": "Rain",
            "plainText": "Rain.",
            "contentHtml": '<p onclick="x()">Rain.</p><script>alert(1)</script>',
        })]

        await pipeline.process_item(item)

        web = await storage.web_articles.get(item.state.artifact_ids["web"])
        assert web.content_html == "<p>Rain.</p>"
        assert web.status == "PUBLISHED"
        assert web.published_at == FIXED_NOW.isoformat()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unparseable_web_fails(self, pipeline, provider, make_item):
        item = make_item(["web"])
        provider.script = ["not json at all"]

        await pipeline.process_item(item)

        assert item.state.status == AiStatus.FAILED.value
        assert item.state.error_code == "PARSE_FAILED"
        assert item.state.raw_output == "not json at all"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_print_article_caps(self, pipeline, provider, storage, make_item):
        item = make_item(["print"])
        provider.script = [json.dumps({
            "title": "Heavy rain floods several city roads overnight",
            "subTitle": "Monsoon",
            "points": [f"point {i} one two three four five" for i in range(7)],
            "content": "Body of the print story.",
            "dateline": "HYDERABAD, March 10",
        })]

        await pipeline.process_item(item)

        article = await storage.print_articles.get(item.state.artifact_ids["print"])
        assert article.headline == "Heavy rain floods several city roads"
        assert len(article.key_points) == 5
        assert all(count_words(p) <= 5 for p in article.key_points)
        assert article.kicker == "Monsoon"
        assert article.dateline == "HYDERABAD, March 10"
        assert article.place_name == "Hyderabad"
        assert article.status == "DRAFT"
        assert provider.calls[0]["purpose"] == "newspaper"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_print_daily_limit(self, pipeline, provider, storage, make_item):
        for n in range(2):
            await storage.print_articles.create(PrintArticle(
                tenant_id="tenant-1", author_id="author-1", headline=f"Earlier {n}",
                created_at="2026-03-10T05:00:00+00:00",
            ))
        item = make_item(["print"])

        await pipeline.process_item(item)

        assert item.state.kind_errors == {"print": "DAILY_LIMIT_REACHED"}
        assert item.state.status == AiStatus.DONE.value
        provider.generate.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_print_limit_uses_local_day(self, pipeline, provider, storage, make_item):
        # 17:00 UTC on March 9 is 22:30 on March 9 in Asia/Kolkata: previous local day
        for n in range(2):
            await storage.print_articles.create(PrintArticle(
                tenant_id="tenant-1", author_id="author-1", headline=f"Yesterday {n}",
                created_at="2026-03-09T17:00:00+00:00",
            ))
        item = make_item(["print"])
        provider.script = [json.dumps({"title": "Rain", "content": "Body."})]

        await pipeline.process_item(item)

        assert "print" in item.state.artifact_ids

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_failure_keeps_done(self, pipeline, provider, storage, make_item):
        item = make_item(["web", "short"])
        provider.script = ["", short_json(60)]

        await pipeline.process_item(item)

        assert item.state.status == AiStatus.DONE.value
        assert item.state.kind_errors == {"web": "EMPTY_AI_OUTPUT"}
        assert set(item.state.artifact_ids) == {"short"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_category_recorded(self, pipeline, provider, make_item):
        item = make_item(["short"])
        # Six-word suggestion fails the guardrails and there is no fallback category
        provider.script = [short_json(60, category="one two three four five six")]

        await pipeline.process_item(item)

        assert item.state.kind_errors == {"short": "MISSING_CATEGORY_ID"}
        assert item.state.artifact_ids == {}


# ===================================================================
# Combined path
# ===================================================================

class TestCombinedPath:

    @pytest.fixture
    async def full_template(self, storage):
        await storage.prompts.upsert(PromptRow(key="ai_rewrite_prompt_true", content="Rewrite:\n{{PASTE ARTICLE HERE}}"))

    @pytest.fixture
    async def limited_template(self, storage):
        await storage.prompts.upsert(PromptRow(key="ai_rewrite_prompt_false", content="SEO only:\n{{RAW_TEXT}}"))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_mode_single_call(self, full_template, pipeline, provider, storage, make_item):
        item = make_item(["web", "short", "print"], category_ids=["cat-1"])
        provider.script = [FULL_COMBINED_OUTPUT]

        await pipeline.process_item(item)

        assert provider.generate.await_count == 1
        assert provider.calls[0]["purpose"] == "rewrite"
        assert "Heavy rain in Hyderabad" in provider.calls[0]["prompt"]
        assert item.state.status == AiStatus.DONE.value
        assert set(item.state.artifact_ids) == {"web", "short", "print"}

        web = await storage.web_articles.get(item.state.artifact_ids["web"])
        assert web.slug == "hyderabad-rain-floods"
        assert web.keywords == ["rain", "hyderabad", "flood"]
        assert "<p>First paragraph of the web story.</p>" in web.content_html

        short = await storage.short_articles.get(item.state.artifact_ids["short"])
        assert short.title == "Rain floods Hyderabad"
        assert short.category_id == "cat-1"

        article = await storage.print_articles.get(item.state.artifact_ids["print"])
        assert article.key_points[0] == "Roads flooded across the old"
        assert article.kicker == "Residents stranded overnight"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_only_requested_kinds_written(self, full_template, pipeline, provider, storage, make_item):
        item = make_item(["web"])
        provider.script = [FULL_COMBINED_OUTPUT]

        await pipeline.process_item(item)

        assert set(item.state.artifact_ids) == {"web"}
        assert await storage.short_articles.count() == 0
        assert await storage.print_articles.count() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_combined_output(self, full_template, pipeline, provider, make_item):
        item = make_item(["web"])
        provider.script = ["   "]

        await pipeline.process_item(item)

        assert item.state.status == AiStatus.FAILED.value
        assert item.state.error_code == "EMPTY_AI_OUTPUT"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_parse_failure(self, full_template, pipeline, provider, make_item):
        item = make_item(["web"])
        provider.script = ["Sorry, I cannot help with that."]

        await pipeline.process_item(item)

        assert item.state.status == AiStatus.FAILED.value
        assert item.state.error_code == "PARSE_FULL_FAILED"
        assert item.state.raw_output == "Sorry, I cannot help with that."
        assert item.state.artifact_ids == {}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_limited_parse_failure(self, limited_template, pipeline, provider, tenant, make_item):
        await tenant(ai_rewrite_enabled=False)
        item = make_item(["web"])
        provider.script = ["Title: only a title"]

        await pipeline.process_item(item)

        assert item.state.error_code == "PARSE_LIMITED_FAILED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_limited_mode_combined(self, limited_template, pipeline, provider, storage, tenant, make_item):
        await tenant(ai_rewrite_enabled=False)
        item = make_item(["web", "print"])
        provider.script = [LIMITED_COMBINED_OUTPUT]

        await pipeline.process_item(item)

        assert item.state.status == AiStatus.DONE.value
        assert item.state.kind_errors == {"print": "DISABLED_IN_LIMITED_MODE"}
        web = await storage.web_articles.get(item.state.artifact_ids["web"])
        assert web.title == "Heavy rain in Hyderabad"
        assert web.seo_title == "Hyderabad rain update"
        assert web.schema_focus_keywords == ["rain"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_short_without_category(self, full_template, pipeline, provider, make_item):
        item = make_item(["short"])
        provider.script = [FULL_COMBINED_OUTPUT]

        await pipeline.process_item(item)

        assert item.state.kind_errors == {"short": "MISSING_CATEGORY_ID"}
        assert item.state.status == AiStatus.DONE.value


# ===================================================================
# Idempotency
# ===================================================================

class TestIdempotency:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rerun_updates_in_place(self, pipeline, provider, storage, make_item):
        item = make_item(["short"])
        provider.script = [short_json(60, title="First take")]
        await pipeline.process_item(item)
        first_id = item.state.artifact_ids["short"]

        provider.script = [short_json(60, title="Second take")]
        await pipeline.process_item(item)

        assert item.state.artifact_ids["short"] == first_id
        assert await storage.short_articles.count() == 1
        short = await storage.short_articles.get(first_id)
        assert short.title == "Second take"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rerun_all_kinds_one_row_each(self, pipeline, provider, storage, make_item):
        item = make_item(["web", "short", "print"])
        provider.script = [
            TestPerKindArtifacts.WEB_JSON,
            short_json(60, title="First take"),
            json.dumps({"title": "First print", "content": "Body."}),
        ]
        await pipeline.process_item(item)
        first_ids = dict(item.state.artifact_ids)
        assert set(first_ids) == {"web", "short", "print"}

        # The author hits the daily print limit with other stories in between
        for n in range(2):
            await storage.print_articles.create(PrintArticle(
                tenant_id="tenant-1", author_id="author-1", headline=f"Other {n}",
                created_at="2026-03-10T05:00:00+00:00",
            ))
        provider.script = [
            TestPerKindArtifacts.WEB_JSON,
            short_json(60, title="Second take"),
            json.dumps({"title": "Second print", "content": "Body."}),
        ]
        await pipeline.process_item(item)

        assert item.state.status == AiStatus.DONE.value
        assert item.state.kind_errors == {}
        assert item.state.artifact_ids == first_ids
        assert await storage.web_articles.count() == 1
        assert await storage.short_articles.count() == 1
        assert await storage.print_articles.count(lambda a: a.work_item_id == item.id) == 1

        web = await storage.web_articles.get(first_ids["web"])
        assert web.slug == "rain-update"
        assert (await storage.short_articles.get(first_ids["short"])).title == "Second take"
        assert (await storage.print_articles.get(first_ids["print"])).headline == "Second print"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_web_slug_exhausted_is_recorded(self, pipeline, provider, storage, make_item):
        taken = ["rain-update"] + [f"rain-update-{n}" for n in range(1, 50)]
        await storage.web_articles.upsert_many([WebArticle(slug=slug) for slug in taken])
        item = make_item(["web"])
        provider.script = [TestPerKindArtifacts.WEB_JSON]

        await pipeline.process_item(item)

        assert "web" not in item.state.artifact_ids
        assert item.state.kind_errors["web"].startswith("No free slug for 'rain-update'")
        assert await storage.web_articles.count() == 50

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_only_missing_kinds_generated(self, pipeline, provider, storage, make_item):
        item = make_item(["web", "short"])
        provider.script = ["", short_json(60)]
        await pipeline.process_item(item)
        short_id = item.state.artifact_ids["short"]

        item.state.status = AiStatus.FAILED.value
        provider.script = [TestPerKindArtifacts.WEB_JSON]
        provider.calls.clear()
        await pipeline.process_item(item)

        assert [c["purpose"] for c in provider.calls] == ["web"]
        assert item.state.artifact_ids["short"] == short_id
        assert "web" in item.state.artifact_ids
        assert item.state.kind_errors == {}


# ===================================================================
# Batch driver
# ===================================================================

class TestRunOnce:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_eligibility_and_order(self, pipeline, storage, make_item):
        newer = make_item(["short"], created_at="2026-03-09T12:00:00+00:00")
        older = make_item(["short"], created_at="2026-03-08T12:00:00+00:00")
        stale = make_item(["short"], created_at="2026-01-01T00:00:00+00:00")
        done = make_item(["short"], created_at="2026-03-07T12:00:00+00:00")
        done.state.status = "DONE"
        complete = make_item(["short"], created_at="2026-03-07T13:00:00+00:00")
        complete.state.artifact_ids = {"short": "s-1"}
        for item in (newer, older, stale, done, complete):
            await storage.work_items.create(item)

        seen = []

        async def _record(item):
            seen.append(item.id)
            return item

        with patch.object(pipeline, "process_item", side_effect=_record):
            processed = await pipeline.run_once()

        assert processed == 2
        assert seen == [older.id, newer.id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_continues_after_error(self, pipeline, storage, make_item):
        first = make_item(["short"], created_at="2026-03-08T12:00:00+00:00")
        second = make_item(["short"], created_at="2026-03-09T12:00:00+00:00")
        await storage.work_items.create(first)
        await storage.work_items.create(second)
        seen = []

        async def _process(item):
            seen.append(item.id)
            if item.id == first.id:
                raise RuntimeError("boom")
            return item

        with patch.object(pipeline, "process_item", side_effect=_process):
            await pipeline.run_once()

        assert seen == [first.id, second.id]
        stored = await storage.work_items.get(first.id)
        assert stored.state.status == "FAILED"
        assert stored.state.error_code == "boom"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_size_respected(self, pipeline, storage, make_item):
        pipeline.settings.batch_size = 2
        for hour in range(4):
            await storage.work_items.create(make_item(["short"], created_at=f"2026-03-09T0{hour}:00:00+00:00"))

        with patch.object(pipeline, "process_item", AsyncMock()):
            assert await pipeline.run_once() == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_pass_end_to_end(self, pipeline, provider, storage, make_item):
        item = make_item(["short"])
        await storage.work_items.create(item)
        provider.script = [short_json(60)]

        assert await pipeline.run_once() == 1
        assert await pipeline.run_once() == 0

        stored = await storage.work_items.get(item.id)
        assert stored.state.status == "DONE"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_process_by_id_and_status(self, pipeline, provider, storage, make_item):
        item = make_item(["short"])
        await storage.work_items.create(item)
        provider.script = [short_json(60)]

        await pipeline.process_by_id(item.id)
        status = await pipeline.item_status(item.id)

        assert status["status"] == "DONE"
        assert status["requested_kinds"] == ["short"]


# ===================================================================
# Category inference
# ===================================================================

class TestCategoryInference:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inference_runs_when_enabled(self, pipeline, provider, storage, make_item):
        pipeline.settings.infer_category_with_ai = True
        await storage.categories.create(CategoryEntry(id="cat-weather", name="Weather", slug="weather"))
        item = make_item(["short"])
        provider.script = [json.dumps({"categoryId": "cat-weather"}), short_json(60, category="Sports")]

        await pipeline.process_item(item)

        assert provider.calls[0]["purpose"] == "category_inference"
        short = await storage.short_articles.get(item.state.artifact_ids["short"])
        assert short.category_id == "cat-weather"
        assert item.state.category_inferred["source"] == "ai"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inference_off_by_default(self, pipeline, provider, storage, make_item):
        await storage.categories.create(CategoryEntry(id="cat-weather", name="Weather", slug="weather"))
        item = make_item(["short"])
        provider.script = [short_json(60)]

        await pipeline.process_item(item)

        assert [c["purpose"] for c in provider.calls] == ["shortnews_ai_article"]


# ===================================================================
# Diagnostics
# ===================================================================

class TestDiagnose:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_report(self, pipeline, storage, make_item):
        await storage.work_items.create(make_item(["short"]))

        report = await pipeline.diagnose()

        assert report["provider"]["ok"] is True
        assert report["prompts"]["shortnews_ai_article"] is True
        assert report["prompts"]["combined_full"] is False
        assert report["work_items"] == 1
        assert report["eligible"] == 1


# ===================================================================
# Composition
# ===================================================================

class TestBuildPipeline:

    @pytest.mark.unit
    def test_settings_reach_components(self, settings, provider):
        settings.callback_secret = "s3cret"
        settings.callback_max_retries = 4
        settings.category_similarity_threshold = 0.75

        built = build_pipeline(settings, provider=provider)

        assert built.provider is provider
        assert built.notifier.secret == "s3cret"
        assert built.notifier.max_retries == 4
        assert built.resolver.similarity_threshold == 0.75
