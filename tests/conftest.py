"""
Shared fixtures for the newsroom_ai test suite.

Provides temp storage, a scripted text provider, and a fully wired pipeline
so that all tests run WITHOUT any external services.
"""

import json
from datetime import datetime, timezone
from typing import List, Union
from unittest.mock import AsyncMock, MagicMock

import pytest

from newsroom_ai.category_resolver import CategoryResolver
from newsroom_ai.config import PipelineSettings
from newsroom_ai.models import GenerationResult, LocationRef, TenantSettings, WorkItem
from newsroom_ai.pipeline import DerivationPipeline
from newsroom_ai.prompt_store import PromptStore, TemplateCache
from newsroom_ai.repositories import Storage
from newsroom_ai.tasks import DetachedTaskRunner
from newsroom_ai.usage_meter import UsageMeter

FIXED_NOW = datetime(2026, 3, 10, 6, 30, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

def words(n: int, word: str = "rain") -> str:
    """A body of exactly *n* words."""
    return " ".join(f"{word}{i}" for i in range(n))


def short_json(n_words: int, title: str = "Heavy rain lashes city", category: str = "Weather") -> str:
    return json.dumps({
        "title": title,
        "content": words(n_words),
        "suggestedCategoryName": category,
    })


def result(text: str = "", tokens: int = 100) -> GenerationResult:
    usage = {
        "provider": "anthropic",
        "model": "test-model",
        "prompt_tokens": tokens // 2,
        "completion_tokens": tokens - tokens // 2,
        "total_tokens": tokens,
    }
    return GenerationResult(text=text, usage=usage)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path):
    return PipelineSettings(data_dir=tmp_path / "data", publisher_name="Test Daily")


@pytest.fixture
def storage(settings):
    return Storage.open(settings.data_dir)


@pytest.fixture
def tasks():
    return DetachedTaskRunner()


@pytest.fixture
def prompt_store(storage):
    return PromptStore(storage.prompts, TemplateCache(ttl_seconds=60))


@pytest.fixture
def provider():
    """Scripted provider: set ``provider.script`` to a list of texts or results."""
    fake = MagicMock()
    fake.calls = []
    fake.script = []

    async def _generate(prompt, purpose="rewrite", timeout=None):
        fake.calls.append({"prompt": prompt, "purpose": purpose})
        if not fake.script:
            return result("")
        nxt: Union[str, GenerationResult, Exception] = fake.script.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        if isinstance(nxt, GenerationResult):
            return nxt
        return result(nxt)

    fake.generate = AsyncMock(side_effect=_generate)
    fake.ping = AsyncMock(return_value={"ok": True, "provider": "anthropic", "model": "test-model"})
    return fake


@pytest.fixture
def translate_hook():
    return AsyncMock(return_value=None)


@pytest.fixture
def resolver(storage, tasks, translate_hook, prompt_store):
    return CategoryResolver(storage.categories, tasks, translate_hook=translate_hook, prompt_store=prompt_store)


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.notify = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def pipeline(settings, storage, provider, prompt_store, resolver, notifier, tasks):
    return DerivationPipeline(
        settings=settings,
        storage=storage,
        provider=provider,
        prompt_store=prompt_store,
        resolver=resolver,
        meter=UsageMeter(storage.usage),
        notifier=notifier,
        tasks=tasks,
        clock=lambda: FIXED_NOW,
    )


# ---------------------------------------------------------------------------
# Data fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def make_item():
    """Factory for WorkItems created shortly before FIXED_NOW."""

    def _make(kinds: List[str] = None, **overrides) -> WorkItem:
        data = dict(
            tenant_id="tenant-1",
            author_id="author-1",
            title="Heavy rain in Hyderabad",
            body=words(80, "water"),
            language_code="en",
            requested_kinds=list(kinds if kinds is not None else ["short"]),
            location=LocationRef(place_id="p1", display_name="Hyderabad", address="Telangana"),
            media_urls=["https://cdn.example.com/rain.jpg"],
            dateline="HYDERABAD",
            callback_url="https://cms.example.com/ai-callback",
            raw_submission_id="raw-1",
            created_at="2026-03-09T10:00:00+00:00",
        )
        data.update(overrides)
        return WorkItem(**data)

    return _make


@pytest.fixture
def tenant(storage):
    async def _save(**fields) -> TenantSettings:
        settings = TenantSettings(tenant_id=fields.pop("tenant_id", "tenant-1"), **fields)
        await storage.tenants.upsert(settings)
        return settings

    return _save
