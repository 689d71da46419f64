"""
Typed repositories backed by atomic JSON-file collections.

Each entity gets its own repository with a small, typed query surface instead
of a dynamic dispatch-by-name store.  Collections are loaded lazily, kept in
memory and flushed to ``<data_dir>/<collection>.json`` with a
write-to-.tmp-then-``os.replace`` so a crash never leaves a half-written file.

Usage:
    from newsroom_ai.repositories import Storage

    storage = Storage.open(Path("data"))
    item = await storage.work_items.get("abc")
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Type, TypeVar

from newsroom_ai.errors import NotFoundError, RepositoryError
from newsroom_ai.models import (
    CategoryEntry,
    IngestionMirror,
    PrintArticle,
    PromptRow,
    ShortFormArticle,
    TenantSettings,
    UsageRecord,
    WebArticle,
    WorkItem,
)

logger = logging.getLogger("repositories")

T = TypeVar("T")


def _load_json(path: Path, default: Any = None) -> Any:
    """Load JSON from *path*, returning *default* when missing."""
    if default is None:
        default = {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return default
    except json.JSONDecodeError as exc:
        raise RepositoryError(f"Corrupt collection file {path}: {exc}") from exc


def _save_json(path: Path, data: Any) -> None:
    """Atomic JSON write: write to .tmp then os.replace()."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    with open(tmp_path, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, default=str, ensure_ascii=False)
    os.replace(tmp_path, path)


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Generic collection
# ---------------------------------------------------------------------------


class JsonRepository(Generic[T]):
    """Keyed collection of dataclass entities persisted as one JSON object.

    Subclasses set ``collection``, ``model`` and optionally ``key_field``.
    All mutating calls serialise through an ``asyncio.Lock`` and flush the
    whole collection atomically.
    """

    collection: str = ""
    model: Type[Any] = object
    key_field: str = "id"

    def __init__(self, data_dir: Path) -> None:
        self._path = Path(data_dir) / f"{self.collection}.json"
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        raw = _load_json(self._path, default={})
        if not isinstance(raw, dict):
            raise RepositoryError(f"{self.collection}: expected a JSON object, got {type(raw).__name__}")
        self._rows = raw
        self._loaded = True

    def _flush(self) -> None:
        _save_json(self._path, self._rows)

    def _key_of(self, entity: T) -> str:
        key = getattr(entity, self.key_field, None)
        if not key:
            raise RepositoryError(f"{self.collection}: entity has no {self.key_field}")
        return str(key)

    # -- reads --

    async def find(self, key: str) -> Optional[T]:
        """Return the entity stored under *key*, or None."""
        self._ensure_loaded()
        data = self._rows.get(key)
        return self.model.from_dict(copy.deepcopy(data)) if data is not None else None

    async def get(self, key: str) -> T:
        """Like ``find`` but raises NotFoundError when absent."""
        entity = await self.find(key)
        if entity is None:
            raise NotFoundError(self.collection, key)
        return entity

    async def find_many(
        self,
        where: Optional[Callable[[T], bool]] = None,
        order_by: Optional[Callable[[T], Any]] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[T]:
        """Return entities matching *where*, optionally sorted and capped."""
        self._ensure_loaded()
        results: List[T] = []
        for data in self._rows.values():
            entity = self.model.from_dict(copy.deepcopy(data))
            if where is None or where(entity):
                results.append(entity)
        if order_by is not None:
            results.sort(key=order_by, reverse=descending)
        if limit is not None:
            results = results[:limit]
        return results

    async def count(self, where: Optional[Callable[[T], bool]] = None) -> int:
        return len(await self.find_many(where))

    # -- writes --

    async def create(self, entity: T) -> T:
        """Insert *entity*; raises RepositoryError if the key is taken."""
        async with self._lock:
            self._ensure_loaded()
            key = self._key_of(entity)
            if key in self._rows:
                raise RepositoryError(f"{self.collection} {key!r} already exists")
            self._rows[key] = entity.to_dict()
            self._flush()
        return entity

    async def update(self, entity: T) -> T:
        """Replace an existing entity; raises NotFoundError if absent."""
        async with self._lock:
            self._ensure_loaded()
            key = self._key_of(entity)
            if key not in self._rows:
                raise NotFoundError(self.collection, key)
            self._rows[key] = entity.to_dict()
            self._flush()
        return entity

    async def upsert(self, entity: T) -> T:
        async with self._lock:
            self._ensure_loaded()
            self._rows[self._key_of(entity)] = entity.to_dict()
            self._flush()
        return entity

    async def upsert_many(self, entities: Iterable[T]) -> List[T]:
        """Upsert a batch in one write; nothing is applied if any entity is invalid."""
        batch = list(entities)
        async with self._lock:
            self._ensure_loaded()
            staged = dict(self._rows)
            for entity in batch:
                staged[self._key_of(entity)] = entity.to_dict()
            previous = self._rows
            self._rows = staged
            try:
                self._flush()
            except OSError as exc:
                self._rows = previous
                raise RepositoryError(f"{self.collection}: batch write failed: {exc}") from exc
        return batch


# ---------------------------------------------------------------------------
# Entity repositories
# ---------------------------------------------------------------------------


class WorkItemRepository(JsonRepository[WorkItem]):
    collection = "work_items"
    model = WorkItem

    async def find_created_since(self, since: datetime, limit: int) -> List[WorkItem]:
        """Items created at or after *since*, oldest first, at most *limit*."""
        def _recent(item: WorkItem) -> bool:
            created = _parse_iso(item.created_at)
            return created is not None and created >= since

        return await self.find_many(
            where=_recent,
            order_by=lambda item: _parse_iso(item.created_at),
            limit=limit,
        )


class CategoryRepository(JsonRepository[CategoryEntry]):
    collection = "categories"
    model = CategoryEntry

    async def list_active(self) -> List[CategoryEntry]:
        return await self.find_many(where=lambda c: not c.is_deleted, order_by=lambda c: c.created_at)

    async def find_by_slug(self, slug: str) -> Optional[CategoryEntry]:
        matches = await self.find_many(where=lambda c: c.slug == slug, limit=1)
        return matches[0] if matches else None

    async def slug_exists(self, slug: str) -> bool:
        return await self.find_by_slug(slug) is not None


class UsageRecordRepository(JsonRepository[UsageRecord]):
    collection = "usage_records"
    model = UsageRecord

    async def sum_total_tokens(self, tenant_id: str, since: datetime) -> int:
        """Total tokens billed to *tenant_id* since *since* (missing counts as 0)."""
        def _in_window(rec: UsageRecord) -> bool:
            created = _parse_iso(rec.created_at)
            return rec.tenant_id == tenant_id and created is not None and created >= since

        records = await self.find_many(where=_in_window)
        return sum(int(rec.total_tokens or 0) for rec in records)


class ShortFormRepository(JsonRepository[ShortFormArticle]):
    collection = "short_articles"
    model = ShortFormArticle

    async def slug_exists(self, slug: str, exclude_id: Optional[str] = None) -> bool:
        return await self.count(lambda a: a.slug == slug and a.id != exclude_id) > 0


class WebArticleRepository(JsonRepository[WebArticle]):
    collection = "web_articles"
    model = WebArticle

    async def slug_exists(self, slug: str, exclude_id: Optional[str] = None) -> bool:
        return await self.count(lambda a: a.slug == slug and a.id != exclude_id) > 0


class PrintArticleRepository(JsonRepository[PrintArticle]):
    collection = "print_articles"
    model = PrintArticle

    async def count_for_author_between(
        self, tenant_id: str, author_id: str, start: datetime, end: datetime,
    ) -> int:
        def _match(article: PrintArticle) -> bool:
            created = _parse_iso(article.created_at)
            return (
                article.tenant_id == tenant_id
                and article.author_id == author_id
                and created is not None
                and start <= created < end
            )

        return await self.count(_match)


class TenantSettingsRepository(JsonRepository[TenantSettings]):
    collection = "tenant_settings"
    model = TenantSettings
    key_field = "tenant_id"

    async def get_or_default(self, tenant_id: str) -> TenantSettings:
        found = await self.find(tenant_id)
        return found if found is not None else TenantSettings(tenant_id=tenant_id)


class PromptRepository(JsonRepository[PromptRow]):
    collection = "prompts"
    model = PromptRow
    key_field = "key"

    async def get_content(self, key: str) -> Optional[str]:
        row = await self.find(key)
        if row is None or not row.content.strip():
            return None
        return row.content


class IngestionMirrorRepository(JsonRepository[IngestionMirror]):
    collection = "ingestion_mirror"
    model = IngestionMirror


# ---------------------------------------------------------------------------
# Storage bundle
# ---------------------------------------------------------------------------


@dataclass
class Storage:
    """All repositories rooted at one data directory."""
    work_items: WorkItemRepository
    categories: CategoryRepository
    usage: UsageRecordRepository
    short_articles: ShortFormRepository
    web_articles: WebArticleRepository
    print_articles: PrintArticleRepository
    tenants: TenantSettingsRepository
    prompts: PromptRepository
    mirror: IngestionMirrorRepository

    @classmethod
    def open(cls, data_dir: Path) -> Storage:
        data_dir = Path(data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
        logger.debug("Opening storage at %s", data_dir)
        return cls(
            work_items=WorkItemRepository(data_dir),
            categories=CategoryRepository(data_dir),
            usage=UsageRecordRepository(data_dir),
            short_articles=ShortFormRepository(data_dir),
            web_articles=WebArticleRepository(data_dir),
            print_articles=PrintArticleRepository(data_dir),
            tenants=TenantSettingsRepository(data_dir),
            prompts=PromptRepository(data_dir),
            mirror=IngestionMirrorRepository(data_dir),
        )
