"""
Domain model for the derivation pipeline.

WorkItem is owned by the submission subsystem; the pipeline only reads it and
annotates its embedded ProcessingState.  Derived artifacts, taxonomy entries
and usage records are plain dataclasses persisted through the typed
repositories in ``newsroom_ai.repositories``.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _now_iso() -> str:
    """Return the current UTC timestamp in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


def _filter_known(cls: type, data: Dict[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in cls.__dataclass_fields__.values()}
    return {k: v for k, v in data.items() if k in known}


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AiStatus(str, Enum):
    """Processing status of a WorkItem."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class DerivationKind(str, Enum):
    """Output shapes a WorkItem can request."""
    SHORT = "short"
    WEB = "web"
    PRINT = "print"


class Mode(str, Enum):
    """Generation mode: FULL rewrites everything, LIMITED keeps the original web text."""
    FULL = "FULL"
    LIMITED = "LIMITED"


class ModerationStatus(str, Enum):
    AI_APPROVED = "AI_APPROVED"
    DESK_PENDING = "DESK_PENDING"


class PublishStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"


class ErrorCode(str, Enum):
    """Machine-readable failure and skip reasons recorded on the state."""
    EMPTY_AI_OUTPUT = "EMPTY_AI_OUTPUT"
    PARSE_FULL_FAILED = "PARSE_FULL_FAILED"
    PARSE_LIMITED_FAILED = "PARSE_LIMITED_FAILED"
    PARSE_FAILED = "PARSE_FAILED"
    TOKEN_LIMIT_EXCEEDED = "TOKEN_LIMIT_EXCEEDED"
    MISSING_CATEGORY_ID = "MISSING_CATEGORY_ID"
    DAILY_LIMIT_REACHED = "DAILY_LIMIT_REACHED"
    DISABLED_IN_LIMITED_MODE = "DISABLED_IN_LIMITED_MODE"


# ---------------------------------------------------------------------------
# Work items
# ---------------------------------------------------------------------------


@dataclass
class LocationRef:
    """Geographic reference attached to a submission."""
    place_id: Optional[str] = None
    display_name: Optional[str] = None
    address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional[LocationRef]:
        if not data:
            return None
        return cls(**_filter_known(cls, data))


@dataclass
class ProcessingState:
    """Status record embedded in a WorkItem; mutated only by the orchestrator."""
    status: str = AiStatus.PENDING.value
    mode: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error_code: Optional[str] = None
    skip_reason: Optional[str] = None
    raw_output: Optional[str] = None
    artifact_ids: Dict[str, str] = field(default_factory=dict)
    kind_errors: Dict[str, str] = field(default_factory=dict)
    usage_log: List[Dict[str, Any]] = field(default_factory=list)
    short_attempts: int = 0
    short_fallback_used: bool = False
    category_inferred: Optional[Dict[str, Any]] = None
    history: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> ProcessingState:
        if not data:
            return cls()
        return cls(**_filter_known(cls, data))

    def artifact_id(self, kind: DerivationKind) -> Optional[str]:
        return self.artifact_ids.get(kind.value)

    def transition(self, status: AiStatus, at: Optional[str] = None) -> None:
        """Move to *status* and append it to the transition history."""
        stamp = at or _now_iso()
        self.status = status.value
        self.history.append({"status": status.value, "at": stamp})


@dataclass
class WorkItem:
    """A raw submission awaiting derivation."""
    id: str = field(default_factory=_new_id)
    tenant_id: str = ""
    author_id: str = ""
    title: str = ""
    body: str = ""
    language_code: str = ""
    requested_kinds: List[str] = field(default_factory=list)
    category_ids: List[str] = field(default_factory=list)
    location: Optional[LocationRef] = None
    media_urls: List[str] = field(default_factory=list)
    publish_intent: bool = False
    domain_id: Optional[str] = None
    dateline: str = ""
    published_at: Optional[str] = None
    callback_url: Optional[str] = None
    external_id: Optional[str] = None
    raw_submission_id: Optional[str] = None
    mode_override: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    state: ProcessingState = field(default_factory=ProcessingState)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["location"] = self.location.to_dict() if self.location else None
        data["state"] = self.state.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> WorkItem:
        filtered = _filter_known(cls, data)
        filtered["location"] = LocationRef.from_dict(filtered.get("location"))
        filtered["state"] = ProcessingState.from_dict(filtered.get("state"))
        return cls(**filtered)

    def wants(self, kind: DerivationKind) -> bool:
        return kind.value in self.requested_kinds

    def pending_kinds(self) -> List[DerivationKind]:
        """Requested kinds that do not have an artifact yet."""
        return [
            kind for kind in DerivationKind
            if self.wants(kind) and not self.state.artifact_id(kind)
        ]

    def raw_text(self) -> str:
        return "\n\n".join(p for p in (self.title.strip(), self.body.strip()) if p)


# ---------------------------------------------------------------------------
# Derived artifacts
# ---------------------------------------------------------------------------


@dataclass
class ShortFormArticle:
    """Social-style short item (title <= 50 chars, body <= 60 words)."""
    id: str = field(default_factory=_new_id)
    kind: str = DerivationKind.SHORT.value
    work_item_id: str = ""
    tenant_id: str = ""
    author_id: str = ""
    title: str = ""
    subtitle: Optional[str] = None
    slug: str = ""
    body: str = ""
    language_code: str = ""
    category_id: str = ""
    tags: List[str] = field(default_factory=list)
    media_urls: List[str] = field(default_factory=list)
    featured_image: Optional[str] = None
    moderation_status: str = ModerationStatus.DESK_PENDING.value
    seo: Dict[str, Any] = field(default_factory=dict)
    place_id: Optional[str] = None
    place_name: Optional[str] = None
    address: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ShortFormArticle:
        return cls(**_filter_known(cls, data))


@dataclass
class WebArticle:
    """Full web article with SEO metadata and structured data."""
    id: str = field(default_factory=_new_id)
    kind: str = DerivationKind.WEB.value
    work_item_id: str = ""
    tenant_id: str = ""
    author_id: str = ""
    domain_id: Optional[str] = None
    language_code: str = ""
    title: str = ""
    slug: str = ""
    content_html: str = ""
    plain_text: str = ""
    seo_title: str = ""
    meta_description: str = ""
    keywords: List[str] = field(default_factory=list)
    schema_focus_keywords: List[str] = field(default_factory=list)
    canonical_url: str = ""
    json_ld: Dict[str, Any] = field(default_factory=dict)
    category_ids: List[str] = field(default_factory=list)
    cover_image: Optional[str] = None
    status: str = PublishStatus.DRAFT.value
    published_at: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> WebArticle:
        return cls(**_filter_known(cls, data))


@dataclass
class PrintArticle:
    """Print-style newspaper article."""
    id: str = field(default_factory=_new_id)
    kind: str = DerivationKind.PRINT.value
    work_item_id: str = ""
    tenant_id: str = ""
    author_id: str = ""
    language_code: str = ""
    headline: str = ""
    kicker: Optional[str] = None
    heading: str = ""
    key_points: List[str] = field(default_factory=list)
    dateline: str = ""
    body: str = ""
    place_name: Optional[str] = None
    status: str = PublishStatus.DRAFT.value
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PrintArticle:
        return cls(**_filter_known(cls, data))


# ---------------------------------------------------------------------------
# Taxonomy, usage, tenants
# ---------------------------------------------------------------------------


@dataclass
class CategoryEntry:
    """A named content category with per-language display names."""
    id: str = field(default_factory=_new_id)
    name: str = ""
    slug: str = ""
    translations: Dict[str, str] = field(default_factory=dict)
    is_deleted: bool = False
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CategoryEntry:
        return cls(**_filter_known(cls, data))

    def display_names(self) -> List[str]:
        return [self.name] + [n for n in self.translations.values() if n]


@dataclass
class UsageRecord:
    """One row per provider invocation; append-only."""
    id: str = field(default_factory=_new_id)
    tenant_id: str = ""
    work_item_id: str = ""
    purpose: str = ""
    provider: str = "unknown"
    model: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    prompt_chars: Optional[int] = None
    response_chars: Optional[int] = None
    raw_usage: Optional[Dict[str, Any]] = None
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> UsageRecord:
        return cls(**_filter_known(cls, data))


@dataclass
class TenantSettings:
    """Per-tenant feature flags and billing limits."""
    tenant_id: str = ""
    ai_rewrite_enabled: bool = True
    ai_billing_enabled: bool = False
    ai_monthly_token_limit: Optional[int] = None
    primary_domain: Optional[str] = None
    languages: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TenantSettings:
        return cls(**_filter_known(cls, data))


@dataclass
class IngestionMirror:
    """Denormalised status row read by the external ingestion tracker."""
    id: str = ""
    status: str = "PROCESSING"
    error_code: Optional[str] = None
    work_item_id: Optional[str] = None
    artifact_ids: Dict[str, str] = field(default_factory=dict)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> IngestionMirror:
        return cls(**_filter_known(cls, data))


@dataclass
class GenerationResult:
    """Text returned by the provider plus best-effort usage metadata."""
    text: str = ""
    usage: Optional[Dict[str, Any]] = None

    def __bool__(self) -> bool:
        return bool(self.text and self.text.strip())


@dataclass
class PromptRow:
    """Operator-edited prompt template persisted by key."""
    key: str = ""
    content: str = ""
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PromptRow:
        return cls(**_filter_known(cls, data))
