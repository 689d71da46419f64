"""
Pipeline configuration.

All tunables are read from the environment once, at process start, into a
``PipelineSettings`` dataclass that is then passed to every component.
Product-tuned thresholds (word bounds, similarity threshold, category
guardrails) live here rather than inside the components.

Usage:
    from newsroom_ai.config import PipelineSettings

    settings = PipelineSettings.from_env()
    settings.short_max_words  # 60
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

# ---------------------------------------------------------------------------
# Model identifiers
# ---------------------------------------------------------------------------

MODEL_SONNET = "claude-sonnet-4-20250514"
MODEL_HAIKU = "claude-haiku-4-5-20251001"

DEFAULT_DATA_DIR = Path(__file__).resolve().parent.parent / "data"


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    """Interpret common truthy strings ("1", "true", "yes", "on")."""
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "y", "on")


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _parse_float(value: Optional[str], default: float) -> float:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


@dataclass
class PipelineSettings:
    """Runtime configuration for the derivation pipeline."""

    # Provider
    anthropic_api_key: str = ""
    model_rewrite: str = MODEL_SONNET
    model_default: str = MODEL_HAIKU
    ai_timeout_seconds: float = 12.0
    temperature: float = 0.6
    max_output_tokens_rewrite: int = 2048
    max_output_tokens_default: int = 1024

    # Callback
    callback_secret: str = ""
    callback_timeout_seconds: float = 4.0
    callback_max_retries: int = 2

    # Operator prompt overrides (full text or "db:<key>")
    prompt_overrides: Dict[str, str] = field(default_factory=dict)
    prompt_cache_ttl_seconds: float = 60.0

    # Batch driver
    batch_size: int = 500
    lookback_days: int = 30
    loop_interval_seconds: float = 60.0

    # Short-form draft bounds
    short_min_words: int = 58
    short_max_words: int = 60
    short_max_attempts: int = 3
    short_title_max_chars: int = 50

    # Category resolver guardrails
    category_similarity_threshold: float = 0.9
    category_min_chars: int = 3
    category_max_chars: int = 40
    category_max_words: int = 4
    infer_category_with_ai: bool = False

    # Print artifacts per author per tenant per local day
    print_daily_limit: int = 2

    # Storage and presentation
    data_dir: Path = DEFAULT_DATA_DIR
    timezone: str = "Asia/Kolkata"
    publisher_name: str = "Newsroom"
    publisher_logo_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["data_dir"] = str(self.data_dir)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PipelineSettings:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known}
        if "data_dir" in filtered:
            filtered["data_dir"] = Path(filtered["data_dir"])
        return cls(**filtered)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> PipelineSettings:
        """Build settings from environment variables, keeping defaults for unset ones."""
        env = os.environ if environ is None else environ
        defaults = cls()

        overrides: Dict[str, str] = {}
        for key, var in PROMPT_OVERRIDE_ENV.items():
            value = (env.get(var) or "").strip()
            if value:
                overrides[key] = value

        return cls(
            anthropic_api_key=env.get("ANTHROPIC_API_KEY", ""),
            model_rewrite=env.get("AI_MODEL_REWRITE") or defaults.model_rewrite,
            model_default=env.get("AI_MODEL_DEFAULT") or defaults.model_default,
            ai_timeout_seconds=_parse_float(env.get("AI_TIMEOUT_SECONDS"), defaults.ai_timeout_seconds),
            temperature=_parse_float(env.get("AI_TEMPERATURE"), defaults.temperature),
            max_output_tokens_rewrite=_parse_int(
                env.get("AI_MAX_OUTPUT_TOKENS_REWRITE"), defaults.max_output_tokens_rewrite
            ),
            max_output_tokens_default=_parse_int(
                env.get("AI_MAX_OUTPUT_TOKENS_DEFAULT"), defaults.max_output_tokens_default
            ),
            callback_secret=(env.get("AI_CALLBACK_SECRET") or "").strip(),
            callback_timeout_seconds=_parse_float(
                env.get("AI_CALLBACK_TIMEOUT_SECONDS"), defaults.callback_timeout_seconds
            ),
            callback_max_retries=_parse_int(env.get("AI_CALLBACK_MAX_RETRIES"), defaults.callback_max_retries),
            prompt_overrides=overrides,
            prompt_cache_ttl_seconds=_parse_float(
                env.get("PROMPT_CACHE_TTL_SECONDS"), defaults.prompt_cache_ttl_seconds
            ),
            batch_size=_parse_int(env.get("AI_QUEUE_BATCH_SIZE"), defaults.batch_size),
            lookback_days=_parse_int(env.get("AI_QUEUE_LOOKBACK_DAYS"), defaults.lookback_days),
            loop_interval_seconds=_parse_float(
                env.get("AI_QUEUE_INTERVAL_SECONDS"), defaults.loop_interval_seconds
            ),
            short_min_words=_parse_int(env.get("SHORT_MIN_WORDS"), defaults.short_min_words),
            short_max_words=_parse_int(env.get("SHORT_MAX_WORDS"), defaults.short_max_words),
            short_max_attempts=_parse_int(env.get("SHORT_MAX_ATTEMPTS"), defaults.short_max_attempts),
            category_similarity_threshold=_parse_float(
                env.get("CATEGORY_SIMILARITY_THRESHOLD"), defaults.category_similarity_threshold
            ),
            category_min_chars=_parse_int(env.get("CATEGORY_MIN_CHARS"), defaults.category_min_chars),
            category_max_chars=_parse_int(env.get("CATEGORY_MAX_CHARS"), defaults.category_max_chars),
            category_max_words=_parse_int(env.get("CATEGORY_MAX_WORDS"), defaults.category_max_words),
            infer_category_with_ai=_parse_bool(env.get("AI_INFER_CATEGORY"), False),
            print_daily_limit=_parse_int(env.get("PRINT_DAILY_LIMIT"), defaults.print_daily_limit),
            data_dir=Path(env.get("NEWSROOM_DATA_DIR") or defaults.data_dir),
            timezone=env.get("PIPELINE_TIMEZONE") or defaults.timezone,
            publisher_name=env.get("SEO_PUBLISHER_NAME") or defaults.publisher_name,
            publisher_logo_url=env.get("SEO_PUBLISHER_LOGO") or defaults.publisher_logo_url,
        )


# Template key -> environment variable holding an operator override
PROMPT_OVERRIDE_ENV: Dict[str, str] = {
    "ai_rewrite_prompt_true": "AI_REWRITE_PROMPT_TRUE",
    "ai_rewrite_prompt_false": "AI_REWRITE_PROMPT_FALSE",
    "shortnews_ai_article": "SHORTNEWS_PROMPT",
    "ai_web_article_json": "WEB_PROMPT",
    "ai_newspaper_article_json": "NEWSPAPER_PROMPT",
}
