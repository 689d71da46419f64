"""
Usage Metering

One append-only UsageRecord per provider invocation, plus the monthly token
quota check that gates a tenant's work items before any provider call.
Recording is best-effort: a storage failure is logged and never fails the
work item.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from newsroom_ai.models import GenerationResult, TenantSettings, UsageRecord
from newsroom_ai.repositories import UsageRecordRepository

logger = logging.getLogger("usage_meter")

CHARS_PER_TOKEN_ESTIMATE = 4


def month_start_utc(now: Optional[datetime] = None) -> datetime:
    """Midnight UTC on the first day of *now*'s month."""
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    current = current.astimezone(timezone.utc)
    return current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def estimate_tokens(chars: int) -> int:
    """Rough token count for *chars* characters of text."""
    if chars <= 0:
        return 0
    return max(1, -(-chars // CHARS_PER_TOKEN_ESTIMATE))


class UsageMeter:
    """Records provider usage and enforces per-tenant monthly token limits."""

    def __init__(self, repository: UsageRecordRepository) -> None:
        self._repo = repository

    @staticmethod
    def build_record(
        tenant_id: str,
        work_item_id: str,
        purpose: str,
        prompt: str,
        result: GenerationResult,
    ) -> UsageRecord:
        """Build the usage row for one provider call.

        When the provider reports no token counts, they are estimated from
        the prompt and response lengths so the monthly quota still advances.
        """
        usage: Dict[str, Any] = dict(result.usage or {})
        prompt_chars = _int_or_none(usage.get("prompt_chars")) or len(prompt or "")
        response_chars = _int_or_none(usage.get("response_chars")) or len(result.text or "")
        prompt_tokens = _int_or_none(usage.get("prompt_tokens"))
        completion_tokens = _int_or_none(usage.get("completion_tokens"))
        total_tokens = _int_or_none(usage.get("total_tokens"))

        if total_tokens is None:
            if prompt_tokens is None and completion_tokens is None:
                prompt_tokens = estimate_tokens(prompt_chars)
                completion_tokens = estimate_tokens(response_chars)
            total_tokens = (prompt_tokens or 0) + (completion_tokens or 0)

        return UsageRecord(
            tenant_id=tenant_id,
            work_item_id=work_item_id,
            purpose=purpose,
            provider=str(usage.get("provider") or "unknown"),
            model=str(usage["model"]) if usage.get("model") else None,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            prompt_chars=prompt_chars,
            response_chars=response_chars,
            raw_usage=usage or None,
        )

    async def record(
        self,
        tenant_id: str,
        work_item_id: str,
        purpose: str,
        prompt: str,
        result: GenerationResult,
    ) -> Optional[UsageRecord]:
        """Persist a usage row; returns None (and logs) if persisting fails."""
        rec = self.build_record(tenant_id, work_item_id, purpose, prompt, result)
        try:
            await self._repo.create(rec)
        except Exception as exc:
            logger.warning("Failed to record usage for item %s: %s", (work_item_id or "-")[:8], exc)
            return None
        logger.debug(
            "Recorded usage: tenant=%s purpose=%s tokens=%s",
            tenant_id, purpose, rec.total_tokens,
        )
        return rec

    async def monthly_total_tokens(self, tenant_id: str, now: Optional[datetime] = None) -> int:
        return await self._repo.sum_total_tokens(tenant_id, month_start_utc(now))

    async def is_quota_exceeded(self, settings: TenantSettings, now: Optional[datetime] = None) -> bool:
        """True when billing is enabled and this month's tokens reached the limit."""
        limit = settings.ai_monthly_token_limit
        if not settings.ai_billing_enabled or not limit or limit <= 0:
            return False
        used = await self.monthly_total_tokens(settings.tenant_id, now)
        if used >= limit:
            logger.info(
                "Tenant %s over monthly token limit (%d >= %d)",
                settings.tenant_id, used, limit,
            )
            return True
        return False
