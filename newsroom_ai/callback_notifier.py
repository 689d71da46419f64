"""
Callback Notifier

POSTs an ``AI_REWRITE_STATUS`` payload to the work item's callback URL when
processing reaches a terminal state.  Delivery is best-effort: failures are
logged and never change the item's outcome.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from newsroom_ai.models import DerivationKind, ProcessingState, WorkItem

logger = logging.getLogger("callback_notifier")

CALLBACK_EVENT_TYPE = "AI_REWRITE_STATUS"
SECRET_HEADER = "X-AI-Callback-Secret"
RETRY_BASE_DELAY = 1.0


@dataclass
class WebhookResponse:
    """Outcome of one callback delivery."""
    success: bool
    status_code: int
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    response_time_ms: float = 0.0

    def __bool__(self) -> bool:
        return self.success


def is_deliverable_url(url: Optional[str]) -> bool:
    return bool(url) and url.strip().lower().startswith(("http://", "https://"))


def build_payload(item: WorkItem, status: str, context: Optional[ProcessingState] = None) -> Dict[str, Any]:
    """Status payload in the shape external callers expect.

    Artifact ids, mode and errors come from *context* when given, otherwise
    from the item's own state.
    """
    state = context if context is not None else item.state
    return {
        "type": CALLBACK_EVENT_TYPE,
        "status": status,
        "articleId": item.id,
        "tenantId": item.tenant_id,
        "aiMode": state.mode,
        "webArticleId": state.artifact_id(DerivationKind.WEB),
        "shortNewsId": state.artifact_id(DerivationKind.SHORT),
        "newspaperArticleId": state.artifact_id(DerivationKind.PRINT),
        "externalArticleId": item.external_id,
        "error": state.error_code,
        "skipReason": state.skip_reason,
        "kindErrors": dict(state.kind_errors) or None,
        "finishedAt": state.finished_at,
    }


class CallbackNotifier:
    """Delivers status callbacks with a short timeout and optional shared secret."""

    def __init__(self, secret: str = "", timeout: float = 4.0, max_retries: int = 2) -> None:
        self.secret = secret
        self.timeout = timeout
        self.max_retries = max(1, max_retries)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers[SECRET_HEADER] = self.secret
        return headers

    async def _post(self, url: str, payload: Dict[str, Any]) -> WebhookResponse:
        """POST *payload*, retrying 5xx and connection errors with backoff."""
        last_error: Optional[str] = None
        last_status = 0
        elapsed_ms = 0.0

        for attempt in range(self.max_retries):
            start = time.monotonic()
            try:
                req_timeout = aiohttp.ClientTimeout(total=self.timeout)
                async with aiohttp.ClientSession(timeout=req_timeout) as session:
                    async with session.post(url, json=payload, headers=self._headers()) as resp:
                        elapsed_ms = (time.monotonic() - start) * 1000
                        last_status = resp.status
                        body: Optional[Dict[str, Any]] = None
                        try:
                            body = await resp.json(content_type=None)
                        except (aiohttp.ContentTypeError, ValueError):
                            raw = await resp.text()
                            body = {"raw": raw} if raw else None

                        if 200 <= resp.status < 300:
                            return WebhookResponse(
                                success=True,
                                status_code=resp.status,
                                data=body if isinstance(body, dict) else None,
                                response_time_ms=round(elapsed_ms, 2),
                            )
                        last_error = f"HTTP {resp.status}"
                        if 400 <= resp.status < 500:
                            break
            except asyncio.TimeoutError:
                elapsed_ms = (time.monotonic() - start) * 1000
                last_error = f"Request timed out after {self.timeout}s"
                last_status = 0
            except aiohttp.ClientError as exc:
                elapsed_ms = (time.monotonic() - start) * 1000
                last_error = f"Connection error: {exc}"
                last_status = 0

            if attempt < self.max_retries - 1:
                delay = RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "Callback to %s failed (attempt %d/%d): %s -- retrying in %.1fs",
                    url, attempt + 1, self.max_retries, last_error, delay,
                )
                await asyncio.sleep(delay)

        return WebhookResponse(
            success=False,
            status_code=last_status,
            error=last_error,
            response_time_ms=round(elapsed_ms, 2),
        )

    async def notify(
        self,
        item: WorkItem,
        status: str,
        context: Optional[ProcessingState] = None,
    ) -> Optional[WebhookResponse]:
        """Send the status callback for *item*; None when it has no usable URL.

        *context* is the processing state to report, normally the state the
        item reached at its terminal transition.
        """
        url = (item.callback_url or "").strip()
        if not is_deliverable_url(url):
            if url:
                logger.debug("Ignoring non-http callback URL for item %s", item.id[:8])
            return None
        try:
            response = await self._post(url, build_payload(item, status, context))
        except Exception as exc:
            logger.warning("Callback for item %s raised: %s", item.id[:8], exc)
            return WebhookResponse(success=False, status_code=0, error=str(exc))
        if response:
            logger.info("Callback delivered for item %s (%s)", item.id[:8], status)
        else:
            logger.warning("Callback for item %s failed: %s", item.id[:8], response.error)
        return response
