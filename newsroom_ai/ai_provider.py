"""
Text-generation provider backed by the Anthropic SDK.

``generate`` never raises for transport problems: errors and timeouts are
logged and surface as an empty ``GenerationResult``, which callers treat
like an empty model response.  Configuration problems (missing API key)
raise ``ProviderError`` at construction time instead.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import anthropic

from newsroom_ai.config import PipelineSettings
from newsroom_ai.errors import ProviderError
from newsroom_ai.models import GenerationResult

logger = logging.getLogger("ai_provider")

PROVIDER_NAME = "anthropic"

# Purposes that produce full articles and get the larger model/token budget
REWRITE_PURPOSES = frozenset({"rewrite", "web", "shortnews_ai_article", "newspaper"})


class AnthropicProvider:
    """Async wrapper around ``anthropic.AsyncAnthropic`` with per-purpose model routing."""

    def __init__(self, settings: PipelineSettings, client: Optional[Any] = None) -> None:
        self._settings = settings
        if client is None:
            if not settings.anthropic_api_key:
                raise ProviderError(
                    "ANTHROPIC_API_KEY is not set. Set it before running the pipeline."
                )
            client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        self._client = client

    def model_for(self, purpose: str) -> str:
        if purpose in REWRITE_PURPOSES:
            return self._settings.model_rewrite
        return self._settings.model_default

    def max_tokens_for(self, purpose: str) -> int:
        if purpose in REWRITE_PURPOSES:
            return self._settings.max_output_tokens_rewrite
        return self._settings.max_output_tokens_default

    @staticmethod
    def _response_text(response: Any) -> str:
        parts = []
        for block in getattr(response, "content", None) or []:
            text = getattr(block, "text", None)
            if isinstance(text, str):
                parts.append(text)
        return "".join(parts)

    async def generate(
        self,
        prompt: str,
        purpose: str = "rewrite",
        timeout: Optional[float] = None,
    ) -> GenerationResult:
        """
        Send *prompt* as a single user message and return the text.

        Parameters
        ----------
        prompt : str
            Fully rendered prompt.
        purpose : str
            Selects the model and output budget (rewrite purposes use the
            larger model).
        timeout : float, optional
            Seconds before the call is abandoned; defaults to
            ``settings.ai_timeout_seconds``.

        Returns
        -------
        GenerationResult
            ``text`` is ``""`` on any failure.  ``usage`` carries token
            counts when the provider reported them.
        """
        model = self.model_for(purpose)
        limit = self._settings.ai_timeout_seconds if timeout is None else timeout
        usage: Dict[str, Any] = {
            "provider": PROVIDER_NAME,
            "model": model,
            "purpose": purpose,
            "prompt_chars": len(prompt or ""),
        }

        logger.debug("API call: model=%s purpose=%s prompt_len=%d", model, purpose, len(prompt or ""))
        start_time = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(
                    model=model,
                    max_tokens=self.max_tokens_for(purpose),
                    temperature=self._settings.temperature,
                    messages=[{"role": "user", "content": prompt}],
                ),
                timeout=limit,
            )
        except asyncio.TimeoutError:
            logger.warning("API call timed out after %.1fs (purpose=%s)", limit, purpose)
            usage["response_chars"] = 0
            usage["error"] = "TIMEOUT"
            return GenerationResult(text="", usage=usage)
        except Exception as exc:
            elapsed = time.monotonic() - start_time
            logger.warning("API call failed after %.1fs (purpose=%s): %s", elapsed, purpose, exc)
            usage["response_chars"] = 0
            usage["error"] = str(exc)[:200]
            return GenerationResult(text="", usage=usage)

        elapsed = time.monotonic() - start_time
        text = self._response_text(response)
        raw_usage = getattr(response, "usage", None)
        input_tokens = getattr(raw_usage, "input_tokens", None)
        output_tokens = getattr(raw_usage, "output_tokens", None)
        if isinstance(input_tokens, int) and isinstance(output_tokens, int):
            usage["prompt_tokens"] = input_tokens
            usage["completion_tokens"] = output_tokens
            usage["total_tokens"] = input_tokens + output_tokens
        usage["response_chars"] = len(text)
        reported_model = getattr(response, "model", None)
        if isinstance(reported_model, str) and reported_model:
            usage["model"] = reported_model

        logger.debug(
            "API response: %d chars in %.1fs (input_tokens=%s, output_tokens=%s)",
            len(text), elapsed, input_tokens, output_tokens,
        )
        return GenerationResult(text=text, usage=usage)

    async def ping(self) -> Dict[str, Any]:
        """Round-trip a trivial prompt; reports model, latency and any error."""
        start_time = time.monotonic()
        result = await self.generate("Reply with the single word: pong", purpose="diagnostic")
        latency_ms = int((time.monotonic() - start_time) * 1000)
        usage = result.usage or {}
        return {
            "ok": bool(result),
            "provider": PROVIDER_NAME,
            "model": usage.get("model"),
            "latency_ms": latency_ms,
            "response": result.text.strip()[:50],
            "error": usage.get("error"),
        }
