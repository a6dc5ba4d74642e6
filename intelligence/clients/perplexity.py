"""Perplexity chat-completions client (deep research models).

Perplexity exposes an OpenAI-compatible endpoint, but returns the list of
URLs it consulted in a top-level ``citations`` field that the OpenAI SDK
does not model, so we call it with httpx directly.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from intelligence.config import settings

logger = logging.getLogger(__name__)

PERPLEXITY_API_URL = "https://api.perplexity.ai/chat/completions"


class PerplexityClient:
    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.perplexity_api_key
        self.model = model or settings.perplexity_model
        self.timeout = timeout or settings.perplexity_timeout_seconds

    async def research(self, prompt: str, temperature: float = 0.1) -> dict[str, Any]:
        """Run one deep-research completion.

        Returns ``{content, citations, tokens_used, model}``. Raises on any
        transport or API error; the calling agent turns that into a failure.
        """
        if not self.api_key:
            raise RuntimeError("Perplexity API key not configured")

        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(PERPLEXITY_API_URL, json=body, headers=headers)
        if resp.status_code == 429:
            raise RuntimeError("Perplexity rate limited")
        if resp.status_code != 200:
            raise RuntimeError(f"Perplexity API error {resp.status_code}: {resp.text[:200]}")

        data = resp.json()
        choices = data.get("choices") or []
        content = ""
        if choices:
            content = (choices[0].get("message") or {}).get("content") or ""
        return {
            "content": content,
            "citations": [c for c in data.get("citations") or [] if isinstance(c, str)],
            "tokens_used": int((data.get("usage") or {}).get("total_tokens") or 0),
            "model": data.get("model") or self.model,
        }
