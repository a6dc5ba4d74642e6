"""OpenAI API wrapper for chat synthesis, deep research and embeddings."""

from __future__ import annotations

import logging
from typing import Any

from openai import AsyncOpenAI

from intelligence.config import settings

logger = logging.getLogger(__name__)

EMBEDDING_BATCH_SIZE = 10


def _get_openai_client(timeout: float | None = None) -> AsyncOpenAI | None:
    if not settings.openai_api_key:
        logger.warning("OpenAI API key not configured – LLM calls will fail")
        return None
    kwargs: dict[str, Any] = {"api_key": settings.openai_api_key}
    if timeout:
        kwargs["timeout"] = timeout
    return AsyncOpenAI(**kwargs)


class LLMClient:
    """Thin wrapper around OpenAI chat completions."""

    def __init__(self, model: str | None = None):
        self.client = _get_openai_client()
        self.model = model or settings.openai_model

    async def chat(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.3,
        max_tokens: int = 12000,
    ) -> tuple[str, int]:
        """Return ``(text, total_tokens)`` for one completion."""
        if not self.client:
            raise RuntimeError("OpenAI client not initialised (missing API key)")
        response = await self.client.chat.completions.create(
            model=self.model,
            temperature=temperature,
            max_tokens=max_tokens,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        )
        text = ""
        if response.choices:
            text = response.choices[0].message.content or ""
        tokens = response.usage.total_tokens if response.usage else 0
        return text, tokens


class DeepResearchClient:
    """OpenAI deep research through the Responses API with web search."""

    def __init__(self, model: str | None = None, timeout: float | None = None):
        self.timeout = timeout or settings.openai_research_timeout_seconds
        self.client = _get_openai_client(timeout=self.timeout)
        self.model = model or settings.openai_deep_research_model

    async def research(self, prompt: str) -> dict[str, Any]:
        """Returns ``{content, citations, tokens_used, model}``.

        Citations are the ``url_citation`` annotations on the output text,
        deduplicated in first-seen order.
        """
        if not self.client:
            raise RuntimeError("OpenAI client not initialised (missing API key)")
        response = await self.client.responses.create(
            model=self.model,
            input=prompt,
            tools=[{"type": "web_search_preview"}],
        )

        parts: list[str] = []
        citations: list[str] = []
        for item in response.output or []:
            if getattr(item, "type", None) != "message":
                continue
            for block in getattr(item, "content", None) or []:
                if getattr(block, "type", None) != "output_text":
                    continue
                parts.append(block.text or "")
                for ann in getattr(block, "annotations", None) or []:
                    url = getattr(ann, "url", None)
                    if getattr(ann, "type", None) == "url_citation" and url and url not in citations:
                        citations.append(url)

        usage = getattr(response, "usage", None)
        return {
            "content": "".join(parts),
            "citations": citations,
            "tokens_used": getattr(usage, "total_tokens", 0) or 0,
            "model": getattr(response, "model", None) or self.model,
        }


class EmbeddingClient:
    """Thin wrapper around OpenAI embeddings (batched)."""

    def __init__(self, model: str | None = None, dimensions: int | None = None):
        self.client = _get_openai_client()
        self.model = model or settings.openai_embedding_model
        self.dimensions = dimensions or settings.embedding_dimensions

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not self.client:
            raise RuntimeError("OpenAI client not initialised")
        if not texts:
            return []
        vectors: list[list[float]] = []
        for i in range(0, len(texts), EMBEDDING_BATCH_SIZE):
            batch = texts[i:i + EMBEDDING_BATCH_SIZE]
            response = await self.client.embeddings.create(
                input=batch, model=self.model, dimensions=self.dimensions
            )
            vectors.extend(d.embedding for d in response.data)
        return vectors

    async def embed_single(self, text: str) -> list[float]:
        results = await self.embed([text])
        return results[0] if results else []
