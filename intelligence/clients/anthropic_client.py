"""Anthropic Messages API wrapper used for reconciliation."""

from __future__ import annotations

import logging

import anthropic

from intelligence.config import settings

logger = logging.getLogger(__name__)


class SynthesisClient:
    """``complete(system, user) -> (text, tokens)`` over Claude."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
    ):
        key = api_key if api_key is not None else settings.anthropic_api_key
        self.client = anthropic.AsyncAnthropic(api_key=key) if key else None
        self.model = model or settings.reconciliation_model
        self.max_tokens = max_tokens or settings.reconciliation_max_tokens

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.2,
    ) -> tuple[str, int]:
        if not self.client:
            raise RuntimeError("Anthropic client not initialised (missing API key)")
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
            temperature=temperature,
        )
        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        usage = response.usage
        tokens = (usage.input_tokens or 0) + (usage.output_tokens or 0) if usage else 0
        if response.stop_reason == "max_tokens":
            logger.warning("Synthesis output hit max_tokens (%d); repair may be needed", self.max_tokens)
        return text, tokens
