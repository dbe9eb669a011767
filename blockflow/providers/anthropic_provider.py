"""Anthropic (Claude) provider adapter — text blocks only."""

from __future__ import annotations

import logging
from typing import Any

import anthropic

from blockflow.config import ANTHROPIC_API_KEY
from blockflow.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)


class AnthropicAdapter(ProviderAdapter):
    block_types = ("text",)

    def __init__(self, model: str = "claude-sonnet-4-5"):
        self.model = model
        self._client: anthropic.AsyncAnthropic | None = None

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=ANTHROPIC_API_KEY or None)
        return self._client

    async def generate_text(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system

        try:
            raw = await self.client.messages.create(**kwargs)
        except anthropic.APIError as e:
            logger.error(f"Anthropic API error: {e}")
            raise
        return parse_text(raw)


def parse_text(raw: Any) -> str:
    parts = [block.text for block in raw.content if block.type == "text"]
    return "\n".join(parts).strip()
