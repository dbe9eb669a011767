"""Echo adapter — returns the prompt unchanged. For dry runs without an API key."""

from __future__ import annotations

from blockflow.providers.base import ProviderAdapter


class EchoAdapter(ProviderAdapter):
    block_types = ("text",)

    def __init__(self, model: str = "echo"):
        self.model = model

    async def generate_text(self, prompt: str, system: str | None = None, temperature: float = 0.7, max_tokens: int = 2048) -> str:
        return prompt
