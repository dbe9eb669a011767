"""Base provider adapter — abstract interface for generation backends."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from blockflow import config

logger = logging.getLogger(__name__)

TEXT_SYSTEM_PROMPT = (
    "You generate content for one block of a visual workflow. "
    "Reply with the content only, without preamble or commentary."
)


class UnsupportedBlockType(RuntimeError):
    """The backend cannot produce this kind of block."""


class ProviderAdapter(ABC):
    """Talks to one backend API. Each method returns the artifact for a block."""

    block_types: tuple[str, ...] = ("text",)

    @abstractmethod
    async def generate_text(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float = config.DEFAULT_TEMPERATURE,
        max_tokens: int = config.DEFAULT_MAX_TOKENS,
    ) -> str:
        """Return generated text."""

    async def generate_image(self, prompt: str, size: str = "1024x1024", reference: str | None = None) -> str:
        """Return an image as an http(s) URL or a data: URL."""
        raise UnsupportedBlockType(f"{type(self).__name__} cannot generate images")

    async def generate_video(self, prompt: str, reference: str | None = None) -> str:
        """Return a video URL."""
        raise UnsupportedBlockType(f"{type(self).__name__} cannot generate videos")


class GenerationProvider:
    """The generation callback the batch queue calls: `await provider(payload, settings)`."""

    def __init__(self, adapter: ProviderAdapter):
        self.adapter = adapter

    async def __call__(self, payload: dict, settings: dict) -> str:
        block_type = payload.get("block_type", "text")
        prompt = payload["prompt"]

        if block_type == "image":
            return await self.adapter.generate_image(
                prompt,
                size=settings.get("size", "1024x1024"),
                reference=payload.get("reference"),
            )
        if block_type == "video":
            return await self.adapter.generate_video(prompt, reference=payload.get("reference"))

        return await self.adapter.generate_text(
            prompt,
            system=settings.get("system", TEXT_SYSTEM_PROMPT),
            temperature=float(settings.get("temperature", config.DEFAULT_TEMPERATURE)),
            max_tokens=int(settings.get("max_tokens", config.DEFAULT_MAX_TOKENS)),
        )

    def supports(self, block_type: str) -> bool:
        return block_type in self.adapter.block_types
