"""OpenAI provider adapter — chat completions for text, the images API for images."""

from __future__ import annotations

import logging
from typing import Any

import openai

from blockflow.config import DEFAULT_IMAGE_MODEL, OPENAI_API_KEY
from blockflow.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)


class OpenAIAdapter(ProviderAdapter):
    block_types = ("text", "image")

    def __init__(self, model: str = "gpt-4o-mini", image_model: str = DEFAULT_IMAGE_MODEL):
        self.model = model
        self.image_model = image_model
        self._client: openai.AsyncOpenAI | None = None

    @property
    def client(self) -> openai.AsyncOpenAI:
        # Created on first use so adapters can be built without a key
        if self._client is None:
            self._client = openai.AsyncOpenAI(api_key=OPENAI_API_KEY or None)
        return self._client

    def format_messages(self, prompt: str, system: str | None = None) -> list[dict]:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def generate_text(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": self.format_messages(prompt, system),
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        try:
            raw = await self.client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            logger.error(f"OpenAI API error: {e}")
            raise
        return (raw.choices[0].message.content or "").strip()

    async def generate_image(self, prompt: str, size: str = "1024x1024", reference: str | None = None) -> str:
        if reference:
            logger.debug("Reference images are not sent to the images API; relying on the prompt")
        try:
            raw = await self.client.images.generate(model=self.image_model, prompt=prompt, size=size, n=1)
        except openai.APIError as e:
            logger.error(f"OpenAI images API error: {e}")
            raise
        return image_artifact(raw.data[0])


def image_artifact(image: Any) -> str:
    """URL when the API returned one, otherwise the base64 payload as a data: URL."""
    if getattr(image, "url", None):
        return image.url
    if getattr(image, "b64_json", None):
        return f"data:image/png;base64,{image.b64_json}"
    raise ValueError("Image response carried neither a URL nor base64 data")
