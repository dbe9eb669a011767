"""Test provider factory and adapters. No network calls."""

from types import SimpleNamespace

import pytest

from blockflow import config
from blockflow.providers.anthropic_provider import AnthropicAdapter, parse_text
from blockflow.providers.base import TEXT_SYSTEM_PROMPT, GenerationProvider, ProviderAdapter, UnsupportedBlockType
from blockflow.providers.echo import EchoAdapter
from blockflow.providers.factory import create_adapter, create_provider, parse_model_string
from blockflow.providers.openai_provider import OpenAIAdapter, image_artifact


def test_parse_model_string():
    assert parse_model_string("anthropic/claude-sonnet-4-5") == ("anthropic", "claude-sonnet-4-5")
    assert parse_model_string("openai/gpt-4o") == ("openai", "gpt-4o")
    assert parse_model_string("claude-sonnet-4-5") == ("anthropic", "claude-sonnet-4-5")
    assert parse_model_string("gpt-4o") == ("openai", "gpt-4o")
    assert parse_model_string("dall-e-3") == ("openai", "dall-e-3")
    assert parse_model_string("echo") == ("echo", "echo")


def test_create_adapter():
    assert isinstance(create_adapter("anthropic/claude-sonnet-4-5"), AnthropicAdapter)
    assert isinstance(create_adapter("openai/gpt-4o"), OpenAIAdapter)
    assert isinstance(create_adapter("echo"), EchoAdapter)
    with pytest.raises(ValueError, match="Unknown provider"):
        create_adapter("mystery/model-x")


def test_openai_format_messages():
    adapter = OpenAIAdapter()
    messages = adapter.format_messages("hello", system="be brief")
    assert messages == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hello"},
    ]
    assert adapter.format_messages("hi") == [{"role": "user", "content": "hi"}]


def test_image_artifact():
    assert image_artifact(SimpleNamespace(url="https://img/1.png", b64_json=None)) == "https://img/1.png"
    assert image_artifact(SimpleNamespace(url=None, b64_json="AAAA")) == "data:image/png;base64,AAAA"
    with pytest.raises(ValueError):
        image_artifact(SimpleNamespace(url=None, b64_json=None))


def test_anthropic_parse_text():
    raw = SimpleNamespace(content=[
        SimpleNamespace(type="text", text="first"),
        SimpleNamespace(type="tool_use", text=None),
        SimpleNamespace(type="text", text="second "),
    ])
    assert parse_text(raw) == "first\nsecond"


class RecordingAdapter(ProviderAdapter):
    block_types = ("text", "image")

    def __init__(self):
        self.calls = []

    async def generate_text(self, prompt, system=None, temperature=0.7, max_tokens=2048):
        self.calls.append(("text", prompt, system, temperature, max_tokens))
        return f"text:{prompt}"

    async def generate_image(self, prompt, size="1024x1024", reference=None):
        self.calls.append(("image", prompt, size, reference))
        return "https://img/out.png"


@pytest.mark.asyncio
async def test_generation_provider_dispatches_on_block_type():
    adapter = RecordingAdapter()
    provider = GenerationProvider(adapter)

    assert await provider({"prompt": "write", "block_type": "text"}, {}) == "text:write"
    assert adapter.calls[-1] == ("text", "write", TEXT_SYSTEM_PROMPT, config.DEFAULT_TEMPERATURE, config.DEFAULT_MAX_TOKENS)

    out = await provider({"prompt": "draw", "block_type": "image", "reference": "https://ref"}, {"size": "512x512"})
    assert out == "https://img/out.png"
    assert adapter.calls[-1] == ("image", "draw", "512x512", "https://ref")

    await provider({"prompt": "again"}, {"temperature": 0.1, "max_tokens": 10, "system": "sys"})
    assert adapter.calls[-1] == ("text", "again", "sys", 0.1, 10)


@pytest.mark.asyncio
async def test_unsupported_block_type():
    provider = GenerationProvider(RecordingAdapter())
    assert provider.supports("image")
    assert not provider.supports("video")
    with pytest.raises(UnsupportedBlockType):
        await provider({"prompt": "film", "block_type": "video"}, {})


@pytest.mark.asyncio
async def test_echo_provider():
    provider = create_provider("echo")
    assert await provider({"prompt": "same back", "block_type": "text"}, {}) == "same back"


@pytest.mark.asyncio
async def test_openai_generate_text_uses_chat_completions():
    captured = {}

    async def create(**kwargs):
        captured.update(kwargs)
        message = SimpleNamespace(content="  generated  ")
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    adapter = OpenAIAdapter(model="gpt-4o-mini")
    adapter._client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))

    assert await adapter.generate_text("hello", system="sys", max_tokens=5) == "generated"
    assert captured["model"] == "gpt-4o-mini"
    assert captured["max_tokens"] == 5
    assert captured["messages"][0] == {"role": "system", "content": "sys"}
