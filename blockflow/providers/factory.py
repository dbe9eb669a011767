"""Provider factory — create the right adapter based on model string."""

from __future__ import annotations

from blockflow.providers.base import GenerationProvider, ProviderAdapter


def parse_model_string(model: str) -> tuple[str, str]:
    """Parse 'provider/model-name' into (provider, model)."""
    if "/" in model:
        provider, model_name = model.split("/", 1)
        return provider.lower(), model_name
    # Infer provider from model name
    if model.startswith("claude"):
        return "anthropic", model
    if model.startswith(("gpt", "o1", "o3", "dall-e")):
        return "openai", model
    if model == "echo":
        return "echo", model
    return "openai", model


def create_adapter(model: str) -> ProviderAdapter:
    """Create a provider adapter for the given model string."""
    provider, model_name = parse_model_string(model)

    if provider == "openai":
        from blockflow.providers.openai_provider import OpenAIAdapter
        return OpenAIAdapter(model=model_name)
    elif provider == "anthropic":
        from blockflow.providers.anthropic_provider import AnthropicAdapter
        return AnthropicAdapter(model=model_name)
    elif provider == "echo":
        from blockflow.providers.echo import EchoAdapter
        return EchoAdapter(model=model_name)
    else:
        raise ValueError(f"Unknown provider: {provider}. Use 'openai/model', 'anthropic/model', or 'echo'.")


def create_provider(model: str) -> GenerationProvider:
    """Create a GenerationProvider wrapping the appropriate adapter."""
    return GenerationProvider(create_adapter(model))
