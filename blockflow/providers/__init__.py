"""Provider adapter layer — generation backends behind one callback."""

from blockflow.providers.base import GenerationProvider, ProviderAdapter
from blockflow.providers.factory import create_provider

__all__ = ["GenerationProvider", "ProviderAdapter", "create_provider"]
