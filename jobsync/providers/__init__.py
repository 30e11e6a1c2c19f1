"""
Generative-model backends for the Deep Classifier.

- Ollama: local inference (default, free, private)
- OpenAI: OpenAI-compatible chat completions (cloud)

Use the ProviderFactory for creating provider instances:
    from jobsync.providers import ProviderFactory
    provider = ProviderFactory.create("ollama", config)
"""

from .base import GenerativeProvider
from .factory import ProviderFactory
from .ollama_provider import OllamaProvider
from .openai_provider import OpenAIProvider

__all__ = [
    "GenerativeProvider",
    "ProviderFactory",
    "OllamaProvider",
    "OpenAIProvider",
]
