"""
Provider factory: one entry point to build the Deep Classifier's backend.

Backends register under a short name; instances are cached per
(name, config) so a rebuilt service talks to the same backend object.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Type

from .base import GenerativeProvider

logger = logging.getLogger(__name__)


def _cache_key(name: str, config: Optional[Dict]) -> str:
    return f"{name}:{json.dumps(config or {}, sort_keys=True, default=str)}"


class ProviderFactory:
    """
    Usage:
        provider = ProviderFactory.create("ollama", {"model": "llama3"})
        provider = ProviderFactory.from_config(load_config())
    """

    _registry: Dict[str, Type[GenerativeProvider]] = {}
    _cache: Dict[str, GenerativeProvider] = {}

    @classmethod
    def register(cls, name: str, provider_class: Type[GenerativeProvider]) -> None:
        cls._registry[name] = provider_class
        logger.debug(f"Registered provider: {name}")

    @classmethod
    def create(
        cls, name: str, config: Optional[Dict] = None, use_cache: bool = True
    ) -> GenerativeProvider:
        """
        Build (or reuse) the backend registered as `name`.

        Raises:
            ValueError: unknown name, or the backend rejects its
                configuration (e.g. a cloud backend without an API key)
        """
        key = _cache_key(name, config)
        if use_cache and key in cls._cache:
            return cls._cache[key]

        provider_class = cls._registry.get(name)
        if provider_class is None:
            raise ValueError(f"Unknown provider: '{name}'. Available: {cls.list_providers()}")

        provider = provider_class(dict(config or {}))
        if use_cache:
            cls._cache[key] = provider
        logger.info(f"Deep classifier backend ready: {provider.get_name()}")
        return provider

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> GenerativeProvider:
        """
        Backend named by `config["provider"]`, configured from the matching
        `config["providers"][name]` section.

        Raises:
            ValueError: see `create`
        """
        name = config.get("provider", "ollama")
        return cls.create(name, config.get("providers", {}).get(name, {}))

    @classmethod
    def list_providers(cls) -> List[str]:
        return sorted(cls._registry)

    @classmethod
    def is_registered(cls, name: str) -> bool:
        return name in cls._registry

    @classmethod
    def clear_cache(cls) -> None:
        cls._cache.clear()

    @classmethod
    def unregister(cls, name: str) -> bool:
        """Drop a backend and its cached instances (mainly for testing)."""
        if cls._registry.pop(name, None) is None:
            return False
        prefix = f"{name}:"
        for key in [k for k in cls._cache if k.startswith(prefix)]:
            del cls._cache[key]
        return True


def _register_builtin_providers():
    from .ollama_provider import OllamaProvider
    from .openai_provider import OpenAIProvider

    ProviderFactory.register("ollama", OllamaProvider)
    ProviderFactory.register("openai", OpenAIProvider)


_register_builtin_providers()
