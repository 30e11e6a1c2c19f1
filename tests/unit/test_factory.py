"""
Unit tests for the provider factory.
"""

import pytest

from jobsync.providers.base import GenerativeProvider
from jobsync.providers.factory import ProviderFactory
from jobsync.providers.ollama_provider import OllamaProvider


class EchoProvider(GenerativeProvider):
    def __init__(self, config=None):
        self.config = config or {}

    def generate(self, prompt, max_tokens=None, temperature=None):
        return prompt

    def health_check(self):
        return True

    def get_name(self):
        return "echo"

    @property
    def is_local(self):
        return True


class TestProviderFactory:
    """Tests for ProviderFactory pattern."""

    def setup_method(self):
        """Reset factory state before each test."""
        ProviderFactory.clear_cache()

    def teardown_method(self):
        ProviderFactory.unregister("echo")

    def test_list_providers(self):
        providers = ProviderFactory.list_providers()
        assert "ollama" in providers
        assert "openai" in providers

    def test_create_ollama_provider(self):
        provider = ProviderFactory.create(
            "ollama", {"base_url": "http://localhost:11434", "model": "llama3"}
        )
        assert isinstance(provider, OllamaProvider)
        assert provider.model == "llama3"

    def test_create_with_cache(self):
        """Should return cached instance for same name and config."""
        assert ProviderFactory.create("ollama") is ProviderFactory.create("ollama")

    def test_different_config_different_instance(self):
        first = ProviderFactory.create("ollama", {"model": "llama3"})
        second = ProviderFactory.create("ollama", {"model": "mistral"})
        assert first is not second

    def test_create_without_cache(self):
        provider1 = ProviderFactory.create("ollama", use_cache=False)
        provider2 = ProviderFactory.create("ollama", use_cache=False)
        assert provider1 is not provider2

    def test_unknown_provider_raises(self):
        with pytest.raises(ValueError) as excinfo:
            ProviderFactory.create("unknown_provider")
        assert "Unknown provider" in str(excinfo.value)
        assert "unknown_provider" in str(excinfo.value)

    def test_missing_openai_key_raises_value_error(self):
        with pytest.raises(ValueError):
            ProviderFactory.create("openai", {})

    def test_register_custom_provider(self):
        ProviderFactory.register("echo", EchoProvider)
        assert ProviderFactory.is_registered("echo")

        provider = ProviderFactory.create("echo", {"x": 1})
        assert provider.generate("hi") == "hi"
        assert provider.config == {"x": 1}

    def test_unregister_drops_cached_instances(self):
        ProviderFactory.register("echo", EchoProvider)
        ProviderFactory.create("echo")

        assert ProviderFactory.unregister("echo") is True
        assert not ProviderFactory.is_registered("echo")
        assert ProviderFactory.unregister("echo") is False
        with pytest.raises(ValueError):
            ProviderFactory.create("echo")

    def test_from_config_picks_named_section(self):
        provider = ProviderFactory.from_config({
            "provider": "ollama",
            "providers": {"ollama": {"model": "mistral"}, "openai": {}},
        })
        assert isinstance(provider, OllamaProvider)
        assert provider.model == "mistral"

    def test_from_config_defaults_to_ollama(self):
        assert isinstance(ProviderFactory.from_config({}), OllamaProvider)
