"""
Local backend on top of an Ollama server (the default).

Requests go to /api/generate with `format: json`, which keeps small local
models on the expected wire format most of the time.
"""

import logging
import time
from typing import Any, Dict, Optional

import requests

from ..core.errors import ProviderError
from .base import GenerativeProvider

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"


class OllamaProvider(GenerativeProvider):
    """
    Config keys: base_url, model (llama3), timeout (30s),
    max_tokens (sent as num_predict, 128) and temperature (0.0).
    """

    def __init__(self, config: Optional[Dict] = None):
        config = config or {}
        self.base_url = config.get("base_url", DEFAULT_BASE_URL).rstrip("/")
        self.model = config.get("model", "llama3")
        self.timeout = config.get("timeout", 30)
        self.max_tokens = config.get("max_tokens", 128)
        self.temperature = config.get("temperature", 0.0)
        self.api_endpoint = self.base_url + "/api/generate"

    def get_name(self) -> str:
        return "ollama"

    @property
    def is_local(self) -> bool:
        return True

    def _has_model(self, names) -> bool:
        return self.model in names or f"{self.model}:latest" in names

    def health_check(self) -> bool:
        """True when the server answers /api/tags. A model that was never pulled only warns."""
        try:
            response = requests.get(self.base_url + "/api/tags", timeout=5)
            if response.status_code != 200:
                logger.warning(f"Ollama /api/tags answered HTTP {response.status_code}")
                return False
            names = [m.get("name", "") for m in response.json().get("models", [])]
        except requests.exceptions.ConnectionError:
            logger.warning(f"Nothing listening at {self.base_url}; start Ollama or change providers.ollama.base_url")
            return False
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"Ollama unreachable: {e}")
            return False

        if not self._has_model(names):
            logger.warning(f"Ollama has no '{self.model}' model pulled (found: {names})")
        return True

    def _request_body(self, prompt: str, max_tokens: Optional[int], temperature: Optional[float]) -> Dict[str, Any]:
        return {
            "model": self.model,
            "prompt": prompt,
            "format": "json",
            "stream": False,
            "options": {
                "num_predict": max_tokens or self.max_tokens,
                "temperature": self.temperature if temperature is None else temperature,
            },
        }

    def generate(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        started = time.time()
        try:
            response = requests.post(
                self.api_endpoint,
                json=self._request_body(prompt, max_tokens, temperature),
                timeout=self.timeout,
            )
            response.raise_for_status()
            envelope = response.json()
        except requests.exceptions.Timeout as e:
            raise ProviderError(f"Ollama gave no answer within {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"Ollama request failed: {e}") from e
        except ValueError as e:
            raise ProviderError(f"Ollama returned a non-JSON envelope: {e}") from e

        logger.debug(
            f"Ollama {self.model} answered in {int((time.time() - started) * 1000)}ms "
            f"({envelope.get('eval_count', 0)} tokens)"
        )
        return str(envelope.get("response", "")).strip()
