"""
Cloud backend speaking the OpenAI chat completions API.

Any endpoint with the same wire format (Azure, proxies, local gateways)
works through `base_url`. Answers are requested in JSON mode.
"""

import logging
import time
from typing import Any, Dict, Optional

import requests

from ..core.errors import ProviderError
from ..utils.secrets import get_api_key
from .base import GenerativeProvider

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class OpenAIProvider(GenerativeProvider):
    """
    Config keys: model (gpt-4o-mini), api_key (falls back to the OS
    keyring entry for "openai"), base_url, timeout, max_tokens, temperature.

    Raises ValueError at construction when no API key can be found, so the
    factory never hands out a backend that is bound to fail.
    """

    SYSTEM_PROMPT = (
        "You read one email and report whether it concerns the reader's own "
        "job application. Answer with a single JSON object and nothing else."
    )

    def __init__(self, config: Optional[Dict] = None):
        config = config or {}
        self.api_key = config.get("api_key") or get_api_key("openai")
        if not self.api_key:
            raise ValueError(
                "No OpenAI API key: pass providers.openai.api_key or store one "
                "with jobsync.utils.secrets.set_api_key('openai', ...)"
            )
        self.model = config.get("model", "gpt-4o-mini")
        self.base_url = config.get("base_url", DEFAULT_BASE_URL).rstrip("/")
        self.timeout = config.get("timeout", 30)
        self.max_tokens = config.get("max_tokens", 150)
        self.temperature = config.get("temperature", 0.0)

    def get_name(self) -> str:
        return "openai"

    @property
    def is_local(self) -> bool:
        return False

    @property
    def _auth(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def health_check(self) -> bool:
        try:
            status = requests.get(f"{self.base_url}/models", headers=self._auth, timeout=10).status_code
        except requests.exceptions.RequestException as e:
            logger.warning(f"OpenAI unreachable: {e}")
            return False

        if status == 401:
            logger.error("OpenAI rejected the configured API key")
        elif status == 429:
            # Throttled but up
            logger.warning("OpenAI is rate limiting this key")
            return True
        return status == 200

    def _request_body(self, prompt: str, max_tokens: Optional[int], temperature: Optional[float]) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "response_format": {"type": "json_object"},
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
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
                f"{self.base_url}/chat/completions",
                headers=self._auth,
                json=self._request_body(prompt, max_tokens, temperature),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise ProviderError(f"OpenAI request timed out after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"OpenAI request failed: {e}") from e

        if response.status_code == 429:
            raise ProviderError("OpenAI rate limit exceeded")
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise ProviderError(f"OpenAI HTTP error: {e}") from e

        try:
            envelope = response.json()
            content = envelope["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Unexpected OpenAI response envelope: {e}") from e

        usage = envelope.get("usage") or {}
        logger.debug(
            f"OpenAI {self.model} answered in {int((time.time() - started) * 1000)}ms "
            f"({usage.get('total_tokens', 0)} tokens)"
        )
        return (content or "").strip()
