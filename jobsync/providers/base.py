"""
Base interface for generative-model backends.

A provider turns a fully rendered prompt into raw model text. Parsing and
validating that text is the Deep Classifier's job, so every backend is
interchangeable behind the same breaker and schema check.
"""

from abc import ABC, abstractmethod
from typing import Optional


class GenerativeProvider(ABC):
    """
    Abstract base class for generative backends (model agnostic).

    Implementations raise jobsync.core.errors.ProviderError when the backend
    is unreachable, times out, or answers with an HTTP error.
    """

    @abstractmethod
    def generate(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """
        Run the model on `prompt` and return its raw text output.

        Args:
            prompt: Fully rendered prompt (instructions + email)
            max_tokens: Output token cap, provider default when None
            temperature: Sampling temperature, provider default when None
        """
        pass

    @abstractmethod
    def health_check(self) -> bool:
        """Check if the backend is available."""
        pass

    @abstractmethod
    def get_name(self) -> str:
        """Provider identifier for logging."""
        pass

    @property
    @abstractmethod
    def is_local(self) -> bool:
        """Whether the provider runs locally (no cloud costs)."""
        pass
