"""
Deep Classifier: structured extraction through a generative model.

Every call goes through the circuit breaker. The model's output must be a
single JSON object matching classification.schema.json exactly; anything
else is a ClassifierFormatError and counts as a breaker failure. A result is
never built from a partially parsed answer.
"""

import json
import logging
import os
import re
from typing import Any, Dict, Optional

from jsonschema import Draft7Validator

from ..providers.base import GenerativeProvider
from ..utils.sanitize import sanitize_body, sanitize_sender, sanitize_subject
from .circuit_breaker import CircuitBreaker
from .errors import BreakerOpenError, ClassifierFormatError, ProviderError
from .models import ClassificationResult, ClassificationSource, JobStatus
from .prompt_engine import PromptManager
from .result_cache import ResultCache

logger = logging.getLogger(__name__)

_SCHEMA_PATH = os.path.join(
    os.path.dirname(__file__), "..", "json_schema", "classification.schema.json"
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


def _load_validator() -> Draft7Validator:
    with open(_SCHEMA_PATH, "r", encoding="utf-8") as f:
        return Draft7Validator(json.load(f))


def parse_model_output(raw: str, validator: Optional[Draft7Validator] = None) -> Dict[str, Any]:
    """
    Parse and validate raw model text against the wire contract.

    A single surrounding ```json fence is tolerated; nothing else is.

    Raises:
        ClassifierFormatError: not exactly one JSON object of the expected shape
    """
    text = (raw or "").strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1).strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ClassifierFormatError(f"Model output is not JSON: {e}", raw_output=raw) from e

    if not isinstance(data, dict):
        raise ClassifierFormatError("Model output is not a JSON object", raw_output=raw)

    validator = validator or _load_validator()
    errors = sorted(validator.iter_errors(data), key=lambda err: list(err.path))
    if errors:
        raise ClassifierFormatError(
            f"Model output does not match schema: {errors[0].message}", raw_output=raw
        )
    return data


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class DeepClassifier:
    """
    Usage:
        deep = DeepClassifier(provider, prompts, breaker, config["deep_classifier"])
        try:
            result = deep.classify(subject, sender, body)
        except (BreakerOpenError, ClassifierFormatError, ProviderError, PromptBudgetError):
            route_to_review()
    """

    def __init__(
        self,
        provider: GenerativeProvider,
        prompts: PromptManager,
        breaker: CircuitBreaker,
        config: Optional[Dict] = None,
        cache: Optional[ResultCache] = None,
    ):
        config = config or {}
        self.provider = provider
        self.prompts = prompts
        self.breaker = breaker
        self.deep_confidence = config.get("deep_confidence", 0.95)
        self.partial_confidence = config.get("partial_confidence", 0.75)
        self.temperature = config.get("temperature", 0.0)
        self.cache = cache if cache is not None else ResultCache(config)
        self._validator = _load_validator()

    def classify(
        self,
        subject: str,
        sender: str,
        body: str,
        prompt_override: Optional[str] = None,
    ) -> ClassificationResult:
        """
        Raises:
            BreakerOpenError: refused locally, nothing was sent
            PromptBudgetError: template too large, nothing was sent
            ProviderError: backend failure (recorded on the breaker)
            ClassifierFormatError: malformed output (recorded on the breaker)
        """
        # Rendered before asking the breaker so a budget error never holds
        # the half-open trial slot
        prompt = self.prompts.render(
            sanitize_subject(subject),
            sanitize_sender(sender),
            sanitize_body(body),
            prompt_override=prompt_override,
        )

        cached = self.cache.get(prompt)
        if cached is not None:
            return cached

        if not self.breaker.allow():
            raise BreakerOpenError(retry_in=self.breaker.retry_in())

        try:
            raw = self.provider.generate(
                prompt,
                max_tokens=self.prompts.reserved_output_tokens,
                temperature=self.temperature,
            )
            data = parse_model_output(raw, self._validator)
        except (ProviderError, ClassifierFormatError) as e:
            self.breaker.record_failure()
            logger.warning(f"Deep classification failed via {self.provider.get_name()}: {e}")
            raise
        except Exception as e:
            self.breaker.record_failure()
            logger.error(f"Unexpected error from {self.provider.get_name()}: {e}")
            raise ProviderError(str(e)) from e

        self.breaker.record_success()
        result = self._to_result(data)
        self.cache.put(prompt, result)
        return result

    def _to_result(self, data: Dict[str, Any]) -> ClassificationResult:
        is_job = bool(data["is_job_related"])
        company = _clean(data["company"])
        position = _clean(data["position"])
        status = JobStatus.parse(data["status"])

        if not is_job or (company and status):
            confidence = self.deep_confidence
        else:
            confidence = self.partial_confidence

        if not is_job:
            company, position, status = None, None, None

        return ClassificationResult(
            is_job_related=is_job,
            company=company,
            position=position,
            status=status,
            confidence=confidence,
            source=ClassificationSource.DEEP,
        )
